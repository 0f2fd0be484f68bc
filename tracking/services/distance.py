"""
Great-circle distance on a spherical Earth.
"""

import math
from typing import Iterable, Tuple

from ..records import Point

EARTH_RADIUS_METERS = 6371000


def great_circle_distance(a: Point, b: Point) -> float:
    """
    Haversine distance in meters between two points.

    Accurate to roughly 0.5% for terrestrial distances. Symmetric, and zero
    for identical points.
    """
    phi_a = math.radians(a.lat)
    phi_b = math.radians(b.lat)
    d_phi = phi_b - phi_a
    d_lambda = math.radians(b.lng - a.lng)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi_a) * math.cos(phi_b) * math.sin(d_lambda / 2) ** 2
    # Float error can push h just outside [0, 1] near antipodes.
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


class DistanceService:
    """Distance helpers for points and decoded route polylines."""

    EARTH_RADIUS_METERS = EARTH_RADIUS_METERS

    @staticmethod
    def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        """Distance in meters between two coordinate pairs."""
        return great_circle_distance(Point(lat1, lng1), Point(lat2, lng2))

    @staticmethod
    def between(a: Point, b: Point) -> float:
        return great_circle_distance(a, b)

    @staticmethod
    def path_length(route_points: Iterable[Tuple[float, float]]) -> float:
        """
        Length in meters along a sequence of (lat, lng) pairs.

        Returns 0 for fewer than two points.
        """
        points = [Point(lat, lng) for lat, lng in route_points]
        return sum(great_circle_distance(a, b) for a, b in zip(points, points[1:]))
