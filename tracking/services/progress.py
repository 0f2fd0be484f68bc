"""
Trip progress and ETA estimation.
"""

import math
from dataclasses import dataclass
from typing import Optional

import polyline

from ..records import Point
from .distance import DistanceService


@dataclass(frozen=True)
class ProgressEstimate:
    """Progress of a trip at one position sample."""
    remaining_distance_meters: float
    progress_percent: Optional[float]  # None when the baseline is unknown
    eta_seconds: Optional[float]  # None when speed gives no usable estimate


@dataclass(frozen=True)
class RouteBaseline:
    """
    Coarse total route length used as the denominator for progress.

    is_approximate is True when the length was derived from straight-line
    distance rather than a real route.
    """
    total_distance_meters: float
    estimated_duration_seconds: Optional[float] = None
    is_approximate: bool = False


def _finite_non_negative(value: float) -> float:
    if math.isnan(value) or value < 0:
        return 0.0
    return value


class ProgressEstimator:
    """
    Derives remaining distance, percent complete and ETA from the current
    position, the destination and a coarse baseline distance.

    The baseline is expected to be rough, so results are clamped to valid
    ranges instead of trusting the arithmetic.
    """

    def __init__(self, distance_service: Optional[DistanceService] = None):
        self.distance_service = distance_service or DistanceService()

    def estimate(
        self,
        current: Point,
        destination: Point,
        total_distance_meters: Optional[float],
        speed_mps: Optional[float],
    ) -> ProgressEstimate:
        """
        Estimate progress towards the destination.

        Args:
            current: Sharer's current position
            destination: Trip destination
            total_distance_meters: Baseline route length, or None if unknown
            speed_mps: Current speed in meters per second, already normalized

        Returns:
            ProgressEstimate
        """
        remaining = _finite_non_negative(self.distance_service.between(current, destination))

        return ProgressEstimate(
            remaining_distance_meters=remaining,
            progress_percent=self.progress_percent(remaining, total_distance_meters),
            eta_seconds=self.eta_seconds(remaining, speed_mps),
        )

    @staticmethod
    def progress_percent(
        remaining_meters: float,
        total_meters: Optional[float],
    ) -> Optional[float]:
        if total_meters is None or not math.isfinite(total_meters) or total_meters <= 0:
            return None

        percent = ((total_meters - remaining_meters) / total_meters) * 100
        if math.isnan(percent):
            return 0.0
        return max(0.0, min(100.0, percent))

    @staticmethod
    def eta_seconds(remaining_meters: float, speed_mps: Optional[float]) -> Optional[float]:
        # A zero ETA would read as "arrived", so a stationary sharer has none.
        if speed_mps is None or not math.isfinite(speed_mps) or speed_mps <= 0:
            return None
        return _finite_non_negative(remaining_meters / speed_mps)


def coarse_baseline(
    origin: Point,
    destination: Point,
    route=None,
    sinuosity_factor: float = 1.3,
) -> RouteBaseline:
    """
    Pick the best available total distance for a trip.

    In order of preference: the directions provider's route length, the
    length of the decoded route polyline, or the straight-line distance
    scaled by a sinuosity factor. The last is an approximation and is marked
    as such.

    Args:
        origin: Where sharing started
        destination: Trip destination
        route: Optional RouteGeometry from the directions provider
        sinuosity_factor: Road length per unit of straight-line length

    Returns:
        RouteBaseline
    """
    if route is not None:
        if route.distance_meters and route.distance_meters > 0:
            return RouteBaseline(
                total_distance_meters=float(route.distance_meters),
                estimated_duration_seconds=route.duration_seconds,
            )
        if route.polyline:
            try:
                points = polyline.decode(route.polyline)
            except (ValueError, IndexError, TypeError):
                points = []
            length = DistanceService.path_length(points)
            if length > 0:
                return RouteBaseline(
                    total_distance_meters=length,
                    estimated_duration_seconds=route.duration_seconds,
                )

    straight_line = DistanceService.between(origin, destination)
    return RouteBaseline(
        total_distance_meters=straight_line * sinuosity_factor,
        is_approximate=True,
    )
