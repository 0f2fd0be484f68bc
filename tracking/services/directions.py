"""
Directions provider: route geometry and length between two points.

Only used to pick a progress baseline, so any failure is reported as
DirectionsAPIError and the caller falls back to a straight-line estimate.
"""

from dataclasses import dataclass
from typing import Optional

import requests
from django.conf import settings

from ..exceptions import DirectionsAPIError
from ..records import Point


@dataclass(frozen=True)
class RouteGeometry:
    """Route returned by the directions provider."""
    polyline: str
    distance_meters: Optional[float] = None
    duration_seconds: Optional[float] = None


class GoogleDirectionsService:
    """
    Client for the Google Directions API.

    get_route() is blocking; call it off the event loop.
    """

    BASE_URL = "https://maps.googleapis.com/maps/api/directions/json"
    TIMEOUT_SECONDS = 10

    def __init__(self, api_key: Optional[str] = None, mode: str = 'driving'):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_MAPS_API_KEY
        self.mode = mode

    def get_route(self, origin: Point, destination: Point) -> RouteGeometry:
        """
        Fetch the best route from origin to destination.

        Returns:
            RouteGeometry with the overview polyline, plus the summed leg
            distance and duration when the API reports them

        Raises:
            DirectionsAPIError: On a missing key, transport error, or a
                response without a usable route
        """
        if not self.api_key:
            raise DirectionsAPIError("Google Maps API key is not configured")

        data = self._request({
            'origin': f"{origin.lat},{origin.lng}",
            'destination': f"{destination.lat},{destination.lng}",
            'mode': self.mode,
            'key': self.api_key,
        })
        return self._parse_route(data)

    def _request(self, params: dict) -> dict:
        try:
            response = requests.get(self.BASE_URL, params=params, timeout=self.TIMEOUT_SECONDS)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise DirectionsAPIError(f"Directions request failed: {e}")
        except ValueError:
            raise DirectionsAPIError("Directions API returned a non-JSON response")

    @staticmethod
    def _parse_route(data: dict) -> RouteGeometry:
        api_status = data.get('status')
        if api_status != 'OK':
            raise DirectionsAPIError(
                f"Directions API error: {data.get('error_message') or api_status or 'unknown'}"
            )

        routes = data.get('routes') or []
        if not routes:
            raise DirectionsAPIError("Directions API returned no route")

        best = routes[0]
        encoded = (best.get('overview_polyline') or {}).get('points', '')
        if not encoded:
            raise DirectionsAPIError("Route has no overview polyline")

        legs = best.get('legs') or []
        distance = sum((leg.get('distance') or {}).get('value', 0) for leg in legs)
        duration = sum((leg.get('duration') or {}).get('value', 0) for leg in legs)

        return RouteGeometry(
            polyline=encoded,
            distance_meters=float(distance) if distance else None,
            duration_seconds=float(duration) if duration else None,
        )
