"""
Value types and the wire shape of a shared trip record.

A record is a plain dict with camelCase keys, exactly as observers read it:

    {
        "tripId": "trip_1718000000000_9f2c...",
        "status": "en_route",
        "timestamp": "2024-06-10T08:00:00.000000+00:00",
        "destination": {"lat": 37.0, "lng": -122.0, "address": "X"},
        "currentLocation": {"lat": 37.001, "lng": -122.001, "accuracy": 5.0},
        "route": {"totalDistance": 1000.0, "remainingDistance": 142.3,
                  "progressPercent": 85.8, "estimatedDuration": None,
                  "remainingDuration": None},
        "speed": 0.0,
        "heading": 90.0,
        "userInfo": {"name": "Ada"},
    }

Optional fields are omitted rather than defaulted. An indeterminate duration
is stored as None, never as zero.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from django.db import models

IMMUTABLE_FIELDS = frozenset({'tripId', 'destination'})

PATCHABLE_FIELDS = frozenset({
    'status',
    'currentLocation',
    'route',
    'speed',
    'heading',
    'userInfo',
})


class TripStatus(models.TextChoices):
    """Trip lifecycle status. Moves forward only; ARRIVED and STOPPED are terminal."""

    STARTED = 'started', 'Started'
    EN_ROUTE = 'en_route', 'En route'
    ARRIVED = 'arrived', 'Arrived'
    STOPPED = 'stopped', 'Stopped'

    @property
    def is_terminal(self) -> bool:
        return self in (TripStatus.ARRIVED, TripStatus.STOPPED)

    @property
    def rank(self) -> int:
        return {
            TripStatus.STARTED: 0,
            TripStatus.EN_ROUTE: 1,
            TripStatus.ARRIVED: 2,
            TripStatus.STOPPED: 2,
        }[self]

    def can_advance_to(self, new_status: 'TripStatus') -> bool:
        """Return True if a write may move a trip from this status to new_status."""
        if self.is_terminal:
            return False
        if new_status == self == TripStatus.EN_ROUTE:
            return True
        return new_status.rank > self.rank


@dataclass(frozen=True)
class Point:
    """A geographic point in degrees."""
    lat: float
    lng: float


@dataclass(frozen=True)
class Destination:
    """Where the trip ends. Fixed for the lifetime of a trip."""
    lat: float
    lng: float
    address: str = ''

    @property
    def point(self) -> Point:
        return Point(self.lat, self.lng)

    def to_dict(self) -> dict:
        return {'lat': self.lat, 'lng': self.lng, 'address': self.address}


@dataclass(frozen=True)
class UserInfo:
    """Optional sharer details shown to observers."""
    name: Optional[str] = None
    phone: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            key: value
            for key, value in (('name', self.name), ('phone', self.phone))
            if value
        }


@dataclass(frozen=True)
class PositionSample:
    """
    One reading from the location sampler.

    speed is in the sampler's declared unit; the session normalizes it to
    meters per second before any ETA math.
    """
    lat: float
    lng: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def point(self) -> Point:
        return Point(self.lat, self.lng)

    def current_location(self) -> dict:
        location = {'lat': self.lat, 'lng': self.lng}
        if self.accuracy is not None:
            location['accuracy'] = self.accuracy
        return location


def utcnow_iso() -> str:
    """Timestamp string written on every create and patch."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def build_initial_record(
    trip_id: str,
    destination: Destination,
    sample: PositionSample,
    route: Optional[dict] = None,
    user_info: Optional[UserInfo] = None,
) -> dict:
    """Build the record written when sharing starts."""
    record = {
        'tripId': trip_id,
        'status': TripStatus.STARTED.value,
        'timestamp': utcnow_iso(),
        'destination': destination.to_dict(),
        'currentLocation': sample.current_location(),
    }
    if route:
        record['route'] = route
    if user_info is not None and user_info.to_dict():
        record['userInfo'] = user_info.to_dict()
    return record
