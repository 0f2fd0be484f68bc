"""
Trip model backing the shared trip records.
"""

from django.db import models
from django.utils import timezone

from .records import TripStatus, parse_timestamp

# Wire key -> model field for everything a patch may change.
PATCH_FIELD_MAP = {
    'status': 'status',
    'currentLocation': 'current_location',
    'route': 'route',
    'speed': 'speed',
    'heading': 'heading',
    'userInfo': 'user_info',
}


class Trip(models.Model):
    """
    One shared trip, keyed by its trip id.

    Nested parts of the record (destination, location, route, user info) are
    kept as JSON so the stored row maps one-to-one onto the wire record.
    """

    trip_id = models.CharField(
        max_length=100,
        primary_key=True,
        help_text="Opaque trip id, also used in share links"
    )
    status = models.CharField(
        max_length=16,
        choices=TripStatus.choices,
        default=TripStatus.STARTED,
    )
    timestamp = models.DateTimeField(
        default=timezone.now,
        help_text="Time of the last write"
    )
    destination = models.JSONField(
        help_text="{lat, lng, address}; fixed at creation"
    )
    current_location = models.JSONField(
        null=True,
        blank=True,
        help_text="{lat, lng, accuracy?}"
    )
    route = models.JSONField(
        null=True,
        blank=True,
        help_text="Baseline and progress: distances in meters, durations in seconds"
    )
    speed = models.FloatField(null=True, blank=True)
    heading = models.FloatField(null=True, blank=True)
    user_info = models.JSONField(null=True, blank=True)
    stopped_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Row is deleted by the reaper once this has passed"
    )
    date_added = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-date_added']
        verbose_name = 'Trip'
        verbose_name_plural = 'Trips'

    def __str__(self):
        return f"Trip {self.trip_id} ({self.status})"

    @classmethod
    def from_record(cls, record: dict) -> 'Trip':
        """Build an unsaved Trip from a wire record."""
        trip = cls(
            trip_id=record['tripId'],
            status=record.get('status', TripStatus.STARTED),
            timestamp=parse_timestamp(record.get('timestamp')) or timezone.now(),
            destination=record['destination'],
        )
        for key, field_name in PATCH_FIELD_MAP.items():
            if key in record and key != 'status':
                setattr(trip, field_name, record[key])
        return trip

    def apply_patch(self, fields: dict):
        """Shallow-merge wire fields into this row and stamp the write time."""
        for key, value in fields.items():
            setattr(self, PATCH_FIELD_MAP[key], value)
        self.timestamp = timezone.now()
        if TripStatus(self.status).is_terminal and self.stopped_at is None:
            self.stopped_at = self.timestamp

    def to_record(self) -> dict:
        """Return the wire record. Unset optional fields are omitted."""
        record = {
            'tripId': self.trip_id,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'destination': self.destination,
        }
        for key, field_name in PATCH_FIELD_MAP.items():
            value = getattr(self, field_name)
            if key != 'status' and value is not None:
                record[key] = value
        return record
