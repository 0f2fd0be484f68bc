"""
Exception taxonomy for trip sharing.

Location errors come from the device sampler, store errors from the trip
record backend. Errors that only affect sharing are logged and swallowed by
the session; errors that prevent a trip from starting reach the caller.
"""


class TrackingError(Exception):
    """Base class for all trip sharing errors."""
    pass


class LocationError(TrackingError):
    """Base class for location sampler errors."""
    pass


class PermissionDenied(LocationError):
    """Location access was refused. Fatal to sharing until re-prompted."""
    pass


class LocationUnavailable(LocationError):
    """No position could be obtained right now. Retry on the next sample."""
    pass


class NoActiveLocationError(TrackingError):
    """Sharing cannot start before at least one position sample exists."""
    pass


class StoreError(TrackingError):
    """Base class for trip store errors."""
    pass


class StoreUnavailable(StoreError):
    """The trip store could not be reached or timed out."""
    pass


class TripNotFound(StoreError):
    """The trip record does not exist (never created, or already deleted)."""

    def __init__(self, trip_id):
        super().__init__(f"Trip {trip_id} not found")
        self.trip_id = trip_id


class TripAlreadyExists(StoreError):
    """A record with this trip id already exists."""

    def __init__(self, trip_id):
        super().__init__(f"Trip {trip_id} already exists")
        self.trip_id = trip_id


class ImmutableFieldError(TrackingError, ValueError):
    """A patch tried to change a field that is fixed at creation."""
    pass


class InvalidTripId(TrackingError, ValueError):
    """A trip id or share link is malformed."""
    pass


class DirectionsAPIError(TrackingError):
    """Exception raised for Google Directions API errors."""
    pass
