"""
Observer side of a shared trip.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from django.conf import settings

from ..records import TripStatus, parse_timestamp
from ..store import TripStore
from .links import validate_trip_id

logger = logging.getLogger(__name__)


def render_trip(record: Optional[dict], now: Optional[datetime] = None, stale_after: float = 60) -> dict:
    """
    Build the view model an observer shows for a record.

    A missing record renders as gone. Durations the sharer could not
    estimate stay None rather than showing as zero.
    """
    if record is None:
        return {'found': False, 'gone': True}

    now = now or datetime.now(timezone.utc)
    route = record.get('route') or {}
    remaining = route.get('remainingDistance')
    eta = route.get('remainingDuration')
    updated_at = parse_timestamp(record.get('timestamp'))
    age = (now - updated_at).total_seconds() if updated_at else None
    status = record.get('status')

    return {
        'found': True,
        'gone': False,
        'trip_id': record.get('tripId'),
        'status': status,
        'finished': status in (TripStatus.ARRIVED, TripStatus.STOPPED),
        'destination': record.get('destination', {}).get('address', ''),
        'current_location': record.get('currentLocation'),
        'remaining_km': round(remaining / 1000, 2) if remaining is not None else None,
        'progress_percent': (
            round(route['progressPercent'], 1) if route.get('progressPercent') is not None else None
        ),
        'eta_minutes': round(eta / 60, 1) if eta is not None else None,
        'sharer_name': (record.get('userInfo') or {}).get('name'),
        'updated_at': record.get('timestamp'),
        'is_stale': age is None or age > stale_after,
    }


class TripViewer:
    """
    Read-only subscriber to one trip.

    Keeps the latest snapshot and calls on_update(record, view) for the
    initial state and every change. After the record is deleted, gone is
    True and no further updates arrive.
    """

    def __init__(
        self,
        store: TripStore,
        trip_id: str,
        on_update: Optional[Callable[[Optional[dict], dict], Awaitable[None]]] = None,
        stale_after: Optional[float] = None,
    ):
        self.store = store
        self.trip_id = validate_trip_id(trip_id)
        self.on_update = on_update
        self.stale_after = stale_after if stale_after is not None else settings.TRIP_STALE_AFTER_SECONDS
        self.latest: Optional[dict] = None
        self.updates = 0
        self.gone = False
        self._unsubscribe = None

    async def open(self) -> Optional[dict]:
        """Subscribe and return the initial snapshot (None if the trip does not exist)."""
        self._unsubscribe = await self.store.subscribe(self.trip_id, self._handle_change)
        return self.latest

    async def close(self):
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            await unsubscribe()

    def render(self, now: Optional[datetime] = None) -> dict:
        return render_trip(self.latest, now=now, stale_after=self.stale_after)

    async def _handle_change(self, record: Optional[dict]):
        self.latest = record
        self.updates += 1
        if record is None:
            self.gone = True
            logger.debug(f"Trip {self.trip_id} is gone")
        if self.on_update is not None:
            await self.on_update(record, self.render())
