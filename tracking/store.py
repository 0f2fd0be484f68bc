"""
Trip record stores.

A store holds one record per trip id and tells subscribers about every
change. Subscribers get the full record after each write, starting with the
state at subscription time, and a final None once the record is deleted.

The store does not check who writes; a single writer per trip is a
convention kept by TripSession.
"""

import abc
import asyncio
import copy
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from channels.db import database_sync_to_async
from channels.layers import get_channel_layer
from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.module_loading import import_string

from .exceptions import (
    ImmutableFieldError,
    StoreUnavailable,
    TripAlreadyExists,
    TripNotFound,
)
from .kafka_client import TRIP_CHANGED_EVENT, KafkaProducerClient, trip_group_name
from .models import Trip
from .records import IMMUTABLE_FIELDS, PATCHABLE_FIELDS, parse_timestamp, utcnow_iso

logger = logging.getLogger(__name__)

OnChange = Callable[[Optional[dict]], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]


async def _noop_unsubscribe():
    return None


def check_patch(fields: dict) -> dict:
    """
    Validate a partial record before merging it.

    The timestamp is always replaced by the store, so a caller-supplied one
    is dropped.

    Raises:
        ImmutableFieldError: If the patch touches tripId or destination
        ValueError: If the patch has keys that are not part of a record
    """
    immutable = IMMUTABLE_FIELDS.intersection(fields)
    if immutable:
        raise ImmutableFieldError(f"Fields cannot be changed after creation: {sorted(immutable)}")

    unknown = set(fields) - PATCHABLE_FIELDS - {'timestamp'}
    if unknown:
        raise ValueError(f"Unknown trip fields: {sorted(unknown)}")

    return {key: value for key, value in fields.items() if key != 'timestamp'}


class TripStore(abc.ABC):
    """Interface to the shared real-time trip store. All calls may raise StoreUnavailable."""

    @abc.abstractmethod
    async def create(self, trip_id: str, record: dict) -> dict:
        """Store a new record. Raises TripAlreadyExists if the id is taken."""

    @abc.abstractmethod
    async def patch(self, trip_id: str, fields: dict) -> dict:
        """Shallow-merge fields into the record and replace its timestamp. Raises TripNotFound."""

    @abc.abstractmethod
    async def remove(self, trip_id: str) -> bool:
        """Delete the record. Returns False if it was already gone."""

    @abc.abstractmethod
    async def get(self, trip_id: str) -> Optional[dict]:
        """Return the current record or None."""

    @abc.abstractmethod
    async def subscribe(self, trip_id: str, on_change: OnChange) -> Unsubscribe:
        """
        Call on_change with the current record now and after every change.

        Delivery ends after a final on_change(None) when the record is
        deleted, or when the returned unsubscribe coroutine function is
        awaited. A missing record gets a single on_change(None).
        """

    @abc.abstractmethod
    async def expire(self, trip_id: str, after_seconds: float) -> None:
        """
        Schedule deletion of the record after the given delay.

        Scheduling is owned by the store, not the caller, and re-scheduling
        the same trip replaces the earlier deadline.
        """


class _Subscriber:

    def __init__(self, on_change: OnChange):
        self.on_change = on_change
        self.lock = asyncio.Lock()

    async def deliver(self, record: Optional[dict]):
        async with self.lock:
            try:
                await self.on_change(record)
            except Exception:
                logger.exception("Trip subscriber callback failed")


class InMemoryTripStore(TripStore):
    """
    Process-local store.

    Notifications are delivered in write order to each subscriber before the
    write returns. available and latency let callers simulate an unreachable
    or slow backend.
    """

    def __init__(self, latency: float = 0.0):
        self.available = True
        self.latency = latency
        self._records: Dict[str, dict] = {}
        self._subscribers: Dict[str, List[_Subscriber]] = defaultdict(list)
        self._expiry_tasks: Dict[str, asyncio.Task] = {}

    async def _io(self):
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise StoreUnavailable("Trip store is unavailable")

    async def _notify(self, trip_id: str, record: Optional[dict]):
        for subscriber in list(self._subscribers.get(trip_id, [])):
            await subscriber.deliver(copy.deepcopy(record))

    async def create(self, trip_id, record):
        await self._io()
        if trip_id in self._records:
            raise TripAlreadyExists(trip_id)

        stored = copy.deepcopy(record)
        stored['tripId'] = trip_id
        stored['timestamp'] = utcnow_iso()
        self._records[trip_id] = stored
        await self._notify(trip_id, stored)
        return copy.deepcopy(stored)

    async def patch(self, trip_id, fields):
        fields = check_patch(fields)
        await self._io()
        stored = self._records.get(trip_id)
        if stored is None:
            raise TripNotFound(trip_id)

        for key, value in copy.deepcopy(fields).items():
            # None clears a field, as it does for the ORM-backed store.
            if value is None:
                stored.pop(key, None)
            else:
                stored[key] = value
        stored['timestamp'] = utcnow_iso()
        await self._notify(trip_id, stored)
        return copy.deepcopy(stored)

    async def remove(self, trip_id):
        await self._io()
        task = self._expiry_tasks.pop(trip_id, None)
        if task is not None:
            task.cancel()

        existed = self._records.pop(trip_id, None) is not None
        if existed:
            await self._notify(trip_id, None)
        self._subscribers.pop(trip_id, None)
        return existed

    async def get(self, trip_id):
        await self._io()
        return copy.deepcopy(self._records.get(trip_id))

    async def subscribe(self, trip_id, on_change):
        await self._io()
        subscriber = _Subscriber(on_change)

        async with subscriber.lock:
            current = copy.deepcopy(self._records.get(trip_id))
            if current is not None:
                self._subscribers[trip_id].append(subscriber)
            await on_change(current)

        if current is None:
            return _noop_unsubscribe

        async def unsubscribe():
            subscribers = self._subscribers.get(trip_id, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)

        return unsubscribe

    async def expire(self, trip_id, after_seconds):
        await self._io()
        previous = self._expiry_tasks.pop(trip_id, None)
        if previous is not None:
            previous.cancel()
        if trip_id not in self._records:
            return

        self._expiry_tasks[trip_id] = asyncio.get_running_loop().create_task(
            self._expire_later(trip_id, after_seconds)
        )

    async def _expire_later(self, trip_id, after_seconds):
        await asyncio.sleep(after_seconds)
        self._expiry_tasks.pop(trip_id, None)
        try:
            await self.remove(trip_id)
            logger.info(f"Expired trip {trip_id}")
        except StoreUnavailable as e:
            logger.warning(f"Could not expire trip {trip_id}: {e}")

    def pending_expiries(self) -> List[str]:
        return list(self._expiry_tasks)


class DjangoTripStore(TripStore):
    """
    Store backed by the Trip model.

    Changes are published through the Kafka change feed (or straight to the
    channel layer) and subscribers listen on the trip's channel group.
    expire() records a durable deadline on the row; an in-process timer
    deletes it promptly and the purge_expired_trips command reaps whatever
    a dead process left behind.
    """

    def __init__(self, publisher: Optional[KafkaProducerClient] = None):
        self.publisher = publisher or KafkaProducerClient()
        self._expiry_tasks: Dict[str, asyncio.Task] = {}

    async def _publish(self, trip_id: str, record: Optional[dict]):
        try:
            await self.publisher.publish_change(trip_id, record)
        except Exception:
            logger.exception(f"Failed to publish change for trip {trip_id}")

    @database_sync_to_async
    def _create_row(self, record):
        try:
            with transaction.atomic():
                trip = Trip.from_record(record)
                trip.timestamp = timezone.now()
                trip.save(force_insert=True)
        except IntegrityError:
            raise TripAlreadyExists(record['tripId'])
        except DatabaseError as e:
            raise StoreUnavailable(str(e))
        return trip.to_record()

    @database_sync_to_async
    def _patch_row(self, trip_id, fields):
        try:
            with transaction.atomic():
                trip = Trip.objects.select_for_update().filter(pk=trip_id).first()
                if trip is None:
                    raise TripNotFound(trip_id)
                trip.apply_patch(fields)
                trip.save()
        except DatabaseError as e:
            raise StoreUnavailable(str(e))
        return trip.to_record()

    @database_sync_to_async
    def _delete_row(self, trip_id):
        try:
            deleted, _ = Trip.objects.filter(pk=trip_id).delete()
        except DatabaseError as e:
            raise StoreUnavailable(str(e))
        return deleted > 0

    @database_sync_to_async
    def _get_row(self, trip_id):
        try:
            trip = Trip.objects.filter(pk=trip_id).first()
        except DatabaseError as e:
            raise StoreUnavailable(str(e))
        return trip.to_record() if trip else None

    @database_sync_to_async
    def _set_expiry(self, trip_id, expires_at):
        try:
            return Trip.objects.filter(pk=trip_id).update(expires_at=expires_at)
        except DatabaseError as e:
            raise StoreUnavailable(str(e))

    @database_sync_to_async
    def _expired_ids(self, now, abandoned_before):
        expired = Q(expires_at__lte=now) | Q(expires_at__isnull=True, timestamp__lte=abandoned_before)
        try:
            return list(Trip.objects.filter(expired).values_list('trip_id', flat=True))
        except DatabaseError as e:
            raise StoreUnavailable(str(e))

    async def create(self, trip_id, record):
        record = dict(record, tripId=trip_id)
        stored = await self._create_row(record)
        await self._publish(trip_id, stored)
        return stored

    async def patch(self, trip_id, fields):
        fields = check_patch(fields)
        stored = await self._patch_row(trip_id, fields)
        await self._publish(trip_id, stored)
        return stored

    async def remove(self, trip_id):
        task = self._expiry_tasks.pop(trip_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        deleted = await self._delete_row(trip_id)
        if deleted:
            await self._publish(trip_id, None)
        return deleted

    async def get(self, trip_id):
        return await self._get_row(trip_id)

    async def subscribe(self, trip_id, on_change):
        channel_layer = get_channel_layer()
        group_name = trip_group_name(trip_id)
        channel_name = await channel_layer.new_channel()
        await channel_layer.group_add(group_name, channel_name)

        try:
            current = await self.get(trip_id)
        except StoreUnavailable:
            await channel_layer.group_discard(group_name, channel_name)
            raise

        await on_change(current)
        if current is None:
            await channel_layer.group_discard(group_name, channel_name)
            return _noop_unsubscribe

        task = asyncio.ensure_future(
            self._pump(channel_layer, group_name, channel_name, on_change, current.get('timestamp'))
        )

        async def unsubscribe():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await channel_layer.group_discard(group_name, channel_name)

        return unsubscribe

    async def _pump(self, channel_layer, group_name, channel_name, on_change, since=None):
        # The group is joined before the snapshot is read, so changes already
        # reflected in the snapshot can still arrive and must be skipped.
        last_seen = parse_timestamp(since)
        try:
            while True:
                message = await channel_layer.receive(channel_name)
                if message.get('type') != TRIP_CHANGED_EVENT:
                    continue

                record = message.get('record')
                if record is not None:
                    written_at = parse_timestamp(record.get('timestamp'))
                    if last_seen and written_at and written_at <= last_seen:
                        logger.debug(f"Skipping stale change for {group_name}")
                        continue
                    last_seen = written_at or last_seen

                try:
                    await on_change(record)
                except Exception:
                    logger.exception("Trip subscriber callback failed")
                if record is None:
                    break
        finally:
            await channel_layer.group_discard(group_name, channel_name)

    async def expire(self, trip_id, after_seconds):
        expires_at = timezone.now() + timedelta(seconds=after_seconds)
        updated = await self._set_expiry(trip_id, expires_at)

        previous = self._expiry_tasks.pop(trip_id, None)
        if previous is not None:
            previous.cancel()
        if not updated:
            return

        self._expiry_tasks[trip_id] = asyncio.get_running_loop().create_task(
            self._expire_later(trip_id, after_seconds)
        )

    async def _expire_later(self, trip_id, after_seconds):
        await asyncio.sleep(after_seconds)
        try:
            await self.remove(trip_id)
            logger.info(f"Expired trip {trip_id}")
        except StoreUnavailable as e:
            # The row keeps its expires_at, so the reaper will retry.
            logger.warning(f"Could not expire trip {trip_id}: {e}")

    async def purge_expired(self, abandoned_after: Optional[float] = None) -> List[str]:
        """
        Delete every record past its retention deadline, and every record that
        never got one and has not been written for abandoned_after seconds
        (default TRIP_ABANDONED_AFTER_SECONDS). Returns the purged ids.
        """
        if abandoned_after is None:
            abandoned_after = settings.TRIP_ABANDONED_AFTER_SECONDS
        now = timezone.now()
        purged = []
        for trip_id in await self._expired_ids(now, now - timedelta(seconds=abandoned_after)):
            if await self.remove(trip_id):
                purged.append(trip_id)
        return purged


_stores: Dict[str, TripStore] = {}


def get_trip_store(backend: Optional[str] = None) -> TripStore:
    """Return the process-wide store for the configured backend."""
    backend = backend or settings.TRIP_STORE_BACKEND
    if backend not in _stores:
        _stores[backend] = import_string(backend)()
    return _stores[backend]


def reset_trip_stores():
    _stores.clear()
