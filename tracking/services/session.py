"""
Trip sharing session: owns the lifecycle of one shared trip at a time.

A session is Idle or Sharing(trip_id). Only a Sharing session writes, and
writes never block the location sampler: each sample replaces a single
pending update that one writer task drains, so a slow store costs at most
the samples that were superseded while it was busy.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional, Set

from asgiref.sync import sync_to_async
from django.conf import settings

from ..exceptions import (
    DirectionsAPIError,
    LocationUnavailable,
    NoActiveLocationError,
    StoreError,
    StoreUnavailable,
)
from ..records import Destination, Point, PositionSample, TripStatus, UserInfo, build_initial_record
from ..store import TripStore
from .directions import RouteGeometry
from .links import LinkCodec, generate_trip_id
from .progress import ProgressEstimate, ProgressEstimator, RouteBaseline, coarse_baseline
from .sampler import LocationSampler, SamplerSubscription, SpeedUnit, WatchOptions, to_meters_per_second

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = 'idle'
    SHARING = 'sharing'


class TripSession:
    """
    The single authorized writer for the trip it is sharing.

    Construct one per app session and pass it to whatever needs it; call
    close() at teardown. Deferred deletion of finished trips is scheduled on
    the store, so dropping the session never cancels it.

    Args:
        store: Backend the trip record is written to
        sampler: Optional location source. When given, the session reads the
            current position from it on start and watches it while sharing.
        directions: Optional provider with get_route(origin, destination)
        link_codec: Share link encoder, defaults to the configured base URL
        speed_unit: Unit of sample speeds. Must agree with the sampler's
            declared unit when both are given.
    """

    def __init__(
        self,
        store: TripStore,
        sampler: Optional[LocationSampler] = None,
        directions=None,
        link_codec: Optional[LinkCodec] = None,
        estimator: Optional[ProgressEstimator] = None,
        watch_options: Optional[WatchOptions] = None,
        speed_unit: Optional[SpeedUnit] = None,
        retention_seconds: Optional[float] = None,
        write_timeout: Optional[float] = None,
        sinuosity_factor: Optional[float] = None,
        arrival_radius_meters: Optional[float] = None,
    ):
        self.store = store
        self.sampler = sampler
        self.directions = directions
        self.link_codec = link_codec or LinkCodec()
        self.estimator = estimator or ProgressEstimator()
        self.watch_options = watch_options or WatchOptions()
        self.speed_unit = self._resolve_speed_unit(sampler, speed_unit)
        self.retention_seconds = (
            retention_seconds if retention_seconds is not None else settings.TRIP_RETENTION_SECONDS
        )
        self.write_timeout = (
            write_timeout if write_timeout is not None else settings.TRIP_STORE_WRITE_TIMEOUT_SECONDS
        )
        self.sinuosity_factor = (
            sinuosity_factor if sinuosity_factor is not None else settings.TRIP_ROUTE_SINUOSITY_FACTOR
        )
        self.arrival_radius_meters = (
            arrival_radius_meters if arrival_radius_meters is not None
            else settings.TRIP_ARRIVAL_RADIUS_METERS
        )

        self._trip_id: Optional[str] = None
        self._destination: Optional[Destination] = None
        self._baseline: Optional[RouteBaseline] = None
        self._status: Optional[TripStatus] = None
        self._last_sample: Optional[PositionSample] = None
        self._pending = None
        self._writer: Optional[asyncio.Task] = None
        self._subscription: Optional[SamplerSubscription] = None
        self._background: Set[asyncio.Task] = set()

    @staticmethod
    def _resolve_speed_unit(sampler, speed_unit) -> SpeedUnit:
        if sampler is None:
            return SpeedUnit(speed_unit or settings.LOCATION_SPEED_UNIT)

        sampler_unit = SpeedUnit(sampler.speed_unit)
        if speed_unit is not None and SpeedUnit(speed_unit) != sampler_unit:
            raise ValueError(
                f"Speed unit {SpeedUnit(speed_unit).value} does not match the "
                f"sampler's declared unit {sampler_unit.value}"
            )
        return sampler_unit

    @property
    def state(self) -> SessionState:
        return SessionState.SHARING if self._trip_id else SessionState.IDLE

    @property
    def is_sharing(self) -> bool:
        return self._trip_id is not None

    @property
    def trip_id(self) -> Optional[str]:
        return self._trip_id

    @property
    def status(self) -> Optional[TripStatus]:
        return self._status

    @property
    def baseline(self) -> Optional[RouteBaseline]:
        return self._baseline

    async def start(
        self,
        destination: Destination,
        user_info: Optional[UserInfo] = None,
        route: Optional[RouteGeometry] = None,
    ) -> str:
        """
        Begin sharing a new trip and return its id.

        A trip that is still being shared is stopped first; a session never
        has two open trips.

        Raises:
            NoActiveLocationError: If no position sample is available yet
            PermissionDenied: If the sampler refuses location access
            StoreUnavailable: If the initial record could not be written
        """
        if self.is_sharing:
            logger.info(f"Starting a new trip, stopping trip {self._trip_id} first")
            await self.stop()

        sample = await self._current_sample()
        baseline = await self._resolve_baseline(sample.point, destination.point, route)
        trip_id = generate_trip_id()

        estimate = self.estimator.estimate(
            sample.point,
            destination.point,
            baseline.total_distance_meters,
            to_meters_per_second(sample.speed, self.speed_unit),
        )
        record = build_initial_record(
            trip_id,
            destination,
            sample,
            route=self._route_fields(baseline, estimate),
            user_info=user_info,
        )

        self._attach_sampler()
        # Shielded so a timed-out insert that still lands can be found and removed.
        create = asyncio.ensure_future(self.store.create(trip_id, record))
        try:
            await self._call_store(asyncio.shield(create))
        except (StoreError, asyncio.CancelledError) as e:
            self._detach_sampler()
            if not create.done():
                self._spawn(self._discard_late_create(trip_id, create))
            logger.error(f"Could not start sharing trip {trip_id}: {e!r}")
            raise

        self._trip_id = trip_id
        self._destination = destination
        self._baseline = baseline
        self._status = TripStatus.STARTED
        logger.info(
            f"Sharing trip {trip_id}: baseline {baseline.total_distance_meters:.0f}m"
            f"{' (approximate)' if baseline.is_approximate else ''}"
        )
        return trip_id

    def report_location(self, sample: PositionSample):
        """
        Accept a position sample. Must be called from a running event loop.

        Caches the sample; while sharing, also queues a write of the new
        progress. Returns without waiting for the store. A sample recorded
        before the newest one already seen is dropped.
        """
        latest = self._last_sample
        if latest is not None and sample.recorded_at < latest.recorded_at:
            logger.debug(f"Dropping position sample recorded at {sample.recorded_at.isoformat()}")
            return

        self._last_sample = sample
        if not self.is_sharing:
            return

        estimate = self.estimator.estimate(
            sample.point,
            self._destination.point,
            self._baseline.total_distance_meters,
            to_meters_per_second(sample.speed, self.speed_unit),
        )
        arrived = estimate.remaining_distance_meters <= self.arrival_radius_meters
        status = TripStatus.ARRIVED if arrived else TripStatus.EN_ROUTE
        if not self._status.can_advance_to(status):
            logger.warning(f"Ignoring sample for trip {self._trip_id} in status {self._status}")
            return

        trip_id = self._trip_id
        self._status = status
        self._enqueue(trip_id, {
            'status': status.value,
            'currentLocation': sample.current_location(),
            'route': self._route_fields(self._baseline, estimate),
            'speed': sample.speed,
            'heading': sample.heading,
        })

        if arrived:
            logger.info(f"Trip {trip_id} arrived")
            self._end_sharing()
            self._spawn(self._finish(trip_id, final_fields=None))

    async def stop(self):
        """
        Stop sharing. No-op when idle.

        The session is idle as soon as this is called. The Stopped status
        write and the retention schedule are best-effort: failures are
        logged, not raised.
        """
        if not self.is_sharing:
            return

        trip_id = self._trip_id
        can_stop = self._status.can_advance_to(TripStatus.STOPPED)
        self._pending = None
        self._end_sharing()
        logger.info(f"Stopped sharing trip {trip_id}")

        final_fields = {'status': TripStatus.STOPPED.value} if can_stop else None
        await self._finish(trip_id, final_fields)

    async def close(self):
        """Tear down: detach the sampler, stop sharing and wait for queued work."""
        self._detach_sampler()
        await self.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def generate_share_link(self, trip_id: str) -> str:
        return self.link_codec.generate_share_link(trip_id)

    def parse_share_link(self, url: str) -> str:
        return self.link_codec.parse_share_link(url)

    async def _current_sample(self) -> PositionSample:
        if self.sampler is not None:
            try:
                self._last_sample = await self.sampler.get_current_position()
            except LocationUnavailable as e:
                if self._last_sample is None:
                    raise NoActiveLocationError(str(e)) from e
                logger.debug(f"Using cached position: {e}")

        if self._last_sample is None:
            raise NoActiveLocationError("No position sample is available yet")
        return self._last_sample

    async def _resolve_baseline(self, origin: Point, destination: Point, route) -> RouteBaseline:
        if route is None and self.directions is not None:
            try:
                route = await sync_to_async(self.directions.get_route, thread_sensitive=False)(
                    origin, destination
                )
            except DirectionsAPIError as e:
                logger.warning(f"No route available, using straight-line baseline: {e}")

        return coarse_baseline(origin, destination, route, self.sinuosity_factor)

    @staticmethod
    def _route_fields(baseline: RouteBaseline, estimate: ProgressEstimate) -> dict:
        return {
            'totalDistance': baseline.total_distance_meters,
            'remainingDistance': estimate.remaining_distance_meters,
            'progressPercent': estimate.progress_percent,
            'estimatedDuration': baseline.estimated_duration_seconds,
            'remainingDuration': estimate.eta_seconds,
            'isApproximate': baseline.is_approximate,
        }

    async def _call_store(self, operation):
        try:
            return await asyncio.wait_for(operation, timeout=self.write_timeout)
        except asyncio.TimeoutError:
            raise StoreUnavailable(f"Trip store did not answer within {self.write_timeout}s")

    def _attach_sampler(self):
        if self.sampler is not None and self._subscription is None:
            self._subscription = self.sampler.watch(self.watch_options, self.report_location)

    def _detach_sampler(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _end_sharing(self):
        self._detach_sampler()
        self._trip_id = None
        self._destination = None
        self._baseline = None
        self._status = None

    def _spawn(self, coroutine):
        task = asyncio.get_running_loop().create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _enqueue(self, trip_id: str, fields: dict):
        self._pending = (trip_id, fields)
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self):
        while self._pending is not None:
            trip_id, fields = self._pending
            self._pending = None
            await self._write(trip_id, fields)

    async def _write(self, trip_id: str, fields: dict) -> bool:
        try:
            await self._call_store(self.store.patch(trip_id, fields))
        except StoreError as e:
            logger.warning(f"Write to trip {trip_id} failed: {e}")
            return False
        logger.debug(f"Wrote {sorted(fields)} to trip {trip_id}")
        return True

    async def flush(self):
        """Wait until the queued write, if any, has been attempted."""
        writer = self._writer
        if writer is not None and not writer.done():
            await asyncio.gather(writer, return_exceptions=True)

    async def _discard_late_create(self, trip_id: str, create: asyncio.Future):
        try:
            await create
        except StoreError:
            return

        logger.warning(f"Trip {trip_id} was created after its start timed out, removing it")
        try:
            await self._call_store(self.store.remove(trip_id))
        except StoreError as e:
            logger.warning(f"Could not remove abandoned trip {trip_id}: {e}")

    async def _finish(self, trip_id: str, final_fields: Optional[dict]):
        await self.flush()
        if final_fields:
            await self._write(trip_id, final_fields)

        try:
            await self._call_store(self.store.expire(trip_id, self.retention_seconds))
        except StoreError as e:
            logger.warning(f"Could not schedule deletion of trip {trip_id}: {e}")
