"""
Location sampler interface and the push-fed sampler used by the sharer socket.
"""

import abc
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..exceptions import LocationUnavailable, PermissionDenied
from ..records import PositionSample
from .distance import DistanceService

logger = logging.getLogger(__name__)


class SpeedUnit(str, Enum):
    """Unit a sampler reports speed in."""

    METERS_PER_SECOND = 'mps'
    KILOMETERS_PER_HOUR = 'kmh'
    MILES_PER_HOUR = 'mph'

    @property
    def to_mps_factor(self) -> float:
        return {
            SpeedUnit.METERS_PER_SECOND: 1.0,
            SpeedUnit.KILOMETERS_PER_HOUR: 1000 / 3600,
            SpeedUnit.MILES_PER_HOUR: 0.44704,
        }[self]


def to_meters_per_second(speed: Optional[float], unit: SpeedUnit) -> Optional[float]:
    """Normalize a sampler speed. None or non-finite input stays None."""
    if speed is None:
        return None
    try:
        speed = float(speed)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(speed):
        return None
    return speed * SpeedUnit(unit).to_mps_factor


@dataclass(frozen=True)
class WatchOptions:
    """Bounded sampling rate: a sample every interval or every distance moved."""
    time_interval_ms: int = 1000
    distance_interval_m: float = 5.0


class SamplerSubscription:
    """Handle returned by LocationSampler.watch(). cancel() stops delivery."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._on_cancel = on_cancel
        self.cancelled = False

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel:
            self._on_cancel()


class LocationSampler(abc.ABC):
    """
    Device location source.

    Implementations report speed in speed_unit. Errors surface as
    PermissionDenied or LocationUnavailable.
    """

    speed_unit: SpeedUnit = SpeedUnit.METERS_PER_SECOND

    @abc.abstractmethod
    async def get_current_position(self) -> PositionSample:
        """Return one fresh position sample."""

    @abc.abstractmethod
    def watch(
        self,
        options: WatchOptions,
        callback: Callable[[PositionSample], None],
    ) -> SamplerSubscription:
        """Deliver samples to callback until the subscription is cancelled."""


class PushLocationSampler(LocationSampler):
    """
    Sampler fed by an external source, e.g. a client pushing positions over
    a WebSocket.

    Pushed samples are throttled per watcher to the watch options: a sample
    is delivered once the time interval has elapsed or the position moved
    by at least the distance interval since the last delivery.
    """

    def __init__(self, speed_unit: SpeedUnit = SpeedUnit.METERS_PER_SECOND, clock=time.monotonic):
        self.speed_unit = SpeedUnit(speed_unit)
        self.permission_granted = True
        self._clock = clock
        self._latest: Optional[PositionSample] = None
        self._watchers: List['_Watcher'] = []

    @property
    def latest(self) -> Optional[PositionSample]:
        return self._latest

    async def get_current_position(self) -> PositionSample:
        if not self.permission_granted:
            raise PermissionDenied("Location permission was denied")
        if self._latest is None:
            raise LocationUnavailable("No position has been reported yet")
        return self._latest

    def watch(self, options, callback) -> SamplerSubscription:
        if not self.permission_granted:
            raise PermissionDenied("Location permission was denied")

        watcher = _Watcher(options, callback)
        self._watchers.append(watcher)

        def detach():
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return SamplerSubscription(on_cancel=detach)

    def push(self, sample: PositionSample) -> bool:
        """
        Record a new sample and deliver it to due watchers.

        Returns True if at least one watcher received it.
        """
        if not self.permission_granted:
            raise PermissionDenied("Location permission was denied")

        self._latest = sample
        now = self._clock()
        delivered = False
        for watcher in list(self._watchers):
            if watcher.is_due(sample, now):
                watcher.deliver(sample, now)
                delivered = True
        return delivered


class _Watcher:

    def __init__(self, options: WatchOptions, callback):
        self.options = options
        self.callback = callback
        self.last_sample: Optional[PositionSample] = None
        self.last_delivered_at: Optional[float] = None

    def is_due(self, sample: PositionSample, now: float) -> bool:
        if self.last_sample is None:
            return True
        if (now - self.last_delivered_at) * 1000 >= self.options.time_interval_ms:
            return True
        moved = DistanceService.between(self.last_sample.point, sample.point)
        return moved >= self.options.distance_interval_m

    def deliver(self, sample: PositionSample, now: float):
        self.last_sample = sample
        self.last_delivered_at = now
        try:
            self.callback(sample)
        except Exception:
            logger.exception("Location watcher callback failed")
