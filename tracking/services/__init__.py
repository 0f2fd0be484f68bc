"""Services module for trip sharing business logic."""

from .directions import GoogleDirectionsService, RouteGeometry
from .distance import DistanceService, great_circle_distance
from .links import LinkCodec, generate_trip_id
from .progress import ProgressEstimator, RouteBaseline, coarse_baseline
from .sampler import LocationSampler, PushLocationSampler, SpeedUnit, WatchOptions
from .session import SessionState, TripSession
from .viewer import TripViewer, render_trip

__all__ = [
    'GoogleDirectionsService',
    'RouteGeometry',
    'DistanceService',
    'great_circle_distance',
    'LinkCodec',
    'generate_trip_id',
    'ProgressEstimator',
    'RouteBaseline',
    'coarse_baseline',
    'LocationSampler',
    'PushLocationSampler',
    'SpeedUnit',
    'WatchOptions',
    'SessionState',
    'TripSession',
    'TripViewer',
    'render_trip',
]
