"""
Tests for the tracking application.

Covers:
- Distance, progress and baseline math
- Share links and trip ids
- Location sampling
- Trip stores (in-memory and ORM-backed) and the change feed
- The trip session state machine
- Observers (TripViewer, REST and WebSocket)
"""

import asyncio
import math
import time
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import AsyncMock, MagicMock, patch

import polyline
from aiokafka.errors import KafkaConnectionError
from channels.db import database_sync_to_async
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITransactionTestCase

from .exceptions import (
    DirectionsAPIError,
    ImmutableFieldError,
    InvalidTripId,
    LocationUnavailable,
    NoActiveLocationError,
    PermissionDenied,
    StoreUnavailable,
    TripAlreadyExists,
    TripNotFound,
)
from .kafka_client import KafkaProducerClient, broadcast_change, trip_group_name
from .models import Trip
from .records import Destination, Point, PositionSample, TripStatus, UserInfo, build_initial_record
from .routing import websocket_urlpatterns
from .services.directions import GoogleDirectionsService, RouteGeometry
from .services.distance import DistanceService, great_circle_distance
from .services.links import LinkCodec, generate_trip_id, validate_trip_id
from .services.progress import ProgressEstimator, coarse_baseline
from .services.sampler import PushLocationSampler, SpeedUnit, WatchOptions, to_meters_per_second
from .services.session import SessionState, TripSession
from .services.viewer import TripViewer, render_trip
from .store import DjangoTripStore, InMemoryTripStore, check_patch, reset_trip_stores


DESTINATION = Destination(lat=37.0, lng=-122.0, address="X")
NEAR_DESTINATION = PositionSample(lat=37.001, lng=-122.001, accuracy=5.0, speed=0.0, heading=90.0)
SCENARIO_ROUTE = RouteGeometry(polyline='', distance_meters=1000.0)


def sample_record(trip_id='trip_1_test'):
    return build_initial_record(trip_id, DESTINATION, NEAR_DESTINATION)


class Recorder:
    """Async on_change callback that keeps everything it receives."""

    def __init__(self):
        self.records = []

    async def __call__(self, record):
        self.records.append(record)

    @property
    def statuses(self):
        return [record['status'] if record else None for record in self.records]


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


class CountingStore(InMemoryTripStore):
    """In-memory store that counts create and patch calls."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.created = []
        self.patches = []

    async def create(self, trip_id, record):
        self.created.append(trip_id)
        return await super().create(trip_id, record)

    async def patch(self, trip_id, fields):
        self.patches.append((trip_id, fields))
        return await super().patch(trip_id, fields)


class SlowInsertTripStore(DjangoTripStore):
    """ORM store whose insert keeps running after the caller stopped waiting."""

    @database_sync_to_async
    def _create_row(self, record):
        time.sleep(0.3)
        trip = Trip.from_record(record)
        trip.save(force_insert=True)
        return trip.to_record()


class DistanceServiceTests(SimpleTestCase):
    """Tests for great-circle distance."""

    def test_haversine_distance_same_point(self):
        """Distance between the same point is zero."""
        distance = DistanceService.haversine_distance(6.5244, 3.3792, 6.5244, 3.3792)
        self.assertEqual(distance, 0)

    def test_distance_is_symmetric(self):
        pairs = [
            (Point(6.5244, 3.3792), Point(7.3775, 3.9470)),
            (Point(37.001, -122.001), Point(37.0, -122.0)),
            (Point(-33.8688, 151.2093), Point(51.5074, -0.1278)),
        ]
        for a, b in pairs:
            self.assertEqual(great_circle_distance(a, b), great_circle_distance(b, a))

    def test_haversine_distance_known_points(self):
        """Lagos to Ibadan is roughly 113km in a straight line."""
        distance = DistanceService.haversine_distance(
            6.5244, 3.3792,  # Lagos
            7.3775, 3.9470   # Ibadan
        )
        self.assertGreater(distance, 100000)
        self.assertLess(distance, 130000)

    def test_one_degree_of_latitude(self):
        distance = great_circle_distance(Point(0, 0), Point(1, 0))
        self.assertAlmostEqual(distance, 2 * math.pi * 6371000 / 360, delta=1)

    def test_path_length(self):
        """Path length is the sum of its segments."""
        route_points = [
            (6.5244, 3.3792),
            (6.6000, 3.4500),
            (6.7000, 3.5500),
        ]
        expected = (
            DistanceService.haversine_distance(6.5244, 3.3792, 6.6000, 3.4500) +
            DistanceService.haversine_distance(6.6000, 3.4500, 6.7000, 3.5500)
        )
        self.assertAlmostEqual(DistanceService.path_length(route_points), expected)

    def test_path_length_of_single_point(self):
        self.assertEqual(DistanceService.path_length([(6.5244, 3.3792)]), 0.0)
        self.assertEqual(DistanceService.path_length([]), 0.0)


class ProgressEstimatorTests(SimpleTestCase):
    """Tests for progress and ETA estimation."""

    def setUp(self):
        self.estimator = ProgressEstimator()

    def test_progress_stays_within_bounds(self):
        destination = Point(37.0, -122.0)
        currents = [Point(37.0, -122.0), Point(37.001, -122.001), Point(38.0, -121.0), Point(-10, 50)]
        for current in currents:
            for total in (1.0, 150.0, 1000.0, 1e7):
                for speed in (0.1, 13.9, 500.0):
                    result = self.estimator.estimate(current, destination, total, speed)
                    self.assertGreaterEqual(result.progress_percent, 0)
                    self.assertLessEqual(result.progress_percent, 100)
                    self.assertGreater(result.eta_seconds, -1e-9)

    def test_scenario_progress(self):
        current = Point(37.001, -122.001)
        result = self.estimator.estimate(current, DESTINATION.point, 1000.0, None)
        remaining = DistanceService.haversine_distance(37.001, -122.001, 37.0, -122.0)

        self.assertAlmostEqual(result.remaining_distance_meters, remaining)
        self.assertAlmostEqual(result.progress_percent, (1000 - remaining) / 10)

    def test_zero_total_gives_no_progress(self):
        result = self.estimator.estimate(Point(37.001, -122.001), DESTINATION.point, 0, 10.0)
        self.assertIsNone(result.progress_percent)

    def test_unknown_or_invalid_total_gives_no_progress(self):
        for total in (None, float('nan'), float('inf'), -5.0):
            result = self.estimator.estimate(Point(37.001, -122.001), DESTINATION.point, total, 10.0)
            self.assertIsNone(result.progress_percent)

    def test_rough_baseline_shorter_than_remaining_clamps_to_zero(self):
        result = self.estimator.estimate(Point(38.0, -122.0), DESTINATION.point, 10.0, None)
        self.assertEqual(result.progress_percent, 0.0)

    def test_non_positive_speed_gives_indeterminate_eta(self):
        for speed in (0, 0.0, -3.0, None, float('nan')):
            result = self.estimator.estimate(Point(37.001, -122.001), DESTINATION.point, 1000.0, speed)
            self.assertIsNone(result.eta_seconds)

    def test_eta_from_speed(self):
        result = self.estimator.estimate(Point(37.001, -122.001), DESTINATION.point, 1000.0, 10.0)
        self.assertAlmostEqual(result.eta_seconds, result.remaining_distance_meters / 10.0)


class CoarseBaselineTests(SimpleTestCase):
    """Tests for choosing the total route distance."""

    origin = Point(37.01, -122.01)

    def test_uses_route_length_when_known(self):
        route = RouteGeometry(polyline='abc', distance_meters=2500.0, duration_seconds=300.0)
        baseline = coarse_baseline(self.origin, DESTINATION.point, route)

        self.assertEqual(baseline.total_distance_meters, 2500.0)
        self.assertEqual(baseline.estimated_duration_seconds, 300.0)
        self.assertFalse(baseline.is_approximate)

    def test_uses_polyline_length_without_route_length(self):
        points = [(37.01, -122.01), (37.005, -122.01), (37.0, -122.0)]
        route = RouteGeometry(polyline=polyline.encode(points))
        baseline = coarse_baseline(self.origin, DESTINATION.point, route)

        self.assertAlmostEqual(baseline.total_distance_meters, DistanceService.path_length(points), delta=2)
        self.assertFalse(baseline.is_approximate)

    def test_falls_back_to_straight_line_with_sinuosity(self):
        baseline = coarse_baseline(self.origin, DESTINATION.point, None, sinuosity_factor=1.3)
        straight = great_circle_distance(self.origin, DESTINATION.point)

        self.assertAlmostEqual(baseline.total_distance_meters, straight * 1.3)
        self.assertTrue(baseline.is_approximate)


class LinkCodecTests(SimpleTestCase):
    """Tests for share links and trip ids."""

    def setUp(self):
        self.codec = LinkCodec(base_url='https://view.example.com/')

    def test_round_trip(self):
        for trip_id in [generate_trip_id() for _ in range(20)] + ['a', 'trip_1_x-Y']:
            link = self.codec.generate_share_link(trip_id)
            self.assertEqual(self.codec.parse_share_link(link), trip_id)

    def test_link_format(self):
        self.assertEqual(
            self.codec.generate_share_link('trip_1_abc'),
            'https://view.example.com/track/trip_1_abc'
        )

    def test_default_base_url_from_settings(self):
        with self.settings(TRIP_SHARE_BASE_URL='http://localhost:3000'):
            link = LinkCodec().generate_share_link('trip_1_abc')
        self.assertEqual(link, 'http://localhost:3000/track/trip_1_abc')

    def test_parse_accepts_other_hosts(self):
        self.assertEqual(self.codec.parse_share_link('http://localhost:3000/track/trip_9_z'), 'trip_9_z')

    def test_parse_rejects_malformed_links(self):
        bad_links = [
            'https://view.example.com/',
            'https://view.example.com/track/',
            'https://view.example.com/trips/trip_1',
            'https://view.example.com/track/bad.id',
            'https://view.example.com/track/bad%2Fid',
            None,
        ]
        for link in bad_links:
            with self.assertRaises(InvalidTripId):
                self.codec.parse_share_link(link)

    def test_generate_rejects_ids_with_separator(self):
        with self.assertRaises(InvalidTripId):
            self.codec.generate_share_link('trip/1')

    def test_trip_ids_are_unique_and_link_safe(self):
        ids = {generate_trip_id() for _ in range(1000)}
        self.assertEqual(len(ids), 1000)
        for trip_id in ids:
            self.assertEqual(validate_trip_id(trip_id), trip_id)
            self.assertNotIn('/', trip_id)

    def test_validate_rejects_trailing_newline(self):
        with self.assertRaises(InvalidTripId):
            validate_trip_id('trip_1\n')


class GoogleDirectionsServiceTests(SimpleTestCase):
    """Tests for Google Directions API service."""

    @patch('tracking.services.directions.requests.get')
    def test_get_route_success(self, mock_get):
        """Successful fetch returns polyline, length and duration."""
        mock_response = MagicMock()
        mock_response.json.return_value = {
            'status': 'OK',
            'routes': [{
                'overview_polyline': {'points': 'encoded'},
                'legs': [
                    {'distance': {'value': 1200}, 'duration': {'value': 180}},
                    {'distance': {'value': 800}, 'duration': {'value': 120}},
                ],
            }]
        }
        mock_response.raise_for_status = MagicMock()
        mock_get.return_value = mock_response

        service = GoogleDirectionsService(api_key='test-key')
        route = service.get_route(Point(37.01, -122.01), DESTINATION.point)

        self.assertEqual(route.polyline, 'encoded')
        self.assertEqual(route.distance_meters, 2000.0)
        self.assertEqual(route.duration_seconds, 300.0)

    @patch('tracking.services.directions.requests.get')
    def test_get_route_no_route(self, mock_get):
        """Test handling of no route found."""
        mock_response = MagicMock()
        mock_response.json.return_value = {'status': 'ZERO_RESULTS'}
        mock_response.raise_for_status = MagicMock()
        mock_get.return_value = mock_response

        service = GoogleDirectionsService(api_key='test-key')

        with self.assertRaises(DirectionsAPIError):
            service.get_route(Point(0, 0), Point(0, 0))

    def test_missing_api_key(self):
        """Test handling of missing API key."""
        service = GoogleDirectionsService(api_key='')

        with self.assertRaises(DirectionsAPIError) as context:
            service.get_route(Point(37.01, -122.01), DESTINATION.point)

        self.assertIn("not configured", str(context.exception))


class SpeedUnitTests(SimpleTestCase):

    def test_conversions(self):
        self.assertEqual(to_meters_per_second(10, SpeedUnit.METERS_PER_SECOND), 10)
        self.assertAlmostEqual(to_meters_per_second(36, SpeedUnit.KILOMETERS_PER_HOUR), 10)
        self.assertAlmostEqual(to_meters_per_second(10, 'mph'), 4.4704)

    def test_missing_or_invalid_speed(self):
        self.assertIsNone(to_meters_per_second(None, SpeedUnit.MILES_PER_HOUR))
        self.assertIsNone(to_meters_per_second(float('nan'), SpeedUnit.METERS_PER_SECOND))
        self.assertIsNone(to_meters_per_second('fast', SpeedUnit.METERS_PER_SECOND))


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class PushLocationSamplerTests(SimpleTestCase):
    """Tests for the push-fed location sampler."""

    def setUp(self):
        self.clock = FakeClock()
        self.sampler = PushLocationSampler(clock=self.clock)
        self.received = []
        self.subscription = self.sampler.watch(WatchOptions(), self.received.append)

    def test_throttles_to_time_or_distance(self):
        self.assertTrue(self.sampler.push(PositionSample(37.0, -122.0)))

        self.clock.now = 0.5
        self.assertFalse(self.sampler.push(PositionSample(37.00001, -122.0)))  # ~1m, 0.5s

        self.clock.now = 0.6
        self.assertTrue(self.sampler.push(PositionSample(37.0001, -122.0)))  # ~11m

        self.clock.now = 1.7
        self.assertTrue(self.sampler.push(PositionSample(37.0001, -122.0)))  # 1.1s later

        self.assertEqual(len(self.received), 3)

    def test_latest_sample_kept_even_when_throttled(self):
        self.sampler.push(PositionSample(37.0, -122.0))
        self.sampler.push(PositionSample(37.00001, -122.0))

        self.assertEqual(self.sampler.latest.lat, 37.00001)
        self.assertEqual(len(self.received), 1)

    def test_cancel_stops_delivery(self):
        self.subscription.cancel()
        self.assertFalse(self.sampler.push(PositionSample(37.0, -122.0)))
        self.assertEqual(self.received, [])

    async def test_current_position(self):
        with self.assertRaises(LocationUnavailable):
            await self.sampler.get_current_position()

        self.sampler.push(PositionSample(37.0, -122.0))
        sample = await self.sampler.get_current_position()
        self.assertEqual(sample.point, Point(37.0, -122.0))

    async def test_permission_denied(self):
        self.sampler.permission_granted = False
        with self.assertRaises(PermissionDenied):
            await self.sampler.get_current_position()
        with self.assertRaises(PermissionDenied):
            self.sampler.push(PositionSample(37.0, -122.0))


class TripStatusTests(SimpleTestCase):

    def test_forward_transitions(self):
        self.assertTrue(TripStatus.STARTED.can_advance_to(TripStatus.EN_ROUTE))
        self.assertTrue(TripStatus.EN_ROUTE.can_advance_to(TripStatus.EN_ROUTE))
        self.assertTrue(TripStatus.EN_ROUTE.can_advance_to(TripStatus.ARRIVED))
        self.assertTrue(TripStatus.EN_ROUTE.can_advance_to(TripStatus.STOPPED))
        self.assertTrue(TripStatus.STARTED.can_advance_to(TripStatus.STOPPED))

    def test_no_backward_or_terminal_transitions(self):
        self.assertFalse(TripStatus.EN_ROUTE.can_advance_to(TripStatus.STARTED))
        self.assertFalse(TripStatus.STARTED.can_advance_to(TripStatus.STARTED))
        for terminal in (TripStatus.ARRIVED, TripStatus.STOPPED):
            for status_ in TripStatus:
                self.assertFalse(terminal.can_advance_to(status_))


class CheckPatchTests(SimpleTestCase):

    def test_rejects_immutable_fields(self):
        with self.assertRaises(ImmutableFieldError):
            check_patch({'destination': {'lat': 0, 'lng': 0, 'address': ''}})
        with self.assertRaises(ImmutableFieldError):
            check_patch({'tripId': 'other'})

    def test_rejects_unknown_fields(self):
        with self.assertRaises(ValueError):
            check_patch({'colour': 'red'})

    def test_drops_caller_timestamp(self):
        self.assertEqual(check_patch({'timestamp': 'x', 'speed': 1.0}), {'speed': 1.0})


class InMemoryTripStoreTests(SimpleTestCase):
    """Tests for the in-memory trip store."""

    async def test_create_and_patch(self):
        store = InMemoryTripStore()
        created = await store.create('trip_1', sample_record('trip_1'))
        patched = await store.patch('trip_1', {'status': 'en_route', 'speed': 3.0})

        self.assertEqual(created['status'], 'started')
        self.assertEqual(patched['status'], 'en_route')
        self.assertEqual(patched['speed'], 3.0)
        self.assertEqual(patched['destination'], DESTINATION.to_dict())
        self.assertGreaterEqual(patched['timestamp'], created['timestamp'])

    async def test_patch_with_none_clears_field(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        await store.patch('trip_1', {'speed': 3.0})
        record = await store.patch('trip_1', {'speed': None})

        self.assertNotIn('speed', record)

    async def test_duplicate_create(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        with self.assertRaises(TripAlreadyExists):
            await store.create('trip_1', sample_record('trip_1'))

    async def test_patch_missing_record(self):
        store = InMemoryTripStore()
        with self.assertRaises(TripNotFound):
            await store.patch('trip_missing', {'status': 'en_route'})

    async def test_destination_is_immutable(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        with self.assertRaises(ImmutableFieldError):
            await store.patch('trip_1', {'destination': {'lat': 1, 'lng': 1, 'address': 'Y'}})

    async def test_unavailable(self):
        store = InMemoryTripStore()
        store.available = False
        with self.assertRaises(StoreUnavailable):
            await store.create('trip_1', sample_record('trip_1'))

    async def test_subscribers_see_every_change_in_order(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        first, second = Recorder(), Recorder()
        await store.subscribe('trip_1', first)
        await store.subscribe('trip_1', second)

        for speed in (1.0, 2.0, 3.0):
            await store.patch('trip_1', {'status': 'en_route', 'speed': speed})

        self.assertEqual([r.get('speed') for r in first.records], [None, 1.0, 2.0, 3.0])
        self.assertEqual(first.records, second.records)

    async def test_subscribe_to_missing_record(self):
        store = InMemoryTripStore()
        recorder = Recorder()
        unsubscribe = await store.subscribe('trip_missing', recorder)
        await unsubscribe()

        self.assertEqual(recorder.records, [None])

    async def test_remove_notifies_gone_once(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        recorder = Recorder()
        await store.subscribe('trip_1', recorder)

        self.assertTrue(await store.remove('trip_1'))
        self.assertFalse(await store.remove('trip_1'))
        self.assertEqual(recorder.statuses, ['started', None])
        self.assertIsNone(await store.get('trip_1'))

    async def test_unsubscribe_stops_delivery(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        recorder = Recorder()
        unsubscribe = await store.subscribe('trip_1', recorder)
        await unsubscribe()
        await store.patch('trip_1', {'status': 'en_route'})

        self.assertEqual(recorder.statuses, ['started'])

    async def test_subscriber_cannot_mutate_store(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        recorder = Recorder()
        await store.subscribe('trip_1', recorder)
        recorder.records[0]['status'] = 'stopped'

        self.assertEqual((await store.get('trip_1'))['status'], 'started')

    async def test_expire_deletes_after_delay(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        recorder = Recorder()
        await store.subscribe('trip_1', recorder)

        await store.expire('trip_1', 0.05)
        self.assertEqual(store.pending_expiries(), ['trip_1'])
        await wait_until(lambda: recorder.records[-1] is None)

        self.assertIsNone(await store.get('trip_1'))
        self.assertEqual(store.pending_expiries(), [])

    async def test_expire_missing_record_is_noop(self):
        store = InMemoryTripStore()
        await store.expire('trip_missing', 0.01)
        self.assertEqual(store.pending_expiries(), [])


class TripSessionTests(SimpleTestCase):
    """Tests for the trip session state machine."""

    def make_session(self, store=None, **kwargs):
        kwargs.setdefault('link_codec', LinkCodec(base_url='http://localhost:3000'))
        kwargs.setdefault('retention_seconds', 3600)
        return TripSession(store or CountingStore(), **kwargs)

    async def test_start_without_location_fails(self):
        session = self.make_session()
        with self.assertRaises(NoActiveLocationError):
            await session.start(DESTINATION)
        self.assertEqual(session.state, SessionState.IDLE)

    async def test_start_without_location_from_sampler_fails(self):
        session = self.make_session(sampler=PushLocationSampler())
        with self.assertRaises(NoActiveLocationError):
            await session.start(DESTINATION)
        self.assertEqual(session.state, SessionState.IDLE)

    async def test_start_with_permission_denied(self):
        sampler = PushLocationSampler()
        sampler.permission_granted = False
        session = self.make_session(sampler=sampler)
        with self.assertRaises(PermissionDenied):
            await session.start(DESTINATION)
        self.assertFalse(session.is_sharing)

    async def test_start_writes_started_record(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)

        trip_id = await session.start(DESTINATION, user_info=UserInfo(name='Ada'))
        record = await store.get(trip_id)

        self.assertEqual(session.state, SessionState.SHARING)
        self.assertEqual(session.trip_id, trip_id)
        self.assertEqual(record['tripId'], trip_id)
        self.assertEqual(record['status'], 'started')
        self.assertEqual(record['destination'], DESTINATION.to_dict())
        self.assertEqual(record['currentLocation'], {'lat': 37.001, 'lng': -122.001, 'accuracy': 5.0})
        self.assertEqual(record['userInfo'], {'name': 'Ada'})
        self.assertEqual(store.patches, [])

    async def test_scenario_started_then_en_route(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION, route=SCENARIO_ROUTE)
        recorder = Recorder()
        await store.subscribe(trip_id, recorder)

        session.report_location(NEAR_DESTINATION)
        await session.flush()

        record = recorder.records[-1]
        remaining = DistanceService.haversine_distance(37.001, -122.001, 37.0, -122.0)
        self.assertEqual(recorder.statuses, ['started', 'en_route'])
        self.assertAlmostEqual(record['route']['remainingDistance'], remaining)
        self.assertAlmostEqual(record['route']['progressPercent'], (1000 - remaining) / 10)
        self.assertEqual(record['route']['totalDistance'], 1000.0)

    async def test_zero_speed_stores_indeterminate_eta(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION, route=SCENARIO_ROUTE)

        session.report_location(NEAR_DESTINATION)
        await session.flush()
        route = (await store.get(trip_id))['route']

        self.assertIn('remainingDuration', route)
        self.assertIsNone(route['remainingDuration'])

    async def test_eta_uses_sampler_unit(self):
        store = CountingStore()
        session = self.make_session(store, speed_unit=SpeedUnit.MILES_PER_HOUR)
        moving = PositionSample(lat=37.001, lng=-122.001, speed=10.0)
        session.report_location(moving)
        trip_id = await session.start(DESTINATION, route=SCENARIO_ROUTE)

        session.report_location(moving)
        await session.flush()
        record = await store.get(trip_id)

        self.assertAlmostEqual(
            record['route']['remainingDuration'],
            record['route']['remainingDistance'] / 4.4704
        )
        self.assertEqual(record['speed'], 10.0)

    def test_speed_unit_must_match_sampler(self):
        sampler = PushLocationSampler(speed_unit=SpeedUnit.METERS_PER_SECOND)
        with self.assertRaises(ValueError):
            self.make_session(sampler=sampler, speed_unit=SpeedUnit.MILES_PER_HOUR)

    async def test_report_location_while_idle_is_noop(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        await session.flush()

        self.assertEqual(store.patches, [])

    async def test_stop_writes_stopped_and_goes_idle(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION)

        await session.stop()
        record = await store.get(trip_id)

        self.assertEqual(session.state, SessionState.IDLE)
        self.assertIsNone(session.trip_id)
        self.assertEqual(record['status'], 'stopped')
        self.assertEqual(store.pending_expiries(), [trip_id])

    async def test_no_writes_after_stop(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        await session.start(DESTINATION)
        await session.stop()
        writes = len(store.patches)

        session.report_location(NEAR_DESTINATION)
        await session.flush()

        self.assertEqual(len(store.patches), writes)

    async def test_stop_when_idle_is_noop(self):
        store = CountingStore()
        session = self.make_session(store)
        await session.stop()
        self.assertEqual(store.patches, [])

    async def test_start_twice_stops_first_trip(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)

        first = await session.start(DESTINATION)
        second = await session.start(DESTINATION)

        self.assertNotEqual(first, second)
        self.assertEqual(session.trip_id, second)
        self.assertEqual((await store.get(first))['status'], 'stopped')
        self.assertEqual((await store.get(second))['status'], 'started')
        self.assertTrue(all(trip_id == first for trip_id, _ in store.patches))

    async def test_start_fails_when_store_unavailable(self):
        store = CountingStore()
        store.available = False
        sampler = PushLocationSampler()
        sampler.push(NEAR_DESTINATION)
        session = self.make_session(store, sampler=sampler)

        with self.assertRaises(StoreUnavailable):
            await session.start(DESTINATION)

        self.assertEqual(session.state, SessionState.IDLE)
        self.assertFalse(sampler.push(NEAR_DESTINATION))

    async def test_start_times_out(self):
        store = CountingStore(latency=0.5)
        session = self.make_session(store, write_timeout=0.01)
        session.report_location(NEAR_DESTINATION)

        with self.assertRaises(StoreUnavailable):
            await session.start(DESTINATION)
        self.assertFalse(session.is_sharing)

        # The insert still lands after the timeout; the session removes it.
        await session.close()
        self.assertEqual(len(store.created), 1)
        self.assertIsNone(await store.get(store.created[0]))

    async def test_out_of_order_sample_is_dropped(self):
        store = CountingStore()
        session = self.make_session(store)
        newer = PositionSample(lat=37.001, lng=-122.001)
        older = PositionSample(lat=37.002, lng=-122.002, recorded_at=newer.recorded_at - timedelta(seconds=5))
        session.report_location(newer)
        trip_id = await session.start(DESTINATION)

        session.report_location(older)
        await session.flush()

        self.assertEqual(store.patches, [])
        self.assertEqual((await store.get(trip_id))['currentLocation']['lat'], 37.001)

    async def test_write_failures_are_swallowed(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION)

        store.available = False
        session.report_location(NEAR_DESTINATION)
        await session.flush()
        self.assertTrue(session.is_sharing)

        store.available = True
        session.report_location(NEAR_DESTINATION)
        await session.flush()
        self.assertEqual((await store.get(trip_id))['status'], 'en_route')

    async def test_stop_failure_is_swallowed(self):
        store = CountingStore()
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        await session.start(DESTINATION)

        store.available = False
        await session.stop()

        self.assertEqual(session.state, SessionState.IDLE)

    async def test_slow_store_keeps_only_latest_pending_write(self):
        store = CountingStore(latency=0.05)
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION)

        for i in range(20):
            session.report_location(PositionSample(lat=37.001 + i * 0.0001, lng=-122.001))
        await session.flush()

        record = await store.get(trip_id)
        self.assertLessEqual(len(store.patches), 2)
        self.assertAlmostEqual(record['currentLocation']['lat'], 37.001 + 19 * 0.0001)

    async def test_stopped_is_last_write(self):
        store = CountingStore(latency=0.02)
        session = self.make_session(store)
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION)

        session.report_location(NEAR_DESTINATION)
        await session.stop()
        await asyncio.sleep(0.1)

        self.assertEqual((await store.get(trip_id))['status'], 'stopped')
        self.assertEqual(store.patches[-1][1], {'status': 'stopped'})

    async def test_record_deleted_after_retention(self):
        store = CountingStore()
        session = self.make_session(store, retention_seconds=0.05)
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION)
        recorder = Recorder()
        await store.subscribe(trip_id, recorder)

        await session.stop()
        del session
        await wait_until(lambda: recorder.records[-1] is None)

        self.assertEqual(recorder.statuses, ['started', 'stopped', None])
        self.assertIsNone(await store.get(trip_id))

    async def test_arrival_ends_sharing(self):
        store = CountingStore()
        session = self.make_session(store, arrival_radius_meters=30)
        session.report_location(PositionSample(lat=37.001, lng=-122.001))
        trip_id = await session.start(DESTINATION)

        session.report_location(PositionSample(lat=37.0, lng=-122.0))
        await session.close()

        record = await store.get(trip_id)
        self.assertEqual(record['status'], 'arrived')
        self.assertEqual(session.state, SessionState.IDLE)
        self.assertEqual(store.pending_expiries(), [trip_id])
        self.assertNotIn({'status': 'stopped'}, [fields for _, fields in store.patches])

    async def test_sampler_drives_session_and_detaches_on_stop(self):
        store = CountingStore()
        sampler = PushLocationSampler()
        session = self.make_session(store, sampler=sampler)
        sampler.push(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION)

        self.assertTrue(sampler.push(PositionSample(lat=37.002, lng=-122.002)))
        await session.flush()
        self.assertEqual((await store.get(trip_id))['currentLocation']['lat'], 37.002)

        await session.stop()
        self.assertFalse(sampler.push(PositionSample(lat=37.003, lng=-122.003)))

    async def test_directions_failure_falls_back_to_straight_line(self):
        directions = MagicMock()
        directions.get_route.side_effect = DirectionsAPIError("down")
        session = self.make_session(directions=directions, sinuosity_factor=1.3)
        session.report_location(PositionSample(lat=37.01, lng=-122.01))

        await session.start(DESTINATION)

        self.assertTrue(session.baseline.is_approximate)
        expected = great_circle_distance(Point(37.01, -122.01), DESTINATION.point) * 1.3
        self.assertAlmostEqual(session.baseline.total_distance_meters, expected)

    async def test_directions_route_sets_baseline(self):
        directions = MagicMock()
        directions.get_route.return_value = RouteGeometry(polyline='x', distance_meters=1800.0)
        session = self.make_session(directions=directions)
        session.report_location(PositionSample(lat=37.01, lng=-122.01))

        await session.start(DESTINATION)

        self.assertEqual(session.baseline.total_distance_meters, 1800.0)
        self.assertFalse(session.baseline.is_approximate)

    async def test_share_link_round_trip(self):
        session = self.make_session()
        session.report_location(NEAR_DESTINATION)
        trip_id = await session.start(DESTINATION)

        link = session.generate_share_link(trip_id)
        self.assertTrue(link.startswith('http://localhost:3000/track/'))
        self.assertEqual(session.parse_share_link(link), trip_id)


class TripViewerTests(SimpleTestCase):
    """Tests for the observer-side viewer."""

    async def test_missing_trip(self):
        viewer = TripViewer(InMemoryTripStore(), 'trip_missing')
        self.assertIsNone(await viewer.open())
        self.assertTrue(viewer.gone)
        self.assertFalse(viewer.render()['found'])

    def test_invalid_trip_id(self):
        with self.assertRaises(InvalidTripId):
            TripViewer(InMemoryTripStore(), 'not/valid')

    async def test_follows_updates_until_gone(self):
        store = InMemoryTripStore()
        await store.create('trip_1', sample_record('trip_1'))
        views = []

        async def on_update(record, view):
            views.append(view)

        viewer = TripViewer(store, 'trip_1', on_update=on_update)
        await viewer.open()
        await store.patch('trip_1', {'status': 'en_route'})
        await store.remove('trip_1')

        self.assertEqual([view.get('status') for view in views], ['started', 'en_route', None])
        self.assertTrue(views[-1]['gone'])
        self.assertTrue(viewer.gone)
        await viewer.close()

    def test_render_indeterminate_eta(self):
        record = sample_record('trip_1')
        record['route'] = {
            'totalDistance': 1000.0,
            'remainingDistance': 142.3,
            'progressPercent': 85.77,
            'estimatedDuration': None,
            'remainingDuration': None,
        }
        view = render_trip(record)

        self.assertIsNone(view['eta_minutes'])
        self.assertEqual(view['remaining_km'], 0.14)
        self.assertEqual(view['progress_percent'], 85.8)
        self.assertFalse(view['is_stale'])

    def test_render_stale_record(self):
        record = sample_record('trip_1')
        later = datetime.now(dt_timezone.utc) + timedelta(minutes=5)
        self.assertTrue(render_trip(record, now=later, stale_after=60)['is_stale'])

    def test_render_finished(self):
        record = dict(sample_record('trip_1'), status='stopped')
        self.assertTrue(render_trip(record)['finished'])


class KafkaProducerClientTests(SimpleTestCase):
    """Tests for the change feed producer."""

    @patch('tracking.kafka_client.broadcast_change', new_callable=AsyncMock)
    async def test_disabled_broadcasts_directly(self, mock_broadcast):
        client = KafkaProducerClient(enabled=False)
        await client.publish_change('trip_1', {'status': 'started'})

        mock_broadcast.assert_awaited_once_with('trip_1', {'status': 'started'})

    @patch('tracking.kafka_client.broadcast_change', new_callable=AsyncMock)
    @patch('tracking.kafka_client.AIOKafkaProducer')
    async def test_unreachable_kafka_falls_back(self, mock_producer_class, mock_broadcast):
        mock_producer_class.return_value.start = AsyncMock(side_effect=KafkaConnectionError())
        client = KafkaProducerClient(enabled=True)
        await client.publish_change('trip_1', None)

        self.assertIsNone(client.producer)
        mock_broadcast.assert_awaited_once_with('trip_1', None)

    @patch('tracking.kafka_client.broadcast_change', new_callable=AsyncMock)
    @patch('tracking.kafka_client.AIOKafkaProducer')
    async def test_publishes_keyed_by_trip(self, mock_producer_class, mock_broadcast):
        producer = mock_producer_class.return_value
        producer.start = AsyncMock()
        producer.send_and_wait = AsyncMock()
        client = KafkaProducerClient(enabled=True)
        await client.publish_change('trip_1', {'status': 'en_route'})

        producer.send_and_wait.assert_awaited_once_with(
            client.topic,
            {'trip_id': 'trip_1', 'record': {'status': 'en_route'}},
            key='trip_1',
        )
        mock_broadcast.assert_not_awaited()

    def test_group_name(self):
        self.assertEqual(trip_group_name('trip_1_abc'), 'trip_trip_1_abc')
        self.assertNotEqual(trip_group_name('a'), trip_group_name('b'))


class TripModelTests(TestCase):
    """Tests for the Trip model."""

    def test_record_round_trip(self):
        record = sample_record('trip_model')
        trip = Trip.from_record(record)
        trip.save()

        stored = Trip.objects.get(pk='trip_model').to_record()
        self.assertEqual(stored['tripId'], 'trip_model')
        self.assertEqual(stored['status'], 'started')
        self.assertEqual(stored['destination'], DESTINATION.to_dict())
        self.assertEqual(stored['currentLocation'], record['currentLocation'])
        self.assertNotIn('speed', stored)
        self.assertNotIn('userInfo', stored)

    def test_apply_patch_marks_stop_time(self):
        trip = Trip.from_record(sample_record('trip_model'))
        trip.apply_patch({'status': 'stopped'})

        self.assertEqual(trip.status, 'stopped')
        self.assertIsNotNone(trip.stopped_at)

    def test_trip_string_representation(self):
        trip = Trip.from_record(sample_record('trip_model'))
        self.assertIn('trip_model', str(trip))


class DjangoTripStoreTests(TransactionTestCase):
    """Tests for the ORM-backed trip store."""

    async def test_create_get_patch(self):
        store = DjangoTripStore()
        await store.create('trip_db', sample_record('trip_db'))
        patched = await store.patch('trip_db', {'status': 'en_route', 'speed': 4.0})

        self.assertEqual(patched['status'], 'en_route')
        self.assertEqual(patched['speed'], 4.0)
        self.assertEqual((await store.get('trip_db'))['speed'], 4.0)

    async def test_duplicate_and_missing(self):
        store = DjangoTripStore()
        await store.create('trip_db', sample_record('trip_db'))

        with self.assertRaises(TripAlreadyExists):
            await store.create('trip_db', sample_record('trip_db'))
        with self.assertRaises(TripNotFound):
            await store.patch('trip_other', {'status': 'en_route'})
        self.assertIsNone(await store.get('trip_other'))

    async def test_subscribers_receive_changes_and_gone(self):
        store = DjangoTripStore()
        await store.create('trip_db', sample_record('trip_db'))
        first, second = Recorder(), Recorder()
        await store.subscribe('trip_db', first)
        await store.subscribe('trip_db', second)

        await store.patch('trip_db', {'status': 'en_route', 'speed': 1.0})
        await store.patch('trip_db', {'status': 'en_route', 'speed': 2.0})
        await store.remove('trip_db')
        await wait_until(lambda: len(first.records) == 4 and len(second.records) == 4)

        self.assertEqual(first.statuses, ['started', 'en_route', 'en_route', None])
        self.assertEqual(first.records, second.records)

    async def test_subscriber_skips_changes_older_than_snapshot(self):
        store = DjangoTripStore()
        created = await store.create('trip_db', sample_record('trip_db'))
        recorder = Recorder()
        await store.subscribe('trip_db', recorder)

        # A change that was already in flight when the snapshot was read.
        stale = dict(created, status='stopped', timestamp='2000-01-01T00:00:00+00:00')
        await broadcast_change('trip_db', stale)
        await store.patch('trip_db', {'status': 'en_route'})
        await wait_until(lambda: len(recorder.records) == 2)

        self.assertEqual(recorder.statuses, ['started', 'en_route'])
        await store.remove('trip_db')

    async def test_expire_sets_deadline_and_deletes(self):
        store = DjangoTripStore()
        await store.create('trip_db', sample_record('trip_db'))
        recorder = Recorder()
        await store.subscribe('trip_db', recorder)

        await store.expire('trip_db', 0.05)
        await wait_until(lambda: recorder.records[-1] is None)

        self.assertIsNone(await store.get('trip_db'))

    async def test_expire_is_durable(self):
        store = DjangoTripStore()
        await store.create('trip_db', sample_record('trip_db'))
        await store.expire('trip_db', 3600)

        trip = await Trip.objects.aget(pk='trip_db')
        self.assertGreater(trip.expires_at, timezone.now() + timedelta(minutes=59))

    async def test_timed_out_start_leaves_no_row(self):
        session = TripSession(
            SlowInsertTripStore(),
            link_codec=LinkCodec(base_url='http://localhost:3000'),
            retention_seconds=3600,
            write_timeout=0.05,
        )
        session.report_location(NEAR_DESTINATION)

        with self.assertRaises(StoreUnavailable):
            await session.start(DESTINATION)
        self.assertFalse(session.is_sharing)

        await session.close()
        self.assertEqual(await Trip.objects.acount(), 0)

    def test_purge_expired_trips_command(self):
        now = timezone.now()
        for trip_id, expires_at in (
            ('trip_old', now - timedelta(seconds=1)),
            ('trip_new', now + timedelta(hours=1)),
            ('trip_live', None),
            ('trip_abandoned', None),
        ):
            trip = Trip.from_record(sample_record(trip_id))
            trip.expires_at = expires_at
            if trip_id == 'trip_abandoned':
                trip.timestamp = now - timedelta(days=2)
            trip.save()

        out = StringIO()
        call_command('purge_expired_trips', stdout=out)

        self.assertEqual(
            set(Trip.objects.values_list('trip_id', flat=True)),
            {'trip_new', 'trip_live'}
        )
        self.assertIn('Purged 2 expired trip(s)', out.getvalue())


class TripAPITests(APITransactionTestCase):
    """Tests for the read API and share link endpoint."""

    def setUp(self):
        reset_trip_stores()
        record = sample_record('trip_api')
        record['route'] = {
            'totalDistance': 1000.0,
            'remainingDistance': 142.3,
            'progressPercent': 85.77,
            'estimatedDuration': None,
            'remainingDuration': None,
        }
        Trip.from_record(record).save()

    def tearDown(self):
        reset_trip_stores()

    def test_retrieve_trip(self):
        url = reverse('trip-detail', kwargs={'trip_id': 'trip_api'})
        response = self.client.get(url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['tripId'], 'trip_api')
        self.assertEqual(response.data['status'], 'started')
        self.assertIsNone(response.data['route']['remainingDuration'])

    def test_retrieve_missing_trip(self):
        url = reverse('trip-detail', kwargs={'trip_id': 'trip_missing'})
        response = self.client.get(url)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_retrieve_malformed_trip_id(self):
        response = self.client.get('/api/trips/bad.id/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_share_link(self):
        response = self.client.get('/track/trip_api')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['trip_id'], 'trip_api')
        self.assertEqual(response.data['record']['tripId'], 'trip_api')
        self.assertEqual(response.data['view']['progress_percent'], 85.8)
        self.assertIsNone(response.data['view']['eta_minutes'])

    def test_share_link_not_found(self):
        response = self.client.get('/track/trip_missing')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


@override_settings(TRIP_STORE_BACKEND='tracking.store.InMemoryTripStore', GOOGLE_MAPS_API_KEY='')
class WebSocketConsumerTests(SimpleTestCase):
    """Tests for the sharer and observer WebSocket consumers."""

    databases = {"default"}

    def setUp(self):
        reset_trip_stores()
        self.application = URLRouter(websocket_urlpatterns)

    def tearDown(self):
        reset_trip_stores()

    async def test_viewer_unknown_trip(self):
        communicator = WebsocketCommunicator(self.application, "/ws/track/trip_missing/")
        connected, _ = await communicator.connect()
        self.assertTrue(connected)

        response = await communicator.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'TRIP_NOT_FOUND')
        await communicator.disconnect()

    async def test_viewer_malformed_trip_id(self):
        communicator = WebsocketCommunicator(self.application, "/ws/track/bad.id/")
        await communicator.connect()

        response = await communicator.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'TRIP_NOT_FOUND')
        await communicator.disconnect()

    async def test_unknown_message_type(self):
        communicator = WebsocketCommunicator(self.application, "/ws/share/")
        await communicator.connect()
        await communicator.send_json_to({'type': 'FLY'})

        response = await communicator.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'ERROR')
        await communicator.disconnect()

    async def test_start_before_location(self):
        communicator = WebsocketCommunicator(self.application, "/ws/share/")
        await communicator.connect()
        await communicator.send_json_to({
            'type': 'START_SHARING',
            'data': {'destination': {'lat': 37.0, 'lng': -122.0, 'address': 'X'}},
        })

        response = await communicator.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'ERROR')
        self.assertIn('no location', response['data']['message'])
        await communicator.disconnect()

    async def test_invalid_location(self):
        communicator = WebsocketCommunicator(self.application, "/ws/share/")
        await communicator.connect()
        await communicator.send_json_to({'type': 'PUBLISH_LOCATION', 'data': {'lat': 100, 'lng': 0}})

        response = await communicator.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'ERROR')
        self.assertIn('lat', response['data']['errors'])
        await communicator.disconnect()

    async def test_share_and_watch(self):
        sharer = WebsocketCommunicator(self.application, "/ws/share/")
        await sharer.connect()

        await sharer.send_json_to({
            'type': 'PUBLISH_LOCATION',
            'data': {'lat': 37.001, 'lng': -122.001, 'speed': 0},
        })
        response = await sharer.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'LOCATION_ACCEPTED')
        self.assertFalse(response['data']['sharing'])

        await sharer.send_json_to({
            'type': 'START_SHARING',
            'data': {
                'destination': {'lat': 37.0, 'lng': -122.0, 'address': 'X'},
                'user_info': {'name': 'Ada'},
                'route': {'polyline': '', 'distance_meters': 1000},
            },
        })
        response = await sharer.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'SHARING_STARTED')
        trip_id = response['data']['trip_id']
        self.assertTrue(response['data']['share_link'].endswith(f'/track/{trip_id}'))

        viewers = []
        for _ in range(2):
            viewer = WebsocketCommunicator(self.application, f"/ws/track/{trip_id}/")
            await viewer.connect()
            snapshot = await viewer.receive_json_from(timeout=1)
            self.assertEqual(snapshot['type'], 'TRIP_SNAPSHOT')
            self.assertEqual(snapshot['data']['record']['status'], 'started')
            self.assertEqual(snapshot['data']['view']['sharer_name'], 'Ada')
            viewers.append(viewer)

        await sharer.send_json_to({
            'type': 'PUBLISH_LOCATION',
            'data': {'lat': 37.0005, 'lng': -122.0005, 'speed': 0},
        })
        response = await sharer.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'LOCATION_ACCEPTED')
        self.assertTrue(response['data']['sharing'])

        for viewer in viewers:
            snapshot = await viewer.receive_json_from(timeout=1)
            self.assertEqual(snapshot['data']['record']['status'], 'en_route')
            self.assertIsNone(snapshot['data']['record']['route']['remainingDuration'])
            self.assertIsNone(snapshot['data']['view']['eta_minutes'])

        await sharer.send_json_to({'type': 'STOP_SHARING'})
        response = await sharer.receive_json_from(timeout=1)
        self.assertEqual(response['type'], 'SHARING_STOPPED')
        self.assertEqual(response['data']['trip_id'], trip_id)

        for viewer in viewers:
            snapshot = await viewer.receive_json_from(timeout=1)
            self.assertEqual(snapshot['data']['record']['status'], 'stopped')
            self.assertTrue(snapshot['data']['view']['finished'])
            await viewer.disconnect()

        await sharer.disconnect()
