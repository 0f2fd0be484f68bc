"""
WebSocket consumers for sharing a trip and watching one.
"""

import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.conf import settings

from .exceptions import (
    InvalidTripId,
    NoActiveLocationError,
    PermissionDenied,
    StoreError,
    StoreUnavailable,
)
from .serializers import PositionSampleSerializer, StartSharingSerializer
from .services.directions import GoogleDirectionsService, RouteGeometry
from .services.sampler import PushLocationSampler
from .services.session import TripSession
from .services.viewer import TripViewer
from .store import get_trip_store

logger = logging.getLogger(__name__)


class TripSharingConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer for the sharer's device.

    Each connection owns one TripSession, fed by the positions the client
    pushes.

    Message Types:
    - START_SHARING: Start a trip to a destination
    - PUBLISH_LOCATION: Report the device's current position
    - STOP_SHARING: End the current trip

    Replies:
    - SHARING_STARTED, LOCATION_ACCEPTED, TRIP_ARRIVED, SHARING_STOPPED, ERROR
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sampler = None
        self.session = None

    async def connect(self):
        """Handle WebSocket connection."""
        await self.accept()
        self.sampler = PushLocationSampler(speed_unit=settings.LOCATION_SPEED_UNIT)
        directions = GoogleDirectionsService() if settings.GOOGLE_MAPS_API_KEY else None
        self.session = TripSession(
            get_trip_store(),
            sampler=self.sampler,
            directions=directions,
        )
        logger.info(f"Sharer connected: {self.channel_name}")

    async def disconnect(self, close_code):
        """Handle WebSocket disconnection."""
        if self.session:
            await self.session.close()

        logger.info(f"Sharer disconnected: {self.channel_name}, code: {close_code}")

    async def receive_json(self, content):
        """Handle incoming JSON messages."""
        message_type = content.get('type')
        data = content.get('data', {})

        handlers = {
            'START_SHARING': self._handle_start,
            'PUBLISH_LOCATION': self._handle_publish_location,
            'STOP_SHARING': self._handle_stop,
        }

        handler = handlers.get(message_type)
        if handler:
            await handler(data)
        else:
            await self._send_error(f'Unknown message type: {message_type}')

    async def _send_error(self, message, **extra):
        await self.send_json({
            'type': 'ERROR',
            'data': {'message': message, **extra}
        })

    async def _handle_start(self, data):
        """Handle START_SHARING message."""
        serializer = StartSharingSerializer(data=data)
        if not serializer.is_valid():
            await self._send_error('Invalid START_SHARING payload', errors=serializer.errors)
            return

        route_data = serializer.validated_data.get('route')
        route = RouteGeometry(**route_data) if route_data else None

        try:
            trip_id = await self.session.start(
                serializer.get_destination(),
                user_info=serializer.get_user_info(),
                route=route,
            )
        except NoActiveLocationError:
            await self._send_error('Could not start sharing: no location available yet')
            return
        except PermissionDenied:
            await self._send_error('Could not start sharing: location permission denied')
            return
        except StoreError as e:
            logger.error(f"Failed to start sharing: {e}")
            await self._send_error('Could not start sharing')
            return

        await self.send_json({
            'type': 'SHARING_STARTED',
            'data': {
                'trip_id': trip_id,
                'share_link': self.session.generate_share_link(trip_id),
            }
        })

    async def _handle_publish_location(self, data):
        """Handle PUBLISH_LOCATION message."""
        serializer = PositionSampleSerializer(data=data)
        if not serializer.is_valid():
            await self._send_error('Invalid location', errors=serializer.errors)
            return

        trip_id = self.session.trip_id
        try:
            self.sampler.push(serializer.to_sample())
        except PermissionDenied:
            await self._send_error('Location permission denied')
            return

        if trip_id and not self.session.is_sharing:
            await self.send_json({
                'type': 'TRIP_ARRIVED',
                'data': {'trip_id': trip_id}
            })
            return

        await self.send_json({
            'type': 'LOCATION_ACCEPTED',
            'data': {'trip_id': self.session.trip_id, 'sharing': self.session.is_sharing}
        })

    async def _handle_stop(self, data):
        """Handle STOP_SHARING message."""
        trip_id = self.session.trip_id
        await self.session.stop()

        await self.send_json({
            'type': 'SHARING_STOPPED',
            'data': {'trip_id': trip_id}
        })


class TripViewerConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer for observers of one trip: ws/track/<trip_id>/.

    Broadcast Messages:
    - TRIP_SNAPSHOT: Full record and view model, on connect and every change
    - TRIP_GONE: The record was deleted; the socket closes afterwards
    - TRIP_NOT_FOUND: Malformed or unknown trip id; the socket closes
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.viewer = None

    async def connect(self):
        """Handle WebSocket connection."""
        await self.accept()
        trip_id = self.scope['url_route']['kwargs'].get('trip_id')

        try:
            self.viewer = TripViewer(get_trip_store(), trip_id, on_update=self._send_update)
        except InvalidTripId:
            await self._send_not_found(trip_id)
            return

        try:
            await self.viewer.open()
        except StoreUnavailable as e:
            logger.warning(f"Cannot watch trip {trip_id}: {e}")
            await self.send_json({
                'type': 'ERROR',
                'data': {'message': 'Trip store unavailable'}
            })
            await self.close()
            return

        logger.info(f"Observer {self.channel_name} watching trip {trip_id}")

    async def disconnect(self, close_code):
        """Handle WebSocket disconnection."""
        if self.viewer:
            await self.viewer.close()

    async def _send_not_found(self, trip_id):
        await self.send_json({
            'type': 'TRIP_NOT_FOUND',
            'data': {'trip_id': trip_id}
        })
        await self.close()

    async def _send_update(self, record, view):
        if record is not None:
            await self.send_json({
                'type': 'TRIP_SNAPSHOT',
                'data': {'record': record, 'view': view}
            })
            return

        if self.viewer.updates > 1:
            await self.send_json({
                'type': 'TRIP_GONE',
                'data': {'trip_id': self.viewer.trip_id}
            })
            await self.close()
        else:
            await self._send_not_found(self.viewer.trip_id)
