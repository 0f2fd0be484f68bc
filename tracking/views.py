"""
API views for reading shared trips.

Observers only ever read; all writes come from the sharer's TripSession.
"""

from asgiref.sync import async_to_sync
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import extend_schema, OpenApiParameter
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import InvalidTripId
from .serializers import TrackLinkResponseSerializer, TripRecordSerializer
from .services.links import validate_trip_id
from .services.viewer import render_trip
from .store import get_trip_store

TRIP_ID_PARAMETER = OpenApiParameter(
    name='trip_id',
    type=OpenApiTypes.STR,
    location=OpenApiParameter.PATH,
    description='Trip id from the share link',
)


class TripLookupMixin:
    """Resolves a trip id to its current record, or a 404 response."""

    def get_record(self, trip_id):
        try:
            validate_trip_id(trip_id)
        except InvalidTripId:
            return None, self.not_found(trip_id)

        record = async_to_sync(get_trip_store().get)(trip_id)
        if record is None:
            return None, self.not_found(trip_id)
        return record, None

    @staticmethod
    def not_found(trip_id):
        return Response(
            {'error': f'Trip {trip_id} not found'},
            status=status.HTTP_404_NOT_FOUND
        )


class TripDetailView(TripLookupMixin, APIView):
    """
    API view for the current state of a shared trip.
    """

    @extend_schema(
        summary="Get a shared trip",
        description="Return the latest trip record. Unknown, expired and malformed ids all return 404.",
        tags=['Trips'],
        parameters=[TRIP_ID_PARAMETER],
        responses={200: TripRecordSerializer},
    )
    def get(self, request, trip_id):
        record, error = self.get_record(trip_id)
        if error:
            return error
        return Response(TripRecordSerializer(record).data)


class TrackLinkView(TripLookupMixin, APIView):
    """
    Target of a share link: <viewer-base-url>/track/<trip_id>.
    """

    @extend_schema(
        summary="Open a share link",
        description="""
        Resolve a share link to the trip it points at.

        Returns the raw record and the observer view model. Live updates are
        available on the `ws/track/<trip_id>/` WebSocket.
        """,
        tags=['Tracking'],
        parameters=[TRIP_ID_PARAMETER],
        responses={200: TrackLinkResponseSerializer},
    )
    def get(self, request, trip_id):
        record, error = self.get_record(trip_id)
        if error:
            return error

        return Response({
            'trip_id': trip_id,
            'record': TripRecordSerializer(record).data,
            'view': render_trip(record),
        })
