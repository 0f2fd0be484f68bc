"""
Serializers for the trip sharing API and socket messages.
"""

from rest_framework import serializers

from .records import Destination, PositionSample, TripStatus, UserInfo


def _validate_latitude(value):
    if not -90 <= value <= 90:
        raise serializers.ValidationError("Latitude must be between -90 and 90")
    return value


def _validate_longitude(value):
    if not -180 <= value <= 180:
        raise serializers.ValidationError("Longitude must be between -180 and 180")
    return value


class DestinationSerializer(serializers.Serializer):
    """Trip destination."""

    lat = serializers.FloatField()
    lng = serializers.FloatField()
    address = serializers.CharField(allow_blank=True, default='', max_length=500)

    def validate_lat(self, value):
        return _validate_latitude(value)

    def validate_lng(self, value):
        return _validate_longitude(value)


class UserInfoSerializer(serializers.Serializer):
    """Optional sharer details."""

    name = serializers.CharField(required=False, allow_blank=True, max_length=200)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=50)


class PositionSampleSerializer(serializers.Serializer):
    """A location sample pushed by the sharer's device."""

    lat = serializers.FloatField()
    lng = serializers.FloatField()
    accuracy = serializers.FloatField(required=False, allow_null=True, min_value=0)
    speed = serializers.FloatField(required=False, allow_null=True)
    heading = serializers.FloatField(required=False, allow_null=True)
    recorded_at = serializers.DateTimeField(required=False)

    def validate_lat(self, value):
        return _validate_latitude(value)

    def validate_lng(self, value):
        return _validate_longitude(value)

    def to_sample(self) -> PositionSample:
        return PositionSample(**self.validated_data)


class RouteGeometrySerializer(serializers.Serializer):
    """Route the client already fetched, used instead of calling the directions API."""

    polyline = serializers.CharField(allow_blank=True, default='')
    distance_meters = serializers.FloatField(required=False, allow_null=True, min_value=0)
    duration_seconds = serializers.FloatField(required=False, allow_null=True, min_value=0)


class StartSharingSerializer(serializers.Serializer):
    """Payload of a START_SHARING message."""

    destination = DestinationSerializer()
    user_info = UserInfoSerializer(required=False)
    route = RouteGeometrySerializer(required=False)

    def get_destination(self) -> Destination:
        return Destination(**self.validated_data['destination'])

    def get_user_info(self):
        data = self.validated_data.get('user_info')
        return UserInfo(**data) if data else None


class CurrentLocationSerializer(serializers.Serializer):
    lat = serializers.FloatField()
    lng = serializers.FloatField()
    accuracy = serializers.FloatField(required=False)


class RouteProgressSerializer(serializers.Serializer):
    """Distances in meters, durations in seconds. Null durations are unknown."""

    totalDistance = serializers.FloatField()
    remainingDistance = serializers.FloatField()
    progressPercent = serializers.FloatField(allow_null=True, required=False)
    estimatedDuration = serializers.FloatField(allow_null=True, required=False)
    remainingDuration = serializers.FloatField(allow_null=True, required=False)
    isApproximate = serializers.BooleanField(required=False)


class TripRecordSerializer(serializers.Serializer):
    """The shared trip record exactly as observers read it."""

    tripId = serializers.CharField()
    status = serializers.ChoiceField(choices=TripStatus.choices)
    timestamp = serializers.CharField()
    destination = DestinationSerializer()
    currentLocation = CurrentLocationSerializer(required=False)
    route = RouteProgressSerializer(required=False)
    speed = serializers.FloatField(required=False)
    heading = serializers.FloatField(required=False)
    userInfo = UserInfoSerializer(required=False)


class TrackLinkResponseSerializer(serializers.Serializer):
    """Response for a share link: the raw record plus the observer view model."""

    trip_id = serializers.CharField()
    record = TripRecordSerializer()
    view = serializers.DictField()
