"""
WebSocket URL routing for the tracking app.
"""

from django.urls import re_path
from .consumers import TripSharingConsumer, TripViewerConsumer

websocket_urlpatterns = [
    re_path(r'ws/share/$', TripSharingConsumer.as_asgi()),
    re_path(r'ws/track/(?P<trip_id>[^/]+)/$', TripViewerConsumer.as_asgi()),
]
