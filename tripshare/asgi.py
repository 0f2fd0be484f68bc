"""
ASGI entrypoint for tripshare.

HTTP goes to Django (read API, share links, admin). WebSocket traffic goes to
the tracking consumers: ws/share/ for the sharer, ws/track/<trip_id>/ for
observers.
"""

import os

from channels.routing import ProtocolTypeRouter, URLRouter
from channels.security.websocket import AllowedHostsOriginValidator
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'tripshare.settings')

# The app registry must be ready before the consumers import models.
django_asgi_app = get_asgi_application()

from tracking.routing import websocket_urlpatterns  # noqa: E402

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    # Observers hold only a share link, so sockets are checked by origin, not by user.
    "websocket": AllowedHostsOriginValidator(URLRouter(websocket_urlpatterns)),
})
