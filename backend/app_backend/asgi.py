"""
ASGI config for the ride backend.

Serves HTTP through Django and WebSockets through Channels.
"""

import os

from django.core.asgi import get_asgi_application
from channels.routing import ProtocolTypeRouter, URLRouter

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'app_backend.settings.settings')

# Initialize Django before importing consumers so the app registry is ready.
django_asgi_app = get_asgi_application()

from realtime.routing import websocket_urlpatterns

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    "websocket": URLRouter(websocket_urlpatterns),
})
