"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.driver_consumer import DriverConsumer
from .consumers.ride_consumer import RideConsumer

websocket_urlpatterns = [
    # Driver dashboard: live pending-ride list
    # URL: ws://localhost:8000/ws/driver/
    re_path(
        r"ws/driver/$",
        DriverConsumer.as_asgi(),
        name="driver-ws"
    ),
    
    # Ride room (shared by rider and assigned driver)
    # URL: ws://localhost:8000/ws/ride/<ride_id>/<role>/
    re_path(
        r"ws/ride/(?P<ride_id>\d+)/(?P<role>rider|driver)/$",
        RideConsumer.as_asgi(),
        name="ride-ws"
    ),
]
