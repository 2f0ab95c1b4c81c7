"""
Client-side ride sessions.

One session object per connected party, driven by the HTTP API, the
WebSocket ride events and periodic polling of the same authoritative reads.

    from client import RideApiClient, RiderSession
    rider = RiderSession(RideApiClient("http://localhost:8000"))
"""

from .api import RideApiClient
from .exceptions import (
    RideClientError,
    ConnectivityError,
    ServiceUnavailable,
    ValidationFailed,
    RideNotFound,
    RideUnavailable,
    ServerError,
)
from .scheduler import ThreadingScheduler, ManualScheduler
from .session import RiderSession, DriverSession, RiderState, DriverState
from .realtime import (
    RealtimeListener,
    Poller,
    driver_feed_url,
    ride_room_url,
    rider_poller,
    driver_poller,
)

__all__ = [
    "RideApiClient",
    "RideClientError",
    "ConnectivityError",
    "ServiceUnavailable",
    "ValidationFailed",
    "RideNotFound",
    "RideUnavailable",
    "ServerError",
    "ThreadingScheduler",
    "ManualScheduler",
    "RiderSession",
    "DriverSession",
    "RiderState",
    "DriverState",
    "RealtimeListener",
    "Poller",
    "driver_feed_url",
    "ride_room_url",
    "rider_poller",
    "driver_poller",
]
