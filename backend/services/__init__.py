"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - ride_management: Core ride lifecycle operations
    - communication: Ride chat and call signaling
    - pricing: Fare estimation
    - routing: Directions and geocoding clients
    - messaging: Confirmation phrase
"""

# ride_management first: the communication modules import its exceptions
from .ride_management import (
    create_ride_request,
    accept_ride,
    cancel_ride,
    mark_driver_arrived,
    signal_trip_complete,
    complete_ride,
    abandon_ride,
    get_ride,
    list_pending_rides,
    RideValidationError,
    RideNotFoundError,
    RideNotAvailableError,
    CorruptRideError,
    DriverNotFoundError,
    DriverNotAvailableError,
    ChatClosedError,
    CallStateError,
)
from .pricing import FareEstimator, FareEstimationError

__all__ = [
    # Ride management
    "create_ride_request",
    "accept_ride",
    "cancel_ride",
    "mark_driver_arrived",
    "signal_trip_complete",
    "complete_ride",
    "abandon_ride",
    "get_ride",
    "list_pending_rides",
    # Pricing
    "FareEstimator",
    "FareEstimationError",
    # Exceptions
    "RideValidationError",
    "RideNotFoundError",
    "RideNotAvailableError",
    "CorruptRideError",
    "DriverNotFoundError",
    "DriverNotAvailableError",
    "ChatClosedError",
    "CallStateError",
]
