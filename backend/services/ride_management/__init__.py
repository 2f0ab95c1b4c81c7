"""
Ride management service - Core ride lifecycle operations.

This module handles:
    - Creating ride requests
    - Accepting rides (single winner per ride)
    - Driver arrival and trip-complete signals
    - Completing rides
    - Ending an assigned ride early and releasing the driver
    - Cancelling rides
    - Querying ride status
"""

from .ride_lifecycle import (
    RideResult,
    validate_ride_request,
    create_ride_request,
    accept_ride,
    cancel_ride,
    mark_driver_arrived,
    signal_trip_complete,
    complete_ride,
    abandon_ride,
    get_ride,
    list_pending_rides,
    get_current_driver_ride,
)

from .exceptions import (
    RideValidationError,
    RideNotFoundError,
    RideNotAvailableError,
    CorruptRideError,
    DriverNotFoundError,
    DriverNotAvailableError,
    ChatClosedError,
    CallStateError,
)

__all__ = [
    # Lifecycle operations
    "RideResult",
    "validate_ride_request",
    "create_ride_request",
    "accept_ride",
    "cancel_ride",
    "mark_driver_arrived",
    "signal_trip_complete",
    "complete_ride",
    "abandon_ride",
    "get_ride",
    "list_pending_rides",
    "get_current_driver_ride",
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
