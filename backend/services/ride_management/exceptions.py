"""Custom exceptions for ride management."""


class RideValidationError(Exception):
    """Raised when a ride request is incomplete or malformed."""

    def __init__(self, message, missing=None, details=None):
        super().__init__(message)
        self.missing = list(missing or [])
        self.details = details or {}


class RideNotFoundError(Exception):
    """Raised when a ride cannot be found."""
    pass


class RideNotAvailableError(Exception):
    """Raised when a ride is not in an available state for the operation."""
    pass


class CorruptRideError(Exception):
    """Raised when a stored ride violates the ride invariants."""
    pass


class DriverNotFoundError(Exception):
    """Raised when a driver profile cannot be found."""
    pass


class DriverNotAvailableError(Exception):
    """Raised when driver is not available to accept rides."""
    pass


class ChatClosedError(Exception):
    """Raised when chatting on a ride that is not accepted or in progress."""
    pass


class CallStateError(Exception):
    """Raised when a call transition does not apply to the current call state."""
    pass
