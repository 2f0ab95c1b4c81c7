"""Errors raised by ride API clients."""


class RideClientError(Exception):
    """Base class; `retryable` tells the UI whether offering a retry makes sense."""
    retryable = False

    def __init__(self, message, code=None, status_code=None, missing=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.missing = list(missing or [])


class ConnectivityError(RideClientError):
    """The server could not be reached or timed out."""
    retryable = True


class ServiceUnavailable(RideClientError):
    """The server answered but a dependency (routing, geocoding) is down."""
    retryable = True


class ValidationFailed(RideClientError):
    """The request was rejected; `missing` lists the offending fields."""
    pass


class RideNotFound(RideClientError):
    pass


class RideUnavailable(RideClientError):
    """The ride (or driver, or call) is not in a state that allows the action."""
    pass


class ServerError(RideClientError):
    pass
