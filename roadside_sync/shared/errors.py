"""Error types for the roadside sync layer."""


class RoadsideSyncError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(RoadsideSyncError):
    """Identifier or token missing; no connection is attempted."""


class TransportError(RoadsideSyncError):
    """Network-level failure. Recovered locally by queueing or retrying."""


class BookingRejectedError(RoadsideSyncError):
    """The server refused a booking submission."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SessionTerminatedError(RoadsideSyncError):
    """A PollingSession was driven again after reaching a terminal state."""
