from typing import Optional


class ShareServiceError(Exception):
    """Base class for errors raised by the bookshare core."""

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationMissing(ShareServiceError):
    """No credential was available to open the realtime channel."""
    pass


class NotConnected(ShareServiceError):
    """A realtime operation was attempted while the channel is not connected."""
    pass


class Unauthorized(ShareServiceError):
    """The caller's role does not allow this mutation."""
    pass


class Conflict(ShareServiceError):
    """The share's state no longer permits the requested transition."""
    pass


class NotFound(ShareServiceError):
    pass


class TransportFailure(ShareServiceError):
    """The realtime channel could not be (re)established."""
    pass


class NetworkError(ShareServiceError):
    """Any other REST failure: transport errors and unexpected status codes."""
    pass


class MessageRejected(ShareServiceError, ValueError):
    """Chat content failed local validation or hit the send rate limit."""
    pass
