"""Error taxonomy for the remote list API.

Every failure the list client can produce is one of these classes. ``reason``
is the stable string surfaced to callers and stored on queued operations;
``transient`` tells the queue whether retrying the same call could succeed.
"""


class ListAPIError(Exception):
    reason = "api_error"
    transient = False

    def __init__(self, message: str | None = None, *, status: int | None = None):
        super().__init__(message or self.reason)
        self.message = message or self.reason
        self.status = status


class NetworkError(ListAPIError):
    reason = "network_error"
    transient = True


class RequestTimeout(ListAPIError):
    reason = "timeout"
    transient = True


class RateLimited(ListAPIError):
    reason = "rate_limited"
    transient = True


class ServerError(ListAPIError):
    reason = "server_error"
    transient = True


class NotFound(ListAPIError):
    reason = "not_found"


class AccessDenied(ListAPIError):
    reason = "unauthorized"


class ValidationFailed(ListAPIError):
    reason = "validation_error"


class DuplicateMovie(ListAPIError):
    reason = "duplicate_movie"


class UnexpectedResponse(ListAPIError):
    reason = "api_error"


class SessionExpired(ListAPIError):
    """The owner's provider session is gone; only re-authentication helps."""

    reason = "session_expired"


def is_credential_error(exc: BaseException) -> bool:
    return isinstance(exc, SessionExpired)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ListAPIError):
        return exc.transient
    # Timeouts raised around the client (asyncio.wait_for) count as transient.
    return isinstance(exc, TimeoutError)


def reason_for(exc: BaseException) -> str:
    if isinstance(exc, ListAPIError):
        return exc.reason
    if isinstance(exc, TimeoutError):
        return RequestTimeout.reason
    return ListAPIError.reason
