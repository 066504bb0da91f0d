"""
Exception hierarchy for the tenant exporter.

Every error the exporter raises carries an ErrorCategory on its class. Retry
loops and RunError recording read the category instead of matching on
concrete types:

    AUTH       AuthError
    TRANSIENT  ThrottledError, ServerError, SinkDeliveryError
    PERMANENT  ClientError, EventError

Foreign exceptions (azure-identity, subprocess, the OS) are mapped onto the
same categories by classify_exception().
"""

from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all exporter errors.

    Attributes:
        message: Human-readable error description
        category: Classification used for retry decisions
        cause: Original exception if wrapping
        context: Extra fields for logging (url, status_code, audience, ...)
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category is not ErrorCategory.PERMANENT

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} | Caused by: {self.cause}"


class AuthError(PipelineError):
    """Identity could not be validated, or the token issuer is unreachable."""

    category = ErrorCategory.AUTH


# Retried with backoff, then contained at the smallest scope


class TransientError(PipelineError):
    category = ErrorCategory.TRANSIENT


class ThrottledError(TransientError):
    """429 or 503 from an API. retry_after is the server's hint in seconds."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        status_code: int | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.retry_after = retry_after
        self.status_code = status_code


class ServerError(TransientError):
    """5xx (other than 503), connection failure, timeout or unreadable 200 body."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.status_code = status_code


class SinkDeliveryError(TransientError):
    """The streaming sink rejected or failed to acknowledge a batch."""


# Never retried


class PermanentError(PipelineError):
    category = ErrorCategory.PERMANENT


class ClientError(PermanentError):
    """4xx other than 401/403/429: the request itself is wrong."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.status_code = status_code


class EventError(PermanentError):
    """A hierarchy node could not be normalized into an export event."""

    def __init__(
        self,
        message: str,
        source_id: str | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.source_id = source_id


_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
    "throttl",
    "429",
    "502",
    "503",
    "504",
)
_AUTH_MARKERS = ("401", "unauthorized", "aadsts", "token expired", "invalid token")
_PERMANENT_MARKERS = ("404", "not found")


def classify_exception(exc: Exception) -> ErrorCategory:
    """Category of any exception; typed errors report their own."""
    if isinstance(exc, PipelineError):
        return exc.category
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT

    text = f"{type(exc).__name__} {exc}".lower()
    if any(m in text for m in _TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT
    if any(m in text for m in _AUTH_MARKERS):
        return ErrorCategory.AUTH
    if any(m in text for m in _PERMANENT_MARKERS):
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


_CATEGORY_CLASSES: dict[ErrorCategory, type[PipelineError]] = {
    ErrorCategory.AUTH: AuthError,
    ErrorCategory.TRANSIENT: TransientError,
    ErrorCategory.PERMANENT: PermanentError,
}


def wrap_exception(exc: Exception) -> PipelineError:
    """Typed counterpart of a foreign exception; PipelineErrors pass through."""
    if isinstance(exc, PipelineError):
        return exc
    error_class = _CATEGORY_CLASSES.get(classify_exception(exc), PipelineError)
    return error_class(str(exc), cause=exc)


__all__ = [
    "ErrorCategory",
    "PipelineError",
    "AuthError",
    "TransientError",
    "ThrottledError",
    "ServerError",
    "SinkDeliveryError",
    "PermanentError",
    "ClientError",
    "EventError",
    "classify_exception",
    "wrap_exception",
]
