"""
Unified exception hierarchy for authbroker.

Provides typed exceptions with retry classification so the refresh loop and
interactive callers can tell transient failures from terminal ones.
"""

from authbroker.types import ErrorCategory


class AuthBrokerError(Exception):
    """
    Base exception for all authbroker errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
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
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthError(AuthBrokerError):
    """Credentials were rejected; a new sign-in is required."""

    category = ErrorCategory.AUTH


# =============================================================================
# Transient Errors
# =============================================================================


class TransientError(AuthBrokerError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class ThrottlingError(TransientError):
    """Rate limited (429) - should back off."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.retry_after = retry_after  # Seconds to wait if provided


class NetworkError(TransientError):
    """Provider endpoint unreachable or returned a server error."""

    pass


class TimeoutError(TransientError):
    """A flow exceeded its time budget (retryable by caller choice)."""

    pass


class StorageError(TransientError):
    """Secure storage unavailable; sessions degrade to in-memory only."""

    pass


# =============================================================================
# Permanent Errors (Don't Retry)
# =============================================================================


class PermanentError(AuthBrokerError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_http_status(status_code: int) -> ErrorCategory:
    """Classify HTTP status code into error category."""
    if 200 <= status_code < 300:
        return ErrorCategory.UNKNOWN  # Not an error

    if status_code == 401:
        return ErrorCategory.AUTH

    if status_code in (408, 429):
        return ErrorCategory.TRANSIENT

    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT

    if status_code >= 500:
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    if isinstance(exc, AuthBrokerError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connectionerror",
        "clientconnectorerror",
        "serverdisconnectederror",
        "connection refused",
        "connection reset",
        "name resolution",
        "network unreachable",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    if "invalid_grant" in exc_str or "unauthorized" in exc_str:
        return ErrorCategory.AUTH

    if "429" in exc_str or "503" in exc_str or "502" in exc_str or "504" in exc_str:
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def is_retryable_error(exc: Exception) -> bool:
    """
    Check if exception should be retried.

    Transient and unknown errors are retried; auth and permanent errors
    are not.
    """
    if isinstance(exc, AuthBrokerError):
        return exc.is_retryable

    return classify_exception(exc) in (
        ErrorCategory.TRANSIENT,
        ErrorCategory.UNKNOWN,
    )


def wrap_exception(
    exc: Exception,
    default_class: type = AuthBrokerError,
    context: dict | None = None,
) -> AuthBrokerError:
    """Wrap a generic exception in the matching AuthBrokerError subclass."""
    if isinstance(exc, AuthBrokerError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    context = context or {}

    if category == ErrorCategory.AUTH:
        return AuthError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.TRANSIENT:
        return NetworkError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        return PermanentError(str(exc), cause=exc, context=context)

    return default_class(str(exc), cause=exc, context=context)
