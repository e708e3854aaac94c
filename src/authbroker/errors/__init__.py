"""
Error classification and exception hierarchy.

Provides:
- AuthBrokerError hierarchy for typed exceptions
- Classification utilities for retry decisions
"""

from authbroker.errors.exceptions import (
    AuthBrokerError,
    AuthError,
    NetworkError,
    PermanentError,
    StorageError,
    ThrottlingError,
    TimeoutError,
    TransientError,
    classify_exception,
    classify_http_status,
    is_retryable_error,
    wrap_exception,
)
from authbroker.types import ErrorCategory

__all__ = [
    "ErrorCategory",
    # Base classes
    "AuthBrokerError",
    "AuthError",
    "TransientError",
    "PermanentError",
    # Transient errors
    "ThrottlingError",
    "NetworkError",
    "TimeoutError",
    "StorageError",
    # Classification utilities
    "classify_exception",
    "classify_http_status",
    "is_retryable_error",
    "wrap_exception",
]
