"""
Core types and protocols used across modules.

This module provides base enums and protocol definitions shared across the
library to keep error handling and collaborator interfaces consistent.
"""

from enum import Enum
from typing import Protocol


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., network timeouts, 429/503 errors)
        AUTH: Credential failures that require re-authentication
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., invalid_grant, malformed scopes, denied consent)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class FlowKind(Enum):
    """Interactive acquisition protocol."""

    LOOPBACK = "loopback"
    DEVICE_CODE = "device_code"


class SecretStorage(Protocol):
    """
    Protocol for secure-storage backends (keyring, credential vault).

    Values are opaque strings. Implementations raise StorageError on failure;
    callers treat those failures as non-fatal.
    """

    async def get(self, key: str) -> str | None:
        """Return the stored value, or None if absent."""
        ...

    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any existing one."""
        ...

    async def delete(self, key: str) -> None:
        """Remove a value. Deleting a missing key is not an error."""
        ...


__all__ = [
    "ErrorCategory",
    "FlowKind",
    "SecretStorage",
]
