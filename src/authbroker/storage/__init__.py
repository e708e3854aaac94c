"""
Secure-storage backends for persisted sessions.

Provides:
- SecretStorage protocol (re-exported from authbroker.types)
- InMemorySecretStorage and JsonFileSecretStorage backends
"""

from authbroker.storage.secret_storage import (
    InMemorySecretStorage,
    JsonFileSecretStorage,
)
from authbroker.types import SecretStorage

__all__ = [
    "SecretStorage",
    "InMemorySecretStorage",
    "JsonFileSecretStorage",
]
