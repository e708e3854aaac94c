"""Secure-storage backends implementing the SecretStorage protocol.

Backends:
- InMemorySecretStorage: process-local dict, used in tests and when
  persistence is disabled
- JsonFileSecretStorage: a single JSON file readable only by the current
  user, for hosts without a platform keyring

Architecture (JsonFileSecretStorage):
- One JSON document {"version": 1, "secrets": {key: value}}
- Atomic writes via write-to-temp + os.replace() for crash safety
- File created with 0600 permissions
- Blocking file I/O runs in a worker thread via asyncio.to_thread
- asyncio.Lock serializes read-modify-write within a process

Limitations:
- Single-process concurrency only (no cross-process file locking)
- Values are stored unencrypted; protect the file with OS permissions
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from authbroker.errors.exceptions import StorageError

logger = logging.getLogger(__name__)

FILE_FORMAT_VERSION = 1


class InMemorySecretStorage:
    """Secret storage kept in a dict for the lifetime of the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._values)


class JsonFileSecretStorage:
    """Secret storage backed by a local JSON file."""

    def __init__(self, path: str | Path) -> None:
        """Initialize the file store.

        Args:
            path: JSON file path. Parent directories are created on first write.
        """
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

        logger.debug(
            "JsonFileSecretStorage initialized",
            extra={"path": str(self._path)},
        )

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: str) -> str | None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_json)
        return data["secrets"].get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_json)
            data["secrets"][key] = value
            await asyncio.to_thread(self._write_json, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_json)
            if data["secrets"].pop(key, None) is None:
                return
            await asyncio.to_thread(self._write_json, data)

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _read_json(self) -> dict[str, Any]:
        """Read the secrets file, returning an empty document if missing.

        Raises:
            StorageError: File unreadable or not a secrets document
        """
        if not self._path.exists():
            return {"version": FILE_FORMAT_VERSION, "secrets": {}}
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StorageError(f"Failed to read secrets file {self._path}", cause=e) from e

        if not isinstance(data, dict) or not isinstance(data.get("secrets"), dict):
            raise StorageError(f"Malformed secrets file {self._path}")
        return data

    def _write_json(self, data: dict[str, Any]) -> None:
        """Atomic write: write to a 0600 temp file then os.replace().

        Raises:
            StorageError: Directory or file not writable
        """
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StorageError(f"Failed to write secrets file {self._path}", cause=e) from e


__all__ = [
    "InMemorySecretStorage",
    "JsonFileSecretStorage",
]
