from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

"""Key/value stores for device-local state (remembered correction rules).

The core never touches a storage backend directly; it receives a
KeyValueStore. Values are plain strings (JSON documents for rule lists).

Single writer: one session owns the store at a time. Concurrent writers from
several processes are not coordinated.
"""

__all__ = [
    "PersistenceError",
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
]


class PersistenceError(Exception):
    """Store unavailable, unreadable or full."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """Dict backed store (tests, --no-store runs)."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore:
    """All keys of one device in a single JSON object file.

    Writes go to a temp file in the same directory and are moved into place,
    so a crash never leaves a half written store behind.
    """

    FILE_NAME = "store.json"

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.path = self.directory / self.FILE_NAME

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise PersistenceError(f"store not readable: {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise PersistenceError(f"store corrupt: {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"store corrupt: {self.path}: top level is not an object")
        return data

    def _write_all(self, data: dict[str, str]) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".store-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"store not writable: {self.path}: {e}") from e

    def get(self, key: str) -> str | None:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)
        logger.debug(f"store set key={key} bytes={len(value)}")

    def remove(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data)
