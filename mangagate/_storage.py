"""Persistence backends: namespaced string key-value stores."""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("mangagate")


class KeyValueStore(Protocol):
    """Minimal persistence contract shared by the credential store and jar.

    Calls are synchronous and may block on disk; async callers run them
    through ``asyncio.to_thread``.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """In-process store. Nothing survives a restart."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class JsonDirStorage:
    """One file per key under ``root``: {root}/{namespace}{key}.json

    Writes are atomic (temp file + rename) and serialised per key so a
    crash mid-write leaves the previous value intact.
    """

    def __init__(self, root: str, namespace: str = ""):
        self._root = Path(root)
        self._namespace = namespace
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock_lock = threading.Lock()

    def _path(self, key: str) -> Path:
        safe = (
            f"{self._namespace}{key}"
            .replace("/", "_")
            .replace("\\", "_")
            .replace(":", "_")
        )
        return self._root / f"{safe}.json"

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock_lock:
            if key not in self._key_locks:
                self._key_locks[key] = threading.Lock()
            return self._key_locks[key]

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read %s: %s", path, e)
            return None

    def set(self, key: str, value: str) -> None:
        with self._key_lock(key):
            self._write_atomic(self._path(key), value)

    def remove(self, key: str) -> None:
        with self._key_lock(key):
            try:
                self._path(key).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove %s: %s", key, e)

    def _write_atomic(self, path: Path, value: str) -> None:
        """Atomic write: temp file + rename (same filesystem = atomic on POSIX)."""
        self._root.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._root, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
