"""
Key to JSON blob store backed by a data directory.

Keys are relative paths such as ``months/2025-01.json``. Writes to the same key
are serialized through a per-key lock so overlapping read-modify-write cycles
never interleave; callers that mutate a blob hold ``store.lock(key)`` for the
whole cycle.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from household_ledger.errors import StorageError

logger = logging.getLogger(__name__)


class JsonStore:
    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        relative = Path(key)
        if relative.is_absolute() or ".." in relative.parts:
            raise StorageError(f"Invalid storage key: {key}", path=key)
        return self.base_dir / relative

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """Hold the write lock for ``key`` (re-entrant within one thread)."""
        with self._lock_for(key):
            yield

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def read_json(self, key: str) -> Any | None:
        """Return the decoded blob, or None when it does not exist."""
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt JSON in {path}: {e}")
            raise StorageError(f"Corrupt JSON in {key}: {e}", path=str(path)) from e
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}", path=str(path)) from e

    def write_json(self, key: str, payload: Any) -> None:
        """Atomically replace the blob at ``key``."""
        path = self.path_for(key)
        with self.lock(key):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        json.dump(payload, handle, indent=2)
                        handle.write("\n")
                    os.replace(tmp_name, path)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
            except OSError as e:
                raise StorageError(f"Failed to write {key}: {e}", path=str(path)) from e

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        with self.lock(key):
            if not path.exists():
                return False
            try:
                path.unlink()
            except OSError as e:
                raise StorageError(f"Failed to delete {key}: {e}", path=str(path)) from e
            return True

    def list_keys(self, directory: str, suffix: str = ".json") -> list[str]:
        """List keys directly under ``directory``, sorted by name."""
        root = self.path_for(directory)
        if not root.is_dir():
            return []
        return sorted(f"{directory}/{p.name}" for p in root.iterdir() if p.is_file() and p.name.endswith(suffix))
