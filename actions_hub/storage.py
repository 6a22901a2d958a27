# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0

"""
Key/value stores backing the workflow cache and the session user slot.

Two implementations of one narrow interface (get/set/delete/keys/clear/subscribe):
- DiskCacheStore: durable, one JSON file per key, with locking and atomic writes
- MemoryCacheStore: process-lifetime (the "session" slot)

Subscribers receive fire-and-forget change events (e.g. "workflowsUpdated") so sibling
consumers can refresh without being wired to each other.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

try:
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - best-effort on non-POSIX
    fcntl = None  # type: ignore

_logger = logging.getLogger(__name__)

Subscriber = Callable[[str], None]

_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]")


class CacheStore:
    """Base store: subscriber bookkeeping shared by all implementations.

    Subclasses implement get/set/delete/keys.
    """

    def __init__(self) -> None:
        self._subscribers_mu = Lock()
        self._subscribers: List[Subscriber] = []

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def clear(self) -> None:
        for key in self.keys():
            self.delete(key)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change callback. Returns an unsubscribe function."""
        with self._subscribers_mu:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._subscribers_mu:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def notify(self, event: str) -> None:
        """Broadcast an event to subscribers. A failing subscriber never affects the writer."""
        with self._subscribers_mu:
            subscribers = list(self._subscribers)
        for cb in subscribers:
            try:
                cb(event)
            except Exception:
                _logger.exception("cache subscriber failed for event %s", event)


class MemoryCacheStore(CacheStore):
    """Thread-safe in-memory store; lives as long as the process (the session slot)."""

    def __init__(self) -> None:
        super().__init__()
        self._mu = Lock()
        self._items: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._mu:
            return self._items.get(key)

    def set(self, key: str, value: Any) -> None:
        # Store a JSON round-trip so callers can't mutate what we hold.
        snapshot = json.loads(json.dumps(value))
        with self._mu:
            self._items[key] = snapshot

    def delete(self, key: str) -> None:
        with self._mu:
            self._items.pop(key, None)

    def keys(self) -> List[str]:
        with self._mu:
            return list(self._items.keys())


class DiskCacheStore(CacheStore):
    """Disk-backed store with inter-process locking.

    Layout: `<cache_dir>/<key>.json`, plus a shared `.store.lock` file used with fcntl.
    Writes are atomic (tmp file + rename). Unreadable files are treated as absent.
    """

    def __init__(self, cache_dir: Path):
        super().__init__()
        self._mu = Lock()
        self._cache_dir = Path(cache_dir)

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def _path_for(self, key: str) -> Path:
        safe = _SAFE_KEY_RE.sub("_", str(key))
        return self._cache_dir / f"{safe}.json"

    def _lock_file_path(self) -> Path:
        return self._cache_dir / ".store.lock"

    def _acquire_disk_lock(self, *, timeout_s: float = 10.0) -> Optional[Any]:
        """Best-effort inter-process lock. Returns file handle on success, None on failure/timeout."""
        if fcntl is None:
            return None

        lock_path = self._lock_file_path()
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            fh = open(lock_path, "w")
        except OSError:
            return None

        start = time.monotonic()
        while time.monotonic() - start < float(timeout_s):
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return fh
            except OSError:
                time.sleep(0.05)

        fh.close()
        _logger.warning("timed out waiting for cache lock %s", lock_path)
        return None

    def _release_disk_lock(self, lock_fh: Optional[Any]) -> None:
        if lock_fh is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass
        finally:
            lock_fh.close()

    def get(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        with self._mu:
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text() or "null")
            except (OSError, ValueError) as e:
                _logger.warning("ignoring unreadable cache file %s: %s", path, e)
                return None

    def set(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        payload = json.dumps(value, separators=(",", ":"))
        with self._mu:
            path.parent.mkdir(parents=True, exist_ok=True)
            lock_fh = self._acquire_disk_lock()
            try:
                tmp = Path(f"{path}.tmp.{os.getpid()}")
                try:
                    tmp.write_text(payload)
                    os.replace(str(tmp), str(path))
                except OSError:
                    tmp.unlink(missing_ok=True)
                    raise
            finally:
                self._release_disk_lock(lock_fh)

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        with self._mu:
            lock_fh = self._acquire_disk_lock() if path.exists() else None
            try:
                path.unlink(missing_ok=True)
            finally:
                self._release_disk_lock(lock_fh)

    def keys(self) -> List[str]:
        with self._mu:
            if not self._cache_dir.is_dir():
                return []
            return sorted(p.stem for p in self._cache_dir.glob("*.json"))
