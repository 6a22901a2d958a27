# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Per-user persisted workflow collection + the session-scoped user-info slot.

Durable layout (one slot per GitHub user, never shared):

  workflows_cache_<username>:
    {
      "version": "2.0",
      "data": [<WorkflowRun dict>, ...],      # deduplicated, updatedAt desc
      "timestamp": 1769760000000,             # epoch ms of the save
      "batches": {
        "batch-1": {"dateFrom": "2026-01-26", "dateTo": "2026-01-30", "loadedAt": ..., "workflowCount": 42}
      }
    }

Invalidation: a version mismatch discards the slot wholesale (no migration). Logout wipes
every `workflows_cache_*` slot (not just the current user's) and every cached job log.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Optional

from . import config
from .jobs import JobLogCache
from .models import BatchMetadata, PersistedCache, UserInfo, WorkflowRun
from .storage import CacheStore

_logger = logging.getLogger(__name__)


class PersistentCache:
    def __init__(self, store: CacheStore, *, version: str = config.CACHE_VERSION):
        self.store = store
        self.version = str(version)

    def save(self, user: str, runs: Iterable[WorkflowRun], batches: Dict[str, BatchMetadata]) -> None:
        cache = PersistedCache(
            version=self.version,
            data=list(runs),
            timestamp=int(time.time() * 1000),
            batches=dict(batches),
        )
        try:
            self.store.set(config.workflows_cache_key(user), cache.to_dict())
        except (OSError, TypeError, ValueError) as e:
            _logger.error("error saving workflow cache for %s: %s", user, e)
            return
        self.store.notify(config.WORKFLOWS_UPDATED_EVENT)

    def load(self, user: str) -> Optional[PersistedCache]:
        """Return the user's cache, or None when absent, unreadable or from another version."""
        key = config.workflows_cache_key(user)
        raw = self.store.get(key)
        if raw is None:
            return None
        if not isinstance(raw, dict):
            _logger.warning("workflow cache %s is not an object; discarding", key)
            self.store.delete(key)
            return None

        if str(raw.get("version") or "") != self.version:
            _logger.info("cache version mismatch for %s (%r != %r), clearing cache", key, raw.get("version"), self.version)
            self.store.delete(key)
            return None

        try:
            return PersistedCache.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            _logger.warning("error decoding workflow cache %s: %s", key, e)
            return None

    def clear(self, user: str) -> None:
        self.store.delete(config.workflows_cache_key(user))

    def clear_all(self) -> int:
        """Delete every workflow cache slot (any username). Returns the number removed."""
        prefix = f"{config.WORKFLOWS_KEY_PREFIX}_"
        removed = 0
        for key in self.store.keys():
            if key.startswith(prefix):
                self.store.delete(key)
                removed += 1
        return removed


class UserSessionCache:
    """Session-scoped snapshot of `/auth/me`, to avoid redundant identity lookups."""

    def __init__(self, store: CacheStore):
        self.store = store

    def get(self) -> Optional[UserInfo]:
        raw: Any = self.store.get(config.USER_CACHE_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return UserInfo.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            _logger.warning("error loading user from cache: %s", e)
            return None

    def save(self, user: UserInfo) -> None:
        if not user.authenticated:
            return
        self.store.set(config.USER_CACHE_KEY, user.to_dict())

    def clear(self) -> None:
        self.store.delete(config.USER_CACHE_KEY)


def logout(durable_store: CacheStore, session_store: CacheStore) -> int:
    """Wipe all workflow caches (every user, not just the current one), cached job logs
    and the session user slot. Returns the number of workflow cache slots removed.
    """
    removed = PersistentCache(durable_store).clear_all()
    JobLogCache(durable_store).clear_all()
    UserSessionCache(session_store).clear()
    _logger.info("logged out; removed %d workflow cache slot(s)", removed)
    return removed
