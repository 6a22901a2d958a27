# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Per-repository conditional sync.

Every SYNC_POLL_INTERVAL_S seconds, each repository present in the collection is polled
with its last ETag / Last-Modified:

  - 304                 -> unchanged, nothing merged
  - other non-2xx       -> treated as "no runs" (e.g. repo without Actions)
  - request failure     -> logged, validators for that repo dropped, other repos unaffected
  - 200 with runs       -> validators stored, runs merged (id-keyed, updatedAt desc)

Validators live only for the process (never persisted).
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from . import config
from .collection import WorkflowCollection
from .exceptions import ActionsHubAPIError
from .models import WorkflowRun
from .scheduling import PeriodicTask

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConditionalState:
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class SyncPoller:
    def __init__(
        self,
        api: Any,
        collection: WorkflowCollection,
        *,
        interval_s: float = config.SYNC_POLL_INTERVAL_S,
        max_workers: int = 8,
    ):
        self.api = api
        self.collection = collection
        self.max_workers = max(1, int(max_workers))
        self._mu = threading.Lock()
        self._states: Dict[str, ConditionalState] = {}
        self._loading: Optional[bool] = None
        self._task = PeriodicTask("sync", interval_s, self.sync_once, run_immediately=True)

    @property
    def running(self) -> bool:
        return self._task.running

    def conditional_state(self, repo_key: str) -> Optional[ConditionalState]:
        with self._mu:
            return self._states.get(repo_key)

    def _sync_repo(self, owner: str, repo: str) -> List[WorkflowRun]:
        repo_key = f"{owner}/{repo}"
        prev = self.conditional_state(repo_key) or ConditionalState()
        try:
            resp = self.api.sync_repository(owner, repo, etag=prev.etag, last_modified=prev.last_modified)
        except (ActionsHubAPIError, requests.RequestException, ValueError) as e:
            _logger.warning("error syncing workflows for %s: %s", repo_key, e)
            with self._mu:
                self._states.pop(repo_key, None)
            return []
        except Exception:
            _logger.exception("unexpected error syncing workflows for %s", repo_key)
            with self._mu:
                self._states.pop(repo_key, None)
            return []

        if resp.not_modified:
            return []
        if not resp.ok:
            if resp.status_code != 404:
                _logger.warning("failed to sync workflows for %s: HTTP %s", repo_key, resp.status_code)
            return []

        if resp.etag or resp.last_modified:
            with self._mu:
                self._states[repo_key] = ConditionalState(
                    etag=resp.etag or prev.etag,
                    last_modified=resp.last_modified or prev.last_modified,
                )
        return list(resp.data or [])

    def sync_once(self) -> List[WorkflowRun]:
        """Poll every known repository concurrently and merge what changed. Returns the synced runs."""
        repos: List[Tuple[str, str]] = self.collection.repositories()
        if not repos:
            return []

        synced: List[WorkflowRun] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(repos))) as executor:
            futs = [executor.submit(self._sync_repo, owner, repo) for (owner, repo) in repos]
            for fut in as_completed(futs):
                synced.extend(fut.result())

        if synced:
            self.collection.merge(synced)
            _logger.info("sync: merged %d run(s) from %d repo(s)", len(synced), len(repos))
        return synced

    def on_loading_changed(self, loading: bool) -> None:
        """Start polling once the blocking load ends; stop while loading. Ignores repeats."""
        loading = bool(loading)
        with self._mu:
            if self._loading == loading:
                return
            self._loading = loading
        if loading:
            self._task.stop()
        elif len(self.collection) > 0:
            self._task.restart()

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()

    def reset(self) -> None:
        """Forget every stored validator (used by force-refresh)."""
        with self._mu:
            self._states = {}
