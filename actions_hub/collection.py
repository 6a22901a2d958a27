# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""The shared in-memory workflow collection.

BatchLoader, SyncPoller, ActivePoller and RerunCoordinator all write into one
WorkflowCollection. Every write is a whole-list rebuild (merge + re-sort) under one lock,
so concurrent writers resolve as last-merge-wins by run id.

Persistence is serialized: every mutation bumps a generation counter, and a save whose
generation is no longer the newest is dropped, so the persisted slot never regresses to
an older snapshot than the one in memory.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import BatchMetadata, WorkflowRun
from .workflow_cache import PersistentCache

_logger = logging.getLogger(__name__)

Listener = Callable[[List[WorkflowRun]], None]


def merge_runs(existing: Iterable[WorkflowRun], incoming: Iterable[WorkflowRun]) -> List[WorkflowRun]:
    """Union by run id (incoming wins), sorted by updatedAt descending."""
    by_id: Dict[int, WorkflowRun] = {}
    for run in existing:
        by_id[run.id] = run
    for run in incoming:
        by_id[run.id] = run
    return sorted(by_id.values(), key=lambda r: r.updated_at_epoch(), reverse=True)


class WorkflowCollection:
    def __init__(self, username: str, cache: Optional[PersistentCache] = None):
        self.username = str(username)
        self.cache = cache
        self._mu = threading.Lock()
        self._runs: List[WorkflowRun] = []
        self._batches: Dict[str, BatchMetadata] = {}
        self._listeners: List[Listener] = []
        self._save_mu = threading.Lock()
        self._generation = 0

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._mu:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._mu:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    # --- reads ---------------------------------------------------------------

    def snapshot(self) -> List[WorkflowRun]:
        with self._mu:
            return list(self._runs)

    def batches(self) -> Dict[str, BatchMetadata]:
        with self._mu:
            return dict(self._batches)

    def get(self, run_id: int) -> Optional[WorkflowRun]:
        with self._mu:
            for run in self._runs:
                if run.id == run_id:
                    return run
        return None

    def repositories(self) -> List[Tuple[str, str]]:
        """Distinct (owner, repo) pairs present in the collection, in first-seen order."""
        seen: Dict[Tuple[str, str], None] = {}
        for run in self.snapshot():
            seen.setdefault((run.repository.owner, run.repository.name), None)
        return list(seen.keys())

    def active_runs(self) -> List[WorkflowRun]:
        return [r for r in self.snapshot() if r.is_active]

    def __len__(self) -> int:
        with self._mu:
            return len(self._runs)

    # --- writes --------------------------------------------------------------

    def merge(self, incoming: Iterable[WorkflowRun]) -> List[WorkflowRun]:
        incoming = list(incoming)
        with self._mu:
            self._runs = merge_runs(self._runs, incoming)
            self._generation += 1
            runs, batches, gen = list(self._runs), dict(self._batches), self._generation
        self._changed(runs, batches, gen)
        return runs

    def replace(self, runs: Iterable[WorkflowRun], batches: Optional[Dict[str, BatchMetadata]] = None) -> None:
        """Install a whole collection (used when restoring from the persisted cache)."""
        with self._mu:
            self._runs = merge_runs([], runs)
            self._batches = dict(batches or {})
            self._generation += 1
            snap = list(self._runs)
        self._notify(snap)

    def record_batch(self, batch_id: str, meta: BatchMetadata) -> None:
        with self._mu:
            self._batches = {**self._batches, batch_id: meta}
            self._generation += 1
            runs, batches, gen = list(self._runs), dict(self._batches), self._generation
        self._changed(runs, batches, gen)

    def reset(self) -> None:
        with self._mu:
            self._runs = []
            self._batches = {}
            self._generation += 1
        self._notify([])

    def _changed(self, runs: List[WorkflowRun], batches: Dict[str, BatchMetadata], generation: int) -> None:
        # An empty collection or one without batch metadata is never persisted.
        if self.cache is not None and runs and batches:
            with self._save_mu:
                with self._mu:
                    stale = generation != self._generation
                if stale:
                    _logger.debug("skipping stale cache save (generation %d)", generation)
                else:
                    self.cache.save(self.username, runs, batches)
        self._notify(runs)

    def _notify(self, runs: List[WorkflowRun]) -> None:
        with self._mu:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(runs)
            except Exception:
                _logger.exception("workflow collection listener failed")
