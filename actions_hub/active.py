# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Fast polling of in-flight runs (status queued / in_progress).

Runs once every WORKFLOW_POLL_INTERVAL_S seconds, and only while the collection holds
active runs. Each run is fetched with its own ETag. A run is reported as changed
only when its status or conclusion differs from what the collection holds; timestamp-only
changes are dropped.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

import requests

from . import config
from .client import ConditionalResponse
from .collection import WorkflowCollection
from .exceptions import ActionsHubAPIError, EmptyPayloadError
from .models import WorkflowRun
from .scheduling import PeriodicTask

_logger = logging.getLogger(__name__)

ErrorListener = Callable[[int, Exception], None]


def _is_empty(data: Any) -> bool:
    return data is None or data == {} or data == []


def fetch_run_status(api: Any, owner: str, repo: str, run_id: int, etag: Optional[str] = None) -> ConditionalResponse:
    """Conditional status fetch with one cache-bypassing retry on an empty 200 body.

    Raises EmptyPayloadError when the retry is empty too.
    """
    resp = api.run_status(owner, repo, run_id, etag=etag)
    if not resp.ok or not _is_empty(resp.data):
        return resp

    _logger.warning("empty status payload for %s/%s run %s; retrying without cache", owner, repo, run_id)
    resp = api.run_status(owner, repo, run_id, etag=None, no_cache=True)
    if resp.ok and _is_empty(resp.data):
        raise EmptyPayloadError(endpoint=f"/workflows/{owner}/{repo}/{run_id}/status")
    return resp


class ActivePoller:
    def __init__(
        self,
        api: Any,
        collection: WorkflowCollection,
        *,
        interval_s: float = config.WORKFLOW_POLL_INTERVAL_S,
        max_workers: int = 8,
    ):
        self.api = api
        self.collection = collection
        self.max_workers = max(1, int(max_workers))
        self._mu = threading.Lock()
        self._etags: Dict[int, str] = {}
        self._errors: Dict[int, str] = {}
        self._error_listeners: List[ErrorListener] = []
        self._task = PeriodicTask("active", interval_s, self.poll_once, run_immediately=True)

    @property
    def running(self) -> bool:
        return self._task.running

    @property
    def errors(self) -> Dict[int, str]:
        with self._mu:
            return dict(self._errors)

    def etag_for(self, run_id: int) -> Optional[str]:
        with self._mu:
            return self._etags.get(run_id)

    def add_error_listener(self, listener: ErrorListener) -> None:
        with self._mu:
            self._error_listeners.append(listener)

    def _report_error(self, run_id: int, err: Exception) -> None:
        with self._mu:
            self._errors[run_id] = str(err)
            listeners = list(self._error_listeners)
        for listener in listeners:
            try:
                listener(run_id, err)
            except Exception:
                _logger.exception("active poller error listener failed")

    def _poll_run(self, run: WorkflowRun) -> Optional[WorkflowRun]:
        owner, repo = run.repository.owner, run.repository.name
        try:
            resp = fetch_run_status(self.api, owner, repo, run.id, etag=self.etag_for(run.id))
        except EmptyPayloadError as e:
            _logger.error("run %s: %s", run.id, e)
            self._report_error(run.id, e)
            return None
        except (ActionsHubAPIError, requests.RequestException, ValueError) as e:
            _logger.warning("error polling workflow %s: %s", run.id, e)
            with self._mu:
                self._etags.pop(run.id, None)
            return None
        except Exception:
            _logger.exception("unexpected error polling workflow %s", run.id)
            with self._mu:
                self._etags.pop(run.id, None)
            return None

        if resp.not_modified or not resp.ok:
            return None

        with self._mu:
            if resp.etag:
                self._etags[run.id] = resp.etag
            self._errors.pop(run.id, None)

        updated = resp.data
        if not isinstance(updated, WorkflowRun):
            return None
        if updated.status != run.status or updated.conclusion != run.conclusion:
            return updated
        return None

    def poll_once(self) -> List[WorkflowRun]:
        """Poll every active run concurrently. Returns (and merges) the runs whose status changed."""
        active = self.collection.active_runs()
        if not active:
            return []

        changed: List[WorkflowRun] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(active))) as executor:
            futs = [executor.submit(self._poll_run, run) for run in active]
            for fut in as_completed(futs):
                updated = fut.result()
                if updated is not None:
                    changed.append(updated)

        if changed:
            for run in changed:
                _logger.info("run %s (%s): %s/%s", run.id, run.repo_key, run.status, run.conclusion)
            self.collection.merge(changed)
        return changed

    def refresh(self, runs: Optional[List[WorkflowRun]] = None) -> None:
        """Start polling when there are active runs, stop when there are none.

        Usable directly as a WorkflowCollection listener.
        """
        runs = self.collection.snapshot() if runs is None else runs
        if any(r.is_active for r in runs):
            self._task.start()
        else:
            self._task.stop()

    def stop(self) -> None:
        self._task.stop()

    def reset(self) -> None:
        with self._mu:
            self._etags = {}
            self._errors = {}
