# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Re-run a completed workflow and pick up its new status.

Flow for rerun(run, mode):
  1. mark run.id as retrying
  2. POST the rerun request
       failure -> on_error(run, err), retrying cleared, no follow-up
  3. after settle_delay_s, fetch the run's status, merge it into the collection
  4. retrying cleared (whether or not the follow-up fetch worked)

rerun_job(run, job_id) follows the same flow for a single job of a completed run.

The retrying marker stays set through the settle delay so the pre-rerun conclusion is
never shown as final.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Set, Tuple

import requests

from . import config
from .client import RERUN_MODES
from .collection import WorkflowCollection
from .exceptions import ActionsHubAPIError
from .models import RunConclusion, RunStatus, WorkflowRun
from .scheduling import call_later

_logger = logging.getLogger(__name__)

RERUN_FAILURE_MESSAGE = "Failed to re-run workflow. Please try again."


def rerun_options(run: WorkflowRun) -> Tuple[str, ...]:
    """Rerun modes offered for a run; the first entry is the default."""
    if run.status != RunStatus.COMPLETED.value:
        return ()
    if run.conclusion in (RunConclusion.FAILURE.value, RunConclusion.CANCELLED.value):
        return ("failed", "all")
    return ("all",)


class RerunCoordinator:
    def __init__(
        self,
        api: Any,
        collection: WorkflowCollection,
        *,
        settle_delay_s: float = config.RERUN_REFRESH_DELAY_S,
        on_error: Optional[Callable[[WorkflowRun, Exception], None]] = None,
    ):
        self.api = api
        self.collection = collection
        self.settle_delay_s = float(settle_delay_s)
        self.on_error = on_error
        self._mu = threading.Lock()
        self._retrying: Set[int] = set()

    @property
    def retrying(self) -> Set[int]:
        with self._mu:
            return set(self._retrying)

    def is_retrying(self, run_id: int) -> bool:
        with self._mu:
            return run_id in self._retrying

    def _clear(self, run_id: int) -> None:
        with self._mu:
            self._retrying.discard(run_id)

    def rerun(self, run: WorkflowRun, mode: str) -> Optional[threading.Timer]:
        """Request a rerun. Returns the pending follow-up timer, or None when the request failed."""
        if mode not in RERUN_MODES:
            raise ValueError(f"unknown rerun mode {mode!r}; expected one of {RERUN_MODES}")
        options = rerun_options(run)
        if mode not in options:
            raise ValueError(f"run {run.id} ({run.status}/{run.conclusion}) cannot be re-run with mode {mode!r}")

        owner, repo = run.repository.owner, run.repository.name
        if not self._request(run, lambda: self.api.rerun(owner, repo, run.id, mode)):
            return None
        _logger.info("rerun (%s) requested for %s run %s", mode, run.repo_key, run.id)
        return self._schedule_refresh(run)

    def rerun_job(self, run: WorkflowRun, job_id: int) -> Optional[threading.Timer]:
        """Re-run one job of a completed run; the run is marked retrying like a whole-run rerun."""
        if run.status != RunStatus.COMPLETED.value:
            raise ValueError(f"run {run.id} is {run.status}; jobs can only be re-run once it completes")
        if int(job_id) < 1:
            raise ValueError(f"Invalid job ID {job_id!r} (must be a positive integer)")

        owner, repo = run.repository.owner, run.repository.name
        if not self._request(run, lambda: self.api.rerun_job(owner, repo, int(job_id))):
            return None
        _logger.info("job %s of %s run %s re-run requested", job_id, run.repo_key, run.id)
        return self._schedule_refresh(run)

    def _request(self, run: WorkflowRun, send: Callable[[], None]) -> bool:
        with self._mu:
            self._retrying.add(run.id)
        try:
            send()
        except (ActionsHubAPIError, requests.RequestException) as e:
            _logger.error("error re-running workflow %s: %s", run.id, e)
            self._clear(run.id)
            if self.on_error is not None:
                self.on_error(run, e)
            return False
        return True

    def _schedule_refresh(self, run: WorkflowRun) -> threading.Timer:
        return call_later(self.settle_delay_s, lambda: self._refresh(run), name=f"actions-hub-rerun-{run.id}")

    def _refresh(self, run: WorkflowRun) -> None:
        owner, repo = run.repository.owner, run.repository.name
        try:
            resp = self.api.run_status(owner, repo, run.id)
            if resp.ok and isinstance(resp.data, WorkflowRun):
                self.collection.merge([resp.data])
                _logger.info("run %s after rerun: %s/%s", run.id, resp.data.status, resp.data.conclusion)
            else:
                _logger.warning("status refresh for run %s returned HTTP %s", run.id, resp.status_code)
        except (ActionsHubAPIError, requests.RequestException, ValueError) as e:
            _logger.error("error fetching updated workflow status for %s: %s", run.id, e)
        finally:
            self._clear(run.id)
