# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Engine facade: one object per signed-in user.

Wiring:
  BatchLoader state   -> SyncPoller.on_loading_changed  (sync starts once the first batch is in)
  collection changes  -> ActivePoller.refresh           (active polling only while runs are in flight)
  user refresh task    -> Dashboard.refresh_user         (a tier change wipes caches and re-plans the loader)
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

from . import config
from .active import ActivePoller
from .batches import BatchLoader, LoadState
from .collection import WorkflowCollection
from .exceptions import AuthError
from .jobs import JobLogCache, fetch_job_logs
from .models import UserInfo, WorkflowJob, WorkflowRun
from .rerun import RerunCoordinator
from .scheduling import PeriodicTask
from .session import SessionManager
from .storage import CacheStore
from .sync import SyncPoller
from .workflow_cache import PersistentCache

_logger = logging.getLogger(__name__)


class Dashboard:
    def __init__(
        self,
        api: Any,
        durable_store: CacheStore,
        session_store: CacheStore,
        *,
        batch_delay_s: Optional[float] = None,
        sync_interval_s: float = config.SYNC_POLL_INTERVAL_S,
        active_interval_s: float = config.WORKFLOW_POLL_INTERVAL_S,
        rerun_delay_s: Optional[float] = None,
        user_refresh_interval_s: float = config.USER_REFRESH_INTERVAL_S,
        sleep: Optional[Callable[[float], None]] = None,
        on_rerun_error: Optional[Callable[[WorkflowRun, Exception], None]] = None,
    ):
        self.api = api
        self.session = SessionManager(api, durable_store, session_store)
        self.user: UserInfo = self.session.current_user()
        if not self.user.authenticated or not self.user.username:
            raise AuthError(status_code=401, endpoint="/auth/me", message="not signed in")

        self.cache = PersistentCache(durable_store)
        self.job_logs_cache = JobLogCache(durable_store)
        self.collection = WorkflowCollection(self.user.username, self.cache)

        if batch_delay_s is None:
            batch_delay_s = config.BATCH_DELAY_S
        if rerun_delay_s is None:
            rerun_delay_s = config.RERUN_REFRESH_DELAY_S

        loader_kwargs = {"billing_config": self.user.billing_config, "delay_s": batch_delay_s}
        if sleep is not None:
            loader_kwargs["sleep"] = sleep
        self.loader = BatchLoader(api, self.collection, **loader_kwargs)
        self.sync = SyncPoller(api, self.collection, interval_s=sync_interval_s)
        self.active = ActivePoller(api, self.collection, interval_s=active_interval_s)
        self.reruns = RerunCoordinator(api, self.collection, settle_delay_s=rerun_delay_s, on_error=on_rerun_error)

        self._user_task = PeriodicTask("user", user_refresh_interval_s, self._refresh_user_tick, run_immediately=False)

        self._started = threading.Event()
        self._remove_listener: Optional[Callable[[], None]] = None
        self.loader.add_state_listener(self._on_load_state)

    @property
    def username(self) -> str:
        return self.user.username

    def _on_load_state(self, state: LoadState) -> None:
        if self._started.is_set():
            self.sync.on_loading_changed(state.blocking)

    def start(self, *, background: bool = True, poll: bool = True) -> Optional[threading.Thread]:
        """Load (cache first) and, unless `poll` is False, begin polling."""
        if poll:
            self._started.set()
            if self._remove_listener is None:
                self._remove_listener = self.collection.add_listener(self.active.refresh)
            self._user_task.start()
        return self.loader.start(background=background)

    def stop(self) -> None:
        self._started.clear()
        self._user_task.stop()
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self.sync.stop()
        self.active.stop()

    def refresh_user(self, *, background: bool = True) -> Optional[threading.Thread]:
        """Re-read identity and billing policy.

        A changed tier has already wiped every persisted slot (see SessionManager), so the
        in-memory collection and the validators are dropped too. The loader then re-plans
        for the new policy and loads what is missing.
        """
        previous = self.user
        user = self.session.refresh_user()
        if not user.authenticated or user.username != previous.username:
            raise AuthError(status_code=401, endpoint="/auth/me", message="signed-in user changed or signed out")
        self.user = user

        prev_tier = previous.billing_config.user_tier if previous.billing_config else None
        new_tier = user.billing_config.user_tier if user.billing_config else None
        tier_changed = prev_tier is not None and new_tier is not None and prev_tier != new_tier
        if tier_changed:
            _logger.info("tier changed for %s (%s -> %s); reloading history", user.username, prev_tier, new_tier)
            self.sync.reset()
            self.active.reset()
            self.collection.reset()
        return self.loader.set_billing_config(user.billing_config, background=background, force=tier_changed)

    def _refresh_user_tick(self) -> None:
        self.refresh_user(background=False)

    def runs(self) -> List[WorkflowRun]:
        return self.collection.snapshot()

    def force_full_refresh(self, confirm: Callable[[str], bool], *, background: bool = False) -> bool:
        """Discard everything (cache, collection, validators) and reload every batch."""

        def _confirm(msg: str) -> bool:
            if not confirm(msg):
                return False
            self.sync.stop()
            self.active.stop()
            self.sync.reset()
            self.active.reset()
            return True

        ok = self.loader.force_full_refresh(_confirm, background=background)
        if not ok:
            _logger.info("full refresh cancelled")
        return ok

    def rerun(self, run: WorkflowRun, mode: str) -> Optional[threading.Timer]:
        return self.reruns.rerun(run, mode)

    def rerun_job(self, run: WorkflowRun, job_id: int) -> Optional[threading.Timer]:
        return self.reruns.rerun_job(run, job_id)

    def jobs(self, run: WorkflowRun, *, attempt: Optional[int] = None) -> List[WorkflowJob]:
        return self.api.run_jobs(run.repository.owner, run.repository.name, run.id, attempt=attempt)

    def job_logs(self, owner: str, repo: str, job_id: int, *, job: Optional[WorkflowJob] = None) -> str:
        return fetch_job_logs(self.api, owner, repo, job_id, job=job, cache=self.job_logs_cache)

    def logout(self) -> int:
        self.stop()
        self.collection.reset()
        return self.session.logout()
