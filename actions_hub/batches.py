# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""History loading in date-bounded batches.

The lookback period (31 days on the paid tier, 7 on free) is split into N contiguous
windows, newest first:

    plan_batches(31, 8):
      batch-1  days_ago=0   days_back=4    (today-4  .. today)
      batch-2  days_ago=4   days_back=4    (today-8  .. today-4)
      ...
      batch-8  days_ago=28  days_back=3    (today-31 .. today-28)

Batches are fetched sequentially with a pause between them (BATCH_DELAY_S) to stay
under the upstream rate limit. The blocking "loading" state ends after the first
batch; the rest load in the background. A failed batch is recorded in `errors` and
is picked up again by the next `load_missing()`.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import requests

from . import config
from .collection import WorkflowCollection
from .exceptions import ActionsHubAPIError, BatchRangeForbiddenError
from .models import BatchMetadata, BillingConfig, WorkflowRun

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchPlan:
    id: str
    days_ago: int
    days_back: int
    priority: int


def plan_batches(total_days: int = config.BATCH_TOTAL_DAYS, batch_count: int = config.NUMBER_OF_BATCHES) -> List[BatchPlan]:
    """Partition `total_days` into up to `batch_count` contiguous windows, newest first.

    Every window is ceil(total_days / batch_count) days except possibly a shorter last one.
    Planning stops once the windows reach `total_days`, so fewer than `batch_count`
    windows may come back (e.g. plan_batches(10, 8) -> 5 windows of 2 days).
    """
    total_days = int(total_days)
    batch_count = int(batch_count)
    if total_days <= 0 or batch_count <= 0:
        return []

    per_batch = int(math.ceil(total_days / batch_count))
    plans: List[BatchPlan] = []
    for i in range(batch_count):
        days_ago = i * per_batch
        if days_ago >= total_days:
            break
        days_back = min(per_batch, total_days - days_ago)
        plans.append(BatchPlan(id=f"batch-{i + 1}", days_ago=days_ago, days_back=days_back, priority=i + 1))
    return plans


def calculate_date_range(days_ago: int, days_back: int, today: Optional[date] = None) -> Tuple[str, str]:
    """Return (date_from, date_to) as YYYY-MM-DD: to = today - days_ago, from = to - days_back."""
    today = today or date.today()
    end = today - timedelta(days=int(days_ago))
    start = end - timedelta(days=int(days_back))
    return start.isoformat(), end.isoformat()


def format_batch_range(plan: BatchPlan, today: Optional[date] = None) -> str:
    date_from, date_to = calculate_date_range(plan.days_ago, plan.days_back, today=today)
    return f"{date_from} to {date_to}"


class LoadState(str, Enum):
    IDLE = "idle"
    INITIAL_LOAD = "initial_load"
    BACKGROUND_LOAD = "background_load"
    FULL_REFRESH = "full_refresh"
    READY = "ready"

    @property
    def blocking(self) -> bool:
        """True while the user has nothing to look at yet."""
        return self in (LoadState.IDLE, LoadState.INITIAL_LOAD, LoadState.FULL_REFRESH)


@dataclass(frozen=True)
class BatchError:
    batch_id: str
    message: str
    max_days: Optional[int] = None


StateListener = Callable[[LoadState], None]


class BatchLoader:
    """Populates a WorkflowCollection from the batch endpoint.

    Example:
        loader = BatchLoader(api, collection, billing_config=user.billing_config)
        loader.start()           # cache first, then missing batches in the background
        loader.state             # LoadState.READY once everything is in
    """

    def __init__(
        self,
        api: Any,
        collection: WorkflowCollection,
        *,
        billing_config: Optional[BillingConfig] = None,
        delay_s: float = config.BATCH_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
        today: Optional[Callable[[], date]] = None,
    ):
        self.api = api
        self.collection = collection
        self.billing_config = billing_config
        self.delay_s = float(delay_s)
        self._sleep = sleep
        self._today = today or date.today
        self._mu = threading.Lock()
        self._load_mu = threading.Lock()
        self._state = LoadState.IDLE
        self._loading: Set[str] = set()
        self._errors: Dict[str, BatchError] = {}
        self._listeners: List[StateListener] = []
        self._plan = self._plan_for(billing_config)

    # --- plan ----------------------------------------------------------------

    @staticmethod
    def _plan_for(cfg: Optional[BillingConfig]) -> List[BatchPlan]:
        # No billing snapshot yet: assume the full (paid) window.
        if cfg is None:
            return plan_batches(config.BATCH_TOTAL_DAYS, config.NUMBER_OF_BATCHES)
        return plan_batches(cfg.max_days, cfg.max_batches)

    @property
    def plan(self) -> List[BatchPlan]:
        with self._mu:
            return list(self._plan)

    @property
    def max_days(self) -> int:
        return int(self.billing_config.max_days) if self.billing_config else config.BATCH_TOTAL_DAYS

    def set_billing_config(
        self,
        cfg: Optional[BillingConfig],
        *,
        background: bool = True,
        force: bool = False,
    ) -> Optional[threading.Thread]:
        """Adopt a new tier policy. Re-plans (and loads what's missing) when the window shape changed.

        `force` loads what's missing even when the shape is unchanged (e.g. after the
        collection was emptied by a tier change).
        """
        old = self.billing_config
        self.billing_config = cfg
        old_shape = (old.max_days, old.max_batches) if old else None
        new_shape = (cfg.max_days, cfg.max_batches) if cfg else None
        if old_shape == new_shape and not force:
            return None
        with self._mu:
            self._plan = self._plan_for(cfg)
        _logger.info("billing policy changed %s -> %s; re-planned %d batch(es)", old_shape, new_shape, len(self._plan))
        if self.state == LoadState.IDLE:
            return None
        return self._run(self.load_missing, background=background)

    # --- state ---------------------------------------------------------------

    @property
    def state(self) -> LoadState:
        with self._mu:
            return self._state

    @property
    def loading(self) -> Set[str]:
        with self._mu:
            return set(self._loading)

    @property
    def errors(self) -> Dict[str, BatchError]:
        with self._mu:
            return dict(self._errors)

    def add_state_listener(self, listener: StateListener) -> None:
        with self._mu:
            self._listeners.append(listener)

    def _set_state(self, state: LoadState) -> None:
        with self._mu:
            if self._state == state:
                return
            self._state = state
            listeners = list(self._listeners)
        _logger.debug("batch loader state -> %s", state.value)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                _logger.exception("batch loader state listener failed")

    # --- loading -------------------------------------------------------------

    def fetch_batch(self, plan: BatchPlan) -> List[WorkflowRun]:
        """Fetch one window and merge it into the collection. Failures are recorded, never raised."""
        date_from, date_to = calculate_date_range(plan.days_ago, plan.days_back, today=self._today())
        with self._mu:
            self._loading.add(plan.id)
        try:
            resp = self.api.fetch_batch(date_from, date_to, plan.id)
        except BatchRangeForbiddenError as e:
            _logger.error("batch %s rejected (%s..%s): %s (maxDays=%s)", plan.id, date_from, date_to, e.error, e.max_days)
            self._record_error(BatchError(batch_id=plan.id, message=e.error, max_days=e.max_days))
            return []
        except (ActionsHubAPIError, requests.RequestException, ValueError) as e:
            _logger.error("error loading batch %s: %s", plan.id, e)
            self._record_error(BatchError(batch_id=plan.id, message=f"Failed to load workflows from {plan.id}"))
            return []
        except Exception:
            _logger.exception("unexpected error loading batch %s", plan.id)
            self._record_error(BatchError(batch_id=plan.id, message=f"Failed to load workflows from {plan.id}"))
            return []
        finally:
            with self._mu:
                self._loading.discard(plan.id)

        runs = list(resp.workflows)
        self.collection.merge(runs)
        self.collection.record_batch(
            plan.id,
            BatchMetadata(
                date_from=date_from,
                date_to=date_to,
                loaded_at=int(time.time() * 1000),
                workflow_count=int(resp.workflow_count),
            ),
        )
        with self._mu:
            self._errors.pop(plan.id, None)
        _logger.info("loaded %s (%s..%s): %d run(s)", plan.id, date_from, date_to, len(runs))
        return runs

    def _record_error(self, err: BatchError) -> None:
        with self._mu:
            self._errors[err.batch_id] = err

    def load_all(self, *, initial_state: LoadState = LoadState.INITIAL_LOAD) -> None:
        """Fetch every planned batch sequentially, pausing between batches."""
        with self._load_mu:
            with self._mu:
                self._errors = {}
            self._set_state(initial_state)
            plan = self.plan
            try:
                for i, batch in enumerate(plan):
                    self.fetch_batch(batch)
                    if i == 0:
                        self._set_state(LoadState.BACKGROUND_LOAD)
                    if i < len(plan) - 1:
                        self._sleep(self.delay_s)
            finally:
                self._set_state(LoadState.READY)

    def load_missing(self) -> None:
        """Fetch planned batches that aren't recorded as loaded (including previously failed ones)."""
        with self._load_mu:
            loaded = self.collection.batches()
            missing = [b for b in self.plan if b.id not in loaded]
            if not missing:
                self._set_state(LoadState.READY)
                return
            self._set_state(LoadState.BACKGROUND_LOAD)
            try:
                for batch in missing:
                    self.fetch_batch(batch)
                    self._sleep(self.delay_s)
            finally:
                self._set_state(LoadState.READY)

    def start(self, *, background: bool = True) -> Optional[threading.Thread]:
        """Initial load: restore from the persisted cache when it has batches, else load everything.

        With a usable cache the collection is populated immediately and only the missing
        batches are fetched. Returns the worker thread when `background` is set.
        """
        cached = None
        if self.collection.cache is not None:
            cached = self.collection.cache.load(self.collection.username)

        if cached is not None and cached.batches:
            _logger.info(
                "restored %d run(s) and %d batch(es) from cache for %s",
                len(cached.data),
                len(cached.batches),
                self.collection.username,
            )
            self.collection.replace(cached.data, cached.batches)
            return self._run(self.load_missing, background=background)
        return self._run(self.load_all, background=background)

    def force_full_refresh(self, confirm: Callable[[str], bool], *, background: bool = False) -> bool:
        """Discard the cache and reload every batch. Returns False when the user declined."""
        msg = f"This will reload all workflows from the last {self.max_days} days. Continue?"
        if not confirm(msg):
            return False
        if self.collection.cache is not None:
            self.collection.cache.clear(self.collection.username)
        self.collection.reset()
        self._set_state(LoadState.FULL_REFRESH)
        self._run(lambda: self.load_all(initial_state=LoadState.FULL_REFRESH), background=background)
        return True

    @staticmethod
    def _run(fn: Callable[[], None], *, background: bool) -> Optional[threading.Thread]:
        if not background:
            fn()
            return None

        def _target() -> None:
            try:
                fn()
            except Exception:
                _logger.exception("batch loader thread failed")

        t = threading.Thread(target=_target, name="actions-hub-batches", daemon=True)
        t.start()
        return t
