# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Filtering and the summary numbers shown above the run list."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from . import config
from .models import RunConclusion, RunStatus, WorkflowRun


@dataclass(frozen=True)
class WorkflowFilter:
    search: str = ""
    owner: str = ""
    repo: str = ""
    # ^ full name, e.g. "ai-dynamo/dynamo"
    branch: str = ""

    @property
    def active(self) -> bool:
        return bool(self.search or self.owner or self.repo or self.branch)


def _matches(run: WorkflowRun, f: WorkflowFilter) -> bool:
    if f.search:
        q = f.search.lower()
        haystacks = [run.name, run.repository.full_name, run.head_sha or ""]
        if not any(q in h.lower() for h in haystacks):
            return False
    if f.owner and run.repository.owner != f.owner:
        return False
    if f.repo and run.repository.full_name != f.repo:
        return False
    if f.branch and run.branch != f.branch:
        return False
    return True


def filter_runs(runs: Iterable[WorkflowRun], f: Optional[WorkflowFilter] = None) -> List[WorkflowRun]:
    if f is None or not f.active:
        return list(runs)
    return [r for r in runs if _matches(r, f)]


def filter_options(runs: Iterable[WorkflowRun], owner: str = "", repo: str = "") -> Dict[str, List[str]]:
    """Distinct owners / repos / branches to offer, narrowed by the current owner and repo selection.

    Branches are only offered once a repository is selected.
    """
    runs = list(runs)
    repos = sorted({r.repository.full_name for r in runs if not owner or r.repository.owner == owner})
    owners = sorted({r.repository.owner for r in runs if not repo or r.repository.full_name == repo})
    branches = sorted({r.branch for r in runs if r.repository.full_name == repo}) if repo else []
    return {"owners": owners, "repos": repos, "branches": branches}


@dataclass(frozen=True)
class DashboardStats:
    total_workflows: int
    success_rate: float
    active_runs: int
    failed_today: int


def compute_stats(runs: Iterable[WorkflowRun], now: Optional[float] = None) -> DashboardStats:
    """Summary numbers.

    - success_rate: % of completed runs updated in the last STATS_DAYS days that succeeded (1 decimal)
    - failed_today: failure/cancelled runs updated since local midnight
    """
    runs = list(runs)
    now = time.time() if now is None else float(now)
    week_ago = now - config.STATS_DAYS * 86400
    midnight = datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0).timestamp()

    completed = RunStatus.COMPLETED.value
    failed = (RunConclusion.FAILURE.value, RunConclusion.CANCELLED.value)

    last_week = [r for r in runs if r.status == completed and r.updated_at_epoch() >= week_ago]
    successes = sum(1 for r in last_week if r.conclusion == RunConclusion.SUCCESS.value)
    rate = (successes / len(last_week)) * 100 if last_week else 0.0

    return DashboardStats(
        total_workflows=len(runs),
        success_rate=round(rate, 1),
        active_runs=sum(1 for r in runs if r.is_active),
        failed_today=sum(
            1 for r in runs if r.status == completed and r.conclusion in failed and r.updated_at_epoch() >= midnight
        ),
    )
