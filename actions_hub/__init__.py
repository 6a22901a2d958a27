# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""
GitHub Actions workflow sync + cache engine (actions-hub).

This package contains:
- batched history loading within a tier's quota (`batches`)
- a per-user, versioned persistent cache (`workflow_cache`, `storage`)
- ETag-based repository sync and in-flight run polling (`sync`, `active`)
- re-run requests with a settled status refresh (`rerun`)
- per-run job details and cached job logs (`jobs`)

`Dashboard` wires all of it together for one signed-in user.
"""

from .active import ActivePoller, fetch_run_status  # noqa: F401
from .batches import BatchLoader, BatchPlan, LoadState, calculate_date_range, plan_batches  # noqa: F401
from .client import ActionsHubClient, ConditionalResponse, GitHubDirectClient  # noqa: F401
from .collection import WorkflowCollection, merge_runs  # noqa: F401
from .dashboard import Dashboard  # noqa: F401
from .jobs import JobLogCache, fetch_job_logs  # noqa: F401
from .models import (  # noqa: F401
    BatchMetadata,
    BillingConfig,
    JobStep,
    PersistedCache,
    UserInfo,
    WorkflowJob,
    WorkflowRun,
    summarize_jobs,
)
from .rerun import RerunCoordinator, rerun_options  # noqa: F401
from .storage import CacheStore, DiskCacheStore, MemoryCacheStore  # noqa: F401
from .sync import SyncPoller  # noqa: F401
from .workflow_cache import PersistentCache, logout  # noqa: F401

__all__ = [
    "ActionsHubClient",
    "ActivePoller",
    "BatchLoader",
    "BatchMetadata",
    "BatchPlan",
    "BillingConfig",
    "CacheStore",
    "ConditionalResponse",
    "Dashboard",
    "DiskCacheStore",
    "GitHubDirectClient",
    "JobLogCache",
    "JobStep",
    "LoadState",
    "MemoryCacheStore",
    "PersistedCache",
    "PersistentCache",
    "RerunCoordinator",
    "SyncPoller",
    "UserInfo",
    "WorkflowCollection",
    "WorkflowJob",
    "WorkflowRun",
    "calculate_date_range",
    "fetch_job_logs",
    "fetch_run_status",
    "logout",
    "merge_runs",
    "plan_batches",
    "rerun_options",
    "summarize_jobs",
]
