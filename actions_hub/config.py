# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0

"""
Shared constants, environment lookups and the billing (freemium) policy.

All timing and quota literals (5s / 15s / 31 days / etc) live here; call sites
read them from this module at call time.
"""

from __future__ import annotations

import os
from pathlib import Path

from .models import BillingConfig

#
# Polling / delays (seconds)
#
WORKFLOW_POLL_INTERVAL_S: float = 5
# ^ Interval for the active-run poller (queued / in_progress runs only).
SYNC_POLL_INTERVAL_S: float = 15
# ^ Interval for the per-repository ETag sync poller.
RERUN_REFRESH_DELAY_S: float = 2
# ^ Settle delay after a rerun POST before re-fetching the run's status.
#   GitHub needs a moment to flip the run back to queued.
BATCH_DELAY_S: float = 3
# ^ Pause between sequential history batches (keeps us under the upstream rate limit).
USER_REFRESH_INTERVAL_S: float = 300
# ^ How often a polling dashboard re-reads `/auth/me` to pick up tier changes.

#
# History batches
#
BATCH_TOTAL_DAYS: int = 31
NUMBER_OF_BATCHES: int = 8
STATS_DAYS: int = 7
# ^ Lookback for the success-rate statistic.

#
# Billing tiers
#
FREE_DAYS_LIMIT: int = 7
PAID_DAYS_LIMIT: int = 31
FREE_NUMBER_OF_BATCHES: int = 2
PAID_NUMBER_OF_BATCHES: int = 8

#
# GitHub API paging
#
MAX_WORKFLOWS_PER_PAGE: int = 100
MAX_REPOS_PER_PAGE: int = 100
MAX_JOBS_PER_PAGE: int = 100

#
# Cache slots
#
CACHE_VERSION: str = "2.0"
# ^ Bump when the persisted layout changes; older slots are discarded (no migration).
WORKFLOWS_KEY_PREFIX: str = "workflows_cache"
USER_CACHE_KEY: str = "gh_user_info"
WORKFLOWS_UPDATED_EVENT: str = "workflowsUpdated"
JOB_LOG_KEY_PREFIX: str = "job_log"
# ^ One slot per completed job: `job_log_<job_id>`. Logs of unfinished jobs are never cached.

DEFAULT_BASE_URL: str = "http://localhost:4321/api"


def workflows_cache_key(username: str) -> str:
    """User-scoped cache key, e.g. `workflows_cache_alice`."""
    return f"{WORKFLOWS_KEY_PREFIX}_{username}"


# ======================================================================================
# Cache location policy
#
# All persistent caches for actions-hub live under:
#   - $ACTIONS_HUB_CACHE_DIR       (explicit override), else
#   - ~/.cache/actions-hub         (default)
# ======================================================================================

def actions_hub_cache_dir() -> Path:
    """Return the cache directory for actions-hub.

    Resolution order:
    - ACTIONS_HUB_CACHE_DIR (explicit override)
    - ~/.cache/actions-hub
    """
    override = os.environ.get("ACTIONS_HUB_CACHE_DIR")
    if override:
        return Path(override).expanduser()

    return Path.home() / ".cache" / "actions-hub"


def default_base_url() -> str:
    return os.environ.get("ACTIONS_HUB_URL") or DEFAULT_BASE_URL


def billing_enabled() -> bool:
    """True iff ENABLE_BILLING is set to 'true'."""
    return os.environ.get("ENABLE_BILLING") == "true"


def get_billing_config(enable_billing: bool, user_tier: str = "free") -> BillingConfig:
    """Return the quota policy for a tier.

    - billing disabled (self-hosted): full access regardless of tier
    - billing enabled, paid: full access
    - billing enabled, free: 7 days / 2 batches, personal repositories only
    """
    if not enable_billing:
        return BillingConfig(
            max_days=PAID_DAYS_LIMIT,
            max_batches=NUMBER_OF_BATCHES,
            can_view_org_workflows=True,
            billing_enabled=False,
            user_tier=user_tier,
        )

    if user_tier == "paid":
        return BillingConfig(
            max_days=PAID_DAYS_LIMIT,
            max_batches=PAID_NUMBER_OF_BATCHES,
            can_view_org_workflows=True,
            billing_enabled=True,
            user_tier=user_tier,
        )

    return BillingConfig(
        max_days=FREE_DAYS_LIMIT,
        max_batches=FREE_NUMBER_OF_BATCHES,
        can_view_org_workflows=False,
        billing_enabled=True,
        user_tier=user_tier,
    )


def job_log_cache_key(job_id: int) -> str:
    return f"{JOB_LOG_KEY_PREFIX}_{int(job_id)}"
