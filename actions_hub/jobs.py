# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Job details and job log text for one workflow run.

Caching strategy (job logs only; job lists are always fetched live):
  - Key: `job_log_<job_id>` in the durable store
  - Value: {"jobId", "logs", "ts"}
  - Only COMPLETED jobs are cached: the logs endpoint returns partial text while a job
    is still running, and a finished job's log never changes.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from . import config
from .models import WorkflowJob
from .storage import CacheStore

_logger = logging.getLogger(__name__)


class JobLogCache:
    """Durable cache of full job log text, keyed by job id."""

    def __init__(self, store: CacheStore):
        self.store = store

    def get(self, job_id: int) -> Optional[str]:
        raw: Any = self.store.get(config.job_log_cache_key(job_id))
        if not isinstance(raw, dict) or not isinstance(raw.get("logs"), str):
            return None
        return raw["logs"]

    def put(self, job_id: int, logs: str) -> None:
        self.store.set(
            config.job_log_cache_key(job_id),
            {"jobId": int(job_id), "logs": str(logs), "ts": int(time.time())},
        )

    def clear_all(self) -> int:
        prefix = f"{config.JOB_LOG_KEY_PREFIX}_"
        removed = 0
        for key in self.store.keys():
            if key.startswith(prefix):
                self.store.delete(key)
                removed += 1
        return removed


def fetch_job_logs(
    api: Any,
    owner: str,
    repo: str,
    job_id: int,
    *,
    job: Optional[WorkflowJob] = None,
    cache: Optional[JobLogCache] = None,
) -> str:
    """Full log text of one job.

    With a cache, a completed `job` is served from (and stored into) it. Without `job`
    the completion state is unknown, so the cache is bypassed entirely.
    """
    cacheable = cache is not None and job is not None and job.is_completed
    if cacheable:
        hit = cache.get(job_id)
        if hit is not None:
            _logger.debug("job %s logs: cache hit", job_id)
            return hit

    logs = api.job_logs(owner, repo, job_id)
    if cacheable:
        try:
            cache.put(job_id, logs)
        except (OSError, TypeError, ValueError) as e:
            _logger.warning("error caching logs for job %s: %s", job_id, e)
    return logs
