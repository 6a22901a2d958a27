# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""In-process fakes shared by the test modules (no network)."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Tuple

from .client import BatchResponse, ConditionalResponse
from .config import get_billing_config
from .models import BillingConfig, JobStep, RepositoryRef, UserInfo, WorkflowJob, WorkflowRun


def make_run(
    run_id: int,
    *,
    status: str = "completed",
    conclusion: Optional[str] = "success",
    updated_at: str = "2026-01-30T10:00:00Z",
    owner: str = "acme",
    repo: str = "widgets",
    name: str = "CI",
    branch: str = "main",
    head_sha: Optional[str] = None,
) -> WorkflowRun:
    if status != "completed":
        conclusion = None
    return WorkflowRun(
        id=run_id,
        name=name,
        status=status,
        conclusion=conclusion,
        repository=RepositoryRef(owner=owner, name=repo),
        branch=branch,
        event="push",
        created_at="2026-01-30T09:00:00Z",
        updated_at=updated_at,
        html_url=f"https://github.com/{owner}/{repo}/actions/runs/{run_id}",
        run_number=run_id,
        head_sha=head_sha,
    )


def make_job(job_id: int, *, status: str = "completed", conclusion: Optional[str] = "success", name: str = "build") -> WorkflowJob:
    if status != "completed":
        conclusion = None
    return WorkflowJob(
        id=job_id,
        name=name,
        status=status,
        conclusion=conclusion,
        started_at="2026-01-30T09:01:00Z",
        completed_at="2026-01-30T09:06:00Z" if status == "completed" else None,
        html_url=f"https://github.com/acme/widgets/actions/runs/1/job/{job_id}",
        steps=[JobStep(name="Checkout", status=status, conclusion=conclusion, number=1)],
    )


def make_user(username: str = "alice", tier: str = "paid", *, billing: bool = True) -> UserInfo:
    return UserInfo(
        authenticated=True,
        username=username,
        github_user_id="1",
        profile_url=f"https://github.com/{username}",
        billing_config=get_billing_config(billing, tier),
    )


class FakeWorkflowsAPI:
    """Scripted stand-in for ActionsHubClient / GitHubDirectClient.

    Responses are queued per key; the last queued entry is sticky. A queued Exception is raised.
    Unscripted conditional calls answer 304.
    """

    def __init__(self, user: Optional[UserInfo] = None):
        self.user = user or make_user()
        self.batches: Dict[str, List[WorkflowRun]] = {}
        self.batch_errors: Dict[str, Exception] = {}
        self.sync_responses: Dict[str, List[Any]] = {}
        self.status_responses: Dict[int, List[Any]] = {}
        self.rerun_error: Optional[Exception] = None
        self.jobs: Dict[int, List[WorkflowJob]] = {}
        self.logs: Dict[int, str] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self._mu = threading.Lock()

    def _record(self, *call: Any) -> None:
        with self._mu:
            self.calls.append(call)

    def calls_to(self, kind: str) -> List[Tuple[Any, ...]]:
        with self._mu:
            return [c for c in self.calls if c[0] == kind]

    def _next(self, queue: Optional[List[Any]], default: Any) -> Any:
        with self._mu:
            if not queue:
                item = default
            elif len(queue) > 1:
                item = queue.pop(0)
            else:
                item = queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def get_user_info(self) -> UserInfo:
        self._record("user")
        return self.user

    def fetch_batch(self, date_from: str, date_to: str, batch_id: str) -> BatchResponse:
        self._record("batch", batch_id, date_from, date_to)
        if batch_id in self.batch_errors:
            raise self.batch_errors[batch_id]
        runs = list(self.batches.get(batch_id, []))
        return BatchResponse(batch_id=batch_id, date_from=date_from, date_to=date_to, workflow_count=len(runs), workflows=runs)

    def sync_repository(self, owner: str, repo: str, *, etag: Optional[str] = None, last_modified: Optional[str] = None) -> ConditionalResponse:
        key = f"{owner}/{repo}"
        self._record("sync", key, etag, last_modified)
        return self._next(self.sync_responses.get(key), ConditionalResponse(status_code=304, etag=etag))

    def run_status(self, owner: str, repo: str, run_id: int, *, etag: Optional[str] = None, no_cache: bool = False) -> ConditionalResponse:
        self._record("status", run_id, etag, no_cache)
        return self._next(self.status_responses.get(run_id), ConditionalResponse(status_code=304, etag=etag))

    def rerun(self, owner: str, repo: str, run_id: int, mode: str) -> None:
        self._record("rerun", run_id, mode)
        if self.rerun_error is not None:
            raise self.rerun_error

    def run_jobs(self, owner: str, repo: str, run_id: int, *, attempt: Optional[int] = None) -> List[WorkflowJob]:
        self._record("jobs", run_id, attempt)
        return list(self.jobs.get(run_id, []))

    def job_logs(self, owner: str, repo: str, job_id: int) -> str:
        self._record("logs", job_id)
        return self.logs.get(job_id, "")

    def rerun_job(self, owner: str, repo: str, job_id: int) -> None:
        self._record("rerun_job", job_id)
        if self.rerun_error is not None:
            raise self.rerun_error


def free_billing() -> BillingConfig:
    return get_billing_config(True, "free")
