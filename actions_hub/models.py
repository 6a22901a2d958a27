# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0

"""
Shared data model for actions-hub.

Every other module (client, cache, pollers, CLI) speaks these types. The on-disk and
on-the-wire form is the camelCase JSON emitted by the workflows proxy, e.g.:

  {
    "id": 21507141526,
    "name": "CI",
    "status": "completed",
    "conclusion": "success",
    "repository": {"name": "dynamo", "owner": "ai-dynamo", "fullName": "ai-dynamo/dynamo"},
    "branch": "main",
    "event": "push",
    "createdAt": "2026-01-30T06:48:50Z",
    "updatedAt": "2026-01-30T17:05:56Z",
    "runStartedAt": "2026-01-30T06:48:51Z",
    "htmlUrl": "https://github.com/ai-dynamo/dynamo/actions/runs/21507141526",
    "runNumber": 1467,
    "headSha": "4f2c..."
  }

This module MUST NOT import any other actions_hub module to avoid cycles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class RunStatus(str, Enum):
    """Lifecycle status of a workflow run."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RunConclusion(str, Enum):
    """Terminal outcome of a completed run (GitHub values; the first four are the common ones)."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    NEUTRAL = "neutral"
    TIMED_OUT = "timed_out"
    ACTION_REQUIRED = "action_required"
    STALE = "stale"


ACTIVE_STATUSES = frozenset({RunStatus.QUEUED.value, RunStatus.IN_PROGRESS.value})


def parse_iso_epoch(s: Optional[str]) -> float:
    """Parse an ISO-8601 timestamp (GitHub `Z` suffix allowed) into epoch seconds; 0.0 if unparseable."""
    txt = str(s or "").strip()
    if not txt:
        return 0.0
    try:
        return datetime.fromisoformat(txt.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str
    full_name: str = ""

    def __post_init__(self) -> None:
        if not self.full_name:
            object.__setattr__(self, "full_name", f"{self.owner}/{self.name}")

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "owner": self.owner, "fullName": self.full_name}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RepositoryRef":
        owner = str(d.get("owner") or "")
        name = str(d.get("name") or "")
        return cls(owner=owner, name=name, full_name=str(d.get("fullName") or f"{owner}/{name}"))


@dataclass(frozen=True)
class WorkflowRun:
    """One execution of a CI workflow. `id` is globally unique and is the only merge key."""

    id: int
    name: str
    status: str
    conclusion: Optional[str]
    repository: RepositoryRef
    branch: str
    event: str
    created_at: str
    updated_at: str
    html_url: str = ""
    run_number: int = 0
    run_started_at: Optional[str] = None
    head_sha: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def repo_key(self) -> str:
        return f"{self.repository.owner}/{self.repository.name}"

    def updated_at_epoch(self) -> float:
        return parse_iso_epoch(self.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "repository": self.repository.to_dict(),
            "branch": self.branch,
            "event": self.event,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "runStartedAt": self.run_started_at,
            "htmlUrl": self.html_url,
            "runNumber": self.run_number,
        }
        if self.head_sha:
            d["headSha"] = self.head_sha
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WorkflowRun":
        """Build a run from its camelCase dict; raises ValueError/TypeError on malformed input."""
        if not isinstance(d, dict):
            raise TypeError(f"workflow run must be a dict, got {type(d).__name__}")
        repo_raw = d.get("repository")
        if not isinstance(repo_raw, dict):
            raise ValueError(f"workflow run {d.get('id')!r} has no repository")
        return cls(
            id=int(d["id"]),
            name=str(d.get("name") or ""),
            status=str(d.get("status") or ""),
            conclusion=d.get("conclusion"),
            repository=RepositoryRef.from_dict(repo_raw),
            branch=str(d.get("branch") or ""),
            event=str(d.get("event") or ""),
            created_at=str(d.get("createdAt") or ""),
            updated_at=str(d.get("updatedAt") or ""),
            html_url=str(d.get("htmlUrl") or ""),
            run_number=int(d.get("runNumber") or 0),
            run_started_at=d.get("runStartedAt"),
            head_sha=d.get("headSha") or None,
        )


def map_github_run(raw: Dict[str, Any], owner: str, repo: str) -> WorkflowRun:
    """Map a raw GitHub REST workflow run (`/actions/runs`) into a WorkflowRun."""
    return WorkflowRun(
        id=int(raw["id"]),
        name=str(raw.get("name") or ""),
        status=str(raw.get("status") or ""),
        conclusion=raw.get("conclusion"),
        repository=RepositoryRef(owner=owner, name=repo),
        branch=str(raw.get("head_branch") or ""),
        event=str(raw.get("event") or ""),
        created_at=str(raw.get("created_at") or ""),
        updated_at=str(raw.get("updated_at") or ""),
        html_url=str(raw.get("html_url") or ""),
        run_number=int(raw.get("run_number") or 0),
        run_started_at=raw.get("run_started_at"),
        head_sha=raw.get("head_sha") or None,
    )


def runs_from_github(payload: Any, owner: str, repo: str) -> List[WorkflowRun]:
    """Map a raw GitHub `workflow_runs` list, skipping entries that are not valid runs."""
    out: List[WorkflowRun] = []
    if not isinstance(payload, list):
        return out
    for item in payload:
        try:
            out.append(map_github_run(item, owner, repo))
        except (AttributeError, KeyError, ValueError, TypeError):
            continue
    return out


def runs_from_payload(payload: Any) -> List[WorkflowRun]:
    """Decode a JSON list of runs, skipping entries that are not valid runs."""
    out: List[WorkflowRun] = []
    if not isinstance(payload, list):
        return out
    for item in payload:
        try:
            out.append(WorkflowRun.from_dict(item))
        except (KeyError, ValueError, TypeError):
            continue
    return out


@dataclass(frozen=True)
class BatchMetadata:
    """A fully loaded date window. `loaded_at` is epoch milliseconds."""

    date_from: str
    date_to: str
    loaded_at: int
    workflow_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dateFrom": self.date_from,
            "dateTo": self.date_to,
            "loadedAt": self.loaded_at,
            "workflowCount": self.workflow_count,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BatchMetadata":
        return cls(
            date_from=str(d.get("dateFrom") or ""),
            date_to=str(d.get("dateTo") or ""),
            loaded_at=int(d.get("loadedAt") or 0),
            workflow_count=int(d.get("workflowCount") or 0),
        )


@dataclass
class PersistedCache:
    """The durable per-user unit stored under `workflows_cache_<username>`."""

    version: str
    data: List[WorkflowRun] = field(default_factory=list)
    timestamp: int = 0
    batches: Dict[str, BatchMetadata] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "data": [r.to_dict() for r in self.data],
            "timestamp": self.timestamp,
            "batches": {k: v.to_dict() for (k, v) in self.batches.items()},
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PersistedCache":
        batches_raw = d.get("batches") or {}
        if not isinstance(batches_raw, dict):
            raise ValueError("cache batches must be an object")
        return cls(
            version=str(d.get("version") or ""),
            data=runs_from_payload(d.get("data") or []),
            timestamp=int(d.get("timestamp") or 0),
            batches={str(k): BatchMetadata.from_dict(v) for (k, v) in batches_raw.items() if isinstance(v, dict)},
        )


@dataclass(frozen=True)
class BillingConfig:
    """Per-tier quota policy. Read-only input to the batch planner."""

    max_days: int
    max_batches: int
    can_view_org_workflows: bool = True
    billing_enabled: bool = False
    user_tier: str = "free"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxDays": self.max_days,
            "maxBatches": self.max_batches,
            "canViewOrgWorkflows": self.can_view_org_workflows,
            "billingEnabled": self.billing_enabled,
            "userTier": self.user_tier,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BillingConfig":
        return cls(
            max_days=int(d["maxDays"]),
            max_batches=int(d["maxBatches"]),
            can_view_org_workflows=bool(d.get("canViewOrgWorkflows", True)),
            billing_enabled=bool(d.get("billingEnabled", False)),
            user_tier=str(d.get("userTier") or "free"),
        )


@dataclass(frozen=True)
class UserInfo:
    """Identity + billing snapshot returned by `/auth/me` (cached in the session slot)."""

    authenticated: bool
    username: str = ""
    github_user_id: str = ""
    avatar_url: str = ""
    email: Optional[str] = None
    profile_url: str = ""
    name: Optional[str] = None
    billing_config: Optional[BillingConfig] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"authenticated": self.authenticated}
        if not self.authenticated:
            return d
        d.update(
            {
                "username": self.username,
                "githubUserId": self.github_user_id,
                "avatarUrl": self.avatar_url,
                "email": self.email,
                "profileUrl": self.profile_url,
                "name": self.name,
            }
        )
        if self.billing_config is not None:
            d["billingConfig"] = self.billing_config.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UserInfo":
        billing_raw = d.get("billingConfig")
        billing = BillingConfig.from_dict(billing_raw) if isinstance(billing_raw, dict) else None
        return cls(
            authenticated=bool(d.get("authenticated")),
            username=str(d.get("username") or ""),
            github_user_id=str(d.get("githubUserId") or ""),
            avatar_url=str(d.get("avatarUrl") or ""),
            email=d.get("email"),
            profile_url=str(d.get("profileUrl") or ""),
            name=d.get("name"),
            billing_config=billing,
        )


@dataclass(frozen=True)
class JobStep:
    name: str
    status: str
    conclusion: Optional[str]
    number: int
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "number": self.number,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "JobStep":
        return cls(
            name=str(d.get("name") or ""),
            status=str(d.get("status") or ""),
            conclusion=d.get("conclusion"),
            number=int(d.get("number") or 0),
            started_at=d.get("startedAt"),
            completed_at=d.get("completedAt"),
        )


@dataclass(frozen=True)
class WorkflowJob:
    """One job of a workflow run attempt, with its steps in execution order."""

    id: int
    name: str
    status: str
    conclusion: Optional[str]
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    html_url: str = ""
    steps: List[JobStep] = field(default_factory=list)

    @property
    def is_completed(self) -> bool:
        return self.status == RunStatus.COMPLETED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "htmlUrl": self.html_url,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WorkflowJob":
        if not isinstance(d, dict):
            raise TypeError(f"workflow job must be a dict, got {type(d).__name__}")
        return cls(
            id=int(d["id"]),
            name=str(d.get("name") or ""),
            status=str(d.get("status") or ""),
            conclusion=d.get("conclusion"),
            started_at=d.get("startedAt"),
            completed_at=d.get("completedAt"),
            html_url=str(d.get("htmlUrl") or ""),
            steps=[JobStep.from_dict(s) for s in (d.get("steps") or []) if isinstance(s, dict)],
        )


def map_github_job(raw: Dict[str, Any]) -> WorkflowJob:
    """Map a raw GitHub REST job (`/actions/runs/{run_id}/jobs`) into a WorkflowJob."""
    steps = [
        JobStep(
            name=str(s.get("name") or ""),
            status=str(s.get("status") or ""),
            conclusion=s.get("conclusion"),
            number=int(s.get("number") or 0),
            started_at=s.get("started_at"),
            completed_at=s.get("completed_at"),
        )
        for s in (raw.get("steps") or [])
        if isinstance(s, dict)
    ]
    return WorkflowJob(
        id=int(raw["id"]),
        name=str(raw.get("name") or ""),
        status=str(raw.get("status") or ""),
        conclusion=raw.get("conclusion"),
        started_at=raw.get("started_at"),
        completed_at=raw.get("completed_at"),
        html_url=str(raw.get("html_url") or ""),
        steps=steps,
    )


def jobs_from_payload(payload: Any, *, github: bool = False) -> List[WorkflowJob]:
    """Decode a JSON list of jobs (camelCase, or raw GitHub when `github`), skipping malformed entries."""
    out: List[WorkflowJob] = []
    if not isinstance(payload, list):
        return out
    for item in payload:
        try:
            out.append(map_github_job(item) if github else WorkflowJob.from_dict(item))
        except (AttributeError, KeyError, ValueError, TypeError):
            continue
    return out


def summarize_jobs(jobs: List[WorkflowJob], fallback_conclusion: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """Overall (status, conclusion) of one attempt, derived from its jobs.

    Any in-progress job -> in_progress; else any queued/pending job -> queued. Once every job
    is done: failure beats cancelled, all success/skipped is success, anything else keeps
    the run's own conclusion.
    """
    if any(j.status == RunStatus.IN_PROGRESS.value for j in jobs):
        return RunStatus.IN_PROGRESS.value, None
    if any(j.status in (RunStatus.QUEUED.value, "pending") for j in jobs):
        return RunStatus.QUEUED.value, None

    conclusions = [j.conclusion for j in jobs]
    if RunConclusion.FAILURE.value in conclusions:
        conclusion: Optional[str] = RunConclusion.FAILURE.value
    elif RunConclusion.CANCELLED.value in conclusions:
        conclusion = RunConclusion.CANCELLED.value
    elif conclusions and all(c in (RunConclusion.SUCCESS.value, RunConclusion.SKIPPED.value) for c in conclusions):
        conclusion = RunConclusion.SUCCESS.value
    else:
        conclusion = fallback_conclusion or None
    return RunStatus.COMPLETED.value, conclusion
