# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Workflows API clients.

The engine (loader + pollers + rerun) talks to one small contract:

  get_user_info()                                          -> UserInfo
  fetch_batch(date_from, date_to, batch_id)                -> BatchResponse
  sync_repository(owner, repo, etag=, last_modified=)      -> ConditionalResponse (data: List[WorkflowRun])
  run_status(owner, repo, run_id, etag=, no_cache=)        -> ConditionalResponse (data: WorkflowRun | {})
  rerun(owner, repo, run_id, mode)                         -> None (raises RerunRequestError)
  run_jobs(owner, repo, run_id, attempt=)                  -> List[WorkflowJob] (with steps)
  job_logs(owner, repo, job_id)                            -> str
  rerun_job(owner, repo, job_id)                           -> None (raises RerunRequestError)

Two implementations:

1. ActionsHubClient - the dashboard's server-side proxy:
     GET  /workflows/batch?dateFrom&dateTo&batchId
     GET  /workflows/{owner}/{repo}/sync                 (If-None-Match / If-Modified-Since)
     GET  /workflows/{owner}/{repo}/{runId}/status       (If-None-Match)
     POST /workflows/{owner}/{repo}/{runId}/rerun        {"type": "all"|"failed"}
     GET  /workflows/{owner}/{repo}/{runId}?attempt      (run details; `jobs` with steps)
     GET  /workflows/{owner}/{repo}/jobs/{jobId}/logs    {"logs": "..."}
     POST /workflows/{owner}/{repo}/jobs/{jobId}/rerun
     GET  /auth/me

2. GitHubDirectClient - the same contract straight against api.github.com, for running
   without a proxy deployment. It applies the billing policy itself.

ETag Support:
    304 Not Modified responses DON'T count against the GitHub rate limit, so every poll
    sends the last validator it saw. A 304 is returned as ConditionalResponse(status_code=304, data=None).

Transport failures (connection reset, timeout, ...) propagate as requests.RequestException;
callers decide the isolation boundary.
"""

from __future__ import annotations

import io
import logging
import os
import threading
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml

from . import config
from .exceptions import (
    ActionsHubAPIError,
    AuthError,
    BatchRangeForbiddenError,
    NotFoundError,
    RequestError,
    RerunRequestError,
)
from .models import (
    BillingConfig,
    UserInfo,
    WorkflowJob,
    WorkflowRun,
    jobs_from_payload,
    runs_from_github,
    runs_from_payload,
)

_logger = logging.getLogger(__name__)

RERUN_MODES = ("all", "failed")


# ======================================================================================
# API CALL STATISTICS
# ======================================================================================

class _APIStats:
    """Process-wide REST call counters (shared by both clients)."""

    def __init__(self):
        self._mu = threading.Lock()
        self.reset()

    def reset(self) -> None:
        self.calls_total = 0
        self.calls_by_label: Dict[str, int] = {}
        self.etag_304_total = 0
        self.errors_total = 0
        self.errors_by_status: Dict[int, int] = {}
        self.time_total_s = 0.0

    def record(self, *, label: str, status_code: int, elapsed_s: float) -> None:
        with self._mu:
            self.calls_total += 1
            self.calls_by_label[label] = self.calls_by_label.get(label, 0) + 1
            self.time_total_s += max(0.0, float(elapsed_s))
            if status_code == 304:
                self.etag_304_total += 1
            elif status_code >= 400:
                self.errors_total += 1
                self.errors_by_status[status_code] = self.errors_by_status.get(status_code, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        with self._mu:
            return {
                "calls_total": self.calls_total,
                "calls_by_label": dict(self.calls_by_label),
                "etag_304_total": self.etag_304_total,
                "errors_total": self.errors_total,
                "errors_by_status": dict(self.errors_by_status),
                "time_total_s": round(self.time_total_s, 3),
            }


API_STATS = _APIStats()


# ======================================================================================
# Responses
# ======================================================================================

@dataclass(frozen=True)
class ConditionalResponse:
    """Outcome of a conditional GET. `data` is None on 304."""

    status_code: int
    data: Any = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class BatchResponse:
    batch_id: str
    date_from: str
    date_to: str
    workflow_count: int
    workflows: List[WorkflowRun] = field(default_factory=list)


def _header(resp: requests.Response, name: str) -> Optional[str]:
    val = resp.headers.get(name) if resp.headers is not None else None
    val = str(val or "").strip()
    return val or None


def _json_or_none(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def _error_message(resp: requests.Response, default: str) -> str:
    body = _json_or_none(resp)
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return default


def _raise_for_status(resp: requests.Response, *, endpoint: str) -> None:
    code = int(resp.status_code or 0)
    if 200 <= code < 400:
        return
    msg = _error_message(resp, f"{endpoint} failed with HTTP {code}")
    if code == 401:
        raise AuthError(status_code=code, endpoint=endpoint, message=msg)
    if code == 404:
        raise NotFoundError(status_code=code, endpoint=endpoint, message=msg)
    raise RequestError(status_code=code, endpoint=endpoint, message=msg)


def _positive(value: Any, what: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = 0
    if n < 1:
        raise ValueError(f"Invalid {what} {value!r} (must be a positive integer)")
    return n


def _decode_job_log(content: bytes) -> str:
    """Job log bytes -> text. A ZIP archive is expanded, one `===== name =====` header per file."""
    if not content.startswith(b"PK"):
        return content.decode("utf-8", errors="replace")
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as zf:
            names = zf.namelist()
            parts: List[str] = []
            for name in names:
                text = zf.read(name).decode("utf-8", errors="replace")
                if not text:
                    continue
                if len(names) > 1:
                    parts.append(f"===== {name} =====\n")
                parts.append(text if text.endswith("\n") else text + "\n")
            return "".join(parts)
    except zipfile.BadZipFile:
        return content.decode("utf-8", errors="replace")


class _RestSession:
    """requests.Session wrapper that adds conditional headers and records stats."""

    def __init__(self, *, base_url: str, headers: Dict[str, str], timeout_s: float):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.session = requests.Session()
        self.session.headers.update(headers)

    def request(
        self,
        method: str,
        path: str,
        *,
        label: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers: Dict[str, str] = dict(extra_headers or {})
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        _logger.debug("REST %s [%s] %s params=%s", method, label, url, params)
        t0 = time.monotonic()
        resp = self.session.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=headers,
            timeout=self.timeout_s,
        )
        API_STATS.record(label=label, status_code=int(resp.status_code or 0), elapsed_s=time.monotonic() - t0)
        _logger.debug("REST RESP [%s] status=%s", label, resp.status_code)
        return resp


# ======================================================================================
# Proxy client
# ======================================================================================

class ActionsHubClient:
    """Client for the dashboard's workflow proxy endpoints.

    Example:
        api = ActionsHubClient("https://actions-hub.example/api", token="...")
        batch = api.fetch_batch("2026-01-26", "2026-01-30", "batch-1")
    """

    def __init__(self, base_url: Optional[str] = None, *, token: Optional[str] = None, timeout_s: float = 30.0):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._rest = _RestSession(base_url=base_url or config.default_base_url(), headers=headers, timeout_s=timeout_s)

    @property
    def base_url(self) -> str:
        return self._rest.base_url

    def get_user_info(self) -> UserInfo:
        resp = self._rest.request("GET", "/auth/me", label="auth_me")
        _raise_for_status(resp, endpoint="/auth/me")
        body = _json_or_none(resp)
        if not isinstance(body, dict):
            return UserInfo(authenticated=False)
        return UserInfo.from_dict(body)

    def fetch_batch(self, date_from: str, date_to: str, batch_id: str) -> BatchResponse:
        endpoint = "/workflows/batch"
        resp = self._rest.request(
            "GET",
            endpoint,
            label="batch",
            params={"dateFrom": date_from, "dateTo": date_to, "batchId": batch_id},
        )
        if resp.status_code == 403:
            body = _json_or_none(resp)
            body = body if isinstance(body, dict) else {}
            raise BatchRangeForbiddenError(
                endpoint=endpoint,
                error=str(body.get("error") or f"Failed to fetch batch {batch_id}"),
                max_days=body.get("maxDays"),
                user_tier=body.get("userTier"),
            )
        _raise_for_status(resp, endpoint=endpoint)
        body = _json_or_none(resp)
        if not isinstance(body, dict):
            raise RequestError(status_code=resp.status_code, endpoint=endpoint, message=f"Malformed batch response for {batch_id}")
        workflows = runs_from_payload(body.get("workflows") or [])
        return BatchResponse(
            batch_id=str(body.get("batchId") or batch_id),
            date_from=str(body.get("dateFrom") or date_from),
            date_to=str(body.get("dateTo") or date_to),
            workflow_count=int(body.get("workflowCount") or len(workflows)),
            workflows=workflows,
        )

    def sync_repository(
        self,
        owner: str,
        repo: str,
        *,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> ConditionalResponse:
        resp = self._rest.request(
            "GET",
            f"/workflows/{owner}/{repo}/sync",
            label="sync",
            etag=etag,
            last_modified=last_modified,
        )
        if resp.status_code == 304:
            return ConditionalResponse(status_code=304, etag=_header(resp, "ETag"), last_modified=_header(resp, "Last-Modified"))
        data: Any = runs_from_payload(_json_or_none(resp)) if resp.ok else None
        return ConditionalResponse(
            status_code=int(resp.status_code),
            data=data,
            etag=_header(resp, "ETag"),
            last_modified=_header(resp, "Last-Modified"),
        )

    def run_status(
        self,
        owner: str,
        repo: str,
        run_id: int,
        *,
        etag: Optional[str] = None,
        no_cache: bool = False,
    ) -> ConditionalResponse:
        params = {"noCache": "true"} if no_cache else None
        resp = self._rest.request(
            "GET",
            f"/workflows/{owner}/{repo}/{run_id}/status",
            label="run_status",
            params=params,
            etag=None if no_cache else etag,
            extra_headers={"Cache-Control": "no-store"} if no_cache else None,
        )
        if resp.status_code == 304:
            return ConditionalResponse(status_code=304, etag=_header(resp, "ETag"))
        if not resp.ok:
            return ConditionalResponse(status_code=int(resp.status_code))
        body = _json_or_none(resp)
        data: Any = {}
        if isinstance(body, dict) and body:
            data = WorkflowRun.from_dict(body)
        return ConditionalResponse(status_code=int(resp.status_code), data=data, etag=_header(resp, "ETag"))

    def rerun(self, owner: str, repo: str, run_id: int, mode: str) -> None:
        if mode not in RERUN_MODES:
            raise ValueError(f"unknown rerun mode {mode!r}; expected one of {RERUN_MODES}")
        endpoint = f"/workflows/{owner}/{repo}/{run_id}/rerun"
        resp = self._rest.request("POST", endpoint, label="rerun", json_body={"type": mode})
        if not resp.ok:
            raise RerunRequestError(
                status_code=int(resp.status_code),
                endpoint=endpoint,
                message=_error_message(resp, "Failed to re-run workflow"),
            )

    def run_jobs(self, owner: str, repo: str, run_id: int, *, attempt: Optional[int] = None) -> List[WorkflowJob]:
        """Jobs (with steps) of the run's latest attempt, or of `attempt` when given."""
        params = {"attempt": str(_positive(attempt, "attempt"))} if attempt is not None else None
        endpoint = f"/workflows/{owner}/{repo}/{run_id}"
        resp = self._rest.request("GET", endpoint, label="run_details", params=params)
        _raise_for_status(resp, endpoint=endpoint)
        body = _json_or_none(resp)
        return jobs_from_payload(body.get("jobs") if isinstance(body, dict) else None)

    def job_logs(self, owner: str, repo: str, job_id: int) -> str:
        endpoint = f"/workflows/{owner}/{repo}/jobs/{_positive(job_id, 'job ID')}/logs"
        resp = self._rest.request("GET", endpoint, label="job_logs")
        _raise_for_status(resp, endpoint=endpoint)
        body = _json_or_none(resp)
        return str(body.get("logs") or "") if isinstance(body, dict) else ""

    def rerun_job(self, owner: str, repo: str, job_id: int) -> None:
        endpoint = f"/workflows/{owner}/{repo}/jobs/{_positive(job_id, 'job ID')}/rerun"
        resp = self._rest.request("POST", endpoint, label="rerun_job")
        if not resp.ok:
            raise RerunRequestError(
                status_code=int(resp.status_code),
                endpoint=endpoint,
                message=_error_message(resp, "Failed to re-run job"),
            )


# ======================================================================================
# Direct GitHub client
# ======================================================================================

def get_github_token_from_file() -> Optional[str]:
    """Get a GitHub token from local config files.

    Currently supported locations (first match wins):
    - ~/.config/github-token   (single line token)
    - ~/.config/gh/hosts.yml   (GitHub CLI login; oauth_token)
    """
    try:
        token_file = Path.home() / ".config" / "github-token"
        if token_file.exists():
            tok = (token_file.read_text() or "").strip()
            if tok:
                return tok
    except OSError:
        pass
    return get_github_token_from_cli()


def get_github_token_from_cli() -> Optional[str]:
    """Read the token from the GitHub CLI config (~/.config/gh/hosts.yml), if present."""
    try:
        gh_config_path = Path.home() / ".config" / "gh" / "hosts.yml"
        if gh_config_path.exists():
            with open(gh_config_path, "r") as f:
                cfg = yaml.safe_load(f)
            if cfg and "github.com" in cfg:
                github_config = cfg["github.com"] or {}
                if "oauth_token" in github_config:
                    return github_config["oauth_token"]
                for _user, user_config in (github_config.get("users") or {}).items():
                    if isinstance(user_config, dict) and "oauth_token" in user_config:
                        return user_config["oauth_token"]
    except (OSError, yaml.YAMLError):
        pass
    return None


def days_between(date_from: str, date_to: str) -> int:
    """Whole days spanned by a YYYY-MM-DD range (to - from)."""
    return (date.fromisoformat(date_to) - date.fromisoformat(date_from)).days


class GitHubDirectClient:
    """The workflows contract implemented against the GitHub REST API directly.

    Features:
    - Token detection (explicit arg > ~/.config/github-token > gh CLI hosts.yml)
    - Billing policy enforcement on batch ranges (same 403 contract as the proxy)
    - Per-repository run listing in parallel with ThreadPoolExecutor (failed repos are skipped)
    """

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        billing_config: Optional[BillingConfig] = None,
        org: Optional[str] = None,
        timeout_s: float = 30.0,
        max_workers: int = 8,
    ):
        self.token = token or get_github_token_from_file()
        if not self.token:
            raise RuntimeError(
                "GitHub API authentication is required but no token was found. "
                "Pass --token, or login with gh so ~/.config/gh/hosts.yml exists."
            )
        self.billing_config = billing_config or config.get_billing_config(config.billing_enabled(), "free")
        self.org = org if org is not None else (os.environ.get("GITHUB_ORG") or None)
        self.max_workers = int(max_workers)
        self._rest = _RestSession(
            base_url="https://api.github.com",
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout_s=timeout_s,
        )

    def get_user_info(self) -> UserInfo:
        resp = self._rest.request("GET", "/user", label="user")
        _raise_for_status(resp, endpoint="/user")
        data = _json_or_none(resp) or {}
        login = str(data.get("login") or "")
        return UserInfo(
            authenticated=bool(login),
            username=login,
            github_user_id=str(data.get("id") or ""),
            avatar_url=str(data.get("avatar_url") or ""),
            email=data.get("email"),
            profile_url=str(data.get("html_url") or f"https://github.com/{login}"),
            name=data.get("name"),
            billing_config=self.billing_config,
        )

    def list_repositories(self) -> List[Dict[str, Any]]:
        if self.org:
            path = f"/orgs/{self.org}/repos"
            params: Dict[str, Any] = {"sort": "updated", "per_page": config.MAX_REPOS_PER_PAGE}
        else:
            path = "/user/repos"
            params = {"sort": "updated", "per_page": config.MAX_REPOS_PER_PAGE}
            if not self.billing_config.can_view_org_workflows:
                params["affiliation"] = "owner"
        resp = self._rest.request("GET", path, label="repos", params=params)
        _raise_for_status(resp, endpoint=path)
        repos = _json_or_none(resp)
        return [r for r in (repos or []) if isinstance(r, dict)]

    def _runs_for_repo(self, owner: str, repo: str, date_from: str, date_to: str) -> List[WorkflowRun]:
        path = f"/repos/{owner}/{repo}/actions/runs"
        resp = self._rest.request(
            "GET",
            path,
            label="actions_runs",
            params={"per_page": config.MAX_WORKFLOWS_PER_PAGE, "created": f"{date_from}..{date_to}"},
        )
        _raise_for_status(resp, endpoint=path)
        body = _json_or_none(resp) or {}
        return runs_from_github(body.get("workflow_runs") if isinstance(body, dict) else None, owner, repo)

    def fetch_batch(self, date_from: str, date_to: str, batch_id: str) -> BatchResponse:
        cfg = self.billing_config
        if days_between(date_from, date_to) > int(cfg.max_days):
            raise BatchRangeForbiddenError(
                endpoint="/workflows/batch",
                error=f"Date range exceeds allowed limit of {cfg.max_days} days for {cfg.user_tier} tier",
                max_days=cfg.max_days,
                user_tier=cfg.user_tier,
            )

        repos = self.list_repositories()
        runs: List[WorkflowRun] = []

        def fetch_one(r: Dict[str, Any]) -> List[WorkflowRun]:
            owner = str((r.get("owner") or {}).get("login") or "")
            name = str(r.get("name") or "")
            try:
                return self._runs_for_repo(owner, name, date_from, date_to)
            except (ActionsHubAPIError, requests.RequestException, ValueError) as e:
                # Repos without Actions (or without access) are skipped.
                _logger.warning("error fetching workflows for %s/%s: %s", owner, name, e)
                return []

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futs = [executor.submit(fetch_one, r) for r in repos]
            for fut in as_completed(futs):
                runs.extend(fut.result())

        runs.sort(key=lambda w: w.updated_at_epoch(), reverse=True)
        return BatchResponse(batch_id=batch_id, date_from=date_from, date_to=date_to, workflow_count=len(runs), workflows=runs)

    def sync_repository(
        self,
        owner: str,
        repo: str,
        *,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> ConditionalResponse:
        # Sorted by update time so reruns (which bump updated_at) surface too.
        resp = self._rest.request(
            "GET",
            f"/repos/{owner}/{repo}/actions/runs",
            label="sync",
            params={"per_page": config.MAX_WORKFLOWS_PER_PAGE, "sort": "updated", "direction": "desc"},
            etag=etag,
            last_modified=last_modified,
        )
        new_etag = _header(resp, "ETag")
        new_last_modified = _header(resp, "Last-Modified")
        if resp.status_code == 304:
            return ConditionalResponse(status_code=304, etag=new_etag, last_modified=new_last_modified)
        if resp.status_code == 404:
            # Repository has no Actions: an empty result, not an error.
            return ConditionalResponse(status_code=200, data=[])
        if not resp.ok:
            return ConditionalResponse(status_code=int(resp.status_code))
        body = _json_or_none(resp) or {}
        runs = runs_from_github(body.get("workflow_runs") if isinstance(body, dict) else None, owner, repo)
        return ConditionalResponse(status_code=int(resp.status_code), data=runs, etag=new_etag, last_modified=new_last_modified)

    def run_status(
        self,
        owner: str,
        repo: str,
        run_id: int,
        *,
        etag: Optional[str] = None,
        no_cache: bool = False,
    ) -> ConditionalResponse:
        resp = self._rest.request(
            "GET",
            f"/repos/{owner}/{repo}/actions/runs/{run_id}",
            label="run_status",
            etag=None if no_cache else etag,
        )
        if resp.status_code == 304:
            return ConditionalResponse(status_code=304, etag=_header(resp, "ETag"))
        if not resp.ok:
            return ConditionalResponse(status_code=int(resp.status_code))
        body = _json_or_none(resp)
        mapped = runs_from_github([body], owner, repo) if isinstance(body, dict) and body else []
        data: Any = mapped[0] if mapped else {}
        return ConditionalResponse(status_code=int(resp.status_code), data=data, etag=_header(resp, "ETag"))

    def rerun(self, owner: str, repo: str, run_id: int, mode: str) -> None:
        if mode not in RERUN_MODES:
            raise ValueError(f"unknown rerun mode {mode!r}; expected one of {RERUN_MODES}")
        suffix = "rerun-failed-jobs" if mode == "failed" else "rerun"
        endpoint = f"/repos/{owner}/{repo}/actions/runs/{int(run_id)}/{suffix}"
        resp = self._rest.request("POST", endpoint, label="rerun", json_body={})
        if not resp.ok:
            raise RerunRequestError(
                status_code=int(resp.status_code),
                endpoint=endpoint,
                message=_error_message(resp, "Failed to re-run workflow"),
            )

    def run_jobs(self, owner: str, repo: str, run_id: int, *, attempt: Optional[int] = None) -> List[WorkflowJob]:
        """Jobs (with steps) of the run's latest attempt, or of `attempt` when given."""
        if attempt is not None:
            path = f"/repos/{owner}/{repo}/actions/runs/{int(run_id)}/attempts/{_positive(attempt, 'attempt')}/jobs"
        else:
            path = f"/repos/{owner}/{repo}/actions/runs/{int(run_id)}/jobs"
        resp = self._rest.request("GET", path, label="run_jobs", params={"per_page": config.MAX_JOBS_PER_PAGE})
        _raise_for_status(resp, endpoint=path)
        body = _json_or_none(resp)
        return jobs_from_payload(body.get("jobs") if isinstance(body, dict) else None, github=True)

    def job_logs(self, owner: str, repo: str, job_id: int) -> str:
        # GitHub answers with a redirect to a short-lived blob URL; requests follows it.
        path = f"/repos/{owner}/{repo}/actions/jobs/{_positive(job_id, 'job ID')}/logs"
        resp = self._rest.request("GET", path, label="job_logs")
        _raise_for_status(resp, endpoint=path)
        return _decode_job_log(resp.content or b"")

    def rerun_job(self, owner: str, repo: str, job_id: int) -> None:
        endpoint = f"/repos/{owner}/{repo}/actions/jobs/{_positive(job_id, 'job ID')}/rerun"
        resp = self._rest.request("POST", endpoint, label="rerun_job", json_body={})
        if not resp.ok:
            raise RerunRequestError(
                status_code=int(resp.status_code),
                endpoint=endpoint,
                message=_error_message(resp, "Failed to re-run job"),
            )
