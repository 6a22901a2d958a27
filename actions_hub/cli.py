# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""
CLI for actions-hub.

Examples:
  actions-hub plan                                  # batch windows for the current tier
  actions-hub list --repo ai-dynamo/dynamo          # load (cache first) and print runs + stats
  actions-hub --direct watch                        # keep syncing against api.github.com
  actions-hub rerun ai-dynamo/dynamo 21507141526 --failed
  actions-hub rerun ai-dynamo/dynamo 21507141526 --job 61234567890
  actions-hub jobs ai-dynamo/dynamo 21507141526 --attempt 2
  actions-hub logs ai-dynamo/dynamo 61234567890 --run 21507141526
  actions-hub refresh --yes
  actions-hub logout
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import requests

from . import config
from .batches import calculate_date_range, plan_batches
from .client import ActionsHubClient, GitHubDirectClient
from .dashboard import Dashboard
from .exceptions import ActionsHubAPIError
from .filters import DashboardStats, WorkflowFilter, compute_stats, filter_runs
from .models import WorkflowJob, WorkflowRun, summarize_jobs
from .rerun import RERUN_FAILURE_MESSAGE
from .storage import CacheStore, DiskCacheStore, MemoryCacheStore, Subscriber
from .workflow_cache import PersistentCache, logout

logger = logging.getLogger(__name__)


def _format_run(run: WorkflowRun) -> str:
    return (
        f"{run.id:>12}  {run.status:<11} {str(run.conclusion or '-'):<10} "
        f"{run.repo_key:<32} {run.branch[:24]:<24} {run.name}"
    )


def _print_runs(runs: List[WorkflowRun], limit: int) -> None:
    shown = runs[:limit] if limit > 0 else runs
    for run in shown:
        print(_format_run(run))
    if len(shown) < len(runs):
        print(f"... {len(runs) - len(shown)} more")


def _print_batch_errors(dash: Dashboard) -> None:
    for err in dash.loader.errors.values():
        line = f"{err.batch_id}: {err.message}"
        if err.max_days is not None:
            line += f" (maxDays: {err.max_days})"
        print(line, file=sys.stderr)


def _format_stats(stats: DashboardStats) -> str:
    return (
        f"{stats.total_workflows} run(s), {stats.active_runs} active, "
        f"{stats.success_rate}% success ({config.STATS_DAYS}d), {stats.failed_today} failed today"
    )


def _stats_printer(store: CacheStore, username: str) -> Subscriber:
    """Store subscriber that re-reads the user's persisted cache on `workflowsUpdated`
    and prints the summary line whenever it changes."""
    cache = PersistentCache(store)
    last: List[Optional[DashboardStats]] = [None]

    def _on_event(event: str) -> None:
        if event != config.WORKFLOWS_UPDATED_EVENT:
            return
        cached = cache.load(username)
        if cached is None:
            return
        stats = compute_stats(cached.data)
        if stats != last[0]:
            last[0] = stats
            print(f"[cache] {_format_stats(stats)}", flush=True)

    return _on_event


def _split_repository(value: str) -> Optional[Tuple[str, str]]:
    owner, _, repo = str(value).partition("/")
    if not owner or not repo:
        print(f"expected OWNER/REPO, got {value!r}", file=sys.stderr)
        return None
    return owner, repo


def _format_job(job: WorkflowJob) -> str:
    return f"{job.id:>12}  {job.status:<11} {str(job.conclusion or '-'):<10} {job.name}"


def _prompt(msg: str) -> bool:
    try:
        answer = input(f"{msg} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _make_api(args: argparse.Namespace):
    if args.direct:
        return GitHubDirectClient(
            token=args.token,
            billing_config=config.get_billing_config(config.billing_enabled(), args.tier),
        )
    return ActionsHubClient(args.base_url, token=args.token)


def _make_dashboard(args: argparse.Namespace, durable: DiskCacheStore) -> Dashboard:
    return Dashboard(
        _make_api(args),
        durable,
        MemoryCacheStore(),
        on_rerun_error=lambda run, err: print(f"{RERUN_FAILURE_MESSAGE} (run {run.id}: {err})", file=sys.stderr),
    )


def _cmd_plan(args: argparse.Namespace) -> int:
    cfg = config.get_billing_config(config.billing_enabled(), args.tier)
    days = args.days if args.days is not None else cfg.max_days
    batches = args.batches if args.batches is not None else cfg.max_batches
    print(f"{days} days in up to {batches} batch(es) (tier={cfg.user_tier}, billing={'on' if cfg.billing_enabled else 'off'})")
    for plan in plan_batches(days, batches):
        date_from, date_to = calculate_date_range(plan.days_ago, plan.days_back)
        print(f"  {plan.id:<9} {date_from} to {date_to}  ({plan.days_back} day(s), {plan.days_ago} day(s) ago)")
    return 0


def _cmd_list(args: argparse.Namespace, durable: DiskCacheStore) -> int:
    dash = _make_dashboard(args, durable)
    dash.start(background=False, poll=False)
    _print_batch_errors(dash)

    runs = filter_runs(dash.runs(), WorkflowFilter(search=args.search, owner=args.owner, repo=args.repo, branch=args.branch))
    _print_runs(runs, args.limit)
    print(f"\n{_format_stats(compute_stats(dash.runs()))}")
    return 1 if dash.loader.errors else 0


def _cmd_watch(args: argparse.Namespace, durable: DiskCacheStore) -> int:
    dash = _make_dashboard(args, durable)
    seen = {}

    def on_change(runs: List[WorkflowRun]) -> None:
        for run in runs:
            key = (run.status, run.conclusion, run.updated_at)
            if seen.get(run.id) != key:
                if run.id in seen:
                    print(_format_run(run), flush=True)
                seen[run.id] = key

    dash.collection.add_listener(on_change)
    unsubscribe = durable.subscribe(_stats_printer(durable, dash.username))
    dash.start(background=True)
    logger.info("watching workflows for %s (Ctrl-C to stop)", dash.username)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        dash.stop()
        unsubscribe()
    _print_batch_errors(dash)
    return 0


def _resolve_run(dash: Dashboard, owner: str, repo: str, run_id: int) -> Optional[WorkflowRun]:
    """The run from the user's cache, else from the status endpoint."""
    cached = dash.cache.load(dash.username)
    if cached is not None:
        dash.collection.replace(cached.data, cached.batches)

    run = dash.collection.get(run_id)
    if run is not None:
        return run
    resp = dash.api.run_status(owner, repo, run_id)
    if not resp.ok or not isinstance(resp.data, WorkflowRun):
        print(f"run {run_id} not found in {owner}/{repo} (HTTP {resp.status_code})", file=sys.stderr)
        return None
    return resp.data


def _cmd_rerun(args: argparse.Namespace, durable: DiskCacheStore) -> int:
    parts = _split_repository(args.repository)
    if parts is None:
        return 2
    owner, repo = parts

    dash = _make_dashboard(args, durable)
    run = _resolve_run(dash, owner, repo, args.run_id)
    if run is None:
        return 1

    try:
        if args.job is not None:
            timer = dash.rerun_job(run, args.job)
        else:
            timer = dash.rerun(run, "failed" if args.failed else "all")
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1
    if timer is None:
        return 1
    timer.join()
    updated = dash.collection.get(run.id) or run
    print(_format_run(updated))
    return 0


def _cmd_jobs(args: argparse.Namespace, durable: DiskCacheStore) -> int:
    parts = _split_repository(args.repository)
    if parts is None:
        return 2
    owner, repo = parts

    dash = _make_dashboard(args, durable)
    jobs = dash.api.run_jobs(owner, repo, args.run_id, attempt=args.attempt)
    for job in jobs:
        print(_format_job(job))
        if args.steps:
            for step in job.steps:
                print(f"{'':>14}{step.number:>3}. {step.status:<11} {str(step.conclusion or '-'):<10} {step.name}")
    status, conclusion = summarize_jobs(jobs)
    print(f"\n{len(jobs)} job(s): {status} / {conclusion or '-'}")
    return 0


def _cmd_logs(args: argparse.Namespace, durable: DiskCacheStore) -> int:
    parts = _split_repository(args.repository)
    if parts is None:
        return 2
    owner, repo = parts

    dash = _make_dashboard(args, durable)
    job: Optional[WorkflowJob] = None
    if args.run is not None:
        job = next((j for j in dash.api.run_jobs(owner, repo, args.run) if j.id == args.job_id), None)
        if job is None:
            print(f"job {args.job_id} not found in run {args.run}", file=sys.stderr)
            return 1
    text = dash.job_logs(owner, repo, args.job_id, job=job)
    sys.stdout.write(text if text.endswith("\n") or not text else text + "\n")
    return 0


def _cmd_refresh(args: argparse.Namespace, durable: DiskCacheStore) -> int:
    dash = _make_dashboard(args, durable)
    confirm: Callable[[str], bool] = (lambda _msg: True) if args.yes else _prompt
    if not dash.force_full_refresh(confirm, background=False):
        print("cancelled")
        return 0
    dash.stop()
    _print_batch_errors(dash)
    print(f"reloaded {len(dash.runs())} run(s) in {len(dash.collection.batches())} batch(es)")
    return 1 if dash.loader.errors else 0


def _cmd_logout(args: argparse.Namespace, durable: DiskCacheStore) -> int:
    removed = logout(durable, MemoryCacheStore())
    print(f"removed {removed} workflow cache slot(s)")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="actions-hub",
        description="Browse, sync and re-run GitHub Actions workflow runs.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--base-url", default=config.default_base_url(), help="Workflows proxy base URL (default: $ACTIONS_HUB_URL or %(default)s)")
    parser.add_argument("--direct", action="store_true", help="Talk to api.github.com directly instead of the proxy.")
    parser.add_argument("--token", default=None, help="Access token (default for --direct: ~/.config/github-token or gh CLI login)")
    parser.add_argument("--cache-dir", default=None, help="Cache directory (default: $ACTIONS_HUB_CACHE_DIR or ~/.cache/actions-hub)")
    parser.add_argument("--tier", choices=("free", "paid"), default="free", help="Billing tier used for --direct and plan (default: free)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging (includes every REST call).")

    sub = parser.add_subparsers(dest="command", required=True)

    p_plan = sub.add_parser("plan", help="Print the batch windows for the tier.")
    p_plan.add_argument("--days", type=int, default=None, help="Override total lookback days.")
    p_plan.add_argument("--batches", type=int, default=None, help="Override number of batches.")

    p_list = sub.add_parser("list", help="Load runs (cache first) and print them.")
    p_list.add_argument("--search", default="", help="Match run name, repository or head SHA.")
    p_list.add_argument("--owner", default="")
    p_list.add_argument("--repo", default="", help="Full repository name, e.g. ai-dynamo/dynamo")
    p_list.add_argument("--branch", default="")
    p_list.add_argument("--limit", type=int, default=50, help="Max runs to print; 0 for all (default: 50)")

    sub.add_parser("watch", help="Load, then keep syncing and print runs as they change.")

    p_rerun = sub.add_parser("rerun", help="Re-run a completed workflow run.")
    p_rerun.add_argument("repository", metavar="OWNER/REPO")
    p_rerun.add_argument("run_id", type=int, metavar="RUN_ID")
    mode = p_rerun.add_mutually_exclusive_group()
    mode.add_argument("--failed", action="store_true", help="Re-run failed jobs only.")
    mode.add_argument("--job", type=int, default=None, metavar="JOB_ID", help="Re-run a single job of the run.")

    p_jobs = sub.add_parser("jobs", help="List the jobs of one run attempt.")
    p_jobs.add_argument("repository", metavar="OWNER/REPO")
    p_jobs.add_argument("run_id", type=int, metavar="RUN_ID")
    p_jobs.add_argument("--attempt", type=int, default=None, help="Run attempt (default: latest).")
    p_jobs.add_argument("--steps", action="store_true", help="Also print each job's steps.")

    p_logs = sub.add_parser("logs", help="Print the full log of one job.")
    p_logs.add_argument("repository", metavar="OWNER/REPO")
    p_logs.add_argument("job_id", type=int, metavar="JOB_ID")
    p_logs.add_argument("--run", type=int, default=None, metavar="RUN_ID", help="Run the job belongs to; completed job logs are then cached.")

    p_refresh = sub.add_parser("refresh", help="Discard the cache and reload all history.")
    p_refresh.add_argument("--yes", action="store_true", help="Don't ask for confirmation.")

    sub.add_parser("logout", help="Remove every cached workflow slot.")
    return parser


def _cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "plan":
        return _cmd_plan(args)

    cache_dir = Path(args.cache_dir).expanduser() if args.cache_dir else config.actions_hub_cache_dir()
    durable = DiskCacheStore(cache_dir)
    commands = {
        "list": _cmd_list,
        "watch": _cmd_watch,
        "rerun": _cmd_rerun,
        "jobs": _cmd_jobs,
        "logs": _cmd_logs,
        "refresh": _cmd_refresh,
        "logout": _cmd_logout,
    }
    try:
        return int(commands[args.command](args, durable))
    except ActionsHubAPIError as e:
        print(f"error: {e} (HTTP {e.status_code} {e.endpoint})", file=sys.stderr)
        return 1
    except requests.RequestException as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except RuntimeError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
