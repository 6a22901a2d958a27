"""
Pytest tests for the actions-hub command line.

Run from the repository root:
    pytest actions_hub/test_cli.py -v
"""

import pytest

from actions_hub import cli
from actions_hub.client import ConditionalResponse
from actions_hub.exceptions import BatchRangeForbiddenError
from actions_hub.models import BatchMetadata
from actions_hub import config
from actions_hub.storage import DiskCacheStore, MemoryCacheStore
from actions_hub.workflow_cache import PersistentCache
from actions_hub._testing import FakeWorkflowsAPI, make_job, make_run, make_user


@pytest.fixture
def fake_api(monkeypatch):
    api = FakeWorkflowsAPI(user=make_user("alice", "free"))
    monkeypatch.setattr(cli, "_make_api", lambda args: api)
    monkeypatch.setattr("actions_hub.config.BATCH_DELAY_S", 0)
    return api


# ============================================================================
# plan / logout (no network)
# ============================================================================

def test_plan_free_tier(monkeypatch, capsys):
    monkeypatch.setenv("ENABLE_BILLING", "true")
    assert cli._cli(["--tier", "free", "plan"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].startswith("7 days in up to 2 batch(es)")
    assert [line.split()[0] for line in out[1:]] == ["batch-1", "batch-2"]


def test_plan_overrides(capsys):
    assert cli._cli(["plan", "--days", "31", "--batches", "8"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert len(out) == 9
    assert "(3 day(s), 28 day(s) ago)" in out[-1]


def test_logout_removes_every_slot(tmp_path, capsys):
    cache = PersistentCache(DiskCacheStore(tmp_path))
    meta = {"batch-1": BatchMetadata("2026-01-26", "2026-01-30", 1, 1)}
    cache.save("alice", [make_run(1)], meta)
    cache.save("bob", [make_run(2)], meta)

    assert cli._cli(["--cache-dir", str(tmp_path), "logout"]) == 0
    assert "removed 2 workflow cache slot(s)" in capsys.readouterr().out
    assert DiskCacheStore(tmp_path).keys() == []


def test_unknown_command_is_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        cli._cli(["frobnicate"])
    assert excinfo.value.code == 2


# ============================================================================
# list / rerun / refresh (fake API)
# ============================================================================

def test_list_prints_runs_and_stats(fake_api, tmp_path, capsys):
    fake_api.batches["batch-1"] = [make_run(11, name="Pre Merge"), make_run(12, name="Nightly", repo="gizmo")]
    assert cli._cli(["--cache-dir", str(tmp_path), "list", "--repo", "acme/gizmo"]) == 0
    out = capsys.readouterr().out
    assert "Nightly" in out
    assert "Pre Merge" not in out
    assert "2 run(s), 0 active" in out


def test_list_surfaces_forbidden_range(fake_api, tmp_path, capsys):
    fake_api.batch_errors["batch-1"] = BatchRangeForbiddenError(
        endpoint="/workflows/batch",
        error="Date range exceeds allowed limit of 7 days for free tier",
        max_days=7,
        user_tier="free",
    )
    assert cli._cli(["--cache-dir", str(tmp_path), "list"]) == 1
    err = capsys.readouterr().err
    assert "batch-1: Date range exceeds allowed limit of 7 days for free tier (maxDays: 7)" in err


def test_rerun_command(fake_api, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("actions_hub.config.RERUN_REFRESH_DELAY_S", 0)
    fake_api.status_responses[42] = [
        ConditionalResponse(status_code=200, data=make_run(42, conclusion="failure")),
        ConditionalResponse(status_code=200, data=make_run(42, status="queued", updated_at="2026-01-30T11:00:00Z")),
    ]
    assert cli._cli(["--cache-dir", str(tmp_path), "rerun", "acme/widgets", "42", "--failed"]) == 0
    assert fake_api.calls_to("rerun") == [("rerun", 42, "failed")]
    assert "queued" in capsys.readouterr().out


def test_rerun_bad_repository_argument(fake_api, tmp_path):
    assert cli._cli(["--cache-dir", str(tmp_path), "rerun", "widgets", "42"]) == 2


def test_refresh_cancelled_without_confirmation(fake_api, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    assert cli._cli(["--cache-dir", str(tmp_path), "refresh"]) == 0
    assert "cancelled" in capsys.readouterr().out
    assert fake_api.calls_to("batch") == []


def test_refresh_yes(fake_api, tmp_path, capsys):
    fake_api.batches["batch-1"] = [make_run(1)]
    assert cli._cli(["--cache-dir", str(tmp_path), "refresh", "--yes"]) == 0
    assert "reloaded 1 run(s) in 2 batch(es)" in capsys.readouterr().out


def test_rerun_single_job(fake_api, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("actions_hub.config.RERUN_REFRESH_DELAY_S", 0)
    fake_api.status_responses[42] = [ConditionalResponse(status_code=200, data=make_run(42, conclusion="failure"))]
    assert cli._cli(["--cache-dir", str(tmp_path), "rerun", "acme/widgets", "42", "--job", "7"]) == 0
    assert fake_api.calls_to("rerun_job") == [("rerun_job", 7)]
    assert fake_api.calls_to("rerun") == []


# ============================================================================
# jobs / logs
# ============================================================================

def test_jobs_prints_jobs_steps_and_summary(fake_api, tmp_path, capsys):
    fake_api.jobs[42] = [make_job(7, name="build"), make_job(8, conclusion="failure", name="test")]
    assert cli._cli(["--cache-dir", str(tmp_path), "jobs", "acme/widgets", "42", "--attempt", "2", "--steps"]) == 0
    out = capsys.readouterr().out
    assert "build" in out
    assert "Checkout" in out
    assert "2 job(s): completed / failure" in out
    assert fake_api.calls_to("jobs") == [("jobs", 42, 2)]


def test_logs_caches_completed_job(fake_api, tmp_path, capsys):
    fake_api.jobs[42] = [make_job(7)]
    fake_api.logs[7] = "all green\n"
    argv = ["--cache-dir", str(tmp_path), "logs", "acme/widgets", "7", "--run", "42"]
    assert cli._cli(argv) == 0
    assert cli._cli(argv) == 0
    assert capsys.readouterr().out == "all green\nall green\n"
    assert fake_api.calls_to("logs") == [("logs", 7)]
    assert "job_log_7" in DiskCacheStore(tmp_path).keys()


def test_logs_unknown_job_in_run(fake_api, tmp_path, capsys):
    fake_api.jobs[42] = [make_job(8)]
    assert cli._cli(["--cache-dir", str(tmp_path), "logs", "acme/widgets", "7", "--run", "42"]) == 1
    assert "job 7 not found in run 42" in capsys.readouterr().err


# ============================================================================
# watch: persisted cache updates
# ============================================================================

def test_stats_printer_follows_persisted_cache(capsys):
    store = MemoryCacheStore()
    store.subscribe(cli._stats_printer(store, "alice"))
    cache = PersistentCache(store)
    meta = {"batch-1": BatchMetadata("2026-01-26", "2026-01-30", 1, 1)}

    cache.save("alice", [make_run(1)], meta)
    cache.save("alice", [make_run(1)], meta)
    cache.save("alice", [make_run(1), make_run(2, status="in_progress")], meta)
    store.notify("somethingElse")

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("[cache] 1 run(s), 0 active")
    assert lines[1].startswith("[cache] 2 run(s), 1 active")
    assert config.WORKFLOWS_UPDATED_EVENT == "workflowsUpdated"
