"""
Pytest tests for the session glue, filters/stats and the Dashboard facade.

Run from the repository root:
    pytest actions_hub/test_dashboard.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from actions_hub import config
from actions_hub.client import ConditionalResponse
from actions_hub.dashboard import Dashboard
from actions_hub.exceptions import AuthError
from actions_hub.filters import WorkflowFilter, compute_stats, filter_options, filter_runs
from actions_hub.models import BatchMetadata, UserInfo
from actions_hub.session import SessionManager
from actions_hub.storage import DiskCacheStore, MemoryCacheStore
from actions_hub.workflow_cache import PersistentCache, UserSessionCache
from actions_hub._testing import FakeWorkflowsAPI, make_run, make_user


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ============================================================================
# SessionManager
# ============================================================================

def test_current_user_is_cached_in_the_session_slot():
    api = FakeWorkflowsAPI()
    session = SessionManager(api, MemoryCacheStore(), MemoryCacheStore())
    assert session.current_user().username == "alice"
    assert session.current_user().username == "alice"
    assert len(api.calls_to("user")) == 1


def test_tier_change_wipes_all_workflow_caches():
    durable = MemoryCacheStore()
    session_store = MemoryCacheStore()
    cache = PersistentCache(durable)
    meta = {"batch-1": BatchMetadata("2026-01-26", "2026-01-30", 1, 1)}
    cache.save("alice", [make_run(1)], meta)
    cache.save("bob", [make_run(2)], meta)
    UserSessionCache(session_store).save(make_user("alice", "paid"))

    api = FakeWorkflowsAPI(user=make_user("alice", "free"))
    user = SessionManager(api, durable, session_store).refresh_user()

    assert user.billing_config.user_tier == "free"
    assert cache.load("alice") is None
    assert cache.load("bob") is None
    assert UserSessionCache(session_store).get().billing_config.user_tier == "free"


def test_same_tier_keeps_caches():
    durable = MemoryCacheStore()
    session_store = MemoryCacheStore()
    cache = PersistentCache(durable)
    cache.save("alice", [make_run(1)], {"batch-1": BatchMetadata("2026-01-26", "2026-01-30", 1, 1)})
    UserSessionCache(session_store).save(make_user("alice", "paid"))

    SessionManager(FakeWorkflowsAPI(), durable, session_store).refresh_user()
    assert cache.load("alice") is not None


# ============================================================================
# filters / stats
# ============================================================================

def test_filter_runs_search_and_selects():
    runs = [
        make_run(1, name="Pre Merge", repo="dynamo", owner="ai-dynamo", branch="main", head_sha="4F2C9"),
        make_run(2, name="Nightly", repo="widgets", branch="release"),
        make_run(3, name="Docs", repo="dynamo", owner="ai-dynamo", branch="docs"),
    ]
    assert [r.id for r in filter_runs(runs, WorkflowFilter(search="merge"))] == [1]
    assert [r.id for r in filter_runs(runs, WorkflowFilter(search="4f2c"))] == [1]
    assert [r.id for r in filter_runs(runs, WorkflowFilter(search="ACME/WID"))] == [2]
    assert [r.id for r in filter_runs(runs, WorkflowFilter(owner="ai-dynamo"))] == [1, 3]
    assert [r.id for r in filter_runs(runs, WorkflowFilter(repo="ai-dynamo/dynamo", branch="docs"))] == [3]
    assert filter_runs(runs, WorkflowFilter()) == runs


def test_filter_options():
    runs = [
        make_run(1, repo="dynamo", owner="ai-dynamo", branch="main"),
        make_run(2, repo="widgets", branch="release"),
        make_run(3, repo="dynamo", owner="ai-dynamo", branch="docs"),
    ]
    opts = filter_options(runs)
    assert opts == {"owners": ["acme", "ai-dynamo"], "repos": ["acme/widgets", "ai-dynamo/dynamo"], "branches": []}
    opts = filter_options(runs, owner="ai-dynamo", repo="ai-dynamo/dynamo")
    assert opts["repos"] == ["ai-dynamo/dynamo"]
    assert opts["branches"] == ["docs", "main"]


def test_compute_stats():
    now = datetime(2026, 1, 30, 15, 0).timestamp()
    recent = _iso(datetime.fromtimestamp(now) - timedelta(minutes=5))
    days_ago = _iso(datetime.fromtimestamp(now) - timedelta(days=3))
    old = _iso(datetime.fromtimestamp(now) - timedelta(days=config.STATS_DAYS + 2))
    runs = [
        make_run(1, conclusion="success", updated_at=days_ago),
        make_run(2, conclusion="success", updated_at=days_ago),
        make_run(3, conclusion="failure", updated_at=recent),
        make_run(4, conclusion="failure", updated_at=old),
        make_run(5, status="in_progress", updated_at=recent),
        make_run(6, status="queued", updated_at=recent),
    ]
    stats = compute_stats(runs, now=now)
    assert stats.total_workflows == 6
    assert stats.active_runs == 2
    assert stats.success_rate == 66.7
    assert stats.failed_today == 1


def test_compute_stats_empty():
    stats = compute_stats([])
    assert (stats.total_workflows, stats.success_rate, stats.active_runs, stats.failed_today) == (0, 0.0, 0, 0)


# ============================================================================
# Dashboard
# ============================================================================

def test_dashboard_requires_sign_in():
    api = FakeWorkflowsAPI(user=UserInfo(authenticated=False))
    with pytest.raises(AuthError):
        Dashboard(api, MemoryCacheStore(), MemoryCacheStore())


def test_dashboard_load_then_reload_from_cache(tmp_path):
    api = FakeWorkflowsAPI(user=make_user("alice", "free"))
    api.batches["batch-1"] = [make_run(1)]
    api.batches["batch-2"] = [make_run(2, updated_at="2026-01-24T00:00:00Z")]

    dash = Dashboard(api, DiskCacheStore(tmp_path), MemoryCacheStore(), batch_delay_s=0)
    dash.start(background=False, poll=False)
    assert [r.id for r in dash.runs()] == [1, 2]
    assert len(api.calls_to("batch")) == 2

    again = Dashboard(api, DiskCacheStore(tmp_path), MemoryCacheStore(), batch_delay_s=0)
    again.start(background=False, poll=False)
    assert [r.id for r in again.runs()] == [1, 2]
    assert len(api.calls_to("batch")) == 2


def test_dashboard_polls_after_load_and_stops():
    api = FakeWorkflowsAPI()
    api.batches["batch-1"] = [make_run(1, status="queued")]
    dash = Dashboard(
        api,
        MemoryCacheStore(),
        MemoryCacheStore(),
        batch_delay_s=0,
        sync_interval_s=3600,
        active_interval_s=3600,
    )
    try:
        dash.start(background=False)
        assert dash.sync.running
        assert dash.active.running
    finally:
        dash.stop()
    assert not dash.sync.running
    assert not dash.active.running


def test_dashboard_force_full_refresh_resets_validators():
    api = FakeWorkflowsAPI(user=make_user("alice", "free"))
    api.batches["batch-1"] = [make_run(1)]
    dash = Dashboard(api, MemoryCacheStore(), MemoryCacheStore(), batch_delay_s=0)
    dash.start(background=False, poll=False)
    api.sync_responses["acme/widgets"] = [ConditionalResponse(status_code=200, data=[make_run(1)], etag='"v1"')]
    dash.sync.sync_once()
    assert dash.sync.conditional_state("acme/widgets").etag == '"v1"'

    assert not dash.force_full_refresh(lambda msg: False)
    assert dash.sync.conditional_state("acme/widgets") is not None

    assert dash.force_full_refresh(lambda msg: True)
    assert dash.sync.conditional_state("acme/widgets") is None
    assert [r.id for r in dash.runs()] == [1]


def test_dashboard_logout():
    durable = MemoryCacheStore()
    api = FakeWorkflowsAPI()
    api.batches["batch-1"] = [make_run(1)]
    dash = Dashboard(api, durable, MemoryCacheStore(), batch_delay_s=0)
    dash.start(background=False, poll=False)
    assert durable.keys() == ["workflows_cache_alice"]

    assert dash.logout() == 1
    assert durable.keys() == []
    assert dash.runs() == []


def test_refresh_user_free_to_paid_loads_the_full_history():
    durable = MemoryCacheStore()
    api = FakeWorkflowsAPI(user=make_user("alice", "free"))
    api.batches["batch-1"] = [make_run(1)]
    dash = Dashboard(api, durable, MemoryCacheStore(), batch_delay_s=0)
    dash.start(background=False, poll=False)
    assert [c[1] for c in api.calls_to("batch")] == ["batch-1", "batch-2"]

    api.user = make_user("alice", "paid")
    dash.refresh_user(background=False)

    assert dash.user.billing_config.user_tier == "paid"
    reloaded = [c[1] for c in api.calls_to("batch")][2:]
    assert reloaded == [f"batch-{i}" for i in range(1, 9)]
    assert set(dash.collection.batches()) == {f"batch-{i}" for i in range(1, 9)}
    assert [r.id for r in dash.runs()] == [1]


def test_refresh_user_same_tier_loads_nothing():
    api = FakeWorkflowsAPI(user=make_user("alice", "free"))
    dash = Dashboard(api, MemoryCacheStore(), MemoryCacheStore(), batch_delay_s=0)
    dash.start(background=False, poll=False)
    before = len(api.calls_to("batch"))

    assert dash.refresh_user(background=False) is None
    assert len(api.calls_to("batch")) == before


def test_refresh_user_rejects_a_different_user():
    api = FakeWorkflowsAPI(user=make_user("alice", "free"))
    dash = Dashboard(api, MemoryCacheStore(), MemoryCacheStore(), batch_delay_s=0)
    api.user = make_user("bob", "free")
    with pytest.raises(AuthError):
        dash.refresh_user(background=False)
    assert dash.username == "alice"
