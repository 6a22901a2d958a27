"""
Pytest tests for SyncPoller, ActivePoller and RerunCoordinator.

Run from the repository root:
    pytest actions_hub/test_pollers.py -v
"""

import threading
import time

import pytest
import requests

from actions_hub.active import ActivePoller, fetch_run_status
from actions_hub.client import ConditionalResponse
from actions_hub.collection import WorkflowCollection
from actions_hub.exceptions import EmptyPayloadError, RerunRequestError
from actions_hub.models import BatchMetadata
from actions_hub.rerun import RerunCoordinator, rerun_options
from actions_hub.storage import MemoryCacheStore
from actions_hub.sync import ConditionalState, SyncPoller
from actions_hub.workflow_cache import PersistentCache
from actions_hub._testing import FakeWorkflowsAPI, make_run


def _collection(*runs):
    coll = WorkflowCollection("alice")
    coll.merge(runs)
    return coll


# ============================================================================
# SyncPoller
# ============================================================================

def test_sync_stores_validators_and_sends_them_next_time():
    api = FakeWorkflowsAPI()
    api.sync_responses["acme/widgets"] = [
        ConditionalResponse(
            status_code=200,
            data=[make_run(5, updated_at="2026-01-30T12:00:00Z")],
            etag='"abc"',
            last_modified="Fri, 30 Jan 2026 12:00:00 GMT",
        ),
        ConditionalResponse(status_code=304),
    ]
    coll = _collection(make_run(1))
    poller = SyncPoller(api, coll)

    synced = poller.sync_once()
    assert [r.id for r in synced] == [5]
    assert [r.id for r in coll.snapshot()] == [5, 1]
    assert poller.conditional_state("acme/widgets") == ConditionalState('"abc"', "Fri, 30 Jan 2026 12:00:00 GMT")

    assert poller.sync_once() == []
    last = api.calls_to("sync")[-1]
    assert last == ("sync", "acme/widgets", '"abc"', "Fri, 30 Jan 2026 12:00:00 GMT")


def test_sync_repo_failure_is_isolated():
    api = FakeWorkflowsAPI()
    api.sync_responses["acme/broken"] = [requests.Timeout("timed out")]
    api.sync_responses["acme/empty"] = [ConditionalResponse(status_code=404)]
    api.sync_responses["acme/widgets"] = [
        ConditionalResponse(status_code=200, data=[make_run(9, updated_at="2026-01-31T00:00:00Z")], etag='"w"')
    ]
    coll = _collection(make_run(1, repo="broken"), make_run(2, repo="empty"), make_run(3))
    poller = SyncPoller(api, coll)

    synced = poller.sync_once()
    assert [r.id for r in synced] == [9]
    assert 9 in {r.id for r in coll.snapshot()}
    assert poller.conditional_state("acme/broken") is None
    assert poller.conditional_state("acme/empty") is None


def test_sync_unexpected_error_is_isolated():
    api = FakeWorkflowsAPI()
    api.sync_responses["acme/odd"] = [KeyError("id")]
    api.sync_responses["acme/widgets"] = [
        ConditionalResponse(status_code=200, data=[make_run(9, updated_at="2026-01-31T00:00:00Z")], etag='"w"')
    ]
    coll = _collection(make_run(1, repo="odd"), make_run(3))
    poller = SyncPoller(api, coll)

    synced = poller.sync_once()
    assert [r.id for r in synced] == [9]
    assert 9 in {r.id for r in coll.snapshot()}
    assert poller.conditional_state("acme/odd") is None
    assert poller.conditional_state("acme/widgets") == ConditionalState('"w"', None)


def test_sync_transport_error_drops_stale_validator():
    api = FakeWorkflowsAPI()
    api.sync_responses["acme/widgets"] = [
        ConditionalResponse(status_code=200, data=[make_run(1)], etag='"v1"'),
        requests.ConnectionError("reset"),
        ConditionalResponse(status_code=304),
    ]
    poller = SyncPoller(api, _collection(make_run(1)))
    poller.sync_once()
    poller.sync_once()
    poller.sync_once()
    etags = [c[2] for c in api.calls_to("sync")]
    assert etags == [None, '"v1"', None]


def test_sync_with_empty_collection_makes_no_requests():
    api = FakeWorkflowsAPI()
    assert SyncPoller(api, WorkflowCollection("alice")).sync_once() == []
    assert api.calls == []


def test_sync_starts_when_loading_ends_and_ignores_repeats():
    api = FakeWorkflowsAPI()
    poller = SyncPoller(api, _collection(make_run(1)), interval_s=3600)
    try:
        poller.on_loading_changed(True)
        assert not poller.running
        poller.on_loading_changed(False)
        assert poller.running
        poller.on_loading_changed(False)
        assert poller.running
        poller.on_loading_changed(True)
        assert not poller.running
    finally:
        poller.stop()


# ============================================================================
# ActivePoller
# ============================================================================

def test_active_304_emits_nothing():
    api = FakeWorkflowsAPI()
    api.status_responses[7] = [ConditionalResponse(status_code=304, etag='"same"')]
    poller = ActivePoller(api, _collection(make_run(7, status="queued")))
    assert poller.poll_once() == []


def test_active_same_status_emits_nothing_but_keeps_etag():
    api = FakeWorkflowsAPI()
    run = make_run(7, status="in_progress", updated_at="2026-01-30T10:00:00Z")
    api.status_responses[7] = [
        ConditionalResponse(
            status_code=200,
            data=make_run(7, status="in_progress", updated_at="2026-01-30T10:05:00Z"),
            etag='"e2"',
        )
    ]
    coll = _collection(run)
    poller = ActivePoller(api, coll)
    assert poller.poll_once() == []
    assert poller.etag_for(7) == '"e2"'
    assert coll.get(7).updated_at == "2026-01-30T10:00:00Z"

    poller.poll_once()
    assert api.calls_to("status")[-1] == ("status", 7, '"e2"', False)


def test_active_status_change_is_merged():
    api = FakeWorkflowsAPI()
    done = make_run(7, status="completed", conclusion="failure", updated_at="2026-01-30T11:00:00Z")
    api.status_responses[7] = [ConditionalResponse(status_code=200, data=done, etag='"e3"')]
    coll = _collection(make_run(7, status="in_progress"), make_run(8))
    poller = ActivePoller(api, coll)

    assert poller.poll_once() == [done]
    assert coll.get(7).conclusion == "failure"
    assert [c[1] for c in api.calls_to("status")] == [7]


def test_active_no_active_runs_no_requests():
    api = FakeWorkflowsAPI()
    poller = ActivePoller(api, _collection(make_run(1)))
    assert poller.poll_once() == []
    assert api.calls == []


def test_fetch_run_status_retries_once_without_cache():
    api = FakeWorkflowsAPI()
    fresh = make_run(7, status="in_progress")
    api.status_responses[7] = [
        ConditionalResponse(status_code=200, data={}, etag='"stale"'),
        ConditionalResponse(status_code=200, data=fresh, etag='"fresh"'),
    ]
    resp = fetch_run_status(api, "acme", "widgets", 7, etag='"old"')
    assert resp.data == fresh
    assert [c[2:] for c in api.calls_to("status")] == [('"old"', False), (None, True)]


def test_empty_payload_twice_is_reported():
    api = FakeWorkflowsAPI()
    api.status_responses[7] = [ConditionalResponse(status_code=200, data={})]
    with pytest.raises(EmptyPayloadError) as excinfo:
        fetch_run_status(api, "acme", "widgets", 7)
    assert "Please refresh manually" in str(excinfo.value)

    reported = []
    poller = ActivePoller(api, _collection(make_run(7, status="queued")))
    poller.add_error_listener(lambda run_id, err: reported.append(run_id))
    assert poller.poll_once() == []
    assert reported == [7]
    assert "Please refresh manually" in poller.errors[7]


def test_active_refresh_starts_and_stops():
    api = FakeWorkflowsAPI()
    coll = _collection(make_run(1, status="queued"))
    poller = ActivePoller(api, coll, interval_s=3600)
    try:
        poller.refresh()
        assert poller.running
        poller.refresh([make_run(1)])
        assert not poller.running
    finally:
        poller.stop()


# ============================================================================
# RerunCoordinator
# ============================================================================

def test_rerun_options():
    assert rerun_options(make_run(1, status="in_progress")) == ()
    assert rerun_options(make_run(1, conclusion="failure")) == ("failed", "all")
    assert rerun_options(make_run(1, conclusion="cancelled")) == ("failed", "all")
    assert rerun_options(make_run(1, conclusion="success")) == ("all",)
    assert rerun_options(make_run(1, conclusion="skipped")) == ("all",)


def test_rerun_failed_jobs_then_status_refresh():
    api = FakeWorkflowsAPI()
    failed = make_run(42, conclusion="failure", updated_at="2026-01-30T10:00:00Z")
    api.status_responses[42] = [
        ConditionalResponse(
            status_code=200,
            data=make_run(42, status="completed", conclusion="success", updated_at="2026-01-30T10:30:00Z"),
        )
    ]
    coll = _collection(failed)
    coord = RerunCoordinator(api, coll, settle_delay_s=0.2)

    timer = coord.rerun(failed, "failed")
    assert coord.is_retrying(42)
    timer.join(5)

    assert not coord.is_retrying(42)
    assert coord.retrying == set()
    assert coll.get(42).conclusion == "success"
    assert api.calls_to("rerun") == [("rerun", 42, "failed")]


def test_rerun_request_failure_clears_marker_without_follow_up():
    api = FakeWorkflowsAPI()
    api.rerun_error = RerunRequestError(status_code=500, endpoint="/rerun", message="Failed to re-run workflow")
    errors = []
    coord = RerunCoordinator(api, _collection(), settle_delay_s=0, on_error=lambda run, err: errors.append(run.id))

    assert coord.rerun(make_run(42, conclusion="failure"), "all") is None
    assert not coord.is_retrying(42)
    assert errors == [42]
    assert api.calls_to("status") == []


def test_rerun_follow_up_failure_still_clears_marker():
    api = FakeWorkflowsAPI()
    api.status_responses[42] = [requests.ConnectionError("reset")]
    coord = RerunCoordinator(api, _collection(), settle_delay_s=0)
    timer = coord.rerun(make_run(42, conclusion="failure"), "all")
    timer.join(5)
    assert not coord.is_retrying(42)


def test_rerun_rejects_ineligible_requests():
    api = FakeWorkflowsAPI()
    coord = RerunCoordinator(api, _collection(), settle_delay_s=0)
    with pytest.raises(ValueError):
        coord.rerun(make_run(1, status="in_progress"), "all")
    with pytest.raises(ValueError):
        coord.rerun(make_run(1, conclusion="success"), "failed")
    with pytest.raises(ValueError):
        coord.rerun(make_run(1, conclusion="failure"), "everything")
    assert api.calls == []


def test_rerun_job_marks_run_and_refreshes_status():
    api = FakeWorkflowsAPI()
    failed = make_run(42, conclusion="failure")
    api.status_responses[42] = [ConditionalResponse(status_code=200, data=make_run(42, status="queued", updated_at="2026-01-30T11:00:00Z"))]
    coll = _collection(failed)
    coord = RerunCoordinator(api, coll, settle_delay_s=0.1)

    timer = coord.rerun_job(failed, 7)
    assert coord.is_retrying(42)
    timer.join(5)

    assert not coord.is_retrying(42)
    assert coll.get(42).status == "queued"
    assert api.calls_to("rerun_job") == [("rerun_job", 7)]
    assert api.calls_to("rerun") == []


def test_rerun_job_rejects_running_runs_and_bad_ids():
    api = FakeWorkflowsAPI()
    coord = RerunCoordinator(api, _collection(), settle_delay_s=0)
    with pytest.raises(ValueError):
        coord.rerun_job(make_run(1, status="in_progress"), 7)
    with pytest.raises(ValueError):
        coord.rerun_job(make_run(1, conclusion="failure"), 0)
    assert api.calls == []


# ============================================================================
# WorkflowCollection persistence under concurrent writers
# ============================================================================

class _SlowSaveStore(MemoryCacheStore):
    """Delays the next `set` once, so a second writer can overtake the first."""

    def __init__(self):
        super().__init__()
        self.delay_next = 0.0
        self.entered = threading.Event()

    def set(self, key, value):
        delay, self.delay_next = self.delay_next, 0.0
        if delay:
            self.entered.set()
            time.sleep(delay)
        super().set(key, value)


def test_concurrent_merges_persist_newest_snapshot():
    store = _SlowSaveStore()
    coll = WorkflowCollection("alice", PersistentCache(store))
    coll.record_batch("batch-1", BatchMetadata("2026-01-26", "2026-01-30", 1, 1))
    coll.merge([make_run(1, updated_at="2026-01-30T10:00:00Z")])

    store.delay_next = 0.3
    slow = threading.Thread(target=coll.merge, args=([make_run(2, updated_at="2026-01-30T11:00:00Z")],))
    slow.start()
    assert store.entered.wait(5)
    coll.merge([make_run(3, updated_at="2026-01-30T12:00:00Z")])
    slow.join(5)

    assert [r.id for r in coll.snapshot()] == [3, 2, 1]
    persisted = PersistentCache(store).load("alice")
    assert [r.id for r in persisted.data] == [3, 2, 1]
