"""Tests for the collector poll loop, identity state and maintenance."""

import asyncio
import json

import pytest

from price_tracker.config import Settings
from price_tracker.worker import collector as collector_module
from price_tracker.worker.collector import (
    CollectorConfig,
    CollectorWorker,
    compute_sleep_seconds,
    minimum_lease_seconds,
)
from price_tracker.worker.collector_state import (
    CollectorState,
    clear_collector_state,
    load_or_create_collector_state,
    read_collector_state,
    state_file_path,
    write_collector_state,
)
from price_tracker.worker.job_runner import CoordinatorConfig, JobCoordinator
from price_tracker.worker.tasks import MaintenanceRunner

from fakes import NOW, StubPipeline, make_job, ok_result


def make_worker(store, *outcomes, state=None, **config) -> CollectorWorker:
    state = state or CollectorState(collector_id="collector-1", name="test")
    coordinator = JobCoordinator(
        store, StubPipeline(*outcomes), CoordinatorConfig(), collector_id=state.collector_id, clock=lambda: NOW
    )
    return CollectorWorker(store, coordinator, state, CollectorConfig(**config))


def test_sleep_is_never_negative():
    assert compute_sleep_seconds(20, 5) == 15
    assert compute_sleep_seconds(20, 20) == 0
    assert compute_sleep_seconds(20, 95.5) == 0


def test_config_limits():
    config = CollectorConfig(poll_seconds=1, claim_limit=50)
    assert config.poll_seconds == 5
    assert config.claim_limit == 10
    assert CollectorConfig(claim_limit=0).claim_limit == 1


@pytest.mark.asyncio
async def test_run_once_processes_claimed_jobs_sequentially(store):
    store.add_job(make_job(id=1, product_id=10, asin="B000000001"))
    store.add_job(make_job(id=2, product_id=11, asin="B000000002"))
    worker = make_worker(store, ok_result(), RuntimeError("ECONNREFUSED"))

    report = await worker.run_once()

    assert report["processed"] == 2
    assert report["success"] == 1
    assert report["failed"] == 1
    assert report["paused"] is False
    assert [item["asin"] for item in report["items"]] == ["B000000001", "B000000002"]
    assert report["items"][1]["error_code"] == "network_error"
    assert store.calls[:4] == ["heartbeat", "requeue_expired_jobs", "enqueue_due_jobs", "claim_jobs"]
    assert store.heartbeats == [("collector-1", "active")]


@pytest.mark.asyncio
async def test_claim_limit_respected(store):
    for i in range(4):
        store.add_job(make_job(id=i + 1, product_id=100 + i))
    report = await make_worker(store, ok_result(), claim_limit=3).run_once()
    assert report["processed"] == 3


@pytest.mark.asyncio
async def test_batch_leases_renewed_before_each_job(store):
    store.add_job(make_job(id=1, product_id=10))
    store.add_job(make_job(id=2, product_id=11))
    store.add_job(make_job(id=3, product_id=12))

    report = await make_worker(store, ok_result()).run_once()

    assert report["processed"] == 3
    assert store.renewals == [[1, 2, 3], [2, 3], [3]]


@pytest.mark.asyncio
async def test_job_with_lost_lease_is_skipped(store):
    store.add_job(make_job(id=1, product_id=10))
    store.add_job(make_job(id=2, product_id=11))
    store.lost_leases.add(2)
    worker = make_worker(store, ok_result())

    report = await worker.run_once()

    assert report["processed"] == 1
    assert report["skipped"] == 1
    assert [completion[0] for completion in store.completions] == [1]
    assert len(worker.coordinator.pipeline.calls) == 1


@pytest.mark.asyncio
async def test_renewal_error_skips_the_batch(store):
    store.add_job(make_job(id=1, product_id=10))
    store.fail_on.add("renew_leases")
    worker = make_worker(store, ok_result())

    report = await worker.run_once()

    assert report["processed"] == 0
    assert report["skipped"] == 1
    assert worker.coordinator.pipeline.calls == []


def test_lease_covers_slowest_job():
    settings = Settings(
        collector_lease_seconds=120,
        html_stage_timeout_seconds=40,
        vision_stage_timeout_seconds=90,
        dom_stage_timeout_seconds=150,
        vision_fallback_enabled=True,
        dom_fallback_enabled=True,
    )
    assert minimum_lease_seconds(settings) == 340
    assert CollectorConfig.from_settings(settings).lease_seconds == 340

    settings.vision_fallback_enabled = False
    assert minimum_lease_seconds(settings) == 250

    settings.collector_lease_seconds = 900
    assert CollectorConfig.from_settings(settings).lease_seconds == 900


@pytest.mark.asyncio
async def test_paused_collector_heartbeats_but_claims_nothing(store):
    store.add_job(make_job())
    state = CollectorState(collector_id="collector-1", name="test", status="paused")

    report = await make_worker(store, ok_result(), state=state).run_once()

    assert report == {"processed": 0, "success": 0, "failed": 0, "skipped": 0, "items": [], "paused": True}
    assert store.calls == ["heartbeat"]
    assert store.heartbeats == [("collector-1", "paused")]


@pytest.mark.asyncio
async def test_revoked_in_store_pauses_collector(store):
    store.add_job(make_job())
    store.collector_status = "revoked"

    report = await make_worker(store, ok_result()).run_once()

    assert report["paused"] is True
    assert "claim_jobs" not in store.calls


@pytest.mark.asyncio
async def test_heartbeat_failure_does_not_stop_cycle(store):
    store.add_job(make_job())
    store.fail_on.add("heartbeat")

    report = await make_worker(store, ok_result(), run_maintenance=False).run_once()

    assert report["processed"] == 1
    assert "requeue_expired_jobs" not in store.calls


@pytest.mark.asyncio
async def test_success_path_store_error_is_reported_and_loop_continues(store):
    store.add_job(make_job(id=1, product_id=10))
    store.add_job(make_job(id=2, product_id=11))
    store.fail_on.add("append_price_history")

    report = await make_worker(store, ok_result()).run_once()

    assert report["processed"] == 2
    assert report["failed"] == 2
    assert "store unavailable" in report["items"][0]["error"]


@pytest.mark.asyncio
async def test_run_forever_stops_on_event(store, monkeypatch):
    worker = make_worker(store, ok_result())
    stop_event = asyncio.Event()
    cycles = []

    async def fake_run_once():
        cycles.append(1)
        if len(cycles) == 2:
            stop_event.set()
        return {}

    monkeypatch.setattr(worker, "run_once", fake_run_once)
    monkeypatch.setattr(collector_module, "compute_sleep_seconds", lambda poll, elapsed: 0)

    await asyncio.wait_for(worker.run_forever(stop_event), timeout=2)

    assert len(cycles) == 2


@pytest.mark.asyncio
async def test_run_forever_survives_cycle_errors(store, monkeypatch):
    worker = make_worker(store, ok_result())
    stop_event = asyncio.Event()
    cycles = []

    async def failing_run_once():
        cycles.append(1)
        if len(cycles) == 3:
            stop_event.set()
        raise RuntimeError("claim failed")

    monkeypatch.setattr(worker, "run_once", failing_run_once)
    monkeypatch.setattr(collector_module, "compute_sleep_seconds", lambda poll, elapsed: 0)

    await asyncio.wait_for(worker.run_forever(stop_event), timeout=2)

    assert len(cycles) == 3


@pytest.mark.asyncio
async def test_maintenance_is_best_effort(store):
    store.requeued = 2
    store.enqueued = 5
    runner = MaintenanceRunner(store, requeue_limit=200, enqueue_limit=10)
    assert await runner.run() == {"requeued": 2, "enqueued": 5}

    store.fail_on.update({"requeue_expired_jobs", "enqueue_due_jobs"})
    assert await runner.run() == {"requeued": 0, "enqueued": 0}


def test_collector_state_roundtrip(tmp_path):
    path = state_file_path(tmp_path)
    assert path.name == "collector.json"
    assert read_collector_state(path) is None

    state = load_or_create_collector_state(path, name="laptop", capabilities={"vision": False})
    assert state.collector_id
    assert json.loads(path.read_text())["name"] == "laptop"

    again = load_or_create_collector_state(path, name="other")
    assert again.collector_id == state.collector_id
    assert again.name == "laptop"

    state.status = "paused"
    write_collector_state(state, path)
    assert read_collector_state(path).is_paused is True

    assert clear_collector_state(path) is True
    assert clear_collector_state(path) is False


def test_corrupt_state_file_is_ignored(tmp_path):
    path = state_file_path(tmp_path)
    path.write_text("{not json")
    assert read_collector_state(path) is None
