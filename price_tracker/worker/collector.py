"""Collector poll loop: heartbeat, maintenance, claim, process sequentially, sleep."""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from price_tracker import metrics
from price_tracker.db.job_store import COLLECTOR_ACTIVE, COLLECTOR_PAUSED, COLLECTOR_REVOKED, JobStore
from price_tracker.worker.collector_state import CollectorState
from price_tracker.worker.job_runner import JobCoordinator, trim_error_message
from price_tracker.worker.tasks import MaintenanceRunner

logger = logging.getLogger(__name__)

MIN_POLL_SECONDS = 5
MAX_CLAIM_LIMIT = 10
LEASE_MARGIN_SECONDS = 60


def minimum_lease_seconds(settings) -> int:
    """Longest one job can run under the enabled stage timeouts, plus room for store writes."""
    total = settings.html_stage_timeout_seconds
    if settings.vision_fallback_enabled:
        total += settings.vision_stage_timeout_seconds
    if settings.dom_fallback_enabled:
        total += settings.dom_stage_timeout_seconds
    return int(math.ceil(total)) + LEASE_MARGIN_SECONDS


@dataclass
class CollectorConfig:
    """Poll loop limits."""

    poll_seconds: float = 20
    claim_limit: int = 5
    lease_seconds: int = 360
    route_hint: Optional[str] = "collector_first"
    run_maintenance: bool = True
    capabilities: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.poll_seconds = max(MIN_POLL_SECONDS, float(self.poll_seconds or 0))
        self.claim_limit = min(MAX_CLAIM_LIMIT, max(1, int(self.claim_limit or 1)))

    @classmethod
    def from_settings(cls, settings) -> "CollectorConfig":
        return cls(
            poll_seconds=settings.collector_poll_seconds,
            claim_limit=settings.collector_claim_limit,
            lease_seconds=max(settings.collector_lease_seconds, minimum_lease_seconds(settings)),
            route_hint=settings.collector_route_hint or None,
            run_maintenance=settings.collector_run_maintenance,
            capabilities={
                "html_json": True,
                "vision": settings.vision_fallback_enabled,
                "railway_dom": settings.dom_fallback_enabled,
            },
        )


def compute_sleep_seconds(poll_seconds: float, elapsed_seconds: float) -> float:
    """Time left in the poll tick; never negative."""
    return max(0.0, poll_seconds - elapsed_seconds)


def empty_report(paused: bool = False) -> dict[str, Any]:
    return {"processed": 0, "success": 0, "failed": 0, "skipped": 0, "items": [], "paused": paused}


class CollectorWorker:
    """One collector process claiming and processing jobs in batches."""

    def __init__(
        self,
        store: JobStore,
        coordinator: JobCoordinator,
        state: CollectorState,
        config: Optional[CollectorConfig] = None,
        maintenance: Optional[MaintenanceRunner] = None,
    ):
        self.store = store
        self.coordinator = coordinator
        self.state = state
        self.config = config or CollectorConfig()
        self.maintenance = maintenance or MaintenanceRunner(store)

    @property
    def collector_id(self) -> str:
        return self.state.collector_id

    async def heartbeat(self) -> Optional[str]:
        """Report liveness. Returns the stored status, or None if the store was unreachable."""
        status = COLLECTOR_PAUSED if self.state.is_paused else COLLECTOR_ACTIVE
        try:
            return await self.store.heartbeat(
                self.collector_id,
                status,
                capabilities=self.config.capabilities,
                name=self.state.name,
            )
        except Exception as e:
            logger.warning(f"Collector heartbeat failed: {e}")
            return None

    async def renew_leases(self, job_ids: list[int]) -> set[int]:
        """Extend leases on the rest of the batch. Returns the ids still held."""
        try:
            return await self.store.renew_leases(self.collector_id, job_ids, self.config.lease_seconds)
        except Exception as e:
            logger.warning(f"Lease renewal failed: {e}")
            return set()

    async def run_once(self) -> dict[str, Any]:
        """
        Run one poll cycle.

        Returns:
            Batch report with processed/success/failed counts and per-job items
        """
        stored_status = await self.heartbeat()
        if self.state.is_paused or stored_status in (COLLECTOR_PAUSED, COLLECTOR_REVOKED):
            logger.info(f"Collector {self.state.name} is {stored_status or self.state.status}, skipping claim")
            metrics.record_poll_cycle("paused")
            return empty_report(paused=True)

        if self.config.run_maintenance:
            await self.maintenance.run(enqueue_limit=self.config.claim_limit * 2)

        jobs = await self.store.claim_jobs(
            self.collector_id,
            self.config.claim_limit,
            self.config.lease_seconds,
            self.config.route_hint,
        )
        metrics.record_jobs_claimed(len(jobs))

        report = empty_report()
        pending = [job.id for job in jobs]
        for job in jobs:
            held = await self.renew_leases(pending)
            pending.remove(job.id)
            if job.id not in held:
                logger.warning(f"Lease on job {job.id} ({job.asin}) was lost, skipping it")
                report["skipped"] += 1
                continue

            try:
                item = await self.coordinator.process_claimed_job(job)
            except Exception as e:
                # Lease expires and the reaper requeues the job
                logger.error(f"Processing job {job.id} ({job.asin}) failed: {e}", exc_info=True)
                item = {"asin": job.asin, "status": "failed", "error": trim_error_message(e)}

            report["processed"] += 1
            if item.get("status") == "ok":
                report["success"] += 1
            else:
                report["failed"] += 1
            report["items"].append(item)

        if jobs:
            logger.info(
                f"Processed {report['processed']} jobs: "
                f"{report['success']} ok, {report['failed']} failed, {report['skipped']} skipped"
            )
        metrics.record_poll_cycle("ok")
        return report

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """Poll until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(
            f"Collector {self.state.name} ({self.collector_id}) started, "
            f"poll={self.config.poll_seconds:.0f}s limit={self.config.claim_limit}"
        )

        while not stop_event.is_set():
            started = time.monotonic()
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Collector poll cycle failed: {e}", exc_info=True)
                metrics.record_poll_cycle("error")

            delay = compute_sleep_seconds(self.config.poll_seconds, time.monotonic() - started)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Collector {self.state.name} stopped")


def build_collector(settings, store: Optional[JobStore] = None):
    """
    Wire a collector from settings.

    Returns:
        Tuple of (worker, pipeline); the caller closes the pipeline on shutdown
    """
    from price_tracker.db.session import AsyncSessionLocal
    from price_tracker.db.sql_job_store import SqlJobStore
    from price_tracker.ingest.pipeline import CollectionPipeline
    from price_tracker.worker.collector_state import load_or_create_collector_state, state_file_path
    from price_tracker.worker.job_runner import CoordinatorConfig

    store = store or SqlJobStore(AsyncSessionLocal, default_max_attempts=settings.job_max_attempts)
    config = CollectorConfig.from_settings(settings)
    state = load_or_create_collector_state(
        state_file_path(settings.collector_state_dir or None),
        name=settings.collector_name,
        capabilities=config.capabilities,
    )
    pipeline = CollectionPipeline.from_settings(settings)
    coordinator = JobCoordinator(
        store,
        pipeline,
        CoordinatorConfig.from_settings(settings),
        collector_id=state.collector_id,
    )
    maintenance = MaintenanceRunner(
        store,
        requeue_limit=settings.requeue_expired_limit,
        enqueue_limit=settings.enqueue_batch_size,
    )
    worker = CollectorWorker(store, coordinator, state, config, maintenance)
    return worker, pipeline


async def main():
    from price_tracker.config import settings
    from price_tracker.logging_config import setup_logging

    setup_logging()
    worker, pipeline = build_collector(settings)
    try:
        await worker.run_forever()
    finally:
        await pipeline.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
