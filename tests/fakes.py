"""Test doubles: an in-memory job store, stub stages and result builders."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from price_tracker.db.job_store import (
    COLLECTOR_ACTIVE,
    COLLECTOR_REVOKED,
    DEAD,
    LEASED,
    QUEUED,
    AttemptRecord,
    ClaimedJob,
    JobStore,
)
from price_tracker.ingest.base import (
    BaseExtractionStage,
    ExtractionHints,
    ExtractionMethod,
    ExtractionResult,
    ExtractionStatus,
)
from price_tracker.ingest.price_parser import parse_price
from price_tracker.worker.tiering import PricePoint

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeJobStore(JobStore):
    """In-memory JobStore that records every call in order."""

    def __init__(self):
        self.jobs: dict[int, ClaimedJob] = {}
        self.products: dict[int, dict[str, Any]] = {}
        self.history: dict[int, list[PricePoint]] = {}
        self.attempts: list[AttemptRecord] = []
        self.completions: list[tuple[int, str, Optional[str], Optional[datetime]]] = []
        self.heartbeats: list[tuple[str, str]] = []
        self.calls: list[str] = []
        self.collector_status: Optional[str] = None
        self.fail_on: set[str] = set()
        self.lost_leases: set[int] = set()
        self.renewals: list[list[int]] = []
        self.requeued = 0
        self.enqueued = 0

    def _call(self, name: str):
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"store unavailable: {name}")

    def add_job(self, job: ClaimedJob):
        self.jobs[job.id] = replace(job, state=QUEUED)
        self.products.setdefault(job.product_id, {})

    async def claim_jobs(self, collector_id, limit, lease_seconds, route_hint=None):
        self._call("claim_jobs")
        claimed = []
        for job in self.jobs.values():
            if job.state != QUEUED or len(claimed) >= limit:
                continue
            job.state = LEASED
            job.leased_by = collector_id
            job.attempt_count += 1
            claimed.append(replace(job))
        return claimed

    async def complete_job(self, job_id, state, last_error=None, next_scheduled_for=None, collector_id=None):
        self._call("complete_job")
        if job_id in self.lost_leases:
            return False
        self.completions.append((job_id, state, last_error, next_scheduled_for))
        if job_id in self.jobs:
            self.jobs[job_id].state = state
            self.jobs[job_id].last_error = last_error
        return True

    async def renew_leases(self, collector_id, job_ids, lease_seconds):
        self._call("renew_leases")
        self.renewals.append(list(job_ids))
        return {
            job_id
            for job_id in job_ids
            if job_id not in self.lost_leases
            and job_id in self.jobs
            and self.jobs[job_id].state == LEASED
            and self.jobs[job_id].leased_by == collector_id
        }

    async def requeue_expired_jobs(self, limit):
        self._call("requeue_expired_jobs")
        return self.requeued

    async def enqueue_due_jobs(self, limit):
        self._call("enqueue_due_jobs")
        return self.enqueued

    async def heartbeat(self, collector_id, status, capabilities=None, name=None):
        self._call("heartbeat")
        self.heartbeats.append((collector_id, status))
        if self.collector_status == COLLECTOR_REVOKED:
            return COLLECTOR_REVOKED
        return self.collector_status or status or COLLECTOR_ACTIVE

    async def append_price_history(self, product_id, price, currency, scraped_at):
        self._call("append_price_history")
        self.history.setdefault(product_id, []).insert(
            0, PricePoint(price=price, scraped_at=scraped_at, currency=currency)
        )

    async def update_product(self, product_id, patch):
        self._call("update_product")
        self.products.setdefault(product_id, {}).update(patch)

    async def recent_prices(self, product_id, limit):
        self._call("recent_prices")
        points = sorted(self.history.get(product_id, []), key=lambda p: p.scraped_at, reverse=True)
        return points[:limit]

    async def insert_attempt(self, record):
        self._call("insert_attempt")
        self.attempts.append(record)


class StubStage(BaseExtractionStage):
    """Stage returning queued results (or raising queued exceptions) in order."""

    def __init__(self, method: ExtractionMethod, *outcomes):
        self.method = method
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, ExtractionHints]] = []

    async def extract(self, url, hints):
        self.calls.append((url, hints))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class StubPipeline:
    """Pipeline double for coordinator tests."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, ExtractionHints]] = []

    async def run(self, url, hints=None):
        self.calls.append((url, hints))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def ok_result(
    text: str = "329,00 €",
    method: ExtractionMethod = ExtractionMethod.HTML_JSON,
    confidence: float = 0.96,
    currency: Optional[str] = "EUR",
    **kwargs,
) -> ExtractionResult:
    return ExtractionResult(
        status=ExtractionStatus.OK,
        method=method,
        price_raw=text,
        price=parse_price(text, currency),
        confidence=confidence,
        **kwargs,
    )


def make_job(**overrides) -> ClaimedJob:
    values = dict(
        id=1,
        product_id=10,
        asin="B0TESTASIN",
        domain="amazon.de",
        url="https://www.amazon.de/dp/B0TESTASIN",
        scheduled_for=NOW - timedelta(minutes=1),
        attempt_count=1,
        max_attempts=5,
        tier="daily",
        tier_mode="auto",
        last_price=329.0,
        consecutive_failures=0,
    )
    values.update(overrides)
    return ClaimedJob(**values)
