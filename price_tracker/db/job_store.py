"""Job store interface consumed by the collector and the job coordinator.

The store owns mutual exclusion between collectors: ``claim_jobs`` must be
atomic so that no two collectors hold the same job at once, and a lease
expires after ``lease_seconds`` so that ``requeue_expired_jobs`` can make an
abandoned job claimable again.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from price_tracker.worker.tiering import PricePoint

QUEUED = "queued"
LEASED = "leased"
DONE = "done"
DEAD = "dead"
JOB_STATES = (QUEUED, LEASED, DONE, DEAD)

COLLECTOR_ACTIVE = "active"
COLLECTOR_PAUSED = "paused"
COLLECTOR_REVOKED = "revoked"


@dataclass
class ClaimedJob:
    """A leased job joined with the product fields the coordinator needs."""

    id: int
    product_id: int
    asin: str
    domain: str
    url: str
    scheduled_for: Optional[datetime] = None
    priority: int = 0
    state: str = LEASED
    route_hint: Optional[str] = None
    dedupe_key: Optional[str] = None
    attempt_count: int = 1
    max_attempts: int = 5
    leased_by: Optional[str] = None
    lease_until: Optional[datetime] = None
    last_error: Optional[str] = None

    # Product snapshot at claim time
    title: Optional[str] = None
    tier: str = "daily"
    tier_mode: str = "auto"
    last_price: Optional[float] = None
    consecutive_failures: int = 0


@dataclass
class AttemptRecord:
    """One immutable collection attempt audit row."""

    job_id: Optional[int]
    product_id: int
    collector_id: Optional[str]
    executor: str
    method: str
    status: str
    started_at: datetime
    finished_at: datetime
    http_status: Optional[int] = None
    blocked_signal: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    confidence: Optional[float] = None
    debug: dict[str, Any] = field(default_factory=dict)


class JobStore(ABC):
    """Atomic job operations plus the product persistence the coordinator uses."""

    @abstractmethod
    async def claim_jobs(
        self,
        collector_id: str,
        limit: int,
        lease_seconds: int,
        route_hint: Optional[str] = None,
    ) -> list[ClaimedJob]:
        """Lease up to ``limit`` queued, due jobs to one collector."""

    @abstractmethod
    async def complete_job(
        self,
        job_id: int,
        state: str,
        last_error: Optional[str] = None,
        next_scheduled_for: Optional[datetime] = None,
        collector_id: Optional[str] = None,
    ) -> bool:
        """
        Move a leased job to done, queued (retry) or dead and release its lease.

        With ``collector_id`` the transition only applies while that collector
        still holds the lease. Returns False when no leased row matched.
        """

    @abstractmethod
    async def renew_leases(
        self,
        collector_id: str,
        job_ids: list[int],
        lease_seconds: int,
    ) -> set[int]:
        """Extend leases this collector still holds. Returns the ids renewed."""

    @abstractmethod
    async def requeue_expired_jobs(self, limit: int) -> int:
        """
        Return jobs whose lease has expired to the queue. Returns the count.

        Jobs out of attempts go to dead instead, and their product is backed off
        so the next enqueue creates a fresh job.
        """

    @abstractmethod
    async def enqueue_due_jobs(self, limit: int) -> int:
        """Create queued jobs for due products without an active job. Returns the count."""

    @abstractmethod
    async def heartbeat(
        self,
        collector_id: str,
        status: str,
        capabilities: Optional[dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> Optional[str]:
        """Record a collector heartbeat. Returns the stored collector status."""

    @abstractmethod
    async def append_price_history(
        self,
        product_id: int,
        price: float,
        currency: Optional[str],
        scraped_at: datetime,
    ) -> None:
        """Append one price observation."""

    @abstractmethod
    async def update_product(self, product_id: int, patch: dict[str, Any]) -> None:
        """Apply a partial update to a product's scheduling and price fields."""

    @abstractmethod
    async def recent_prices(self, product_id: int, limit: int) -> list[PricePoint]:
        """Most recent price observations, newest first."""

    @abstractmethod
    async def insert_attempt(self, record: AttemptRecord) -> None:
        """Write one collection attempt audit row."""
