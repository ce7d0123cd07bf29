"""PostgreSQL job store on SQLAlchemy async sessions.

Claims use ``SELECT ... FOR UPDATE SKIP LOCKED`` inside a single transaction,
so concurrent collectors never lease the same job.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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
from price_tracker.db.models import (
    CollectionAttempt,
    CollectionJob,
    Collector,
    PriceHistory,
    Product,
)
from price_tracker.worker.tiering import (
    DAILY,
    HOURLY,
    WEEKLY,
    PricePoint,
    compute_failure_next_scrape_at,
    normalize_tier,
)

logger = logging.getLogger(__name__)

TIER_PRIORITY = {HOURLY: 3, DAILY: 2, WEEKLY: 1}
ANY_ROUTE = "any"
EXPIRED_LEASE_ERROR = "Lease expired before the job completed"

PRODUCT_FIELDS = {
    "title",
    "tier",
    "tier_mode",
    "is_active",
    "next_scrape_at",
    "last_price",
    "last_scraped_at",
    "last_price_change_at",
    "consecutive_failures",
    "last_error",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(value: Optional[float]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(round(float(value), 2)))


def dedupe_key_for(product_id: int, scheduled_for: Optional[datetime]) -> str:
    stamp = scheduled_for.isoformat() if scheduled_for else "now"
    return f"{product_id}:{stamp}"


class SqlJobStore(JobStore):
    """JobStore backed by the collection tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_max_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self.default_max_attempts = default_max_attempts

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def claim_jobs(
        self,
        collector_id: str,
        limit: int,
        lease_seconds: int,
        route_hint: Optional[str] = None,
    ) -> list[ClaimedJob]:
        if limit <= 0:
            return []

        now = _utcnow()
        lease_until = now + timedelta(seconds=max(1, lease_seconds))

        stmt = (
            select(CollectionJob)
            .where(CollectionJob.state == QUEUED, CollectionJob.scheduled_for <= now)
            .order_by(CollectionJob.priority.desc(), CollectionJob.scheduled_for.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if route_hint:
            stmt = stmt.where(
                or_(
                    CollectionJob.route_hint.is_(None),
                    CollectionJob.route_hint == route_hint,
                    CollectionJob.route_hint == ANY_ROUTE,
                )
            )

        async with self._session_factory() as db:
            async with db.begin():
                jobs = list((await db.execute(stmt)).scalars().all())
                if not jobs:
                    return []

                for job in jobs:
                    job.state = LEASED
                    job.leased_by = collector_id
                    job.lease_until = lease_until
                    job.attempt_count = (job.attempt_count or 0) + 1

                product_ids = {job.product_id for job in jobs}
                products = {
                    product.id: product
                    for product in (
                        await db.execute(select(Product).where(Product.id.in_(product_ids)))
                    ).scalars()
                }
                claimed = [self._to_claimed(job, products.get(job.product_id)) for job in jobs]

        logger.debug(f"Collector {collector_id} claimed {len(claimed)} jobs")
        return claimed

    @staticmethod
    def _to_claimed(job: CollectionJob, product: Optional[Product]) -> ClaimedJob:
        return ClaimedJob(
            id=job.id,
            product_id=job.product_id,
            asin=job.asin,
            domain=job.domain,
            url=product.url if product else f"https://www.{job.domain}/dp/{job.asin}",
            scheduled_for=job.scheduled_for,
            priority=job.priority,
            state=job.state,
            route_hint=job.route_hint,
            dedupe_key=job.dedupe_key,
            attempt_count=job.attempt_count,
            max_attempts=job.max_attempts,
            leased_by=job.leased_by,
            lease_until=job.lease_until,
            last_error=job.last_error,
            title=product.title if product else None,
            tier=product.tier if product else DAILY,
            tier_mode=product.tier_mode if product else "auto",
            last_price=float(product.last_price) if product and product.last_price is not None else None,
            consecutive_failures=product.consecutive_failures if product else 0,
        )

    async def complete_job(
        self,
        job_id: int,
        state: str,
        last_error: Optional[str] = None,
        next_scheduled_for: Optional[datetime] = None,
        collector_id: Optional[str] = None,
    ) -> bool:
        values: dict[str, Any] = {
            "state": state,
            "last_error": last_error,
            "leased_by": None,
            "lease_until": None,
            "next_scheduled_for": next_scheduled_for,
            "updated_at": _utcnow(),
        }
        if state == QUEUED and next_scheduled_for is not None:
            values["scheduled_for"] = next_scheduled_for

        conditions = [CollectionJob.id == job_id, CollectionJob.state == LEASED]
        if collector_id is not None:
            conditions.append(CollectionJob.leased_by == collector_id)

        async with self._session_factory() as db:
            result = await db.execute(
                update(CollectionJob)
                .where(*conditions)
                .values(**values)
                .returning(CollectionJob.id)
            )
            matched = result.scalar_one_or_none() is not None
            await db.commit()

        if not matched:
            logger.warning(
                f"Job {job_id} is no longer leased by {collector_id or 'anyone'}, "
                f"skipped transition to {state}"
            )
        return matched

    async def renew_leases(
        self,
        collector_id: str,
        job_ids: list[int],
        lease_seconds: int,
    ) -> set[int]:
        if not job_ids:
            return set()

        now = _utcnow()
        stmt = (
            update(CollectionJob)
            .where(
                CollectionJob.id.in_(job_ids),
                CollectionJob.state == LEASED,
                CollectionJob.leased_by == collector_id,
            )
            .values(lease_until=now + timedelta(seconds=max(1, lease_seconds)), updated_at=now)
            .returning(CollectionJob.id)
        )
        async with self._session_factory() as db:
            renewed = set((await db.execute(stmt)).scalars().all())
            await db.commit()
        return renewed

    async def requeue_expired_jobs(self, limit: int) -> int:
        now = _utcnow()
        stmt = (
            select(CollectionJob)
            .where(CollectionJob.state == LEASED, CollectionJob.lease_until < now)
            .order_by(CollectionJob.lease_until.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        async with self._session_factory() as db:
            async with db.begin():
                jobs = list((await db.execute(stmt)).scalars().all())
                for job in jobs:
                    exhausted = job.attempt_count >= job.max_attempts
                    job.state = DEAD if exhausted else QUEUED
                    job.leased_by = None
                    job.lease_until = None
                    job.last_error = job.last_error or EXPIRED_LEASE_ERROR
                    job.updated_at = now

                dead_product_ids = {job.product_id for job in jobs if job.state == DEAD}
                if dead_product_ids:
                    await self._reschedule_after_dead_job(db, dead_product_ids, now)

        if jobs:
            dead = sum(1 for job in jobs if job.state == DEAD)
            logger.info(f"Requeued {len(jobs) - dead} and killed {dead} jobs with expired leases")
        return len(jobs)

    @staticmethod
    async def _reschedule_after_dead_job(db: AsyncSession, product_ids: set[int], now: datetime):
        # The next due time must differ from the dead job's, or its dedupe key blocks re-enqueue
        products = (
            await db.execute(
                select(Product).where(Product.id.in_(product_ids)).with_for_update()
            )
        ).scalars()
        for product in products:
            failures = (product.consecutive_failures or 0) + 1
            product.consecutive_failures = failures
            product.next_scrape_at = compute_failure_next_scrape_at(failures, now=now)
            product.last_error = EXPIRED_LEASE_ERROR

    async def enqueue_due_jobs(self, limit: int) -> int:
        if limit <= 0:
            return 0

        now = _utcnow()
        active_job = exists().where(
            and_(
                CollectionJob.product_id == Product.id,
                CollectionJob.state.in_((QUEUED, LEASED)),
            )
        )
        stmt = (
            select(Product)
            .where(
                Product.is_active.is_(True),
                or_(Product.next_scrape_at.is_(None), Product.next_scrape_at <= now),
                ~active_job,
            )
            .order_by(Product.next_scrape_at.asc().nulls_first())
            .limit(limit)
            .with_for_update(skip_locked=True, of=Product)
        )

        async with self._session_factory() as db:
            async with db.begin():
                products = list((await db.execute(stmt)).scalars().all())
                if not products:
                    return 0

                rows = [
                    {
                        "product_id": product.id,
                        "asin": product.asin,
                        "domain": product.domain,
                        "scheduled_for": product.next_scrape_at or now,
                        "priority": TIER_PRIORITY.get(normalize_tier(product.tier, DAILY), 0),
                        "state": QUEUED,
                        "dedupe_key": dedupe_key_for(product.id, product.next_scrape_at),
                        "attempt_count": 0,
                        "max_attempts": self.default_max_attempts,
                        "created_at": now,
                        "updated_at": now,
                    }
                    for product in products
                ]
                insert_stmt = (
                    pg_insert(CollectionJob)
                    .values(rows)
                    .on_conflict_do_nothing(index_elements=["dedupe_key"])
                    .returning(CollectionJob.id)
                )
                inserted = len((await db.execute(insert_stmt)).scalars().all())

        skipped = len(products) - inserted
        if skipped:
            logger.warning(f"Skipped {skipped} due products whose job key already exists")
        if inserted:
            logger.info(f"Enqueued {inserted} due collection jobs")
        return inserted

    async def heartbeat(
        self,
        collector_id: str,
        status: str,
        capabilities: Optional[dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> Optional[str]:
        now = _utcnow()
        async with self._session_factory() as db:
            collector = await db.get(Collector, collector_id)
            if collector is None:
                collector = Collector(
                    id=collector_id,
                    name=name or collector_id,
                    status=status or COLLECTOR_ACTIVE,
                    capabilities=capabilities or {},
                    last_seen_at=now,
                )
                db.add(collector)
            else:
                # A revoked collector stays revoked whatever it reports
                if collector.status != COLLECTOR_REVOKED:
                    collector.status = status or collector.status
                if capabilities is not None:
                    collector.capabilities = capabilities
                if name:
                    collector.name = name
                collector.last_seen_at = now
            await db.commit()
            return collector.status

    # ------------------------------------------------------------------
    # Product persistence
    # ------------------------------------------------------------------

    async def append_price_history(
        self,
        product_id: int,
        price: float,
        currency: Optional[str],
        scraped_at: datetime,
    ) -> None:
        async with self._session_factory() as db:
            db.add(
                PriceHistory(
                    product_id=product_id,
                    price=_to_decimal(price),
                    currency=currency,
                    scraped_at=scraped_at,
                )
            )
            await db.commit()

    async def update_product(self, product_id: int, patch: dict[str, Any]) -> None:
        unknown = set(patch) - PRODUCT_FIELDS
        if unknown:
            raise ValueError(f"Unknown product fields: {sorted(unknown)}")
        if not patch:
            return

        values = dict(patch)
        if "last_price" in values:
            values["last_price"] = _to_decimal(values["last_price"])

        async with self._session_factory() as db:
            await db.execute(update(Product).where(Product.id == product_id).values(**values))
            await db.commit()

    async def recent_prices(self, product_id: int, limit: int) -> list[PricePoint]:
        stmt = (
            select(PriceHistory)
            .where(PriceHistory.product_id == product_id)
            .order_by(PriceHistory.scraped_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [
            PricePoint(price=float(row.price), scraped_at=row.scraped_at, currency=row.currency)
            for row in rows
        ]

    async def insert_attempt(self, record: AttemptRecord) -> None:
        async with self._session_factory() as db:
            db.add(
                CollectionAttempt(
                    job_id=record.job_id,
                    product_id=record.product_id,
                    collector_id=record.collector_id,
                    executor=record.executor,
                    method=record.method,
                    status=record.status,
                    http_status=record.http_status,
                    blocked_signal=record.blocked_signal,
                    error_code=record.error_code,
                    error_message=record.error_message,
                    price=_to_decimal(record.price),
                    currency=record.currency,
                    confidence=record.confidence,
                    debug=record.debug or {},
                    started_at=record.started_at,
                    finished_at=record.finished_at,
                )
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def worker_health(self, window_hours: int = 24) -> dict[str, Any]:
        """Collectors with their last heartbeat plus recent attempt status counts."""
        since = _utcnow() - timedelta(hours=window_hours)
        async with self._session_factory() as db:
            collectors = (
                await db.execute(select(Collector).order_by(Collector.last_seen_at.desc()))
            ).scalars().all()
            status_rows = (
                await db.execute(
                    select(CollectionAttempt.status, func.count(CollectionAttempt.id))
                    .where(CollectionAttempt.finished_at >= since)
                    .group_by(CollectionAttempt.status)
                )
            ).all()
            job_rows = (
                await db.execute(
                    select(CollectionJob.state, func.count(CollectionJob.id))
                    .group_by(CollectionJob.state)
                )
            ).all()

        return {
            "collectors": [
                {
                    "id": c.id,
                    "name": c.name,
                    "kind": c.kind,
                    "status": c.status,
                    "last_seen_at": c.last_seen_at.isoformat() if c.last_seen_at else None,
                }
                for c in collectors
            ],
            "attempts": {status: count for status, count in status_rows},
            "jobs": {state: count for state, count in job_rows},
            "window_hours": window_hours,
        }
