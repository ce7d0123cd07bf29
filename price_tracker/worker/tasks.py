"""Queue maintenance: requeue expired leases and enqueue due products."""

import logging
from typing import Optional

from price_tracker.db.job_store import JobStore

logger = logging.getLogger(__name__)


class MaintenanceRunner:
    """
    Best-effort queue maintenance shared by collectors and the scheduler.

    Both steps log and report zero on failure; a missed cycle is repaired by
    the next one.
    """

    def __init__(self, store: JobStore, requeue_limit: int = 200, enqueue_limit: int = 100):
        self.store = store
        self.requeue_limit = requeue_limit
        self.enqueue_limit = enqueue_limit

    async def requeue_expired(self) -> int:
        try:
            return await self.store.requeue_expired_jobs(self.requeue_limit)
        except Exception as e:
            logger.warning(f"Requeue of expired jobs failed: {e}")
            return 0

    async def enqueue_due(self, limit: Optional[int] = None) -> int:
        try:
            return await self.store.enqueue_due_jobs(limit or self.enqueue_limit)
        except Exception as e:
            logger.warning(f"Enqueue of due jobs failed: {e}")
            return 0

    async def run(self, enqueue_limit: Optional[int] = None) -> dict[str, int]:
        """Requeue first so reclaimed jobs are visible to the same claim."""
        requeued = await self.requeue_expired()
        enqueued = await self.enqueue_due(enqueue_limit)
        if requeued or enqueued:
            logger.info(f"Maintenance: requeued={requeued} enqueued={enqueued}")
        return {"requeued": requeued, "enqueued": enqueued}
