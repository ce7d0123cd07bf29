"""APScheduler job definitions for queue maintenance."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from price_tracker.config import settings
from price_tracker.worker.tasks import MaintenanceRunner

logger = logging.getLogger(__name__)


def setup_scheduler(maintenance: MaintenanceRunner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Expired leases are requeued every settings.requeue_interval_seconds
    - Due products are enqueued every settings.enqueue_interval_seconds

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    requeue_interval = max(5, int(settings.requeue_interval_seconds))
    enqueue_interval = max(5, int(settings.enqueue_interval_seconds))

    scheduler.add_job(
        maintenance.requeue_expired,
        IntervalTrigger(seconds=requeue_interval),
        id="requeue_expired",
        name="Requeue jobs with expired leases",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=60,
        replace_existing=True,
    )

    scheduler.add_job(
        maintenance.enqueue_due,
        IntervalTrigger(seconds=enqueue_interval),
        id="enqueue_due",
        name="Enqueue due products",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
        replace_existing=True,
    )

    logger.info(
        f"Scheduler configured: requeue every {requeue_interval}s, "
        f"enqueue every {enqueue_interval}s"
    )
    return scheduler
