"""Main application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from price_tracker.config import settings
from price_tracker.db.models import Base
from price_tracker.db.session import AsyncSessionLocal, engine
from price_tracker.db.sql_job_store import SqlJobStore
from price_tracker.worker.collector import build_collector
from price_tracker.worker.scheduler import setup_scheduler
from price_tracker.worker.tasks import MaintenanceRunner

# Configure structured logging
from price_tracker.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

store = SqlJobStore(AsyncSessionLocal, default_max_attempts=settings.job_max_attempts)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting price tracker...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler = None
    if settings.scheduler_enabled:
        maintenance = MaintenanceRunner(
            store,
            requeue_limit=settings.requeue_expired_limit,
            enqueue_limit=settings.enqueue_batch_size,
        )
        scheduler = setup_scheduler(maintenance)
        scheduler.start()
        logger.info("Scheduler started")

    stop_event = asyncio.Event()
    collector_task = None
    pipeline = None
    if settings.collector_enabled:
        worker, pipeline = build_collector(settings, store=store)
        collector_task = asyncio.create_task(worker.run_forever(stop_event))
        logger.info("Collector loop started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    stop_event.set()
    if collector_task:
        await collector_task
    if pipeline:
        try:
            await pipeline.close()
        except Exception:
            logger.exception("Error closing extraction pipeline")
    if scheduler:
        scheduler.shutdown()
    await engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Price Tracker",
    description="Price collection pipeline and scheduling engine",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/api/worker-health")
async def worker_health(window_hours: int = 24):
    """Collectors with their last heartbeat and recent attempt outcomes."""
    return await store.worker_health(window_hours=window_hours)


if __name__ == "__main__":
    uvicorn.run(
        "price_tracker.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
