"""Job lifecycle coordinator: drives one claimed job from lease to done, retry or dead."""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from price_tracker import metrics
from price_tracker.db.job_store import DEAD, DONE, QUEUED, AttemptRecord, ClaimedJob, JobStore
from price_tracker.ingest.base import ExtractionFailed, ExtractionHints, ExtractionResult
from price_tracker.ingest.domains import fallback_currency_for_domain
from price_tracker.ingest.pipeline import CollectionPipeline
from price_tracker.logging_config import get_logger
from price_tracker.worker.tiering import (
    DAILY,
    compute_failure_next_scrape_at,
    compute_next_scrape_at,
    demote_tier,
    normalize_tier,
    prices_differ,
    recommend_auto_tier,
    utcnow,
)

logger = logging.getLogger(__name__)

# Failure taxonomy, in priority order
CAPTCHA = "captcha"
ROBOT_CHECK = "robot_check"
HTTP_429 = "http_429"
HTTP_503 = "http_503"
TIMEOUT = "timeout"
NETWORK_ERROR = "network_error"
NO_PRICE = "no_price"
OTHER_ERROR = "other_error"

BLOCKED_FAILURES = (CAPTCHA, ROBOT_CHECK, HTTP_429, HTTP_503)
FAILURE_CODES = BLOCKED_FAILURES + (TIMEOUT, NETWORK_ERROR, NO_PRICE, OTHER_ERROR)

MAX_ERROR_LENGTH = 4000
DEFAULT_ERROR_MESSAGE = "Collection failed without an error message"
TIER_MODE_AUTO = "auto"

NETWORK_MARKERS = ("econn", "enotfound", "network", "connection reset", "connection refused")


@dataclass
class CoordinatorConfig:
    """Limits and identity used while processing claimed jobs."""

    executor: str = "collector"
    history_window: int = 120
    demote_after_failures: int = 3
    min_jitter_minutes: int = 2
    max_jitter_minutes: int = 10

    @classmethod
    def from_settings(cls, settings) -> "CoordinatorConfig":
        return cls(
            executor=settings.collector_executor,
            history_window=settings.tier_history_window,
            demote_after_failures=settings.tier_demote_after_failures,
            min_jitter_minutes=settings.tier_min_jitter_minutes,
            max_jitter_minutes=settings.tier_max_jitter_minutes,
        )


def classify_failure(error: BaseException) -> str:
    """
    Map an extraction or transport failure onto the failure taxonomy.

    Blocked signals win over HTTP status, which wins over timeouts and
    network faults. Anything without a recognizable cause is ``other_error``.
    """
    http_status = getattr(error, "http_status", None)
    if getattr(error, "blocked_signal", False):
        reason = str(getattr(error, "blocked_reason", "") or "").lower()
        if reason in BLOCKED_FAILURES:
            return reason
        if http_status == 429:
            return HTTP_429
        if http_status == 503:
            return HTTP_503
        return CAPTCHA

    if isinstance(error, httpx.HTTPStatusError):
        http_status = error.response.status_code
    if http_status == 429:
        return HTTP_429
    if http_status == 503:
        return HTTP_503

    # Page loaded but held no usable price
    if isinstance(error, ExtractionFailed):
        return NO_PRICE

    message = str(error).lower()
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, PlaywrightTimeoutError)):
        return TIMEOUT
    if "timeout" in message or "timed out" in message:
        return TIMEOUT
    if isinstance(error, httpx.TransportError) or any(marker in message for marker in NETWORK_MARKERS):
        return NETWORK_ERROR
    return OTHER_ERROR


def trim_error_message(message: Any, fallback: str = DEFAULT_ERROR_MESSAGE) -> str:
    """Error text for storage: never empty, at most 4000 characters."""
    text = str(message or "").strip()
    if not text:
        text = fallback
    return text[:MAX_ERROR_LENGTH]


def next_job_state_after_failure(attempt_count: int, max_attempts: int) -> str:
    return QUEUED if attempt_count < max_attempts else DEAD


async def best_effort(awaitable: Awaitable[Any], what: str) -> Optional[Exception]:
    """
    Await a non-critical write, logging instead of raising on failure.

    Returns:
        The exception that was swallowed, or None on success
    """
    try:
        await awaitable
    except Exception as e:
        logger.warning(f"Best-effort {what} failed: {e}")
        return e
    return None


class JobCoordinator:
    """Processes claimed jobs one at a time against a job store."""

    def __init__(
        self,
        store: JobStore,
        pipeline: CollectionPipeline,
        config: Optional[CoordinatorConfig] = None,
        collector_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.config = config or CoordinatorConfig()
        self.collector_id = collector_id
        self._clock = clock
        self._rng = rng

    async def process_claimed_job(self, job: ClaimedJob) -> dict[str, Any]:
        """
        Run the pipeline for one leased job and record the outcome.

        Exactly one attempt row is written per call, before the job leaves
        the leased state. Pipeline failures and store errors raised before the
        success attempt is recorded are classified and handled as failures.

        Returns:
            Report item for the batch summary
        """
        log = get_logger(__name__, job_id=job.id, asin=job.asin, collector_id=self.collector_id)
        started_at = self._clock()
        hints = ExtractionHints(
            domain=job.domain,
            fallback_currency=fallback_currency_for_domain(job.domain),
            baseline_price=job.last_price,
            asin=job.asin,
        )

        try:
            result = await self.pipeline.run(job.url, hints)
            if not result.has_price:
                raise ExtractionFailed(result)
        except Exception as e:
            return await self._handle_failure(job, e, started_at, log)

        try:
            return await self._handle_success(job, result, started_at, log)
        except Exception as e:
            log.error(f"Recording the collected price failed: {e}")
            return await self._handle_failure(job, e, started_at, log, result=result)

    async def _handle_success(
        self,
        job: ClaimedJob,
        result: ExtractionResult,
        started_at: datetime,
        log,
    ) -> dict[str, Any]:
        now = self._clock()
        price = result.price

        await self.store.append_price_history(job.product_id, price.numeric, price.currency, now)

        tier = normalize_tier(job.tier, DAILY)
        if str(job.tier_mode or "").lower() == TIER_MODE_AUTO:
            history = await self.store.recent_prices(job.product_id, self.config.history_window)
            tier = recommend_auto_tier(history, now=now)

        next_scrape_at = compute_next_scrape_at(
            tier,
            now=now,
            min_jitter_minutes=self.config.min_jitter_minutes,
            max_jitter_minutes=self.config.max_jitter_minutes,
            rng=self._rng,
        )

        patch: dict[str, Any] = {
            "last_price": price.numeric,
            "last_scraped_at": now,
            "tier": tier,
            "next_scrape_at": next_scrape_at,
            "consecutive_failures": 0,
            "last_error": None,
        }
        if prices_differ(job.last_price, price.numeric):
            patch["last_price_change_at"] = now
        if result.page_title and not job.title:
            patch["title"] = result.page_title
        await self.store.update_product(job.product_id, patch)

        await self.store.insert_attempt(
            AttemptRecord(
                job_id=job.id,
                product_id=job.product_id,
                collector_id=self.collector_id,
                executor=self.config.executor,
                method=result.method.value,
                status="ok",
                http_status=result.http_status,
                blocked_signal=False,
                price=price.numeric,
                currency=price.currency,
                confidence=result.confidence,
                debug=result.debug,
                started_at=started_at,
                finished_at=self._clock(),
            )
        )
        # The attempt row exists from here on, so later errors must not reach the failure path
        try:
            completed = await self.store.complete_job(
                job.id, DONE, None, next_scrape_at, collector_id=self.collector_id
            )
        except Exception as e:
            log.warning(f"Job completion failed, lease will expire: {e}")
        else:
            if not completed:
                log.warning("Lease was lost before completion, job left to its current holder")

        metrics.record_attempt(result.method.value, "ok")
        metrics.record_job_completed(DONE)
        log.info(
            f"Collected {price.display} via {result.method.value} "
            f"(tier={tier}, next={next_scrape_at.isoformat()})"
        )

        return {
            "asin": job.asin,
            "status": "ok",
            "tier": tier,
            "price": price.numeric,
            "currency": price.currency,
            "method": result.method.value,
            "confidence": result.confidence,
            "next_scrape_at": next_scrape_at.isoformat(),
        }

    async def _handle_failure(
        self,
        job: ClaimedJob,
        error: Exception,
        started_at: datetime,
        log,
        result: Optional[ExtractionResult] = None,
    ) -> dict[str, Any]:
        now = self._clock()
        code = classify_failure(error)
        message = trim_error_message(error)
        if result is None:
            result = getattr(error, "result", None)

        failures = int(job.consecutive_failures or 0) + 1
        tier = normalize_tier(job.tier, DAILY)
        if (
            str(job.tier_mode or "").lower() == TIER_MODE_AUTO
            and failures >= self.config.demote_after_failures
        ):
            tier = demote_tier(tier)
        next_scrape_at = compute_failure_next_scrape_at(failures, now=now)
        job_state = next_job_state_after_failure(job.attempt_count, job.max_attempts)

        await best_effort(
            self.store.update_product(
                job.product_id,
                {
                    "tier": tier,
                    "next_scrape_at": next_scrape_at,
                    "consecutive_failures": failures,
                    "last_error": message,
                },
            ),
            "product failure update",
        )

        if result is not None:
            method = result.method.value
        else:
            method = getattr(error, "method", None) or "pipeline"

        debug: dict[str, Any] = dict(result.debug) if result is not None else {}
        debug.setdefault("error_type", type(error).__name__)

        await best_effort(
            self.store.insert_attempt(
                AttemptRecord(
                    job_id=job.id,
                    product_id=job.product_id,
                    collector_id=self.collector_id,
                    executor=self.config.executor,
                    method=method,
                    status=code,
                    http_status=getattr(error, "http_status", None),
                    blocked_signal=bool(getattr(error, "blocked_signal", False)),
                    error_code=code,
                    error_message=message,
                    confidence=result.confidence if result is not None else None,
                    debug=debug,
                    started_at=started_at,
                    finished_at=self._clock(),
                )
            ),
            "attempt write",
        )
        await best_effort(
            self.store.complete_job(job.id, job_state, message, next_scrape_at, collector_id=self.collector_id),
            "job completion",
        )

        metrics.record_attempt(method, code)
        metrics.record_job_completed(job_state)
        log.warning(
            f"Collection failed ({code}), attempt {job.attempt_count}/{job.max_attempts}, "
            f"job -> {job_state}: {message}"
        )

        return {
            "asin": job.asin,
            "status": "failed",
            "error_code": code,
            "error": message,
            "tier": tier,
            "job_state": job_state,
            "next_scrape_at": next_scrape_at.isoformat(),
        }
