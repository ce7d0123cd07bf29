"""Collection pipeline: runs the extraction stages in order.

    HTML/JSON -> price? return | blocked? return
    Vision (if enabled) -> blocked? return | price? guardrail accept -> return
    DOM fallback (if enabled) -> return its result

Callers always get a terminal ExtractionResult for ok / no_price / blocked
outcomes. Transport failures and stage timeouts of the HTML/JSON and DOM
stages are raised for the job coordinator to classify; vision failures fall
through to the next stage.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Optional

from price_tracker import metrics
from price_tracker.ai.vision_providers import select_provider
from price_tracker.ingest.base import (
    BaseExtractionStage,
    ExtractionHints,
    ExtractionResult,
    ExtractionStatus,
    StageTimeoutError,
)
from price_tracker.ingest.domains import extract_domain, fallback_currency_for_domain
from price_tracker.ingest.fetchers.headless import HeadlessBrowser
from price_tracker.ingest.fetchers.static import StaticPageFetcher
from price_tracker.ingest.guardrail import evaluate_vision_guardrail
from price_tracker.ingest.stages.dom_fallback import DomFallbackStage
from price_tracker.ingest.stages.html_json import HtmlJsonStage
from price_tracker.ingest.stages.vision import VisionStage

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """Feature flags and limits for the collection pipeline."""

    vision_enabled: bool = False
    dom_fallback_enabled: bool = True
    guardrail_enabled: bool = True
    min_confidence: float = 0.92
    max_relative_delta: float = 0.5
    html_timeout_seconds: float = 40.0
    vision_timeout_seconds: float = 90.0
    dom_timeout_seconds: float = 150.0

    @classmethod
    def from_settings(cls, settings) -> "PipelineConfig":
        return cls(
            vision_enabled=settings.vision_fallback_enabled,
            dom_fallback_enabled=settings.dom_fallback_enabled,
            guardrail_enabled=settings.vision_guardrail_enabled,
            min_confidence=settings.vision_min_confidence,
            max_relative_delta=settings.vision_max_relative_delta,
            html_timeout_seconds=settings.html_stage_timeout_seconds,
            vision_timeout_seconds=settings.vision_stage_timeout_seconds,
            dom_timeout_seconds=settings.dom_stage_timeout_seconds,
        )


def _rejected(result: ExtractionResult, reason: str) -> ExtractionResult:
    """Strip the price from a guardrail-rejected result, keeping it for debugging."""
    debug = dict(result.debug)
    debug.update({
        "guardrail_reason": reason,
        "rejected_price": result.price.numeric if result.price else None,
        "rejected_currency": result.price.currency if result.price else None,
        "rejected_confidence": result.confidence,
    })
    return replace(result, status=ExtractionStatus.NO_PRICE, price=None, debug=debug)


class CollectionPipeline:
    """Composes the extraction stages into one terminal result."""

    def __init__(
        self,
        config: PipelineConfig,
        html_stage: BaseExtractionStage,
        vision_stage: Optional[BaseExtractionStage] = None,
        dom_stage: Optional[BaseExtractionStage] = None,
    ):
        self.config = config
        self.html_stage = html_stage
        self.vision_stage = vision_stage
        self.dom_stage = dom_stage
        self._closers = []

    @classmethod
    def from_settings(cls, settings) -> "CollectionPipeline":
        """Build the default stage set with a shared HTTP client and browser."""
        config = PipelineConfig.from_settings(settings)
        fetcher = StaticPageFetcher()
        browser = HeadlessBrowser(user_agent=settings.user_agent)

        provider = select_provider(
            preferred=settings.vision_provider,
            openai_api_key=settings.openai_api_key,
            openrouter_api_key=settings.openrouter_api_key,
            model=settings.vision_model or None,
            timeout_seconds=settings.vision_timeout_seconds,
            openrouter_http_referer=settings.openrouter_http_referer,
            openrouter_title=settings.openrouter_title,
        )

        pipeline = cls(
            config,
            html_stage=HtmlJsonStage(
                fetcher,
                user_agent=settings.user_agent,
                timeout_seconds=settings.html_fetch_timeout_seconds,
            ),
            vision_stage=VisionStage(
                browser,
                provider,
                navigation_timeout_ms=settings.navigation_timeout_ms,
                settle_ms=settings.screenshot_settle_ms,
            ),
            dom_stage=DomFallbackStage(
                browser,
                max_attempts=settings.dom_max_attempts,
                navigation_timeout_ms=settings.navigation_timeout_ms,
                ready_timeout_ms=settings.dom_ready_timeout_ms,
                retry_backoff_ms=settings.dom_retry_backoff_ms,
            ),
        )
        pipeline._closers = [fetcher.close, browser.close]
        return pipeline

    async def close(self):
        for closer in self._closers:
            await closer()

    async def _run_stage(
        self,
        stage: BaseExtractionStage,
        url: str,
        hints: ExtractionHints,
        timeout_seconds: float,
    ) -> ExtractionResult:
        """Run one stage under a hard timeout."""
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(stage.extract(url, hints), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise StageTimeoutError(stage.method.value, timeout_seconds) from None
        finally:
            metrics.record_stage(stage.method.value, time.monotonic() - started)

        if result.blocked_signal:
            metrics.record_blocked(result.blocked_reason)
        return result

    async def run(self, url: str, hints: Optional[ExtractionHints] = None) -> ExtractionResult:
        """Run the stages in order and return the first terminal result."""
        hints = hints or ExtractionHints()
        if hints.domain is None:
            hints = replace(hints, domain=extract_domain(url))
        if hints.fallback_currency is None:
            hints = replace(hints, fallback_currency=fallback_currency_for_domain(hints.domain))

        result = await self._run_stage(self.html_stage, url, hints, self.config.html_timeout_seconds)
        if result.has_price or result.blocked_signal:
            return result
        last_result = result

        if self.config.vision_enabled and self.vision_stage is not None:
            try:
                vision = await self._run_stage(
                    self.vision_stage, url, hints, self.config.vision_timeout_seconds
                )
            except Exception as e:
                logger.warning(f"Vision stage failed for {url}, continuing: {e}")
            else:
                if vision.blocked_signal:
                    return vision
                if vision.has_price:
                    decision = self._guardrail(vision, hints)
                    if decision is None:
                        return vision
                    last_result = _rejected(vision, decision)
                else:
                    last_result = vision

        if self.config.dom_fallback_enabled and self.dom_stage is not None:
            return await self._run_stage(self.dom_stage, url, hints, self.config.dom_timeout_seconds)

        return last_result

    def _guardrail(self, result: ExtractionResult, hints: ExtractionHints) -> Optional[str]:
        """Return a rejection reason, or None when the result is accepted."""
        if not self.config.guardrail_enabled:
            return None
        decision = evaluate_vision_guardrail(
            result,
            baseline_price=hints.baseline_price,
            min_confidence=self.config.min_confidence,
            max_relative_delta=self.config.max_relative_delta,
        )
        if decision.accepted:
            return None
        logger.info(f"Vision result rejected by guardrail: {decision.reason}")
        metrics.record_guardrail_rejection(decision.reason)
        return decision.reason
