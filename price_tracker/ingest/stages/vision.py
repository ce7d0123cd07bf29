"""Vision stage: screenshot the rendered page and ask a vision model for the price."""

import json
import logging
import math
from typing import Any, Optional

from price_tracker.ai.vision_providers import VisionProvider
from price_tracker.ingest.base import (
    BaseExtractionStage,
    ExtractionHints,
    ExtractionMethod,
    ExtractionResult,
    ExtractionStatus,
    blocked_result,
    no_price_result,
)
from price_tracker.ingest.domains import extract_domain, fallback_currency_for_domain
from price_tracker.ingest.fetchers.headless import HeadlessBrowser, locale_cookies
from price_tracker.ingest.price_parser import parse_price

logger = logging.getLogger(__name__)

VISION_PROMPT = " ".join([
    "You extract the final payable price from an Amazon product-detail screenshot.",
    "Respond with JSON only using exactly keys: price, currency, confidence, is_blocked, reason, raw_text.",
    "price must be a decimal number (dot separator), or null when uncertain.",
    "Only use the main buy-box product price for the shown product.",
    "Ignore list/strike prices, \"from\" ranges, installment/monthly values, coupons, shipping, "
    "used/new offers, bundle prices, and sponsored/related product prices.",
    "If the page is captcha/challenge/login/cookie-wall and price is not clearly visible, "
    "set is_blocked=true and price=null.",
    "If multiple plausible prices exist, set price=null.",
    "confidence must be a number between 0 and 1.",
])


def extract_json_block(text: Optional[str]) -> Optional[dict[str, Any]]:
    """Parse model output as JSON, falling back to the outermost {...} block."""
    raw = str(text or "").strip()
    if not raw:
        return None

    try:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(raw[start:end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def to_confidence(value: Any) -> float:
    """Clamp a model-reported confidence to [0, 1]; junk becomes 0."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(numeric):
        return 0.0
    return min(1.0, max(0.0, numeric))


def _is_true(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def normalize_vision_output(raw_text: Optional[str], fallback_currency: Optional[str] = None) -> Optional[ExtractionResult]:
    """
    Turn model output into an ExtractionResult.

    Returns None when the output holds no JSON object at all.
    """
    parsed = extract_json_block(raw_text)
    if parsed is None:
        return None

    method = ExtractionMethod.VISION
    reason = str(parsed.get("reason") or "").strip() or None
    raw_price = None if parsed.get("price") is None else str(parsed["price"]).strip()
    currency = str(parsed.get("currency") or "").strip() or None
    confidence = to_confidence(parsed.get("confidence"))

    if _is_true(parsed.get("is_blocked")):
        return blocked_result(
            method,
            reason or "blocked_detected",
            confidence=confidence,
            debug={"source": "vision", "raw_text": str(parsed.get("raw_text") or "")},
        )

    if not raw_price:
        return no_price_result(
            method,
            confidence=confidence,
            debug={"source": "vision", "reason": reason or "no_price"},
        )

    merged = f"{currency} {raw_price}" if currency else raw_price
    structured = parse_price(merged, fallback_currency)
    if structured is None or structured.numeric <= 0:
        return no_price_result(
            method,
            price_raw=raw_price,
            confidence=confidence,
            debug={"source": "vision", "reason": "unparseable_price"},
        )

    return ExtractionResult(
        status=ExtractionStatus.OK,
        method=method,
        price_raw=raw_price,
        price=structured,
        confidence=confidence,
        debug={"source": "vision", "reason": reason},
    )


class VisionStage(BaseExtractionStage):
    """Screenshot + vision model extraction; optional and feature-flagged by the pipeline."""

    method = ExtractionMethod.VISION

    def __init__(
        self,
        browser: HeadlessBrowser,
        provider: Optional[VisionProvider],
        navigation_timeout_ms: int = 30000,
        settle_ms: int = 2500,
    ):
        self.browser = browser
        self.provider = provider
        self.navigation_timeout_ms = navigation_timeout_ms
        self.settle_ms = settle_ms

    async def extract(self, url: str, hints: ExtractionHints) -> ExtractionResult:
        if self.provider is None:
            return no_price_result(
                self.method,
                debug={
                    "source": "vision",
                    "reason": "missing_api_key",
                    "expected": "OPENROUTER_API_KEY or OPENAI_API_KEY",
                },
            )

        domain = hints.domain or extract_domain(url)
        fallback_currency = hints.fallback_currency or fallback_currency_for_domain(domain)

        shot = await self.browser.render_and_screenshot(
            url,
            cookies=locale_cookies(domain),
            timeout_ms=self.navigation_timeout_ms,
            settle_ms=self.settle_ms,
        )
        if not shot.image_bytes:
            return no_price_result(
                self.method,
                debug={"source": "vision", "reason": "empty_image"},
            ).with_page(shot.http_status, shot.page_title, shot.final_url)

        output_text = await self.provider.invoke(VISION_PROMPT, shot.image_bytes)
        provider_debug = {"provider": self.provider.name, "model": self.provider.model}

        result = normalize_vision_output(output_text, fallback_currency)
        if result is None:
            logger.warning(f"Invalid vision output from {self.provider.name} for {url}")
            result = no_price_result(
                self.method,
                debug={"source": "vision", "reason": "invalid_model_output"},
            )

        result.debug.update(provider_debug)
        return result.with_page(shot.http_status, shot.page_title, shot.final_url)
