"""DOM-fallback stage: full browser render with bounded retries.

Each attempt re-navigates, waits (bounded) for a product-title or price-ready
signal, then tries three candidate sources in priority order:

1. price selectors on the rendered DOM (with visibility, position and context)
2. variant-price ("twister") JSON embedded in scripts
3. inline ``a-offscreen`` price markup in the page source

A blocked page is returned immediately; only a clean no-price attempt is retried.
"""

import asyncio
import logging
import re
from typing import Any, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from price_tracker.ingest.base import (
    BaseExtractionStage,
    ExtractionHints,
    ExtractionMethod,
    ExtractionResult,
    ExtractionStatus,
    blocked_result,
    no_price_result,
)
from price_tracker.ingest.blocked_detector import (
    CHALLENGE_SELECTORS,
    PRODUCT_SELECTORS,
    PageSignals,
    detect_blocked,
)
from price_tracker.ingest.candidate_scorer import (
    CandidateObservation,
    ScoredCandidate,
    select_best_candidate,
)
from price_tracker.ingest.domains import extract_domain, fallback_currency_for_domain
from price_tracker.ingest.fetchers.headless import HeadlessBrowser, locale_cookies
from price_tracker.ingest.stages.html_json import collect_json_candidates
from price_tracker.ingest.text_utils import clean_text

logger = logging.getLogger(__name__)

PRICE_SELECTORS = [
    "#corePrice_feature_div .a-price .a-offscreen",
    "#corePriceDisplay_desktop_feature_div .a-price .a-offscreen",
    "#apex_desktop .a-price .a-offscreen",
    "#buybox .a-price .a-offscreen",
    ".a-price .a-offscreen",
    "#priceblock_ourprice",
    "#priceblock_dealprice",
]

READY_SELECTOR = ", ".join([
    "#productTitle",
    "#corePrice_feature_div .a-offscreen",
    "#corePriceDisplay_desktop_feature_div .a-offscreen",
])

SCRIPT_BLOCK_PATTERN = re.compile(r"<script[^>]*>([\s\S]*?)</script>", re.IGNORECASE)
INLINE_PRICE_PATTERN = re.compile(
    r'<span[^>]*class="[^"]*a-offscreen[^"]*"[^>]*>([^<]{1,40})</span>', re.IGNORECASE
)

# Collects price candidates and page signals in one round-trip
DOM_SNAPSHOT_SCRIPT = """
(args) => {
  const seen = new Set();
  const candidates = [];
  for (const selector of args.priceSelectors) {
    for (const el of document.querySelectorAll(selector)) {
      if (seen.has(el)) continue;
      seen.add(el);
      const text = (el.textContent || '').trim();
      if (!text) continue;
      const host = el.closest('.a-price') || el;
      const rect = host.getBoundingClientRect();
      const style = window.getComputedStyle(host);
      const visible = rect.width > 0 && rect.height > 0
        && style.visibility !== 'hidden' && style.display !== 'none';
      const hints = [];
      let node = el;
      for (let depth = 0; node && depth < 8; depth += 1, node = node.parentElement) {
        if (node.id) hints.push(node.id);
        if (typeof node.className === 'string' && node.className) hints.push(node.className);
        if (node.getAttribute && node.getAttribute('data-a-strike') === 'true') hints.push('strike');
      }
      candidates.push({
        index: candidates.length,
        text,
        top: rect.top + window.scrollY,
        visible,
        context: hints.join(' '),
      });
    }
  }
  const countAll = (selectors) => selectors.reduce(
    (total, selector) => total + document.querySelectorAll(selector).length, 0);
  return {
    title: document.title || null,
    bodyText: ((document.body && document.body.innerText) || '').slice(0, 16000),
    hasProductIndicator: countAll(args.productSelectors) > 0,
    challengeIndicatorCount: countAll(args.challengeSelectors),
    candidates,
  };
}
"""


def observations_from_snapshot(snapshot: dict[str, Any]) -> list[CandidateObservation]:
    """Convert the in-page candidate dicts to observations."""
    observations = []
    for raw in snapshot.get("candidates") or []:
        observations.append(CandidateObservation(
            index=int(raw.get("index", len(observations))),
            text=str(raw.get("text") or ""),
            vertical_position=raw.get("top"),
            is_visible=bool(raw.get("visible")),
            context_hint=str(raw.get("context") or ""),
            source="selector",
        ))
    return observations


def twister_candidates(html: str) -> list[CandidateObservation]:
    """Embedded-JSON candidates from variant ("twister") script blocks only."""
    blocks = [
        block for block in SCRIPT_BLOCK_PATTERN.findall(html or "")
        if "twister" in block.lower()
    ]
    candidates = collect_json_candidates("\n".join(blocks))
    for candidate in candidates:
        candidate.source = "twister"
    return candidates


def inline_markup_candidates(html: str) -> list[CandidateObservation]:
    """Candidates from inline a-offscreen spans in the page source."""
    source = html or ""
    candidates = []
    for index, match in enumerate(INLINE_PRICE_PATTERN.finditer(source)):
        candidates.append(CandidateObservation(
            index=index,
            text=clean_text(match.group(1)),
            context_hint=source[max(0, match.start() - 180):match.start()],
            source="inline_markup",
        ))
    return candidates


def dom_confidence(candidate: ScoredCandidate) -> float:
    observation = candidate.observation
    if observation.source == "selector":
        if observation.is_visible and candidate.has_buy_box_context:
            return 0.95
        if observation.is_visible:
            return 0.88
        return 0.75
    if observation.source == "twister":
        return 0.8
    return 0.7


class DomFallbackStage(BaseExtractionStage):
    """Last-resort stage rendering the page in a real browser."""

    method = ExtractionMethod.RAILWAY_DOM

    def __init__(
        self,
        browser: HeadlessBrowser,
        max_attempts: int = 3,
        navigation_timeout_ms: int = 30000,
        ready_timeout_ms: int = 4500,
        retry_backoff_ms: int = 1500,
    ):
        self.browser = browser
        self.max_attempts = max(1, max_attempts)
        self.navigation_timeout_ms = navigation_timeout_ms
        self.ready_timeout_ms = ready_timeout_ms
        self.retry_backoff_ms = retry_backoff_ms

    async def extract(self, url: str, hints: ExtractionHints) -> ExtractionResult:
        domain = hints.domain or extract_domain(url)
        fallback_currency = hints.fallback_currency or fallback_currency_for_domain(domain)

        result: Optional[ExtractionResult] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self._attempt(url, domain, fallback_currency)
            except (PlaywrightTimeoutError, PlaywrightError) as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(f"DOM attempt {attempt}/{self.max_attempts} failed for {url}: {e}")
                result = None
            else:
                result.debug["attempt"] = attempt
                # Blocked pages are never retried
                if result.has_price or result.blocked_signal:
                    return result

            if attempt < self.max_attempts:
                delay = self.retry_backoff_ms * attempt / 1000
                logger.info(f"No price on DOM attempt {attempt} for {url}, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        return result

    async def _attempt(
        self,
        url: str,
        domain: str,
        fallback_currency: Optional[str],
    ) -> ExtractionResult:
        async with self.browser.open_page(locale_cookies(domain)) as page:
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms
            )
            try:
                await page.wait_for_selector(READY_SELECTOR, timeout=self.ready_timeout_ms)
            except PlaywrightTimeoutError:
                logger.debug(f"Ready signal not seen within {self.ready_timeout_ms}ms for {url}")

            snapshot = await page.evaluate(DOM_SNAPSHOT_SCRIPT, {
                "priceSelectors": PRICE_SELECTORS,
                "productSelectors": PRODUCT_SELECTORS,
                "challengeSelectors": CHALLENGE_SELECTORS,
            })
            html = await page.content()
            http_status = response.status if response else None
            final_url = page.url

        page_title = snapshot.get("title")
        return self._evaluate(snapshot, html, http_status, page_title, final_url, fallback_currency)

    def _evaluate(
        self,
        snapshot: dict[str, Any],
        html: str,
        http_status: Optional[int],
        page_title: Optional[str],
        final_url: Optional[str],
        fallback_currency: Optional[str],
    ) -> ExtractionResult:
        page_meta = dict(http_status=http_status, page_title=page_title, final_url=final_url)

        verdict = detect_blocked(PageSignals(
            http_status=http_status,
            page_title=page_title,
            body_text=snapshot.get("bodyText"),
            final_url=final_url,
            has_product_indicator=bool(snapshot.get("hasProductIndicator")),
            challenge_indicator_count=int(snapshot.get("challengeIndicatorCount") or 0),
        ))
        if verdict.blocked_signal:
            return blocked_result(
                self.method, verdict.blocked_reason, debug={"source": "railway_dom"}, **page_meta
            )

        sources = (
            ("selector", observations_from_snapshot(snapshot)),
            ("twister", twister_candidates(html)),
            ("inline_markup", inline_markup_candidates(html)),
        )
        for source, observations in sources:
            best = select_best_candidate(observations, fallback_currency)
            if best is None:
                continue
            return ExtractionResult(
                status=ExtractionStatus.OK,
                method=self.method,
                price_raw=clean_text(best.observation.text),
                price=best.parsed,
                confidence=dom_confidence(best),
                debug={
                    "source": "railway_dom",
                    "candidate_source": source,
                    "candidate_score": best.score,
                },
                **page_meta,
            )

        return no_price_result(
            self.method,
            debug={
                "source": "railway_dom",
                "selector_candidates": len(snapshot.get("candidates") or []),
            },
            **page_meta,
        )
