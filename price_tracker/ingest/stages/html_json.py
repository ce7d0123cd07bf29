"""HTML/JSON extraction stage: one plain GET, no browser.

Product pages embed their buy-box price in inline JSON blobs. Two shapes are
recognised:

- ``"displayPrice":"329,00 €"``
- ``"priceAmount":329.00,"currencySymbol":"€"`` (or ``currencyCode``)

Each match becomes a candidate whose context is the surrounding slice of the
raw body; the candidate scorer picks the winner.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from selectolax.parser import HTMLParser

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
from price_tracker.ingest.domains import (
    default_headers_for_domain,
    extract_domain,
    fallback_currency_for_domain,
)
from price_tracker.ingest.fetchers.static import StaticPageFetcher
from price_tracker.ingest.text_utils import clean_text, decode_json_like_string

logger = logging.getLogger(__name__)

DISPLAY_PRICE_PATTERN = re.compile(r'"displayPrice"\s*:\s*"([^"]+)"')
PRICE_AMOUNT_PATTERN = re.compile(
    r'"priceAmount"\s*:\s*([0-9]+(?:\.[0-9]+)?)\s*,\s*"currency(?:Symbol|Code)"\s*:\s*"([^"]+)"'
)
TITLE_PATTERN = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]+>")

CONTEXT_BEFORE = 180
CONTEXT_AFTER = 40
PRICE_AMOUNT_BONUS = 10.0
BODY_TEXT_LIMIT = 16000


def _context(blob: str, position: int) -> str:
    return blob[max(0, position - CONTEXT_BEFORE):position + CONTEXT_AFTER]


def collect_price_amount_candidates(blob: str, source: str = "priceAmount") -> list[CandidateObservation]:
    """Candidates from priceAmount + currency pairs."""
    candidates = []
    for index, match in enumerate(PRICE_AMOUNT_PATTERN.finditer(blob)):
        symbol = decode_json_like_string(match.group(2))
        amount = match.group(1)
        text = f"{symbol} {amount}" if symbol else amount
        candidates.append(CandidateObservation(
            index=index,
            text=text,
            context_hint=_context(blob, match.start()),
            source=source,
            bonus=PRICE_AMOUNT_BONUS,
        ))
    return candidates


def collect_display_price_candidates(blob: str, source: str = "displayPrice") -> list[CandidateObservation]:
    """Candidates from displayPrice strings."""
    candidates = []
    for index, match in enumerate(DISPLAY_PRICE_PATTERN.finditer(blob)):
        decoded = decode_json_like_string(match.group(1))
        if not decoded:
            continue
        candidates.append(CandidateObservation(
            index=index,
            text=decoded,
            context_hint=_context(blob, match.start()),
            source=source,
        ))
    return candidates


def collect_json_candidates(blob: str) -> list[CandidateObservation]:
    """All embedded-JSON price candidates in a blob of HTML or script text."""
    return collect_price_amount_candidates(blob) + collect_display_price_candidates(blob)


def confidence_for_score(score: float) -> float:
    """Map a raw-blob candidate score to a confidence value."""
    if score >= 30:
        return 0.96
    if score >= 0:
        return 0.86
    if score >= -20:
        return 0.78
    return 0.7


def extract_price_from_html(html: str, fallback_currency: Optional[str] = None) -> Optional[ScoredCandidate]:
    """Pick the best embedded-JSON price candidate from a page body."""
    if not html:
        return None
    return select_best_candidate(collect_json_candidates(html), fallback_currency)


def extract_title_from_html(html: str) -> Optional[str]:
    match = TITLE_PATTERN.search(html or "")
    if not match:
        return None
    return clean_text(TAG_PATTERN.sub("", match.group(1))) or None


@dataclass
class HtmlPageSignals:
    """DOM-derived signals of a raw HTML response."""

    visible_text: str
    has_product_indicator: bool
    challenge_indicator_count: int


def analyze_html(html: str) -> HtmlPageSignals:
    """Count product/challenge indicators and extract visible text from raw HTML."""
    tree = HTMLParser(html or "")

    challenge_count = 0
    for selector in CHALLENGE_SELECTORS:
        challenge_count += len(tree.css(selector))
    has_product = any(tree.css_first(selector) is not None for selector in PRODUCT_SELECTORS)

    tree.strip_tags(["script", "style", "noscript"])
    body = tree.body
    text = body.text(separator=" ") if body is not None else ""

    return HtmlPageSignals(
        visible_text=clean_text(text)[:BODY_TEXT_LIMIT],
        has_product_indicator=has_product,
        challenge_indicator_count=challenge_count,
    )


class HtmlJsonStage(BaseExtractionStage):
    """Cheapest stage: fetch the raw page and scan inline JSON for the price."""

    method = ExtractionMethod.HTML_JSON

    def __init__(
        self,
        fetcher: StaticPageFetcher,
        user_agent: str,
        timeout_seconds: float = 30.0,
    ):
        self.fetcher = fetcher
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds

    async def extract(self, url: str, hints: ExtractionHints) -> ExtractionResult:
        domain = hints.domain or extract_domain(url)
        fallback_currency = hints.fallback_currency or fallback_currency_for_domain(domain)

        response = await self.fetcher.fetch_page(
            url,
            headers=default_headers_for_domain(domain, self.user_agent),
            timeout_seconds=self.timeout_seconds,
        )
        body = response.body_text or ""
        page_title = extract_title_from_html(body) or "Unknown"
        page = analyze_html(body)

        verdict = detect_blocked(PageSignals(
            http_status=response.status,
            page_title=page_title,
            body_text=page.visible_text,
            final_url=response.final_url,
            has_product_indicator=page.has_product_indicator,
            challenge_indicator_count=page.challenge_indicator_count,
        ))
        page_meta = dict(
            http_status=response.status,
            page_title=page_title,
            final_url=response.final_url,
        )

        if verdict.blocked_signal:
            logger.info(f"Blocked page for {url}: {verdict.blocked_reason}")
            return blocked_result(
                self.method,
                verdict.blocked_reason,
                debug={"extractor": "html_json", "domain": domain},
                **page_meta,
            )

        best = extract_price_from_html(body, fallback_currency)
        if best is None:
            return no_price_result(
                self.method,
                debug={
                    "extractor": "html_json",
                    "domain": domain,
                    "has_display_price": bool(DISPLAY_PRICE_PATTERN.search(body)),
                    "has_price_amount": '"priceAmount"' in body,
                },
                **page_meta,
            )

        return ExtractionResult(
            status=ExtractionStatus.OK,
            method=self.method,
            price_raw=clean_text(best.observation.text),
            price=best.parsed,
            confidence=confidence_for_score(best.score),
            debug={
                "extractor": "html_json",
                "domain": domain,
                "candidate_method": best.observation.source,
                "candidate_score": best.score,
            },
            **page_meta,
        )
