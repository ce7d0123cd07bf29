"""Shared extraction types and the extraction stage interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from price_tracker.ingest.price_parser import ParsedPrice


class ExtractionStatus(str, Enum):
    """Terminal status of an extraction stage."""

    OK = "ok"
    NO_PRICE = "no_price"
    BLOCKED = "blocked"


class ExtractionMethod(str, Enum):
    """Extraction stage that produced a result."""

    HTML_JSON = "html_json"
    VISION = "vision"
    RAILWAY_DOM = "railway_dom"


@dataclass
class ExtractionResult:
    """Structured outcome of one extraction stage."""

    status: ExtractionStatus
    method: ExtractionMethod
    price_raw: Optional[str] = None
    price: Optional[ParsedPrice] = None
    confidence: float = 0.0
    blocked_signal: bool = False
    blocked_reason: Optional[str] = None
    http_status: Optional[int] = None
    page_title: Optional[str] = None
    final_url: Optional[str] = None
    debug: dict[str, Any] = field(default_factory=dict)

    @property
    def has_price(self) -> bool:
        return self.price is not None

    def with_page(
        self,
        http_status: Optional[int],
        page_title: Optional[str],
        final_url: Optional[str],
    ) -> "ExtractionResult":
        """Copy with page metadata filled in where missing."""
        return replace(
            self,
            http_status=self.http_status or http_status,
            page_title=self.page_title or page_title,
            final_url=self.final_url or final_url,
        )


def no_price_result(method: ExtractionMethod, **kwargs) -> ExtractionResult:
    return ExtractionResult(status=ExtractionStatus.NO_PRICE, method=method, **kwargs)


def blocked_result(method: ExtractionMethod, reason: Optional[str], **kwargs) -> ExtractionResult:
    return ExtractionResult(
        status=ExtractionStatus.BLOCKED,
        method=method,
        blocked_signal=True,
        blocked_reason=reason,
        **kwargs,
    )


@dataclass
class ExtractionHints:
    """Per-product context handed to every stage."""

    domain: Optional[str] = None
    fallback_currency: Optional[str] = None
    baseline_price: Optional[float] = None
    asin: Optional[str] = None


class ExtractionError(Exception):
    """Base class for extraction failures raised to the job coordinator."""


class StageTimeoutError(ExtractionError, TimeoutError):
    """An extraction stage exceeded its hard timeout."""

    def __init__(self, method: str, timeout_seconds: float):
        self.method = method
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Stage {method} timed out after {timeout_seconds:.0f}s")


class ExtractionFailed(ExtractionError):
    """The pipeline finished without a usable price."""

    def __init__(self, result: ExtractionResult):
        self.result = result
        self.http_status = result.http_status
        self.blocked_signal = result.blocked_signal
        self.blocked_reason = result.blocked_reason
        super().__init__(build_failure_message(result))


def build_failure_message(result: ExtractionResult) -> str:
    """User-visible error string for a result without a price."""
    if result.blocked_signal:
        return f"Blocked page detected ({result.blocked_reason or 'challenge'})"

    details = []
    if result.http_status:
        details.append(f"http={result.http_status}")
    if result.final_url:
        details.append(f"final_url={result.final_url}")
    if result.page_title:
        title = " ".join(str(result.page_title).split())[:120]
        details.append(f"title={title}")
    if details:
        return f"Could not extract price from the page. {' | '.join(details)}"
    return "Could not extract price from the page."


class BaseExtractionStage(ABC):
    """A single extraction stage: (url, hints) -> ExtractionResult."""

    method: ExtractionMethod

    @abstractmethod
    async def extract(self, url: str, hints: ExtractionHints) -> ExtractionResult:
        """
        Extract a price from a product page.

        Returns a terminal ExtractionResult for ok / no_price / blocked outcomes.
        Transport failures (network faults, timeouts) are raised.
        """
        pass
