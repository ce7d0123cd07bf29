"""Plausibility guardrail for vision-stage results."""

from dataclasses import dataclass
from typing import Optional

from price_tracker.ingest.base import ExtractionMethod, ExtractionResult

DEFAULT_MIN_CONFIDENCE = 0.92
DEFAULT_MAX_RELATIVE_DELTA = 0.5


@dataclass(frozen=True)
class GuardrailDecision:
    accepted: bool
    reason: Optional[str] = None


ACCEPTED = GuardrailDecision(True, None)


def evaluate_vision_guardrail(
    result: ExtractionResult,
    baseline_price: Optional[float] = None,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    max_relative_delta: float = DEFAULT_MAX_RELATIVE_DELTA,
) -> GuardrailDecision:
    """
    Accept or reject a vision result.

    Non-vision results and vision results without a price pass untouched. A
    vision price is rejected below min_confidence, or when it strays from a
    positive baseline by more than max_relative_delta.
    """
    if result.method != ExtractionMethod.VISION or result.price is None:
        return ACCEPTED

    if result.confidence < min_confidence:
        return GuardrailDecision(False, f"low_confidence:{result.confidence:.3f}")

    if baseline_price is not None and baseline_price > 0:
        delta = abs(result.price.numeric - baseline_price) / baseline_price
        if delta > max_relative_delta:
            return GuardrailDecision(False, f"relative_delta:{delta:.3f}")

    return ACCEPTED
