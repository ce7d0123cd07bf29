"""Tests for the vision guardrail."""

import pytest

from price_tracker.ingest.base import ExtractionMethod, ExtractionStatus, no_price_result
from price_tracker.ingest.guardrail import evaluate_vision_guardrail

from fakes import ok_result


def vision(text: str, confidence: float):
    return ok_result(text, method=ExtractionMethod.VISION, confidence=confidence)


def test_low_confidence_rejected():
    decision = evaluate_vision_guardrail(vision("329,00 €", 0.7), baseline_price=329.0)
    assert decision.accepted is False
    assert decision.reason == "low_confidence:0.700"


def test_large_relative_delta_rejected():
    decision = evaluate_vision_guardrail(vision("299,99 €", 0.99), baseline_price=2300.0)
    assert decision.accepted is False
    assert decision.reason.startswith("relative_delta:")
    assert float(decision.reason.split(":")[1]) == pytest.approx(0.870, abs=1e-3)


def test_plausible_price_accepted():
    decision = evaluate_vision_guardrail(vision("154,90 €", 0.98), baseline_price=159.97)
    assert decision.accepted is True
    assert decision.reason is None


def test_no_baseline_only_checks_confidence():
    assert evaluate_vision_guardrail(vision("9999,00 €", 0.95)).accepted is True
    assert evaluate_vision_guardrail(vision("9999,00 €", 0.95), baseline_price=0).accepted is True


def test_non_vision_and_priceless_results_pass():
    html = ok_result("1,00 €", method=ExtractionMethod.HTML_JSON, confidence=0.1)
    assert evaluate_vision_guardrail(html, baseline_price=1000.0).accepted is True

    empty = no_price_result(ExtractionMethod.VISION, confidence=0.0)
    assert empty.status == ExtractionStatus.NO_PRICE
    assert evaluate_vision_guardrail(empty, baseline_price=1000.0).accepted is True


def test_thresholds_are_configurable():
    result = vision("329,00 €", 0.8)
    assert evaluate_vision_guardrail(result, min_confidence=0.75).accepted is True
    assert evaluate_vision_guardrail(
        vision("400,00 €", 0.99), baseline_price=329.0, max_relative_delta=0.1
    ).accepted is False


def test_raising_confidence_never_flips_to_rejected():
    accepted_before = False
    for step in range(0, 101):
        decision = evaluate_vision_guardrail(vision("330,00 €", step / 100), baseline_price=329.0)
        if accepted_before:
            assert decision.accepted is True
        accepted_before = accepted_before or decision.accepted
    assert accepted_before is True


def test_delta_beyond_threshold_always_rejects():
    for price in ("493,51 €", "600,00 €", "1000,00 €", "164,00 €", "10,00 €"):
        decision = evaluate_vision_guardrail(vision(price, 0.99), baseline_price=329.0)
        assert decision.accepted is False, price
