"""Tests for the DOM-fallback stage."""

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from price_tracker.ingest.base import ExtractionHints, ExtractionMethod, ExtractionStatus, blocked_result, no_price_result
from price_tracker.ingest.stages import dom_fallback
from price_tracker.ingest.stages.dom_fallback import (
    DomFallbackStage,
    inline_markup_candidates,
    twister_candidates,
)

from fakes import ok_result

URL = "https://www.amazon.de/dp/B0TESTASIN"


def snapshot(candidates=(), body="Sony WH-1000XM5 In den Einkaufswagen", product=True, challenges=0):
    return {
        "title": "Sony WH-1000XM5 : Amazon.de",
        "bodyText": body,
        "hasProductIndicator": product,
        "challengeIndicatorCount": challenges,
        "candidates": list(candidates),
    }


def evaluate(stage, snap, html="", final_url=URL, http_status=200):
    return stage._evaluate(snap, html, http_status, snap["title"], final_url, "EUR")


def test_selector_candidate_prefers_buy_box():
    stage = DomFallbackStage(browser=None)
    snap = snapshot([
        {"index": 0, "text": "399,00 €", "top": 250, "visible": True, "context": "a-price a-text-price basisPrice"},
        {"index": 1, "text": "329,00 €", "top": 300, "visible": True, "context": "a-price corePrice_feature_div"},
    ])

    result = evaluate(stage, snap)

    assert result.status == ExtractionStatus.OK
    assert result.method == ExtractionMethod.RAILWAY_DOM
    assert result.price.numeric == pytest.approx(329.0)
    assert result.confidence == pytest.approx(0.95)
    assert result.debug["candidate_source"] == "selector"


def test_twister_then_inline_fallbacks():
    stage = DomFallbackStage(browser=None)
    twister_html = (
        '<script>P.register("twister-js-init-dpx-data", function() { return '
        '{"priceAmount":24.99,"currencySymbol":"€"}; });</script>'
        '<span class="a-offscreen">19,99 €</span>'
    )
    result = evaluate(stage, snapshot(), html=twister_html)
    assert result.debug["candidate_source"] == "twister"
    assert result.price.numeric == pytest.approx(24.99)
    assert result.confidence == pytest.approx(0.8)

    inline_html = '<div><span class="a-price"><span class="a-offscreen">19,99 €</span></span></div>'
    result = evaluate(stage, snapshot(), html=inline_html)
    assert result.debug["candidate_source"] == "inline_markup"
    assert result.price.numeric == pytest.approx(19.99)


def test_candidate_sources_from_html():
    assert twister_candidates('<script>var x = {"priceAmount":5.00,"currencySymbol":"$"};</script>') == []
    inline = inline_markup_candidates('<span class="a-offscreen">12,00&nbsp;€</span>')
    assert [c.text for c in inline] == ["12,00 €"]


def test_blocked_snapshot():
    stage = DomFallbackStage(browser=None)
    result = evaluate(stage, snapshot(challenges=2))
    assert result.status == ExtractionStatus.BLOCKED
    assert result.blocked_reason == "challenge_page"


def test_no_candidates_is_no_price():
    stage = DomFallbackStage(browser=None)
    result = evaluate(stage, snapshot())
    assert result.status == ExtractionStatus.NO_PRICE
    assert result.page_title == "Sony WH-1000XM5 : Amazon.de"


class ScriptedDomStage(DomFallbackStage):
    def __init__(self, *outcomes, **kwargs):
        super().__init__(browser=None, retry_backoff_ms=0, **kwargs)
        self.outcomes = list(outcomes)
        self.attempts = 0

    async def _attempt(self, url, domain, fallback_currency):
        self.attempts += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.mark.asyncio
async def test_retries_until_price():
    stage = ScriptedDomStage(
        no_price_result(ExtractionMethod.RAILWAY_DOM),
        no_price_result(ExtractionMethod.RAILWAY_DOM),
        ok_result(method=ExtractionMethod.RAILWAY_DOM),
    )
    result = await stage.extract(URL, ExtractionHints())
    assert stage.attempts == 3
    assert result.has_price
    assert result.debug["attempt"] == 3


@pytest.mark.asyncio
async def test_blocked_attempt_is_not_retried():
    stage = ScriptedDomStage(
        blocked_result(ExtractionMethod.RAILWAY_DOM, "robot_check"),
        ok_result(method=ExtractionMethod.RAILWAY_DOM),
    )
    result = await stage.extract(URL, ExtractionHints())
    assert stage.attempts == 1
    assert result.blocked_reason == "robot_check"


@pytest.mark.asyncio
async def test_exhausted_attempts_return_last_result():
    stage = ScriptedDomStage(*[no_price_result(ExtractionMethod.RAILWAY_DOM) for _ in range(3)])
    result = await stage.extract(URL, ExtractionHints())
    assert stage.attempts == 3
    assert result.status == ExtractionStatus.NO_PRICE


@pytest.mark.asyncio
async def test_browser_errors_retry_then_raise():
    stage = ScriptedDomStage(
        PlaywrightTimeoutError("Timeout 30000ms exceeded"),
        ok_result(method=ExtractionMethod.RAILWAY_DOM),
    )
    assert (await stage.extract(URL, ExtractionHints())).has_price

    failing = ScriptedDomStage(*[PlaywrightTimeoutError("Timeout 30000ms exceeded") for _ in range(3)])
    with pytest.raises(PlaywrightTimeoutError):
        await failing.extract(URL, ExtractionHints())
    assert failing.attempts == 3


@pytest.mark.asyncio
async def test_backoff_grows_linearly(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(dom_fallback.asyncio, "sleep", fake_sleep)
    stage = ScriptedDomStage(*[no_price_result(ExtractionMethod.RAILWAY_DOM) for _ in range(3)])
    stage.retry_backoff_ms = 1500

    await stage.extract(URL, ExtractionHints())

    assert delays == [1.5, 3.0]
