"""Tests for blocked-page detection."""

import pytest

from price_tracker.ingest.blocked_detector import (
    BLOCKED_REASONS,
    CAPTCHA_PHRASES,
    CHALLENGE_PHRASES,
    ROBOT_CHECK_PHRASES,
    PageSignals,
    detect_blocked,
)

PRODUCT_URL = "https://www.amazon.de/dp/B0TESTASIN"


def product_page(**overrides) -> PageSignals:
    values = dict(
        http_status=200,
        page_title="Kopfhörer : Amazon.de: Elektronik",
        body_text="In den Einkaufswagen 329,00 €",
        final_url=PRODUCT_URL,
        has_product_indicator=True,
        challenge_indicator_count=0,
    )
    values.update(overrides)
    return PageSignals(**values)


def test_regular_product_page_is_not_blocked():
    verdict = detect_blocked(product_page())
    assert verdict.blocked_signal is False
    assert verdict.blocked_reason is None


@pytest.mark.parametrize("status,reason", [(429, "http_429"), (503, "http_503")])
def test_blocking_http_statuses(status, reason):
    verdict = detect_blocked(product_page(http_status=status))
    assert verdict.blocked_signal is True
    assert verdict.blocked_reason == reason


def test_http_status_wins_over_text_signals():
    verdict = detect_blocked(product_page(http_status=503, body_text="Enter the characters you see"))
    assert verdict.blocked_reason == "http_503"


def test_validate_captcha_url_is_challenge_page():
    verdict = detect_blocked(
        product_page(final_url="https://www.amazon.de/errors/validateCaptcha?amzn=abc")
    )
    assert verdict.blocked_signal is True
    assert verdict.blocked_reason == "challenge_page"


def test_sign_in_redirect_is_challenge_page():
    verdict = detect_blocked(product_page(final_url="https://www.amazon.de/ap/signin?openid=x"))
    assert verdict.blocked_reason == "challenge_page"


def test_challenge_dom_indicator():
    verdict = detect_blocked(product_page(challenge_indicator_count=1))
    assert verdict.blocked_reason == "challenge_page"


def test_robot_check_phrase_with_diacritics():
    verdict = detect_blocked(product_page(body_text="Bitte bestätigen Sie, dass Sie kein Roboter sind"))
    assert verdict.blocked_reason == "robot_check"


def test_captcha_phrase():
    verdict = detect_blocked(product_page(page_title="Amazon CAPTCHA"))
    assert verdict.blocked_reason == "captcha"


def test_generic_challenge_phrase():
    verdict = detect_blocked(
        product_page(body_text="Wir müssen eine Sicherheitsüberprüfung durchführen")
    )
    assert verdict.blocked_reason == "challenge_page"


def test_no_product_chrome_off_product_path_is_blocked():
    verdict = detect_blocked(
        product_page(
            page_title="Amazon.de",
            body_text="",
            final_url="https://www.amazon.de/",
            has_product_indicator=False,
        )
    )
    assert verdict.blocked_signal is True
    assert verdict.blocked_reason == "challenge_page"


def test_no_product_chrome_on_product_path_is_not_blocked():
    verdict = detect_blocked(product_page(body_text="", has_product_indicator=False))
    assert verdict.blocked_signal is False


def test_unknown_product_indicator_skips_heuristic():
    verdict = detect_blocked(
        product_page(final_url="https://www.amazon.de/", has_product_indicator=None)
    )
    assert verdict.blocked_signal is False


@pytest.mark.parametrize("phrase", CAPTCHA_PHRASES + ROBOT_CHECK_PHRASES + CHALLENGE_PHRASES)
def test_every_configured_phrase_blocks(phrase):
    verdict = detect_blocked(product_page(body_text=f"... {phrase} ..."))
    assert verdict.blocked_signal is True
    assert verdict.blocked_reason in BLOCKED_REASONS
