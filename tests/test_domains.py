"""Tests for marketplace URL helpers."""

from price_tracker.ingest.domains import (
    canonical_url,
    default_headers_for_domain,
    extract_asin,
    extract_domain,
    fallback_currency_for_domain,
    is_amazon_url,
    is_product_path,
    normalize_amazon_input,
)
from price_tracker.ingest.fetchers.headless import locale_cookies


def test_extract_asin():
    assert extract_asin("b0testasin") == "B0TESTASIN"
    assert extract_asin("https://www.amazon.de/Sony-Kopfhorer/dp/B0TESTASIN/ref=sr_1_1") == "B0TESTASIN"
    assert extract_asin("https://www.amazon.com/gp/product/B0TESTASIN?th=1") == "B0TESTASIN"
    assert extract_asin("https://www.amazon.de/s?k=kopfhorer") is None


def test_extract_domain():
    assert extract_domain("https://www.amazon.co.uk/dp/B0TESTASIN") == "amazon.co.uk"
    assert extract_domain("not a url") == "amazon.de"


def test_normalize_amazon_input():
    assert normalize_amazon_input("https://amazon.fr/dp/B0TESTASIN?psc=1") == {
        "asin": "B0TESTASIN",
        "domain": "amazon.fr",
        "url": "https://www.amazon.fr/dp/B0TESTASIN",
    }
    assert normalize_amazon_input("B0TESTASIN")["url"] == canonical_url("B0TESTASIN", "amazon.de")
    assert normalize_amazon_input("https://example.com/dp/B0TESTASIN")["domain"] == "amazon.de"
    assert normalize_amazon_input("") is None
    assert is_amazon_url("https://www.amazon.com.au/dp/B0TESTASIN") is True


def test_is_product_path():
    assert is_product_path("https://www.amazon.de/dp/B0TESTASIN") is True
    assert is_product_path("https://www.amazon.de/gp/aw/d/B0TESTASIN/") is True
    assert is_product_path("https://www.amazon.de/errors/validateCaptcha") is False
    assert is_product_path(None) is False


def test_locale_preferences():
    assert fallback_currency_for_domain("amazon.co.jp") == "JPY"
    assert fallback_currency_for_domain("example.com") is None

    headers = default_headers_for_domain("amazon.com", "agent")
    assert headers["Cookie"] == "i18n-prefs=USD"
    assert headers["Accept-Language"].startswith("en-US")
    assert "Cookie" not in default_headers_for_domain("example.com", "agent")

    cookies = locale_cookies("amazon.de")
    assert cookies[0]["name"] == "i18n-prefs"
    assert cookies[0]["domain"] == ".amazon.de"
    assert locale_cookies(None) == []
