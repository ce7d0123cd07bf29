"""Marketplace domains, locale preferences and product URL helpers."""

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

DEFAULT_DOMAIN = "amazon.de"


@dataclass(frozen=True)
class DomainPrefs:
    """Locale preferences for a marketplace."""

    currency: Optional[str]
    language: str


DOMAIN_PREFS: dict[str, DomainPrefs] = {
    "amazon.de": DomainPrefs("EUR", "de-DE,de;q=0.9,en;q=0.7"),
    "amazon.com": DomainPrefs("USD", "en-US,en;q=0.9"),
    "amazon.co.uk": DomainPrefs("GBP", "en-GB,en;q=0.9"),
    "amazon.fr": DomainPrefs("EUR", "fr-FR,fr;q=0.9,en;q=0.7"),
    "amazon.it": DomainPrefs("EUR", "it-IT,it;q=0.9,en;q=0.7"),
    "amazon.es": DomainPrefs("EUR", "es-ES,es;q=0.9,en;q=0.7"),
    "amazon.nl": DomainPrefs("EUR", "nl-NL,nl;q=0.9,en;q=0.7"),
    "amazon.co.jp": DomainPrefs("JPY", "ja-JP,ja;q=0.9,en;q=0.6"),
    "amazon.ca": DomainPrefs("CAD", "en-CA,en;q=0.9"),
    "amazon.com.au": DomainPrefs("AUD", "en-AU,en;q=0.9"),
    "amazon.in": DomainPrefs("INR", "en-IN,en;q=0.9"),
    "amazon.com.br": DomainPrefs("BRL", "pt-BR,pt;q=0.9,en;q=0.7"),
}

SUPPORTED_DOMAINS = list(DOMAIN_PREFS)

_DEFAULT_PREFS = DomainPrefs(None, "en-US,en;q=0.9")

ASIN_PATTERN = re.compile(r"/(?:dp|gp/product|ASIN)/([A-Z0-9]{10})", re.IGNORECASE)
BARE_ASIN_PATTERN = re.compile(r"^[A-Z0-9]{10}$", re.IGNORECASE)
PRODUCT_PATH_PATTERN = re.compile(
    r"/(?:dp|gp/product|gp/aw/d|ASIN)/[A-Z0-9]{10}(?:[/?#]|$)", re.IGNORECASE
)


def extract_domain(url: str) -> str:
    """Return the marketplace host without "www." (defaults to amazon.de)."""
    host = urlparse(str(url or "")).hostname
    if not host:
        return DEFAULT_DOMAIN
    return host[4:] if host.startswith("www.") else host


def is_amazon_url(url: str) -> bool:
    host = urlparse(str(url or "")).hostname or ""
    return any(host == d or host == f"www.{d}" for d in SUPPORTED_DOMAINS)


def extract_asin(url_or_asin: str) -> Optional[str]:
    """Extract an ASIN from a bare identifier or a product URL."""
    value = str(url_or_asin or "").strip()
    if BARE_ASIN_PATTERN.match(value):
        return value.upper()
    match = ASIN_PATTERN.search(value)
    return match.group(1).upper() if match else None


def canonical_url(asin: str, domain: str = DEFAULT_DOMAIN) -> str:
    return f"https://www.{domain}/dp/{asin}"


def normalize_amazon_input(value: str, default_domain: str = DEFAULT_DOMAIN) -> Optional[dict]:
    """Turn a URL or bare ASIN into {asin, domain, url}, or None."""
    raw = str(value or "").strip()
    if not raw:
        return None
    asin = extract_asin(raw)
    if not asin:
        return None
    domain = extract_domain(raw) if is_amazon_url(raw) else default_domain
    return {"asin": asin, "domain": domain, "url": canonical_url(asin, domain)}


def is_product_path(url: Optional[str]) -> bool:
    """True when the URL path looks like a canonical product detail page."""
    path = urlparse(str(url or "")).path or ""
    return bool(PRODUCT_PATH_PATTERN.search(path))


def domain_prefs(domain: Optional[str]) -> DomainPrefs:
    return DOMAIN_PREFS.get(domain or "", _DEFAULT_PREFS)


def fallback_currency_for_domain(domain: Optional[str]) -> Optional[str]:
    return domain_prefs(domain).currency


def default_headers_for_domain(domain: Optional[str], user_agent: str) -> dict[str, str]:
    """Build request headers carrying the marketplace locale and currency cookie."""
    prefs = domain_prefs(domain)
    headers = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": prefs.language,
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
        "User-Agent": user_agent,
    }
    if prefs.currency:
        headers["Cookie"] = f"i18n-prefs={prefs.currency}"
    return headers
