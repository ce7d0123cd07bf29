"""Blocked-page detection for anti-bot challenges, captchas and rate limits.

The detector is pure: callers gather the signals (HTTP status, title, visible
text, final URL and DOM indicator counts) from whatever source they have, a raw
HTML response or a rendered browser page, and get the same verdict for the
same inputs.
"""

import re
from dataclasses import dataclass
from typing import Optional

from price_tracker.ingest.domains import is_product_path
from price_tracker.ingest.text_utils import normalize_for_match

REASON_HTTP_429 = "http_429"
REASON_HTTP_503 = "http_503"
REASON_CHALLENGE = "challenge_page"
REASON_CAPTCHA = "captcha"
REASON_ROBOT_CHECK = "robot_check"

BLOCKED_REASONS = frozenset(
    {REASON_HTTP_429, REASON_HTTP_503, REASON_CHALLENGE, REASON_CAPTCHA, REASON_ROBOT_CHECK}
)

BLOCKED_HTTP_STATUSES = {429: REASON_HTTP_429, 503: REASON_HTTP_503}

# Matched against the diacritic-stripped, lower-cased final URL
CHALLENGE_URL_PATTERNS = [
    re.compile(r"/errors/validatecaptcha"),
    re.compile(r"/errors/captcha"),
    re.compile(r"/sorry/index"),
    re.compile(r"/ap/challenge"),
    re.compile(r"/ap/signin"),
]

# Matched against normalized title + body text
CAPTCHA_PHRASES = [
    "captcha",
    "enter the characters",
    "geben sie die zeichen ein",
    "gib die zeichen ein",
    "introduce los caracteres",
    "entrez les caracteres",
    "inserisci i caratteri",
]

ROBOT_CHECK_PHRASES = [
    "robot check",
    "not a robot",
    "kein roboter",
    "pas un robot",
]

CHALLENGE_PHRASES = [
    "automated access",
    "automatisierte zugriffe",
    "sicherheitsuberprufung",
    "sicherheitsprufung",
    "acceso automatizado",
    "verificacion de seguridad",
    "accesso automatico",
    "verifica di sicurezza",
]

# DOM indicators: callers count matches of these selectors on their page
CHALLENGE_SELECTORS = [
    'form[action*="validateCaptcha"]',
    "#captchacharacters",
    'input[name="field-keywords"][id="captchacharacters"]',
    'img[src*="captcha"]',
]

PRODUCT_SELECTORS = [
    "#productTitle",
    "#dp-container",
    "#corePrice_feature_div",
    "#corePriceDisplay_desktop_feature_div",
    "#buybox",
    "#add-to-cart-button",
]


@dataclass
class PageSignals:
    """Observable signals of a fetched or rendered page."""

    http_status: Optional[int] = None
    page_title: Optional[str] = None
    body_text: Optional[str] = None
    final_url: Optional[str] = None
    has_product_indicator: Optional[bool] = None  # None: caller could not tell
    challenge_indicator_count: int = 0


@dataclass(frozen=True)
class BlockedVerdict:
    """Outcome of blocked-page detection."""

    blocked_signal: bool
    blocked_reason: Optional[str] = None


NOT_BLOCKED = BlockedVerdict(False, None)


def _match_phrases(combined: str) -> Optional[str]:
    if any(phrase in combined for phrase in CAPTCHA_PHRASES):
        return REASON_CAPTCHA
    if any(phrase in combined for phrase in ROBOT_CHECK_PHRASES):
        return REASON_ROBOT_CHECK
    if any(phrase in combined for phrase in CHALLENGE_PHRASES):
        return REASON_CHALLENGE
    return None


def detect_blocked(signals: PageSignals) -> BlockedVerdict:
    """
    Classify a page as blocked or not. Rules are evaluated in order; first match wins.

    1. HTTP 429 / 503
    2. final URL on a known challenge path
    3. challenge DOM indicator present
    4. captcha / robot-check / challenge phrase in title or body
    5. no product chrome and no canonical product path
    """
    reason = BLOCKED_HTTP_STATUSES.get(signals.http_status)
    if reason:
        return BlockedVerdict(True, reason)

    url = normalize_for_match(signals.final_url)
    if any(pattern.search(url) for pattern in CHALLENGE_URL_PATTERNS):
        return BlockedVerdict(True, REASON_CHALLENGE)

    if signals.challenge_indicator_count > 0:
        return BlockedVerdict(True, REASON_CHALLENGE)

    combined = f"{normalize_for_match(signals.page_title)}\n{normalize_for_match(signals.body_text)}"
    reason = _match_phrases(combined)
    if reason:
        return BlockedVerdict(True, reason)

    # Challenge pages increasingly answer 200 with neither a price nor product chrome
    if signals.has_product_indicator is False and not is_product_path(signals.final_url):
        return BlockedVerdict(True, REASON_CHALLENGE)

    return NOT_BLOCKED
