"""Locale-aware price string parsing and display formatting."""

import math
import re
from dataclasses import dataclass
from typing import Optional

# Currency symbol -> ISO code, longest symbol first so "CA$"/"A$" win over "$"
CURRENCY_SYMBOLS: list[tuple[str, str]] = [
    ("CA$", "CAD"),
    ("A$", "AUD"),
    ("R$", "BRL"),
    ("€", "EUR"),
    ("$", "USD"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
]

CURRENCY_CODES = ["EUR", "USD", "GBP", "JPY", "INR", "BRL", "AUD", "CAD"]

_CODE_PATTERNS = {
    code: re.compile(rf"(^|[^A-Z]){code}([^A-Z]|$)") for code in CURRENCY_CODES
}

_SYMBOL_BY_CODE: dict[str, str] = {}
for _symbol, _code in CURRENCY_SYMBOLS:
    _SYMBOL_BY_CODE.setdefault(_code, _symbol)

_NON_NUMERIC = re.compile(r"[^\d.,]")


@dataclass(frozen=True)
class ParsedPrice:
    """Structured price parsed from display text."""

    display: str
    numeric: float
    currency: Optional[str]


def detect_currency(text: str) -> Optional[str]:
    """Detect an ISO currency code from a symbol or code token in text."""
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in text:
            return code

    upper = text.upper()
    for code, pattern in _CODE_PATTERNS.items():
        if pattern.search(upper):
            return code
    return None


def _to_float(digits: str) -> Optional[float]:
    """
    Convert a digits/separators string to float.

    The separator that occurs last decides the convention: a later comma is the
    EU decimal comma ("1.299,00"), otherwise the dot is decimal ("1,299.00").
    A decimal separator that repeats can only be a thousands separator.
    """
    last_comma = digits.rfind(",")
    last_dot = digits.rfind(".")

    if last_comma > last_dot:
        decimal_sep, thousands_sep = ",", "."
    else:
        decimal_sep, thousands_sep = ".", ","

    cleaned = digits.replace(thousands_sep, "")
    if cleaned.count(decimal_sep) > 1:
        cleaned = cleaned.replace(decimal_sep, "")
    cleaned = cleaned.replace(decimal_sep, ".")

    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_price(raw: Optional[str], fallback_currency: Optional[str] = None) -> Optional[ParsedPrice]:
    """
    Parse a price string like "EUR 249,00" or "$1,299.99".

    Args:
        raw: Raw price text
        fallback_currency: ISO code used when the text carries no currency

    Returns:
        ParsedPrice, or None if the text holds no finite number
    """
    if not raw or not isinstance(raw, str):
        return None

    trimmed = raw.strip()
    currency = detect_currency(trimmed)
    if currency is None and fallback_currency:
        currency = str(fallback_currency).upper()

    digits = _NON_NUMERIC.sub("", trimmed)
    if not any(ch.isdigit() for ch in digits):
        return None

    numeric = _to_float(digits)
    if numeric is None or not math.isfinite(numeric):
        return None

    return ParsedPrice(display=trimmed, numeric=numeric, currency=currency)


def format_price(numeric: float, currency: Optional[str] = "EUR") -> str:
    """Format a numeric price with its currency symbol for display."""
    code = str(currency or "").upper()
    symbol = _SYMBOL_BY_CODE.get(code)

    if not symbol:
        return f"{code} {numeric:.2f}" if code else f"{numeric:.2f}"

    if code == "EUR":
        return f"{symbol}{numeric:.2f}".replace(".", ",")
    return f"{symbol}{numeric:.2f}"
