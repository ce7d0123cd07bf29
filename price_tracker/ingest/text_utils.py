"""Text cleanup helpers shared by the extraction stages and the blocked-page detector."""

import json
import re
import unicodedata
from typing import Optional

_WHITESPACE = re.compile(r"\s+")

_ENTITY_REPLACEMENTS = [
    (re.compile(r"&nbsp;"), " "),
    (re.compile(r"&euro;", re.IGNORECASE), "€"),
    (re.compile(r"&pound;", re.IGNORECASE), "£"),
    (re.compile(r"&yen;", re.IGNORECASE), "¥"),
    (re.compile(r"&amp;", re.IGNORECASE), "&"),
]


def clean_text(value: Optional[str]) -> str:
    """Decode the common price entities and collapse whitespace."""
    text = str(value or "")
    for pattern, replacement in _ENTITY_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_for_match(value: Optional[str]) -> str:
    """Lower-case and strip diacritics so "Sicherheitsüberprüfung" matches "sicherheitsuberprufung"."""
    decomposed = unicodedata.normalize("NFD", str(value or "").lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def decode_json_like_string(raw: Optional[str]) -> str:
    """
    Decode a string captured from inside a JSON literal (e.g. "329,00\\u00a0\\u20ac").

    Falls back to the cleaned raw text when it is not a valid JSON string body.
    """
    candidate = clean_text(raw)
    if not candidate:
        return candidate
    try:
        return clean_text(json.loads(f'"{candidate}"'))
    except (json.JSONDecodeError, ValueError):
        return candidate
