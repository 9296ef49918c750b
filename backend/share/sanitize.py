"""Free-text sanitization for untrusted record payloads.

Markup is removed, not escaped: the stored value is plain text. Entity
decoding happens between two cleaning passes so markup smuggled through
entity encoding (``&lt;script&gt;``) is caught after it is decoded.
"""

import html
import re
from typing import Any

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script\s*>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]*>")
_DANGEROUS_SCHEMES = re.compile(r"(?:javascript|vbscript|data)\s*:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
_SCRIPT_CALLS = re.compile(r"\b(?:alert|eval)\s*\(", re.IGNORECASE)
_DOM_GLOBALS = re.compile(r"\b(?:document|window)\.", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# Nested payloads such as "<scr<script></script>ipt>" need more than one pass.
_MAX_PASSES = 5

# Keys that could shadow object machinery once merged into a dynamic object graph.
DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})


def _clean_once(text: str) -> str:
    text = _SCRIPT_BLOCK.sub("", text)
    text = _TAG.sub("", text)
    text = _DANGEROUS_SCHEMES.sub("", text)
    text = _EVENT_HANDLER.sub("", text)
    text = _SCRIPT_CALLS.sub("", text)
    text = _DOM_GLOBALS.sub("", text)
    return _CONTROL_CHARS.sub("", text)


def _clean(text: str) -> str:
    for _ in range(_MAX_PASSES):
        cleaned = _clean_once(text)
        if cleaned == text:
            break
        text = cleaned
    return text


def sanitize_text(value: object, max_length: int = 100) -> str:
    """Strip markup and script-like content from value and truncate it.

    Non-string input yields an empty string.
    """
    if not isinstance(value, str):
        return ""
    cleaned = _clean(value)
    cleaned = _clean(html.unescape(cleaned))
    cleaned = cleaned.strip()
    return cleaned[:max_length]


def clamp_number(value: float, low: float, high: float) -> int:
    """Clamp value into [low, high] and round to the nearest integer."""
    return round(max(low, min(high, value)))


def strip_dangerous_keys(value: Any) -> Any:  # noqa: ANN401
    """Recursively drop prototype-shadowing and dunder keys from decoded JSON."""
    if isinstance(value, dict):
        return {
            key: strip_dangerous_keys(item)
            for key, item in value.items()
            if key not in DANGEROUS_KEYS and not (key.startswith("__") and key.endswith("__"))
        }
    if isinstance(value, list):
        return [strip_dangerous_keys(item) for item in value]
    return value
