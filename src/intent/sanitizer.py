"""Adversarial input sanitizer.

Runs before parsing. It neutralizes invisible control characters, look-alike Cyrillic letters, HTML
and script payloads and shell command segments. Prompt-injection phrasing is only flagged; the path
policy is what actually constrains what an intent may do.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")
BIDI_CONTROL_RE = re.compile("[\u202a-\u202e\u2066-\u2069]")
HTML_TAG_RE = re.compile(r"<[^>]*>")
JAVASCRIPT_URI_RE = re.compile(r"javascript:\S*", re.IGNORECASE)
SHELL_SEGMENT_RE = re.compile(
    r"[;&|]+\s*(?:rm|cat|wget|curl|bash|sh|python|node)\b[^;&|]*",
    re.IGNORECASE,
)
SUBSHELL_RE = re.compile(r"\$\([^)]*\)")
BACKTICK_RE = re.compile(r"`[^`]*`")
WHITESPACE_RE = re.compile(r"\s+")

INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"ignore\s+(?:all\s+)?(?:previous|all|prior)\s+instructions", re.IGNORECASE),
    re.compile(r"disregard\s+(?:the\s+)?above", re.IGNORECASE),
    re.compile(r"new\s+instructions?\s*:", re.IGNORECASE),
    re.compile(r"\bsystem\s*:", re.IGNORECASE),
    re.compile(r"\[\[\s*system\s*\]\]", re.IGNORECASE),
)

HOMOGLYPHS: dict[str, str] = {
    "А": "A",
    "В": "B",
    "С": "C",
    "Е": "E",
    "Н": "H",
    "К": "K",
    "М": "M",
    "О": "O",
    "Р": "P",
    "Т": "T",
    "Х": "X",
    "а": "a",
    "е": "e",
    "о": "o",
    "р": "p",
    "с": "c",
    "у": "y",
    "х": "x",
}
_HOMOGLYPH_TABLE = str.maketrans(HOMOGLYPHS)

MAX_INPUT_CHARS = 2000
MAX_AMOUNT = 1e15
DUST_AMOUNT = 1e-6


@dataclass(frozen=True)
class SanitizeResult:
    sanitized: str
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AmountCheck:
    valid: bool
    warning: str | None = None


def _strip(pattern: re.Pattern[str], text: str, replacement: str = "") -> tuple[str, bool]:
    result, count = pattern.subn(replacement, text)
    return result, count > 0


def sanitize_intent_input(text: str | None) -> SanitizeResult:
    """Return a best-effort sanitized copy of `text` plus human-readable warnings.

    Never raises.
    """

    if not text:
        return SanitizeResult(sanitized="")

    warnings: list[str] = []
    value = str(text)
    if len(value) > MAX_INPUT_CHARS:
        value = value[:MAX_INPUT_CHARS]
        warnings.append(f"Input truncated to {MAX_INPUT_CHARS} characters")

    value, found = _strip(ZERO_WIDTH_RE, value)
    if found:
        warnings.append("Removed zero-width characters")

    value, found = _strip(BIDI_CONTROL_RE, value)
    if found:
        warnings.append("Removed bidirectional control characters")

    translated = value.translate(_HOMOGLYPH_TABLE)
    if translated != value:
        warnings.append("Replaced homoglyph characters")
        value = translated

    value, found = _strip(HTML_TAG_RE, value)
    if found:
        warnings.append("Removed HTML tags")

    value, found = _strip(JAVASCRIPT_URI_RE, value)
    if found:
        warnings.append("Removed javascript: URI")

    shell_found = False
    for pattern in (SHELL_SEGMENT_RE, SUBSHELL_RE, BACKTICK_RE):
        value, found = _strip(pattern, value, " ")
        shell_found = shell_found or found
    if shell_found:
        warnings.append("Removed shell command patterns")

    if any(p.search(value) for p in INJECTION_PATTERNS):
        warnings.append("Potential prompt injection detected")

    value = WHITESPACE_RE.sub(" ", value).strip()
    return SanitizeResult(sanitized=value, warnings=warnings)


def validate_amount(value: float) -> AmountCheck:
    """Sanity-check a numeric amount before it is used for routing or signing."""

    if math.isnan(value):
        return AmountCheck(valid=False, warning="Amount is not a number")
    if value <= 0:
        return AmountCheck(valid=False, warning="Amount must be positive")
    if value > MAX_AMOUNT or math.isinf(value):
        return AmountCheck(valid=False, warning="Amount exceeds maximum")
    if value < DUST_AMOUNT:
        return AmountCheck(valid=True, warning="Amount is below dust threshold")
    return AmountCheck(valid=True)
