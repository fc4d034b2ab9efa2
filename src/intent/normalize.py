"""Text, amount and asset normalization for deterministic intent parsing.

All functions here are total (they never raise) and idempotent:
`normalize_x(normalize_x(v)) == normalize_x(v)`.
"""

from __future__ import annotations

import re
from decimal import Decimal, DecimalException, InvalidOperation

from src.intent.dictionaries import ASSET_ALIASES, CANONICAL_ASSETS
from src.intent.sanitizer import MAX_AMOUNT

DEFAULT_AMOUNT = "1000"

# Bounds on the decimal exponent of a literal, checked before any arithmetic touches it.
MAX_AMOUNT_EXPONENT = 15
MIN_AMOUNT_EXPONENT = -18

_KEEP_RE = re.compile(r"[^0-9a-z$€£.,%_\-+/>:\s]+")
_MULTISPACE_RE = re.compile(r"\s+")
_AMOUNT_RE = re.compile(r"(?P<num>\d+(?:\.\d*)?|\.\d+)(?:e(?P<exp>[+-]?\d+))?(?P<suffix>[kmb])?")
_NON_ALNUM_RE = re.compile(r"[^A-Z0-9]")

_SUFFIX_MULTIPLIERS: dict[str, Decimal] = {
    "k": Decimal(1_000),
    "m": Decimal(1_000_000),
    "b": Decimal(1_000_000_000),
}


def normalize_text(text: str | None) -> str:
    """Normalize user text for rules-based parsing.

    Normalization is intentionally conservative:
        - Lowercase.
        - Normalize unicode dashes and arrows.
        - Replace punctuation not used by amount/route syntax with spaces.
        - Collapse whitespace.
    """

    value = (text or "").strip().lower()
    value = value.replace("\u2014", "-").replace("\u2013", "-").replace("\u2192", "->")
    value = value.replace("`", " ").replace('"', " ").replace("'", "")
    value = _KEEP_RE.sub(" ", value)
    value = _MULTISPACE_RE.sub(" ", value).strip()
    return value


def format_decimal(value: Decimal) -> str:
    try:
        text = format(value.normalize(), "f")
    except DecimalException:
        return str(value)
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def parse_amount(raw: object) -> Decimal | None:
    """Parse a user amount (`1,000`, `$2.5k`, `1e3`, `10 m`) into a positive Decimal.

    Returns:
        The value, or `None` if it is missing, unparsable, non-finite, not positive or above
        `MAX_AMOUNT`.
    """

    if raw is None:
        return None

    value = str(raw).strip().lower()
    for symbol in ("$", "€", "£", ",", "_", " "):
        value = value.replace(symbol, "")

    match = _AMOUNT_RE.fullmatch(value)
    if not match:
        return None

    literal = match.group("num")
    if match.group("exp"):
        literal = f"{literal}e{match.group('exp')}"

    try:
        number = Decimal(literal)
    except InvalidOperation:
        return None
    if not number.is_finite() or not MIN_AMOUNT_EXPONENT <= number.adjusted() <= MAX_AMOUNT_EXPONENT:
        return None

    suffix = match.group("suffix")
    if suffix:
        number *= _SUFFIX_MULTIPLIERS[suffix]

    if number <= 0 or number > MAX_AMOUNT:
        return None
    return number


def normalize_amount(raw: object, default: str = DEFAULT_AMOUNT) -> str:
    """Return a canonical decimal string for `raw`, falling back to `default`."""

    number = parse_amount(raw)
    if number is None:
        return default
    return format_decimal(number)


def _levenshtein(a: str, b: str, limit: int) -> int:
    """Edit distance between `a` and `b`, giving up (returning `limit + 1`) once above `limit`."""

    if abs(len(a) - len(b)) > limit:
        return limit + 1

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        if min(current) > limit:
            return limit + 1
        previous = current
    return previous[-1]


def _closest_canonical(symbol: str) -> str | None:
    if len(symbol) < 3:
        return None

    limit = 1 if len(symbol) <= 4 else 2
    best: str | None = None
    best_distance = limit + 1
    for candidate in CANONICAL_ASSETS:
        distance = _levenshtein(symbol, candidate, limit)
        if distance < best_distance:
            best, best_distance = candidate, distance
    return best


def normalize_asset(raw: object) -> str:
    """Normalize an asset symbol.

    Upper-cases, strips non-alphanumerics, folds aliases (wrapped tokens, full names, common
    misspellings) and finally snaps near-misses onto the canonical vocabulary. Unknown symbols pass
    through in their stripped upper-case form.
    """

    if raw is None:
        return ""

    symbol = _NON_ALNUM_RE.sub("", str(raw).upper())
    if not symbol or symbol in CANONICAL_ASSETS:
        return symbol
    if symbol in ASSET_ALIASES:
        return ASSET_ALIASES[symbol]
    return _closest_canonical(symbol) or symbol
