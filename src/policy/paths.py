"""Coarse risk paths and the transition table between them.

Every parsed intent is classified into a path (research, planning, execution, event, creation).
Moving a session from one path to another may require an explicit confirmation; the table below
defines which moves do and what kind of acknowledgement they need.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from src.intent.normalize import normalize_text
from src.intent.schema import IntentKind, IntentType, ParsedIntent

HIGH_VALUE_THRESHOLD_USD = 10_000.0


class IntentPath(StrEnum):
    research = "research"
    planning = "planning"
    execution = "execution"
    event = "event"
    creation = "creation"


class ConfirmationType(StrEnum):
    none = "none"
    simple = "simple"
    bond_ack = "bond_ack"
    risk_ack = "risk_ack"
    high_value_ack = "high_value_ack"


BLOCKED_TRANSITIONS: dict[tuple[IntentPath, IntentPath], ConfirmationType] = {
    (IntentPath.research, IntentPath.execution): ConfirmationType.simple,
    (IntentPath.planning, IntentPath.execution): ConfirmationType.simple,
    (IntentPath.creation, IntentPath.execution): ConfirmationType.bond_ack,
    (IntentPath.event, IntentPath.execution): ConfirmationType.risk_ack,
}

CONFIRMATION_KEYWORDS: tuple[str, ...] = (
    "yes",
    "execute",
    "confirm",
    "proceed",
    "do it",
    "go ahead",
    "submit",
    "run it",
    "send it",
    "lets go",
    "let's go",
    "approve",
    "ok",
    "okay",
)

CANCELLATION_KEYWORDS: tuple[str, ...] = (
    "no",
    "cancel",
    "stop",
    "abort",
    "nevermind",
    "never mind",
    "don't",
    "dont",
    "wait",
    "hold on",
    "back",
    "undo",
)

# Keywords that must not appear in text classified onto a given path.
PATH_BLACKLISTS: dict[IntentPath, tuple[re.Pattern[str], ...]] = {
    IntentPath.event: (
        re.compile(r"\b\d+(?:\.\d+)?\s*x\b"),
        re.compile(r"\bleverage[d]?\b"),
        re.compile(r"\bperps?\b|\bperpetuals?\b"),
        re.compile(r"\bmargin\b"),
    ),
    IntentPath.planning: (
        re.compile(r"\bprediction\s*markets?\b"),
        re.compile(r"\bpolymarket\b|\bkalshi\b"),
        re.compile(r"\b(?:bet|wager)\s+(?:\S+\s+)?on\b"),
    ),
    IntentPath.creation: (
        re.compile(r"\bprediction\s*markets?\b"),
        re.compile(r"\b(?:bet|wager)\b"),
    ),
}

_EVENT_TEXT_RE = re.compile(r"\bprediction\s*markets?\b|\bpolymarket\b|\bkalshi\b|\b(?:bet|wager)\b")
_CREATION_TEXT_RE = re.compile(r"\b(?:launch|create|deploy|register)\b.*\b(?:perps?|perpetuals?|markets?)\b")
_EXECUTION_TEXT_RE = re.compile(r"^(?:execute|submit|run it|send it|confirm)\b")
_PLANNING_TEXT_RE = re.compile(
    r"\b(?:swap|convert|trade|bridge|deposit|supply|stake|lend|long|short|buy|sell|dca)\b"
)


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    confirmation_type: ConfirmationType = ConfirmationType.none
    reason: str | None = None


@dataclass(frozen=True)
class IntegrityCheck:
    valid: bool
    reason: str | None = None


def classify_parsed_intent_path(parsed: ParsedIntent) -> IntentPath:
    """Map a parsed intent's `(kind, intent_type)` to its path."""

    if parsed.kind == IntentKind.perp_create:
        return IntentPath.creation
    if parsed.kind == IntentKind.event:
        return IntentPath.event
    if parsed.kind in {IntentKind.swap, IntentKind.deposit, IntentKind.perp, IntentKind.bridge}:
        return IntentPath.planning
    if parsed.intent_type == IntentType.prediction:
        return IntentPath.event
    return IntentPath.research


def classify_text_path(text: str) -> IntentPath:
    """Classify raw text by keyword presence (used when no parse is available)."""

    value = normalize_text(text)
    if _EVENT_TEXT_RE.search(value):
        return IntentPath.event
    if _CREATION_TEXT_RE.search(value):
        return IntentPath.creation
    if _EXECUTION_TEXT_RE.search(value):
        return IntentPath.execution
    if _PLANNING_TEXT_RE.search(value):
        return IntentPath.planning
    return IntentPath.research


def validate_path_integrity(text: str, path: IntentPath) -> IntegrityCheck:
    """Reject text that mixes keywords from a different path (e.g. leverage inside a bet)."""

    value = normalize_text(text)
    for pattern in PATH_BLACKLISTS.get(path, ()):
        match = pattern.search(value)
        if match:
            return IntegrityCheck(
                valid=False,
                reason=f"'{match.group(0)}' is not allowed on the {path} path",
            )
    return IntegrityCheck(valid=True)


def validate_transition(
        from_path: IntentPath | None,
        to_path: IntentPath,
        usd_estimate: float | None = None,
        *,
        high_value_threshold_usd: float = HIGH_VALUE_THRESHOLD_USD,
) -> TransitionCheck:
    """Check a path move against the transition table.

    Staying on the same path is always allowed. A fresh session (`from_path=None`) only faces the
    high-value check.
    """

    if from_path == to_path:
        return TransitionCheck(allowed=True)

    required = BLOCKED_TRANSITIONS.get((from_path, to_path)) if from_path is not None else None
    if required is not None:
        return TransitionCheck(
            allowed=False,
            confirmation_type=required,
            reason=f"Transition {from_path} -> {to_path} requires {required} confirmation",
        )

    if (
            to_path == IntentPath.execution
            and usd_estimate is not None
            and usd_estimate >= high_value_threshold_usd
    ):
        return TransitionCheck(
            allowed=False,
            confirmation_type=ConfirmationType.high_value_ack,
            reason=f"Value ${usd_estimate:,.0f} exceeds ${high_value_threshold_usd:,.0f} threshold",
        )

    return TransitionCheck(allowed=True)


def _matches_keyword(value: str, keywords: tuple[str, ...]) -> bool:
    return any(value == k or value.startswith(f"{k} ") for k in keywords)


def is_confirmation(text: str) -> bool:
    value = (text or "").strip().lower()
    return _matches_keyword(value, CONFIRMATION_KEYWORDS)


def is_cancellation(text: str) -> bool:
    value = (text or "").strip().lower()
    return _matches_keyword(value, CANCELLATION_KEYWORDS)


def matches_confirmation_type(text: str, confirmation_type: ConfirmationType) -> bool:
    """Whether a reply satisfies the acknowledgement a confirmation asked for."""

    value = (text or "").strip().lower()
    if confirmation_type == ConfirmationType.none:
        return True
    if confirmation_type == ConfirmationType.bond_ack:
        return "understand" in value and "bond" in value
    if confirmation_type == ConfirmationType.risk_ack:
        return "accept" in value and "risk" in value
    if confirmation_type == ConfirmationType.high_value_ack:
        return "confirm" in value or "proceed" in value
    return is_confirmation(value)


class AssetClass(StrEnum):
    major = "major"
    altcoin = "altcoin"
    meme = "meme"


MAJOR_ASSETS: frozenset[str] = frozenset({"BTC", "ETH"})
MEME_ASSETS: frozenset[str] = frozenset({"DOGE", "SHIB", "PEPE", "WIF", "BONK", "FLOKI", "MEME"})


def classify_asset_for_leverage(symbol: str | None) -> AssetClass:
    """Leverage class of a perp market symbol (`BTC`, `btc-usd`, `PEPE-PERP`); unknown is altcoin."""

    value = (symbol or "").upper().replace("-USD", "").replace("-PERP", "")
    if value in MAJOR_ASSETS:
        return AssetClass.major
    if value in MEME_ASSETS:
        return AssetClass.meme
    return AssetClass.altcoin
