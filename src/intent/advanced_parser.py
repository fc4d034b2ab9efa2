"""Advanced strategy parser: recurring buys, leveraged entries, yield search and multi-step plans.

Tried before the baseline single-action patterns, because phrases like "every day for" or
"10x ... with 500 usdc margin" would otherwise be half-claimed by them. Each family has a cheap
keyword gate; gates are checked in a fixed order (dca, leverage, yield, multi-step) and the first
family that parses wins.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from src.intent.dictionaries import CANONICAL_ASSETS, STABLECOINS, resolve_venue
from src.intent.normalize import (
    DEFAULT_AMOUNT,
    format_decimal,
    normalize_amount,
    normalize_asset,
    parse_amount,
)
from src.intent.schema import IntentKind, IntentType, ParsedIntent, clamp_leverage

AMOUNT = r"[$€£]?\d[\d,]*(?:\.\d+)?(?:e[+-]?\d+)?(?:[kmb](?![a-z]))?"
NUMBER = r"\d[\d,]*(?:\.\d+)?"

INTERVAL_MS: dict[str, int] = {
    "hour": 3_600_000,
    "day": 86_400_000,
    "week": 604_800_000,
    "month": 2_592_000_000,
}
_FREQUENCY_WORDS: dict[str, str] = {
    "hourly": "hour",
    "daily": "day",
    "weekly": "week",
    "monthly": "month",
}

DEFAULT_DCA_PERIODS = 7
DEFAULT_LEVERAGE = 10
DEFAULT_MARGIN = "100"
DEFAULT_MARGIN_UNIT = "USDC"

_STOPWORDS = frozenset({"with", "on", "at", "of", "into", "in", "to", "for", "the", "a", "my", "and"})

# ---------------------------------------------------------------------------------------------------
# Result types


@dataclass(frozen=True)
class DcaIntent:
    asset: str
    amount_unit: str
    total_amount: str
    per_trade_amount: str
    interval: str
    num_trades: int

    @property
    def interval_ms(self) -> int:
        return INTERVAL_MS[self.interval]


@dataclass(frozen=True)
class LeverageIntent:
    side: str
    asset: str
    leverage: int
    margin: str
    margin_unit: str
    entry_price: str | None = None
    take_profit: str | None = None
    stop_loss: str | None = None


@dataclass(frozen=True)
class YieldIntent:
    asset: str
    amount: str | None
    risk_level: str
    min_apy: float | None


@dataclass(frozen=True)
class MultiStepIntent:
    steps: list[ParsedIntent] = field(default_factory=list)


AdvancedIntent = DcaIntent | LeverageIntent | YieldIntent | MultiStepIntent


def _clean_asset(token: str | None) -> str | None:
    if not token or token in _STOPWORDS:
        return None
    return normalize_asset(token) or None


def _clean_unit(token: str | None, default: str = DEFAULT_MARGIN_UNIT) -> str:
    asset = _clean_asset(token)
    if asset and (asset in CANONICAL_ASSETS or asset in STABLECOINS):
        return asset
    return default


def _plain_number(raw: str | None) -> str | None:
    if raw is None:
        return None
    number = parse_amount(raw)
    return format_decimal(number) if number is not None else None


# ---------------------------------------------------------------------------------------------------
# DCA

_DCA_GATE_RE = re.compile(
    r"\bdca\b|dollar[\s-]cost|\bevery\s+(?:\d+\s+)?(?:hour|day|week|month)"
    r"|\b(?:hourly|daily|weekly|monthly)\b"
)

_DCA_BASIC_RE = re.compile(
    rf"\bdca\s+(?P<amount>{AMOUNT})\s*(?:(?P<unit>[a-z]+)\s+)?(?:into|in|to)\s+(?P<asset>[a-z]+)"
    r"(?:\s+(?:over|for)\s+(?P<count>\d+)\s*(?P<period>hour|day|week|month)s?)?"
)
_DCA_ALTERNATE_RE = re.compile(
    rf"\bdollar[\s-]cost[\s-]averag\w*\s+(?:(?P<amount>{AMOUNT})\s*(?:(?P<unit>[a-z]+)\s+)?(?:into|in|of)\s+)?"
    r"(?P<asset>[a-z]+)(?:\s+(?P<freq>hourly|daily|weekly|monthly))?"
    r"(?:\s+(?:for|over)\s+(?P<count>\d+)\s*(?P<period>hour|day|week|month)s?)?"
)
_DCA_BUY_EVERY_RE = re.compile(
    rf"\bbuy\s+(?P<amount>{AMOUNT})\s*(?:(?P<unit>[a-z]+)\s+)?(?:worth\s+of|of)\s+(?P<asset>[a-z]+)\s+"
    r"every\s+(?P<period>hour|day|week|month)s?"
    r"(?:\s+for\s+(?P<count>\d+)\s*(?:hour|day|week|month)s?)?"
)


def _parse_dca(text: str) -> DcaIntent | None:
    for pattern, amount_is_total in (
            (_DCA_BASIC_RE, True),
            (_DCA_ALTERNATE_RE, True),
            (_DCA_BUY_EVERY_RE, False),
    ):
        match = pattern.search(text)
        if not match:
            continue

        asset = _clean_asset(match.group("asset"))
        if asset is None:
            continue

        groups = match.groupdict()
        interval = groups.get("period") or _FREQUENCY_WORDS.get(groups.get("freq") or "", "day")
        num_trades = int(groups["count"]) if groups.get("count") else DEFAULT_DCA_PERIODS
        num_trades = max(num_trades, 1)

        amount = parse_amount(groups.get("amount")) or Decimal(DEFAULT_AMOUNT)
        if amount_is_total:
            total, per_trade = amount, amount / num_trades
        else:
            total, per_trade = amount * num_trades, amount

        return DcaIntent(
            asset=asset,
            amount_unit=_clean_unit(groups.get("unit")),
            total_amount=format_decimal(total),
            per_trade_amount=format_decimal(per_trade),
            interval=interval,
            num_trades=num_trades,
        )
    return None


# ---------------------------------------------------------------------------------------------------
# Leveraged entry

_LEVERAGE_GATE_RE = re.compile(r"\b(?:long|short)\b")
_LEVERAGE_HINT_RE = re.compile(r"\b\d+(?:\.\d+)?\s*x\b|\bleverage")

_LEV_OPEN_WITH_RE = re.compile(
    r"\bopen\s+(?:a\s+)?(?P<leverage>\d+(?:\.\d+)?)\s*x\s+(?P<side>long|short)\s+(?:on\s+)?(?P<asset>[a-z]+)"
)
_LEV_SIDE_FIRST_RE = re.compile(
    r"\b(?P<side>long|short)\s+(?P<asset>[a-z]+)\s+(?:at\s+|with\s+)?(?P<leverage>\d+(?:\.\d+)?)\s*x"
)
_LEV_LEVERAGE_FIRST_RE = re.compile(
    r"\b(?P<leverage>\d+(?:\.\d+)?)\s*x\s+(?:leverage\s+)?(?P<side>long|short)\s+(?:on\s+)?(?P<asset>[a-z]+)"
)
_LEV_AMOUNT_FIRST_RE = re.compile(
    rf"(?P<margin>{AMOUNT})\s*(?P<unit>[a-z]+)?\s+(?:margin\s+)?(?P<side>long|short)\s+(?:on\s+)?(?P<asset>[a-z]+)"
    r"(?:\s+(?:at\s+|with\s+)?(?P<leverage>\d+(?:\.\d+)?)\s*x)?"
)
_MARGIN_WITH_RE = re.compile(rf"\bwith\s+(?P<margin>{AMOUNT})\s*(?P<unit>[a-z]+)?")
_MARGIN_SUFFIX_RE = re.compile(rf"(?P<margin>{AMOUNT})\s*(?P<unit>[a-z]+)?\s+(?:of\s+)?margin\b")
_ENTRY_RE = re.compile(rf"\b(?:entry(?:\s+price)?|enter)\s+(?:at\s+)?\$?(?P<value>{NUMBER})")
_TP_RE = re.compile(rf"\b(?:tp|take[\s-]profit|target)\s+(?:at\s+)?\$?(?P<value>{NUMBER})")
_SL_RE = re.compile(rf"\b(?:sl|stop[\s-]loss|stop)\s+(?:at\s+)?\$?(?P<value>{NUMBER})")


def _search_value(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    return _plain_number(match.group("value")) if match else None


def _parse_leverage(text: str) -> LeverageIntent | None:
    margin_raw: str | None = None
    margin_unit: str | None = None
    side = asset = None
    leverage_raw: str | None = None

    for pattern in (_LEV_OPEN_WITH_RE, _LEV_SIDE_FIRST_RE, _LEV_LEVERAGE_FIRST_RE, _LEV_AMOUNT_FIRST_RE):
        match = pattern.search(text)
        if not match:
            continue
        candidate = _clean_asset(match.group("asset"))
        if candidate is None:
            continue
        groups = match.groupdict()
        side, asset = match.group("side"), candidate
        leverage_raw = groups.get("leverage")
        margin_raw = groups.get("margin")
        margin_unit = groups.get("unit")
        break

    if side is None or asset is None:
        return None

    if margin_raw is None:
        for pattern in (_MARGIN_WITH_RE, _MARGIN_SUFFIX_RE):
            match = pattern.search(text)
            if match:
                margin_raw, margin_unit = match.group("margin"), match.group("unit")
                break

    entry = _search_value(_ENTRY_RE, text)
    take_profit = _search_value(_TP_RE, text)
    stop_loss = _search_value(_SL_RE, text)

    # A bare "long btc 20x" is a single action; leave it to the baseline perp matcher.
    if margin_raw is None and entry is None and take_profit is None and stop_loss is None:
        return None

    leverage = clamp_leverage(float(leverage_raw)) if leverage_raw else DEFAULT_LEVERAGE
    return LeverageIntent(
        side=side,
        asset=asset,
        leverage=leverage,
        margin=normalize_amount(margin_raw, default=DEFAULT_MARGIN),
        margin_unit=_clean_unit(margin_unit),
        entry_price=entry,
        take_profit=take_profit,
        stop_loss=stop_loss,
    )


# ---------------------------------------------------------------------------------------------------
# Yield search

_YIELD_GATE_RE = re.compile(r"\b(?:yield|apy|apr|earn|interest|park)\b")

_YIELD_FIND_BEST_RE = re.compile(
    r"\b(?:find|get|show)\s+(?:me\s+)?(?:the\s+)?(?:best|highest|top)\s+(?:(?P<asset>[a-z]+)\s+)?"
    rf"(?:yield|apy|apr|rates?)\b(?:\s+(?:for|on)\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<asset2>[a-z]+))?"
)
_YIELD_WHERE_EARN_RE = re.compile(
    r"\bwhere\s+(?:can\s+i\s+|should\s+i\s+|to\s+)?(?:earn|get)\s+(?:the\s+)?(?:best\s+)?"
    rf"(?:yield|interest|apy)?\s*(?:on|for|with)\s+(?:my\s+)?(?:(?P<amount>{AMOUNT})\s*)?(?P<asset>[a-z]+)"
)
_YIELD_BEST_STABLE_RE = re.compile(r"\bbest\s+stable(?:coin)?s?\s+(?:yield|apy|apr|rates?)\b")
_YIELD_PARK_RE = re.compile(rf"\bpark\s+(?:my\s+)?(?:(?P<amount>{AMOUNT})\s*)?(?P<asset>[a-z]+)")

_RISK_LOW_RE = re.compile(r"\blow[\s-]risk\b|\bsafe(?:st)?\b|\bconservative\b")
_RISK_HIGH_RE = re.compile(r"\bhigh[\s-]risk\b|\bdegen\b|\baggressive\b|\brisky\b")
_MIN_APY_RE = re.compile(
    r"(?:at\s+least|min(?:imum)?|above|over|>)\s*(?P<a>\d+(?:\.\d+)?)\s*%|(?P<b>\d+(?:\.\d+)?)\s*%\s*(?:apy|apr|yield)"
)


def _risk_level(text: str) -> str:
    if _RISK_LOW_RE.search(text):
        return "low"
    if _RISK_HIGH_RE.search(text):
        return "high"
    return "medium"


def _min_apy(text: str) -> float | None:
    match = _MIN_APY_RE.search(text)
    if not match:
        return None
    return float(match.group("a") or match.group("b"))


def _parse_yield(text: str) -> YieldIntent | None:
    asset: str | None = None
    amount_raw: str | None = None

    if _YIELD_BEST_STABLE_RE.search(text):
        asset = "USDC"
    else:
        for pattern in (_YIELD_FIND_BEST_RE, _YIELD_WHERE_EARN_RE, _YIELD_PARK_RE):
            match = pattern.search(text)
            if not match:
                continue
            groups = match.groupdict()
            asset = _clean_asset(groups.get("asset2")) or _clean_asset(groups.get("asset")) or "USDC"
            amount_raw = groups.get("amount")
            break

    if asset is None:
        return None

    return YieldIntent(
        asset=asset,
        amount=normalize_amount(amount_raw) if amount_raw else None,
        risk_level=_risk_level(text),
        min_apy=_min_apy(text),
    )


# ---------------------------------------------------------------------------------------------------
# Multi-step

_MULTI_GATE_RE = re.compile(r"\bthen\b|\bhalf\b|\d+(?:\.\d+)?%\s+(?:to|into|in)\b")
_THEN_SPLIT_RE = re.compile(r"\s*,?\s*\b(?:and\s+)?then\b\s*")
_HALF_REST_RE = re.compile(
    rf"(?P<amount>{AMOUNT})\s*(?P<asset>[a-z]+)\s*[:,]?\s*half\s+(?:in|into|to)\s+(?P<first>[a-z0-9]+)\s*"
    r"(?:,|and)?\s*(?:the\s+)?(?:rest|remaining|other\s+half)\s+(?:in|into|to)\s+(?P<second>[a-z0-9]+)"
)
_ALLOCATION_RE = re.compile(r"(?P<pct>\d+(?:\.\d+)?)%\s+(?:to|into|in)\s+(?P<target>[a-z0-9]+)")
_FIRST_AMOUNT_RE = re.compile(rf"(?P<amount>{AMOUNT})\s*(?P<asset>[a-z]+)")


def _allocation_step_text(amount: Decimal, asset: str, target: str) -> str:
    value = format_decimal(amount)
    if resolve_venue(target):
        return f"deposit {value} {asset} into {target}"
    return f"swap {value} {asset} to {target}"


def _parse_multi_step(text: str, parse_step: Callable[[str], ParsedIntent]) -> MultiStepIntent | None:
    match = _HALF_REST_RE.search(text)
    if match:
        amount = parse_amount(match.group("amount"))
        if amount is not None:
            half = amount / 2
            asset = match.group("asset")
            steps = [
                parse_step(_allocation_step_text(half, asset, match.group("first"))),
                parse_step(_allocation_step_text(amount - half, asset, match.group("second"))),
            ]
            return MultiStepIntent(steps=steps)

    allocations = list(_ALLOCATION_RE.finditer(text))
    head = _FIRST_AMOUNT_RE.search(text)
    if len(allocations) >= 2 and head is not None:
        amount = parse_amount(head.group("amount"))
        if amount is not None:
            steps = [
                parse_step(
                    _allocation_step_text(
                        amount * Decimal(a.group("pct")) / 100, head.group("asset"), a.group("target")
                    )
                )
                for a in allocations
            ]
            return MultiStepIntent(steps=steps)

    parts = [p for p in _THEN_SPLIT_RE.split(text) if p]
    if len(parts) >= 2:
        steps = [parse_step(part) for part in parts]
        if steps[0].kind != IntentKind.unknown:
            return MultiStepIntent(steps=steps)

    return None


# ---------------------------------------------------------------------------------------------------
# Entry points


def parse_advanced_intent(
        text: str,
        parse_step: Callable[[str], ParsedIntent],
) -> AdvancedIntent | None:
    """Try every advanced family in gate order; return the first parse or `None`.

    Args:
        text: Normalized (lower-cased) user text.
        parse_step: Single-action parser used for the individual steps of multi-step plans.
    """

    if _DCA_GATE_RE.search(text):
        dca = _parse_dca(text)
        if dca is not None:
            return dca

    if _LEVERAGE_GATE_RE.search(text) and _LEVERAGE_HINT_RE.search(text):
        leverage = _parse_leverage(text)
        if leverage is not None:
            return leverage

    if _YIELD_GATE_RE.search(text) or _YIELD_BEST_STABLE_RE.search(text):
        yield_intent = _parse_yield(text)
        if yield_intent is not None:
            return yield_intent

    if _MULTI_GATE_RE.search(text):
        multi = _parse_multi_step(text, parse_step)
        if multi is not None:
            return multi

    return None


def _step_summary(step: ParsedIntent) -> dict[str, Any]:
    return step.model_dump(exclude={"raw_params"}, exclude_none=True, mode="json")


def advanced_to_parsed(advanced: AdvancedIntent, original_text: str) -> ParsedIntent:
    """Project an advanced result onto the standard `ParsedIntent` shape."""

    raw: dict[str, Any] = {"original_text": original_text}

    if isinstance(advanced, DcaIntent):
        raw.update(
            intent_type=IntentType.dca.value,
            total_amount=advanced.total_amount,
            per_trade_amount=advanced.per_trade_amount,
            interval=advanced.interval,
            interval_ms=advanced.interval_ms,
            num_trades=advanced.num_trades,
        )
        return ParsedIntent(
            kind=IntentKind.swap,
            action="dca",
            amount=advanced.per_trade_amount,
            amount_unit=advanced.amount_unit,
            target_asset=advanced.asset,
            raw_params=raw,
        )

    if isinstance(advanced, LeverageIntent):
        raw.update(
            side=advanced.side,
            entry_price=advanced.entry_price,
            take_profit=advanced.take_profit,
            stop_loss=advanced.stop_loss,
        )
        return ParsedIntent(
            kind=IntentKind.perp,
            action=advanced.side,
            amount=advanced.margin,
            amount_unit=advanced.margin_unit,
            target_asset=advanced.asset,
            leverage=advanced.leverage,
            raw_params=raw,
        )

    if isinstance(advanced, YieldIntent):
        raw.update(
            intent_type=IntentType.yield_optimize.value,
            risk_level=advanced.risk_level,
            min_apy=advanced.min_apy,
            requires_yield_ranking=True,
        )
        return ParsedIntent(
            kind=IntentKind.deposit,
            action="yield_optimize",
            amount=advanced.amount,
            amount_unit=advanced.asset,
            raw_params=raw,
        )

    first = advanced.steps[0]
    raw.update(
        intent_type=IntentType.multi_step.value,
        steps=[_step_summary(step) for step in advanced.steps],
    )
    return first.model_copy(update={"raw_params": raw})
