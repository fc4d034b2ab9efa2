"""Rules-based trading intent parser (baseline).

The parser is an explicit, ordered tuple of matcher functions evaluated first-match-wins. The order
is part of the contract: later matchers assume earlier ones already claimed their phrasing (e.g. the
hedge matcher runs before the perp matcher so "hedge my positions with a short" is not read as a
perp entry).

`parse_intent` is total: it always returns a `ParsedIntent`, falling back to
`kind=unknown, action=proof`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from src.intent.advanced_parser import AMOUNT, advanced_to_parsed, parse_advanced_intent
from src.intent.dictionaries import (
    CANONICAL_ASSETS,
    PERP_VENUES,
    SIDE_WORDS,
    find_known_asset,
    native_chain_for_asset,
    resolve_chain,
    resolve_venue,
)
from src.intent.normalize import (
    DEFAULT_AMOUNT,
    format_decimal,
    normalize_amount,
    normalize_asset,
    normalize_text,
    parse_amount,
)
from src.intent.schema import IntentKind, IntentType, ParsedIntent, clamp_leverage, unknown_intent

logger = logging.getLogger(__name__)

Matcher = Callable[[str, str], ParsedIntent | None]

DEFAULT_PERP_LEVERAGE = 10
DEFAULT_MARKET_MAX_LEVERAGE = 20
DEFAULT_TAKER_FEE_BPS = 5
DEFAULT_BOND_ASSET = "HYPE"
BOND_DECIMALS = 18
PERP_MARGIN_UNIT = "USDC"

_LEVERAGE_RE = re.compile(r"\b(?P<lev>\d+(?:\.\d+)?)\s*x\b")
_CHAIN_WORDS = r"eth|ethereum|sol|solana|hl|hyperliquid|base|arbitrum|arb|polygon|matic|optimism|op"
_NOT_PREPOSITION = r"(?!(?:to|into|in|on|for|from|the)\b)"
_LENDING_VENUES = frozenset({"aave", "kamino", "compound", "marginfi", "demo_vault"})

_HEDGE_RE = re.compile(
    r"\b(?:hedge|protect)\s+(?:my\s+)?(?:entire\s+)?(?:positions?|portfolio|holdings|bags?|exposure)\b"
)

_EVENT_MARKET_RE = re.compile(r"\bprediction\s*markets?\b|\bpolymarket\b|\bkalshi\b")
_EVENT_BET_RE = re.compile(
    rf"\b(?:bet|wager)\s+(?:(?P<amount>{AMOUNT})\s*)?(?:(?P<unit>usdc|usdt|usd|dollars|bucks)\s+)?"
    r"(?:on|that)\s+(?P<market>.+)"
)
_EVENT_OUTCOME_RE = re.compile(r"\b(?P<outcome>yes|no)\b")

_VAULT_DISCOVERY_RE = re.compile(
    r"\b(?:find|get|show)\s+(?:me\s+)?(?:the\s+)?(?:top|best|highest)\s+(?:\w+\s+)?vaults?\b"
)
_TARGET_YIELD_RE = re.compile(r"(?P<pct>\d+(?:\.\d+)?)\s*%")

_CREATE_VERB_RE = re.compile(r"\b(?:launch|create|deploy|register)\b")
_CREATE_NOUN_RE = re.compile(r"\b(?:perps?|perpetuals?|futures?|markets?)\b")
_CREATE_ASSET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\b(?:launch|create|deploy|register)\s+(?:a\s+|an\s+)?(?:new\s+)?\$?(?P<asset>[a-z][a-z0-9]{1,9})\s+"
        r"(?:perps?|perpetuals?|futures?|markets?)\b"
    ),
    re.compile(
        r"\b(?:perps?|perpetuals?|futures?|markets?)\s+(?:market\s+)?(?:for|on|of)\s+\$?(?P<asset>[a-z][a-z0-9]{1,9})\b"
    ),
)
_CREATE_NON_ASSETS = frozenset({"new", "perp", "perps", "perpetual", "market", "markets", "futures", "a", "an", "the"})
_TAKER_FEE_RE = re.compile(r"(?P<fee>\d+(?:\.\d+)?)\s*bps\b")
_BOND_RE = re.compile(rf"\bbond(?:\s+of)?\s+(?P<amount>{AMOUNT})\s*(?P<unit>[a-z]+)?")

_PERP_RE = re.compile(
    r"\b(?:go\s+|open\s+(?:a\s+)?)?(?P<side>long|short)\s+(?:on\s+)?(?P<dollar>\$)?(?P<asset>[a-z][a-z0-9]*)"
)
_PERP_CONTEXT_RE = re.compile(r"\b(?:perps?|perpetuals?|leverage[d]?)\b")
_PERP_MARGIN_RE = re.compile(rf"\bwith\s+(?P<amount>{AMOUNT})\s*(?P<unit>[a-z]+)?")
_VENUE_HINT_RE = re.compile(r"\b(?:on|via|using|at|through)\s+(?P<venue>[a-z][a-z0-9_]*)")

_SWAP_RE = re.compile(
    rf"\b(?:swap|convert|trade|exchange)\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<from>[a-z][a-z0-9]*)\s+"
    r"(?:to|for|into|->|>)\s+(?P<to>[a-z][a-z0-9]*)"
)
_SELL_RE = re.compile(
    rf"\bsell\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<from>[a-z][a-z0-9]*)\s+(?:for|to|into)\s+(?P<to>[a-z][a-z0-9]*)"
)

_DEPOSIT_RE = re.compile(
    rf"\b(?P<verb>deposit|supply|stake)\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<asset>{_NOT_PREPOSITION}[a-z][a-z0-9]*)?"
    r"(?:\s*(?:to|into|in|on)\s+(?:the\s+)?(?P<venue>[a-z][a-z0-9_]*))?"
)
_LEND_RE = re.compile(
    rf"\blend\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<asset>{_NOT_PREPOSITION}[a-z][a-z0-9]*)"
    r"(?:\s+(?:on|to|at|via)\s+(?P<venue>[a-z][a-z0-9_]*))?"
)

_BRIDGE_FULL_RE = re.compile(
    rf"\b(?:bridge|transfer|move|send)\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<asset>[a-z][a-z0-9]*)\s+"
    r"from\s+(?P<src>[a-z]+)\s+(?:to|into|onto|->)\s+(?P<dst>[a-z]+)"
)
_BRIDGE_PAIR_RE = re.compile(
    rf"\bbridge\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<asset>[a-z][a-z0-9]*)\s+(?P<src>{_CHAIN_WORDS})\s+"
    r"(?:to|->)\s+(?P<dst>[a-z]+)"
)
_BRIDGE_TO_RE = re.compile(
    rf"\bbridge\s+(?:(?P<amount>{AMOUNT})\s*)?(?P<asset>[a-z][a-z0-9]*)\s+(?:to|into|onto|->)\s+(?P<dst>[a-z]+)"
)

_ANALYTICS_RE = re.compile(
    r"\b(?:exposure|pnl|risk\s+(?:report|summary|metrics)|my\s+risk|"
    r"top\s+(?:\d+\s+)?(?:protocols?|markets?|pools?))\b"
)

_AMOUNT_ANYWHERE_RE = re.compile(rf"(?<![a-z])(?P<amount>{AMOUNT})(?:\s|$)")


def _raw(original: str, **params: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {"original_text": original}
    raw.update({k: v for k, v in params.items() if v is not None})
    return raw


def _amount_defaulted(raw: str | None) -> bool | None:
    """`True` when `raw` gives no usable amount and the default was substituted."""

    return True if parse_amount(raw) is None else None


def _venue_hint(text: str) -> str | None:
    for match in _VENUE_HINT_RE.finditer(text):
        venue = resolve_venue(match.group("venue"))
        if venue is not None:
            return venue
    return None


# ---------------------------------------------------------------------------------------------------
# Matchers (in evaluation order)


def _match_advanced(text: str, original: str) -> ParsedIntent | None:
    advanced = parse_advanced_intent(text, parse_step=parse_single_action)
    if advanced is None:
        return None
    return advanced_to_parsed(advanced, original)


def _match_hedge(text: str, original: str) -> ParsedIntent | None:
    if not _HEDGE_RE.search(text):
        return None
    return ParsedIntent(
        kind=IntentKind.unknown,
        action="hedge",
        raw_params=_raw(original, intent_type=IntentType.hedge.value, requires_portfolio=True),
    )


def _match_event(text: str, original: str) -> ParsedIntent | None:
    bet = _EVENT_BET_RE.search(text)
    if bet is None and not _EVENT_MARKET_RE.search(text):
        return None

    amount = None
    market = None
    if bet is not None:
        amount = normalize_amount(bet.group("amount")) if bet.group("amount") else None
        market = bet.group("market").strip()

    outcome = _EVENT_OUTCOME_RE.search(text)
    return ParsedIntent(
        kind=IntentKind.event,
        action="prediction_bet" if amount else "prediction",
        amount=amount,
        amount_unit="USDC" if amount else None,
        raw_params=_raw(
            original,
            intent_type=IntentType.prediction.value,
            market=market,
            outcome=outcome.group("outcome") if outcome else None,
        ),
    )


def _match_vault_discovery(text: str, original: str) -> ParsedIntent | None:
    if not _VAULT_DISCOVERY_RE.search(text):
        return None

    target = _TARGET_YIELD_RE.search(text)
    return ParsedIntent(
        kind=IntentKind.deposit,
        action="vault_discovery",
        amount_unit=find_known_asset(text.split()),
        raw_params=_raw(
            original,
            intent_type=IntentType.vault_discovery.value,
            requires_yield_ranking=True,
            target_yield=float(target.group("pct")) if target else None,
        ),
    )


def _bond_fixed_point(amount: Decimal) -> str:
    return str(int(amount * (Decimal(10) ** BOND_DECIMALS)))


def _match_market_creation(text: str, original: str) -> ParsedIntent | None:
    if not (_CREATE_VERB_RE.search(text) and _CREATE_NOUN_RE.search(text)):
        return None

    asset = None
    for pattern in _CREATE_ASSET_PATTERNS:
        match = pattern.search(text)
        if match and match.group("asset") not in _CREATE_NON_ASSETS:
            asset = normalize_asset(match.group("asset"))
            break
    if not asset:
        return None

    lev = _LEVERAGE_RE.search(text)
    fee = _TAKER_FEE_RE.search(text)
    bond = _BOND_RE.search(text)
    bond_amount = parse_amount(bond.group("amount")) if bond else None
    bond_asset = DEFAULT_BOND_ASSET
    if bond is not None and bond.group("unit"):
        bond_asset = normalize_asset(bond.group("unit"))

    max_leverage = clamp_leverage(float(lev.group("lev"))) if lev else DEFAULT_MARKET_MAX_LEVERAGE
    return ParsedIntent(
        kind=IntentKind.perp_create,
        action="create",
        amount=format_decimal(bond_amount) if bond_amount is not None else None,
        amount_unit=bond_asset if bond_amount is not None else None,
        target_asset=asset,
        leverage=max_leverage,
        raw_params=_raw(
            original,
            intent_type=IntentType.market_creation.value,
            max_leverage=max_leverage,
            taker_fee_bps=float(fee.group("fee")) if fee else DEFAULT_TAKER_FEE_BPS,
            bond_amount=_bond_fixed_point(bond_amount) if bond_amount is not None else None,
            bond_asset=bond_asset if bond_amount is not None else None,
        ),
    )


def _match_perp(text: str, original: str) -> ParsedIntent | None:
    for match in _PERP_RE.finditer(text):
        asset = normalize_asset(match.group("asset"))
        lev = _LEVERAGE_RE.search(text)
        plausible = (
                asset in CANONICAL_ASSETS
                or match.group("dollar") is not None
                or lev is not None
                or _PERP_CONTEXT_RE.search(text) is not None
        )
        if not plausible:
            continue

        margin = _PERP_MARGIN_RE.search(text)
        return ParsedIntent(
            kind=IntentKind.perp,
            action=match.group("side"),
            amount=normalize_amount(margin.group("amount")) if margin else None,
            amount_unit=PERP_MARGIN_UNIT if margin else None,
            target_asset=asset,
            leverage=float(lev.group("lev")) if lev else DEFAULT_PERP_LEVERAGE,
            venue=_venue_hint(text),
            raw_params=_raw(original, side=match.group("side")),
        )
    return None


def _match_swap(text: str, original: str) -> ParsedIntent | None:
    match = _SWAP_RE.search(text) or _SELL_RE.search(text)
    if not match:
        return None

    return ParsedIntent(
        kind=IntentKind.swap,
        action="swap",
        amount=normalize_amount(match.group("amount")),
        amount_unit=normalize_asset(match.group("from")),
        target_asset=normalize_asset(match.group("to")),
        venue=_venue_hint(text),
        raw_params=_raw(original, amount_defaulted=_amount_defaulted(match.group("amount"))),
    )


def _match_deposit(text: str, original: str) -> ParsedIntent | None:
    match = _DEPOSIT_RE.search(text)
    action = match.group("verb") if match else "lend"
    if not match:
        match = _LEND_RE.search(text)
    if not match:
        return None

    venue_word = match.group("venue")
    venue = resolve_venue(venue_word) or venue_word
    return ParsedIntent(
        kind=IntentKind.deposit,
        action=action,
        amount=normalize_amount(match.group("amount")),
        amount_unit=normalize_asset(match.group("asset")) or "USDC",
        venue=venue,
        raw_params=_raw(original, amount_defaulted=_amount_defaulted(match.group("amount"))),
    )


def _match_bridge(text: str, original: str) -> ParsedIntent | None:
    match = _BRIDGE_FULL_RE.search(text) or _BRIDGE_PAIR_RE.search(text) or _BRIDGE_TO_RE.search(text)
    if not match:
        return None

    groups = match.groupdict()
    asset = normalize_asset(groups["asset"])
    dest_chain = resolve_chain(groups["dst"]) or groups["dst"]

    warnings: list[str] = []
    source_chain = resolve_chain(groups.get("src"))
    inferred = source_chain is None
    if inferred:
        source_chain = native_chain_for_asset(asset)
    if source_chain == dest_chain:
        warnings.append(f"Source and destination chain are the same ({source_chain})")

    return ParsedIntent(
        kind=IntentKind.bridge,
        action="bridge",
        amount=normalize_amount(groups.get("amount")),
        amount_unit=asset,
        target_asset=asset,
        source_chain=source_chain,
        dest_chain=dest_chain,
        raw_params=_raw(
            original,
            source_chain_inferred=inferred or None,
            amount_defaulted=_amount_defaulted(groups.get("amount")),
            warnings=warnings or None,
        ),
    )


def _match_analytics(text: str, original: str) -> ParsedIntent | None:
    match = _ANALYTICS_RE.search(text)
    if not match:
        return None
    return ParsedIntent(
        kind=IntentKind.unknown,
        action="analytics",
        raw_params=_raw(original, intent_type=IntentType.analytics.value, query=match.group(0)),
    )


def _match_keyword_fallback(text: str, original: str) -> ParsedIntent | None:
    """Infer a perp/swap/deposit from loose keyword presence when no pattern matched."""

    tokens = text.split()
    side_word = next((t for t in tokens if t in SIDE_WORDS), None)
    asset = find_known_asset(tokens)
    lev = _LEVERAGE_RE.search(text)
    venue = next((v for v in (resolve_venue(t) for t in tokens) if v is not None), None)
    amount_match = _AMOUNT_ANYWHERE_RE.search(text)
    amount_raw = amount_match.group("amount") if amount_match else None

    if side_word and (lev or venue in PERP_VENUES or _PERP_CONTEXT_RE.search(text)):
        return ParsedIntent(
            kind=IntentKind.perp,
            action=SIDE_WORDS[side_word],
            target_asset=asset,
            leverage=float(lev.group("lev")) if lev else DEFAULT_PERP_LEVERAGE,
            venue=venue,
            raw_params=_raw(original, inferred=True),
        )

    if side_word in {"buy", "sell"} and asset:
        buying = side_word == "buy"
        return ParsedIntent(
            kind=IntentKind.swap,
            action="swap",
            amount=normalize_amount(amount_raw, default=DEFAULT_AMOUNT),
            amount_unit="USDC" if buying else asset,
            target_asset=asset if buying else "USDC",
            venue=venue,
            raw_params=_raw(original, inferred=True, amount_defaulted=_amount_defaulted(amount_raw)),
        )

    if venue in _LENDING_VENUES and asset:
        return ParsedIntent(
            kind=IntentKind.deposit,
            action="deposit",
            amount=normalize_amount(amount_raw),
            amount_unit=asset,
            venue=venue,
            raw_params=_raw(original, inferred=True, amount_defaulted=_amount_defaulted(amount_raw)),
        )

    return None


BASELINE_MATCHERS: tuple[Matcher, ...] = (
    _match_perp,
    _match_swap,
    _match_deposit,
    _match_bridge,
)

MATCHERS: tuple[Matcher, ...] = (
    _match_advanced,
    _match_hedge,
    _match_event,
    _match_vault_discovery,
    _match_market_creation,
    *BASELINE_MATCHERS,
    _match_analytics,
    _match_keyword_fallback,
)


def _run_matchers(matchers: tuple[Matcher, ...], text: str, original: str) -> ParsedIntent:
    normalized = normalize_text(text)
    for matcher in matchers:
        try:
            parsed = matcher(normalized, original)
        except (ValueError, ArithmeticError) as exc:
            # A matcher that extracted something the schema or decimal context rejects didn't match.
            logger.debug("matcher rejected matcher=%s reason=%s", matcher.__name__, exc)
            continue
        if parsed is not None:
            return parsed
    return unknown_intent(original)


def parse_single_action(text: str) -> ParsedIntent:
    """Parse one plain action (perp/swap/deposit/bridge); used for the steps of multi-step plans."""

    return _run_matchers(BASELINE_MATCHERS, text, text)


def parse_intent(text: str | None) -> ParsedIntent:
    """Parse free text into a `ParsedIntent`; never raises."""

    original = text or ""
    return _run_matchers(MATCHERS, original, original)
