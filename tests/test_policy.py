"""Tests for path classification, transition rules and the session policy engine."""

from __future__ import annotations

import pytest

from src.intent.rules_parser import parse_intent
from src.intent.schema import IntentKind, ParsedIntent
from src.policy.engine import (
    MAX_PENDING_CONFIRMATIONS,
    ConfirmationReply,
    ContextRegistry,
    PolicyConfig,
    PolicyEngine,
    PolicyOutcome,
    SessionState,
)
from src.policy.paths import (
    AssetClass,
    ConfirmationType,
    IntentPath,
    classify_asset_for_leverage,
    classify_parsed_intent_path,
    classify_text_path,
    is_cancellation,
    is_confirmation,
    matches_confirmation_type,
    validate_path_integrity,
    validate_transition,
)
from src.security.audit import AuditLog


@pytest.mark.parametrize(
    ("text", "path"),
    [
        ("long btc 20x", IntentPath.planning),
        ("swap 1000 usdc to weth", IntentPath.planning),
        ("bet 100 on trump winning", IntentPath.event),
        ("launch a doge perp market", IntentPath.creation),
        ("show my pnl", IntentPath.research),
        ("do something random", IntentPath.research),
    ],
)
def test_classify_parsed_intent_path(text: str, path: IntentPath) -> None:
    assert classify_parsed_intent_path(parse_intent(text)) == path


def test_classify_text_path() -> None:
    assert classify_text_path("execute it") == IntentPath.execution
    assert classify_text_path("what is on polymarket") == IntentPath.event
    assert classify_text_path("bridge usdc to sol") == IntentPath.planning
    assert classify_text_path("hello") == IntentPath.research


def test_transition_table() -> None:
    assert validate_transition(None, IntentPath.planning).allowed
    assert validate_transition(IntentPath.planning, IntentPath.planning).allowed
    assert validate_transition(IntentPath.research, IntentPath.event).allowed

    check = validate_transition(IntentPath.research, IntentPath.execution)
    assert not check.allowed
    assert check.confirmation_type == ConfirmationType.simple

    assert (
        validate_transition(IntentPath.creation, IntentPath.execution).confirmation_type
        == ConfirmationType.bond_ack
    )
    assert (
        validate_transition(IntentPath.event, IntentPath.execution).confirmation_type
        == ConfirmationType.risk_ack
    )


def test_high_value_execution_needs_acknowledgement() -> None:
    check = validate_transition(None, IntentPath.execution, 25_000)
    assert not check.allowed
    assert check.confirmation_type == ConfirmationType.high_value_ack

    assert validate_transition(None, IntentPath.execution, 500).allowed


def test_path_integrity_rejects_cross_path_keywords() -> None:
    assert not validate_path_integrity("bet 100 on btc 10x", IntentPath.event).valid
    assert not validate_path_integrity("swap then bet 5 on polymarket", IntentPath.planning).valid
    assert validate_path_integrity("bet 100 on trump winning", IntentPath.event).valid


def test_confirmation_keywords() -> None:
    assert is_confirmation("yes")
    assert is_confirmation("go ahead please")
    assert not is_confirmation("yesterday")
    assert is_cancellation("cancel that")
    assert not is_cancellation("nothing")

    assert matches_confirmation_type("I understand the bond", ConfirmationType.bond_ack)
    assert not matches_confirmation_type("yes", ConfirmationType.bond_ack)
    assert matches_confirmation_type("I accept the risk", ConfirmationType.risk_ack)
    assert matches_confirmation_type("proceed", ConfirmationType.high_value_ack)
    assert matches_confirmation_type("ok", ConfirmationType.simple)


def _perp(leverage: int, asset: str = "BTC") -> ParsedIntent:
    return ParsedIntent(
        kind=IntentKind.perp,
        action="long",
        target_asset=asset,
        leverage=leverage,
        raw_params={"original_text": f"long {asset.lower()} {leverage}x"},
    )


def test_fresh_session_is_allowed_onto_planning() -> None:
    engine = PolicyEngine()
    decision = engine.evaluate_path_policy("s1", IntentPath.planning, parsed=_perp(20))
    assert decision.outcome == PolicyOutcome.allowed
    assert decision.from_path is None
    assert engine.context("s1").state == SessionState.classified


def test_transition_table_applies_to_session_history() -> None:
    engine = PolicyEngine()
    assert engine.transition_path("s1", IntentPath.research)

    decision = engine.evaluate_path_policy("s1", IntentPath.execution)
    assert decision.requires_confirmation
    assert decision.code == "PATH_TRANSITION_BLOCKED"
    assert decision.confirmation_type == ConfirmationType.simple

    assert not engine.transition_path("s1", IntentPath.execution)
    assert engine.transition_path("s1", IntentPath.execution, force=True)
    assert engine.context("s1").current_path == IntentPath.execution


def test_integrity_violation_is_blocked_and_audited() -> None:
    audit = AuditLog()
    engine = PolicyEngine(audit=audit)
    parsed = ParsedIntent(
        kind=IntentKind.event,
        action="prediction_bet",
        amount="100",
        raw_params={"original_text": "bet 100 on btc 10x"},
    )

    decision = engine.evaluate_path_policy("s1", IntentPath.event, parsed=parsed)

    assert decision.blocked
    assert decision.code == "PATH_INTEGRITY_VIOLATION"
    violations = audit.recent_path_violations()
    assert len(violations) == 1
    assert violations[0].blocked
    assert violations[0].to_path == IntentPath.event
    assert audit.recent_alerts()[0].category == "path_violation"


def test_spend_limit_blocks_even_confirmed_ids() -> None:
    engine = PolicyEngine(PolicyConfig(max_intent_usd=1_000))
    engine.confirm("s1", "abc")

    decision = engine.evaluate_path_policy(
        "s1", IntentPath.planning, usd_estimate=5_000, intent_id="abc"
    )
    assert decision.blocked
    assert decision.code == "SPEND_LIMIT_EXCEEDED"


def test_confirmed_id_bypasses_transition_rules() -> None:
    engine = PolicyEngine()
    engine.transition_path("s1", IntentPath.research)
    engine.confirm("s1", "abc")

    decision = engine.evaluate_path_policy("s1", IntentPath.execution, intent_id="abc")
    assert decision.allowed


def test_capability_gates() -> None:
    engine = PolicyEngine(PolicyConfig(max_auto_leverage=50))

    high_leverage = engine.evaluate_path_policy("s1", IntentPath.planning, parsed=_perp(75))
    assert high_leverage.requires_confirmation
    assert high_leverage.code == "CONFIRMATION_REQUIRED"
    assert high_leverage.confirmation_type == ConfirmationType.risk_ack

    bridge = parse_intent("bridge 60000 usdc from eth to sol")
    large_bridge = engine.evaluate_path_policy(
        "s2", IntentPath.planning, parsed=bridge, usd_estimate=60_000
    )
    assert large_bridge.confirmation_type == ConfirmationType.high_value_ack

    bonded = parse_intent("launch a doge perp market with bond 500 hype")
    creation = engine.evaluate_path_policy("s3", IntentPath.creation, parsed=bonded)
    assert creation.confirmation_type == ConfirmationType.bond_ack


def test_process_confirmation_reply_flow() -> None:
    engine = PolicyEngine()
    assert engine.process_confirmation("s1", "yes").reply == ConfirmationReply.nothing_pending

    decision = engine.evaluate_path_policy("s1", IntentPath.planning, parsed=_perp(75))
    request = engine.request_confirmation("s1", decision, parsed=_perp(75))
    assert engine.context("s1").state == SessionState.confirming

    assert engine.process_confirmation("s1", "yes").reply == ConfirmationReply.unrecognized

    outcome = engine.process_confirmation("s1", "I accept the risk")
    assert outcome.reply == ConfirmationReply.confirmed
    assert outcome.request == request
    context = engine.context("s1")
    assert request.confirmation_id in context.confirmed_intent_ids
    assert context.current_path == IntentPath.planning
    assert context.pending_confirmations == {}


def test_cancellation_clears_pending_request() -> None:
    engine = PolicyEngine()
    decision = engine.evaluate_path_policy("s1", IntentPath.planning, parsed=_perp(75))
    engine.request_confirmation("s1", decision)

    assert engine.process_confirmation("s1", "cancel").reply == ConfirmationReply.cancelled
    assert engine.context("s1").state == SessionState.cancelled
    assert engine.context("s1").pending_confirmations == {}


def test_execution_complete_returns_session_to_research() -> None:
    engine = PolicyEngine()
    engine.transition_path("s1", IntentPath.planning)
    engine.mark_execution_started("s1")
    assert engine.context("s1").state == SessionState.executing

    engine.mark_execution_complete("s1", success=False)
    context = engine.context("s1")
    assert context.current_path == IntentPath.research
    assert context.state == SessionState.failed
    assert len(context.transition_history) == 1


def test_sessions_are_isolated() -> None:
    engine = PolicyEngine()
    engine.transition_path("a", IntentPath.research)
    assert engine.context("b").current_path is None
    assert engine.registry.sessions() == ["a", "b"]


@pytest.mark.parametrize(
    ("symbol", "asset_class"),
    [
        ("btc-usd", AssetClass.major),
        ("ETH", AssetClass.major),
        ("PEPE-PERP", AssetClass.meme),
        ("doge", AssetClass.meme),
        ("SOL", AssetClass.altcoin),
        (None, AssetClass.altcoin),
    ],
)
def test_classify_asset_for_leverage(symbol: str | None, asset_class: AssetClass) -> None:
    assert classify_asset_for_leverage(symbol) == asset_class


def test_leverage_limit_depends_on_asset_class() -> None:
    engine = PolicyEngine()

    assert engine.evaluate_path_policy("s1", IntentPath.planning, parsed=_perp(20)).allowed

    meme = engine.evaluate_path_policy("s2", IntentPath.planning, parsed=_perp(20, "PEPE"))
    assert meme.requires_confirmation
    assert meme.confirmation_type == ConfirmationType.risk_ack
    assert "10x" in meme.reason

    assert engine.evaluate_path_policy("s3", IntentPath.planning, parsed=_perp(20, "SOL")).allowed
    altcoin = engine.evaluate_path_policy("s4", IntentPath.planning, parsed=_perp(30, "SOL"))
    assert altcoin.confirmation_type == ConfirmationType.risk_ack


def test_class_limits_never_exceed_global_limit() -> None:
    config = PolicyConfig(max_auto_leverage=5, altcoin_max_leverage=25, meme_max_leverage=10)
    assert config.max_leverage_for(AssetClass.meme) == 5
    assert config.max_leverage_for(AssetClass.altcoin) == 5
    assert config.max_leverage_for(AssetClass.major) == 5


def test_defaulted_amount_is_not_hard_blocked_by_spend_limit() -> None:
    engine = PolicyEngine()
    parsed = parse_intent("bridge eth to sol")
    assert parsed.raw_params["amount_defaulted"] is True

    decision = engine.evaluate_path_policy(
        "s1", IntentPath.planning, parsed=parsed, usd_estimate=2_000_000
    )
    assert not decision.blocked
    assert decision.confirmation_type == ConfirmationType.high_value_ack

    explicit = parse_intent("bridge 1000 eth to sol")
    blocked = engine.evaluate_path_policy(
        "s2", IntentPath.planning, parsed=explicit, usd_estimate=2_000_000
    )
    assert blocked.code == "SPEND_LIMIT_EXCEEDED"


def test_registry_evicts_least_recently_used_session() -> None:
    registry = ContextRegistry(max_sessions=2)
    registry.get("a")
    registry.get("b")
    registry.get("a")
    registry.get("c")
    assert registry.sessions() == ["a", "c"]


@pytest.mark.asyncio
async def test_registry_does_not_evict_locked_sessions() -> None:
    registry = ContextRegistry(max_sessions=2)
    lock = registry.lock("a")
    registry.get("b")

    async with lock:
        registry.get("c")
        assert registry.sessions() == ["a", "c"]
        assert registry.lock("a") is lock


def test_reset_drops_context_and_idle_lock() -> None:
    registry = ContextRegistry()
    first = registry.lock("a")
    registry.reset("a")
    assert registry.sessions() == []
    assert registry.lock("a") is not first


def test_pending_confirmations_are_capped() -> None:
    engine = PolicyEngine()
    decision = engine.evaluate_path_policy("s1", IntentPath.planning, parsed=_perp(75))
    requests = [engine.request_confirmation("s1", decision) for _ in range(MAX_PENDING_CONFIRMATIONS + 5)]

    pending = engine.context("s1").pending_confirmations
    assert len(pending) == MAX_PENDING_CONFIRMATIONS
    assert requests[0].confirmation_id not in pending
    assert requests[-1].confirmation_id in pending
