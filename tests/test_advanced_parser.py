"""Tests for the advanced strategy parser (DCA, leveraged entries, yield search, multi-step)."""

from __future__ import annotations

from src.intent.advanced_parser import DcaIntent, LeverageIntent, parse_advanced_intent
from src.intent.rules_parser import parse_intent, parse_single_action
from src.intent.schema import IntentKind, IntentType


def test_dca_total_amount_is_split_across_periods() -> None:
    intent = parse_intent("dca 700 usdc into eth over 7 days")
    assert intent.kind == IntentKind.swap
    assert intent.action == "dca"
    assert intent.amount == "100"
    assert intent.amount_unit == "USDC"
    assert intent.target_asset == "ETH"
    assert intent.intent_type == IntentType.dca
    assert intent.raw_params["total_amount"] == "700"
    assert intent.raw_params["num_trades"] == 7
    assert intent.raw_params["interval"] == "day"


def test_dca_recurring_buy_multiplies_per_trade_amount() -> None:
    advanced = parse_advanced_intent("buy 50 usdc of sol every day for 10 days", parse_single_action)
    assert isinstance(advanced, DcaIntent)
    assert advanced.asset == "SOL"
    assert advanced.per_trade_amount == "50"
    assert advanced.total_amount == "500"
    assert advanced.num_trades == 10
    assert advanced.interval_ms == 86_400_000


def test_dca_defaults_to_seven_periods() -> None:
    intent = parse_intent("dca 70 usdc into btc")
    assert intent.raw_params["num_trades"] == 7
    assert intent.amount == "10"


def test_leveraged_entry_with_margin_and_exits() -> None:
    intent = parse_intent("long eth 5x with 500 usdc tp 2500 sl 1800")
    assert intent.kind == IntentKind.perp
    assert intent.action == "long"
    assert intent.target_asset == "ETH"
    assert intent.leverage == 5
    assert intent.amount == "500"
    assert intent.amount_unit == "USDC"
    assert intent.raw_params["take_profit"] == "2500"
    assert intent.raw_params["stop_loss"] == "1800"
    assert intent.raw_params["entry_price"] is None


def test_bare_leveraged_perp_is_left_to_baseline_matcher() -> None:
    assert parse_advanced_intent("long btc 20x", parse_single_action) is None


def test_leverage_parse_clamps_multiplier() -> None:
    advanced = parse_advanced_intent("short sol 500x with 100 usdc", parse_single_action)
    assert isinstance(advanced, LeverageIntent)
    assert advanced.leverage == 100


def test_yield_search() -> None:
    intent = parse_intent("find the best yield for usdc")
    assert intent.kind == IntentKind.deposit
    assert intent.action == "yield_optimize"
    assert intent.amount is None
    assert intent.amount_unit == "USDC"
    assert intent.intent_type == IntentType.yield_optimize
    assert intent.raw_params["risk_level"] == "medium"


def test_yield_park_with_risk_preference() -> None:
    intent = parse_intent("park my 5000 usdc somewhere safe")
    assert intent.action == "yield_optimize"
    assert intent.amount == "5000"
    assert intent.raw_params["risk_level"] == "low"


def test_multi_step_then_chain() -> None:
    intent = parse_intent("swap 100 usdc to eth then deposit 50 usdc into aave")
    assert intent.kind == IntentKind.swap
    assert intent.amount == "100"
    assert intent.intent_type == IntentType.multi_step

    steps = intent.raw_params["steps"]
    assert len(steps) == 2
    assert steps[1]["kind"] == "deposit"
    assert steps[1]["amount"] == "50"
    assert steps[1]["venue"] == "aave"


def test_multi_step_half_and_rest() -> None:
    intent = parse_intent("1000 usdc half to eth and the rest to aave")
    steps = intent.raw_params["steps"]
    assert [s["kind"] for s in steps] == ["swap", "deposit"]
    assert [s["amount"] for s in steps] == ["500", "500"]
    assert steps[0]["target_asset"] == "ETH"


def test_multi_step_percentage_allocations() -> None:
    intent = parse_intent("split 1000 usdc 60% to eth 40% to sol")
    steps = intent.raw_params["steps"]
    assert [s["amount"] for s in steps] == ["600", "400"]
    assert [s["target_asset"] for s in steps] == ["ETH", "SOL"]


def test_multi_step_requires_recognized_first_step() -> None:
    intent = parse_intent("think about it then swap 1 eth to usdc")
    assert intent.kind == IntentKind.swap
    assert intent.intent_type is None
    assert intent.amount == "1"
