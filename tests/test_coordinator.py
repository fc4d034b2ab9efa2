"""End-to-end tests for the execution coordinator with fake chain executors.

Every test builds its own ledger, policy engine and limiter registry, so no state leaks between
tests. Retries are configured with zero backoff.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from src.execution.contracts import (
    CapabilityVerdict,
    ChainExecutor,
    ChainExecutorError,
    ChainOperation,
    InsufficientBalanceError,
    NonceError,
    Receipt,
    ReceiptTimeoutError,
)
from src.execution.coordinator import PENDING_CONFIRMATION, ExecutionCoordinator
from src.execution.explorer import build_explorer_url
from src.execution.simulated import SimulatedChainExecutor
from src.execution.submitters import ProofSubmitter, RealSubmitter
from src.ledger.memory import InMemoryLedger
from src.ledger.models import ExecutionStatus, IntentStatus
from src.policy.engine import PolicyEngine
from src.policy.paths import IntentPath
from src.resilience.rate_limiter import RateLimiterRegistry
from src.resilience.retry import RetryConfig
from src.routing.router import RoutingFeatures
from src.routing.venues import CHAIN_NETWORKS
from src.security.audit import AuditLog

_RETRY = RetryConfig(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter_factor=0, timeout_ms=1000)


class _FakeExecutor:
    """Scriptable executor: queued submit errors, then a receipt (or a receipt error)."""

    def __init__(
            self,
            chain: str = "ethereum",
            *,
            submit_errors: list[Exception] | None = None,
            receipt_success: bool = True,
            receipt_error: Exception | None = None,
    ) -> None:
        self.chain = chain
        self.submit_errors = list(submit_errors or [])
        self.receipt_success = receipt_success
        self.receipt_error = receipt_error
        self.operations: list[ChainOperation] = []

    @property
    def address(self) -> str | None:
        return f"0x{self.chain}-signer"

    async def submit(self, operation: ChainOperation) -> str:
        self.operations.append(operation)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return f"0x{self.chain}{len(self.operations)}"

    async def wait_for_receipt(self, tx_hash: str, timeout_s: float) -> Receipt:
        if self.receipt_error is not None:
            raise self.receipt_error
        return Receipt(tx_hash=tx_hash, success=self.receipt_success, block_number=7, gas_used=21_000)

    async def get_pending_nonce(self) -> int:
        return 7

    def build_explorer_url(self, chain: str, network: str, tx_hash: str) -> str:
        return build_explorer_url(chain, network, tx_hash)


class _Validator:
    def __init__(self, verdict: CapabilityVerdict | None = None, error: Exception | None = None) -> None:
        self.verdict = verdict or CapabilityVerdict(valid=True)
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def validate(self, **kwargs: Any) -> CapabilityVerdict:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.verdict


class _Feedback:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def submit_feedback(self, **kwargs: Any) -> None:
        self.calls.append(kwargs)
        if self.fail:
            raise ConnectionError("feedback endpoint down")


class _FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _sim_executors() -> dict[str, ChainExecutor]:
    return {chain: SimulatedChainExecutor(chain) for chain in CHAIN_NETWORKS}


def _coordinator(
        executors: Mapping[str, ChainExecutor] | None = None,
        *,
        ledger: InMemoryLedger | None = None,
        features: RoutingFeatures | None = None,
        validator: _Validator | None = None,
        feedback: _Feedback | None = None,
        sleep: _FakeSleep | None = None,
) -> ExecutionCoordinator:
    executors = _sim_executors() if executors is None else executors
    audit = AuditLog()
    options: dict[str, Any] = {
        "limiters": RateLimiterRegistry(6000),
        "retry_config": _RETRY,
        "confirmation_timeout_s": 1.0,
        "audit": audit,
    }
    extra: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
    return ExecutionCoordinator(
        ledger=ledger or InMemoryLedger(),
        policy=PolicyEngine(audit=audit),
        features=features or RoutingFeatures(signer_chains=frozenset(CHAIN_NETWORKS)),
        proof_submitter=ProofSubmitter(executors, **options),
        real_submitter=RealSubmitter(executors, **options),
        validator=validator,
        feedback=feedback,
        **extra,
    )


# ---------------------------------------------------------------------------------------------------
# Happy paths


@pytest.mark.asyncio
async def test_perp_without_adapter_records_confirmed_proof() -> None:
    coordinator = _coordinator()

    result = await coordinator.run_intent("long btc 20x", session_id="s1")

    assert result.ok
    assert result.status == "confirmed"
    assert result.error is None
    assert result.tx_hash is not None and result.tx_hash.startswith("0x")
    assert result.explorer_url == f"https://sepolia.etherscan.io/tx/{result.tx_hash}"
    assert result.metadata["execution_type"] == "proof_only"
    assert result.metadata["executed_kind"] == "proof"
    assert "PROOF_ONLY: DEMO_PERP_ADAPTER_ADDRESS not configured." in result.metadata["warnings"]

    intent = await coordinator.ledger.get_intent(result.intent_id or "")
    assert intent is not None
    assert intent.status == IntentStatus.confirmed
    assert intent.intent_kind == "perp"
    assert intent.metadata["parsed"]["leverage"] == 20
    assert intent.metadata["route"]["venue"] == "demo_perp"

    executions = await coordinator.ledger.get_executions_for_intent(intent.id)
    assert [e.id for e in executions] == [result.execution_id]
    assert executions[0].status == ExecutionStatus.confirmed
    assert executions[0].kind == "proof"

    assert coordinator.policy.context("s1").current_path == IntentPath.research


@pytest.mark.asyncio
async def test_real_swap_sends_venue_operation() -> None:
    executor = _FakeExecutor()
    coordinator = _coordinator({"ethereum": executor})

    result = await coordinator.run_intent("swap 1000 usdc to weth")

    assert result.ok
    assert result.status == "confirmed"
    assert result.tx_hash == "0xethereum1"
    operation = executor.operations[0]
    assert operation.kind == "swap"
    assert operation.venue == "demo_dex"
    assert operation.amount == "1000"
    assert operation.payload == {"from_asset": "USDC", "to_asset": "ETH"}


@pytest.mark.asyncio
async def test_cross_chain_bridge_records_source_and_destination_proofs() -> None:
    coordinator = _coordinator()

    result = await coordinator.run_intent("bridge 10000 usdc from eth to sol")

    assert result.ok
    assert result.status == "confirmed"
    assert result.metadata["source_chain_proof"]["chain"] == "ethereum"
    assert result.metadata["dest_chain_proof"]["chain"] == "solana"
    assert result.metadata["dest_chain_proof"]["status"] == "confirmed"

    executions = await coordinator.ledger.get_executions_for_intent(result.intent_id or "")
    assert sorted(e.chain for e in executions) == ["ethereum", "solana"]
    source = next(e for e in executions if e.chain == "ethereum")
    assert source.id == result.execution_id
    assert source.usd_estimate == 10000.0


@pytest.mark.asyncio
async def test_analytics_is_recorded_offchain_without_validation() -> None:
    validator = _Validator()
    coordinator = _coordinator(validator=validator)

    result = await coordinator.run_intent("show my pnl")

    assert result.ok
    assert result.tx_hash is None
    assert result.metadata["executed_kind"] == "offchain"
    assert validator.calls == []


@pytest.mark.asyncio
async def test_sanitized_text_and_caller_metadata_are_stored() -> None:
    coordinator = _coordinator()

    result = await coordinator.run_intent(
        "swap 100 USDC to ETH; rm -rf /", session_id="web", metadata={"source": "ui"}
    )

    intent = await coordinator.ledger.get_intent(result.intent_id or "")
    assert intent is not None
    assert intent.intent_text == "swap 100 USDC to ETH"
    assert intent.metadata["source"] == "ui"
    assert intent.metadata["session_id"] == "web"
    assert intent.metadata["path"] == "planning"
    assert intent.metadata["sanitize_warnings"] == ["Removed shell command patterns"]
    assert intent.metadata["parsed"]["amount"] == "100"


# ---------------------------------------------------------------------------------------------------
# Chain failures


@pytest.mark.asyncio
async def test_receipt_timeout_is_pending_not_failed() -> None:
    executor = _FakeExecutor(receipt_error=ReceiptTimeoutError("no receipt"))
    coordinator = _coordinator({"ethereum": executor})

    result = await coordinator.run_intent("do something random")

    assert result.ok
    assert result.status == "pending"
    assert result.error is None
    assert result.tx_hash == "0xethereum1"

    intent = await coordinator.ledger.get_intent(result.intent_id or "")
    assert intent is not None
    assert intent.status == IntentStatus.pending
    executions = await coordinator.ledger.get_executions_for_intent(intent.id)
    assert executions[0].status == ExecutionStatus.pending


@pytest.mark.asyncio
async def test_nonce_error_resubmits_once_with_pending_nonce() -> None:
    executor = _FakeExecutor(submit_errors=[NonceError("nonce too low")])
    coordinator = _coordinator({"ethereum": executor})

    result = await coordinator.run_intent("do something random")

    assert result.ok
    assert [op.nonce for op in executor.operations] == [None, 7]
    assert result.tx_hash == "0xethereum2"


@pytest.mark.asyncio
async def test_transient_submit_error_is_retried() -> None:
    executor = _FakeExecutor(submit_errors=[ConnectionError("econnreset")])
    coordinator = _coordinator({"ethereum": executor})

    result = await coordinator.run_intent("do something random")

    assert result.ok
    assert len(executor.operations) == 2


@pytest.mark.asyncio
async def test_reverted_receipt_fails_at_confirm_stage() -> None:
    executor = _FakeExecutor(receipt_success=False)
    coordinator = _coordinator({"ethereum": executor})

    result = await coordinator.run_intent("do something random")

    assert not result.ok
    assert result.status == "failed"
    assert result.error is not None
    assert result.error.stage == "confirm"
    assert result.error.code == "TX_REVERTED"

    intent = await coordinator.ledger.get_intent(result.intent_id or "")
    assert intent is not None
    assert intent.status == IntentStatus.failed
    assert intent.failure_stage == "confirm"
    assert intent.error_code == "TX_REVERTED"


@pytest.mark.asyncio
async def test_missing_executor_fails_with_config_missing() -> None:
    coordinator = _coordinator({})

    result = await coordinator.run_intent("long btc 20x")

    assert not result.ok
    assert result.error is not None
    assert result.error.stage == "execute"
    assert result.error.code == "CONFIG_MISSING"
    assert coordinator.policy.audit is not None
    signing = coordinator.policy.audit.recent_signing()
    assert len(signing) == 1
    assert not signing[0].guard_result.allowed


@pytest.mark.asyncio
async def test_executor_error_codes_are_kept() -> None:
    executor = _FakeExecutor(submit_errors=[InsufficientBalanceError("insufficient funds")])
    coordinator = _coordinator({"ethereum": executor})

    result = await coordinator.run_intent("do something random")

    assert result.error is not None
    assert result.error.code == "INSUFFICIENT_BALANCE"


@pytest.mark.asyncio
async def test_generic_errors_use_submitter_default_codes() -> None:
    proof_executor = _FakeExecutor(submit_errors=[ChainExecutorError("boom")])
    proof = await _coordinator({"ethereum": proof_executor}).run_intent("do something random")
    assert proof.error is not None
    assert proof.error.code == "PROOF_TX_FAILED"

    perp_executor = _FakeExecutor(submit_errors=[ChainExecutorError("boom")])
    features = RoutingFeatures(signer_chains=frozenset({"ethereum"}), demo_perp_adapter="0xadapter")
    perp = await _coordinator({"ethereum": perp_executor}, features=features).run_intent("long btc 20x")
    assert perp.error is not None
    assert perp.error.code == "PERP_EXECUTION_ERROR"
    assert perp_executor.operations[0].adapter == "0xadapter"


@pytest.mark.asyncio
async def test_ledger_crash_marks_intent_failed() -> None:
    class _BrokenLedger(InMemoryLedger):
        async def finalize_execution(self, *args: Any, **kwargs: Any) -> Any:
            raise RuntimeError("disk full")

    ledger = _BrokenLedger()
    coordinator = _coordinator(ledger=ledger)

    result = await coordinator.run_intent("do something random")

    assert not result.ok
    assert result.error is not None
    assert result.error.code == "EXECUTION_ERROR"
    assert result.error.message == "disk full"
    intent = await ledger.get_intent(result.intent_id or "")
    assert intent is not None
    assert intent.status == IntentStatus.failed


# ---------------------------------------------------------------------------------------------------
# Routing, capability and feedback


@pytest.mark.asyncio
async def test_unimplemented_venue_fails_each_time_in_same_session() -> None:
    coordinator = _coordinator()

    first = await coordinator.run_intent("long eth 10x on drift", session_id="s1")
    second = await coordinator.run_intent("long eth 10x on drift", session_id="s1")

    for result in (first, second):
        assert not result.ok
        assert result.error is not None
        assert result.error.stage == "route"
        assert result.error.code == "VENUE_NOT_IMPLEMENTED"
        intent = await coordinator.ledger.get_intent(result.intent_id or "")
        assert intent is not None
        assert intent.status == IntentStatus.failed
        assert intent.failure_stage == "route"
    assert first.intent_id != second.intent_id


@pytest.mark.asyncio
async def test_invalid_capability_fails_at_route_stage() -> None:
    validator = _Validator(CapabilityVerdict(valid=False, errors=["asset not listed"]))
    coordinator = _coordinator(validator=validator)

    result = await coordinator.run_intent("swap 1000 usdc to weth")

    assert result.error is not None
    assert result.error.stage == "route"
    assert result.error.code == "CAPABILITY_INVALID"
    assert result.error.message == "asset not listed"
    assert validator.calls[0]["chain"] == "ethereum"
    assert await coordinator.ledger.get_executions_for_intent(result.intent_id or "") == []


@pytest.mark.asyncio
async def test_validator_outage_does_not_block_execution() -> None:
    coordinator = _coordinator(validator=_Validator(error=ConnectionError("registry down")))

    result = await coordinator.run_intent("swap 1000 usdc to weth")

    assert result.ok
    assert "Capability validation unavailable" in result.metadata["warnings"]


@pytest.mark.asyncio
async def test_feedback_failure_is_not_surfaced() -> None:
    feedback = _Feedback(fail=True)
    coordinator = _coordinator(feedback=feedback)

    result = await coordinator.run_intent("swap 1000 usdc to weth")

    assert result.ok
    assert feedback.calls[0]["success"] is True
    assert feedback.calls[0]["kind"] == "swap"
    assert feedback.calls[0]["intent_id"] == result.intent_id


# ---------------------------------------------------------------------------------------------------
# Policy


@pytest.mark.asyncio
async def test_integrity_violation_is_refused_before_ledger_write() -> None:
    coordinator = _coordinator()

    result = await coordinator.run_intent("bet 100 on btc 10x")

    assert not result.ok
    assert result.intent_id is None
    assert result.error is not None
    assert result.error.stage == "policy"
    assert result.error.code == "PATH_INTEGRITY_VIOLATION"


@pytest.mark.asyncio
async def test_spend_limit_is_refused() -> None:
    result = await _coordinator().run_intent("swap 1000 btc to usdc")

    assert result.error is not None
    assert result.error.code == "SPEND_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_defaulted_amount_asks_instead_of_refusing() -> None:
    result = await _coordinator().run_intent("bridge eth to sol", session_id="s1")

    assert result.error is None
    assert result.status == PENDING_CONFIRMATION
    assert result.metadata["confirmation_type"] == "high_value_ack"


@pytest.mark.asyncio
async def test_confirmation_round_trip() -> None:
    coordinator = _coordinator()

    pending = await coordinator.run_intent("long btc 75x", session_id="s1")

    assert not pending.ok
    assert pending.status == PENDING_CONFIRMATION
    assert pending.error is None
    assert pending.metadata["confirmation_type"] == "risk_ack"
    confirmation_id = pending.metadata["confirmation_id"]
    assert await coordinator.ledger.get_intent(confirmation_id) is None

    assert await coordinator.respond_to_confirmation("s1", "yes") is None

    confirmed = await coordinator.respond_to_confirmation("s1", "I accept the risk")
    assert confirmed is not None
    assert confirmed.ok
    assert confirmed.intent_id == confirmation_id
    assert confirmed.status == "confirmed"

    replay = await coordinator.run_intent(
        "long btc 75x", session_id="s1", confirmed_intent_id=confirmation_id
    )
    assert replay.intent_id == confirmation_id
    assert replay.execution_id == confirmed.execution_id
    assert len(await coordinator.ledger.get_executions_for_intent(confirmation_id)) == 1


@pytest.mark.asyncio
async def test_cancelled_confirmation_runs_nothing() -> None:
    coordinator = _coordinator()
    pending = await coordinator.run_intent("long btc 75x", session_id="s1")

    assert await coordinator.respond_to_confirmation("s1", "cancel") is None
    assert await coordinator.ledger.get_intent(pending.metadata["confirmation_id"]) is None


# ---------------------------------------------------------------------------------------------------
# Plan-only, batches and out-of-band failures


@pytest.mark.asyncio
async def test_plan_only_then_execute_by_id() -> None:
    coordinator = _coordinator()

    planned = await coordinator.run_intent("swap 1000 usdc to weth", session_id="s1", plan_only=True)

    assert planned.ok
    assert planned.status == "routed"
    assert planned.metadata["route"]["execution_type"] == "real"
    assert planned.execution_id is None

    executed = await coordinator.execute_intent_by_id(planned.intent_id or "")
    assert executed.ok
    assert executed.status == "confirmed"
    assert executed.intent_id == planned.intent_id

    again = await coordinator.execute_intent_by_id(planned.intent_id or "")
    assert again.error is not None
    assert again.error.code == "INVALID_STATUS"


@pytest.mark.asyncio
async def test_execute_by_id_rejects_unknown_and_unplanned_intents() -> None:
    coordinator = _coordinator()

    missing = await coordinator.execute_intent_by_id("missing")
    assert missing.error is not None
    assert missing.error.code == "INTENT_NOT_FOUND"

    intent = await coordinator.ledger.create_intent(intent_text="x", intent_kind="unknown")
    await coordinator.ledger.update_intent_status(intent.id, IntentStatus.routed)
    unplanned = await coordinator.execute_intent_by_id(intent.id)
    assert unplanned.error is not None
    assert unplanned.error.code == "INVALID_METADATA"


@pytest.mark.asyncio
async def test_sequential_batch_waits_between_items() -> None:
    sleep = _FakeSleep()
    coordinator = _coordinator(sleep=sleep)

    results = await coordinator.run_batch(
        ["long btc 20x", "show my pnl", "long eth 10x on drift"], delay_s=0.5
    )

    assert [r.ok for r in results] == [True, True, False]
    assert sleep.calls == [0.5, 0.5]


@pytest.mark.asyncio
async def test_parallel_batch_keeps_input_order() -> None:
    sleep = _FakeSleep()
    coordinator = _coordinator(sleep=sleep)

    results = await coordinator.run_batch(
        ["swap 1000 usdc to weth", "do something random"], parallel=True, delay_s=1.0
    )

    assert [r.metadata["executed_kind"] for r in results] == ["swap", "proof"]
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_record_failed_intent() -> None:
    coordinator = _coordinator()

    result = await coordinator.record_failed_intent(
        "swap 1 eth to usdc", stage="plan", code="UPSTREAM_DOWN", message="planner unavailable"
    )

    assert result.error is not None
    assert result.error.stage == "plan"
    intent = await coordinator.ledger.get_intent(result.intent_id or "")
    assert intent is not None
    assert intent.status == IntentStatus.failed
    assert intent.error_code == "UPSTREAM_DOWN"
    assert intent.usd_estimate == 2000.0
