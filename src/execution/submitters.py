"""Dispatch targets for routed intents.

- `OffchainRecorder`: no transaction; the request is only recorded.
- `ProofSubmitter`: a minimal marker transaction carrying intent metadata.
- `RealSubmitter`: the actual venue operation, signed by the chain's executor.

Submitters never touch the ledger. They return a `SubmissionOutcome` and the coordinator
reconciles it. Every chain submission is rate limited per chain and retried with backoff; a nonce
collision triggers exactly one resubmit with a freshly read pending nonce.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.execution.contracts import (
    ChainExecutor,
    ChainExecutorError,
    ChainOperation,
    ReceiptTimeoutError,
    TransactionRevertedError,
)
from src.intent.schema import IntentKind, ParsedIntent
from src.ledger.models import ExecutionStatus, FailureStage, IntentStatus
from src.resilience.rate_limiter import RateLimiterRegistry, with_retry_and_rate_limit
from src.resilience.retry import (
    DEFAULT_RETRY_CONFIG,
    RetryConfig,
    is_nonce_error,
    is_retriable_error,
    with_timeout,
)
from src.routing.router import RouteDecision
from src.routing.venues import PERP_MARKET_INDEX
from src.security.audit import AuditLog, GuardResult, SigningAuditEntry

logger = logging.getLogger(__name__)

PROOF_PAYLOAD_TYPE = "INTENT_PROOF"
DEFAULT_CONFIRMATION_TIMEOUT_S = 15.0


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass(frozen=True)
class SubmissionOutcome:
    """What happened to one dispatched operation."""

    status: ExecutionStatus
    chain: str
    network: str
    venue: str
    kind: str
    tx_hash: str | None = None
    explorer_url: str | None = None
    from_address: str | None = None
    block_number: int | None = None
    gas_used: int | None = None
    latency_ms: int | None = None
    failure_stage: FailureStage | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != ExecutionStatus.failed

    @property
    def intent_status(self) -> IntentStatus:
        return {
            ExecutionStatus.confirmed: IntentStatus.confirmed,
            ExecutionStatus.pending: IntentStatus.pending,
            ExecutionStatus.submitted: IntentStatus.pending,
            ExecutionStatus.failed: IntentStatus.failed,
        }[self.status]


class OffchainRecorder:
    """Records requests that are answered without a transaction (analytics)."""

    async def record(self, intent_id: str, parsed: ParsedIntent, route: RouteDecision) -> SubmissionOutcome:
        started = time.monotonic()
        logger.info("offchain intent recorded intent_id=%s action=%s", intent_id, parsed.action)
        return SubmissionOutcome(
            status=ExecutionStatus.confirmed,
            chain=route.chain,
            network=route.network,
            venue=route.venue,
            kind="offchain",
            latency_ms=_elapsed_ms(started),
        )


class ChainSubmitter:
    """Shared submission path: executor lookup, rate limit, retry, nonce retry, receipt wait."""

    default_error_code = "EXECUTION_ERROR"

    def __init__(
            self,
            executors: Mapping[str, ChainExecutor],
            *,
            limiters: RateLimiterRegistry,
            retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
            confirmation_timeout_s: float = DEFAULT_CONFIRMATION_TIMEOUT_S,
            audit: AuditLog | None = None,
    ) -> None:
        self.executors = executors
        self.limiters = limiters
        self.retry_config = retry_config
        self.confirmation_timeout_s = confirmation_timeout_s
        self.audit = audit

    def _record_signing(
            self,
            operation: ChainOperation,
            executor: ChainExecutor | None,
            *,
            session_id: str | None,
            allowed: bool,
            reason: str | None = None,
            tx_hash: str | None = None,
    ) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record_signing(
                SigningAuditEntry(
                    session_id=session_id,
                    operation=f"{operation.kind}:{operation.action}",
                    chain=operation.chain,
                    wallet_address=executor.address if executor is not None else None,
                    backend_signed=allowed,
                    guard_result=GuardResult(allowed=allowed, reason=reason),
                    tx_hash=tx_hash,
                )
            )
        except Exception:
            logger.exception("signing audit failed chain=%s", operation.chain)

    async def _submit_once(self, executor: ChainExecutor, operation: ChainOperation) -> str:
        limiter = self.limiters.get(f"{operation.chain}_rpc")

        async def _call() -> str:
            return await with_timeout(
                executor.submit(operation), self.retry_config.timeout_ms, f"{operation.chain} submit"
            )

        return await with_retry_and_rate_limit(
            limiter,
            _call,
            self.retry_config,
            should_retry=lambda exc: is_retriable_error(exc) and not is_nonce_error(exc),
            label=f"{operation.chain}:{operation.kind}",
        )

    async def _submit_with_nonce_retry(self, executor: ChainExecutor, operation: ChainOperation) -> str:
        try:
            return await self._submit_once(executor, operation)
        except Exception as exc:
            if not is_nonce_error(exc):
                raise
            nonce = await executor.get_pending_nonce()
            logger.warning(
                "nonce collision, resubmitting chain=%s nonce=%d error=%s", operation.chain, nonce, exc
            )
            return await self._submit_once(executor, dataclasses.replace(operation, nonce=nonce))

    def _error_code(self, exc: Exception) -> str:
        # Subclasses carry a precise code; a bare executor error uses the submitter's default.
        if isinstance(exc, ChainExecutorError) and type(exc) is not ChainExecutorError:
            return exc.code
        return self.default_error_code

    async def send(self, operation: ChainOperation, *, session_id: str | None = None) -> SubmissionOutcome:
        started = time.monotonic()
        base = {
            "chain": operation.chain,
            "network": operation.network,
            "venue": operation.venue,
            "kind": operation.kind,
        }

        executor = self.executors.get(operation.chain)
        if executor is None:
            self._record_signing(
                operation, None, session_id=session_id, allowed=False, reason="no signer configured"
            )
            return SubmissionOutcome(
                status=ExecutionStatus.failed,
                failure_stage=FailureStage.execute,
                error_code="CONFIG_MISSING",
                error_message=f"No executor configured for chain {operation.chain}",
                latency_ms=_elapsed_ms(started),
                **base,
            )

        try:
            tx_hash = await self._submit_with_nonce_retry(executor, operation)
        except Exception as exc:
            logger.warning(
                "submission failed chain=%s kind=%s error=%s", operation.chain, operation.kind, exc
            )
            self._record_signing(operation, executor, session_id=session_id, allowed=True, reason=str(exc))
            return SubmissionOutcome(
                status=ExecutionStatus.failed,
                from_address=executor.address,
                failure_stage=FailureStage.execute,
                error_code=self._error_code(exc),
                error_message=str(exc) or type(exc).__name__,
                latency_ms=_elapsed_ms(started),
                **base,
            )

        self._record_signing(operation, executor, session_id=session_id, allowed=True, tx_hash=tx_hash)
        explorer_url = executor.build_explorer_url(operation.chain, operation.network, tx_hash)
        submitted = {"tx_hash": tx_hash, "explorer_url": explorer_url, "from_address": executor.address}

        try:
            receipt = await with_timeout(
                executor.wait_for_receipt(tx_hash, self.confirmation_timeout_s),
                int(self.confirmation_timeout_s * 1000),
                "receipt",
            )
        except TransactionRevertedError as exc:
            return SubmissionOutcome(
                status=ExecutionStatus.failed,
                failure_stage=FailureStage.confirm,
                error_code="TX_REVERTED",
                error_message=str(exc) or "Transaction reverted",
                latency_ms=_elapsed_ms(started),
                **base,
                **submitted,
            )
        except (ReceiptTimeoutError, TimeoutError):
            logger.info("receipt timeout chain=%s tx_hash=%s", operation.chain, tx_hash)
            return SubmissionOutcome(
                status=ExecutionStatus.pending,
                latency_ms=_elapsed_ms(started),
                **base,
                **submitted,
            )
        except Exception:
            # The transaction was sent and may still land; leave it for reconciliation.
            logger.exception("receipt lookup failed chain=%s tx_hash=%s", operation.chain, tx_hash)
            return SubmissionOutcome(
                status=ExecutionStatus.pending,
                latency_ms=_elapsed_ms(started),
                **base,
                **submitted,
            )

        if not receipt.success:
            return SubmissionOutcome(
                status=ExecutionStatus.failed,
                block_number=receipt.block_number,
                gas_used=receipt.gas_used,
                failure_stage=FailureStage.confirm,
                error_code="TX_REVERTED",
                error_message="Transaction reverted",
                latency_ms=_elapsed_ms(started),
                **base,
                **submitted,
            )

        return SubmissionOutcome(
            status=ExecutionStatus.confirmed,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            latency_ms=_elapsed_ms(started),
            **base,
            **submitted,
        )


def proof_payload(intent_id: str, parsed: ParsedIntent) -> dict[str, Any]:
    return {
        "type": PROOF_PAYLOAD_TYPE,
        "intent_id": intent_id[:8],
        "kind": str(parsed.kind),
        "action": parsed.action,
        "asset": parsed.target_asset or parsed.amount_unit,
        "timestamp": int(datetime.now(UTC).timestamp()),
    }


class ProofSubmitter(ChainSubmitter):
    """Sends a marker transaction when the real venue integration is not wired."""

    default_error_code = "PROOF_TX_FAILED"

    async def submit(
            self,
            intent_id: str,
            parsed: ParsedIntent,
            *,
            chain: str,
            network: str,
            venue: str,
            session_id: str | None = None,
            extra: dict[str, Any] | None = None,
    ) -> SubmissionOutcome:
        payload = proof_payload(intent_id, parsed)
        payload.update(extra or {})
        operation = ChainOperation(
            chain=chain,
            network=network,
            kind="proof",
            venue=venue,
            action=parsed.action,
            asset=parsed.target_asset or parsed.amount_unit,
            payload=payload,
        )
        return await self.send(operation, session_id=session_id)


def real_operation(parsed: ParsedIntent, route: RouteDecision) -> ChainOperation:
    """Build the venue operation for a `real` route."""

    asset = parsed.target_asset or parsed.amount_unit
    payload: dict[str, Any] = {}

    if parsed.kind == IntentKind.perp:
        payload = {
            "market_index": PERP_MARKET_INDEX.get(asset or ""),
            "side": parsed.action,
            "leverage": parsed.leverage,
            "margin": parsed.amount,
            "margin_asset": parsed.amount_unit,
        }
    elif parsed.kind == IntentKind.swap:
        payload = {"from_asset": parsed.amount_unit, "to_asset": parsed.target_asset}
    elif parsed.kind == IntentKind.deposit:
        payload = {"vault": route.venue}
    elif parsed.kind == IntentKind.perp_create:
        payload = {
            key: parsed.raw_params.get(key)
            for key in ("max_leverage", "taker_fee_bps", "bond_amount", "bond_asset")
        }

    return ChainOperation(
        chain=route.chain,
        network=route.network,
        kind=str(parsed.kind),
        venue=route.venue,
        action=parsed.action,
        asset=asset,
        amount=parsed.amount,
        adapter=route.adapter,
        payload=payload,
    )


class RealSubmitter(ChainSubmitter):
    async def submit(
            self,
            parsed: ParsedIntent,
            route: RouteDecision,
            *,
            session_id: str | None = None,
    ) -> SubmissionOutcome:
        operation = real_operation(parsed, route)
        outcome = await self.send(operation, session_id=session_id)
        if (
                parsed.kind == IntentKind.perp
                and outcome.failure_stage == FailureStage.execute
                and outcome.error_code == self.default_error_code
        ):
            return dataclasses.replace(outcome, error_code="PERP_EXECUTION_ERROR")
        return outcome
