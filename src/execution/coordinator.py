"""Intent pipeline coordinator.

`run_intent` drives one request through:

    sanitize + parse -> path policy -> ledger row (queued, planned) -> route (routed)
    -> capability check -> dispatch (executing) -> atomic reconciliation -> feedback

and always returns an `IntentExecutionResult`; it never raises. Policy refusals return before any
ledger row exists. Once a row exists every exit writes a status to it, and terminal failures carry
`{stage, code, message}`.

Policy evaluation and the path transition are serialized per session (see
`ContextRegistry.lock`); chain execution is not.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from pydantic import ValidationError

from src.execution.contracts import CapabilityValidator, FeedbackClient
from src.execution.result import IntentError, IntentExecutionResult
from src.execution.submitters import (
    OffchainRecorder,
    ProofSubmitter,
    RealSubmitter,
    SubmissionOutcome,
)
from src.intent.parser import parse_user_text
from src.intent.schema import IntentKind, ParsedIntent
from src.ledger.base import Ledger
from src.ledger.models import (
    ExecutionCreate,
    FailureStage,
    IntentRecord,
    IntentStatus,
)
from src.policy.engine import ConfirmationReply, PolicyEngine
from src.policy.paths import classify_parsed_intent_path
from src.routing.router import ExecutionType, RouteDecision, RouteError, RoutingFeatures, route_intent
from src.routing.venues import CHAIN_NETWORKS, estimate_intent_usd, network_for_chain

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"
PENDING_CONFIRMATION = "pending_confirmation"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _amount_display(parsed: ParsedIntent) -> str | None:
    if parsed.amount is None:
        return None
    return f"{parsed.amount} {parsed.amount_unit}" if parsed.amount_unit else parsed.amount


def _to_execution(
        outcome: SubmissionOutcome,
        parsed: ParsedIntent,
        usd_estimate: float | None,
        intent_id: str,
) -> ExecutionCreate:
    return ExecutionCreate(
        chain=outcome.chain,
        network=outcome.network,
        kind=outcome.kind,
        venue=outcome.venue,
        intent=str(parsed.kind),
        action=parsed.action,
        from_address=outcome.from_address,
        token=parsed.amount_unit or parsed.target_asset,
        amount_display=_amount_display(parsed),
        usd_estimate=usd_estimate,
        tx_hash=outcome.tx_hash,
        status=outcome.status,
        error_code=outcome.error_code,
        error_message=outcome.error_message,
        explorer_url=outcome.explorer_url or None,
        gas_used=outcome.gas_used,
        block_number=outcome.block_number,
        latency_ms=outcome.latency_ms,
        intent_id=intent_id,
    )


def _proof_summary(outcome: SubmissionOutcome) -> dict[str, Any]:
    return {
        "chain": outcome.chain,
        "network": outcome.network,
        "status": str(outcome.status),
        "tx_hash": outcome.tx_hash,
        "explorer_url": outcome.explorer_url,
        "error_code": outcome.error_code,
    }


class ExecutionCoordinator:
    """Top-level sequencer. All collaborators are constructor-injected."""

    def __init__(
            self,
            *,
            ledger: Ledger,
            policy: PolicyEngine,
            features: RoutingFeatures,
            proof_submitter: ProofSubmitter,
            real_submitter: RealSubmitter,
            offchain_recorder: OffchainRecorder | None = None,
            validator: CapabilityValidator | None = None,
            feedback: FeedbackClient | None = None,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.policy = policy
        self.features = features
        self.proof_submitter = proof_submitter
        self.real_submitter = real_submitter
        self.offchain_recorder = offchain_recorder or OffchainRecorder()
        self.validator = validator
        self.feedback = feedback
        self._sleep = sleep

    # ------------------------------------------------------------------ entry points

    async def run_intent(
            self,
            text: str,
            *,
            session_id: str = DEFAULT_SESSION_ID,
            preferred_chain: str | None = None,
            plan_only: bool = False,
            confirmed_intent_id: str | None = None,
            metadata: dict[str, Any] | None = None,
    ) -> IntentExecutionResult:
        """Run one free-text request through the full pipeline. Never raises."""

        started = time.monotonic()
        created: list[str] = []
        try:
            result = await self._run_intent(
                text,
                session_id=session_id,
                preferred_chain=preferred_chain,
                plan_only=plan_only,
                confirmed_intent_id=confirmed_intent_id,
                metadata=metadata,
                created=created,
            )
        except Exception as exc:
            logger.exception("intent pipeline error session_id=%s", session_id)
            return await self._crash_result(created[0] if created else None, exc)

        logger.info(
            "intent finished intent_id=%s status=%s ok=%s latency_ms=%d",
            result.intent_id,
            result.status,
            result.ok,
            _elapsed_ms(started),
        )
        return result

    async def execute_intent_by_id(
            self,
            intent_id: str,
            *,
            session_id: str | None = None,
    ) -> IntentExecutionResult:
        """Execute an intent previously planned with `plan_only=True`. Never raises."""

        try:
            intent = await self.ledger.get_intent(intent_id)
            if intent is None:
                return IntentExecutionResult.failure(
                    FailureStage.execute, "INTENT_NOT_FOUND", f"Intent {intent_id} not found"
                )
            if intent.status != IntentStatus.routed:
                return IntentExecutionResult.failure(
                    FailureStage.execute,
                    "INVALID_STATUS",
                    f"Intent {intent_id} is {intent.status}, expected routed",
                    intent_id=intent_id,
                )

            meta = intent.metadata
            if not meta.get("plan_only") or "parsed" not in meta or "route" not in meta:
                return IntentExecutionResult.failure(
                    FailureStage.execute,
                    "INVALID_METADATA",
                    f"Intent {intent_id} has no stored plan",
                    intent_id=intent_id,
                )
            try:
                parsed = ParsedIntent.model_validate(meta["parsed"])
                route = RouteDecision.model_validate(meta["route"])
            except ValidationError as exc:
                return IntentExecutionResult.failure(
                    FailureStage.execute,
                    "INVALID_METADATA",
                    f"Stored plan is invalid: {exc.error_count()} errors",
                    intent_id=intent_id,
                )

            return await self._execute(
                intent_id,
                parsed,
                route,
                session_id=session_id or str(meta.get("session_id") or DEFAULT_SESSION_ID),
                usd_estimate=intent.usd_estimate,
            )
        except Exception as exc:
            logger.exception("execute by id error intent_id=%s", intent_id)
            return await self._crash_result(intent_id, exc)

    async def respond_to_confirmation(
            self,
            session_id: str,
            reply_text: str,
            confirmation_id: str | None = None,
            *,
            preferred_chain: str | None = None,
    ) -> IntentExecutionResult | None:
        """Apply a user's reply to an outstanding confirmation.

        A matching confirmation re-runs the stored request with its confirmation id; a cancellation
        or an unrecognized reply returns `None`.
        """

        outcome = self.policy.process_confirmation(session_id, reply_text, confirmation_id)
        if outcome.reply != ConfirmationReply.confirmed or outcome.request is None:
            logger.info("confirmation reply session_id=%s reply=%s", session_id, outcome.reply)
            return None

        request = outcome.request
        text = request.parsed.original_text if request.parsed is not None else ""
        return await self.run_intent(
            text,
            session_id=session_id,
            preferred_chain=preferred_chain,
            confirmed_intent_id=request.confirmation_id,
        )

    async def run_batch(
            self,
            texts: Sequence[str],
            *,
            parallel: bool = False,
            delay_s: float = 0.0,
            session_id: str = DEFAULT_SESSION_ID,
            preferred_chain: str | None = None,
            plan_only: bool = False,
            metadata: dict[str, Any] | None = None,
    ) -> list[IntentExecutionResult]:
        """Run several requests, either all at once or one by one with `delay_s` between them."""

        async def _one(text: str) -> IntentExecutionResult:
            return await self.run_intent(
                text,
                session_id=session_id,
                preferred_chain=preferred_chain,
                plan_only=plan_only,
                metadata=metadata,
            )

        if parallel:
            return list(await asyncio.gather(*(_one(t) for t in texts)))

        results: list[IntentExecutionResult] = []
        for index, text in enumerate(texts):
            if index and delay_s > 0:
                await self._sleep(delay_s)
            results.append(await _one(text))
        return results

    async def record_failed_intent(
            self,
            text: str,
            *,
            stage: str,
            code: str,
            message: str,
            metadata: dict[str, Any] | None = None,
    ) -> IntentExecutionResult:
        """Write a failed intent straight to the ledger (for failures outside the pipeline)."""

        try:
            parsed = parse_user_text(text).intent
            intent = await self.ledger.create_intent(
                intent_text=parsed.original_text or text,
                intent_kind=str(parsed.kind),
                usd_estimate=estimate_intent_usd(parsed),
                metadata=metadata,
            )
            await self.ledger.update_intent_status(
                intent.id,
                IntentStatus.failed,
                failure_stage=stage,
                error_code=code,
                error_message=message,
            )
        except Exception as exc:
            logger.exception("recording failed intent failed code=%s", code)
            return IntentExecutionResult.failure(stage, code, f"{message} (not recorded: {exc})")

        return IntentExecutionResult.failure(stage, code, message, intent_id=intent.id)

    # ------------------------------------------------------------------ pipeline

    async def _run_intent(
            self,
            text: str,
            *,
            session_id: str,
            preferred_chain: str | None,
            plan_only: bool,
            confirmed_intent_id: str | None,
            metadata: dict[str, Any] | None,
            created: list[str],
    ) -> IntentExecutionResult:
        if confirmed_intent_id is not None:
            existing = await self.ledger.get_intent(confirmed_intent_id)
            if existing is not None:
                logger.info("confirmed intent already recorded intent_id=%s", confirmed_intent_id)
                return await self._snapshot(existing)

        parse_result = parse_user_text(text)
        parsed = parse_result.intent
        path = classify_parsed_intent_path(parsed)
        usd_estimate = estimate_intent_usd(parsed)

        async with self.policy.registry.lock(session_id):
            if confirmed_intent_id is not None:
                self.policy.confirm(session_id, confirmed_intent_id)

            decision = self.policy.evaluate_path_policy(
                session_id,
                path,
                parsed=parsed,
                usd_estimate=usd_estimate,
                intent_id=confirmed_intent_id,
            )
            if decision.blocked:
                return IntentExecutionResult.failure(
                    FailureStage.policy,
                    decision.code or "POLICY_BLOCKED",
                    decision.reason or "Blocked by path policy",
                    metadata={"path": str(path), "from_path": decision.from_path},
                )
            if decision.requires_confirmation:
                request = self.policy.request_confirmation(
                    session_id, decision, parsed=parsed, usd_estimate=usd_estimate
                )
                return IntentExecutionResult(
                    ok=False,
                    status=PENDING_CONFIRMATION,
                    metadata={
                        "confirmation_id": request.confirmation_id,
                        "confirmation_type": str(request.confirmation_type),
                        "reason": request.reason,
                        "code": decision.code,
                        "path": str(path),
                        "parsed": parsed.model_dump(mode="json"),
                        "usd_estimate": usd_estimate,
                    },
                )

            self.policy.transition_path(
                session_id,
                path,
                force=confirmed_intent_id is not None,
                usd_estimate=usd_estimate,
            )

        intent = await self.ledger.create_intent(
            intent_text=parse_result.sanitized_text,
            intent_kind=str(parsed.kind),
            requested_chain=preferred_chain or parsed.source_chain,
            requested_venue=parsed.venue,
            usd_estimate=usd_estimate,
            metadata={
                **(metadata or {}),
                "session_id": session_id,
                "path": str(path),
                "sanitize_warnings": parse_result.sanitize_warnings,
            },
            intent_id=confirmed_intent_id,
        )
        intent_id = intent.id
        created.append(intent_id)

        await self.ledger.update_intent_status(
            intent_id,
            IntentStatus.planned,
            metadata={"parsed": parsed.model_dump(mode="json")},
        )

        route = route_intent(parsed, self.features, preferred_chain)
        if isinstance(route, RouteError):
            return await self._fail(
                intent_id, session_id, FailureStage.route, route.code, route.message
            )

        await self.ledger.update_intent_status(
            intent_id,
            IntentStatus.routed,
            metadata={
                "route": route.model_dump(mode="json"),
                "plan_only": plan_only,
            },
        )

        if plan_only:
            return IntentExecutionResult(
                ok=True,
                intent_id=intent_id,
                status=str(IntentStatus.routed),
                metadata={
                    "plan_only": True,
                    "route": route.model_dump(mode="json"),
                    "parsed": parsed.model_dump(mode="json"),
                    "usd_estimate": usd_estimate,
                },
            )

        return await self._execute(
            intent_id, parsed, route, session_id=session_id, usd_estimate=usd_estimate
        )

    async def _validate_capabilities(
            self,
            parsed: ParsedIntent,
            route: RouteDecision,
            usd_estimate: float | None,
    ) -> tuple[bool, list[str], list[str]]:
        """Return `(valid, errors, warnings)`; a validator that errors out never blocks."""

        if self.validator is None or route.execution_type == ExecutionType.offchain:
            return True, [], []
        try:
            verdict = await self.validator.validate(
                kind=str(parsed.kind),
                chain=route.chain,
                venue=route.venue,
                asset=parsed.target_asset or parsed.amount_unit,
                amount_usd=usd_estimate,
            )
        except Exception:
            logger.exception("capability validator failed chain=%s venue=%s", route.chain, route.venue)
            return True, [], ["Capability validation unavailable"]
        return verdict.valid, list(verdict.errors), list(verdict.warnings)

    async def _execute(
            self,
            intent_id: str,
            parsed: ParsedIntent,
            route: RouteDecision,
            *,
            session_id: str,
            usd_estimate: float | None,
    ) -> IntentExecutionResult:
        valid, errors, capability_warnings = await self._validate_capabilities(
            parsed, route, usd_estimate
        )
        if not valid:
            return await self._fail(
                intent_id,
                session_id,
                FailureStage.route,
                "CAPABILITY_INVALID",
                "; ".join(errors) or "Route is outside declared capabilities",
            )

        await self.ledger.update_intent_status(intent_id, IntentStatus.executing)
        self.policy.mark_execution_started(session_id)

        extra_metadata: dict[str, Any] = {}
        if route.execution_type == ExecutionType.offchain:
            outcome = await self.offchain_recorder.record(intent_id, parsed, route)
        elif route.execution_type == ExecutionType.real:
            outcome = await self.real_submitter.submit(parsed, route, session_id=session_id)
        elif parsed.kind == IntentKind.bridge:
            outcome, extra_metadata = await self._execute_bridge(intent_id, parsed, route, session_id)
        else:
            outcome = await self.proof_submitter.submit(
                intent_id,
                parsed,
                chain=route.chain,
                network=route.network,
                venue=route.venue,
                session_id=session_id,
            )

        warnings = [*route.warnings, *capability_warnings]
        execution = await self.ledger.finalize_execution(
            intent_id,
            _to_execution(outcome, parsed, usd_estimate, intent_id),
            outcome.intent_status,
            failure_stage=outcome.failure_stage,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
            metadata={
                **extra_metadata,
                "executed_kind": outcome.kind,
                "execution_type": str(route.execution_type),
                "warnings": warnings,
            },
        )
        self.policy.mark_execution_complete(session_id, success=outcome.ok)
        await self._send_feedback(intent_id, parsed, outcome)

        error = None
        if outcome.error_code is not None:
            error = IntentError(
                stage=str(outcome.failure_stage or FailureStage.execute),
                code=outcome.error_code,
                message=outcome.error_message or outcome.error_code,
            )
        return IntentExecutionResult(
            ok=outcome.ok,
            intent_id=intent_id,
            status=str(outcome.intent_status),
            execution_id=execution.id,
            tx_hash=outcome.tx_hash,
            explorer_url=outcome.explorer_url or None,
            error=error,
            metadata={
                **extra_metadata,
                "chain": route.chain,
                "network": route.network,
                "venue": route.venue,
                "execution_type": str(route.execution_type),
                "executed_kind": outcome.kind,
                "warnings": warnings,
            },
        )

    async def _execute_bridge(
            self,
            intent_id: str,
            parsed: ParsedIntent,
            route: RouteDecision,
            session_id: str,
    ) -> tuple[SubmissionOutcome, dict[str, Any]]:
        """Source-chain proof, then a best-effort destination-chain proof.

        Only the source result decides the intent's outcome.
        """

        source = await self.proof_submitter.submit(
            intent_id,
            parsed,
            chain=route.chain,
            network=route.network,
            venue=route.venue,
            session_id=session_id,
            extra={"leg": "source", "dest_chain": parsed.dest_chain},
        )
        metadata: dict[str, Any] = {"source_chain_proof": _proof_summary(source)}

        dest_chain = parsed.dest_chain
        if not source.ok or dest_chain is None or dest_chain == route.chain or dest_chain not in CHAIN_NETWORKS:
            return source, metadata

        try:
            dest = await self.proof_submitter.submit(
                intent_id,
                parsed,
                chain=dest_chain,
                network=network_for_chain(dest_chain),
                venue=route.venue,
                session_id=session_id,
                extra={"leg": "destination", "source_tx": source.tx_hash},
            )
            metadata["dest_chain_proof"] = _proof_summary(dest)
            await self.ledger.create_execution(
                _to_execution(dest, parsed, estimate_intent_usd(parsed), intent_id)
            )
        except Exception as exc:
            logger.exception("destination proof failed intent_id=%s chain=%s", intent_id, dest_chain)
            metadata["dest_chain_proof"] = {"chain": dest_chain, "status": "failed", "error": str(exc)}

        return source, metadata

    # ------------------------------------------------------------------ helpers

    async def _fail(
            self,
            intent_id: str,
            session_id: str,
            stage: FailureStage,
            code: str,
            message: str,
    ) -> IntentExecutionResult:
        await self.ledger.update_intent_status(
            intent_id,
            IntentStatus.failed,
            failure_stage=stage,
            error_code=code,
            error_message=message,
        )
        self.policy.mark_execution_complete(session_id, success=False)
        return IntentExecutionResult.failure(stage, code, message, intent_id=intent_id)

    async def _crash_result(self, intent_id: str | None, exc: Exception) -> IntentExecutionResult:
        message = str(exc) or type(exc).__name__
        if intent_id is not None:
            try:
                current = await self.ledger.get_intent(intent_id)
                if current is not None and not current.is_terminal:
                    await self.ledger.update_intent_status(
                        intent_id,
                        IntentStatus.failed,
                        failure_stage=FailureStage.execute,
                        error_code="EXECUTION_ERROR",
                        error_message=message,
                    )
            except Exception:
                logger.exception("could not mark intent failed intent_id=%s", intent_id)
        return IntentExecutionResult.failure(
            FailureStage.execute, "EXECUTION_ERROR", message, intent_id=intent_id
        )

    async def _snapshot(self, intent: IntentRecord) -> IntentExecutionResult:
        executions = await self.ledger.get_executions_for_intent(intent.id)
        latest = executions[-1] if executions else None
        error = None
        if intent.status == IntentStatus.failed:
            error = IntentError(
                stage=intent.failure_stage or FailureStage.execute,
                code=intent.error_code or "EXECUTION_ERROR",
                message=intent.error_message or "",
            )
        return IntentExecutionResult(
            ok=intent.status != IntentStatus.failed,
            intent_id=intent.id,
            status=str(intent.status),
            execution_id=latest.id if latest else None,
            tx_hash=latest.tx_hash if latest else None,
            explorer_url=latest.explorer_url if latest else None,
            error=error,
            metadata=dict(intent.metadata),
        )

    async def _send_feedback(
            self,
            intent_id: str,
            parsed: ParsedIntent,
            outcome: SubmissionOutcome,
    ) -> None:
        if self.feedback is None:
            return
        try:
            await self.feedback.submit_feedback(
                intent_id=intent_id,
                kind=str(parsed.kind),
                chain=outcome.chain,
                success=outcome.ok,
                latency_ms=outcome.latency_ms or 0,
            )
        except Exception:
            logger.warning("feedback submission failed intent_id=%s", intent_id, exc_info=True)
