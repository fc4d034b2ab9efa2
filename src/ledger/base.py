"""Ledger contract shared by the in-memory and Postgres implementations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from src.ledger.models import (
    ExecutionCreate,
    ExecutionRecord,
    IntentRecord,
    IntentStatus,
    can_transition,
    merge_metadata,
    truncate_error,
)


class LedgerError(RuntimeError):
    """Base error for ledger contract violations."""


class IntentNotFoundError(LedgerError):
    pass


class ExecutionNotFoundError(LedgerError):
    pass


class InvalidStatusTransitionError(LedgerError):
    """Raised when an update would move an intent backwards or out of a terminal status."""


class Ledger(Protocol):
    """CRUD contract for intents and executions.

    Every status update merges metadata (see `merge_metadata`); `finalize_execution` writes an
    execution and the parent intent's status in one atomic step.
    """

    async def create_intent(
            self,
            *,
            intent_text: str,
            intent_kind: str,
            requested_chain: str | None = None,
            requested_venue: str | None = None,
            usd_estimate: float | None = None,
            metadata: dict[str, Any] | None = None,
            intent_id: str | None = None,
    ) -> IntentRecord: ...

    async def update_intent_status(
            self,
            intent_id: str,
            status: IntentStatus,
            *,
            failure_stage: str | None = None,
            error_code: str | None = None,
            error_message: str | None = None,
            metadata: dict[str, Any] | None = None,
    ) -> IntentRecord: ...

    async def get_intent(self, intent_id: str) -> IntentRecord | None: ...

    async def create_execution(self, execution: ExecutionCreate) -> ExecutionRecord: ...

    async def update_execution(self, execution_id: str, **fields: Any) -> ExecutionRecord: ...

    async def link_execution_to_intent(self, execution_id: str, intent_id: str) -> None: ...

    async def get_executions_for_intent(self, intent_id: str) -> list[ExecutionRecord]: ...

    async def finalize_execution(
            self,
            intent_id: str,
            execution: ExecutionCreate,
            intent_status: IntentStatus,
            *,
            failure_stage: str | None = None,
            error_code: str | None = None,
            error_message: str | None = None,
            metadata: dict[str, Any] | None = None,
    ) -> ExecutionRecord: ...


def apply_status(
        intent: IntentRecord,
        status: IntentStatus,
        *,
        now: datetime,
        failure_stage: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
) -> IntentRecord:
    """Return `intent` moved to `status`, enforcing monotonic transitions.

    Both ledger implementations compute the new row through this function so that timestamp and
    metadata rules cannot drift between them.

    Raises:
        InvalidStatusTransitionError: If the move is backwards or leaves a terminal status.
    """

    if not can_transition(intent.status, status):
        raise InvalidStatusTransitionError(
            f"intent {intent.id} cannot move from {intent.status} to {status}"
        )

    update: dict[str, Any] = {
        "status": status,
        "metadata": merge_metadata(intent.metadata, metadata),
    }
    if status == IntentStatus.planned and intent.planned_at is None:
        update["planned_at"] = now
    if status == IntentStatus.executing and intent.executed_at is None:
        update["executed_at"] = now
    if status == IntentStatus.confirmed and intent.confirmed_at is None:
        update["confirmed_at"] = now
    if status == IntentStatus.failed:
        update["failure_stage"] = str(failure_stage) if failure_stage is not None else None
        update["error_code"] = error_code
        update["error_message"] = truncate_error(error_message)
    return intent.model_copy(update=update)
