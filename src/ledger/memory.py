"""In-process ledger used when no database is configured (and in tests).

All mutations run under one `asyncio.Lock`, which makes `finalize_execution` atomic with respect to
other ledger calls. Records are copied on the way in and out so callers can't mutate stored state.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any

from src.ledger.base import (
    ExecutionNotFoundError,
    IntentNotFoundError,
    LedgerError,
    apply_status,
)
from src.ledger.models import (
    EXECUTION_UPDATABLE_FIELDS,
    ExecutionCreate,
    ExecutionRecord,
    IntentRecord,
    IntentStatus,
    truncate_error,
)


def _now() -> datetime:
    return datetime.now(UTC)


class InMemoryLedger:
    """Dict-backed implementation of the `Ledger` contract."""

    def __init__(self) -> None:
        self._intents: dict[str, IntentRecord] = {}
        self._executions: dict[str, ExecutionRecord] = {}
        self._lock = asyncio.Lock()

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
    ) -> IntentRecord:
        async with self._lock:
            record_id = intent_id or str(uuid.uuid4())
            if record_id in self._intents:
                raise LedgerError(f"intent {record_id} already exists")

            record = IntentRecord(
                id=record_id,
                created_at=_now(),
                intent_text=intent_text,
                intent_kind=intent_kind,
                requested_chain=requested_chain,
                requested_venue=requested_venue,
                usd_estimate=usd_estimate,
                metadata=dict(metadata or {}),
            )
            self._intents[record_id] = record
            return record.model_copy(deep=True)

    async def update_intent_status(
            self,
            intent_id: str,
            status: IntentStatus,
            *,
            failure_stage: str | None = None,
            error_code: str | None = None,
            error_message: str | None = None,
            metadata: dict[str, Any] | None = None,
    ) -> IntentRecord:
        async with self._lock:
            current = self._require_intent(intent_id)
            updated = apply_status(
                current,
                status,
                now=_now(),
                failure_stage=failure_stage,
                error_code=error_code,
                error_message=error_message,
                metadata=metadata,
            )
            self._intents[intent_id] = updated
            return updated.model_copy(deep=True)

    async def get_intent(self, intent_id: str) -> IntentRecord | None:
        record = self._intents.get(intent_id)
        return record.model_copy(deep=True) if record is not None else None

    async def create_execution(self, execution: ExecutionCreate) -> ExecutionRecord:
        async with self._lock:
            return self._insert_execution(execution).model_copy(deep=True)

    async def update_execution(self, execution_id: str, **fields: Any) -> ExecutionRecord:
        unknown = set(fields) - EXECUTION_UPDATABLE_FIELDS
        if unknown:
            raise LedgerError(f"cannot update execution fields: {sorted(unknown)}")

        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise ExecutionNotFoundError(execution_id)
            if "error_message" in fields:
                fields["error_message"] = truncate_error(fields["error_message"])
            updated = current.model_copy(update={**fields, "updated_at": _now()})
            self._executions[execution_id] = updated
            return updated.model_copy(deep=True)

    async def link_execution_to_intent(self, execution_id: str, intent_id: str) -> None:
        async with self._lock:
            self._require_intent(intent_id)
            current = self._executions.get(execution_id)
            if current is None:
                raise ExecutionNotFoundError(execution_id)
            self._executions[execution_id] = current.model_copy(
                update={"intent_id": intent_id, "updated_at": _now()}
            )

    async def get_executions_for_intent(self, intent_id: str) -> list[ExecutionRecord]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._executions.values(), key=lambda e: e.created_at)
            if e.intent_id == intent_id
        ]

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
    ) -> ExecutionRecord:
        """Insert `execution` and move the intent to `intent_status` atomically.

        Repeating a finalize for the same transaction hash returns the existing execution.
        """

        async with self._lock:
            current = self._require_intent(intent_id)

            if execution.tx_hash is not None and current.status == intent_status:
                for existing in self._executions.values():
                    if existing.intent_id == intent_id and existing.tx_hash == execution.tx_hash:
                        return existing.model_copy(deep=True)

            # Validate the status move before writing anything.
            updated = apply_status(
                current,
                intent_status,
                now=_now(),
                failure_stage=failure_stage,
                error_code=error_code,
                error_message=error_message,
                metadata=metadata,
            )
            record = self._insert_execution(execution.model_copy(update={"intent_id": intent_id}))
            self._intents[intent_id] = updated
            return record.model_copy(deep=True)

    def _require_intent(self, intent_id: str) -> IntentRecord:
        record = self._intents.get(intent_id)
        if record is None:
            raise IntentNotFoundError(intent_id)
        return record

    def _insert_execution(self, execution: ExecutionCreate) -> ExecutionRecord:
        now = _now()
        data = execution.model_dump()
        data["error_message"] = truncate_error(data.get("error_message"))
        record = ExecutionRecord(id=str(uuid.uuid4()), created_at=now, updated_at=now, **data)
        self._executions[record.id] = record
        return record
