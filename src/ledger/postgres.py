"""Postgres-backed ledger (psycopg 3 async pool).

Schema: `src/db/migrations/`. Status rules are shared with the in-memory ledger through
`apply_status`; `finalize_execution` locks the intent row (`SELECT ... FOR UPDATE`) and writes the
execution and the new intent status in a single transaction.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from psycopg import AsyncConnection
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from src.db.pool import get_conn
from src.db.query import execute, fetch_all, fetch_one
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

logger = logging.getLogger(__name__)

_INTENT_COLUMNS = (
    "id, created_at, intent_text, intent_kind, requested_chain, requested_venue, usd_estimate, "
    "status, planned_at, executed_at, confirmed_at, failure_stage, error_code, error_message, metadata"
)

_EXECUTION_INSERT_COLUMNS: tuple[str, ...] = (
    "id",
    "intent_id",
    "chain",
    "network",
    "kind",
    "venue",
    "intent",
    "action",
    "from_address",
    "token",
    "amount_display",
    "usd_estimate",
    "tx_hash",
    "status",
    "error_code",
    "error_message",
    "explorer_url",
    "gas_used",
    "block_number",
    "latency_ms",
    "created_at",
    "updated_at",
)


def _now() -> datetime:
    return datetime.now(UTC)


async def _lock_intent(conn: AsyncConnection, intent_id: str) -> IntentRecord:
    row = await fetch_one(
        conn,
        f"SELECT {_INTENT_COLUMNS} FROM intents WHERE id = %s FOR UPDATE",
        (intent_id,),
    )
    if row is None:
        raise IntentNotFoundError(intent_id)
    return IntentRecord(**row)


async def _write_intent_status(conn: AsyncConnection, intent: IntentRecord) -> None:
    await execute(
        conn,
        """
        UPDATE intents
        SET status        = %s,
            planned_at    = %s,
            executed_at   = %s,
            confirmed_at  = %s,
            failure_stage = %s,
            error_code    = %s,
            error_message = %s,
            metadata      = %s
        WHERE id = %s
        """,
        (
            str(intent.status),
            intent.planned_at,
            intent.executed_at,
            intent.confirmed_at,
            intent.failure_stage,
            intent.error_code,
            intent.error_message,
            Jsonb(intent.metadata),
            intent.id,
        ),
    )


async def _insert_execution(conn: AsyncConnection, execution: ExecutionCreate) -> ExecutionRecord:
    now = _now()
    data = execution.model_dump()
    data["error_message"] = truncate_error(data.get("error_message"))
    record = ExecutionRecord(id=str(uuid.uuid4()), created_at=now, updated_at=now, **data)

    values = record.model_dump()
    values["status"] = str(record.status)
    placeholders = ", ".join(["%s"] * len(_EXECUTION_INSERT_COLUMNS))
    await execute(
        conn,
        f"INSERT INTO executions ({', '.join(_EXECUTION_INSERT_COLUMNS)}) VALUES ({placeholders})",
        tuple(values[c] for c in _EXECUTION_INSERT_COLUMNS),
    )
    return record


class PostgresLedger:
    """`Ledger` implementation over an `AsyncConnectionPool` (opened by the caller)."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self.pool = pool

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
        record = IntentRecord(
            id=intent_id or str(uuid.uuid4()),
            created_at=_now(),
            intent_text=intent_text,
            intent_kind=intent_kind,
            requested_chain=requested_chain,
            requested_venue=requested_venue,
            usd_estimate=usd_estimate,
            metadata=dict(metadata or {}),
        )
        async with get_conn(self.pool) as conn:
            async with conn.transaction():
                inserted = await execute(
                    conn,
                    """
                    INSERT INTO intents (id, created_at, intent_text, intent_kind, requested_chain,
                                         requested_venue, usd_estimate, status, metadata)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (
                        record.id,
                        record.created_at,
                        record.intent_text,
                        record.intent_kind,
                        record.requested_chain,
                        record.requested_venue,
                        record.usd_estimate,
                        str(record.status),
                        Jsonb(record.metadata),
                    ),
                )
        if inserted == 0:
            raise LedgerError(f"intent {record.id} already exists")
        return record

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
        async with get_conn(self.pool) as conn:
            async with conn.transaction():
                current = await _lock_intent(conn, intent_id)
                updated = apply_status(
                    current,
                    status,
                    now=_now(),
                    failure_stage=failure_stage,
                    error_code=error_code,
                    error_message=error_message,
                    metadata=metadata,
                )
                await _write_intent_status(conn, updated)
        return updated

    async def get_intent(self, intent_id: str) -> IntentRecord | None:
        async with get_conn(self.pool) as conn:
            row = await fetch_one(
                conn, f"SELECT {_INTENT_COLUMNS} FROM intents WHERE id = %s", (intent_id,)
            )
        return IntentRecord(**row) if row is not None else None

    async def create_execution(self, execution: ExecutionCreate) -> ExecutionRecord:
        async with get_conn(self.pool) as conn:
            async with conn.transaction():
                return await _insert_execution(conn, execution)

    async def update_execution(self, execution_id: str, **fields: Any) -> ExecutionRecord:
        unknown = set(fields) - EXECUTION_UPDATABLE_FIELDS
        if unknown:
            raise LedgerError(f"cannot update execution fields: {sorted(unknown)}")
        if "error_message" in fields:
            fields["error_message"] = truncate_error(fields["error_message"])
        if "status" in fields and fields["status"] is not None:
            fields["status"] = str(fields["status"])

        # Column names come from EXECUTION_UPDATABLE_FIELDS, never from user input.
        assignments = ", ".join(f"{name} = %s" for name in fields)
        async with get_conn(self.pool) as conn:
            async with conn.transaction():
                row = await fetch_one(
                    conn,
                    f"UPDATE executions SET {assignments}, updated_at = %s WHERE id = %s RETURNING *",
                    (*fields.values(), _now(), execution_id),
                )
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return ExecutionRecord(**row)

    async def link_execution_to_intent(self, execution_id: str, intent_id: str) -> None:
        async with get_conn(self.pool) as conn:
            async with conn.transaction():
                updated = await execute(
                    conn,
                    "UPDATE executions SET intent_id = %s, updated_at = %s WHERE id = %s",
                    (intent_id, _now(), execution_id),
                )
        if updated == 0:
            raise ExecutionNotFoundError(execution_id)

    async def get_executions_for_intent(self, intent_id: str) -> list[ExecutionRecord]:
        async with get_conn(self.pool) as conn:
            rows = await fetch_all(
                conn,
                "SELECT * FROM executions WHERE intent_id = %s ORDER BY created_at",
                (intent_id,),
            )
        return [ExecutionRecord(**row) for row in rows]

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
        """Insert `execution` and move the intent to `intent_status` in one transaction.

        Repeating a finalize for the same transaction hash returns the existing execution.
        """

        async with get_conn(self.pool) as conn:
            async with conn.transaction():
                current = await _lock_intent(conn, intent_id)

                if execution.tx_hash is not None and current.status == intent_status:
                    row = await fetch_one(
                        conn,
                        "SELECT * FROM executions WHERE intent_id = %s AND tx_hash = %s LIMIT 1",
                        (intent_id, execution.tx_hash),
                    )
                    if row is not None:
                        logger.info(
                            "finalize already applied intent_id=%s tx_hash=%s",
                            intent_id,
                            execution.tx_hash,
                        )
                        return ExecutionRecord(**row)

                updated = apply_status(
                    current,
                    intent_status,
                    now=_now(),
                    failure_stage=failure_stage,
                    error_code=error_code,
                    error_message=error_message,
                    metadata=metadata,
                )
                record = await _insert_execution(
                    conn, execution.model_copy(update={"intent_id": intent_id})
                )
                await _write_intent_status(conn, updated)
        return record
