"""Ledger records and lifecycle rules.

Intent lifecycle: `queued -> planned -> routed -> executing -> {confirmed | failed | pending}`.
Status moves are monotonic; `confirmed` and `failed` are terminal. `pending` (confirmation timed
out) may still be resolved to a terminal status by out-of-band reconciliation.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

MAX_ERROR_MESSAGE_LENGTH = 500

# Caller-supplied tags that no status update may overwrite.
PRESERVED_METADATA_KEYS: tuple[str, ...] = (
    "source",
    "domain",
    "run_id",
    "category",
    "timestamp",
    "user_agent",
)


class IntentStatus(StrEnum):
    queued = "queued"
    planned = "planned"
    routed = "routed"
    executing = "executing"
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"


class ExecutionStatus(StrEnum):
    submitted = "submitted"
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"


class FailureStage(StrEnum):
    policy = "policy"
    plan = "plan"
    route = "route"
    execute = "execute"
    confirm = "confirm"


TERMINAL_STATUSES: frozenset[IntentStatus] = frozenset({IntentStatus.confirmed, IntentStatus.failed})

_STATUS_RANK: dict[IntentStatus, int] = {
    IntentStatus.queued: 0,
    IntentStatus.planned: 1,
    IntentStatus.routed: 2,
    IntentStatus.executing: 3,
    IntentStatus.pending: 4,
    IntentStatus.confirmed: 5,
    IntentStatus.failed: 5,
}


def can_transition(current: IntentStatus, new: IntentStatus) -> bool:
    """Whether an intent may move from `current` to `new`.

    Re-applying the current status is allowed (it is how metadata gets merged).
    """

    if current in TERMINAL_STATUSES:
        return new == current
    return _STATUS_RANK[new] >= _STATUS_RANK[current]


def merge_metadata(existing: dict[str, Any] | None, update: dict[str, Any] | None) -> dict[str, Any]:
    """Merge `update` into `existing`, never overwriting preserved caller tags already present."""

    merged = dict(existing or {})
    merged.update(update or {})
    for key in PRESERVED_METADATA_KEYS:
        if existing and key in existing:
            merged[key] = existing[key]
    return merged


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LENGTH]


class IntentRecord(BaseModel):
    """One user request from submission to terminal outcome."""

    model_config = ConfigDict(extra="forbid")

    id: str
    created_at: datetime
    intent_text: str
    intent_kind: str
    requested_chain: str | None = None
    requested_venue: str | None = None
    usd_estimate: float | None = None
    status: IntentStatus = IntentStatus.queued
    planned_at: datetime | None = None
    executed_at: datetime | None = None
    confirmed_at: datetime | None = None
    failure_stage: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionCreate(BaseModel):
    """Fields supplied when recording a chain-side (or offchain) attempt."""

    model_config = ConfigDict(extra="forbid")

    chain: str
    network: str
    kind: str
    venue: str
    intent: str
    action: str
    from_address: str | None = None
    token: str | None = None
    amount_display: str | None = None
    usd_estimate: float | None = None
    tx_hash: str | None = None
    status: ExecutionStatus = ExecutionStatus.submitted
    error_code: str | None = None
    error_message: str | None = None
    explorer_url: str | None = None
    gas_used: int | None = None
    block_number: int | None = None
    latency_ms: int | None = None
    intent_id: str | None = None


class ExecutionRecord(ExecutionCreate):
    id: str
    created_at: datetime
    updated_at: datetime


EXECUTION_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "status",
        "tx_hash",
        "explorer_url",
        "error_code",
        "error_message",
        "gas_used",
        "block_number",
        "latency_ms",
    }
)
