"""Result shape returned by every coordinator entry point."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IntentError(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: str
    code: str
    message: str


class IntentExecutionResult(BaseModel):
    """Stable contract between the pipeline and its callers (CLI, UI, batch runner).

    `status` is an intent status (`routed`, `confirmed`, `pending`, `failed`) or
    `pending_confirmation` when policy needs the user to acknowledge the request first.
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    intent_id: str | None = None
    status: str
    execution_id: str | None = None
    tx_hash: str | None = None
    explorer_url: str | None = None
    error: IntentError | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(
            cls,
            stage: str,
            code: str,
            message: str,
            *,
            intent_id: str | None = None,
            metadata: dict[str, Any] | None = None,
    ) -> IntentExecutionResult:
        return cls(
            ok=False,
            intent_id=intent_id,
            status="failed",
            error=IntentError(stage=str(stage), code=code, message=message),
            metadata=dict(metadata or {}),
        )
