"""Parsed intent schema (Pydantic models).

`ParsedIntent` is the contract between the text parsers and everything downstream (policy, router,
coordinator). Parsers always produce one; unrecognized text becomes `kind=unknown, action=proof`.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_LEVERAGE = 1
MAX_LEVERAGE = 100


class IntentKind(StrEnum):
    """Tag of a parsed intent."""

    perp = "perp"
    perp_create = "perp_create"
    deposit = "deposit"
    swap = "swap"
    bridge = "bridge"
    event = "event"
    unknown = "unknown"


class IntentType(StrEnum):
    """Finer-grained feature tag carried in `raw_params["intent_type"]`."""

    hedge = "hedge"
    prediction = "prediction"
    vault_discovery = "vault_discovery"
    analytics = "analytics"
    dca = "dca"
    yield_optimize = "yield_optimize"
    multi_step = "multi_step"
    market_creation = "market_creation"


def clamp_leverage(value: float) -> int:
    """Clamp a leverage multiplier into `[1, 100]`."""

    if math.isnan(value):
        return MIN_LEVERAGE
    return int(round(max(MIN_LEVERAGE, min(MAX_LEVERAGE, value))))


class ParsedIntent(BaseModel):
    """A typed trading command extracted from free text."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    kind: IntentKind
    action: str
    amount: str | None = None
    amount_unit: str | None = None
    target_asset: str | None = None
    leverage: int | None = None
    source_chain: str | None = None
    dest_chain: str | None = None
    venue: str | None = None
    raw_params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: str | None) -> str | None:
        """Amount must be a positive finite decimal string."""

        if value is None:
            return None
        try:
            number = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"amount is not a decimal: {value!r}") from exc
        if not number.is_finite() or number <= 0:
            raise ValueError("amount must be positive and finite")
        return value

    @field_validator("leverage", mode="before")
    @classmethod
    def validate_leverage(cls, value: Any) -> int | None:
        if value is None:
            return None
        return clamp_leverage(float(value))

    @property
    def intent_type(self) -> str | None:
        value = self.raw_params.get("intent_type")
        return str(value) if value is not None else None

    @property
    def original_text(self) -> str:
        return str(self.raw_params.get("original_text", ""))

    @property
    def warnings(self) -> list[str]:
        return list(self.raw_params.get("warnings", []))


def unknown_intent(text: str) -> ParsedIntent:
    """Fallback intent for text that no matcher claimed."""

    return ParsedIntent(kind=IntentKind.unknown, action="proof", raw_params={"original_text": text})
