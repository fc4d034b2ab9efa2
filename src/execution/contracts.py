"""Collaborator contracts for execution: chain executors, capability validators, feedback sinks.

Concrete chain SDKs (signing, RPC transport) live outside this package; the coordinator only
depends on these protocols, which makes them easy to fake in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class ChainExecutorError(RuntimeError):
    """Base error raised by chain executors. `code` becomes the ledger error code."""

    code = "EXECUTION_ERROR"


class InsufficientBalanceError(ChainExecutorError):
    code = "INSUFFICIENT_BALANCE"


class NonceError(ChainExecutorError):
    code = "NONCE_ERROR"


class ExecutorConfigError(ChainExecutorError):
    code = "CONFIG_MISSING"


class TransactionRevertedError(ChainExecutorError):
    code = "TX_REVERTED"


class ReceiptTimeoutError(TimeoutError):
    """The receipt did not arrive within the confirmation timeout; the tx may still land."""


@dataclass(frozen=True)
class ChainOperation:
    """A transaction the executor should build, sign and send."""

    chain: str
    network: str
    kind: str
    venue: str
    action: str
    asset: str | None = None
    amount: str | None = None
    adapter: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    nonce: int | None = None


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    success: bool
    block_number: int | None = None
    gas_used: int | None = None


@dataclass(frozen=True)
class CapabilityVerdict:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class ChainExecutor(Protocol):
    """Signs and submits operations on one chain."""

    @property
    def address(self) -> str | None: ...

    async def submit(self, operation: ChainOperation) -> str:
        """Send `operation` and return its transaction hash."""
        ...

    async def wait_for_receipt(self, tx_hash: str, timeout_s: float) -> Receipt:
        """Wait for the receipt.

        Raises:
            ReceiptTimeoutError: If no receipt arrives within `timeout_s`.
        """
        ...

    async def get_pending_nonce(self) -> int: ...

    def build_explorer_url(self, chain: str, network: str, tx_hash: str) -> str: ...


class CapabilityValidator(Protocol):
    async def validate(
            self,
            *,
            kind: str,
            chain: str,
            venue: str,
            asset: str | None,
            amount_usd: float | None,
    ) -> CapabilityVerdict: ...


class FeedbackClient(Protocol):
    """Reputation feedback sink; failures are never surfaced to the caller."""

    async def submit_feedback(
            self,
            *,
            intent_id: str,
            kind: str,
            chain: str,
            success: bool,
            latency_ms: int,
    ) -> None: ...
