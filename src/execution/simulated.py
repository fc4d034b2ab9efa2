"""In-process chain executor for `EXECUTION_MODE=sim`.

Transaction hashes are derived from the operation and a local nonce counter, so a given sequence of
operations always produces the same hashes. Every submission confirms immediately.
"""

from __future__ import annotations

import hashlib
import json
import logging

from src.execution.contracts import ChainOperation, Receipt, ReceiptTimeoutError
from src.execution.explorer import build_explorer_url

logger = logging.getLogger(__name__)

SIMULATED_GAS_USED = 21_000
_FIRST_BLOCK = 1_000_000


class SimulatedChainExecutor:
    def __init__(self, chain: str, address: str | None = None) -> None:
        self.chain = chain
        self._address = address or f"sim-{chain}-signer"
        self._nonce = 0
        self._receipts: dict[str, Receipt] = {}

    @property
    def address(self) -> str | None:
        return self._address

    async def get_pending_nonce(self) -> int:
        return self._nonce

    async def submit(self, operation: ChainOperation) -> str:
        nonce = operation.nonce if operation.nonce is not None else self._nonce
        material = json.dumps(
            {
                "chain": operation.chain,
                "network": operation.network,
                "kind": operation.kind,
                "venue": operation.venue,
                "action": operation.action,
                "asset": operation.asset,
                "amount": operation.amount,
                "payload": operation.payload,
                "nonce": nonce,
            },
            sort_keys=True,
            default=str,
        )
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
        tx_hash = digest if self.chain == "solana" else f"0x{digest}"

        self._nonce = max(self._nonce, nonce) + 1
        self._receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            success=True,
            block_number=_FIRST_BLOCK + nonce,
            gas_used=SIMULATED_GAS_USED,
        )
        logger.debug("simulated submit chain=%s kind=%s tx_hash=%s", self.chain, operation.kind, tx_hash)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout_s: float) -> Receipt:
        receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise ReceiptTimeoutError(f"no simulated receipt for {tx_hash}")
        return receipt

    def build_explorer_url(self, chain: str, network: str, tx_hash: str) -> str:
        return build_explorer_url(chain, network, tx_hash)
