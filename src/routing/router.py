"""Route a parsed intent to a chain, venue and execution mode.

`route_intent` is pure: it reads only the parsed intent, the runtime feature flags and an optional
preferred chain. Chain choice order is: preferred chain > intent-type hint (market creation) >
bridge source chain > default chain.

Routing never fails for features whose integration is not wired (hedge, event, vault discovery,
analytics); those degrade to `proof_only` or `offchain` with a warning. The only routing error is an
explicitly requested venue that has no integration (`VENUE_NOT_IMPLEMENTED`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from src.intent.dictionaries import resolve_chain
from src.intent.schema import IntentKind, IntentType, ParsedIntent
from src.routing.venues import (
    CHAIN_NETWORKS,
    DEFAULT_CHAIN,
    PERP_CREATION_CHAIN,
    is_venue_implemented,
    is_venue_unimplemented,
    network_for_chain,
)

logger = logging.getLogger(__name__)

SIGNER_SETTINGS: dict[str, str] = {
    "ethereum": "ETH_RPC_URL/RELAYER_PRIVATE_KEY",
    "solana": "SOLANA_RPC_URL/SOLANA_PRIVATE_KEY",
    "hyperliquid": "HYPERLIQUID_API_URL/HYPERLIQUID_PRIVATE_KEY",
}

NOT_RECOGNIZED_WARNING = "Intent not recognized. Recording proof-of-execution only."


class ExecutionType(StrEnum):
    real = "real"
    proof_only = "proof_only"
    offchain = "offchain"


class RouteDecision(BaseModel):
    """Where and how an intent will be executed."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    chain: str
    network: str
    venue: str
    execution_type: ExecutionType
    adapter: str | None = None
    warnings: list[str] = Field(default_factory=list)


class RouteError(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: str = "route"
    code: str
    message: str


@dataclass(frozen=True)
class RoutingFeatures:
    """Runtime capabilities the router may rely on."""

    signer_chains: frozenset[str] = field(default_factory=frozenset)
    demo_perp_adapter: str | None = None
    aave_adapter: str | None = None
    default_chain: str = DEFAULT_CHAIN

    def has_signer(self, chain: str) -> bool:
        return chain in self.signer_chains


def _choose_chain(
        parsed: ParsedIntent,
        features: RoutingFeatures,
        preferred_chain: str | None,
        warnings: list[str],
) -> str:
    if preferred_chain:
        chain = resolve_chain(preferred_chain) or preferred_chain.strip().lower()
    elif parsed.kind == IntentKind.perp_create:
        chain = PERP_CREATION_CHAIN
    elif parsed.kind == IntentKind.bridge and parsed.source_chain:
        chain = parsed.source_chain
    else:
        chain = features.default_chain

    if chain not in CHAIN_NETWORKS:
        warnings.append(f"Chain {chain} is not supported; using {features.default_chain}.")
        chain = features.default_chain
    return chain


def _decision(
        chain: str,
        venue: str,
        execution_type: ExecutionType,
        warnings: list[str],
        adapter: str | None = None,
) -> RouteDecision:
    return RouteDecision(
        chain=chain,
        network=network_for_chain(chain),
        venue=venue,
        execution_type=execution_type,
        adapter=adapter,
        warnings=warnings,
    )


def _real_or_proof(
        chain: str,
        kind: IntentKind,
        venue: str,
        features: RoutingFeatures,
        warnings: list[str],
        *,
        adapter: str | None = None,
        adapter_setting: str | None = None,
        adapter_required: bool = False,
) -> RouteDecision:
    """Offer real execution only when venue, signer and (if needed) adapter are all present."""

    if not is_venue_implemented(chain, kind, venue):
        warnings.append(f"PROOF_ONLY: {venue} has no {kind} integration on {chain}.")
        return _decision(chain, venue, ExecutionType.proof_only, warnings)

    if not features.has_signer(chain):
        setting = SIGNER_SETTINGS.get(chain, f"{chain} signer")
        warnings.append(f"PROOF_ONLY: {setting} not configured.")
        return _decision(chain, venue, ExecutionType.proof_only, warnings)

    if adapter_required and not adapter:
        warnings.append(f"PROOF_ONLY: {adapter_setting} not configured.")
        return _decision(chain, venue, ExecutionType.proof_only, warnings)

    return _decision(chain, venue, ExecutionType.real, warnings, adapter=adapter)


def route_intent(
        parsed: ParsedIntent,
        features: RoutingFeatures,
        preferred_chain: str | None = None,
) -> RouteDecision | RouteError:
    """Decide chain, network, venue and execution mode for `parsed`."""

    warnings = list(parsed.warnings)
    chain = _choose_chain(parsed, features, preferred_chain, warnings)
    intent_type = parsed.intent_type

    if intent_type == IntentType.hedge:
        warnings.append("PROOF_ONLY: Hedge intent requires portfolio state integration.")
        return _decision(chain, "native", ExecutionType.proof_only, warnings)

    if parsed.kind == IntentKind.event or intent_type == IntentType.prediction:
        warnings.append("PROOF_ONLY: Prediction market execution is not wired; recording proof of intent.")
        return _decision(chain, "native", ExecutionType.proof_only, warnings)

    if intent_type == IntentType.vault_discovery:
        warnings.append("PROOF_ONLY: Vault discovery requires yield ranking integration.")
        return _decision(chain, "native", ExecutionType.proof_only, warnings)

    if intent_type == IntentType.analytics:
        warnings.append("OFFCHAIN: Analytics requests are answered without a transaction.")
        return _decision(chain, "offchain", ExecutionType.offchain, warnings)

    if is_venue_unimplemented(parsed.kind, parsed.venue):
        logger.info("venue not implemented kind=%s venue=%s", parsed.kind, parsed.venue)
        return RouteError(
            code="VENUE_NOT_IMPLEMENTED",
            message=f"Venue {parsed.venue} is not implemented for {parsed.kind} intents.",
        )

    if intent_type == IntentType.multi_step:
        warnings.append("MULTI_STEP: only the first step is executed; remaining steps are recorded.")
    elif intent_type == IntentType.dca:
        warnings.append("DCA: only the first purchase executes now; the schedule is recorded.")
    elif intent_type == IntentType.yield_optimize:
        warnings.append("Yield ranking is not wired; depositing into the default vault.")

    if parsed.kind == IntentKind.perp_create:
        if chain != PERP_CREATION_CHAIN:
            warnings.append(f"PROOF_ONLY: Market creation is only available on {PERP_CREATION_CHAIN}.")
            return _decision(chain, "native", ExecutionType.proof_only, warnings)
        return _real_or_proof(chain, IntentKind.perp_create, "hip3", features, warnings)

    if parsed.kind == IntentKind.perp:
        if chain != "ethereum":
            warnings.append(f"PROOF_ONLY: Perps are not available on {chain}.")
            return _decision(chain, "demo_perp", ExecutionType.proof_only, warnings)
        return _real_or_proof(
            chain,
            IntentKind.perp,
            "demo_perp",
            features,
            warnings,
            adapter=features.demo_perp_adapter,
            adapter_setting="DEMO_PERP_ADAPTER_ADDRESS",
            adapter_required=True,
        )

    if parsed.kind == IntentKind.bridge:
        dest = parsed.dest_chain
        if dest and dest != chain:
            warnings.append(
                "PROOF_ONLY: Cross-chain transfer is recorded as source and destination proofs."
            )
            return _decision(chain, "bridge_proof", ExecutionType.proof_only, warnings)
        return _decision(chain, "native", ExecutionType.proof_only, warnings)

    if parsed.kind == IntentKind.deposit:
        if parsed.venue == "aave" and chain == "ethereum":
            return _real_or_proof(
                chain,
                IntentKind.deposit,
                "aave",
                features,
                warnings,
                adapter=features.aave_adapter,
                adapter_setting="AAVE_ADAPTER_ADDRESS",
                adapter_required=True,
            )
        venue = "solana_vault" if chain == "solana" else "demo_vault"
        return _real_or_proof(chain, IntentKind.deposit, venue, features, warnings)

    if parsed.kind == IntentKind.swap:
        venue = "uniswap" if parsed.venue == "uniswap" and chain == "ethereum" else "demo_dex"
        return _real_or_proof(chain, IntentKind.swap, venue, features, warnings)

    warnings.append(NOT_RECOGNIZED_WARNING)
    return _decision(chain, "native", ExecutionType.proof_only, warnings)
