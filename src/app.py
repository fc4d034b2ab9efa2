"""Application composition root.

This module wires configuration, the ledger, chain executors, resilience registries, the policy
engine and the execution coordinator together. Nothing here is a module-level global: every
`create_app` call builds an independent object graph.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from psycopg_pool import AsyncConnectionPool

from src.config.settings import Settings
from src.db.pool import create_pool
from src.execution.contracts import CapabilityValidator, ChainExecutor, FeedbackClient
from src.execution.coordinator import ExecutionCoordinator
from src.execution.simulated import SimulatedChainExecutor
from src.execution.submitters import ProofSubmitter, RealSubmitter
from src.ledger.base import Ledger
from src.ledger.memory import InMemoryLedger
from src.ledger.postgres import PostgresLedger
from src.policy.engine import PolicyConfig, PolicyEngine
from src.resilience.rate_limiter import RateLimiterRegistry
from src.routing.router import RoutingFeatures
from src.routing.venues import CHAIN_NETWORKS
from src.security.audit import AuditLog


@dataclass(frozen=True)
class App:
    """Shared application dependencies."""

    settings: Settings
    coordinator: ExecutionCoordinator
    ledger: Ledger
    audit: AuditLog
    limiters: RateLimiterRegistry
    pool: AsyncConnectionPool | None = None

    async def start(self) -> None:
        if self.pool is not None:
            await self.pool.open(wait=True)

    async def stop(self) -> None:
        if self.pool is not None:
            await self.pool.close()


def routing_features(settings: Settings) -> RoutingFeatures:
    return RoutingFeatures(
        signer_chains=settings.signer_chains(),
        demo_perp_adapter=settings.demo_perp_adapter_address,
        aave_adapter=settings.aave_adapter_address,
        default_chain=settings.default_chain,
    )


def policy_config(settings: Settings) -> PolicyConfig:
    return PolicyConfig(
        high_value_threshold_usd=settings.high_value_threshold_usd,
        bridge_confirmation_usd=settings.bridge_confirmation_usd,
        max_auto_leverage=settings.max_auto_leverage,
        altcoin_max_leverage=settings.altcoin_max_leverage,
        meme_max_leverage=settings.meme_max_leverage,
        max_intent_usd=settings.max_intent_usd,
        max_sessions=settings.max_sessions,
    )


def create_app(
        settings: Settings,
        *,
        executors: Mapping[str, ChainExecutor] | None = None,
        ledger: Ledger | None = None,
        validator: CapabilityValidator | None = None,
        feedback: FeedbackClient | None = None,
) -> App:
    """Create the application container.

    Notes:
        - With `DATABASE_URL` set the Postgres ledger is used; its pool is opened by `App.start()`.
        - In `sim` mode every supported chain gets a `SimulatedChainExecutor` unless `executors`
          is given. Live executors are supplied by the caller.
    """

    pool: AsyncConnectionPool | None = None
    if ledger is None:
        if settings.database_url:
            pool = create_pool(settings.database_url, max_size=10)
            ledger = PostgresLedger(pool)
        else:
            ledger = InMemoryLedger()

    if executors is None:
        executors = (
            {chain: SimulatedChainExecutor(chain) for chain in CHAIN_NETWORKS}
            if settings.execution_mode == "sim"
            else {}
        )

    audit = AuditLog()
    limiters = RateLimiterRegistry(settings.rpc_requests_per_minute)
    submitter_options = {
        "limiters": limiters,
        "retry_config": settings.retry_config(),
        "confirmation_timeout_s": settings.confirmation_timeout_s,
        "audit": audit,
    }

    coordinator = ExecutionCoordinator(
        ledger=ledger,
        policy=PolicyEngine(policy_config(settings), audit=audit),
        features=routing_features(settings),
        proof_submitter=ProofSubmitter(executors, **submitter_options),
        real_submitter=RealSubmitter(executors, **submitter_options),
        validator=validator,
        feedback=feedback,
    )
    return App(
        settings=settings,
        coordinator=coordinator,
        ledger=ledger,
        audit=audit,
        limiters=limiters,
        pool=pool,
    )
