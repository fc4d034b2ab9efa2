"""Environment configuration and validation.

This module defines strongly-typed application settings loaded from environment variables
(optionally via a local `.env` file).

Signer configuration is validated as pairs: a private key without its RPC endpoint is rejected at
startup rather than surfacing later as a failed submission.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.resilience.retry import RetryConfig
from src.routing.venues import CHAIN_NETWORKS, DEFAULT_CHAIN


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    execution_mode: Literal["sim", "live"] = Field(default="sim", alias="EXECUTION_MODE")
    default_chain: str = Field(default=DEFAULT_CHAIN, alias="DEFAULT_CHAIN")

    eth_rpc_url: str | None = Field(default=None, alias="ETH_RPC_URL")
    relayer_private_key: SecretStr | None = Field(default=None, alias="RELAYER_PRIVATE_KEY")
    solana_rpc_url: str | None = Field(default=None, alias="SOLANA_RPC_URL")
    solana_private_key: SecretStr | None = Field(default=None, alias="SOLANA_PRIVATE_KEY")
    hyperliquid_api_url: str | None = Field(default=None, alias="HYPERLIQUID_API_URL")
    hyperliquid_private_key: SecretStr | None = Field(default=None, alias="HYPERLIQUID_PRIVATE_KEY")

    demo_perp_adapter_address: str | None = Field(default=None, alias="DEMO_PERP_ADAPTER_ADDRESS")
    aave_adapter_address: str | None = Field(default=None, alias="AAVE_ADAPTER_ADDRESS")

    confirmation_timeout_s: float = Field(default=15.0, gt=0, alias="CONFIRMATION_TIMEOUT_S")

    retry_max_retries: int = Field(default=3, ge=0, alias="RETRY_MAX_RETRIES")
    retry_base_delay_ms: int = Field(default=1000, ge=0, alias="RETRY_BASE_DELAY_MS")
    retry_max_delay_ms: int = Field(default=30_000, ge=0, alias="RETRY_MAX_DELAY_MS")
    retry_jitter_factor: float = Field(default=0.3, alias="RETRY_JITTER_FACTOR")
    rpc_requests_per_minute: int = Field(default=60, gt=0, alias="RPC_REQUESTS_PER_MINUTE")

    high_value_threshold_usd: float = Field(default=10_000.0, alias="HIGH_VALUE_THRESHOLD_USD")
    bridge_confirmation_usd: float = Field(default=50_000.0, alias="BRIDGE_CONFIRMATION_USD")
    max_auto_leverage: int = Field(default=50, ge=1, le=100, alias="MAX_AUTO_LEVERAGE")
    altcoin_max_leverage: int = Field(default=25, ge=1, le=100, alias="ALTCOIN_MAX_LEVERAGE")
    meme_max_leverage: int = Field(default=10, ge=1, le=100, alias="MEME_MAX_LEVERAGE")
    max_intent_usd: float = Field(default=1_000_000.0, gt=0, alias="MAX_INTENT_USD")
    max_sessions: int = Field(default=10_000, ge=1, alias="MAX_SESSIONS")

    @field_validator("retry_jitter_factor")
    @classmethod
    def validate_jitter_factor(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("RETRY_JITTER_FACTOR must be between 0 and 1")
        return value

    @field_validator("default_chain")
    @classmethod
    def validate_default_chain(cls, value: str) -> str:
        chain = value.strip().lower()
        if chain not in CHAIN_NETWORKS:
            raise ValueError(f"DEFAULT_CHAIN must be one of {sorted(CHAIN_NETWORKS)}")
        return chain

    @model_validator(mode="after")
    def validate_signers(self) -> Settings:
        """Every signer key needs its RPC endpoint; live mode needs at least one signer."""

        pairs = (
            ("RELAYER_PRIVATE_KEY", self.relayer_private_key, "ETH_RPC_URL", self.eth_rpc_url),
            ("SOLANA_PRIVATE_KEY", self.solana_private_key, "SOLANA_RPC_URL", self.solana_rpc_url),
            (
                "HYPERLIQUID_PRIVATE_KEY",
                self.hyperliquid_private_key,
                "HYPERLIQUID_API_URL",
                self.hyperliquid_api_url,
            ),
        )
        for key_name, key, url_name, url in pairs:
            if key is not None and not url:
                raise ValueError(f"{url_name} is required when {key_name} is set")

        if self.execution_mode == "live" and not self.configured_signer_chains():
            raise ValueError("EXECUTION_MODE=live requires at least one chain signer")
        return self

    def configured_signer_chains(self) -> frozenset[str]:
        """Chains with both an RPC endpoint and a signing key."""

        chains: set[str] = set()
        if self.eth_rpc_url and self.relayer_private_key is not None:
            chains.add("ethereum")
        if self.solana_rpc_url and self.solana_private_key is not None:
            chains.add("solana")
        if self.hyperliquid_api_url and self.hyperliquid_private_key is not None:
            chains.add("hyperliquid")
        return frozenset(chains)

    def signer_chains(self) -> frozenset[str]:
        """Chains the router may treat as signable; simulation signs everywhere."""

        if self.execution_mode == "sim":
            return frozenset(CHAIN_NETWORKS)
        return self.configured_signer_chains()

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter_factor=self.retry_jitter_factor,
        )


def load_settings() -> Settings:
    """Load and validate settings from environment variables.

    Raises:
        RuntimeError: If the environment configuration is missing or invalid.
    """

    try:
        return Settings()
    except ValidationError as exc:
        # Raising here is fine: caller can decide how to handle startup errors.
        raise RuntimeError(f"Invalid environment configuration: {exc}") from exc
