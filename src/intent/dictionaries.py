"""Static vocabularies for intent parsing: assets, chains, venues and prices.

These tables should remain small and deterministic. Everything the parser and router recognize by
name lives here.
"""

from __future__ import annotations

# Fixed vocabulary used by the edit-distance fallback; order breaks ties.
CANONICAL_ASSETS: tuple[str, ...] = ("BTC", "ETH", "SOL", "USDC", "USDT", "DAI", "HYPE", "LINK")

STABLECOINS: frozenset[str] = frozenset({"USDC", "USDT", "DAI"})

ASSET_ALIASES: dict[str, str] = {
    # Wrapped tokens fold into their underlying asset.
    "WETH": "ETH",
    "WBTC": "BTC",
    "WSOL": "SOL",
    "STETH": "ETH",
    # Full names.
    "BITCOIN": "BTC",
    "ETHEREUM": "ETH",
    "ETHER": "ETH",
    "SOLANA": "SOL",
    "HYPERLIQUID": "HYPE",
    "CHAINLINK": "LINK",
    "TETHER": "USDT",
    # Bridged / demo stablecoin variants.
    "USDCE": "USDC",
    "BUSDC": "USDC",
    "BLSMUSDC": "USDC",
    "BLOOMUSDC": "USDC",
    # Common misspellings.
    "ETHERIUM": "ETH",
    "ETHEREUEM": "ETH",
    "BITCION": "BTC",
    "SOLONA": "SOL",
    "USCD": "USDC",
    "USTD": "USDT",
}

# Native chain of non-stable assets; stablecoins fall back to DEFAULT_STABLECOIN_CHAIN.
ASSET_NATIVE_CHAIN: dict[str, str] = {
    "ETH": "ethereum",
    "LINK": "ethereum",
    "BTC": "ethereum",
    "SOL": "solana",
    "HYPE": "hyperliquid",
}

DEFAULT_STABLECOIN_CHAIN = "ethereum"

CHAIN_ALIASES: dict[str, str] = {
    "eth": "ethereum",
    "ethereum": "ethereum",
    "sepolia": "ethereum",
    "mainnet": "ethereum",
    "sol": "solana",
    "solana": "solana",
    "devnet": "solana",
    "hl": "hyperliquid",
    "hyperliquid": "hyperliquid",
    "base": "base",
    "arb": "arbitrum",
    "arbitrum": "arbitrum",
    "op": "optimism",
    "optimism": "optimism",
    "polygon": "polygon",
    "matic": "polygon",
}

VENUE_ALIASES: dict[str, str] = {
    "hl": "hyperliquid",
    "hyperliquid": "hyperliquid",
    "drift": "drift",
    "dydx": "dydx",
    "gmx": "gmx",
    "aave": "aave",
    "kamino": "kamino",
    "marginfi": "marginfi",
    "compound": "compound",
    "uniswap": "uniswap",
    "uni": "uniswap",
    "jupiter": "jupiter",
    "jup": "jupiter",
    "lifi": "lifi",
    "wormhole": "wormhole",
    "vault": "demo_vault",
}

PERP_VENUES: frozenset[str] = frozenset({"hyperliquid", "drift", "dydx", "gmx"})

# Rough USD marks used only for policy thresholds and ledger estimates.
ASSET_PRICES_USD: dict[str, float] = {
    "USDC": 1.0,
    "USDT": 1.0,
    "DAI": 1.0,
    "ETH": 2000.0,
    "BTC": 45000.0,
    "SOL": 100.0,
    "HYPE": 20.0,
    "LINK": 15.0,
}

SIDE_WORDS: dict[str, str] = {
    "long": "long",
    "buy": "long",
    "bull": "long",
    "bullish": "long",
    "short": "short",
    "sell": "short",
    "bear": "short",
    "bearish": "short",
}


def resolve_chain(value: str | None) -> str | None:
    """Map a chain word (`eth`, `sol`, `hl`, ...) to its canonical chain name."""

    if not value:
        return None
    return CHAIN_ALIASES.get(value.strip().lower())


def resolve_venue(value: str | None) -> str | None:
    """Map a venue word to its canonical venue name, or `None` if it isn't a known venue."""

    if not value:
        return None
    return VENUE_ALIASES.get(value.strip().lower())


def native_chain_for_asset(asset: str | None) -> str:
    """Return the chain an asset natively lives on (stablecoins and unknowns default to ethereum)."""

    if not asset:
        return DEFAULT_STABLECOIN_CHAIN
    return ASSET_NATIVE_CHAIN.get(asset.upper(), DEFAULT_STABLECOIN_CHAIN)


def find_known_asset(tokens: list[str]) -> str | None:
    """Return the first token that names a canonical asset (directly or through an alias)."""

    for token in tokens:
        upper = token.upper()
        if upper in CANONICAL_ASSETS:
            return upper
        if upper in ASSET_ALIASES:
            return ASSET_ALIASES[upper]
    return None
