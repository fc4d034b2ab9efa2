"""Static venue capability tables.

`IMPLEMENTED_VENUES[chain][kind]` lists the venues that have a real (non-proof) integration. A route
is only ever `real` when its venue appears here for the route's chain and intent kind.
"""

from __future__ import annotations

from src.intent.dictionaries import ASSET_PRICES_USD
from src.intent.normalize import parse_amount
from src.intent.schema import IntentKind, ParsedIntent

DEFAULT_CHAIN = "ethereum"
PERP_CREATION_CHAIN = "hyperliquid"

CHAIN_NETWORKS: dict[str, str] = {
    "ethereum": "sepolia",
    "solana": "devnet",
    "hyperliquid": "hyperliquid_testnet",
}

IMPLEMENTED_VENUES: dict[str, dict[IntentKind, tuple[str, ...]]] = {
    "ethereum": {
        IntentKind.deposit: ("demo_vault", "aave"),
        IntentKind.swap: ("demo_dex", "uniswap"),
        IntentKind.bridge: ("bridge_proof",),
        IntentKind.perp: ("demo_perp",),
        IntentKind.unknown: ("native",),
    },
    "solana": {
        IntentKind.deposit: ("solana_vault",),
        IntentKind.swap: ("demo_dex",),
        IntentKind.bridge: ("bridge_proof",),
        IntentKind.unknown: ("native",),
    },
    "hyperliquid": {
        IntentKind.perp_create: ("hip3",),
        IntentKind.unknown: ("native",),
    },
}

# Venues users can name that exist in the world but have no integration here.
UNIMPLEMENTED_VENUES: dict[IntentKind, frozenset[str]] = {
    IntentKind.perp: frozenset({"drift", "hyperliquid", "dydx", "gmx"}),
    IntentKind.deposit: frozenset({"kamino", "marginfi", "compound"}),
    IntentKind.swap: frozenset({"jupiter"}),
    IntentKind.bridge: frozenset({"wormhole", "lifi"}),
}

PERP_MARKET_INDEX: dict[str, int] = {"BTC": 0, "ETH": 1, "SOL": 2}


def network_for_chain(chain: str) -> str:
    return CHAIN_NETWORKS.get(chain, "unknown")


def is_venue_implemented(chain: str, kind: IntentKind, venue: str) -> bool:
    return venue in IMPLEMENTED_VENUES.get(chain, {}).get(kind, ())


def is_venue_unimplemented(kind: IntentKind, venue: str | None) -> bool:
    return venue is not None and venue in UNIMPLEMENTED_VENUES.get(kind, frozenset())


def estimate_intent_usd(parsed: ParsedIntent) -> float | None:
    """Rough USD value of an intent from the static price table.

    Returns `None` when the intent carries no amount. Unknown assets are priced at 1.
    """

    amount = parse_amount(parsed.amount)
    if amount is None:
        return None

    unit = (parsed.amount_unit or "USDC").upper()
    price = ASSET_PRICES_USD.get(unit, 1.0)
    return float(amount) * price
