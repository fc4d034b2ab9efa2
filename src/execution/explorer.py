"""Block explorer links per chain/network."""

from __future__ import annotations

_ETHERSCAN_HOSTS: dict[str, str] = {
    "sepolia": "https://sepolia.etherscan.io",
    "mainnet": "https://etherscan.io",
}

_HYPERLIQUID_HOSTS: dict[str, str] = {
    "hyperliquid_testnet": "https://testnet.purrsec.com",
    "testnet": "https://testnet.purrsec.com",
    "mainnet": "https://purrsec.com",
    "hyperliquid": "https://purrsec.com",
}


def build_explorer_url(chain: str, network: str, tx_hash: str) -> str:
    """Return a link to `tx_hash`, or `""` when the chain/network has no known explorer."""

    if not tx_hash:
        return ""

    if chain == "ethereum":
        host = _ETHERSCAN_HOSTS.get(network)
        return f"{host}/tx/{tx_hash}" if host else ""

    if chain == "solana":
        if network in ("mainnet", "mainnet-beta"):
            return f"https://explorer.solana.com/tx/{tx_hash}"
        return f"https://explorer.solana.com/tx/{tx_hash}?cluster={network}"

    if chain == "hyperliquid":
        host = _HYPERLIQUID_HOSTS.get(network)
        return f"{host}/tx/{tx_hash}" if host else ""

    return ""
