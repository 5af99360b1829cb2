"""
============================================================================
Execution Gate - Chain Registry
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Chain labels from callers are free-form strings
Side Effects: Reads RPC endpoints and token ids from environment

SOVEREIGN MANDATE:
- Settlement chains are an explicit allow-list (sepolia, base_sepolia)
- The only routing source is solana_devnet
- Every chain carries an ordered RPC endpoint list (primary first)

ENVIRONMENT VARIABLES:
    ETH_TESTNET_RPC_URL, ETH_RPC_FALLBACK_URLS
    BASE_SEPOLIA_RPC_URL, BASE_RPC_FALLBACK_URLS
    SOLANA_RPC_URL
    DEMO_BUSDC_ADDRESS, BUSDC_ADDRESS_BASE_SEPOLIA, SOLANA_BUSDC_MINT

============================================================================
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

CHAIN_SEPOLIA = "sepolia"
CHAIN_BASE_SEPOLIA = "base_sepolia"
CHAIN_SOLANA_DEVNET = "solana_devnet"

DEFAULT_SETTLEMENT_CHAIN = CHAIN_SEPOLIA
SETTLEMENT_CHAINS = (CHAIN_SEPOLIA, CHAIN_BASE_SEPOLIA)
SOURCE_CHAIN = CHAIN_SOLANA_DEVNET

CHAIN_KIND_EVM = "evm"
CHAIN_KIND_SOLANA = "solana"

# Public endpoints appended after configured ones (no API key required)
PUBLIC_SEPOLIA_RPCS = [
    "https://ethereum-sepolia-rpc.publicnode.com",
    "https://1rpc.io/sepolia",
    "https://rpc.sepolia.org",
]
PUBLIC_BASE_SEPOLIA_RPCS = ["https://sepolia.base.org"]
DEFAULT_SOLANA_RPC_URL = "https://api.devnet.solana.com"

# Relayer-funded bUSDC on Sepolia
DEFAULT_SEPOLIA_BUSDC_ADDRESS = "0x6751001fD8207c494703C062139784abCa099bB9"

_EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


# ============================================================================
# ERRORS
# ============================================================================

class UnsupportedChainError(ValueError):
    """Raised when a chain label does not resolve to a registered chain."""

    def __init__(self, chain: str) -> None:
        self.chain = chain
        super().__init__(f"Unsupported chain: {chain or 'unknown'}")


# ============================================================================
# LABEL NORMALIZATION
# ============================================================================

def normalize_chain_label(chain: Optional[str]) -> str:
    """
    Map a free-form chain label onto a registry key.

    "Solana", "sol-devnet" → solana_devnet; "Base", "base-sepolia" →
    base_sepolia; "Ethereum", "eth_sepolia" → sepolia. Unknown labels are
    returned lowercased so callers can report them.
    """
    value = str(chain or "").strip().lower()
    if not value:
        return ""
    if "sol" in value:
        return CHAIN_SOLANA_DEVNET
    if "base" in value:
        return CHAIN_BASE_SEPOLIA
    if "sep" in value or "eth" in value:
        return CHAIN_SEPOLIA
    return value


def is_settlement_chain(chain: str) -> bool:
    return chain in SETTLEMENT_CHAINS


def is_evm_address(value: Optional[str]) -> bool:
    return bool(value) and bool(_EVM_ADDRESS_RE.match(value.strip()))


def _split_urls(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [u.strip() for u in raw.split(",") if u.strip()]


def _dedupe(urls: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for url in urls:
        if url and url not in seen:
            seen.add(url)
            ordered.append(url)
    return ordered


# ============================================================================
# CHAIN SPEC
# ============================================================================

@dataclass
class ChainSpec:
    """
    Runtime description of one chain.

    rpc_urls is ordered: primary endpoint first, then fallbacks.
    stable_token is the ERC-20 contract (EVM) or SPL mint (Solana).
    """
    key: str
    label: str
    kind: str
    rpc_urls: List[str] = field(default_factory=list)
    stable_token: Optional[str] = None
    explorer_tx_base_url: Optional[str] = None

    @property
    def is_evm(self) -> bool:
        return self.kind == CHAIN_KIND_EVM

    def explorer_tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_tx_base_url:
            return None
        return f"{self.explorer_tx_base_url}{tx_hash}"


class ChainRegistry:
    """
    Lookup table of the chains the gate can read from or credit to.

    USAGE:
        registry = ChainRegistry.from_environment()
        spec = registry.get("Ethereum Sepolia")
    """

    def __init__(self, chains: List[ChainSpec]) -> None:
        self._chains: Dict[str, ChainSpec] = {c.key: c for c in chains}

    def get(self, chain: Optional[str]) -> ChainSpec:
        key = normalize_chain_label(chain)
        spec = self._chains.get(key)
        if spec is None:
            raise UnsupportedChainError(key)
        return spec

    def has(self, chain: Optional[str]) -> bool:
        return normalize_chain_label(chain) in self._chains

    @property
    def keys(self) -> List[str]:
        return list(self._chains.keys())

    @classmethod
    def from_environment(cls) -> "ChainRegistry":
        """
        Build the registry from environment variables.

        Reliability Level: SOVEREIGN TIER
        Side Effects: Reads environment, logs endpoint counts
        """
        eth_primary = os.getenv("ETH_TESTNET_RPC_URL", "").strip()
        sepolia_urls = _dedupe(
            ([eth_primary] if eth_primary else [])
            + _split_urls(os.getenv("ETH_RPC_FALLBACK_URLS"))
            + PUBLIC_SEPOLIA_RPCS
        )

        base_primary = os.getenv("BASE_SEPOLIA_RPC_URL", "").strip()
        base_urls = _dedupe(
            ([base_primary] if base_primary else [])
            + _split_urls(os.getenv("BASE_RPC_FALLBACK_URLS"))
            + PUBLIC_BASE_SEPOLIA_RPCS
        )

        solana_urls = _dedupe(
            [os.getenv("SOLANA_RPC_URL", "").strip() or DEFAULT_SOLANA_RPC_URL]
        )

        sepolia_token = os.getenv("DEMO_BUSDC_ADDRESS", "").strip() or DEFAULT_SEPOLIA_BUSDC_ADDRESS
        base_token = os.getenv("BUSDC_ADDRESS_BASE_SEPOLIA", "").strip() or None

        chains = [
            ChainSpec(
                key=CHAIN_SEPOLIA,
                label="Ethereum Sepolia",
                kind=CHAIN_KIND_EVM,
                rpc_urls=sepolia_urls,
                stable_token=sepolia_token if is_evm_address(sepolia_token) else None,
                explorer_tx_base_url="https://sepolia.etherscan.io/tx/",
            ),
            ChainSpec(
                key=CHAIN_BASE_SEPOLIA,
                label="Base Sepolia",
                kind=CHAIN_KIND_EVM,
                rpc_urls=base_urls,
                stable_token=base_token if is_evm_address(base_token) else None,
                explorer_tx_base_url="https://sepolia.basescan.org/tx/",
            ),
            ChainSpec(
                key=CHAIN_SOLANA_DEVNET,
                label="Solana Devnet",
                kind=CHAIN_KIND_SOLANA,
                rpc_urls=solana_urls,
                stable_token=os.getenv("SOLANA_BUSDC_MINT", "").strip() or None,
                explorer_tx_base_url="https://explorer.solana.com/tx/",
            ),
        ]

        logger.info(
            "[CHAIN-REGISTRY] Loaded | "
            + " | ".join(f"{c.key}_rpcs={len(c.rpc_urls)}" for c in chains)
        )
        return cls(chains)


# ============================================================================
# MODULE EXPORTS
# ============================================================================

__all__ = [
    "CHAIN_SEPOLIA",
    "CHAIN_BASE_SEPOLIA",
    "CHAIN_SOLANA_DEVNET",
    "DEFAULT_SETTLEMENT_CHAIN",
    "SETTLEMENT_CHAINS",
    "SOURCE_CHAIN",
    "CHAIN_KIND_EVM",
    "CHAIN_KIND_SOLANA",
    "ChainSpec",
    "ChainRegistry",
    "UnsupportedChainError",
    "normalize_chain_label",
    "is_settlement_chain",
    "is_evm_address",
]
