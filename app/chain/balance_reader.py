"""
============================================================================
Execution Gate - Chain Balance Reader
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Registered chain label + wallet address
Side Effects: JSON-RPC reads (eth_call / getTokenAccountsByOwner)

Reads the stable-asset (bUSDC) balance of an address on one chain:
- EVM chains: ERC-20 balanceOf via eth_call
- Solana: SPL token accounts owned by the address, filtered by mint

The reader never guesses. When every endpoint and attempt fails it raises
BalanceReadError carrying the RPC diagnostics; callers fail closed.

============================================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Any, List

from app.chain.chains import ChainRegistry, ChainSpec, UnsupportedChainError, is_evm_address
from app.chain.rpc_client import RpcClientPool, RpcCallError, RpcCallMeta
from services.gate_models import STABLE_DECIMALS, units_to_usd

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# keccak256("balanceOf(address)")[:4]
BALANCE_OF_SELECTOR = "0x70a08231"


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class BalanceReadResult:
    """Stable balance of one address, with RPC diagnostics."""
    chain: str
    address: str
    balance_usd: Decimal
    raw_units: int
    debug: RpcCallMeta = field(default_factory=RpcCallMeta)


class BalanceReadError(Exception):
    """Raised when a balance cannot be determined."""

    def __init__(self, message: str, chain: str, debug: Optional[RpcCallMeta] = None) -> None:
        self.message = message
        self.chain = chain
        self.debug = debug or RpcCallMeta(last_error=message)
        super().__init__(message)


# ============================================================================
# ABI HELPERS
# ============================================================================

def encode_balance_of(owner: str) -> str:
    """ABI-encode balanceOf(owner) calldata."""
    address = owner.strip().lower()
    if address.startswith("0x"):
        address = address[2:]
    return BALANCE_OF_SELECTOR + address.rjust(64, "0")


def decode_uint256(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


def sum_spl_token_units(result: Any) -> int:
    """Sum raw token amounts across getTokenAccountsByOwner (jsonParsed) accounts."""
    accounts: List[Any] = []
    if isinstance(result, dict):
        accounts = result.get("value") or []
    total = 0
    for entry in accounts:
        try:
            token_amount = entry["account"]["data"]["parsed"]["info"]["tokenAmount"]
            total += int(token_amount["amount"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"[BALANCE-READER] Skipping malformed SPL account entry: {entry!r:.120}")
    return total


# ============================================================================
# BALANCE READER
# ============================================================================

class ChainBalanceReader:
    """
    Stable balance reads across registered chains.

    USAGE:
        reader = ChainBalanceReader(registry, pool)
        result = await reader.read_stable_balance("sepolia", "0xabc...")
    """

    def __init__(self, registry: ChainRegistry, pool: RpcClientPool) -> None:
        self._registry = registry
        self._pool = pool

    async def read_stable_balance(
        self,
        chain: str,
        address: str,
        correlation_id: Optional[str] = None,
    ) -> BalanceReadResult:
        """
        Read the bUSDC balance of address on chain.

        Raises:
            BalanceReadError: Unsupported chain, missing token config,
                invalid address, or RPC exhaustion
        """
        try:
            spec = self._registry.get(chain)
        except UnsupportedChainError as e:
            raise BalanceReadError(str(e), chain=str(chain))

        if not spec.stable_token:
            raise BalanceReadError(
                f"Missing stable token configuration for {spec.label}", chain=spec.key
            )

        if spec.is_evm:
            result = await self._read_evm(spec, address, correlation_id)
        else:
            result = await self._read_solana(spec, address, correlation_id)

        logger.info(
            f"[BALANCE-READER] chain={spec.key} | address={address[:10]}... | "
            f"balance_usd={result.balance_usd} | rpc={result.debug.rpc_used} | "
            f"attempts={result.debug.attempts} | correlation_id={correlation_id}"
        )
        return result

    async def _read_evm(
        self, spec: ChainSpec, address: str, correlation_id: Optional[str]
    ) -> BalanceReadResult:
        if not is_evm_address(address):
            raise BalanceReadError(f"Invalid EVM address: {address}", chain=spec.key)

        client = self._pool.get(spec)
        call = {"to": spec.stable_token.lower(), "data": encode_balance_of(address)}
        try:
            response = await client.call("eth_call", [call, "latest"], correlation_id)
            raw = decode_uint256(response.result)
        except RpcCallError as e:
            raise BalanceReadError(e.message, chain=spec.key, debug=e.meta)
        except ValueError as e:
            raise BalanceReadError(f"Malformed balanceOf result: {e}", chain=spec.key)

        return BalanceReadResult(
            chain=spec.key,
            address=address,
            balance_usd=units_to_usd(raw, STABLE_DECIMALS),
            raw_units=raw,
            debug=response.meta,
        )

    async def _read_solana(
        self, spec: ChainSpec, address: str, correlation_id: Optional[str]
    ) -> BalanceReadResult:
        if not address or not address.strip():
            raise BalanceReadError("Missing Solana address", chain=spec.key)

        client = self._pool.get(spec)
        params = [
            address.strip(),
            {"mint": spec.stable_token},
            {"encoding": "jsonParsed"},
        ]
        try:
            response = await client.call("getTokenAccountsByOwner", params, correlation_id)
        except RpcCallError as e:
            raise BalanceReadError(e.message, chain=spec.key, debug=e.meta)

        # No token account yet means a zero balance
        raw = sum_spl_token_units(response.result)
        return BalanceReadResult(
            chain=spec.key,
            address=address,
            balance_usd=units_to_usd(raw, STABLE_DECIMALS),
            raw_units=raw,
            debug=response.meta,
        )


__all__ = [
    "BALANCE_OF_SELECTOR",
    "BalanceReadResult",
    "BalanceReadError",
    "ChainBalanceReader",
    "encode_balance_of",
    "decode_uint256",
    "sum_spl_token_units",
]
