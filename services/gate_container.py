"""
============================================================================
Execution Gate - Component Wiring
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Side Effects: Creates the ledger schema and HTTP/RPC clients on build

Builds the full gate (path guard, funding guarantor, credit router,
finalizer) from GateConfig. Every dependency can be injected so tests can
swap in an in-memory ledger, a fake mint issuer or an httpx mock transport.

============================================================================
"""

from dataclasses import dataclass
from typing import Optional
import logging

import httpx

from services.gate_config import GateConfig, get_gate_config
from services.intent_context_store import IntentContextStore, create_context_store
from services.path_transition_guard import PathTransitionGuard
from services.stable_credit_router import StableCreditRouter
from services.execution_funding_guarantor import ExecutionFundingGuarantor
from services.credit_finalizer import CreditFinalizer
from app.chain.chains import ChainRegistry
from app.chain.rpc_client import RpcClientPool
from app.chain.balance_reader import ChainBalanceReader
from app.chain.receipt_confirmer import ReceiptConfirmer
from app.chain.mint_issuer import MintIssuer, RelayerMintIssuer
from app.database.session import get_engine
from app.ledger.credit_ledger import CreditLedger, SqlCreditLedger

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class ExecutionGate:
    """Wired gate components sharing one config, ledger and RPC pool."""
    config: GateConfig
    registry: ChainRegistry
    rpc_pool: RpcClientPool
    reader: ChainBalanceReader
    confirmer: ReceiptConfirmer
    ledger: CreditLedger
    mint_issuer: MintIssuer
    router: StableCreditRouter
    guarantor: ExecutionFundingGuarantor
    context_store: IntentContextStore
    guard: PathTransitionGuard
    finalizer: CreditFinalizer


def build_execution_gate(
    config: Optional[GateConfig] = None,
    registry: Optional[ChainRegistry] = None,
    ledger: Optional[CreditLedger] = None,
    mint_issuer: Optional[MintIssuer] = None,
    context_store: Optional[IntentContextStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ExecutionGate:
    """
    Assemble the gate.

    Defaults: chains from environment, SQL ledger on LEDGER_DATABASE_URL,
    relayer mint issuer on MINT_RELAYER_URL, context store per config.
    """
    if config is None:
        config = get_gate_config()
    if registry is None:
        registry = ChainRegistry.from_environment()
    rpc_pool = RpcClientPool(config, transport=transport)
    reader = ChainBalanceReader(registry, rpc_pool)
    confirmer = ReceiptConfirmer(registry, rpc_pool, poll_ms=config.receipt_poll_ms)
    if ledger is None:
        ledger = SqlCreditLedger(get_engine())
    if mint_issuer is None:
        mint_issuer = RelayerMintIssuer(transport=transport)
    router = StableCreditRouter(ledger, mint_issuer, config)
    guarantor = ExecutionFundingGuarantor(reader, router, confirmer, ledger, config)
    if context_store is None:
        context_store = create_context_store(config)
    guard = PathTransitionGuard(context_store, config)
    finalizer = CreditFinalizer(ledger, confirmer, config, router=router)

    logger.info(
        f"[GATE] Execution gate built | routing_enabled={config.routing_enabled} | "
        f"chains={registry.keys} | ledger={type(ledger).__name__} | "
        f"context_store={type(context_store).__name__}"
    )
    return ExecutionGate(
        config=config,
        registry=registry,
        rpc_pool=rpc_pool,
        reader=reader,
        confirmer=confirmer,
        ledger=ledger,
        mint_issuer=mint_issuer,
        router=router,
        guarantor=guarantor,
        context_store=context_store,
        guard=guard,
        finalizer=finalizer,
    )


# =============================================================================
# Factory Functions
# =============================================================================

_execution_gate_instance: Optional[ExecutionGate] = None


def get_execution_gate() -> ExecutionGate:
    """Get or build the process-wide gate."""
    global _execution_gate_instance

    if _execution_gate_instance is None:
        _execution_gate_instance = build_execution_gate()

    return _execution_gate_instance


def set_execution_gate(gate: Optional[ExecutionGate]) -> None:
    """Install a prebuilt gate (application startup and tests)."""
    global _execution_gate_instance
    _execution_gate_instance = gate


def reset_execution_gate() -> None:
    """Reset the singleton instance (for testing)."""
    set_execution_gate(None)


__all__ = [
    "ExecutionGate",
    "build_execution_gate",
    "get_execution_gate",
    "set_execution_gate",
    "reset_execution_gate",
]
