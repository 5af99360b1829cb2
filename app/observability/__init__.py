"""
============================================================================
Execution Gate - Observability Module
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    FUNDING_DECISIONS,
    CREDIT_ROUTES,
    CREDIT_IDEMPOTENT_HITS,
    CREDITED_USD,
    PATH_POLICY_DECISIONS,
    CONFIRMATIONS,
    RPC_FAILOVERS,
    FINALIZER_PROCESSED,
    RECEIPT_WAIT_SECONDS,
    record_funding_decision,
    record_credit_route,
    record_credited_usd,
    record_path_policy,
    record_confirmation,
    record_rpc_failover,
    record_finalizer_processed,
    record_receipt_wait,
)

__all__ = [
    "FUNDING_DECISIONS",
    "CREDIT_ROUTES",
    "CREDIT_IDEMPOTENT_HITS",
    "CREDITED_USD",
    "PATH_POLICY_DECISIONS",
    "CONFIRMATIONS",
    "RPC_FAILOVERS",
    "FINALIZER_PROCESSED",
    "RECEIPT_WAIT_SECONDS",
    "record_funding_decision",
    "record_credit_route",
    "record_credited_usd",
    "record_path_policy",
    "record_confirmation",
    "record_rpc_failover",
    "record_finalizer_processed",
    "record_receipt_wait",
]
