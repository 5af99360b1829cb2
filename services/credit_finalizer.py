"""
============================================================================
Execution Gate - Credit Finalizer
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Every finalized record logged with receipt_id and tx_hash
Side Effects: Ledger updates, Prometheus counters

Background sweep that advances CREDIT_SUBMITTED credits whose synchronous
caller gave up waiting:

    receipt confirmed  → CREDITED
    receipt reverted   → FAILED (CROSS_CHAIN_ROUTE_MINT_FAILED)
    still pending      → left alone for the next sweep

When wired to the router, each sweep first records broadcast mints whose
CREDIT_SUBMITTED update failed, so they enter the same sweep.

The sweep is idempotent. Running it zero times only delays finalization;
running it many times (several processes, cron plus loop) is safe because
the ledger refuses backward and terminal transitions.

============================================================================
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import asyncio
import logging
import uuid

from services.gate_config import GateConfig, get_gate_config
from services.stable_credit_router import StableCreditRouter
from services.gate_models import (
    CreditRecordPatch,
    CreditStatus,
    CrossChainCreditRecord,
    FundingErrorCode,
)
from app.chain.receipt_confirmer import ReceiptConfirmer, ReceiptStatus
from app.ledger.credit_ledger import CreditLedger, CreditLedgerError
from app.observability.metrics import record_finalizer_processed, record_credited_usd

# Configure module logger
logger = logging.getLogger(__name__)


# Each record gets a short receipt wait so one slow chain cannot stall the sweep
FINALIZER_RECEIPT_TIMEOUT_MS = 5000


@dataclass
class FinalizerReport:
    """Counts from one sweep."""
    scanned: int = 0
    credited: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "credited": self.credited,
            "failed": self.failed,
            "pending": self.pending,
            "errors": self.errors,
            "error_messages": list(self.error_messages),
        }


class CreditFinalizer:
    """
    Background worker that finalizes submitted credits.

    USAGE:
        finalizer = CreditFinalizer(ledger, confirmer, config)
        await finalizer.start()       # fixed-interval loop
        report = await finalizer.process_pending()  # one sweep
    """

    def __init__(
        self,
        ledger: CreditLedger,
        confirmer: ReceiptConfirmer,
        config: Optional[GateConfig] = None,
        receipt_timeout_ms: int = FINALIZER_RECEIPT_TIMEOUT_MS,
        router: Optional[StableCreditRouter] = None,
    ) -> None:
        self._config = config or get_gate_config()
        if self._config.finalizer_interval_seconds <= 0:
            raise ValueError(
                f"interval_seconds must be positive, got: {self._config.finalizer_interval_seconds}"
            )
        self._ledger = ledger
        self._confirmer = confirmer
        self._router = router
        self._interval_seconds = self._config.finalizer_interval_seconds
        self._batch_limit = self._config.finalizer_batch_limit
        self._receipt_timeout_ms = receipt_timeout_ms
        self._running = False
        self._task: Optional[asyncio.Task] = None

        logger.info(
            f"[CREDIT-FINALIZER] Initialized | interval_seconds={self._interval_seconds} | "
            f"batch_limit={self._batch_limit}"
        )

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the fixed-interval sweep as an asyncio task."""
        if self._running:
            logger.warning("[CREDIT-FINALIZER] Already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"[CREDIT-FINALIZER] Started | interval_seconds={self._interval_seconds}")

    async def stop(self) -> None:
        if not self._running:
            logger.warning("[CREDIT-FINALIZER] Not running, ignoring stop request")
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("[CREDIT-FINALIZER] Stopped")

    async def _run_loop(self) -> None:
        logger.info("[CREDIT-FINALIZER] Starting main loop")

        while self._running:
            try:
                report = await self.process_pending()
                if report.scanned > 0:
                    logger.info(
                        f"[CREDIT-FINALIZER] Sweep finished | scanned={report.scanned} | "
                        f"credited={report.credited} | failed={report.failed} | "
                        f"pending={report.pending} | errors={report.errors}"
                    )
            except Exception as e:
                logger.error(f"[CREDIT-FINALIZER] Error in main loop | error={str(e)}")

            try:
                await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                break

        logger.info("[CREDIT-FINALIZER] Main loop exited")

    async def process_pending(self, correlation_id: Optional[str] = None) -> FinalizerReport:
        """
        Run one sweep over CREDIT_SUBMITTED records.

        Per-record errors are counted and logged; they never abort the sweep.
        A failure to list records is reported as a single error.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        report = FinalizerReport()

        if self._router is not None:
            unrecorded = await self._router.record_unrecorded_submissions(correlation_id)
            if unrecorded:
                report.errors += 1
                report.error_messages.append(f"{unrecorded} broadcast mint(s) still unrecorded")

        try:
            records = await self._ledger.find_by_status(
                [CreditStatus.CREDIT_SUBMITTED], limit=self._batch_limit
            )
        except CreditLedgerError as e:
            logger.error(
                f"[CREDIT-FINALIZER] Could not list submitted credits | error={e} | "
                f"correlation_id={correlation_id}"
            )
            report.errors += 1
            report.error_messages.append(str(e))
            return report

        for record in records:
            report.scanned += 1
            try:
                outcome = await self._finalize_record(record, correlation_id)
            except Exception as e:
                logger.error(
                    f"[CREDIT-FINALIZER] Record failed to finalize | receipt_id={record.id} | "
                    f"error={e} | correlation_id={correlation_id}",
                    exc_info=True,
                )
                report.errors += 1
                report.error_messages.append(f"{record.id}: {e}")
                record_finalizer_processed("error")
                continue

            if outcome == ReceiptStatus.CONFIRMED:
                report.credited += 1
            elif outcome == ReceiptStatus.FAILED:
                report.failed += 1
            else:
                report.pending += 1
            record_finalizer_processed(outcome.value)

        return report

    async def _finalize_record(
        self,
        record: CrossChainCreditRecord,
        correlation_id: str,
    ) -> ReceiptStatus:
        tx_hash = record.tx_hash
        if not tx_hash:
            raise ValueError("submitted credit has no settlement tx hash")

        receipt = await self._confirmer.wait_for_receipt(
            record.to_chain,
            tx_hash,
            timeout_ms=self._receipt_timeout_ms,
            correlation_id=correlation_id,
        )

        if receipt.status == ReceiptStatus.PENDING:
            logger.debug(
                f"[CREDIT-FINALIZER] Still pending | receipt_id={record.id} | tx_hash={tx_hash}"
            )
            return ReceiptStatus.PENDING

        if receipt.status == ReceiptStatus.CONFIRMED:
            patch = CreditRecordPatch(
                status=CreditStatus.CREDITED,
                meta={
                    "receipt_status": "confirmed",
                    "block_number": receipt.block_number,
                    "finalized_by": "credit_finalizer",
                },
            )
        else:
            patch = CreditRecordPatch(
                status=CreditStatus.FAILED,
                error_code=FundingErrorCode.MINT_FAILED.value,
                meta={
                    "receipt_status": "failed",
                    "receipt_error": receipt.error,
                    "finalized_by": "credit_finalizer",
                },
            )

        _, changed = await self._ledger.transition(record.id, patch)
        if changed and receipt.status == ReceiptStatus.CONFIRMED:
            record_credited_usd(record.to_chain, record.amount_usd)

        logger.info(
            f"[CREDIT-FINALIZER] Finalized | receipt_id={record.id} | tx_hash={tx_hash} | "
            f"status={patch.status.value} | correlation_id={correlation_id}"
        )
        return receipt.status


# =============================================================================
# Factory Functions
# =============================================================================

_credit_finalizer_instance: Optional[CreditFinalizer] = None


def get_credit_finalizer(
    ledger: Optional[CreditLedger] = None,
    confirmer: Optional[ReceiptConfirmer] = None,
    config: Optional[GateConfig] = None,
    router: Optional[StableCreditRouter] = None,
) -> CreditFinalizer:
    """
    Get or create the singleton CreditFinalizer.

    ledger and confirmer are required on the first call.
    """
    global _credit_finalizer_instance

    if _credit_finalizer_instance is None:
        if ledger is None or confirmer is None:
            raise ValueError("ledger and confirmer are required to create the credit finalizer")
        _credit_finalizer_instance = CreditFinalizer(ledger, confirmer, config, router=router)

    return _credit_finalizer_instance


def reset_credit_finalizer() -> None:
    """Reset the singleton instance (for testing)."""
    global _credit_finalizer_instance
    _credit_finalizer_instance = None


__all__ = [
    "CreditFinalizer",
    "FinalizerReport",
    "FINALIZER_RECEIPT_TIMEOUT_MS",
    "get_credit_finalizer",
    "reset_credit_finalizer",
]


# =============================================================================
# Sovereign Reliability Audit
# =============================================================================
#
# [Module Audit]
# Module: services/credit_finalizer.py
# Idempotency: [Verified - ledger rejects backward and terminal transitions]
# Error Handling: [Verified - per-record errors counted, sweep continues]
# Traceability: [Verified - receipt_id and tx_hash on every finalization]
#
# =============================================================================
