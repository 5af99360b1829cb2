"""
Execution Gate - Credit Reconciliation Job

Runs one finalizer sweep over CREDIT_SUBMITTED credits and exits. Intended
for cron or a queue consumer, so finalization does not depend on a warm
API process running its background loop.

The sweep:
1. Load up to --limit CREDIT_SUBMITTED records, newest first
2. Poll each settlement receipt with a short timeout
3. Advance confirmed credits to CREDITED, reverted ones to FAILED
4. Leave still-pending credits for the next run

Reliability Level: Offline Job (Cold Path)
Traceability: One correlation_id per run, logged on every finalization

Usage:
    python -m jobs.reconcile_credits --limit 100
    python -m jobs.reconcile_credits --db-url sqlite:///./execution_gate.db --verbose

Exit code is 0 when the sweep had no errors, 1 otherwise.
"""

import sys
import argparse
import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Optional, List

from services.gate_config import get_gate_config
from services.credit_finalizer import CreditFinalizer, FinalizerReport
from app.chain.chains import ChainRegistry
from app.chain.rpc_client import RpcClientPool
from app.chain.receipt_confirmer import ReceiptConfirmer
from app.database.session import create_ledger_engine, get_engine
from app.ledger.credit_ledger import SqlCreditLedger

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def reconcile_credits(
    db_url: Optional[str] = None,
    limit: Optional[int] = None,
    finalizer: Optional[CreditFinalizer] = None,
) -> FinalizerReport:
    """
    Run a single reconciliation sweep.

    A prebuilt finalizer may be passed (tests); otherwise one is wired from
    the environment against the SQL ledger.
    """
    if finalizer is None:
        config = get_gate_config()
        if limit is not None:
            config = replace(config, finalizer_batch_limit=limit)
        engine = create_ledger_engine(db_url) if db_url else get_engine()
        registry = ChainRegistry.from_environment()
        pool = RpcClientPool(config)
        confirmer = ReceiptConfirmer(registry, pool, poll_ms=config.receipt_poll_ms)
        finalizer = CreditFinalizer(SqlCreditLedger(engine), confirmer, config)

    correlation_id = f"RECONCILE_{uuid.uuid4()}"
    logger.info(f"Starting credit reconciliation | correlation_id={correlation_id}")

    report = await finalizer.process_pending(correlation_id=correlation_id)

    logger.info(
        f"Reconciliation complete | scanned={report.scanned} | credited={report.credited} | "
        f"failed={report.failed} | pending={report.pending} | errors={report.errors} | "
        f"correlation_id={correlation_id}"
    )
    for message in report.error_messages:
        logger.error(f"Reconciliation error: {message}")
    return report


# =============================================================================
# CLI Entry Point
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the reconciliation job."""
    parser = argparse.ArgumentParser(
        description="Finalize submitted cross-chain credits against settlement receipts"
    )
    parser.add_argument(
        "--db-url",
        type=str,
        default=None,
        help="Ledger database URL (default: LEDGER_DATABASE_URL)"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum records per sweep (default: CREDIT_FINALIZER_BATCH_LIMIT)"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    report = asyncio.run(reconcile_credits(db_url=args.db_url, limit=args.limit))
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
