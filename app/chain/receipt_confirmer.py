"""
============================================================================
Execution Gate - Receipt Confirmer
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Settlement chain + submitted transaction hash
Side Effects: Polls eth_getTransactionReceipt until a verdict or timeout

RECEIPT OUTCOMES:
    CONFIRMED: receipt observed with status 0x1
    FAILED:    receipt observed with any other status (reverted)
    PENDING:   no receipt before the deadline

Polling never raises. Transient RPC errors are logged and polling
continues until the deadline.

============================================================================
"""

import time
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Callable

from app.chain.chains import ChainRegistry, UnsupportedChainError
from app.chain.rpc_client import RpcClientPool, RpcCallError
from app.observability.metrics import record_receipt_wait

# Configure module logger
logger = logging.getLogger(__name__)


DEFAULT_RECEIPT_TIMEOUT_MS = 60000
DEFAULT_RECEIPT_POLL_MS = 2000


class ReceiptStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class ReceiptResult:
    """
    Receipt verdict.

    confirmed=True means a receipt was observed; success then tells whether
    the transaction succeeded on-chain.
    """
    status: ReceiptStatus
    block_number: Optional[int] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status != ReceiptStatus.PENDING

    @property
    def success(self) -> Optional[bool]:
        if self.status == ReceiptStatus.PENDING:
            return None
        return self.status == ReceiptStatus.CONFIRMED


def _parse_block_number(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value, 16)
    except (TypeError, ValueError):
        return None


class ReceiptConfirmer:
    """
    Bounded receipt polling on EVM settlement chains.

    USAGE:
        confirmer = ReceiptConfirmer(registry, pool)
        receipt = await confirmer.wait_for_receipt("sepolia", "0xabc...", timeout_ms=20000)
    """

    def __init__(
        self,
        registry: ChainRegistry,
        pool: RpcClientPool,
        poll_ms: int = DEFAULT_RECEIPT_POLL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if poll_ms <= 0:
            raise ValueError(f"poll_ms must be positive, got: {poll_ms}")
        self._registry = registry
        self._pool = pool
        self._poll_ms = poll_ms
        self._clock = clock

    async def wait_for_receipt(
        self,
        chain: str,
        tx_hash: str,
        timeout_ms: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> ReceiptResult:
        """
        Poll for a receipt until confirmed, failed, or the timeout elapses.

        Always polls at least once, even with a zero timeout.
        """
        timeout_ms = DEFAULT_RECEIPT_TIMEOUT_MS if timeout_ms is None else timeout_ms

        try:
            spec = self._registry.get(chain)
        except UnsupportedChainError as e:
            return ReceiptResult(status=ReceiptStatus.PENDING, error=str(e))
        if not spec.is_evm:
            return ReceiptResult(
                status=ReceiptStatus.PENDING,
                error=f"Receipt polling not supported on {spec.label}",
            )

        client = self._pool.get(spec)
        started = self._clock()
        deadline = started + timeout_ms / 1000.0
        polls = 0

        while True:
            polls += 1
            try:
                response = await client.call(
                    "eth_getTransactionReceipt", [tx_hash], correlation_id, max_attempts=1
                )
                receipt = response.result
                if receipt:
                    block_number = _parse_block_number(receipt.get("blockNumber"))
                    elapsed = self._clock() - started
                    if receipt.get("status") == "0x1":
                        record_receipt_wait(ReceiptStatus.CONFIRMED.value, elapsed)
                        logger.info(
                            f"[RECEIPT] Confirmed | chain={spec.key} | tx_hash={tx_hash} | "
                            f"block={block_number} | polls={polls} | "
                            f"correlation_id={correlation_id}"
                        )
                        return ReceiptResult(
                            status=ReceiptStatus.CONFIRMED, block_number=block_number
                        )

                    record_receipt_wait(ReceiptStatus.FAILED.value, elapsed)
                    logger.warning(
                        f"[RECEIPT] Reverted | chain={spec.key} | tx_hash={tx_hash} | "
                        f"block={block_number} | correlation_id={correlation_id}"
                    )
                    return ReceiptResult(
                        status=ReceiptStatus.FAILED,
                        block_number=block_number,
                        error="Transaction reverted on-chain",
                    )
            except RpcCallError as e:
                logger.warning(
                    f"[RECEIPT] Poll error | chain={spec.key} | tx_hash={tx_hash} | "
                    f"error={e.message} | correlation_id={correlation_id}"
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._async_sleep(min(self._poll_ms / 1000.0, remaining))

        record_receipt_wait(ReceiptStatus.PENDING.value, self._clock() - started)
        logger.info(
            f"[RECEIPT] Pending after timeout | chain={spec.key} | tx_hash={tx_hash} | "
            f"timeout_ms={timeout_ms} | polls={polls} | correlation_id={correlation_id}"
        )
        return ReceiptResult(
            status=ReceiptStatus.PENDING,
            error=f"Transaction not confirmed within {timeout_ms / 1000:g}s",
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep wrapper for testing."""
        await asyncio.sleep(seconds)


__all__ = [
    "ReceiptStatus",
    "ReceiptResult",
    "ReceiptConfirmer",
    "DEFAULT_RECEIPT_TIMEOUT_MS",
    "DEFAULT_RECEIPT_POLL_MS",
]
