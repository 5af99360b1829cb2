"""
============================================================================
Execution Gate - Settlement Mint Issuer
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Destination EVM address, positive USD amount
Side Effects: Submits a bUSDC mint on the settlement chain via the relayer

Signing and broadcast live in an external relayer service. This module is
the client side only: it submits the mint and returns the transaction
hash. A submission is NOT retried here (a mint is not idempotent); the
credit router's ledger-backed idempotency covers re-submission.

ENVIRONMENT VARIABLES:
    MINT_RELAYER_URL: Base URL of the relayer (required for live minting)
    MINT_RELAYER_TOKEN: Bearer token for the relayer (optional)

ERROR CODES:
    MINT-001: Relayer not configured
    MINT-002: Relayer rejected the request
    MINT-003: Relayer unreachable
    MINT-004: Relayer response missing tx hash

============================================================================
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

# Configure module logger
logger = logging.getLogger(__name__)


DEFAULT_RELAYER_TIMEOUT_SECONDS = 30.0


class MintErrorCode:
    """Mint issuer error codes for audit logging."""
    NOT_CONFIGURED = "MINT-001"
    REJECTED = "MINT-002"
    UNREACHABLE = "MINT-003"
    MISSING_TX_HASH = "MINT-004"


class MintIssuerError(Exception):
    """Raised when a mint could not be submitted."""

    def __init__(self, message: str, error_code: str) -> None:
        self.message = message
        self.error_code = error_code
        super().__init__(f"[{error_code}] {message}")


@dataclass
class MintSubmission:
    """Submitted settlement mint."""
    tx_hash: str
    chain: str
    amount_usd: Decimal


class MintIssuer(ABC):
    """
    Abstract settlement mint issuer.

    Implementations return once the mint is submitted. When
    wait_for_receipt is False the returned hash may still be pending.
    """

    @abstractmethod
    async def mint(
        self,
        to_address: str,
        amount_usd: Decimal,
        chain: str,
        wait_for_receipt: bool = False,
        correlation_id: Optional[str] = None,
    ) -> MintSubmission:
        pass


class RelayerMintIssuer(MintIssuer):
    """
    Mint issuer backed by the external relayer HTTP API.

    POST {base_url}/mint with {to_address, amount_usd, chain, wait_for_receipt};
    expects {"tx_hash": "0x..."}.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = DEFAULT_RELAYER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or os.getenv("MINT_RELAYER_URL", "")).rstrip("/")
        self._token = token if token is not None else os.getenv("MINT_RELAYER_TOKEN", "")
        self._timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url)

    async def mint(
        self,
        to_address: str,
        amount_usd: Decimal,
        chain: str,
        wait_for_receipt: bool = False,
        correlation_id: Optional[str] = None,
    ) -> MintSubmission:
        if not self.is_configured:
            raise MintIssuerError("MINT_RELAYER_URL not configured", MintErrorCode.NOT_CONFIGURED)

        headers = {"X-Correlation-ID": correlation_id or ""}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        payload = {
            "to_address": to_address,
            "amount_usd": str(amount_usd),
            "chain": chain,
            "wait_for_receipt": wait_for_receipt,
        }

        logger.info(
            f"[MINT-ISSUER] Submitting mint | chain={chain} | to={to_address[:10]}... | "
            f"amount_usd={amount_usd} | correlation_id={correlation_id}"
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}/mint", json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise MintIssuerError(f"Relayer unreachable: {str(e)[:100]}", MintErrorCode.UNREACHABLE)

        if response.status_code >= 400:
            raise MintIssuerError(
                f"Relayer rejected mint: HTTP {response.status_code} {response.text[:200]}",
                MintErrorCode.REJECTED,
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        tx_hash = body.get("tx_hash") if isinstance(body, dict) else None
        if not tx_hash:
            raise MintIssuerError("Relayer response missing tx_hash", MintErrorCode.MISSING_TX_HASH)

        logger.info(
            f"[MINT-ISSUER] Mint submitted | chain={chain} | tx_hash={tx_hash} | "
            f"correlation_id={correlation_id}"
        )
        return MintSubmission(tx_hash=tx_hash, chain=chain, amount_usd=amount_usd)


__all__ = [
    "MintErrorCode",
    "MintIssuerError",
    "MintSubmission",
    "MintIssuer",
    "RelayerMintIssuer",
]
