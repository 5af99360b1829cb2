"""
Unit Tests for the Stable Credit Router

Reliability Level: SOVEREIGN TIER

Tests:
- Validation order (disabled, addresses, corridor, amount)
- Ceiling clamp before ledger and mint
- Ledger lifecycle: CREATED → CREDIT_SUBMITTED | FAILED
- Idempotent reuse of submitted credits (no second mint)
- Fail-closed ledger errors
- Post-mint update retries; in-flight credits never minted twice
"""

import pytest
import os
from decimal import Decimal
from typing import List, Optional

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.gate_config import GateConfig
from services.gate_models import (
    CreditStatus,
    CrossChainCreditRecord,
    FundingErrorCode,
    RouteStableCreditParams,
)
from services.stable_credit_router import (
    StableCreditRouter,
    clamp_usd,
    ROUTE_DISABLED_MESSAGE,
    MISSING_EVM_ADDRESS_MESSAGE,
    MISSING_SOLANA_ADDRESS_MESSAGE,
    INVALID_AMOUNT_MESSAGE,
    LEDGER_UNAVAILABLE_MESSAGE,
    IN_FLIGHT_MESSAGE,
    SUBMITTED_UPDATE_ATTEMPTS,
)
from services import stable_credit_router as router_module
from app.chain.mint_issuer import MintIssuer, MintSubmission, MintIssuerError, MintErrorCode
from app.ledger.credit_ledger import InMemoryCreditLedger, CreditLedgerError


EVM_USER = "0xabcdef1111111111111111111111111111111111"
SOL_USER = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


class FakeMintIssuer(MintIssuer):
    """Records mint calls; returns sequential hashes or raises `error`."""

    def __init__(self, error: Optional[Exception] = None, tx_hash: Optional[str] = None) -> None:
        self.calls: List[dict] = []
        self.error = error
        self.tx_hash = tx_hash

    async def mint(self, to_address, amount_usd, chain, wait_for_receipt=False, correlation_id=None):
        self.calls.append({
            "to_address": to_address,
            "amount_usd": amount_usd,
            "chain": chain,
            "wait_for_receipt": wait_for_receipt,
        })
        if self.error is not None:
            raise self.error
        tx_hash = self.tx_hash if self.tx_hash is not None else f"0x{len(self.calls):064x}"
        return MintSubmission(tx_hash=tx_hash, chain=chain, amount_usd=amount_usd)


class FlakyLedger(InMemoryCreditLedger):
    def __init__(self, fail_create=False, fail_find=False) -> None:
        super().__init__()
        self.fail_create = fail_create
        self.fail_find = fail_find

    async def create(self, record):
        if self.fail_create:
            raise CreditLedgerError("database is locked")
        return await super().create(record)

    async def find_by_status(self, statuses, limit=50):
        if self.fail_find:
            raise CreditLedgerError("database is locked")
        return await super().find_by_status(statuses, limit)


def make_params(**overrides) -> RouteStableCreditParams:
    data = dict(
        session_id="sess-1",
        from_chain="solana_devnet",
        to_chain="sepolia",
        user_solana_address=SOL_USER,
        user_evm_address=EVM_USER,
        amount_usd=Decimal("100"),
        correlation_id="c-1",
    )
    data.update(overrides)
    return RouteStableCreditParams(**data)


def make_router(ledger=None, issuer=None, **config) -> StableCreditRouter:
    return StableCreditRouter(
        ledger if ledger is not None else InMemoryCreditLedger(),
        issuer if issuer is not None else FakeMintIssuer(),
        GateConfig(**config),
    )


# =============================================================================
# clamp_usd
# =============================================================================

class TestClampUsd:

    @pytest.mark.parametrize("amount,expected", [
        (Decimal("50"), Decimal("50")),
        (Decimal("1500"), Decimal("1000")),
        (Decimal("-5"), Decimal("0")),
        (None, Decimal("0")),
        (Decimal("NaN"), Decimal("0")),
    ])
    def test_clamp(self, amount, expected):
        assert clamp_usd(amount, Decimal("1000")) == expected


# =============================================================================
# Validation
# =============================================================================

class TestValidation:

    @pytest.mark.asyncio
    async def test_routing_disabled(self):
        ledger = InMemoryCreditLedger()
        result = await make_router(ledger, routing_enabled=False).route_stable_credit_for_execution(
            make_params()
        )

        assert result.ok is False
        assert result.code == FundingErrorCode.ROUTE_DISABLED
        assert result.message == ROUTE_DISABLED_MESSAGE
        assert await ledger.find_by_status(list(CreditStatus)) == []

    @pytest.mark.asyncio
    async def test_missing_evm_address(self):
        result = await make_router().route_stable_credit_for_execution(
            make_params(user_evm_address=None)
        )

        assert result.code == FundingErrorCode.MISSING_ADDRESS
        assert result.message == MISSING_EVM_ADDRESS_MESSAGE

    @pytest.mark.asyncio
    async def test_unsupported_corridor(self):
        result = await make_router().route_stable_credit_for_execution(
            make_params(from_chain="sepolia", to_chain="solana")
        )

        assert result.code == FundingErrorCode.UNSUPPORTED
        assert result.message == "Unsupported cross-chain route sepolia -> solana_devnet"

    @pytest.mark.asyncio
    async def test_unknown_destination(self):
        result = await make_router().route_stable_credit_for_execution(
            make_params(to_chain="arbitrum")
        )

        assert result.code == FundingErrorCode.UNSUPPORTED

    @pytest.mark.asyncio
    async def test_missing_solana_address(self):
        result = await make_router().route_stable_credit_for_execution(
            make_params(user_solana_address="")
        )

        assert result.code == FundingErrorCode.MISSING_ADDRESS
        assert result.message == MISSING_SOLANA_ADDRESS_MESSAGE

    @pytest.mark.asyncio
    async def test_zero_amount(self):
        issuer = FakeMintIssuer()
        result = await make_router(issuer=issuer).route_stable_credit_for_execution(
            make_params(amount_usd=Decimal("0"))
        )

        assert result.code == FundingErrorCode.ROUTE_FAILED
        assert result.message == INVALID_AMOUNT_MESSAGE
        assert issuer.calls == []


# =============================================================================
# Routing
# =============================================================================

class TestRouting:

    @pytest.mark.asyncio
    async def test_successful_route_records_submission(self):
        ledger = InMemoryCreditLedger()
        issuer = FakeMintIssuer()

        result = await make_router(ledger, issuer).route_stable_credit_for_execution(make_params())

        assert result.ok is True
        assert result.reused is False
        assert result.route_type == "testnet_credit"
        assert result.to_chain == "sepolia"
        assert result.credited_amount_usd == Decimal("100")
        assert result.tx_hash == f"0x{1:064x}"
        record = await ledger.get(result.receipt_id)
        assert record.status == CreditStatus.CREDIT_SUBMITTED
        assert record.tx_hash == result.tx_hash
        assert record.meta["route_type"] == "testnet_credit"
        assert "submitted_at" in record.meta
        assert record.from_address == SOL_USER
        assert record.to_address == EVM_USER
        assert issuer.calls[0]["wait_for_receipt"] is False
        assert issuer.calls[0]["chain"] == "sepolia"

    @pytest.mark.asyncio
    async def test_amount_clamped_to_ceiling(self):
        ledger = InMemoryCreditLedger()
        issuer = FakeMintIssuer()

        result = await make_router(ledger, issuer, max_usd_per_tx=Decimal("250")).route_stable_credit_for_execution(
            make_params(amount_usd=Decimal("5000"))
        )

        assert result.credited_amount_usd == Decimal("250")
        assert issuer.calls[0]["amount_usd"] == Decimal("250")
        assert (await ledger.get(result.receipt_id)).amount_usd == Decimal("250")

    @pytest.mark.asyncio
    async def test_labels_normalized(self):
        result = await make_router().route_stable_credit_for_execution(
            make_params(from_chain="Solana", to_chain="Base Sepolia")
        )

        assert result.ok is True
        assert result.to_chain == "base_sepolia"

    @pytest.mark.asyncio
    async def test_mint_failure_marks_record_failed(self):
        ledger = InMemoryCreditLedger()
        error = MintIssuerError("Relayer rejected mint: HTTP 500", MintErrorCode.REJECTED)

        result = await make_router(ledger, FakeMintIssuer(error=error)).route_stable_credit_for_execution(
            make_params()
        )

        assert result.ok is False
        assert result.code == FundingErrorCode.MINT_FAILED
        assert result.message == str(error)
        failed = await ledger.find_by_status([CreditStatus.FAILED])
        assert len(failed) == 1
        assert failed[0].error_code == "CROSS_CHAIN_ROUTE_MINT_FAILED"
        assert failed[0].meta["error"] == str(error)

    @pytest.mark.asyncio
    async def test_missing_tx_hash_is_mint_failure(self):
        ledger = InMemoryCreditLedger()

        result = await make_router(ledger, FakeMintIssuer(tx_hash="")).route_stable_credit_for_execution(
            make_params()
        )

        assert result.code == FundingErrorCode.MINT_FAILED
        assert len(await ledger.find_by_status([CreditStatus.FAILED])) == 1


# =============================================================================
# Idempotency
# =============================================================================

class TestIdempotency:

    @pytest.mark.asyncio
    async def test_second_request_reuses_submission(self):
        issuer = FakeMintIssuer()
        router = make_router(issuer=issuer)

        first = await router.route_stable_credit_for_execution(make_params())
        second = await router.route_stable_credit_for_execution(make_params())

        assert second.ok is True
        assert second.reused is True
        assert second.tx_hash == first.tx_hash
        assert second.receipt_id == first.receipt_id
        assert len(issuer.calls) == 1

    @pytest.mark.asyncio
    async def test_reuse_within_tolerance_and_case_insensitive(self):
        issuer = FakeMintIssuer()
        router = make_router(issuer=issuer)

        first = await router.route_stable_credit_for_execution(make_params())
        second = await router.route_stable_credit_for_execution(
            make_params(amount_usd=Decimal("100.005"), user_evm_address="0x" + EVM_USER[2:].upper())
        )

        assert second.reused is True
        assert second.tx_hash == first.tx_hash
        assert len(issuer.calls) == 1

    @pytest.mark.asyncio
    async def test_amount_outside_tolerance_mints_again(self):
        issuer = FakeMintIssuer()
        router = make_router(issuer=issuer)

        await router.route_stable_credit_for_execution(make_params())
        second = await router.route_stable_credit_for_execution(make_params(amount_usd=Decimal("100.02")))

        assert second.reused is False
        assert len(issuer.calls) == 2

    @pytest.mark.asyncio
    async def test_other_session_mints_again(self):
        issuer = FakeMintIssuer()
        router = make_router(issuer=issuer)

        await router.route_stable_credit_for_execution(make_params())
        second = await router.route_stable_credit_for_execution(make_params(session_id="sess-2"))

        assert second.reused is False
        assert len(issuer.calls) == 2

    @pytest.mark.asyncio
    async def test_credited_records_are_not_reused(self):
        from services.gate_models import CreditRecordPatch

        ledger = InMemoryCreditLedger()
        issuer = FakeMintIssuer()
        router = make_router(ledger, issuer)

        first = await router.route_stable_credit_for_execution(make_params())
        await ledger.update(first.receipt_id, CreditRecordPatch(status=CreditStatus.CREDITED))
        second = await router.route_stable_credit_for_execution(make_params())

        assert second.reused is False
        assert len(issuer.calls) == 2


# =============================================================================
# Ledger Failures
# =============================================================================

class TestLedgerFailures:

    @pytest.mark.asyncio
    async def test_create_failure_issues_no_mint(self):
        issuer = FakeMintIssuer()

        result = await make_router(FlakyLedger(fail_create=True), issuer).route_stable_credit_for_execution(
            make_params()
        )

        assert result.code == FundingErrorCode.ROUTE_FAILED
        assert result.message == LEDGER_UNAVAILABLE_MESSAGE
        assert issuer.calls == []

    @pytest.mark.asyncio
    async def test_scan_failure_fails_closed(self):
        issuer = FakeMintIssuer()

        result = await make_router(FlakyLedger(fail_find=True), issuer).route_stable_credit_for_execution(
            make_params()
        )

        assert result.code == FundingErrorCode.ROUTE_FAILED
        assert issuer.calls == []


# =============================================================================
# Post-mint Recording
# =============================================================================

class FailingUpdates(InMemoryCreditLedger):
    """Fails the next `failures` updates, then behaves."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.update_calls = 0

    async def update(self, record_id, patch):
        self.update_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise CreditLedgerError("database is locked")
        return await super().update(record_id, patch)


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(router_module, "SUBMITTED_UPDATE_BACKOFF_SECONDS", 0)


class TestPostMintRecording:

    @pytest.mark.asyncio
    async def test_transient_update_failure_is_retried(self, no_backoff):
        ledger = FailingUpdates(failures=1)
        router = make_router(ledger)

        result = await router.route_stable_credit_for_execution(make_params())

        record = await ledger.get(result.receipt_id)
        assert result.ok is True
        assert ledger.update_calls == 2
        assert record.status == CreditStatus.CREDIT_SUBMITTED
        assert record.tx_hash == result.tx_hash
        assert router.unrecorded_submissions == {}

    @pytest.mark.asyncio
    async def test_retry_after_lost_update_mints_once(self, no_backoff):
        ledger = FailingUpdates(failures=SUBMITTED_UPDATE_ATTEMPTS)
        issuer = FakeMintIssuer()
        router = make_router(ledger, issuer)

        first = await router.route_stable_credit_for_execution(make_params())
        assert router.unrecorded_submissions == {first.receipt_id: first.tx_hash}
        assert (await ledger.get(first.receipt_id)).status == CreditStatus.CREATED

        second = await router.route_stable_credit_for_execution(make_params())

        assert len(issuer.calls) == 1
        assert second.ok is True
        assert second.reused is True
        assert second.receipt_id == first.receipt_id
        assert second.tx_hash == first.tx_hash
        record = await ledger.get(first.receipt_id)
        assert record.status == CreditStatus.CREDIT_SUBMITTED
        assert record.tx_hash == first.tx_hash
        assert router.unrecorded_submissions == {}

    @pytest.mark.asyncio
    async def test_created_record_without_known_hash_is_in_flight(self):
        ledger = InMemoryCreditLedger()
        issuer = FakeMintIssuer()
        await ledger.create(CrossChainCreditRecord(
            session_id="sess-1",
            from_chain="solana_devnet",
            to_chain="sepolia",
            amount_usd=Decimal("100"),
            from_address=SOL_USER,
            to_address=EVM_USER,
        ))

        result = await make_router(ledger, issuer).route_stable_credit_for_execution(make_params())

        assert result.ok is False
        assert result.code == FundingErrorCode.PENDING
        assert result.message == IN_FLIGHT_MESSAGE
        assert issuer.calls == []

    @pytest.mark.asyncio
    async def test_record_unrecorded_submissions(self, no_backoff):
        ledger = FailingUpdates(failures=SUBMITTED_UPDATE_ATTEMPTS)
        router = make_router(ledger)
        routed = await router.route_stable_credit_for_execution(make_params())

        remaining = await router.record_unrecorded_submissions()

        assert remaining == 0
        record = await ledger.get(routed.receipt_id)
        assert record.status == CreditStatus.CREDIT_SUBMITTED
        assert record.tx_hash == routed.tx_hash

    @pytest.mark.asyncio
    async def test_unrecorded_submission_kept_while_ledger_down(self, no_backoff):
        ledger = FailingUpdates(failures=SUBMITTED_UPDATE_ATTEMPTS + 1)
        router = make_router(ledger)
        routed = await router.route_stable_credit_for_execution(make_params())

        assert await router.record_unrecorded_submissions() == 1
        assert router.unrecorded_submissions == {routed.receipt_id: routed.tx_hash}
