"""
Unit Tests for the Cross-Chain Credit Ledger

Reliability Level: SOVEREIGN TIER

Runs the same contract against the in-memory ledger and the SQL ledger
(SQLite in-memory):
- create/get round-trip with Decimal precision
- Forward-only status transitions (LEDGER-030)
- Meta merge on update
- find_by_status ordering and limit bounds
- transition reports whether the record actually changed
- Driver errors surface as CreditLedgerError (LEDGER-050)
"""

import pytest
import os
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from sqlalchemy import text

from services.gate_config import GateConfig
from services.gate_models import (
    CreditStatus,
    CreditRecordPatch,
    CrossChainCreditRecord,
    FundingErrorCode,
    RouteStableCreditParams,
)
from services.stable_credit_router import StableCreditRouter
from app.chain.mint_issuer import MintIssuer, MintSubmission
from app.database.session import create_ledger_engine, check_database_connection
from app.ledger.credit_ledger import (
    InMemoryCreditLedger,
    SqlCreditLedger,
    CreditLedgerError,
    CreditRecordNotFound,
    InvalidCreditTransition,
    LedgerErrorCode,
    validate_credit_transition,
    clamp_find_limit,
    apply_patch,
)


class RecordingMintIssuer(MintIssuer):
    def __init__(self) -> None:
        self.calls = 0

    async def mint(self, to_address, amount_usd, chain, wait_for_receipt=False, correlation_id=None):
        self.calls += 1
        return MintSubmission(tx_hash="0x" + "ab" * 32, chain=chain, amount_usd=amount_usd)


def make_record(**overrides) -> CrossChainCreditRecord:
    data = dict(
        session_id="sess-1",
        from_chain="solana_devnet",
        to_chain="sepolia",
        amount_usd=Decimal("12.345678"),
        from_address="9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin",
        to_address="0x1111111111111111111111111111111111111111",
    )
    data.update(overrides)
    return CrossChainCreditRecord(**data)


@pytest.fixture(params=["memory", "sql"])
def ledger(request):
    if request.param == "memory":
        return InMemoryCreditLedger()
    return SqlCreditLedger(create_ledger_engine("sqlite://"))


# =============================================================================
# Pure Helpers
# =============================================================================

class TestTransitionRules:

    @pytest.mark.parametrize("current,target", [
        ("created", "credit_submitted"),
        ("created", "failed"),
        ("credit_submitted", "credited"),
        ("credit_submitted", "failed"),
        ("credited", "credited"),
        ("failed", "failed"),
    ])
    def test_valid(self, current, target):
        assert validate_credit_transition(current, target) == (True, None)

    @pytest.mark.parametrize("current,target", [
        ("created", "credited"),
        ("credit_submitted", "created"),
        ("credited", "failed"),
        ("failed", "credit_submitted"),
        ("credited", "unknown"),
    ])
    def test_invalid(self, current, target):
        assert validate_credit_transition(current, target) == (
            False, LedgerErrorCode.INVALID_TRANSITION
        )

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-5, 1), (50, 50), (1000, 200)])
    def test_clamp_find_limit(self, limit, expected):
        assert clamp_find_limit(limit) == expected

    def test_apply_patch_does_not_mutate(self):
        record = make_record(meta={"route_type": "testnet_credit"})

        updated, changed = apply_patch(
            record,
            CreditRecordPatch(status=CreditStatus.CREDIT_SUBMITTED, meta={"to_tx_hash": "0xabc"}),
        )

        assert changed is True
        assert record.status == CreditStatus.CREATED
        assert "to_tx_hash" not in record.meta
        assert updated.meta == {"route_type": "testnet_credit", "to_tx_hash": "0xabc"}

    def test_apply_patch_on_terminal_is_noop(self):
        record = make_record(status=CreditStatus.CREDITED)

        updated, changed = apply_patch(
            record, CreditRecordPatch(status=CreditStatus.CREDITED, meta={"late": True})
        )

        assert changed is False
        assert updated is record


# =============================================================================
# Ledger Contract (both backends)
# =============================================================================

class TestLedgerContract:

    @pytest.mark.asyncio
    async def test_create_and_get(self, ledger):
        record = make_record(meta={"route_type": "testnet_credit"})

        record_id = await ledger.create(record)
        loaded = await ledger.get(record_id)

        assert record_id == record.id
        assert loaded.status == CreditStatus.CREATED
        assert loaded.amount_usd == Decimal("12.345678")
        assert isinstance(loaded.amount_usd, Decimal)
        assert loaded.meta == {"route_type": "testnet_credit"}
        assert loaded.to_address == record.to_address

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, ledger):
        assert await ledger.get("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, ledger):
        record = make_record()
        await ledger.create(record)

        with pytest.raises(CreditLedgerError):
            await ledger.create(record)

    @pytest.mark.asyncio
    async def test_forward_transitions_merge_meta(self, ledger):
        record_id = await ledger.create(make_record(meta={"route_type": "testnet_credit"}))

        submitted = await ledger.update(
            record_id,
            CreditRecordPatch(status=CreditStatus.CREDIT_SUBMITTED, meta={"to_tx_hash": "0xabc"}),
        )
        credited = await ledger.update(
            record_id,
            CreditRecordPatch(status=CreditStatus.CREDITED, meta={"block_number": 42}),
        )

        assert submitted.status == CreditStatus.CREDIT_SUBMITTED
        assert submitted.tx_hash == "0xabc"
        assert credited.status == CreditStatus.CREDITED
        stored = await ledger.get(record_id)
        assert stored.meta == {
            "route_type": "testnet_credit",
            "to_tx_hash": "0xabc",
            "block_number": 42,
        }

    @pytest.mark.asyncio
    async def test_failed_records_error_code(self, ledger):
        record_id = await ledger.create(make_record())

        await ledger.update(
            record_id,
            CreditRecordPatch(
                status=CreditStatus.FAILED,
                error_code="CROSS_CHAIN_ROUTE_MINT_FAILED",
                meta={"error": "relayer down"},
            ),
        )

        stored = await ledger.get(record_id)
        assert stored.status == CreditStatus.FAILED
        assert stored.error_code == "CROSS_CHAIN_ROUTE_MINT_FAILED"

    @pytest.mark.asyncio
    async def test_backward_transition_rejected(self, ledger):
        record_id = await ledger.create(make_record())
        await ledger.update(record_id, CreditRecordPatch(status=CreditStatus.CREDIT_SUBMITTED))
        await ledger.update(record_id, CreditRecordPatch(status=CreditStatus.CREDITED))

        with pytest.raises(InvalidCreditTransition) as exc_info:
            await ledger.update(record_id, CreditRecordPatch(status=CreditStatus.CREDIT_SUBMITTED))

        assert exc_info.value.error_code == LedgerErrorCode.INVALID_TRANSITION
        assert (await ledger.get(record_id)).status == CreditStatus.CREDITED

    @pytest.mark.asyncio
    async def test_skipping_submission_rejected(self, ledger):
        record_id = await ledger.create(make_record())

        with pytest.raises(InvalidCreditTransition):
            await ledger.update(record_id, CreditRecordPatch(status=CreditStatus.CREDITED))

    @pytest.mark.asyncio
    async def test_reapplying_terminal_status_is_noop(self, ledger):
        record_id = await ledger.create(make_record())
        await ledger.update(record_id, CreditRecordPatch(status=CreditStatus.FAILED))

        result = await ledger.update(
            record_id, CreditRecordPatch(status=CreditStatus.FAILED, meta={"late": True})
        )

        assert result.status == CreditStatus.FAILED
        assert "late" not in (await ledger.get(record_id)).meta

    @pytest.mark.asyncio
    async def test_update_missing_record(self, ledger):
        with pytest.raises(CreditRecordNotFound) as exc_info:
            await ledger.update("missing", CreditRecordPatch(status=CreditStatus.FAILED))

        assert exc_info.value.error_code == LedgerErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_find_by_status_newest_first(self, ledger):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        ids = []
        for minutes in (0, 10, 5):
            record = make_record(created_at=base + timedelta(minutes=minutes))
            ids.append(await ledger.create(record))
            await ledger.update(record.id, CreditRecordPatch(status=CreditStatus.CREDIT_SUBMITTED))
        await ledger.create(make_record())

        found = await ledger.find_by_status([CreditStatus.CREDIT_SUBMITTED], limit=50)

        assert [r.id for r in found] == [ids[1], ids[2], ids[0]]

    @pytest.mark.asyncio
    async def test_find_by_status_limit(self, ledger):
        for _ in range(3):
            await ledger.create(make_record())

        found = await ledger.find_by_status([CreditStatus.CREATED], limit=2)

        assert len(found) == 2

    @pytest.mark.asyncio
    async def test_find_by_multiple_statuses(self, ledger):
        created_id = await ledger.create(make_record())
        failed_id = await ledger.create(make_record())
        await ledger.update(failed_id, CreditRecordPatch(status=CreditStatus.FAILED))

        found = await ledger.find_by_status([CreditStatus.CREATED, CreditStatus.FAILED])

        assert {r.id for r in found} == {created_id, failed_id}

    @pytest.mark.asyncio
    async def test_find_by_no_statuses(self, ledger):
        await ledger.create(make_record())

        assert await ledger.find_by_status([]) == []


class TestTransitionReportsChange:

    @pytest.mark.asyncio
    async def test_second_credit_is_not_a_change(self, ledger):
        record_id = await ledger.create(make_record())
        await ledger.update(record_id, CreditRecordPatch(status=CreditStatus.CREDIT_SUBMITTED))

        first, first_changed = await ledger.transition(
            record_id, CreditRecordPatch(status=CreditStatus.CREDITED)
        )
        second, second_changed = await ledger.transition(
            record_id, CreditRecordPatch(status=CreditStatus.CREDITED, meta={"finalized_by": "late"})
        )

        assert first_changed is True
        assert second_changed is False
        assert first.status == second.status == CreditStatus.CREDITED
        assert "finalized_by" not in second.meta


# =============================================================================
# SQL Specifics
# =============================================================================

class TestSqlCreditLedger:

    def test_schema_creation_is_idempotent(self):
        engine = create_ledger_engine("sqlite://")
        SqlCreditLedger(engine)
        ledger = SqlCreditLedger(engine)

        ledger.ensure_schema()

        assert ledger.engine is engine
        assert check_database_connection(engine) is True

    @pytest.mark.asyncio
    async def test_amount_stored_as_text(self):
        ledger = SqlCreditLedger(create_ledger_engine("sqlite://"))
        record_id = await ledger.create(make_record(amount_usd=Decimal("0.000001")))

        loaded = await ledger.get(record_id)

        assert loaded.amount_usd == Decimal("0.000001")
        assert str(loaded.amount_usd) == "0.000001"


class TestSqlDriverFailures:

    @pytest.fixture
    def broken(self):
        engine = create_ledger_engine("sqlite://")
        ledger = SqlCreditLedger(engine)
        return ledger, engine

    def _drop_table(self, engine) -> None:
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE cross_chain_credits"))

    @pytest.mark.asyncio
    async def test_every_operation_raises_ledger_error(self, broken):
        ledger, engine = broken
        record_id = await ledger.create(make_record())
        self._drop_table(engine)

        operations = [
            ledger.create(make_record()),
            ledger.update(record_id, CreditRecordPatch(status=CreditStatus.CREDIT_SUBMITTED)),
            ledger.find_by_status([CreditStatus.CREDIT_SUBMITTED]),
            ledger.get(record_id),
        ]
        for operation in operations:
            with pytest.raises(CreditLedgerError) as exc_info:
                await operation
            assert exc_info.value.error_code == LedgerErrorCode.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_router_scan_failure_is_typed(self, broken):
        ledger, engine = broken
        self._drop_table(engine)
        issuer = RecordingMintIssuer()
        router = StableCreditRouter(ledger, issuer, GateConfig())

        result = await router.route_stable_credit_for_execution(RouteStableCreditParams(
            session_id="sess-1",
            from_chain="solana_devnet",
            to_chain="sepolia",
            user_solana_address="9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin",
            user_evm_address="0x1111111111111111111111111111111111111111",
            amount_usd=Decimal("10"),
        ))

        assert result.ok is False
        assert result.code == FundingErrorCode.ROUTE_FAILED
        assert issuer.calls == 0

    @pytest.mark.asyncio
    async def test_not_found_keeps_its_code(self, broken):
        ledger, _ = broken

        with pytest.raises(CreditRecordNotFound):
            await ledger.update("missing", CreditRecordPatch(status=CreditStatus.FAILED))
