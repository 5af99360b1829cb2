"""
============================================================================
Execution Gate - Cross-Chain Credit Ledger
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: amount_usd stored as DECIMAL text, read back as Decimal
Traceability: Every record carries created_at/updated_at and an audit blob

CREDIT LIFECYCLE STATE MACHINE:
    created → credit_submitted (mint submitted, tx hash recorded)
    created → failed           (mint submission failed)
    credit_submitted → credited (receipt observed, success)
    credit_submitted → failed   (receipt observed, reverted)

    Terminal States: credited, failed (no further transitions)

    Re-applying the current status is an idempotent no-op. A record is
    never marked credited before a receipt has been observed.

ERROR CODES:
    - LEDGER-030: Invalid credit status transition
    - LEDGER-040: Credit record not found
    - LEDGER-050: Ledger store unavailable

============================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List, Sequence, Tuple
import asyncio
import copy
import json
import logging

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from services.gate_models import (
    CreditStatus,
    CreditRecordPatch,
    CrossChainCreditRecord,
    GateJSONEncoder,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class LedgerErrorCode:
    """Credit ledger error codes for audit logging."""
    INVALID_TRANSITION = "LEDGER-030"
    NOT_FOUND = "LEDGER-040"
    UNAVAILABLE = "LEDGER-050"


class CreditLedgerError(Exception):
    """Base class for ledger failures."""

    def __init__(self, message: str, error_code: str = LedgerErrorCode.UNAVAILABLE) -> None:
        self.message = message
        self.error_code = error_code
        super().__init__(f"[{error_code}] {message}")


class InvalidCreditTransition(CreditLedgerError):
    def __init__(self, message: str) -> None:
        super().__init__(message, LedgerErrorCode.INVALID_TRANSITION)


class CreditRecordNotFound(CreditLedgerError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Credit record not found: {record_id}", LedgerErrorCode.NOT_FOUND)


# =============================================================================
# VALID_CREDIT_TRANSITIONS Constant
# =============================================================================

VALID_CREDIT_TRANSITIONS: Dict[str, List[str]] = {
    CreditStatus.CREATED.value: [
        CreditStatus.CREDIT_SUBMITTED.value,
        CreditStatus.FAILED.value,
    ],
    CreditStatus.CREDIT_SUBMITTED.value: [
        CreditStatus.CREDITED.value,
        CreditStatus.FAILED.value,
    ],
    CreditStatus.CREDITED.value: [],  # Terminal
    CreditStatus.FAILED.value: [],  # Terminal
}

TERMINAL_CREDIT_STATUSES: List[str] = [
    CreditStatus.CREDITED.value,
    CreditStatus.FAILED.value,
]

# find_by_status limit bounds
MIN_FIND_LIMIT = 1
MAX_FIND_LIMIT = 200


def validate_credit_transition(
    current_status: str,
    target_status: str,
) -> Tuple[bool, Optional[str]]:
    """
    Validate a credit status transition.

    Returns:
        (True, None) when allowed (including same-status re-application),
        (False, "LEDGER-030") otherwise
    """
    if current_status not in VALID_CREDIT_TRANSITIONS or target_status not in VALID_CREDIT_TRANSITIONS:
        return (False, LedgerErrorCode.INVALID_TRANSITION)
    if current_status == target_status:
        return (True, None)
    if target_status in VALID_CREDIT_TRANSITIONS[current_status]:
        return (True, None)
    return (False, LedgerErrorCode.INVALID_TRANSITION)


def clamp_find_limit(limit: int) -> int:
    return max(MIN_FIND_LIMIT, min(int(limit), MAX_FIND_LIMIT))


def apply_patch(
    record: CrossChainCreditRecord,
    patch: CreditRecordPatch,
    now: Optional[datetime] = None,
) -> Tuple[CrossChainCreditRecord, bool]:
    """
    Apply a patch to a record without mutating it.

    Returns:
        (updated_record, changed)

    Raises:
        InvalidCreditTransition: On a backwards or out-of-terminal transition
    """
    current = record.status.value
    target = patch.status.value if patch.status is not None else current

    is_valid, _ = validate_credit_transition(current, target)
    if not is_valid:
        logger.error(
            f"[{LedgerErrorCode.INVALID_TRANSITION}] Invalid credit transition: "
            f"{current} → {target} | id={record.id}"
        )
        raise InvalidCreditTransition(
            f"Invalid credit transition {current} → {target} for record {record.id}"
        )

    # Terminal records are frozen; re-applying their status changes nothing
    if current in TERMINAL_CREDIT_STATUSES:
        return record, False

    if target == current and patch.error_code is None and not patch.meta:
        return record, False

    meta = copy.deepcopy(record.meta)
    if patch.meta:
        meta.update(patch.meta)

    updated = replace(
        record,
        status=CreditStatus(target),
        error_code=patch.error_code if patch.error_code is not None else record.error_code,
        meta=meta,
        updated_at=now or datetime.now(timezone.utc),
    )
    return updated, True


# =============================================================================
# CreditLedger Interface
# =============================================================================

class CreditLedger(ABC):
    """
    Durable store of cross-chain credit records.

    All methods are coroutines; implementations backed by blocking
    drivers run their work in a worker thread.
    """

    @abstractmethod
    async def create(self, record: CrossChainCreditRecord) -> str:
        """Persist a new record and return its id."""

    @abstractmethod
    async def transition(
        self,
        record_id: str,
        patch: CreditRecordPatch,
    ) -> Tuple[CrossChainCreditRecord, bool]:
        """
        Apply a forward-only patch.

        Returns:
            (stored_record, changed). changed is False when the patch was a
            no-op, including a second writer re-applying a terminal status.
        """

    async def update(self, record_id: str, patch: CreditRecordPatch) -> CrossChainCreditRecord:
        """Apply a forward-only patch and return the stored record."""
        record, _ = await self.transition(record_id, patch)
        return record

    @abstractmethod
    async def find_by_status(
        self,
        statuses: Sequence[CreditStatus],
        limit: int = 50,
    ) -> List[CrossChainCreditRecord]:
        """Newest-first records in any of the given statuses (limit 1..200)."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[CrossChainCreditRecord]:
        """Fetch one record by id."""


# =============================================================================
# InMemoryCreditLedger
# =============================================================================

class InMemoryCreditLedger(CreditLedger):
    """Process-local ledger for tests and single-process demos."""

    def __init__(self) -> None:
        self._records: Dict[str, CrossChainCreditRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: CrossChainCreditRecord) -> str:
        async with self._lock:
            if record.id in self._records:
                raise CreditLedgerError(f"Duplicate credit record id: {record.id}")
            self._records[record.id] = copy.deepcopy(record)
        logger.info(
            f"[CREDIT-LEDGER] Created | id={record.id} | status={record.status.value} | "
            f"amount_usd={record.amount_usd} | {record.from_chain} → {record.to_chain}"
        )
        return record.id

    async def transition(
        self,
        record_id: str,
        patch: CreditRecordPatch,
    ) -> Tuple[CrossChainCreditRecord, bool]:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise CreditRecordNotFound(record_id)
            updated, changed = apply_patch(record, patch)
            if changed:
                self._records[record_id] = updated
        if changed:
            logger.info(
                f"[CREDIT-LEDGER] Updated | id={record_id} | "
                f"{record.status.value} → {updated.status.value}"
            )
        return copy.deepcopy(updated), changed

    async def find_by_status(
        self,
        statuses: Sequence[CreditStatus],
        limit: int = 50,
    ) -> List[CrossChainCreditRecord]:
        wanted = {s.value for s in statuses}
        async with self._lock:
            matches = [r for r in self._records.values() if r.status.value in wanted]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in matches[:clamp_find_limit(limit)]]

    async def get(self, record_id: str) -> Optional[CrossChainCreditRecord]:
        async with self._lock:
            record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None


# =============================================================================
# SqlCreditLedger
# =============================================================================

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS cross_chain_credits (
    id VARCHAR(64) PRIMARY KEY,
    created_at BIGINT NOT NULL,
    updated_at BIGINT NOT NULL,
    user_id VARCHAR(128),
    session_id VARCHAR(128),
    from_chain VARCHAR(32) NOT NULL,
    to_chain VARCHAR(32) NOT NULL,
    amount_usd VARCHAR(40) NOT NULL,
    stable_symbol VARCHAR(16) NOT NULL,
    from_address VARCHAR(128) NOT NULL,
    to_address VARCHAR(128) NOT NULL,
    status VARCHAR(32) NOT NULL,
    error_code VARCHAR(64),
    meta_json TEXT
)
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_cross_chain_credits_status_created
ON cross_chain_credits (status, created_at)
"""

_COLUMNS = (
    "id, created_at, updated_at, user_id, session_id, from_chain, to_chain, "
    "amount_usd, stable_symbol, from_address, to_address, status, error_code, meta_json"
)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def _row_to_record(row: Any) -> CrossChainCreditRecord:
    data = dict(row._mapping)
    return CrossChainCreditRecord(
        id=data["id"],
        user_id=data["user_id"],
        session_id=data["session_id"],
        from_chain=data["from_chain"],
        to_chain=data["to_chain"],
        amount_usd=Decimal(data["amount_usd"]),
        stable_symbol=data["stable_symbol"],
        from_address=data["from_address"],
        to_address=data["to_address"],
        status=CreditStatus(data["status"]),
        error_code=data["error_code"],
        meta=json.loads(data["meta_json"]) if data["meta_json"] else {},
        created_at=_from_ms(data["created_at"]),
        updated_at=_from_ms(data["updated_at"]),
    )


class SqlCreditLedger(CreditLedger):
    """
    SQLAlchemy-backed ledger (PostgreSQL in production, SQLite in tests).

    Updates are guarded with the status read in the same transaction
    (UPDATE ... WHERE status = :expected), so a concurrent writer cannot
    move a record backwards.
    """

    def __init__(self, engine: Engine, ensure_schema: bool = True) -> None:
        self._engine = engine
        if ensure_schema:
            self.ensure_schema()

    @property
    def engine(self) -> Engine:
        return self._engine

    def ensure_schema(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(text(CREATE_TABLE_SQL))
            conn.execute(text(CREATE_INDEX_SQL))
        logger.info("[CREDIT-LEDGER] Schema ensured | table=cross_chain_credits")

    async def create(self, record: CrossChainCreditRecord) -> str:
        return await asyncio.to_thread(self._create_sync, record)

    async def transition(
        self,
        record_id: str,
        patch: CreditRecordPatch,
    ) -> Tuple[CrossChainCreditRecord, bool]:
        return await asyncio.to_thread(self._transition_sync, record_id, patch)

    async def find_by_status(
        self,
        statuses: Sequence[CreditStatus],
        limit: int = 50,
    ) -> List[CrossChainCreditRecord]:
        return await asyncio.to_thread(self._find_by_status_sync, list(statuses), limit)

    async def get(self, record_id: str) -> Optional[CrossChainCreditRecord]:
        return await asyncio.to_thread(self._get_sync, record_id)

    # -------------------------------------------------------------------------
    # Blocking implementations
    # -------------------------------------------------------------------------

    def _create_sync(self, record: CrossChainCreditRecord) -> str:
        params = {
            "id": record.id,
            "created_at": _to_ms(record.created_at),
            "updated_at": _to_ms(record.updated_at),
            "user_id": record.user_id,
            "session_id": record.session_id,
            "from_chain": record.from_chain,
            "to_chain": record.to_chain,
            "amount_usd": str(record.amount_usd),
            "stable_symbol": record.stable_symbol,
            "from_address": record.from_address,
            "to_address": record.to_address,
            "status": record.status.value,
            "error_code": record.error_code,
            "meta_json": json.dumps(record.meta, cls=GateJSONEncoder),
        }
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        f"INSERT INTO cross_chain_credits ({_COLUMNS}) VALUES ("
                        ":id, :created_at, :updated_at, :user_id, :session_id, :from_chain, "
                        ":to_chain, :amount_usd, :stable_symbol, :from_address, :to_address, "
                        ":status, :error_code, :meta_json)"
                    ),
                    params,
                )
        except SQLAlchemyError as e:
            raise _unavailable("create", record.id, e) from e

        logger.info(
            f"[CREDIT-LEDGER] Created | id={record.id} | status={record.status.value} | "
            f"amount_usd={record.amount_usd} | {record.from_chain} → {record.to_chain}"
        )
        return record.id

    def _transition_sync(
        self,
        record_id: str,
        patch: CreditRecordPatch,
    ) -> Tuple[CrossChainCreditRecord, bool]:
        try:
            with self._engine.begin() as conn:
                record = self._select_one(conn, record_id)
                if record is None:
                    raise CreditRecordNotFound(record_id)

                updated, changed = apply_patch(record, patch)
                if not changed:
                    return record, False

                result = conn.execute(
                    text(
                        "UPDATE cross_chain_credits SET status = :status, error_code = :error_code, "
                        "meta_json = :meta_json, updated_at = :updated_at "
                        "WHERE id = :id AND status = :expected_status"
                    ),
                    {
                        "id": record_id,
                        "status": updated.status.value,
                        "error_code": updated.error_code,
                        "meta_json": json.dumps(updated.meta, cls=GateJSONEncoder),
                        "updated_at": _to_ms(updated.updated_at),
                        "expected_status": record.status.value,
                    },
                )
                if result.rowcount != 1:
                    # Lost the race; fine if the winner reached the same status
                    current = self._select_one(conn, record_id)
                    if current is not None and current.status == updated.status:
                        return current, False
                    raise InvalidCreditTransition(
                        f"Credit record {record_id} changed concurrently "
                        f"(expected {record.status.value})"
                    )
        except SQLAlchemyError as e:
            raise _unavailable("update", record_id, e) from e

        logger.info(
            f"[CREDIT-LEDGER] Updated | id={record_id} | "
            f"{record.status.value} → {updated.status.value}"
        )
        return updated, True

    def _find_by_status_sync(
        self,
        statuses: List[CreditStatus],
        limit: int,
    ) -> List[CrossChainCreditRecord]:
        if not statuses:
            return []
        placeholders = ", ".join(f":s{i}" for i in range(len(statuses)))
        params: Dict[str, Any] = {f"s{i}": s.value for i, s in enumerate(statuses)}
        params["limit"] = clamp_find_limit(limit)
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text(
                        f"SELECT {_COLUMNS} FROM cross_chain_credits "
                        f"WHERE status IN ({placeholders}) "
                        "ORDER BY created_at DESC LIMIT :limit"
                    ),
                    params,
                ).fetchall()
        except SQLAlchemyError as e:
            raise _unavailable("list", None, e) from e
        return [_row_to_record(row) for row in rows]

    def _get_sync(self, record_id: str) -> Optional[CrossChainCreditRecord]:
        try:
            with self._engine.connect() as conn:
                return self._select_one(conn, record_id)
        except SQLAlchemyError as e:
            raise _unavailable("read", record_id, e) from e

    @staticmethod
    def _select_one(conn: Connection, record_id: str) -> Optional[CrossChainCreditRecord]:
        row = conn.execute(
            text(f"SELECT {_COLUMNS} FROM cross_chain_credits WHERE id = :id"),
            {"id": record_id},
        ).first()
        return _row_to_record(row) if row is not None else None


def _unavailable(action: str, record_id: Optional[str], error: Exception) -> CreditLedgerError:
    logger.error(
        f"[{LedgerErrorCode.UNAVAILABLE}] Failed to {action} credit record | "
        f"id={record_id} | error={str(error)}"
    )
    return CreditLedgerError(f"Failed to {action} credit record: {error}")


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "LedgerErrorCode",
    "CreditLedgerError",
    "InvalidCreditTransition",
    "CreditRecordNotFound",
    "VALID_CREDIT_TRANSITIONS",
    "TERMINAL_CREDIT_STATUSES",
    "validate_credit_transition",
    "clamp_find_limit",
    "apply_patch",
    "CreditLedger",
    "InMemoryCreditLedger",
    "SqlCreditLedger",
]


# =============================================================================
# Sovereign Reliability Audit
# =============================================================================
#
# [Module Audit]
# Module: app/ledger/credit_ledger.py
# State Machine: [Verified - forward-only, terminal credited/failed]
# Decimal Integrity: [Verified - amount_usd stored as text, no float round-trip]
# Error Codes: [LEDGER-030/040/050 documented and implemented]
# Concurrency: [Verified - status-guarded UPDATE]
#
# =============================================================================
