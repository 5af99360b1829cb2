"""
============================================================================
Execution Gate - Data Models
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All USD amounts use decimal.Decimal with ROUND_HALF_EVEN
Traceability: All operations include correlation_id for audit

PRIME DIRECTIVE:
    "No execution without confirmation. No confirmation without funding."

This module defines the shared data model of the Execution Gate:
- IntentContext: per-session path/confirmation state
- CrossChainCreditRecord: durable audit row for each routing attempt
- ExecutionRouteMeta: audit output of every funding decision
- FundingResult / RouteStableCreditResult: typed result values
- Enums for paths, states, confirmation types and credit statuses

ERROR CODES (FundingErrorCode):
    - CROSS_CHAIN_ROUTE_DISABLED: Corridor disabled by configuration
    - CROSS_CHAIN_ROUTE_MISSING_ADDRESS: Source or destination address missing
    - CROSS_CHAIN_ROUTE_UNSUPPORTED: Chain pair not supported
    - CROSS_CHAIN_ROUTE_INSUFFICIENT_FUNDS: Balance still below requirement
    - CROSS_CHAIN_ROUTE_MINT_FAILED: Settlement credit failed
    - CROSS_CHAIN_ROUTE_PENDING: Credit submitted, receipt not yet observed
    - CROSS_CHAIN_ROUTE_READ_FAILED: Balance could not be verified
    - CROSS_CHAIN_ROUTE_FAILED: Router rejected the request

============================================================================
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Optional, Dict, Any, Set
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import json
import uuid

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Stable asset symbol and precision (bUSDC, 6 decimals)
STABLE_SYMBOL = "bUSDC"
STABLE_DECIMALS = 6
PRECISION_USD = Decimal("0.000001")

ZERO_USD = Decimal("0").quantize(PRECISION_USD)

# Route type recorded in ledger meta and route audit output
ROUTE_TYPE_TESTNET_CREDIT = "testnet_credit"


# =============================================================================
# Error Codes
# =============================================================================

class FundingErrorCode(str, Enum):
    """
    Funding error taxonomy.

    Every failure carries one of these machine codes together with a
    user-facing message.
    """
    ROUTE_DISABLED = "CROSS_CHAIN_ROUTE_DISABLED"
    MISSING_ADDRESS = "CROSS_CHAIN_ROUTE_MISSING_ADDRESS"
    UNSUPPORTED = "CROSS_CHAIN_ROUTE_UNSUPPORTED"
    INSUFFICIENT_FUNDS = "CROSS_CHAIN_ROUTE_INSUFFICIENT_FUNDS"
    MINT_FAILED = "CROSS_CHAIN_ROUTE_MINT_FAILED"
    PENDING = "CROSS_CHAIN_ROUTE_PENDING"
    READ_FAILED = "CROSS_CHAIN_ROUTE_READ_FAILED"
    ROUTE_FAILED = "CROSS_CHAIN_ROUTE_FAILED"


# =============================================================================
# Enums
# =============================================================================

class IntentPath(Enum):
    """
    Risk class of a candidate action.

    Only EXECUTION leads to an irreversible on-chain action.
    """
    RESEARCH = "research"
    PLANNING = "planning"
    EXECUTION = "execution"
    CREATION = "creation"
    EVENT_BETTING = "event"


class IntentState(Enum):
    """Session state within the confirmation protocol."""
    IDLE = "idle"
    PARSING = "parsing"
    CLASSIFIED = "classified"
    CONFIRMING = "confirming"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConfirmationType(Enum):
    """Confirmation artifact demanded before entering EXECUTION."""
    NONE = "none"
    SIMPLE = "simple"
    BOND_ACK = "bond_ack"
    RISK_ACK = "risk_ack"
    HIGH_VALUE_ACK = "high_value_ack"


class CreditStatus(Enum):
    """
    Cross-chain credit lifecycle.

    CREATED → CREDIT_SUBMITTED → CREDITED
    CREATED → FAILED
    CREDIT_SUBMITTED → FAILED

    Terminal States: CREDITED, FAILED
    """
    CREATED = "created"
    CREDIT_SUBMITTED = "credit_submitted"
    CREDITED = "credited"
    FAILED = "failed"


class InstrumentType(Enum):
    """Instrument families that may carry a spend estimate."""
    SWAP = "swap"
    PERP = "perp"
    DEFI = "defi"
    EVENT = "event"


# Spend estimates are honoured only for these instrument types
SPEND_ESTIMATE_INSTRUMENTS = frozenset(
    [InstrumentType.PERP.value, InstrumentType.DEFI.value, InstrumentType.EVENT.value]
)


# =============================================================================
# Decimal Helpers
# =============================================================================

def to_usd(value: Any) -> Decimal:
    """
    Convert a value to a quantized USD Decimal.

    Non-numeric, non-finite and missing values become zero.
    """
    if value is None:
        return ZERO_USD
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO_USD
    if not amount.is_finite():
        return ZERO_USD
    return amount.quantize(PRECISION_USD, rounding=ROUND_HALF_EVEN)


def units_to_usd(units: int, decimals: int = STABLE_DECIMALS) -> Decimal:
    """Convert integer token base units into a USD Decimal."""
    return to_usd(Decimal(int(units)).scaleb(-decimals))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# =============================================================================
# Custom JSON Encoder for Decimal and datetime
# =============================================================================

class GateJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for gate data types.

    Handles Decimal (as str), datetime (ISO), UUID, Enum and set.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        return super().default(obj)


# =============================================================================
# IntentContext Dataclass
# =============================================================================

@dataclass
class IntentContext:
    """
    Per-session confirmation state.

    ============================================================================
    INTENT CONTEXT FIELDS:
    ============================================================================
    - session_id: Session key
    - wallet_address: Optional wallet associated with the session
    - current_path / current_state: Position in the confirmation protocol
    - pending_intent_id / pending_usd_estimate: Action awaiting confirmation
    - confirmation_type: Artifact demanded while CONFIRMING
    - confirmed_intent_ids: Append-only set of confirmed intents
    - last_confirmation_request_at: When the last prompt was issued
    - updated_at: Last mutation time
    ============================================================================

    Invariant: current_state == CONFIRMING implies confirmation_type != NONE.
    """

    session_id: str
    wallet_address: Optional[str] = None
    current_path: IntentPath = IntentPath.RESEARCH
    current_state: IntentState = IntentState.IDLE
    pending_intent_id: Optional[str] = None
    pending_usd_estimate: Optional[Decimal] = None
    confirmation_type: ConfirmationType = ConfirmationType.NONE
    confirmed_intent_ids: Set[str] = field(default_factory=set)
    last_confirmation_request_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        """Record a mutation."""
        self.updated_at = _utcnow()

    def clear_pending(self) -> None:
        """Drop the pending intent and its confirmation requirement."""
        self.pending_intent_id = None
        self.pending_usd_estimate = None
        self.confirmation_type = ConfirmationType.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "wallet_address": self.wallet_address,
            "current_path": self.current_path.value,
            "current_state": self.current_state.value,
            "pending_intent_id": self.pending_intent_id,
            "pending_usd_estimate": (
                str(self.pending_usd_estimate)
                if self.pending_usd_estimate is not None else None
            ),
            "confirmation_type": self.confirmation_type.value,
            "confirmed_intent_ids": sorted(self.confirmed_intent_ids),
            "last_confirmation_request_at": (
                self.last_confirmation_request_at.isoformat()
                if self.last_confirmation_request_at else None
            ),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntentContext":
        pending_usd = data.get("pending_usd_estimate")
        return cls(
            session_id=data["session_id"],
            wallet_address=data.get("wallet_address"),
            current_path=IntentPath(data.get("current_path", IntentPath.RESEARCH.value)),
            current_state=IntentState(data.get("current_state", IntentState.IDLE.value)),
            pending_intent_id=data.get("pending_intent_id"),
            pending_usd_estimate=to_usd(pending_usd) if pending_usd is not None else None,
            confirmation_type=ConfirmationType(
                data.get("confirmation_type", ConfirmationType.NONE.value)
            ),
            confirmed_intent_ids=set(data.get("confirmed_intent_ids") or []),
            last_confirmation_request_at=_parse_datetime(
                data.get("last_confirmation_request_at")
            ),
            updated_at=_parse_datetime(data.get("updated_at")) or _utcnow(),
        )


# =============================================================================
# CrossChainCreditRecord Dataclass
# =============================================================================

@dataclass
class CrossChainCreditRecord:
    """
    Durable audit row for one routing attempt.

    amount_usd is always clamped to the per-transaction ceiling before the
    record is created. meta holds the opaque audit blob (route type,
    settlement tx hash, receipt outcome).
    """

    session_id: Optional[str]
    from_chain: str
    to_chain: str
    amount_usd: Decimal
    from_address: str
    to_address: str
    stable_symbol: str = STABLE_SYMBOL
    status: CreditStatus = CreditStatus.CREATED
    user_id: Optional[str] = None
    error_code: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.amount_usd = to_usd(self.amount_usd)
        if not isinstance(self.status, CreditStatus):
            self.status = CreditStatus(self.status)

    @property
    def tx_hash(self) -> Optional[str]:
        """Settlement-chain transaction hash, if one was submitted."""
        return self.meta.get("to_tx_hash")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "from_chain": self.from_chain,
            "to_chain": self.to_chain,
            "amount_usd": str(self.amount_usd),
            "stable_symbol": self.stable_symbol,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "status": self.status.value,
            "error_code": self.error_code,
            "meta": self.meta,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrossChainCreditRecord":
        meta = data.get("meta")
        if meta is None and data.get("meta_json"):
            meta = json.loads(data["meta_json"])
        return cls(
            id=str(data["id"]),
            user_id=data.get("user_id"),
            session_id=data.get("session_id"),
            from_chain=data["from_chain"],
            to_chain=data["to_chain"],
            amount_usd=to_usd(data["amount_usd"]),
            stable_symbol=data.get("stable_symbol", STABLE_SYMBOL),
            from_address=data["from_address"],
            to_address=data["to_address"],
            status=CreditStatus(data["status"]),
            error_code=data.get("error_code"),
            meta=dict(meta or {}),
            created_at=_parse_datetime(data.get("created_at")) or _utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or _utcnow(),
        )


@dataclass
class CreditRecordPatch:
    """
    Partial update for a credit record.

    meta entries are merged into the existing audit blob.
    """
    status: Optional[CreditStatus] = None
    error_code: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


# =============================================================================
# Route Audit Output
# =============================================================================

@dataclass
class RouteDebug:
    """RPC diagnostics attached to route audit output."""
    rpc_used: Optional[str] = None
    attempts: Optional[int] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"rpc_used": self.rpc_used, "attempts": self.attempts}
        if self.last_error:
            data["last_error"] = self.last_error
        return data


@dataclass
class ExecutionRouteMeta:
    """
    Audit output of a funding decision.

    Always produced so that "no routing was necessary" is distinguishable
    from "routing was attempted".
    """
    did_route: bool
    reason: str
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    route_type: Optional[str] = None
    receipt_id: Optional[str] = None
    tx_hash: Optional[str] = None
    credited_amount_usd: Optional[Decimal] = None
    debug: Optional[RouteDebug] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "did_route": self.did_route,
            "reason": self.reason,
            "from_chain": self.from_chain,
            "to_chain": self.to_chain,
            "route_type": self.route_type,
            "receipt_id": self.receipt_id,
            "tx_hash": self.tx_hash,
            "credited_amount_usd": (
                str(self.credited_amount_usd)
                if self.credited_amount_usd is not None else None
            ),
            "debug": self.debug.to_dict() if self.debug else None,
        }


# =============================================================================
# Funding Guarantor Types
# =============================================================================

@dataclass
class EnsureExecutionFundingParams:
    """
    Input to the Execution Funding Guarantor.

    required USD comes from amount_usd_required when positive; otherwise a
    spend estimate in 6-decimal base units is honoured for perp, defi and
    event instruments only.
    """
    user_evm_address: Optional[str]
    user_solana_address: Optional[str] = None
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    amount_usd_required: Optional[Decimal] = None
    spend_estimate_units: Optional[int] = None
    instrument_type: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    force_route: bool = False
    correlation_id: Optional[str] = None


@dataclass
class FundingResult:
    """
    Outcome of ensure_execution_funding.

    ok=True carries the route audit; ok=False carries a code and a user
    message and, where available, the route audit.
    """
    ok: bool
    route: Optional[ExecutionRouteMeta] = None
    code: Optional[FundingErrorCode] = None
    user_message: Optional[str] = None

    @classmethod
    def success(cls, route: ExecutionRouteMeta) -> "FundingResult":
        return cls(ok=True, route=route)

    @classmethod
    def failure(
        cls,
        code: FundingErrorCode,
        user_message: str,
        route: Optional[ExecutionRouteMeta] = None,
    ) -> "FundingResult":
        return cls(ok=False, route=route, code=code, user_message=user_message)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ok": self.ok,
            "route": self.route.to_dict() if self.route else None,
        }
        if not self.ok:
            data["code"] = self.code.value if self.code else None
            data["user_message"] = self.user_message
        return data


# =============================================================================
# Stable Credit Router Types
# =============================================================================

@dataclass
class RouteStableCreditParams:
    """Input to the Stable Credit Router."""
    session_id: Optional[str]
    from_chain: str
    to_chain: str
    user_solana_address: Optional[str]
    user_evm_address: Optional[str]
    amount_usd: Decimal
    stable_symbol: str = STABLE_SYMBOL
    user_id: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class RouteStableCreditResult:
    """
    Outcome of a routing request.

    On success tx_hash is the submitted settlement transaction; it is NOT
    yet confirmed. reused=True means an existing submitted credit matched.
    """
    ok: bool
    code: Optional[FundingErrorCode] = None
    message: Optional[str] = None
    route_type: str = ROUTE_TYPE_TESTNET_CREDIT
    receipt_id: Optional[str] = None
    tx_hash: Optional[str] = None
    to_chain: Optional[str] = None
    credited_amount_usd: Optional[Decimal] = None
    reused: bool = False

    @classmethod
    def failure(cls, code: FundingErrorCode, message: str) -> "RouteStableCreditResult":
        return cls(ok=False, code=code, message=message)


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    # Constants
    "STABLE_SYMBOL",
    "STABLE_DECIMALS",
    "PRECISION_USD",
    "ZERO_USD",
    "ROUTE_TYPE_TESTNET_CREDIT",
    "SPEND_ESTIMATE_INSTRUMENTS",
    # Error codes
    "FundingErrorCode",
    # Enums
    "IntentPath",
    "IntentState",
    "ConfirmationType",
    "CreditStatus",
    "InstrumentType",
    # Helpers
    "to_usd",
    "units_to_usd",
    "GateJSONEncoder",
    # Models
    "IntentContext",
    "CrossChainCreditRecord",
    "CreditRecordPatch",
    "RouteDebug",
    "ExecutionRouteMeta",
    "EnsureExecutionFundingParams",
    "FundingResult",
    "RouteStableCreditParams",
    "RouteStableCreditResult",
]


# =============================================================================
# Sovereign Reliability Audit
# =============================================================================
#
# [Module Audit]
# Module: services/gate_models.py
# Decimal Integrity: [Verified - 6dp USD, ROUND_HALF_EVEN]
# Error Codes: [CROSS_CHAIN_ROUTE_* taxonomy documented]
# Traceability: [Records carry created_at/updated_at and audit meta]
#
# =============================================================================
