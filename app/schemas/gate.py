"""
============================================================================
Execution Gate - API Schemas
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: USD amounts as Decimal strings or integers - NO FLOATS
Side Effects: None (pure validation)

Request/response models for the /api/gate endpoints.

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, List, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.gate_models import IntentPath, to_usd


def validate_usd(value: Any, field_name: str) -> Optional[Decimal]:
    """
    Coerce a USD input to a 6dp Decimal.

    Floats are rejected outright; JSON numbers with a fraction must be sent
    as strings.
    """
    if value is None:
        return None
    if isinstance(value, float):
        raise ValueError(
            f"{field_name} must be a Decimal string or integer, not float"
        )
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field_name} is not a valid decimal amount")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{field_name} must be a finite, non-negative amount")
    return to_usd(amount)


# ============================================================================
# Classification
# ============================================================================

class ClassifyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(..., min_length=1, max_length=2000, description="Free-text user intent")


class PathMismatchOut(BaseModel):
    detected_path: str
    conflicting_keywords: List[str]
    suggested_path: str
    message: str


class ClassifyResponse(BaseModel):
    path: str
    matched_rule: Optional[str] = None
    mismatch: Optional[PathMismatchOut] = None


# ============================================================================
# Path Policy / Confirmation
# ============================================================================

class PolicyRequest(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "session_id": "sess-123",
                "path": "execution",
                "intent_id": "intent-42",
                "usd_estimate": "250.00",
            }
        },
    )

    session_id: str = Field(..., min_length=1, max_length=128)
    path: IntentPath = Field(..., description="Risk path of the candidate action")
    intent_id: Optional[str] = Field(default=None, max_length=128)
    usd_estimate: Optional[Decimal] = Field(default=None, description="USD estimate as Decimal string")

    @field_validator("usd_estimate", mode="before")
    @classmethod
    def validate_usd_estimate(cls, v: Any) -> Optional[Decimal]:
        return validate_usd(v, "usd_estimate")


class PolicyResponse(BaseModel):
    allowed: bool
    code: Optional[str] = None
    message: Optional[str] = None
    requires_confirmation: bool = False
    confirmation_type: str


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., min_length=1, max_length=128)
    text: str = Field(..., min_length=1, max_length=2000, description="User reply to the prompt")


class ContextOut(BaseModel):
    session_id: str
    current_path: str
    current_state: str
    pending_intent_id: Optional[str] = None
    confirmation_type: str


class ConfirmResponse(BaseModel):
    confirmed: bool
    cancelled: bool
    message: str
    context: ContextOut


class SessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., min_length=1, max_length=128)


class CompleteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., min_length=1, max_length=128)
    success: bool = Field(..., description="Whether the execution succeeded")


# ============================================================================
# Funding
# ============================================================================

class FundingRequest(BaseModel):
    """
    Input to the funding guarantor.

    amount_usd_required wins when positive; otherwise spend_estimate_units
    (6-decimal base units) is honoured for perp, defi and event instruments.
    """

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "user_evm_address": "0x1111111111111111111111111111111111111111",
                "user_solana_address": "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin",
                "from_chain": "solana_devnet",
                "to_chain": "sepolia",
                "amount_usd_required": "300",
                "session_id": "sess-123",
            }
        },
    )

    user_evm_address: Optional[str] = Field(default=None, max_length=64)
    user_solana_address: Optional[str] = Field(default=None, max_length=64)
    from_chain: Optional[str] = Field(default=None, max_length=64)
    to_chain: Optional[str] = Field(default=None, max_length=64)
    amount_usd_required: Optional[Decimal] = None
    spend_estimate_units: Optional[int] = Field(default=None, ge=0)
    instrument_type: Optional[str] = Field(default=None, max_length=32)
    user_id: Optional[str] = Field(default=None, max_length=128)
    session_id: Optional[str] = Field(default=None, max_length=128)
    force_route: bool = False

    @field_validator("amount_usd_required", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Optional[Decimal]:
        return validate_usd(v, "amount_usd_required")


class RouteDebugOut(BaseModel):
    rpc_used: Optional[str] = None
    attempts: Optional[int] = None
    last_error: Optional[str] = None


class RouteOut(BaseModel):
    did_route: bool
    reason: str
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    route_type: Optional[str] = None
    receipt_id: Optional[str] = None
    tx_hash: Optional[str] = None
    credited_amount_usd: Optional[str] = Field(default=None, description="Decimal string")
    debug: Optional[RouteDebugOut] = None


class FundingResponse(BaseModel):
    ok: bool
    route: Optional[RouteOut] = None
    code: Optional[str] = None
    user_message: Optional[str] = None
    correlation_id: str


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error_code: str
    message: str
    timestamp: str
    correlation_id: Optional[str] = None


__all__ = [
    "ClassifyRequest",
    "ClassifyResponse",
    "PathMismatchOut",
    "PolicyRequest",
    "PolicyResponse",
    "ConfirmRequest",
    "ConfirmResponse",
    "ContextOut",
    "CompleteRequest",
    "SessionRequest",
    "FundingRequest",
    "FundingResponse",
    "RouteOut",
    "RouteDebugOut",
    "ErrorResponse",
    "validate_usd",
]
