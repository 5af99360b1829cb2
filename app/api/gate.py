"""
============================================================================
Execution Gate API Endpoints
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints:
    - All USD values as Decimal strings (no floats)
    - session_id required for every path/confirmation call
Side Effects:
    - Session context writes (context store)
    - Credit ledger writes and settlement mints (funding)
    - Prometheus metrics updates

PRIME DIRECTIVE:
    "No execution without confirmation. No confirmation without funding."

ENDPOINTS:
    POST   /api/gate/classify               - Classify free-text intent
    POST   /api/gate/policy                 - Evaluate path policy for an intent
    POST   /api/gate/confirm                - Resolve a pending confirmation
    POST   /api/gate/complete               - Mark execution finished
    POST   /api/gate/reset                  - Return session to idle
    DELETE /api/gate/context/{session_id}   - Drop session context
    POST   /api/gate/funding                - Ensure execution funding

Policy denials and funding failures are normal 200 responses carrying
allowed=false / ok=false. Only infrastructure faults map to 5xx.

ERROR CODES:
    CTX-050: Context store unavailable (503)

============================================================================
"""

from datetime import datetime, timezone
from typing import Optional
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Header, Response

from app.schemas.gate import (
    ClassifyRequest,
    ClassifyResponse,
    CompleteRequest,
    ConfirmRequest,
    ConfirmResponse,
    ContextOut,
    FundingRequest,
    FundingResponse,
    PolicyRequest,
    PolicyResponse,
    SessionRequest,
)
from services.gate_container import ExecutionGate, get_execution_gate
from services.gate_models import EnsureExecutionFundingParams, IntentContext
from services.intent_context_store import ContextStoreUnavailable
from services.intent_path_classifier import classify_with_validation

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter()


# ============================================================================
# Dependencies
# ============================================================================

def get_gate() -> ExecutionGate:
    """Process-wide execution gate (overridden in tests)."""
    return get_execution_gate()


def get_correlation_id(
    x_correlation_id: Optional[str] = Header(None, description="Caller correlation id")
) -> str:
    return x_correlation_id or str(uuid.uuid4())


def _context_out(context: IntentContext) -> ContextOut:
    return ContextOut(
        session_id=context.session_id,
        current_path=context.current_path.value,
        current_state=context.current_state.value,
        pending_intent_id=context.pending_intent_id,
        confirmation_type=context.confirmation_type.value,
    )


def _store_unavailable(exc: ContextStoreUnavailable, correlation_id: str) -> HTTPException:
    logger.error(f"[{exc.error_code}] {exc.message} | correlation_id={correlation_id}")
    return HTTPException(
        status_code=503,
        detail={
            "error_code": exc.error_code,
            "message": "Session state is temporarily unavailable. Please retry.",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id,
        },
    )


# ============================================================================
# Endpoints
# ============================================================================

@router.post(
    "/classify",
    response_model=ClassifyResponse,
    summary="Classify Intent",
    description=(
        "Assigns a risk path to free text. Conflicting vocabulary returns the "
        "research path plus a mismatch describing the conflict."
    ),
)
async def classify_intent(
    request: ClassifyRequest,
    correlation_id: str = Depends(get_correlation_id),
) -> ClassifyResponse:
    result = classify_with_validation(request.text, correlation_id=correlation_id)
    return ClassifyResponse(**result.to_dict())


@router.post(
    "/policy",
    response_model=PolicyResponse,
    summary="Evaluate Path Policy",
    responses={503: {"description": "Context store unavailable (CTX-050)"}},
)
async def evaluate_policy(
    request: PolicyRequest,
    gate: ExecutionGate = Depends(get_gate),
    correlation_id: str = Depends(get_correlation_id),
) -> PolicyResponse:
    try:
        result = await gate.guard.evaluate_path_policy(
            request.session_id,
            request.path,
            intent_id=request.intent_id,
            usd_estimate=request.usd_estimate,
        )
    except ContextStoreUnavailable as e:
        raise _store_unavailable(e, correlation_id)
    return PolicyResponse(**result.to_dict())


@router.post(
    "/confirm",
    response_model=ConfirmResponse,
    summary="Process Confirmation",
    responses={503: {"description": "Context store unavailable (CTX-050)"}},
)
async def process_confirmation(
    request: ConfirmRequest,
    gate: ExecutionGate = Depends(get_gate),
    correlation_id: str = Depends(get_correlation_id),
) -> ConfirmResponse:
    try:
        result = await gate.guard.process_confirmation(request.session_id, request.text)
    except ContextStoreUnavailable as e:
        raise _store_unavailable(e, correlation_id)
    return ConfirmResponse(
        confirmed=result.confirmed,
        cancelled=result.cancelled,
        message=result.message,
        context=_context_out(result.context),
    )


@router.post(
    "/complete",
    response_model=ContextOut,
    summary="Mark Execution Complete",
)
async def mark_complete(
    request: CompleteRequest,
    gate: ExecutionGate = Depends(get_gate),
    correlation_id: str = Depends(get_correlation_id),
) -> ContextOut:
    try:
        context = await gate.guard.mark_execution_complete(request.session_id, request.success)
    except ContextStoreUnavailable as e:
        raise _store_unavailable(e, correlation_id)
    return _context_out(context)


@router.post(
    "/reset",
    response_model=ContextOut,
    summary="Reset Session State",
)
async def reset_context(
    request: SessionRequest,
    gate: ExecutionGate = Depends(get_gate),
    correlation_id: str = Depends(get_correlation_id),
) -> ContextOut:
    try:
        context = await gate.guard.reset_context_state(request.session_id)
    except ContextStoreUnavailable as e:
        raise _store_unavailable(e, correlation_id)
    return _context_out(context)


@router.delete(
    "/context/{session_id}",
    status_code=204,
    summary="Clear Session Context",
)
async def clear_context(
    session_id: str,
    gate: ExecutionGate = Depends(get_gate),
    correlation_id: str = Depends(get_correlation_id),
) -> Response:
    try:
        await gate.guard.clear_context(session_id)
    except ContextStoreUnavailable as e:
        raise _store_unavailable(e, correlation_id)
    return Response(status_code=204)


@router.post(
    "/funding",
    response_model=FundingResponse,
    summary="Ensure Execution Funding",
    description=(
        "Verifies the settlement-chain bUSDC balance covers the execution, "
        "routing testnet credit from Solana devnet when it does not. "
        "Fails closed: ok=true only after the post-route balance check."
    ),
)
async def ensure_funding(
    request: FundingRequest,
    gate: ExecutionGate = Depends(get_gate),
    correlation_id: str = Depends(get_correlation_id),
) -> FundingResponse:
    logger.info(
        f"[GATE-API] Funding request | session_id={request.session_id} | "
        f"to_chain={request.to_chain} | force_route={request.force_route} | "
        f"correlation_id={correlation_id}"
    )
    result = await gate.guarantor.ensure_execution_funding(
        EnsureExecutionFundingParams(
            user_evm_address=request.user_evm_address,
            user_solana_address=request.user_solana_address,
            from_chain=request.from_chain,
            to_chain=request.to_chain,
            amount_usd_required=request.amount_usd_required,
            spend_estimate_units=request.spend_estimate_units,
            instrument_type=request.instrument_type,
            user_id=request.user_id,
            session_id=request.session_id,
            force_route=request.force_route,
            correlation_id=correlation_id,
        )
    )
    return FundingResponse(**result.to_dict(), correlation_id=correlation_id)


__all__ = ["router", "get_gate", "get_correlation_id"]
