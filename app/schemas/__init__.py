# ============================================================================
# Execution Gate
# Pydantic Schemas - Data Validation Layer
# ============================================================================

from app.schemas.gate import (
    ClassifyRequest,
    ClassifyResponse,
    PolicyRequest,
    PolicyResponse,
    ConfirmRequest,
    ConfirmResponse,
    FundingRequest,
    FundingResponse,
)

__all__ = [
    "ClassifyRequest",
    "ClassifyResponse",
    "PolicyRequest",
    "PolicyResponse",
    "ConfirmRequest",
    "ConfirmResponse",
    "FundingRequest",
    "FundingResponse",
]
