"""
============================================================================
Execution Gate - Services Layer
============================================================================

Path classification, the path transition guard, the funding guarantor and
the stable credit router, plus the credit finalizer.

Reliability Level: L6 Critical
============================================================================
"""

from services.gate_models import (
    FundingErrorCode,
    IntentPath,
    IntentState,
    ConfirmationType,
    CreditStatus,
    IntentContext,
    CrossChainCreditRecord,
    EnsureExecutionFundingParams,
    FundingResult,
    ExecutionRouteMeta,
)

from services.gate_config import (
    GateConfig,
    GateConfigurationError,
    get_gate_config,
    reset_gate_config,
)

from services.intent_path_classifier import (
    classify,
    classify_with_validation,
    classify_parsed_intent,
)

from services.path_transition_guard import (
    PathTransitionGuard,
    PathPolicyResult,
    validate_transition,
)

__all__ = [
    # Models
    "FundingErrorCode",
    "IntentPath",
    "IntentState",
    "ConfirmationType",
    "CreditStatus",
    "IntentContext",
    "CrossChainCreditRecord",
    "EnsureExecutionFundingParams",
    "FundingResult",
    "ExecutionRouteMeta",
    # Config
    "GateConfig",
    "GateConfigurationError",
    "get_gate_config",
    "reset_gate_config",
    # Classifier
    "classify",
    "classify_with_validation",
    "classify_parsed_intent",
    # Guard
    "PathTransitionGuard",
    "PathPolicyResult",
    "validate_transition",
]
