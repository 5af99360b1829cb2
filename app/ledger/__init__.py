# ============================================================================
# Execution Gate - Credit Ledger Module
# ============================================================================

from app.ledger.credit_ledger import (
    CreditLedger,
    InMemoryCreditLedger,
    SqlCreditLedger,
    CreditLedgerError,
    InvalidCreditTransition,
    CreditRecordNotFound,
)

__all__ = [
    "CreditLedger",
    "InMemoryCreditLedger",
    "SqlCreditLedger",
    "CreditLedgerError",
    "InvalidCreditTransition",
    "CreditRecordNotFound",
]
