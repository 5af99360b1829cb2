# ============================================================================
# Execution Gate - Database Module
# ============================================================================

from app.database.session import (
    create_ledger_engine,
    get_engine,
    reset_engine,
    check_database_connection,
)

__all__ = ["create_ledger_engine", "get_engine", "reset_engine", "check_database_connection"]
