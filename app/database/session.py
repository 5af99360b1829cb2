"""
============================================================================
Execution Gate - Database Engine Management
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: SQLAlchemy URL via LEDGER_DATABASE_URL
Side Effects: Database connections

SOVEREIGN MANDATE:
- The credit ledger is the durable record of every routing attempt
- Connection pooling with pre-ping for long-lived workers
- Engine is created lazily so imports never open connections

ENVIRONMENT VARIABLES:
    LEDGER_DATABASE_URL: SQLAlchemy URL (default: sqlite:///./execution_gate.db)
    DB_ECHO: Echo SQL (default: false)

============================================================================
"""

import os
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


DEFAULT_LEDGER_DATABASE_URL = "sqlite:///./execution_gate.db"


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Resolve the ledger database URL from the environment.

    Returns:
        str: SQLAlchemy connection URL
    """
    return os.getenv("LEDGER_DATABASE_URL", "").strip() or DEFAULT_LEDGER_DATABASE_URL


def create_ledger_engine(url: Optional[str] = None) -> Engine:
    """
    Create an engine for the credit ledger.

    SQLite (used in development and tests) gets a single shared connection
    for in-memory URLs; every other backend gets a pre-pinged QueuePool.
    """
    url = url or get_database_url()
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=10,           # Maintain 10 connections
        max_overflow=20,        # Allow up to 20 additional connections under load
        pool_timeout=30,        # Wait up to 30s for a connection
        pool_recycle=1800,      # Recycle connections after 30 minutes
        pool_pre_ping=True,     # Verify connections before use
        echo=echo,
    )


# ============================================================================
# SHARED ENGINE
# ============================================================================

_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Get the process-wide ledger engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_ledger_engine()
    return _engine


def reset_engine() -> None:
    """Dispose and forget the shared engine (testing)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(engine: Optional[Engine] = None) -> bool:
    """
    Verify database connectivity.

    Returns:
        bool: True if database is reachable

    Raises:
        ConnectionError: If database connection fails
    """
    try:
        with (engine or get_engine()).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise ConnectionError(f"Database connection failed: {e}") from e


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
