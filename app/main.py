"""
============================================================================
Execution Gate v1.0.0
FastAPI Application Entry Point
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: JSON requests from the trading assistant backend
Side Effects: Session context writes, credit ledger writes, settlement mints

PRIME DIRECTIVE:
    "No execution without confirmation. No confirmation without funding."

STARTUP:
    - Build the execution gate from environment
    - Verify ledger database connectivity (SQL ledger only)
    - Start the credit finalizer loop (CREDIT_FINALIZER_ENABLED)

============================================================================
"""

import os
from datetime import datetime, timezone
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.api.gate import router as gate_router
from app.database.session import check_database_connection
from app.ledger.credit_ledger import SqlCreditLedger
from services.gate_config import get_gate_config
from services.gate_container import (
    ExecutionGate,
    build_execution_gate,
    get_execution_gate,
    set_execution_gate,
)
from services.intent_context_store import RedisContextStore

# Load environment variables
load_dotenv()

# Configure module logger
logger = logging.getLogger(__name__)


def _check_ledger(gate: ExecutionGate) -> str:
    """Ping the ledger database; in-memory ledgers are always healthy."""
    if isinstance(gate.ledger, SqlCreditLedger):
        check_database_connection(gate.ledger.engine)
        return "connected"
    return "in-memory"


# ============================================================================
# APPLICATION LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup/shutdown events.

    Startup:
        - Build and install the execution gate
        - Verify ledger connectivity (startup fails without it)
        - Start the credit finalizer

    Shutdown:
        - Stop the credit finalizer
        - Close the Redis context store, if any
    """
    print("=" * 60)
    print("EXECUTION GATE v1.0.0 - PATH CONFIRMATION + FUNDING GUARANTEE")
    print("=" * 60)
    print(f"Startup Time: {datetime.now(timezone.utc).isoformat()}")

    config = get_gate_config()
    gate = build_execution_gate(config)
    set_execution_gate(gate)

    try:
        ledger_status = _check_ledger(gate)
        print(f"[OK] Credit ledger verified ({ledger_status})")
    except Exception as e:
        print(f"[CRITICAL] Credit ledger connection failed: {e}")
        print("[CRITICAL] Gate cannot start without a durable credit ledger")
        raise

    print(f"[OK] Routing enabled: {config.routing_enabled}")
    print(f"     Max USD per tx: {config.max_usd_per_tx}")
    print(f"     High-value threshold: {config.high_value_threshold_usd}")
    print(f"     Context store: {type(gate.context_store).__name__}")

    if config.finalizer_enabled:
        await gate.finalizer.start()
        print(f"[OK] Credit finalizer started")
        print(f"     Interval: {config.finalizer_interval_seconds}s")
    else:
        print("[INFO] Credit finalizer disabled; run jobs.reconcile_credits externally")

    print("=" * 60)

    yield

    # Shutdown
    if gate.finalizer.is_running:
        await gate.finalizer.stop()
        print("[OK] Credit finalizer stopped")
    if isinstance(gate.context_store, RedisContextStore):
        await gate.context_store.close()
        print("[OK] Context store closed")
    print("=" * 60)


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Execution Gate",
    description=(
        "Path confirmation and cross-chain funding guarantee in front of "
        "on-chain execution.\n\n"
        "**PRIME DIRECTIVE:** No execution without confirmation. "
        "No confirmation without funding."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# ============================================================================
# MIDDLEWARE
# ============================================================================

# CORS middleware (restrict in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    SOVEREIGN MANDATE: No silent failures
    """
    error_code = "SYS-500"
    logger.error(f"[{error_code}] Unhandled exception: {exc}", exc_info=exc)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": error_code,
            "message": "Internal server error. This incident has been logged.",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# ============================================================================
# ROUTERS
# ============================================================================

app.include_router(
    gate_router,
    prefix="/api/gate",
    tags=["Gate"]
)


# ============================================================================
# SYSTEM ENDPOINTS
# ============================================================================

@app.get(
    "/health",
    summary="Health Check",
    description="Lightweight health check for load balancers and monitoring.",
    tags=["System"]
)
async def health_check():
    """
    Health check: ledger connectivity and finalizer state.

    Returns 503 when the ledger database is unreachable.
    """
    gate = get_execution_gate()
    try:
        ledger_status = _check_ledger(gate)
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "ledger": "disconnected", "error": str(e)}
        )
    return {
        "status": "healthy",
        "ledger": ledger_status,
        "routing_enabled": gate.config.routing_enabled,
        "finalizer_running": gate.finalizer.is_running,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Exposes Prometheus metrics for observability.",
    tags=["Observability"]
)
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("GATE_PORT", "8080")), log_level="info")
