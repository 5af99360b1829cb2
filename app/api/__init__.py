# ============================================================================
# Execution Gate
# API Routes Module
# ============================================================================

from app.api.gate import router as gate_router

__all__ = ["gate_router"]
