# ============================================================================
# Execution Gate - Chain Access Layer
# ============================================================================
#
# Chain registry, JSON-RPC transport, balance reads, receipt polling and the
# settlement mint issuer.
# ============================================================================
