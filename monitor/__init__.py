# =============================================================================
# Danger Monitor - Monitor Package
# =============================================================================
# This package contains the device-side components: camera frame capture,
# JPEG encoding, remote danger analysis with resilient name resolution,
# audible alerting, persisted settings, and the orchestrator that ties them
# into the continuous capture-analyze-alert loop.
# =============================================================================
