# =============================================================================
# Danger Monitor - Shared Package
# =============================================================================
# Data contracts shared by the monitor pipeline and the control server.
# =============================================================================
