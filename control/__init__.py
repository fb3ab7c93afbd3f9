# =============================================================================
# Danger Monitor - Control Server Package
# =============================================================================
# This package exposes the monitor's control surface over local HTTP: start
# and stop continuous analysis, single photo capture, test tone, status.
# =============================================================================
