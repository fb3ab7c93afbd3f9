# =============================================================================
# Danger Monitor - Error Taxonomy
# =============================================================================
# Exceptions raised inside the monitor. None of them is allowed to escape the
# analysis loop: camera and capture failures degrade the pipeline, they never
# crash the process. Network, HTTP-status and response-parse failures are not
# raised at all; AnalysisClient folds them into AnalysisVerdict.error.
# =============================================================================


class MonitorError(Exception):
    """Base class for all monitor errors."""


class PreconditionError(MonitorError):
    """A run was requested without the settings it needs (e.g. no API key)."""


class CameraUnavailable(MonitorError):
    """No capture device exists, or it rejected its configuration."""


class CameraNotReady(MonitorError):
    """The device did not report ready within the warm-up window."""

    def __init__(self, attempts: int, delay_seconds: float):
        super().__init__(
            f"Camera not ready after {attempts} attempts "
            f"({attempts * delay_seconds:.1f}s)"
        )
        self.attempts = attempts


class CaptureTimeout(MonitorError):
    """No frame was delivered for a capture request in time."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"No frame delivered within {timeout_ms} ms")
        self.timeout_ms = timeout_ms


class EncodeFailure(MonitorError):
    """A raw planar buffer could not be turned into a JPEG."""
