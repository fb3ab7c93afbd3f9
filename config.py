# =============================================================================
# Danger Monitor - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# the capture pipeline, the analysis client, the alert sink, and the control
# server. Parameters are overridable via environment variables with the
# MONITOR_ prefix (e.g., MONITOR_CAPTURE_TIMEOUT_MS=5000).
#
# User-facing settings (API key, interval, enabled flag) are persisted
# separately by monitor.settings.SettingsStore.
# =============================================================================

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# Project root directory (where this file lives)
_PROJECT_ROOT = str(Path(__file__).parent.resolve())


@dataclass
class Config:
    """
    Centralized configuration for the Danger Monitor system.

    All fields can be overridden via environment variables prefixed with MONITOR_.
    """

    # -- Remote VLM endpoint --
    api_url: str = "https://openrouter.ai/api/v1/chat/completions"
    model: str = "google/gemini-2.0-flash-001"
    max_tokens: int = 10
    request_timeout_seconds: float = 30.0

    # -- Fallback name resolution (DNS-over-HTTPS) --
    doh_url: str = "https://1.1.1.1/dns-query"
    doh_timeout_seconds: float = 10.0

    # -- Camera device --
    camera_device: str = "screen"  # "screen" (mss) or "synthetic"
    capture_monitor: int = 1
    capture_width: int = 1920
    capture_height: int = 1080
    preview_fps: float = 5.0
    jpeg_quality: int = 85

    # -- Pipeline timing --
    ready_retries: int = 20
    ready_delay_ms: int = 500
    capture_timeout_ms: int = 3000
    frame_poll_ms: int = 100
    miss_backoff_ms: int = 1000
    error_backoff_ms: int = 2000

    # -- Alert --
    alert_tone_ms: int = 500
    alert_gap_ms: int = 200
    alert_repeats: int = 3
    alert_frequency_hz: float = 880.0

    # -- Persistence --
    settings_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "monitor_settings.json")
    )
    photo_dir: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "photos")
    )

    # -- Control server --
    control_host: str = "127.0.0.1"
    control_port: int = 8700

    # -- Derived (computed post-init) --
    control_url: str = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.control_url = f"http://{self.control_host}:{self.control_port}"

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for MONITOR_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "api_url": str,
            "model": str,
            "max_tokens": int,
            "request_timeout_seconds": float,
            "doh_url": str,
            "doh_timeout_seconds": float,
            "camera_device": str,
            "capture_monitor": int,
            "capture_width": int,
            "capture_height": int,
            "preview_fps": float,
            "jpeg_quality": int,
            "ready_retries": int,
            "ready_delay_ms": int,
            "capture_timeout_ms": int,
            "frame_poll_ms": int,
            "miss_backoff_ms": int,
            "error_backoff_ms": int,
            "alert_tone_ms": int,
            "alert_gap_ms": int,
            "alert_repeats": int,
            "alert_frequency_hz": float,
            "settings_path": str,
            "photo_dir": str,
            "control_host": str,
            "control_port": int,
        }
        for field_name, field_type in field_types.items():
            env_key = f"MONITOR_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
