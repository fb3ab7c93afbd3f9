# =============================================================================
# Danger Monitor - Persisted User Settings
# =============================================================================
# JSON-file store for the settings a user edits between runs: the API key,
# the analysis interval, and whether continuous monitoring should be on.
# The orchestrator never reads this store mid-run; it receives a
# PipelineConfig snapshot when a run starts.
# =============================================================================

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from shared.schemas import PipelineConfig

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3
MIN_INTERVAL = 2

_KEY_API_KEY = "api_key"
_KEY_INTERVAL = "interval"
_KEY_ENABLED = "enabled"


class SettingsStore:
    """
    Settings persisted as a small JSON document.

    Missing or unreadable files behave like an empty store. Every setter
    rewrites the file atomically (write to a temp file, then rename).

    Args:
        path: Location of the JSON file; parent directories are created.
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("Unreadable settings file %s, using defaults", self._path, exc_info=True)
            return {}
        return data if isinstance(data, dict) else {}

    def _update(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._path)

    def get_api_key(self) -> Optional[str]:
        value = self._load().get(_KEY_API_KEY)
        return value if isinstance(value, str) else None

    def set_api_key(self, key: str) -> None:
        self._update(_KEY_API_KEY, key)

    def get_interval(self) -> int:
        """Analysis interval in seconds, never below MIN_INTERVAL."""
        value = self._load().get(_KEY_INTERVAL, DEFAULT_INTERVAL)
        try:
            return max(int(value), MIN_INTERVAL)
        except (TypeError, ValueError):
            return DEFAULT_INTERVAL

    def set_interval(self, seconds: int) -> None:
        self._update(_KEY_INTERVAL, max(int(seconds), MIN_INTERVAL))

    def is_enabled(self) -> bool:
        return bool(self._load().get(_KEY_ENABLED, False))

    def set_enabled(self, enabled: bool) -> None:
        self._update(_KEY_ENABLED, bool(enabled))

    def is_configured(self) -> bool:
        """True when a non-blank API key is stored."""
        key = self.get_api_key()
        return bool(key and key.strip())

    def snapshot(self) -> PipelineConfig:
        """Current settings as the config handed to a new run."""
        return PipelineConfig(
            api_key=self.get_api_key() or "",
            interval_seconds=self.get_interval(),
        )
