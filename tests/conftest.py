"""Shared fixtures for the danger monitor test suite.

Everything here runs without hardware: camera devices are synthetic, the
tone generator only records calls, and the analysis client is scripted.
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from monitor.alert import AlertSink  # noqa: E402
from monitor.capture import FrameSource  # noqa: E402
from monitor.devices import SyntheticCameraDevice  # noqa: E402
from monitor.pipeline import DangerMonitor  # noqa: E402
from monitor.settings import SettingsStore  # noqa: E402
from shared.schemas import AnalysisVerdict  # noqa: E402


# =============================================================================
# Fakes
# =============================================================================

class RecordingTone:
    """Tone generator that records every call instead of making noise."""

    def __init__(self):
        self.tones: List[tuple] = []
        self.released = 0
        self._lock = threading.Lock()

    def start_tone(self, frequency_hz: float, duration_ms: int) -> None:
        with self._lock:
            self.tones.append((frequency_hz, duration_ms, time.monotonic()))

    def release(self) -> None:
        self.released += 1


class CountingDevice(SyntheticCameraDevice):
    """Synthetic camera that counts open/close calls."""

    def __init__(self, **kwargs):
        kwargs.setdefault("warmup", 0.0)
        kwargs.setdefault("fps", 50.0)
        super().__init__(**kwargs)
        self.opens = 0
        self.closes = 0

    def open(self, listener) -> None:
        self.opens += 1
        super().open(listener)

    def close(self) -> None:
        self.closes += 1
        super().close()


class ManualDevice:
    """Device driven by the test: nothing happens until a callback is fired."""

    name = "manual"

    def __init__(self, fail_open: Optional[Exception] = None):
        self.listener = None
        self.fail_open = fail_open
        self.opens = 0
        self.closes = 0

    def open(self, listener) -> None:
        self.opens += 1
        if self.fail_open is not None:
            raise self.fail_open
        self.listener = listener

    def close(self) -> None:
        self.closes += 1


class ScriptedClient:
    """
    Analysis client returning scripted verdicts.

    ``script`` is called with the call index and returns a verdict (or
    raises). ``gate``, when given, blocks every call until it is set.
    """

    def __init__(
        self,
        script: Callable[[int], AnalysisVerdict],
        gate: Optional[threading.Event] = None,
    ):
        self.script = script
        self.gate = gate
        self.calls: List[float] = []
        self.started = threading.Event()
        self.closed = False

    def analyze(self, image_bytes: bytes) -> AnalysisVerdict:
        index = len(self.calls)
        self.calls.append(time.monotonic())
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        return self.script(index)

    def close(self) -> None:
        self.closed = True


def safe(_index: int) -> AnalysisVerdict:
    return AnalysisVerdict(is_danger=False, raw_answer="NO")


def danger(_index: int) -> AnalysisVerdict:
    return AnalysisVerdict(is_danger=True, raw_answer="YES")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def tone() -> RecordingTone:
    return RecordingTone()


@pytest.fixture
def settings(tmp_path: Path) -> SettingsStore:
    return SettingsStore(str(tmp_path / "settings.json"))


@pytest.fixture
def make_monitor(tmp_path: Path, tone: RecordingTone, settings: SettingsStore):
    """
    Factory for a DangerMonitor wired to fakes with fast timings.

    Returns a callable ``(script=safe, device=None, gate=None, **kwargs)``
    giving ``(monitor, device, clients)`` where ``clients`` collects every
    ScriptedClient the monitor created.
    """

    def _make(script=safe, device=None, gate=None, **kwargs):
        device = device or CountingDevice()
        clients: List[ScriptedClient] = []

        def factory(api_key: str) -> ScriptedClient:
            client = ScriptedClient(script, gate=gate)
            clients.append(client)
            return client

        params = dict(
            photo_dir=str(tmp_path / "photos"),
            ready_retries=20,
            ready_delay=0.02,
            capture_timeout_ms=500,
            miss_backoff=0.05,
            error_backoff=0.05,
        )
        params.update(kwargs)
        monitor = DangerMonitor(
            source=FrameSource(device, poll_interval=0.01),
            alert=AlertSink(tone_factory=lambda: tone, tone_ms=20, gap_ms=10),
            client_factory=factory,
            settings=settings,
            **params,
        )
        return monitor, device, clients

    return _make
