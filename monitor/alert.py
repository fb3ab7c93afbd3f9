# =============================================================================
# Danger Monitor - Audible Alerts
# =============================================================================
# Provides the AlertSink class that plays the danger pattern (three short
# tones) without blocking the caller. Tones are scheduled on threading.Timer
# threads; the tone generator plays each burst asynchronously through
# sounddevice. Every audio failure is logged and swallowed: losing the beep
# must never take the analysis loop down with it.
# =============================================================================

import logging
import threading
from typing import Callable, Dict, Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)

TEST_TONE_MS = 200
TEST_TONE_HZ = 1000.0


class ToneGenerator(Protocol):
    def start_tone(self, frequency_hz: float, duration_ms: int) -> None:
        ...

    def release(self) -> None:
        ...


class SoundDeviceTone:
    """
    Sine-burst tone generator on the default output device.

    ``start_tone`` returns immediately; sounddevice plays the buffer on its
    own stream thread.

    Args:
        sample_rate: Output sample rate in Hz.
        volume:      Peak amplitude, 0.0-1.0.
    """

    def __init__(self, sample_rate: int = 44100, volume: float = 0.8):
        # PortAudio is loaded at import time; keep it out of module import
        import sounddevice as sd

        self._sd = sd
        self._sample_rate = sample_rate
        self._volume = volume
        # Fails early when no output device exists
        sd.query_devices(kind="output")

    def _burst(self, frequency_hz: float, duration_ms: int) -> np.ndarray:
        n_samples = int(self._sample_rate * duration_ms / 1000)
        t = np.arange(n_samples, dtype=np.float32) / self._sample_rate
        wave = self._volume * np.sin(2 * np.pi * frequency_hz * t)
        # 5 ms fade in/out to avoid clicks
        fade = min(n_samples // 2, int(self._sample_rate * 0.005))
        if fade:
            ramp = np.linspace(0.0, 1.0, fade, dtype=np.float32)
            wave[:fade] *= ramp
            wave[-fade:] *= ramp[::-1]
        return wave.astype(np.float32)

    def start_tone(self, frequency_hz: float, duration_ms: int) -> None:
        self._sd.play(self._burst(frequency_hz, duration_ms), self._sample_rate)

    def release(self) -> None:
        self._sd.stop()


class AlertSink:
    """
    Bounded, non-blocking audible alerting.

    Args:
        tone_factory: Builds the tone generator; called lazily and again
                      after release().
        tone_ms:      Duration of each danger tone.
        gap_ms:       Silence between danger tones.
        repeats:      Number of danger tones per alert.
        frequency_hz: Pitch of the danger tones.
    """

    def __init__(
        self,
        tone_factory: Callable[[], ToneGenerator] = SoundDeviceTone,
        tone_ms: int = 500,
        gap_ms: int = 200,
        repeats: int = 3,
        frequency_hz: float = 880.0,
    ):
        self._tone_factory = tone_factory
        self._tone_ms = tone_ms
        self._gap_ms = gap_ms
        self._repeats = repeats
        self._frequency_hz = frequency_hz

        self._lock = threading.Lock()
        self._generator: Optional[ToneGenerator] = None
        self._unavailable = False
        self._pending: Dict[object, threading.Timer] = {}

    def _play_locked(self, frequency_hz: float, duration_ms: int) -> None:
        # Caller holds self._lock, so release() cannot interleave
        if self._generator is None:
            if self._unavailable:
                logger.debug("No tone generator, skipping %d ms tone", duration_ms)
                return
            try:
                self._generator = self._tone_factory()
            except Exception:
                logger.exception("Failed to create tone generator, alerts are silent")
                self._unavailable = True
                return
        try:
            self._generator.start_tone(frequency_hz, duration_ms)
        except Exception:
            logger.exception("Failed to play tone")

    def _fire(self, token: object) -> None:
        with self._lock:
            # Cancelled by release() between scheduling and firing
            if self._pending.pop(token, None) is None:
                return
            self._play_locked(self._frequency_hz, self._tone_ms)

    def play_danger_alert(self) -> None:
        """
        Schedule the danger pattern and return immediately.

        Tone ``i`` starts ``i * (tone_ms + gap_ms)`` after the call.
        """
        logger.info("Playing danger alert!")
        cadence = (self._tone_ms + self._gap_ms) / 1000.0
        scheduled = []
        with self._lock:
            for i in range(self._repeats):
                token = object()
                timer = threading.Timer(i * cadence, self._fire, args=(token,))
                timer.daemon = True
                self._pending[token] = timer
                scheduled.append(timer)
        for timer in scheduled:
            timer.start()

    def play_test_tone(self) -> None:
        """Play a single short beep."""
        with self._lock:
            self._play_locked(TEST_TONE_HZ, TEST_TONE_MS)

    def release(self) -> None:
        """Cancel pending tones and release the generator. Safe to repeat."""
        with self._lock:
            pending, self._pending = self._pending, {}
            generator, self._generator = self._generator, None
            # Retry device discovery on the next use
            self._unavailable = False
        for timer in pending.values():
            timer.cancel()
        if generator is None:
            return
        try:
            generator.release()
        except Exception:
            logger.exception("Failed to release tone generator")
