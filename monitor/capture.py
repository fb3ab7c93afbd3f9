# =============================================================================
# Danger Monitor - Frame Source
# =============================================================================
# Provides the FrameSource class that sits between a camera device and the
# analysis loop. The device streams a low frame-rate preview on its own
# capture thread; FrameSource only keeps a frame when the loop has asked for
# one:
#
#   loop thread                      capture thread
#   -----------                      --------------
#   request_frame()  -> flag = set
#                                    on_frame(raw): compare-and-clear flag
#                                        set   -> encode -> publish to slot
#                                        unset -> drop the frame
#   poll_frame()     <- take from slot (polled every 100 ms)
#
# The request flag and the frame slot are the only state shared between the
# two threads; each is guarded by its own lock so that compare-and-set and
# publish/take are atomic. A publish overwrites the slot, so at most one
# frame is ever waiting to be picked up.
# =============================================================================

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from monitor.encoder import DEFAULT_JPEG_QUALITY, encode_frame
from monitor.errors import CameraUnavailable, EncodeFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawFrame:
    """An I420 planar buffer as delivered by a camera device."""

    data: bytes
    width: int
    height: int


@dataclass(frozen=True)
class CapturedFrame:
    """A JPEG-encoded frame waiting for (or handed to) the analysis loop."""

    data: bytes
    encoded_at: float


class FrameListener(Protocol):
    """Callbacks a camera device invokes from its capture thread."""

    def on_ready(self) -> None:
        ...

    def on_frame(self, raw: RawFrame) -> None:
        ...

    def on_error(self, reason: str) -> None:
        ...


class CameraDevice(Protocol):
    """
    A capture device streaming a repeating preview.

    ``open`` must raise CameraUnavailable when the device does not exist or
    rejects its configuration; all later failures are reported through
    ``listener.on_error``.
    """

    name: str

    def open(self, listener: FrameListener) -> None:
        ...

    def close(self) -> None:
        ...


class _AtomicFlag:
    """Boolean with an atomic compare-and-set."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = False

    def set(self) -> None:
        with self._lock:
            self._value = True

    def clear(self) -> None:
        with self._lock:
            self._value = False

    def compare_and_set(self, expected: bool, new: bool) -> bool:
        with self._lock:
            if self._value != expected:
                return False
            self._value = new
            return True


class _FrameSlot:
    """Single-slot mailbox: publish overwrites, take reads and clears."""

    def __init__(self):
        self._lock = threading.Lock()
        self._frame: Optional[CapturedFrame] = None

    def publish(self, frame: CapturedFrame) -> None:
        with self._lock:
            self._frame = frame

    def take(self) -> Optional[CapturedFrame]:
        with self._lock:
            frame, self._frame = self._frame, None
            return frame


class FrameSource:
    """
    One-capture-in-flight frame acquisition on top of a CameraDevice.

    Args:
        device:        The camera device to stream from.
        encoder:       Callable ``(data, width, height) -> jpeg bytes``;
                       defaults to encode_frame at ``jpeg_quality``.
        poll_interval: Seconds between slot checks in poll_frame().
        jpeg_quality:  Quality used by the default encoder.
    """

    def __init__(
        self,
        device: CameraDevice,
        encoder: Optional[Callable[[bytes, int, int], bytes]] = None,
        poll_interval: float = 0.1,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    ):
        self._device = device
        self._encoder = encoder or (
            lambda data, width, height: encode_frame(data, width, height, jpeg_quality)
        )
        self._poll_interval = poll_interval

        self._request = _AtomicFlag()
        self._slot = _FrameSlot()
        self._ready = threading.Event()
        self._open = False
        self._failed = False

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        """True once open() succeeded and no device failure has occurred since."""
        return self._open and not self._failed

    @property
    def is_ready(self) -> bool:
        """True when the preview stream is configured and delivering frames."""
        return self._ready.is_set()

    def open(self) -> None:
        """
        Open the device and start its preview stream.

        A no-op when already open and healthy. After an asynchronous device
        failure the device is closed and opened again.

        Raises:
            CameraUnavailable: If the device cannot be opened.
        """
        if self.is_open:
            return
        if self._open:
            logger.info("Reopening camera %s after failure", self._device.name)
            self.close()

        self._failed = False
        self._ready.clear()
        self._request.clear()
        self._slot.take()

        try:
            self._device.open(self)
        except CameraUnavailable:
            logger.error("Camera %s unavailable", self._device.name)
            raise
        except Exception as exc:
            logger.exception("Failed to open camera %s", self._device.name)
            raise CameraUnavailable(str(exc)) from exc

        self._open = True
        logger.info("Camera %s opened, waiting for preview stream", self._device.name)

    def close(self) -> None:
        """Stop the preview stream and release the device. Idempotent."""
        if not self._open:
            return
        self._open = False
        self._failed = False
        self._ready.clear()
        self._request.clear()
        self._slot.take()
        try:
            self._device.close()
        except Exception:
            logger.exception("Error closing camera %s", self._device.name)
        logger.info("Camera %s closed", self._device.name)

    # -----------------------------------------------------------------
    # Device callbacks (capture thread)
    # -----------------------------------------------------------------

    def on_ready(self) -> None:
        logger.info("Camera %s ready for capture", self._device.name)
        self._ready.set()

    def on_error(self, reason: str) -> None:
        logger.error("Camera %s failed: %s", self._device.name, reason)
        self._failed = True
        self._ready.clear()
        self._request.clear()

    def on_frame(self, raw: RawFrame) -> None:
        """
        Handle one preview frame.

        Only a frame arriving while a request is pending is kept; the
        request is consumed atomically, so concurrent deliveries can never
        both publish for a single request.
        """
        if not self._request.compare_and_set(True, False):
            return

        try:
            jpeg = self._encoder(raw.data, raw.width, raw.height)
        except EncodeFailure as exc:
            logger.warning("Dropping frame: %s", exc)
            return

        self._slot.publish(CapturedFrame(data=jpeg, encoded_at=time.time()))
        logger.debug("Published %d-byte frame (%dx%d)", len(jpeg), raw.width, raw.height)

    # -----------------------------------------------------------------
    # Loop side
    # -----------------------------------------------------------------

    def request_frame(self) -> bool:
        """
        Ask for the next preview frame to be kept.

        Returns:
            False (and nothing is requested) when the source is not ready.
        """
        if not self.is_ready:
            return False
        self._request.set()
        return True

    async def poll_frame(self, timeout_ms: int) -> Optional[CapturedFrame]:
        """
        Wait up to ``timeout_ms`` for a published frame.

        Returns:
            The frame, or None on timeout or when the source is not ready.
        """
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            if not self.is_ready:
                return None
            frame = self._slot.take()
            if frame is not None:
                return frame
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def capture(self, timeout_ms: int) -> Optional[CapturedFrame]:
        """Discard any stale frame, request a fresh one and wait for it."""
        self._slot.take()
        if not self.request_frame():
            return None
        return await self.poll_frame(timeout_ms)
