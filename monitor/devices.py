# =============================================================================
# Danger Monitor - Camera Devices
# =============================================================================
# Concrete CameraDevice implementations. Each device runs a repeating
# low frame-rate preview on a dedicated daemon thread (the capture thread)
# and delivers every frame as an I420 planar buffer to its listener:
#
#   - ScreenCaptureDevice: grabs a monitor with mss, for desktop dry runs
#     where the screen stands in for the wearable camera.
#   - SyntheticCameraDevice: flat gray frames after a warm-up delay, for
#     tests and offline runs.
# =============================================================================

import logging
import threading
from typing import Optional

import mss
import numpy as np
from PIL import Image

from monitor.capture import FrameListener, RawFrame
from monitor.errors import CameraUnavailable

logger = logging.getLogger(__name__)


def rgb_to_i420(image: Image.Image) -> bytes:
    """
    Convert a PIL RGB image into an I420 planar buffer.

    Odd dimensions are cropped by one pixel so the chroma planes are exactly
    quarter size. Chroma is subsampled by averaging each 2x2 block.

    Args:
        image: PIL image in any mode convertible to YCbCr.

    Returns:
        bytes: Y plane, then U (Cb) plane, then V (Cr) plane.
    """
    width = image.width - image.width % 2
    height = image.height - image.height % 2
    if (width, height) != image.size:
        image = image.crop((0, 0, width, height))

    ycbcr = np.asarray(image.convert("YCbCr"), dtype=np.uint8)
    y = ycbcr[:, :, 0]

    def _subsample(plane: np.ndarray) -> np.ndarray:
        blocks = plane.reshape(height // 2, 2, width // 2, 2).astype(np.uint16)
        return (blocks.mean(axis=(1, 3)) + 0.5).astype(np.uint8)

    u = _subsample(ycbcr[:, :, 1])
    v = _subsample(ycbcr[:, :, 2])
    return y.tobytes() + u.tobytes() + v.tobytes()


class PreviewDevice:
    """
    Base class for devices that stream frames from a background thread.

    Subclasses implement ``_prepare`` (one-off session setup, run on the
    capture thread) and ``_grab`` (return one RawFrame). The listener gets
    ``on_ready`` once setup succeeds, then ``on_frame`` for every grab. A
    grab failure is reported via ``on_error`` and ends the stream.

    Args:
        fps: Preview frame rate.
    """

    name = "preview"

    def __init__(self, fps: float = 5.0):
        self._frame_interval = 1.0 / fps if fps > 0 else 0.2
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _prepare(self) -> None:
        pass

    def _grab(self) -> RawFrame:
        raise NotImplementedError

    def _teardown(self) -> None:
        pass

    def open(self, listener: FrameListener) -> None:
        """Start the preview loop in a background daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Preview thread for %s is already running.", self.name)
            return

        self._stop_event.clear()

        def _preview_loop():
            """Internal loop: grab -> listener -> wait -> repeat."""
            try:
                self._prepare()
            except Exception as exc:
                listener.on_error(f"session configuration failed: {exc}")
                return
            if self._stop_event.is_set():
                return

            listener.on_ready()
            logger.info(
                "Preview loop started for %s (interval=%.2fs)",
                self.name,
                self._frame_interval,
            )
            try:
                while not self._stop_event.is_set():
                    try:
                        frame = self._grab()
                    except Exception as exc:
                        listener.on_error(f"frame grab failed: {exc}")
                        break
                    listener.on_frame(frame)

                    # Sleep in small increments for responsive shutdown
                    self._stop_event.wait(timeout=self._frame_interval)
            finally:
                self._teardown()
            logger.info("Preview loop stopped for %s.", self.name)

        self._thread = threading.Thread(
            target=_preview_loop, name=f"capture-{self.name}", daemon=True
        )
        self._thread.start()

    def close(self) -> None:
        """Signal the preview loop to stop and wait for the thread to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
            logger.info("Preview thread for %s joined.", self.name)


class ScreenCaptureDevice(PreviewDevice):
    """
    Screen capture posing as a camera, using the mss library.

    Frames are downscaled to fit ``width`` x ``height`` (aspect preserved)
    before conversion to I420.

    Args:
        monitor_index: Index of the monitor to capture (1 = primary).
        width:         Maximum frame width.
        height:        Maximum frame height.
        fps:           Preview frame rate.
    """

    name = "screen"

    def __init__(
        self,
        monitor_index: int = 1,
        width: int = 1920,
        height: int = 1080,
        fps: float = 5.0,
    ):
        super().__init__(fps=fps)
        self._monitor_index = monitor_index
        self._max_size = (width, height)
        self._sct = None

    def open(self, listener: FrameListener) -> None:
        try:
            with mss.mss() as sct:
                monitor_count = len(sct.monitors) - 1
        except Exception as exc:
            raise CameraUnavailable(f"Screen capture unavailable: {exc}") from exc

        # mss monitor list: index 0 = all monitors combined, 1+ = individual
        if not 1 <= self._monitor_index <= monitor_count:
            raise CameraUnavailable(
                f"Monitor {self._monitor_index} not found ({monitor_count} available)"
            )
        super().open(listener)

    def _prepare(self) -> None:
        # mss handles are not shareable across threads; create on the capture thread
        self._sct = mss.mss()

    def _grab(self) -> RawFrame:
        raw = self._sct.grab(self._sct.monitors[self._monitor_index])

        # mss returns BGRA; convert to PIL Image then to RGB
        image = Image.frombytes("RGB", raw.size, raw.bgra, "raw", "BGRX")
        image.thumbnail(self._max_size)

        data = rgb_to_i420(image)
        width, height = image.width - image.width % 2, image.height - image.height % 2
        logger.debug("Grabbed screen frame: %dx%d", width, height)
        return RawFrame(data=data, width=width, height=height)

    def _teardown(self) -> None:
        if self._sct is not None:
            self._sct.close()
            self._sct = None


class SyntheticCameraDevice(PreviewDevice):
    """
    Camera stand-in producing flat gray frames.

    Args:
        width:      Frame width (even).
        height:     Frame height (even).
        fps:        Preview frame rate.
        warmup:     Seconds before the device reports ready.
        luma:       Gray level of the frames.
    """

    name = "synthetic"

    def __init__(
        self,
        width: int = 64,
        height: int = 48,
        fps: float = 5.0,
        warmup: float = 0.5,
        luma: int = 128,
    ):
        super().__init__(fps=fps)
        if width % 2 or height % 2:
            raise ValueError("Synthetic frame dimensions must be even")
        self._width = width
        self._height = height
        self._warmup = warmup
        chroma = (width // 2) * (height // 2)
        self._frame = RawFrame(
            data=bytes([luma]) * (width * height) + bytes([128]) * (2 * chroma),
            width=width,
            height=height,
        )
        self.frames_delivered = 0

    def _prepare(self) -> None:
        # Session configuration takes a moment on real hardware
        self._stop_event.wait(timeout=self._warmup)

    def _grab(self) -> RawFrame:
        self.frames_delivered += 1
        return self._frame


def create_device(kind: str, config) -> PreviewDevice:
    """
    Build the camera device named by ``kind`` from the global Config.

    Raises:
        ValueError: For an unknown device kind.
    """
    if kind == "screen":
        return ScreenCaptureDevice(
            monitor_index=config.capture_monitor,
            width=config.capture_width,
            height=config.capture_height,
            fps=config.preview_fps,
        )
    if kind == "synthetic":
        return SyntheticCameraDevice(fps=config.preview_fps)
    raise ValueError(f"Unknown camera device: {kind!r}")
