# =============================================================================
# Danger Monitor - Pipeline Orchestrator
# =============================================================================
# Provides the DangerMonitor class that owns the continuous
# capture -> encode -> analyze -> alert loop and its lifecycle:
#
#   Idle -> CameraWarming -> Running -> Stopping -> Idle
#
# Execution contexts:
#   - capture thread(s): owned by the camera device, feed FrameSource
#   - the loop task:     one asyncio task per run; suspends only while
#                        waiting for camera readiness, polling for a frame,
#                        sleeping between iterations, and while the blocking
#                        HTTP analysis runs in a worker thread
#   - alert timers:      owned by AlertSink, fire-and-forget
#
# Start/stop requests are serialized by one asyncio.Lock. Stopping is
# cooperative: the stop flag is observed at the top of every iteration,
# after the frame poll, and before/after the inter-iteration sleep. An
# in-flight analysis call is never preempted; it is bounded by its own
# timeout.
# =============================================================================

import asyncio
import functools
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from monitor.alert import AlertSink
from monitor.capture import CapturedFrame, FrameSource
from monitor.client import AnalysisClient
from monitor.devices import create_device
from monitor.errors import CameraNotReady, CameraUnavailable, CaptureTimeout, PreconditionError
from monitor.resolver import FallbackResolver
from monitor.settings import SettingsStore
from shared.schemas import AnalysisVerdict, LifecycleState, PipelineConfig

logger = logging.getLogger(__name__)


async def _wait_cancelled(cancel: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; return True as soon as ``cancel`` is set."""
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


def save_photo(photo_dir: str, jpeg: bytes) -> Path:
    """Write a JPEG as ``<photo_dir>/IMG_YYYYmmdd_HHMMSS.jpg`` and return its path."""
    directory = Path(photo_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"IMG_{datetime.now():%Y%m%d_%H%M%S}.jpg"
    path.write_bytes(jpeg)
    logger.info("Photo saved: %s", path)
    return path


class DangerMonitor:
    """
    Orchestrator for the continuous danger-analysis loop.

    At most one loop runs per instance. All public coroutines are safe to
    call at any time; they act according to the current lifecycle state.

    Args:
        source:             Frame source (opened lazily, closed on stop()).
        alert:              Alert sink used when danger is reported.
        client_factory:     Builds an AnalysisClient from an API key; called
                            once per run.
        settings:           Optional persisted-settings collaborator; when
                            present the enabled flag and API key are kept
                            up to date.
        photo_dir:          Where single captures are saved.
        ready_retries:      Camera readiness polls before giving up.
        ready_delay:        Seconds between readiness polls.
        capture_timeout_ms: How long to wait for a requested frame.
        miss_backoff:       Seconds to wait after a capture miss.
        error_backoff:      Seconds to wait after an unexpected error.
    """

    def __init__(
        self,
        source: FrameSource,
        alert: AlertSink,
        client_factory: Callable[[str], AnalysisClient] = AnalysisClient,
        settings: Optional[SettingsStore] = None,
        photo_dir: str = "photos",
        ready_retries: int = 20,
        ready_delay: float = 0.5,
        capture_timeout_ms: int = 3000,
        miss_backoff: float = 1.0,
        error_backoff: float = 2.0,
    ):
        self._source = source
        self._alert = alert
        self._client_factory = client_factory
        self._settings = settings
        self._photo_dir = photo_dir
        self._ready_retries = ready_retries
        self._ready_delay = ready_delay
        self._capture_timeout_ms = capture_timeout_ms
        self._miss_backoff = miss_backoff
        self._error_backoff = error_backoff

        self._lock = asyncio.Lock()
        self._state = LifecycleState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._single_task: Optional[asyncio.Task] = None
        self._cancel: Optional[asyncio.Event] = None
        self._client: Optional[AnalysisClient] = None
        self._last_verdict: Optional[AnalysisVerdict] = None

    # -----------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def camera_ready(self) -> bool:
        return self._source.is_ready

    @property
    def settings(self) -> Optional[SettingsStore]:
        return self._settings

    @property
    def last_verdict(self) -> Optional[AnalysisVerdict]:
        """Verdict of the most recent analysis, if any."""
        return self._last_verdict

    # -----------------------------------------------------------------
    # Control surface
    # -----------------------------------------------------------------

    async def start(self, config: PipelineConfig) -> bool:
        """
        Start the analysis loop.

        Returns:
            True if a new run was started; False if one is already active
            or the camera could not be opened.

        Raises:
            PreconditionError: If ``config.api_key`` is blank.
        """
        async with self._lock:
            if self._state in (LifecycleState.RUNNING, LifecycleState.CAMERA_WARMING):
                logger.warning("Continuous mode already running (state=%s)", self._state.value)
                return False

            if not config.api_key.strip():
                logger.error("API key not configured, cannot start continuous mode")
                raise PreconditionError("API key not configured")

            # The loop owns the frame slot from here on
            await self._cancel_single_capture()
            self._state = LifecycleState.CAMERA_WARMING
            try:
                self._source.open()
            except CameraUnavailable as exc:
                logger.error("Cannot start continuous mode, camera unavailable: %s", exc)
                self._state = LifecycleState.IDLE
                return False

            client = self._client_factory(config.api_key)
            self._client = client
            self._cancel = asyncio.Event()
            logger.info(
                "Starting continuous analysis with interval: %ds", config.interval_seconds
            )
            self._task = asyncio.create_task(self._run(config, client, self._cancel))
            return True

    async def start_continuous(self, config: PipelineConfig) -> bool:
        """Persist the API key, start the loop and record the enabled flag."""
        if self._settings is not None and config.api_key.strip():
            self._settings.set_api_key(config.api_key)
            logger.info("API key stored")
        started = await self.start(config)
        if started and self._settings is not None:
            self._settings.set_enabled(True)
        return started

    async def stop(self) -> None:
        """Stop the loop, close the camera and release the alert sink."""
        await self._halt(release=True)

    async def stop_continuous(self) -> None:
        """Stop the loop only; the camera stays open for later runs."""
        await self._halt(release=False)

    async def request_single_capture(self) -> Optional[Path]:
        """
        Capture one frame and save it as a JPEG.

        Only honored while no continuous run is active, so a single
        capture never competes with the loop for the frame slot. The
        capture runs as its own task outside the transition lock; start(),
        stop() and stop_continuous() cancel it.

        Returns:
            The saved file's path, or None when nothing was captured.
        """
        async with self._lock:
            if self._state is not LifecycleState.IDLE:
                logger.warning("Continuous mode active, single capture skipped")
                return None
            if self._single_task is not None and not self._single_task.done():
                logger.warning("Single capture already in progress, skipped")
                return None
            task = asyncio.create_task(self._single_capture())
            self._single_task = task

        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                task.cancel()
        if task.cancelled():
            logger.info("Single capture cancelled")
            return None
        return task.result()

    def play_test_tone(self) -> None:
        self._alert.play_test_tone()

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    async def _single_capture(self) -> Optional[Path]:
        try:
            self._source.open()
        except CameraUnavailable as exc:
            logger.error("Single capture failed, camera unavailable: %s", exc)
            return None

        try:
            await self._await_camera(asyncio.Event())
        except CameraNotReady as exc:
            logger.error("Single capture failed: %s", exc)
            return None

        frame = await self._source.capture(self._capture_timeout_ms)
        if frame is None:
            logger.error("Single capture failed: no frame within %d ms", self._capture_timeout_ms)
            return None
        logger.info("Photo capture triggered")
        return await asyncio.to_thread(save_photo, self._photo_dir, frame.data)

    async def _cancel_single_capture(self) -> None:
        """Cancel a pending single capture and wait for it to unwind. Caller holds the lock."""
        task, self._single_task = self._single_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})

    async def _halt(self, release: bool) -> None:
        async with self._lock:
            await self._cancel_single_capture()
            task = self._task
            stopped = False
            if task is not None and not task.done():
                logger.info("Stopping continuous analysis")
                self._state = LifecycleState.STOPPING
                self._cancel.set()
                self._client = None
                # Cooperative: an in-flight analysis call finishes first
                await asyncio.wait({task})
                if not task.cancelled() and task.exception() is not None:
                    logger.error("Analysis loop failed", exc_info=task.exception())
                stopped = True

            self._task = None
            self._client = None
            if release:
                self._source.close()
                self._alert.release()
            self._state = LifecycleState.IDLE

        if stopped and self._settings is not None:
            self._settings.set_enabled(False)

    async def _await_camera(self, cancel: asyncio.Event) -> None:
        """
        Poll the camera's readiness signal.

        Returns early when ``cancel`` is set.

        Raises:
            CameraNotReady: If the camera is still not ready after all retries.
        """
        for _ in range(self._ready_retries):
            if self._source.is_ready or cancel.is_set():
                return
            if await _wait_cancelled(cancel, self._ready_delay):
                return
        if not self._source.is_ready:
            raise CameraNotReady(self._ready_retries, self._ready_delay)

    async def _capture_frame(self) -> CapturedFrame:
        frame = await self._source.capture(self._capture_timeout_ms)
        if frame is None:
            raise CaptureTimeout(self._capture_timeout_ms)
        return frame

    def _recover_camera(self) -> None:
        """Reopen the camera if it failed asynchronously since the last capture."""
        if self._source.is_open:
            return
        try:
            self._source.open()
        except CameraUnavailable as exc:
            logger.error("Camera still unavailable: %s", exc)

    def _dispatch_alert(self) -> None:
        try:
            self._alert.play_danger_alert()
        except Exception:
            logger.exception("Failed to dispatch danger alert")

    async def _run(
        self, config: PipelineConfig, client: AnalysisClient, cancel: asyncio.Event
    ) -> None:
        try:
            try:
                await self._await_camera(cancel)
            except CameraNotReady as exc:
                logger.error("Fatal capture failure: %s", exc)
                self._source.close()
                return
            if cancel.is_set():
                return

            self._state = LifecycleState.RUNNING
            logger.info("Camera ready, starting analysis loop")
            await self._analysis_loop(config, client, cancel)
        finally:
            client.close()
            if not cancel.is_set():
                # Ended on its own (camera never became ready)
                self._client = None
                self._state = LifecycleState.IDLE
                if self._settings is not None:
                    self._settings.set_enabled(False)
            logger.info("Analysis loop ended")

    async def _analysis_loop(
        self, config: PipelineConfig, client: AnalysisClient, cancel: asyncio.Event
    ) -> None:
        interval = float(config.interval_seconds)

        while not cancel.is_set():
            try:
                # 1. Capture a fresh frame
                frame = await self._capture_frame()
                if cancel.is_set():
                    break
                logger.debug("Captured image: %d bytes", len(frame.data))

                # 2. Remote analysis (blocking HTTP, off the event loop)
                verdict = await asyncio.to_thread(client.analyze, frame.data)
                self._last_verdict = verdict
                if verdict.error is not None:
                    logger.warning("Analysis failed: %s", verdict.error)
                else:
                    logger.info(
                        "Analysis result: is_danger=%s, response=%s",
                        verdict.is_danger,
                        verdict.raw_answer,
                    )

                # 3. Alert
                if verdict.is_danger:
                    logger.warning("DANGER DETECTED!")
                    self._dispatch_alert()

                # 4. Interval
                if cancel.is_set():
                    break
                if await _wait_cancelled(cancel, interval):
                    break

            except CaptureTimeout as exc:
                logger.warning("Failed to capture image (%s), retrying...", exc)
                self._recover_camera()
                if await _wait_cancelled(cancel, self._miss_backoff):
                    break
            except Exception:
                logger.exception("Error in analysis loop")
                if await _wait_cancelled(cancel, self._error_backoff):
                    break


def build_monitor(
    config,
    settings: Optional[SettingsStore] = None,
    device_kind: Optional[str] = None,
) -> DangerMonitor:
    """
    Assemble a DangerMonitor from the global Config.

    Args:
        config:      The Config instance.
        settings:    Persisted settings; opened from ``config.settings_path``
                     when omitted.
        device_kind: Overrides ``config.camera_device``.

    Returns:
        DangerMonitor: Idle monitor ready to start.
    """
    device = create_device(device_kind or config.camera_device, config)
    source = FrameSource(
        device,
        poll_interval=config.frame_poll_ms / 1000.0,
        jpeg_quality=config.jpeg_quality,
    )
    alert = AlertSink(
        tone_ms=config.alert_tone_ms,
        gap_ms=config.alert_gap_ms,
        repeats=config.alert_repeats,
        frequency_hz=config.alert_frequency_hz,
    )
    client_factory = functools.partial(
        AnalysisClient,
        api_url=config.api_url,
        model=config.model,
        max_tokens=config.max_tokens,
        timeout=config.request_timeout_seconds,
        resolver=FallbackResolver.with_doh(config.doh_url, config.doh_timeout_seconds),
    )
    return DangerMonitor(
        source=source,
        alert=alert,
        client_factory=client_factory,
        settings=settings or SettingsStore(config.settings_path),
        photo_dir=config.photo_dir,
        ready_retries=config.ready_retries,
        ready_delay=config.ready_delay_ms / 1000.0,
        capture_timeout_ms=config.capture_timeout_ms,
        miss_backoff=config.miss_backoff_ms / 1000.0,
        error_backoff=config.error_backoff_ms / 1000.0,
    )
