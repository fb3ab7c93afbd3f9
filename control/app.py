# =============================================================================
# Danger Monitor - FastAPI Control Application
# =============================================================================
# Defines the local HTTP control surface of the monitor: start and pause
# continuous danger analysis, stop the monitor (closing the camera), take a
# single photo, play a test tone, and report status. The DangerMonitor runs
# on the server's event loop; every endpoint only asks it for a transition
# and returns once the request has been acted on.
# =============================================================================

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from config import get_config
from monitor.errors import PreconditionError
from monitor.pipeline import DangerMonitor, build_monitor
from shared.schemas import (
    CaptureResponse,
    LifecycleState,
    PipelineConfig,
    StartRequest,
    StatusResponse,
)

logger = logging.getLogger(__name__)


def _monitor(request: Request) -> DangerMonitor:
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Monitor not initialized yet")
    return monitor


def _status(monitor: DangerMonitor) -> StatusResponse:
    settings = monitor.settings
    return StatusResponse(
        status="ok",
        state=monitor.state,
        camera_ready=monitor.camera_ready,
        configured=settings.is_configured() if settings is not None else False,
        enabled=settings.is_enabled() if settings is not None else False,
    )


def create_app(
    monitor: Optional[DangerMonitor] = None,
    device_kind: Optional[str] = None,
) -> FastAPI:
    """
    Build the control application.

    Args:
        monitor:     Pre-built monitor (tests); built from get_config()
                     during startup when omitted.
        device_kind: Camera device override used when building the monitor.

    Returns:
        FastAPI: The application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan handler — creates and tears down the monitor.

        On shutdown any running loop is stopped and the camera closed.
        """
        app.state.monitor = monitor or build_monitor(get_config(), device_kind=device_kind)
        logger.info("Control server ready — monitor is %s.", app.state.monitor.state.value)
        yield

        logger.info("Shutting down control server...")
        await app.state.monitor.stop()

    app = FastAPI(
        title="Danger Monitor Control",
        description=(
            "Local control surface for the wearable danger monitor: starts and "
            "stops continuous VLM danger analysis, takes single photos, and "
            "reports pipeline status."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.get("/health", response_model=StatusResponse)
    def health_check(request: Request):
        """Report lifecycle state, camera readiness and stored settings."""
        return _status(_monitor(request))

    @app.post("/api/v1/monitor/start", response_model=StatusResponse)
    async def start_monitor(request: Request, body: Optional[StartRequest] = None):
        """
        Start continuous danger analysis.

        Missing fields fall back to the persisted settings; a supplied API
        key is stored for later runs.
        """
        monitor = _monitor(request)
        body = body or StartRequest()
        stored = monitor.settings.snapshot() if monitor.settings is not None else PipelineConfig()
        config = PipelineConfig(
            api_key=body.api_key if body.api_key is not None else stored.api_key,
            interval_seconds=body.interval_seconds or stored.interval_seconds,
        )

        try:
            started = await monitor.start_continuous(config)
        except PreconditionError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

        if not started and monitor.state not in (
            LifecycleState.RUNNING,
            LifecycleState.CAMERA_WARMING,
        ):
            raise HTTPException(status_code=409, detail="Monitor could not be started")
        return _status(monitor)

    @app.post("/api/v1/monitor/pause", response_model=StatusResponse)
    async def pause_monitor(request: Request):
        """Stop continuous analysis but keep the camera open."""
        monitor = _monitor(request)
        await monitor.stop_continuous()
        return _status(monitor)

    @app.post("/api/v1/monitor/stop", response_model=StatusResponse)
    async def stop_monitor(request: Request):
        """Stop continuous analysis, close the camera and release audio."""
        monitor = _monitor(request)
        await monitor.stop()
        return _status(monitor)

    @app.post("/api/v1/capture", response_model=CaptureResponse)
    async def capture_photo(request: Request):
        """Take a single photo and save it to the photo directory."""
        path = await _monitor(request).request_single_capture()
        if path is None:
            raise HTTPException(status_code=409, detail="No photo captured")
        return CaptureResponse(saved=True, path=str(path))

    @app.post("/api/v1/alert/test")
    def test_alert(request: Request):
        """Play a single short beep through the alert sink."""
        _monitor(request).play_test_tone()
        return {"status": "ok"}

    return app


app = create_app()
