# =============================================================================
# Danger Monitor - Foreground Runner
# =============================================================================
# Entry point for running the monitor in the foreground. Loads persisted
# settings, applies command-line overrides, and either starts continuous
# danger analysis (until Ctrl+C) or takes a single photo.
# =============================================================================

import argparse
import asyncio
import logging
import sys

from config import get_config
from monitor.errors import PreconditionError
from monitor.pipeline import DangerMonitor, build_monitor
from monitor.settings import SettingsStore
from shared.schemas import PipelineConfig

logger = logging.getLogger(__name__)


def _print_banner(config, pipeline_config: PipelineConfig, device_kind: str) -> None:
    print("\n" + "=" * 60)
    print("  Danger Monitor — continuous capture-analyze-alert")
    print("=" * 60)
    print(f"  Interval    : {pipeline_config.interval_seconds}s")
    print(f"  Camera      : {device_kind}")
    print(f"  Model       : {config.model}")
    print(f"  Endpoint    : {config.api_url}")
    print(f"  Settings    : {config.settings_path}")
    print("=" * 60 + "\n")


async def run_continuous(monitor: DangerMonitor, pipeline_config: PipelineConfig) -> int:
    """
    Run the analysis loop until the process is interrupted.

    Returns:
        Process exit code.
    """
    try:
        started = await monitor.start_continuous(pipeline_config)
    except PreconditionError as exc:
        logger.error("%s. Pass --api-key or store one in the settings file.", exc)
        return 1
    if not started:
        logger.error("Continuous analysis could not be started.")
        return 1

    logger.info("Danger detection active — press Ctrl+C to stop.")
    try:
        await asyncio.Event().wait()
    finally:
        await monitor.stop()
    return 0


async def run_single(monitor: DangerMonitor) -> int:
    """Take one photo and exit."""
    try:
        path = await monitor.request_single_capture()
    finally:
        await monitor.stop()
    if path is None:
        return 1
    print(f"Saved {path}")
    return 0


def main():
    """CLI entry point for the foreground monitor."""
    parser = argparse.ArgumentParser(
        description="Danger Monitor — capture frames, ask a VLM about danger, alert",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--api-key", type=str, default=None,
        help="Inference API key (stored in the settings file)",
    )
    parser.add_argument(
        "--interval", type=int, default=None,
        help="Seconds between analyses, minimum 2 (overrides settings)",
    )
    parser.add_argument(
        "--device", type=str, choices=("screen", "synthetic"), default=None,
        help="Camera device (overrides config)",
    )
    parser.add_argument(
        "--single", action="store_true",
        help="Capture and save a single photo, then exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()
    settings = SettingsStore(config.settings_path)
    device_kind = args.device or config.camera_device

    stored = settings.snapshot()
    pipeline_config = PipelineConfig(
        api_key=args.api_key if args.api_key is not None else stored.api_key,
        interval_seconds=(
            max(args.interval, 2) if args.interval is not None else stored.interval_seconds
        ),
    )

    monitor = build_monitor(config, settings=settings, device_kind=device_kind)

    if args.single:
        sys.exit(asyncio.run(run_single(monitor)))

    _print_banner(config, pipeline_config, device_kind)
    try:
        exit_code = asyncio.run(run_continuous(monitor, pipeline_config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received. Shutting down...")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
