# =============================================================================
# Danger Monitor - Control Server Entry Point
# =============================================================================
# CLI entry point for starting the FastAPI control server. The monitor itself
# is created inside the server's lifespan and runs on its event loop.
# =============================================================================

import argparse
import logging

import uvicorn

from config import get_config
from control.app import create_app


def main():
    """Parse CLI arguments, apply overrides, and start the control server."""
    parser = argparse.ArgumentParser(
        description="Danger Monitor — local control server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Server bind address")
    parser.add_argument("--port", type=int, default=None, help="Server bind port")
    parser.add_argument(
        "--device", type=str, choices=("screen", "synthetic"), default=None,
        help="Camera device (overrides config)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()

    if args.host is not None:
        config.control_host = args.host
    if args.port is not None:
        config.control_port = args.port
    if args.device is not None:
        config.camera_device = args.device

    config.control_url = f"http://{config.control_host}:{config.control_port}"

    print("\n" + "=" * 60)
    print("  Danger Monitor — Control Server")
    print("=" * 60)
    print(f"  Camera     : {config.camera_device}")
    print(f"  Model      : {config.model}")
    print(f"  Settings   : {config.settings_path}")
    print(f"  Photos     : {config.photo_dir}")
    print(f"  Listening  : {config.control_url}")
    print("=" * 60 + "\n")

    uvicorn.run(
        create_app(device_kind=config.camera_device),
        host=config.control_host,
        port=config.control_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
