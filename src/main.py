"""
LED Controller Provisioning Server - Main Entry Point
"""

import argparse
import asyncio
import signal
import sys
import logging
from pathlib import Path
import os

import yaml

from config_loader import DEFAULT_CONFIG_PATH, get_sample_config
from services.provisioning_server import ProvisioningServer

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Put LED controllers on the home network")
    parser.add_argument('--config', default=os.environ.get('CONFIG_FILE', DEFAULT_CONFIG_PATH),
                        help="YAML configuration file (default: $CONFIG_FILE or config/config.yaml)")
    parser.add_argument('--print-sample-config', action='store_true',
                        help="Print a sample configuration and exit")
    return parser.parse_args(argv)


async def run(config_path: str) -> int:
    """Run the server until SIGINT/SIGTERM"""
    server = ProvisioningServer(config_path=config_path)
    serve_task = asyncio.create_task(server.start())

    def request_stop(sig: signal.Signals):
        logger.info(f"Received signal {sig.name}, shutting down...")
        # Stopping ends the API server, which lets start() return
        asyncio.ensure_future(server.stop())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)

    try:
        await serve_task
    except Exception as e:
        logger.error(f"Server failed: {e}")
        return 1
    finally:
        await server.stop()
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.print_sample_config:
        yaml.safe_dump(get_sample_config(), sys.stdout, sort_keys=False)
        return 0

    logger.info(f"Using configuration file: {args.config}")
    Path("logs").mkdir(exist_ok=True)
    try:
        return asyncio.run(run(args.config))
    except KeyboardInterrupt:
        print("\nServer stopped by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
