"""Command-line entry point: `python -m panelsync`.

Starts a panel server with a `LoggingBridge` and runs until interrupted.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from . import logger
from .config import CONFIG_ENV_VAR, load_config
from .exceptions import ConfigError
from .server import PanelServer


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="panelsync", description="Serve a live server-state tree to web dashboards.")
    parser.add_argument("--config", help=f"JSON configuration file (default: ${CONFIG_ENV_VAR})")
    parser.add_argument("--host", help="interface to listen on")
    parser.add_argument("--port", type=int, help="port to listen on")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


async def _serve(server: PanelServer) -> None:
    async with server:
        await server.wait_closed()


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"{e}")
        return 2
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port

    try:
        asyncio.run(_serve(PanelServer(config)))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down.")
    except OSError as e:
        logger.error(f"Could not start panel server: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
