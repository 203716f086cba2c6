import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from ..app import create_app
from ..config import GatewayConfig, load_config

logger = logging.getLogger("runotepad")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def _apply_overrides(config: GatewayConfig, args: argparse.Namespace) -> GatewayConfig:
    if getattr(args, "host", None):
        config.host = args.host
    if getattr(args, "port", None):
        config.port = int(args.port)
    if getattr(args, "static_dir", None):
        config.static_dir = Path(args.static_dir)
    if getattr(args, "shell", None):
        config.shell = args.shell
    if getattr(args, "log_level", None):
        config.log_level = args.log_level.upper()
    return config


def serve(config: GatewayConfig) -> None:
    logger.info("===========================================")
    logger.info("  Runotepad - Interactive Runbook Server")
    logger.info("===========================================")
    logger.info("Shell: %s", config.shell)
    logger.info("Starting server at http://%s:%d", config.host, config.port)
    logger.info("Access with token: http://127.0.0.1:%d/?token=%s", config.port, config.token)

    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(prog="runotepad", description="Runotepad terminal gateway")
    parser.add_argument("--config", default=None, help="Path to config.json (default: ~/.runotepad/config.json)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # runotepad serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/websocket server")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: 8080)")
    serve_parser.add_argument("--static-dir", default=None, help="Directory with the web frontend")
    serve_parser.add_argument("--shell", default=None, help="Shell to spawn for each session")
    serve_parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")

    # runotepad token
    subparsers.add_parser("token", help="Print the access token, creating one if needed")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config_path = Path(args.config).expanduser() if args.config else None
    config = _apply_overrides(asyncio.run(load_config(config_path=config_path)), args)

    if args.command == "token":
        print(config.token)
        return

    setup_logging(config.log_level)
    try:
        serve(config)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
