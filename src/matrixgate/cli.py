"""Command-line interface for matrixgate.

Provides the entry point that loads configuration and starts the HTTP
control server.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="matrixgate",
        description="Authenticated HTTP control for a telnet video matrix",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/matrixgate.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP control server")
    serve_parser.add_argument("--host", type=str, default=None, help="Override server.host")
    serve_parser.add_argument("--port", type=int, default=None, help="Override server.port")
    serve_parser.add_argument(
        "--no-connect", action="store_true",
        help="Do not connect to the matrix at startup",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the matrixgate CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from matrixgate.config.settings import load_settings
    from matrixgate.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        import uvicorn
        from matrixgate.server import create_app

        if args.host:
            settings.server.host = args.host
        if args.port:
            settings.server.port = args.port

        logger.info("Starting matrix control server")
        app = create_app(settings=settings, connect_on_startup=not args.no_connect)
        uvicorn.run(
            app,
            host=settings.server.host,
            port=settings.server.port,
            log_config=None,
        )


if __name__ == "__main__":
    main()
