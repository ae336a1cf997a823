"""
Command line entry point.

    pgany --bind-address tcp://127.0.0.1:5432 --log-level debug
    python -m pgany -B unix:///tmp/.s.PGSQL.5432
"""

import argparse
import asyncio
import os
import sys

import structlog

from . import __version__
from .errors import ConfigurationError
from .executor import StaticExecutor
from .logging_config import configure_logging
from .server import DEFAULT_BIND_ADDRESS, PGWireServer

logger = structlog.get_logger()

EXIT_CONFIG_ERROR = 1
EXIT_SERVER_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgany",
        description="Create PostgreSQL wire protocol-compatible servers",
    )
    parser.add_argument(
        "-B", "--bind-address",
        default=os.getenv("PGANY_BIND_ADDRESS", DEFAULT_BIND_ADDRESS),
        help="Address to bind the PG protocol server (tcp://host:port or unix:///path)",
    )
    parser.add_argument(
        "-L", "--log-level",
        default=os.getenv("PGANY_LOG_LEVEL", "info"),
        help="Server log level (trace, debug, info, warning, error, critical)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def serve(server: PGWireServer):
    try:
        await server.serve_forever()
    finally:
        await server.stop()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        configure_logging(args.log_level)
        server = PGWireServer(args.bind_address, StaticExecutor())
    except ConfigurationError as e:
        print(f"pgany: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        asyncio.run(serve(server))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except OSError as e:
        logger.error("Server failed", error=str(e), address=args.bind_address)
        return EXIT_SERVER_ERROR
    return 0


if __name__ == "__main__":
    sys.exit(main())
