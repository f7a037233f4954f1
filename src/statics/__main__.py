"""Serve a directory with pre-compressed variants.

Usage:
    python -m statics ./public --port 8000
"""

import argparse
import asyncio
import logging
from pathlib import Path

import uvloop
from granian.server.embed import Server

from .file_server import DEFAULT_COMPRESSIBLE_CONTENT_LENGTH, file_server

logger = logging.getLogger("statics")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="statics",
        description="Serve a directory over HTTP with pre-compressed variants.",
    )
    parser.add_argument(
        "directory", nargs="?", type=Path, default=Path(), help="default: ."
    )
    parser.add_argument("--address", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--compressible-content-length",
        type=int,
        default=DEFAULT_COMPRESSIBLE_CONTENT_LENGTH,
        help="minimum file size in bytes to pre-compress",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args(argv)


async def serve(args: argparse.Namespace) -> None:
    """Runtime for the RSGI-app."""
    app = file_server(
        args.directory,
        compressible_content_length=args.compressible_content_length,
    )
    logger.info("serving %s on http://%s:%d", args.directory, args.address, args.port)
    server = Server(app, address=args.address, port=args.port, log_access=True)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await server.shutdown()


def main(argv: list[str] | None = None) -> None:
    """Script entrypoint"""
    args = _parse_args(argv)
    logging.basicConfig(level=args.log_level)
    uvloop.run(serve(args))


if __name__ == "__main__":
    main()
