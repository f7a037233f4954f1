# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "statics",
#     "granian[uvloop]>=2.6.0,<3.0.0",
#     "httpx>=0.28.1,<0.29.0",
# ]
#
# [tool.uv.sources]
# statics = { path = "../", editable = true }
# ///
"""File server demo.

Demonstrates:
- Pre-compression at startup (gzip, deflate)
- Content negotiation based on Accept-Encoding
- Range requests served from the uncompressed bytes
- Directory index documents and the index redirect
"""

import asyncio
import logging
import sys
import tempfile
from pathlib import Path

import httpx
import uvloop
from granian.server.embed import Server

from statics import file_server
from statics.rsgi import RSGIHTTPHandler

ADDRESS = "127.0.0.1"
PORT = 8000


async def main() -> None:
    """Script entrypoint"""
    logging.basicConfig(level=logging.INFO)

    with tempfile.TemporaryDirectory() as tmpdir:
        site = Path(tmpdir)
        create_sample_files(site)

        # Reads and pre-compresses everything before returning
        app = file_server(site)

        task = asyncio.create_task(serve(app))
        await asyncio.sleep(0.1)
        await requests()
        task.cancel()


def create_sample_files(site: Path) -> None:
    """Create sample files for the demo."""
    (site / "index.html").write_text(
        "<!DOCTYPE html>\n<html><body><h1>statics</h1></body></html>\n"
        + "<!-- padding -->\n" * 100
    )
    (site / "styles.css").write_text(
        "body { font-family: system-ui, sans-serif; }\n" + "/* padding */\n" * 100
    )
    docs = site / "docs"
    docs.mkdir()
    (docs / "index.html").write_text("<html><body>docs</body></html>\n")

    # Binary file (non-compressible)
    (site / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 2048)


async def serve(app: RSGIHTTPHandler) -> None:
    """Runtime for the RSGI-app."""
    server = Server(app, address=ADDRESS, port=PORT, log_access=True)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await server.shutdown()


def show(label: str, response: httpx.Response) -> None:
    print(label, file=sys.stderr)
    print(f"  Status: {response.status_code}", file=sys.stderr)
    for name in ("content-encoding", "content-length", "content-range", "location"):
        if name in response.headers:
            print(f"  {name}: {response.headers[name]}", file=sys.stderr)
    print(file=sys.stderr)


async def requests() -> None:
    """Make requests demonstrating content negotiation."""
    base_url = f"http://{ADDRESS}:{PORT}"

    async with httpx.AsyncClient(base_url=base_url) as client:
        print("--- Content negotiation demo ---", file=sys.stderr)
        for accept_encoding in ("gzip", "deflate;q=0.9, gzip;q=0.5", "identity"):
            response = await client.get(
                "/styles.css", headers={"accept-encoding": accept_encoding}
            )
            show(f"Accept-Encoding: {accept_encoding}", response)

        response = await client.get("/logo.png", headers={"accept-encoding": "gzip"})
        show("Binary file, Accept-Encoding: gzip", response)

        response = await client.get("/styles.css", headers={"range": "bytes=0-9"})
        show("Range: bytes=0-9", response)

        response = await client.get("/docs/")
        show("GET /docs/", response)

        response = await client.get("/docs/index.html")
        show("GET /docs/index.html", response)

        response = await client.get("/missing")
        show("GET /missing", response)


if __name__ == "__main__":
    uvloop.run(main())
