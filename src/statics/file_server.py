"""Precompressed static file server.

Files are read into memory and compressible ones pre-compressed (gzip and deflate)
at startup. Requests are served from the resulting immutable routing table,
negotiating Content-Encoding per request, or falling back to conditional and
Range-aware serving of the uncompressed bytes.

Install with: uv add statics
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
import posixpath
import stat
import time
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING

from .accept_encoding import parse_accept_encoding
from .content import http_date, not_found, serve_content
from .sniff import SNIFF_LENGTH, detect_content_type

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from .rsgi import HTTPProtocol, HTTPScope, HTTPStreamTransport, RSGIHTTPHandler

try:
    from cramjam import (
        gzip,  # ty: ignore[unresolved-import]  # fixed in cramjam >2.11
        zlib,  # ty: ignore[unresolved-import]  # fixed in cramjam >2.11
    )
except ImportError as e:
    msg = "statics requires cramjam. Install with: uv add cramjam"
    raise ImportError(msg) from e


DEFAULT_COMPRESSIBLE_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/atom+xml",
        "application/javascript",
        "application/json",
        "application/rss+xml",
        "application/x-javascript",
        "image/svg+xml",
        "text/css",
        "text/html",
        "text/javascript",
        "text/plain",
    }
)
DEFAULT_COMPRESSIBLE_CONTENT_LENGTH = 1024
DEFAULT_INDEX = "index.html"

# "deflate" is the zlib format per RFC 9110 section 8.4.1.2
_COMPRESSORS = {"gzip": gzip, "deflate": zlib}

# Max compression levels for each encoding
_MAX_LEVELS: dict[str, int] = {"gzip": 9, "deflate": 9}

_VARY = ("vary", "accept-encoding")


@dataclass(frozen=True, slots=True)
class Config:
    """File server options, fixed when the routing table is built."""

    compressible_content_types: frozenset[str] = DEFAULT_COMPRESSIBLE_CONTENT_TYPES
    compressible_content_length: int = DEFAULT_COMPRESSIBLE_CONTENT_LENGTH
    not_found: RSGIHTTPHandler = field(default=not_found)
    index: str = DEFAULT_INDEX

    def __post_init__(self) -> None:
        # Membership is tested on the bare, lower-cased media type
        object.__setattr__(
            self,
            "compressible_content_types",
            frozenset(_media_type(t) for t in self.compressible_content_types),
        )
        if self.compressible_content_length < 0:
            msg = (
                "compressible_content_length must be >= 0, "
                f"got {self.compressible_content_length}"
            )
            raise ValueError(msg)
        if not self.index or "/" in self.index:
            msg = f"index must be a file name, got {self.index!r}"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class Resource:
    """A file held in memory, with its pre-compressed variants."""

    name: str  # base name, e.g. "app.js"
    content_type: str
    body: bytes
    modtime: float  # POSIX seconds
    etag: str  # strong, quoted
    variants: Mapping[str, bytes]  # encoding -> compressed body
    compressible: bool


@dataclass(slots=True)
class _BuildStats:
    """Stats collected while indexing."""

    files_total: int = 0
    files_compressed: int = 0
    files_skipped: int = 0  # unreadable files
    original_bytes: int = 0
    compressed_bytes: int = 0  # total size of all compressed variants


def _compress(data: bytes, encoding: str) -> bytes:
    """Compress data with the given encoding at max level."""
    return bytes(_COMPRESSORS[encoding].compress(data, level=_MAX_LEVELS[encoding]))


def _get_content_type(path: Path, body: bytes) -> str:
    """Guess MIME type for a file by extension, else from its content."""
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or detect_content_type(body[:SNIFF_LENGTH])


def _media_type(content_type: str) -> str:
    """'text/plain; charset=utf-8' -> 'text/plain'."""
    return content_type.partition(";")[0].strip().lower()


def _is_compressible(content_type: str, size: int, config: Config) -> bool:
    return (
        size >= config.compressible_content_length
        and _media_type(content_type) in config.compressible_content_types
    )


def _load_resource(path: Path, config: Config) -> Resource | None:
    """Read a file and pre-compress it if eligible.

    Returns None for anything but a regular file (sockets, fifos, ...).
    Raises OSError if the file can't be read.
    """
    file_stat = path.stat()
    if not stat.S_ISREG(file_stat.st_mode):
        return None
    modtime = file_stat.st_mtime
    body = path.read_bytes()
    content_type = _get_content_type(path, body)
    compressible = _is_compressible(content_type, len(body), config)
    variants: dict[str, bytes] = {}
    if compressible:
        variants = {encoding: _compress(body, encoding) for encoding in _COMPRESSORS}
    return Resource(
        name=path.name,
        content_type=content_type,
        body=body,
        modtime=modtime,
        etag=f'"{hashlib.sha256(body).hexdigest()[:16]}"',
        variants=MappingProxyType(variants),
        compressible=compressible,
    )


def clean_path(path: str) -> str:
    """Return the shortest absolute path equivalent to path.

    Collapses duplicate slashes and "." and ".." segments, and drops any
    trailing slash except for the root.
    """
    if not path.startswith("/"):
        path = "/" + path
    cleaned = posixpath.normpath(path)
    # normpath keeps a leading "//" (implementation defined in POSIX)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _walk_files(directory: Path) -> Iterable[Path]:
    """Yield regular files under directory in lexical order.

    Unreadable subdirectories are skipped, an unreadable root raises.
    """

    def onerror(error: OSError) -> None:
        if error.filename is not None and Path(error.filename) == directory:
            raise error
        logger.debug("statics: skipping %s: %s", error.filename, error)

    # Symlinked directories aren't descended into, symlinked files are served
    for dirpath, dirnames, filenames in os.walk(directory, onerror=onerror):
        dirnames.sort()
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


def build_routing_table(
    directory: Path, config: Config
) -> Mapping[str, RSGIHTTPHandler]:
    """Walk directory and build an immutable URL path -> handler mapping.

    Every regular file is read into memory. Files that can't be read are left
    out. Files named ``config.index`` are served at their directory's path, and
    their own path redirects there.

    Raises:
        OSError: if directory can't be listed, e.g. FileNotFoundError or
            NotADirectoryError.
    """
    directory = Path(directory)
    table: dict[str, RSGIHTTPHandler] = {}
    stats = _BuildStats()

    start_time = time.perf_counter()
    for file_path in _walk_files(directory):
        try:
            resource = _load_resource(file_path, config)
        except OSError as e:
            stats.files_skipped += 1
            logger.debug("statics: skipping %s: %s", file_path, e)
            continue
        if resource is None:
            continue

        stats.files_total += 1
        stats.original_bytes += len(resource.body)
        if resource.variants:
            stats.files_compressed += 1
            stats.compressed_bytes += sum(len(v) for v in resource.variants.values())

        url_path = clean_path(file_path.relative_to(directory).as_posix())
        handler = partial(serve_resource, resource)
        dirname, filename = posixpath.split(url_path)
        if filename == config.index:
            table[dirname] = handler
            table[url_path] = redirect_to_directory
        else:
            table[url_path] = handler
    elapsed_ms = (time.perf_counter() - start_time) * 1000

    logger.info(
        "statics: %d files (%d compressed, %d skipped), "
        "%d bytes original, %d bytes compressed variants, %.1fms",
        stats.files_total,
        stats.files_compressed,
        stats.files_skipped,
        stats.original_bytes,
        stats.compressed_bytes,
        elapsed_ms,
    )

    return MappingProxyType(table)


def _select_encoding(
    accept_encoding: Iterable[str], variants: Mapping[str, bytes]
) -> str | None:
    """First encoding in the client's preference order that has a variant.

    Quality values only order the preferences; "gzip;q=0" still selects gzip.
    """
    for preference in parse_accept_encoding(*accept_encoding):
        if preference.algorithm in variants:
            return preference.algorithm
    return None


def _serve_uncompressed(
    resource: Resource, scope: HTTPScope, proto: HTTPProtocol
) -> None:
    serve_content(
        scope,
        proto,
        resource.name,
        resource.modtime,
        resource.body,
        [("content-type", resource.content_type), ("etag", resource.etag)],
    )


async def serve_resource(
    resource: Resource, scope: HTTPScope, proto: HTTPProtocol
) -> None:
    """Serve a pre-compressed variant of resource or its raw bytes.

    Compressed variants are never used for Range requests: a byte range of the
    compressed bytes means nothing for the original content.
    """
    if not resource.variants or scope.headers.get("range"):
        _serve_uncompressed(resource, scope, proto)
        return

    encoding = _select_encoding(
        scope.headers.get_all("accept-encoding"), resource.variants
    )
    if encoding is None:
        _serve_uncompressed(resource, scope, proto)
        return

    body = resource.variants[encoding]
    headers = [
        ("accept-ranges", "bytes"),
        ("last-modified", http_date(resource.modtime)),
        ("content-encoding", encoding),
        ("content-type", resource.content_type),
        ("content-length", str(len(body))),
    ]
    if scope.method == "HEAD":
        proto.response_empty(200, headers)
    else:
        proto.response_bytes(200, headers, body)


async def redirect_to_directory(scope: HTTPScope, proto: HTTPProtocol) -> None:
    """Redirect a request for the index file to its directory."""
    location = "./"
    if scope.query_string:
        location += "?" + scope.query_string
    proto.response_empty(301, [("location", location)])


class _VaryHTTPProtocol:
    """Wraps HTTPProtocol to add ``vary: accept-encoding`` to the response."""

    __slots__ = ("_proto",)

    def __init__(self, proto: HTTPProtocol) -> None:
        self._proto = proto

    async def __call__(self) -> bytes:
        return await self._proto()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._proto.__aiter__()

    async def client_disconnect(self) -> None:
        await self._proto.client_disconnect()

    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None:
        self._proto.response_empty(status, [_VARY, *headers])

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self._proto.response_str(status, [_VARY, *headers], body)

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None:
        self._proto.response_bytes(status, [_VARY, *headers], body)

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None:
        self._proto.response_file(status, [_VARY, *headers], file)

    def response_file_range(
        self,
        status: int,
        headers: list[tuple[str, str]],
        file: str,
        start: int,
        end: int,
    ) -> None:
        self._proto.response_file_range(status, [_VARY, *headers], file, start, end)

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> HTTPStreamTransport:
        return self._proto.response_stream(status, [_VARY, *headers])


def file_server(
    directory: Path | str,
    *,
    compressible_content_types: Iterable[str] = DEFAULT_COMPRESSIBLE_CONTENT_TYPES,
    compressible_content_length: int = DEFAULT_COMPRESSIBLE_CONTENT_LENGTH,
    not_found: RSGIHTTPHandler = not_found,
    index: str = DEFAULT_INDEX,
) -> RSGIHTTPHandler:
    """Create an RSGI app serving directory from memory.

    Every file is read and, when compressible, pre-compressed with gzip and
    deflate before this returns. Changes to the directory afterwards aren't
    picked up.

    Args:
        directory: Path to the directory to serve
        compressible_content_types: MIME types (without parameters) that get
            compressed variants. Default: DEFAULT_COMPRESSIBLE_CONTENT_TYPES
        compressible_content_length: Minimum size in bytes for a file to be
            compressed. Default: 1024
        not_found: Handler for paths that don't map to a file. Default: plain
            text 404
        index: File name served for its directory. "<dir>/index.html" redirects
            to "<dir>/". Default: "index.html"

    Returns:
        RSGI HTTP handler

    Raises:
        OSError: if directory can't be listed.

    Example:
        from granian.server.embed import Server
        from statics import file_server

        app = file_server("./public", compressible_content_length=512)
        await Server(app, address="127.0.0.1", port=8000).serve()
    """
    config = Config(
        compressible_content_types=frozenset(compressible_content_types),
        compressible_content_length=compressible_content_length,
        not_found=not_found,
        index=index,
    )
    routes = build_routing_table(Path(directory), config)
    not_found_handler = config.not_found

    async def app(scope: HTTPScope, proto: HTTPProtocol) -> None:
        """RSGI handler for serving the indexed files."""
        handler = routes.get(clean_path(scope.path))
        if handler is None:
            await not_found_handler(scope, proto)
            return
        await handler(scope, _VaryHTTPProtocol(proto))

    return app
