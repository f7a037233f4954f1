"""Conditional and Range-aware responses for in-memory content.

Handles If-Match, If-Unmodified-Since, If-None-Match, If-Modified-Since and
If-Range preconditions (RFC 9110 section 13) and byte Range requests, including
multipart/byteranges for multiple ranges.
"""

from __future__ import annotations

import mimetypes
import re
import secrets
from dataclasses import dataclass
from datetime import UTC
from email.utils import formatdate, parsedate_to_datetime
from typing import TYPE_CHECKING

from .sniff import detect_content_type

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .rsgi import HTTPProtocol, HTTPScope

_DIGITS = re.compile(r"\d+")


@dataclass(frozen=True, slots=True)
class ByteRange:
    start: int
    length: int

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.start + self.length - 1}/{size}"


class RangeError(ValueError):
    """Raised for a malformed or unsatisfiable Range header."""


class _Headers:
    """Ordered response headers with case-insensitive names."""

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[tuple[str, str]] = ()) -> None:
        self._items: list[tuple[str, str]] = [(k.lower(), v) for k, v in items]

    def get(self, name: str) -> str | None:
        for key, value in self._items:
            if key == name:
                return value
        return None

    def set(self, name: str, value: str) -> None:
        self.delete(name)
        self._items.append((name, value))

    def delete(self, name: str) -> None:
        self._items = [(k, v) for k, v in self._items if k != name]

    def as_list(self) -> list[tuple[str, str]]:
        return list(self._items)


def http_date(timestamp: float) -> str:
    """Format a POSIX timestamp as an IMF-fixdate (RFC 9110 section 5.6.7)."""
    return formatdate(timestamp, usegmt=True)


def _parse_http_date(value: str) -> float | None:
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    # asctime and RFC 850 dates carry no zone, HTTP dates are always GMT
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return when.timestamp()


def _scan_etag(value: str) -> tuple[str, str] | None:
    """Return (etag, remainder) for the first entity-tag in value."""
    value = value.lstrip(" \t")
    start = 2 if value.startswith("W/") else 0
    if len(value) - start < 2 or value[start] != '"':
        return None
    # Characters in an etag are %x21 / %x23-7E / obs-text (%x80-FF)
    for i in range(start + 1, len(value)):
        c = value[i]
        if c == '"':
            return value[: i + 1], value[i + 1 :]
        if c == "!" or "#" <= c <= "~" or c >= "\x80":
            continue
        return None
    return None


def _etag_strong_match(a: str, b: str) -> bool:
    return a == b and a != "" and a[0] == '"'


def _etag_weak_match(a: str, b: str) -> bool:
    return a.removeprefix("W/") == b.removeprefix("W/")


def _etag_list_matches(header: str, etag: str | None, *, weak: bool) -> bool:
    """Whether a comma separated list of etags (or "*") matches etag."""
    while True:
        header = header.strip()
        if not header:
            return False
        if header[0] == ",":
            header = header[1:]
            continue
        if header[0] == "*":
            return True
        scanned = _scan_etag(header)
        if scanned is None:
            return False
        candidate, header = scanned
        if etag is None:
            continue
        if weak and _etag_weak_match(candidate, etag):
            return True
        if not weak and _etag_strong_match(candidate, etag):
            return True


def _is_zero_time(modtime: float) -> bool:
    return modtime <= 0


def _check_preconditions(
    scope: HTTPScope, headers: _Headers, modtime: float
) -> tuple[int | None, str]:
    """Evaluate conditional request headers.

    Returns (status, range_header); status is set when the request is fully
    answered by 304 or 412, range_header is empty when Range must be ignored.
    """
    request = scope.headers
    etag = headers.get("etag")
    seconds = int(modtime)

    # If-Match / If-Unmodified-Since
    if_match = request.get("if-match")
    if if_match is not None:
        if not _etag_list_matches(if_match, etag, weak=False):
            return 412, ""
    else:
        if_unmodified = request.get("if-unmodified-since")
        if if_unmodified and not _is_zero_time(modtime):
            since = _parse_http_date(if_unmodified)
            if since is not None and seconds > since:
                return 412, ""

    # If-None-Match / If-Modified-Since
    if_none_match = request.get("if-none-match")
    if if_none_match is not None:
        if _etag_list_matches(if_none_match, etag, weak=True):
            if scope.method in ("GET", "HEAD"):
                return 304, ""
            return 412, ""
    elif scope.method in ("GET", "HEAD"):
        if_modified = request.get("if-modified-since")
        if if_modified and not _is_zero_time(modtime):
            since = _parse_http_date(if_modified)
            if since is not None and seconds <= since:
                return 304, ""

    range_header = request.get("range") or ""
    if range_header and scope.method in ("GET", "HEAD"):
        if_range = request.get("if-range")
        if if_range and not _if_range_matches(if_range, etag, modtime):
            range_header = ""
    return None, range_header


def _if_range_matches(if_range: str, etag: str | None, modtime: float) -> bool:
    scanned = _scan_etag(if_range)
    if scanned is not None:
        return etag is not None and _etag_strong_match(scanned[0], etag)
    if _is_zero_time(modtime):
        return False
    when = _parse_http_date(if_range)
    return when is not None and when == int(modtime)


def parse_range(header: str, size: int) -> list[ByteRange]:
    """Parse a "bytes=" Range header against content of the given size.

    Ranges that start beyond the content are dropped; if that leaves none the
    header is unsatisfiable. Raises RangeError for malformed or unsatisfiable
    headers.
    """
    if not header:
        return []
    prefix = "bytes="
    if not header.startswith(prefix):
        msg = "invalid range"
        raise RangeError(msg)

    ranges: list[ByteRange] = []
    no_overlap = False
    for part in header[len(prefix) :].split(","):
        part = part.strip(" \t")
        if not part:
            continue
        first, dash, last = part.partition("-")
        if not dash:
            msg = "invalid range"
            raise RangeError(msg)
        first, last = first.strip(" \t"), last.strip(" \t")
        if not first:
            # suffix range, "-N" means the final N bytes
            if not _DIGITS.fullmatch(last):
                msg = "invalid range"
                raise RangeError(msg)
            suffix = min(int(last), size)
            ranges.append(ByteRange(size - suffix, suffix))
            continue
        if not _DIGITS.fullmatch(first):
            msg = "invalid range"
            raise RangeError(msg)
        start = int(first)
        if start >= size:
            # doesn't overlap the content, ignored unless no range overlaps
            no_overlap = True
            continue
        if not last:
            ranges.append(ByteRange(start, size - start))
            continue
        if not _DIGITS.fullmatch(last) or start > int(last):
            msg = "invalid range"
            raise RangeError(msg)
        end = min(int(last), size - 1)
        ranges.append(ByteRange(start, end - start + 1))

    if no_overlap and not ranges:
        msg = "invalid range: failed to overlap"
        raise RangeError(msg)
    return ranges


def _multipart_byteranges(
    ranges: list[ByteRange], content_type: str, body: bytes, boundary: str
) -> bytes:
    size = len(body)
    parts: list[bytes] = []
    for i, byte_range in enumerate(ranges):
        delimiter = f"--{boundary}\r\n" if i == 0 else f"\r\n--{boundary}\r\n"
        part_headers = (
            f"Content-Range: {byte_range.content_range(size)}\r\n"
            f"Content-Type: {content_type}\r\n\r\n"
        )
        parts.append((delimiter + part_headers).encode("latin-1"))
        parts.append(body[byte_range.start : byte_range.start + byte_range.length])
    parts.append(f"\r\n--{boundary}--\r\n".encode("latin-1"))
    return b"".join(parts)


def _send(
    scope: HTTPScope,
    proto: HTTPProtocol,
    status: int,
    headers: _Headers,
    body: bytes,
) -> None:
    if scope.method == "HEAD":
        proto.response_empty(status, headers.as_list())
    else:
        proto.response_bytes(status, headers.as_list(), body)


def _write_not_modified(proto: HTTPProtocol, headers: _Headers) -> None:
    # RFC 9110 section 15.4.5: no representation metadata on a 304
    for name in ("content-type", "content-length", "content-encoding"):
        headers.delete(name)
    if headers.get("etag") is not None:
        headers.delete("last-modified")
    proto.response_empty(304, headers.as_list())


def serve_content(
    scope: HTTPScope,
    proto: HTTPProtocol,
    name: str,
    modtime: float,
    body: bytes,
    headers: Iterable[tuple[str, str]] = (),
) -> None:
    """Respond with body, honouring conditional and Range request headers.

    Args:
        scope: The request scope
        proto: Protocol used to send the response
        name: File name, used to guess the content type when headers don't
            include one
        modtime: Last modification time (POSIX seconds). 0 disables the
            Last-Modified header and date based preconditions.
        body: Full content, ranges are sliced from it
        headers: Response headers set before serving, e.g. content-type or
            etag. An etag here is used for If-Match/If-None-Match/If-Range.
    """
    response_headers = _Headers(headers)
    if not _is_zero_time(modtime):
        response_headers.set("last-modified", http_date(modtime))

    status, range_header = _check_preconditions(scope, response_headers, modtime)
    if status == 304:
        _write_not_modified(proto, response_headers)
        return
    if status is not None:
        proto.response_empty(status, response_headers.as_list())
        return

    content_type = response_headers.get("content-type")
    if content_type is None:
        content_type, _ = mimetypes.guess_type(name)
        if content_type is None:
            content_type = detect_content_type(body)
        response_headers.set("content-type", content_type)

    size = len(body)
    status = 200
    payload = body

    try:
        ranges = parse_range(range_header, size)
    except RangeError as e:
        proto.response_str(
            416,
            [
                ("content-type", "text/plain; charset=utf-8"),
                ("x-content-type-options", "nosniff"),
                ("content-range", f"bytes */{size}"),
            ],
            f"{e}\n",
        )
        return

    if sum(r.length for r in ranges) > size:
        # The total number of bytes in all the ranges is larger than the
        # content itself, serve the whole thing instead
        ranges = []

    if len(ranges) == 1:
        (byte_range,) = ranges
        status = 206
        response_headers.set("content-range", byte_range.content_range(size))
        payload = body[byte_range.start : byte_range.start + byte_range.length]
    elif ranges:
        status = 206
        boundary = secrets.token_hex(30)
        payload = _multipart_byteranges(ranges, content_type, body, boundary)
        response_headers.set(
            "content-type", f"multipart/byteranges; boundary={boundary}"
        )

    response_headers.set("accept-ranges", "bytes")
    if response_headers.get("content-encoding") is None:
        response_headers.set("content-length", str(len(payload)))

    _send(scope, proto, status, response_headers, payload)


async def not_found(scope: HTTPScope, proto: HTTPProtocol) -> None:
    """Default handler for paths missing from the routing table."""
    proto.response_str(
        404,
        [
            ("content-type", "text/plain; charset=utf-8"),
            ("x-content-type-options", "nosniff"),
        ],
        "404 page not found\n",
    )
