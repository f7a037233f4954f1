"""Content type detection from leading bytes.

Implements the WHATWG MIME Sniffing Standard (https://mimesniff.spec.whatwg.org/)
signatures for the types a static site typically ships. Used when a file's
extension doesn't map to a known MIME type.
"""

from collections.abc import Callable
from dataclasses import dataclass

SNIFF_LENGTH = 512

_WHITESPACE = b"\t\n\x0c\r "
_TAG_TERMINATORS = b" >"
# Bytes that never appear in text (WHATWG "binary data byte")
_BINARY_BYTES = frozenset(
    [*range(0x00, 0x09), 0x0B, *range(0x0E, 0x1B), *range(0x1C, 0x20)]
)


@dataclass(frozen=True, slots=True)
class _Exact:
    signature: bytes
    content_type: str

    def match(self, data: bytes, first_non_ws: int) -> str | None:
        return self.content_type if data.startswith(self.signature) else None


@dataclass(frozen=True, slots=True)
class _Masked:
    mask: bytes
    pattern: bytes
    content_type: str
    skip_whitespace: bool = False

    def match(self, data: bytes, first_non_ws: int) -> str | None:
        if self.skip_whitespace:
            data = data[first_non_ws:]
        if len(data) < len(self.pattern):
            return None
        for mask, pattern, byte in zip(self.mask, self.pattern, data, strict=False):
            if byte & mask != pattern:
                return None
        return self.content_type


@dataclass(frozen=True, slots=True)
class _HTML:
    """Case-insensitive tag, after leading whitespace, followed by space or '>'."""

    tag: bytes

    def match(self, data: bytes, first_non_ws: int) -> str | None:
        data = data[first_non_ws:]
        if len(data) < len(self.tag) + 1:
            return None
        if data[: len(self.tag)].upper() != self.tag:
            return None
        if data[len(self.tag)] not in _TAG_TERMINATORS:
            return None
        return "text/html; charset=utf-8"


def _mp4(data: bytes, first_non_ws: int) -> str | None:
    # https://mimesniff.spec.whatwg.org/#signature-for-mp4
    if len(data) < 12:
        return None
    box_size = int.from_bytes(data[:4], "big")
    if len(data) < box_size or box_size % 4 != 0 or data[4:8] != b"ftyp":
        return None
    for start in range(8, box_size, 4):
        if start == 12:
            continue  # minor version number
        if data[start : start + 3] == b"mp4":
            return "video/mp4"
    return None


def _text(data: bytes, first_non_ws: int) -> str | None:
    if any(byte in _BINARY_BYTES for byte in data[first_non_ws:]):
        return None
    return _UTF8


_UTF8 = "text/plain; charset=utf-8"
_UTF16BE = "text/plain; charset=utf-16be"
_UTF16LE = "text/plain; charset=utf-16le"

_HTML_TAGS = (
    b"<!DOCTYPE HTML",
    b"<HTML",
    b"<HEAD",
    b"<SCRIPT",
    b"<IFRAME",
    b"<H1",
    b"<DIV",
    b"<FONT",
    b"<TABLE",
    b"<A",
    b"<STYLE",
    b"<TITLE",
    b"<B",
    b"<BODY",
    b"<BR",
    b"<P",
    b"<!--",
)

_SIGNATURES: tuple[Callable[[bytes, int], str | None], ...] = (
    *(_HTML(tag).match for tag in _HTML_TAGS),
    _Masked(
        b"\xff\xff\xff\xff\xff", b"<?xml", "text/xml; charset=utf-8", True
    ).match,
    _Exact(b"%PDF-", "application/pdf").match,
    _Exact(b"%!PS-Adobe-", "application/postscript").match,
    # UTF BOMs
    _Exact(b"\xfe\xff", _UTF16BE).match,
    _Exact(b"\xff\xfe", _UTF16LE).match,
    _Exact(b"\xef\xbb\xbf", _UTF8).match,
    # Images
    _Exact(b"\x00\x00\x01\x00", "image/x-icon").match,
    _Exact(b"\x00\x00\x02\x00", "image/x-icon").match,
    _Exact(b"BM", "image/bmp").match,
    _Exact(b"GIF87a", "image/gif").match,
    _Exact(b"GIF89a", "image/gif").match,
    _Masked(
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff\xff\xff",
        b"RIFF\x00\x00\x00\x00WEBPVP",
        "image/webp",
    ).match,
    _Exact(b"\x89PNG\r\n\x1a\n", "image/png").match,
    _Exact(b"\xff\xd8\xff", "image/jpeg").match,
    # Audio and video
    _Masked(
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff",
        b"FORM\x00\x00\x00\x00AIFF",
        "audio/aiff",
    ).match,
    _Masked(b"\xff\xff\xff", b"ID3", "audio/mpeg").match,
    _Masked(b"\xff\xff\xff\xff\xff", b"OggS\x00", "application/ogg").match,
    _Masked(
        b"\xff\xff\xff\xff\xff\xff\xff\xff",
        b"MThd\x00\x00\x00\x06",
        "audio/midi",
    ).match,
    _Masked(
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff",
        b"RIFF\x00\x00\x00\x00AVI ",
        "video/avi",
    ).match,
    _Masked(
        b"\xff\xff\xff\xff\x00\x00\x00\x00\xff\xff\xff\xff",
        b"RIFF\x00\x00\x00\x00WAVE",
        "audio/wave",
    ).match,
    _mp4,
    _Exact(b"\x1a\x45\xdf\xa3", "video/webm").match,
    # Fonts
    _Masked(
        b"\x00" * 34 + b"\xff\xff",
        b"\x00" * 34 + b"LP",
        "application/vnd.ms-fontobject",
    ).match,
    _Exact(b"\x00\x01\x00\x00", "font/ttf").match,
    _Exact(b"OTTO", "font/otf").match,
    _Exact(b"ttcf", "font/collection").match,
    _Exact(b"wOFF", "font/woff").match,
    _Exact(b"wOF2", "font/woff2").match,
    # Archives
    _Exact(b"\x1f\x8b\x08", "application/x-gzip").match,
    _Exact(b"PK\x03\x04", "application/zip").match,
    _Exact(b"Rar!\x1a\x07\x00", "application/x-rar-compressed").match,
    _Exact(b"Rar!\x1a\x07\x01\x00", "application/x-rar-compressed").match,
    _Exact(b"\x00asm", "application/wasm").match,
    # Must stay last, matches anything without binary bytes
    _text,
)


def detect_content_type(data: bytes) -> str:
    """Return the MIME type of data, looking at no more than 512 bytes.

    Always returns a valid MIME type, "application/octet-stream" if nothing
    more specific matches.
    """
    data = data[:SNIFF_LENGTH]

    first_non_ws = 0
    while first_non_ws < len(data) and data[first_non_ws] in _WHITESPACE:
        first_non_ws += 1

    for signature in _SIGNATURES:
        content_type = signature(data, first_non_ws)
        if content_type is not None:
            return content_type
    return "application/octet-stream"
