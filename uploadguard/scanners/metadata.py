"""Raster image metadata inspection.

:class:`MetadataScanner` reads free-text metadata with Pillow (EXIF tags,
PNG text chunks, JPEG and GIF comments) and looks for script code, shell
commands and script URLs hidden in it.  Location data raises the ``has_gps``
flag, which only becomes a finding when the policy blocks GPS.

Bytes after the image's end marker are invisible to viewers but not to a
script interpreter that is tricked into including the file, so they are
scanned separately.

:func:`strip_metadata` writes a metadata-free copy of a clean image.
"""
from __future__ import annotations

import logging
import os
import re
import struct
from pathlib import Path
from types import MappingProxyType
from typing import Any

from PIL import ExifTags, Image, UnidentifiedImageError

from uploadguard.config import ScanPolicy
from uploadguard.core.results import MetadataScanResult, ScanResult
from uploadguard.scanners.base import ThreatScanner

logger = logging.getLogger(__name__)

_GPS_IFD = 0x8825
_EXIF_IFD = 0x8769
_MAKER_NOTE = 0x927C
_SKIPPED_TAGS = frozenset({_GPS_IFD, _EXIF_IFD, _MAKER_NOTE})

#: Longest metadata value kept in the result mapping.
_MAX_VALUE_CHARS = 256

_SCRIPT_IN_FIELD_RE = re.compile(r"<\?php|<\?=|<script\b|\b(?:eval|exec|system|assert|passthru)\s*\(", re.IGNORECASE)
_SHELL_IN_FIELD_RE = re.compile(r"\bbash\b|\bsh\s+-c\b|cmd\.exe|powershell(?:\.exe)?\s+-", re.IGNORECASE)
_URL_IN_FIELD_RE = re.compile(r"javascript:|vbscript:|data:text/html", re.IGNORECASE)
_SCRIPT_IN_TRAILER_RE = re.compile(
    rb"<\?php|<\?=|<script\b|\b(?:eval|exec|system|shell_exec|passthru|assert|base64_decode)\s*\(",
    re.IGNORECASE,
)

_JPEG_EOI = b"\xff\xd9"
_PNG_IEND = b"IEND\xaeB`\x82"


class MetadataScanner(ThreatScanner):
    """Detect injected code and location data in image metadata."""

    name = "metadata"
    result_type = MetadataScanResult

    def _scan(
        self,
        path: Path,
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        meta_policy = policy.metadata
        try:
            with Image.open(path) as img:
                image_format = (img.format or "").upper()
                fields = read_text_fields(img)
                has_gps = bool(img.getexif().get_ifd(_GPS_IFD))
        except Image.DecompressionBombError:
            return self._result(["Image dimensions exceed the decompression limit"])
        except UnidentifiedImageError:
            return self._result(["Not a valid image"])

        scanned = {name.lower() for name in meta_policy.scanned_fields}
        findings: list[str] = []
        for name, value in fields.items():
            if name.lower() not in scanned:
                continue
            if _SCRIPT_IN_FIELD_RE.search(value):
                findings.append(f"Suspicious script code found in metadata field: {name}")
            if _SHELL_IN_FIELD_RE.search(value):
                findings.append(f"Suspicious shell command found in metadata field: {name}")
            if _URL_IN_FIELD_RE.search(value):
                findings.append(f"Suspicious URL protocol found in metadata field: {name}")

        if has_gps and meta_policy.block_gps:
            findings.append("GPS location data detected")

        trailing = trailing_bytes(self._read_bytes(path), image_format)
        if trailing:
            if len(trailing) > meta_policy.max_trailing_bytes:
                findings.append("Suspicious trailing data found after image end marker")
            if _SCRIPT_IN_TRAILER_RE.search(trailing):
                findings.append("Script code detected in trailing bytes")

        return self._result(
            findings,
            has_gps=has_gps,
            has_trailing_data=bool(trailing),
            metadata=MappingProxyType({k: v[:_MAX_VALUE_CHARS] for k, v in fields.items()}),
        )


# ---------------------------------------------------------------------------
# Metadata reading
# ---------------------------------------------------------------------------


def _as_text(value: Any, *, int_tuples: bool = False) -> str | None:
    if isinstance(value, str):
        return value.strip("\x00 ")
    if isinstance(value, bytes):
        # UserComment carries an 8-byte character code prefix.
        if value[:8] in (b"ASCII\x00\x00\x00", b"UNICODE\x00", b"JIS\x00\x00\x00\x00\x00", b"\x00" * 8):
            encoding = "utf-16-le" if value.startswith(b"UNICODE") else "latin-1"
            return value[8:].decode(encoding, "replace").strip("\x00 ")
        # XP* tags are UTF-16LE.
        if len(value) >= 2 and value[1:2] == b"\x00":
            return value.decode("utf-16-le", "replace").strip("\x00 ")
        return value.decode("latin-1").strip("\x00 ")
    if int_tuples and isinstance(value, tuple) and value and all(isinstance(v, int) for v in value):
        # XP* tags as read by some Pillow versions
        return bytes(value).decode("utf-16-le", "replace").strip("\x00 ")
    return None


def read_text_fields(img: Image.Image) -> dict[str, str]:
    """Collect free-text metadata from an open Pillow image.

    EXIF tags from IFD0 and the EXIF sub-IFD are keyed by their EXIF name;
    ``img.info`` entries (PNG text chunks, JPEG / GIF comments) keep their
    own keys, with ``comment`` reported as ``Comment``.
    """
    fields: dict[str, str] = {}
    exif = img.getexif()
    for tag_id, value in [*exif.items(), *exif.get_ifd(_EXIF_IFD).items()]:
        if tag_id in _SKIPPED_TAGS:
            continue
        text = _as_text(value, int_tuples=True)
        if text:
            fields[ExifTags.TAGS.get(tag_id, str(tag_id))] = text

    for key, value in img.info.items():
        # Text chunks are str; JPEG and GIF comments are bytes.
        if not (isinstance(value, str) or key == "comment"):
            continue
        text = _as_text(value)
        if text:
            fields["Comment" if key == "comment" else str(key)] = text
    return fields


# ---------------------------------------------------------------------------
# Trailing data
# ---------------------------------------------------------------------------


def trailing_bytes(data: bytes, image_format: str) -> bytes:
    """Return the bytes following the image's end marker, if any."""
    end: int | None = None
    if image_format in ("JPEG", "MPO"):
        end = _jpeg_end(data)
        if end is None:
            pos = data.rfind(_JPEG_EOI)
            end = pos + len(_JPEG_EOI) if pos >= 0 else None
    elif image_format == "PNG":
        end = _png_end(data)
        if end is None:
            pos = data.rfind(_PNG_IEND)
            end = pos + len(_PNG_IEND) if pos >= 0 else None
    elif image_format == "GIF":
        end = _gif_end(data)
    elif image_format == "WEBP" and len(data) >= 8:
        end = 8 + struct.unpack_from("<I", data, 4)[0]
    elif image_format == "BMP" and len(data) >= 6:
        end = struct.unpack_from("<I", data, 2)[0]

    if end is None or end >= len(data):
        return b""
    return data[end:]


def _jpeg_end(data: bytes) -> int | None:
    """Offset just past the first EOI reached by walking the marker segments.

    A later ``FFD9`` in appended data is not mistaken for the image end.
    """
    if not data.startswith(b"\xff\xd8"):
        return None
    pos = 2
    while pos + 1 < len(data):
        if data[pos] != 0xFF:
            return None
        marker = data[pos + 1]
        if marker == 0xFF:
            pos += 1
            continue
        if marker == 0xD9:
            return pos + 2
        if marker == 0x01 or 0xD0 <= marker <= 0xD7:
            pos += 2
            continue
        if pos + 4 > len(data):
            return None
        pos += 2 + struct.unpack_from(">H", data, pos + 2)[0]
        if marker == 0xDA:
            # Entropy-coded data ends at the first marker that is neither a
            # stuffed zero nor a restart.
            while True:
                pos = data.find(b"\xff", pos)
                if pos < 0 or pos + 1 >= len(data):
                    return None
                following = data[pos + 1]
                if following == 0x00 or 0xD0 <= following <= 0xD7:
                    pos += 2
                    continue
                break
    return None


def _png_end(data: bytes) -> int | None:
    """Offset just past the first ``IEND`` chunk, found by walking the chunks."""
    pos = 8
    while pos + 12 <= len(data):
        length = struct.unpack_from(">I", data, pos)[0]
        if data[pos + 4:pos + 8] == b"IEND":
            return pos + 12 + length
        pos += 12 + length
    return None


def _gif_end(data: bytes) -> int | None:
    """Offset just past the GIF trailer, found by walking the block structure."""
    if len(data) < 13:
        return None
    pos = 13
    flags = data[10]
    if flags & 0x80:
        pos += 3 * (2 << (flags & 0x07))

    while pos < len(data):
        block = data[pos]
        if block == 0x3B:
            return pos + 1
        if block == 0x21:
            pos += 2
        elif block == 0x2C:
            if pos + 10 > len(data):
                return None
            local = data[pos + 9]
            pos += 10
            if local & 0x80:
                pos += 3 * (2 << (local & 0x07))
            pos += 1  # LZW minimum code size
        else:
            return None
        # Data sub-blocks
        while pos < len(data):
            size = data[pos]
            pos += 1
            if size == 0:
                break
            pos += size
    return None


# ---------------------------------------------------------------------------
# Stripping
# ---------------------------------------------------------------------------


def strip_metadata(
    path: str | os.PathLike[str],
    destination: str | os.PathLike[str],
) -> Path:
    """Re-encode the image at *path* into *destination* without metadata.

    Pixel data is copied; EXIF, text chunks, comments and ICC profiles are
    dropped.  Only the first frame of animated images is kept.

    Returns:
        The destination path.
    """
    destination = Path(destination)
    with Image.open(path) as img:
        image_format = img.format
        clean = img.copy()
    clean.info = {}
    clean.save(destination, format=image_format)
    logger.info("Metadata stripped: source=%s destination=%s", os.fspath(path), destination)
    return destination
