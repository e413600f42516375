"""Built-in binary signature table.

The table is ordered: :class:`~uploadguard.core.format_identifier.FormatIdentifier`
walks it top to bottom and the first entry whose pattern matches wins.  More
specific patterns therefore sit above shorter ones that would also match:
``MZ\\x90\\x00`` before bare ``MZ``, and the ISO-BMFF ``ftyp`` box at
offset 4 before the icon header, which a 256-byte box size also produces.

Entries that carry a ``refine`` rule name an ambiguous container whose
candidate type is narrowed by the identifier:

* ``"zip"``    office / OpenDocument / Java archive markers in the first bytes
* ``"riff"``   four-byte form type at offset 8
* ``"ftyp"``   major brand at offset 8
* ``"markup"`` XML or HTML whose root element is ``<svg``
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

RefinementRule = Literal["zip", "riff", "ftyp", "markup"]


@dataclass(frozen=True)
class SignatureEntry:
    """Byte pattern expected at ``offset`` for ``media_type``."""

    pattern: bytes
    media_type: str
    offset: int = 0
    refine: RefinementRule | None = None

    def matches(self, prefix: bytes) -> bool:
        end = self.offset + len(self.pattern)
        return len(prefix) >= end and prefix[self.offset:end] == self.pattern


ZIP = "application/zip"
OCTET_STREAM = "application/octet-stream"
UNKNOWN = "unknown"

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
OLE_STORAGE = "application/x-ole-storage"
SVG = "image/svg+xml"

#: Built-in signatures in match priority order.
SIGNATURES: tuple[SignatureEntry, ...] = (
    # Images
    SignatureEntry(b"\xff\xd8\xff", "image/jpeg"),
    SignatureEntry(b"\x89PNG\r\n\x1a\n", "image/png"),
    SignatureEntry(b"GIF87a", "image/gif"),
    SignatureEntry(b"GIF89a", "image/gif"),
    SignatureEntry(b"II*\x00", "image/tiff"),
    SignatureEntry(b"MM\x00*", "image/tiff"),
    # ISO base media: box size occupies bytes 0-3
    SignatureEntry(b"ftyp", "video/mp4", offset=4, refine="ftyp"),
    SignatureEntry(b"\x00\x00\x01\x00", "image/x-icon"),
    SignatureEntry(b"RIFF", OCTET_STREAM, refine="riff"),
    # Documents
    SignatureEntry(b"%PDF-", "application/pdf"),
    SignatureEntry(b"%!PS", "application/postscript"),
    SignatureEntry(b"{\\rtf", "application/rtf"),
    SignatureEntry(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", OLE_STORAGE),
    # Archives
    SignatureEntry(b"PK\x03\x04", ZIP, refine="zip"),
    SignatureEntry(b"PK\x05\x06", ZIP),
    SignatureEntry(b"PK\x07\x08", ZIP),
    SignatureEntry(b"Rar!\x1a\x07", "application/x-rar-compressed"),
    SignatureEntry(b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    SignatureEntry(b"\x1f\x8b", "application/gzip"),
    SignatureEntry(b"BZh", "application/x-bzip2"),
    SignatureEntry(b"\xfd7zXZ\x00", "application/x-xz"),
    SignatureEntry(b"ustar", "application/x-tar", offset=257),
    SignatureEntry(b"MSCF", "application/vnd.ms-cab-compressed"),
    # Executables and scripts
    SignatureEntry(b"MZ\x90\x00", "application/x-dosexec"),
    SignatureEntry(b"MZ", "application/x-msdownload"),
    SignatureEntry(b"\x7fELF", "application/x-executable"),
    SignatureEntry(b"\xfe\xed\xfa\xce", "application/x-mach-binary"),
    SignatureEntry(b"\xfe\xed\xfa\xcf", "application/x-mach-binary"),
    SignatureEntry(b"\xce\xfa\xed\xfe", "application/x-mach-binary"),
    SignatureEntry(b"\xcf\xfa\xed\xfe", "application/x-mach-binary"),
    SignatureEntry(b"\xca\xfe\xba\xbe", "application/java-vm"),
    SignatureEntry(b"\x00asm", "application/wasm"),
    SignatureEntry(b"#!", "application/x-shellscript"),
    SignatureEntry(b"<?php", "application/x-php"),
    # Audio / video
    SignatureEntry(b"OggS", "audio/ogg"),
    SignatureEntry(b"fLaC", "audio/flac"),
    SignatureEntry(b"ID3", "audio/mpeg"),
    SignatureEntry(b"\xff\xfb", "audio/mpeg"),
    SignatureEntry(b"\xff\xf3", "audio/mpeg"),
    SignatureEntry(b"\x1aE\xdf\xa3", "video/webm"),
    SignatureEntry(b"FLV\x01", "video/x-flv"),
    # Markup
    SignatureEntry(b"<svg", SVG),
    SignatureEntry(b"<?xml", "application/xml", refine="markup"),
    SignatureEntry(b"<!DOCTYPE svg", SVG),
    SignatureEntry(b"<!DOCTYPE html", "text/html", refine="markup"),
    SignatureEntry(b"<!doctype html", "text/html", refine="markup"),
    SignatureEntry(b"<html", "text/html", refine="markup"),
    SignatureEntry(b"<HTML", "text/html", refine="markup"),
    # Bitmap last: two printable bytes
    SignatureEntry(b"BM", "image/bmp"),
)

# ---------------------------------------------------------------------------
# Refinement tables
# ---------------------------------------------------------------------------

#: Internal ZIP path fragments identifying an OOXML document, in check order.
OFFICE_MARKERS: tuple[tuple[bytes, str], ...] = (
    (b"word/", DOCX),
    (b"xl/", XLSX),
    (b"ppt/", PPTX),
)

JAR_MARKER = b"META-INF/MANIFEST.MF"
JAR = "application/java-archive"

RIFF_FORMS: dict[bytes, str] = {
    b"WEBP": "image/webp",
    b"AVI ": "video/x-msvideo",
    b"WAVE": "audio/wav",
}

FTYP_BRANDS: dict[bytes, str] = {
    b"isom": "video/mp4",
    b"iso2": "video/mp4",
    b"mp41": "video/mp4",
    b"mp42": "video/mp4",
    b"avc1": "video/mp4",
    b"dash": "video/mp4",
    b"qt  ": "video/quicktime",
    b"M4A ": "audio/mp4",
    b"M4B ": "audio/mp4",
    b"M4P ": "audio/mp4",
    b"M4V ": "video/x-m4v",
    b"3gp4": "video/3gpp",
    b"3gp5": "video/3gpp",
    b"heic": "image/heic",
    b"heix": "image/heic",
    b"mif1": "image/heif",
    b"avif": "image/avif",
}
FTYP_DEFAULT = "video/mp4"

# ---------------------------------------------------------------------------
# Media type groups
# ---------------------------------------------------------------------------

RASTER_IMAGE_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/tiff",
    "image/bmp",
})

ARCHIVE_TYPES = frozenset({
    ZIP,
    "application/x-rar-compressed",
    "application/vnd.rar",
    "application/x-7z-compressed",
    "application/gzip",
    "application/x-gzip",
    "application/x-bzip2",
    "application/x-xz",
    "application/x-tar",
    "application/vnd.ms-cab-compressed",
})

OOXML_TYPES = frozenset({
    DOCX,
    XLSX,
    PPTX,
    "application/vnd.ms-word.document.macroEnabled.12",
    "application/vnd.ms-excel.sheet.macroEnabled.12",
    "application/vnd.ms-powerpoint.presentation.macroEnabled.12",
})

OLE_TYPES = frozenset({
    OLE_STORAGE,
    "application/CDFV2",
    "application/x-cfb",
    "application/msword",
    "application/vnd.ms-excel",
    "application/vnd.ms-powerpoint",
})

#: Types that cannot carry interpretable script text in any meaningful way.
BINARY_MEDIA_TYPES = (
    RASTER_IMAGE_TYPES
    | ARCHIVE_TYPES
    | OOXML_TYPES
    | OLE_TYPES
    | frozenset({
        "image/x-icon",
        "image/heic",
        "image/heif",
        "image/avif",
        "application/pdf",
        "application/java-archive",
        "application/vnd.oasis.opendocument.text",
        "application/vnd.oasis.opendocument.spreadsheet",
        "application/vnd.oasis.opendocument.presentation",
        "application/epub+zip",
    })
)
