"""Declared extension to valid media type mapping.

Used by the strict extension check in :mod:`uploadguard.core.engine`: a file
named ``report.pdf`` whose content identifies as ``image/png`` is a mismatch.
Patterns may end in ``/*`` to accept a whole top-level type, which keeps
plain-text extensions from tripping on libmagic's finer ``text/x-*`` guesses.
"""
from __future__ import annotations

import fnmatch
from pathlib import PurePath

from uploadguard.core.signatures import DOCX, OLE_TYPES, PPTX, XLSX, ZIP

_OLE = tuple(sorted(OLE_TYPES))

EXTENSION_MEDIA_TYPES: dict[str, tuple[str, ...]] = {
    # Images
    "jpg": ("image/jpeg", "image/pjpeg"),
    "jpeg": ("image/jpeg", "image/pjpeg"),
    "jpe": ("image/jpeg",),
    "png": ("image/png",),
    "gif": ("image/gif",),
    "bmp": ("image/bmp", "image/x-ms-bmp"),
    "webp": ("image/webp",),
    "tif": ("image/tiff",),
    "tiff": ("image/tiff",),
    "ico": ("image/x-icon", "image/vnd.microsoft.icon"),
    "heic": ("image/heic", "image/heif"),
    "avif": ("image/avif",),
    "svg": ("image/svg+xml", "application/xml", "text/xml", "text/plain"),
    # Documents
    "pdf": ("application/pdf",),
    "rtf": ("application/rtf", "text/rtf"),
    "doc": _OLE,
    "xls": _OLE,
    "ppt": _OLE,
    "docx": (DOCX, ZIP),
    "dotx": (DOCX, ZIP),
    "docm": ("application/vnd.ms-word.document.macroEnabled.12", DOCX, ZIP),
    "dotm": ("application/vnd.ms-word.template.macroEnabled.12", DOCX, ZIP),
    "xlsx": (XLSX, ZIP),
    "xltx": (XLSX, ZIP),
    "xlsm": ("application/vnd.ms-excel.sheet.macroEnabled.12", XLSX, ZIP),
    "xltm": ("application/vnd.ms-excel.template.macroEnabled.12", XLSX, ZIP),
    "pptx": (PPTX, ZIP),
    "potx": (PPTX, ZIP),
    "pptm": ("application/vnd.ms-powerpoint.presentation.macroEnabled.12", PPTX, ZIP),
    "potm": ("application/vnd.ms-powerpoint.template.macroEnabled.12", PPTX, ZIP),
    "odt": ("application/vnd.oasis.opendocument.text", ZIP),
    "ods": ("application/vnd.oasis.opendocument.spreadsheet", ZIP),
    "odp": ("application/vnd.oasis.opendocument.presentation", ZIP),
    "epub": ("application/epub+zip", ZIP),
    # Text
    "txt": ("text/*",),
    "csv": ("text/*", "application/csv"),
    "md": ("text/*",),
    "log": ("text/*",),
    "json": ("application/json", "text/*"),
    "xml": ("application/xml", "text/xml", "text/*"),
    "html": ("text/html",),
    "htm": ("text/html",),
    # Archives
    "zip": (ZIP, "application/x-zip-compressed"),
    "gz": ("application/gzip", "application/x-gzip"),
    "tgz": ("application/gzip", "application/x-gzip"),
    "bz2": ("application/x-bzip2",),
    "tbz2": ("application/x-bzip2",),
    "xz": ("application/x-xz",),
    "txz": ("application/x-xz",),
    "tar": ("application/x-tar",),
    "7z": ("application/x-7z-compressed",),
    "rar": ("application/x-rar-compressed", "application/vnd.rar"),
    "cab": ("application/vnd.ms-cab-compressed",),
    # Audio / video
    "mp3": ("audio/mpeg",),
    "wav": ("audio/wav", "audio/x-wav"),
    "ogg": ("audio/ogg", "video/ogg"),
    "flac": ("audio/flac",),
    "m4a": ("audio/mp4", "video/mp4"),
    "mp4": ("video/mp4",),
    "m4v": ("video/x-m4v", "video/mp4"),
    "mov": ("video/quicktime",),
    "avi": ("video/x-msvideo",),
    "webm": ("video/webm",),
    "mkv": ("video/webm", "video/x-matroska"),
    "3gp": ("video/3gpp",),
}


def declared_extension(name: str | None) -> str:
    """Lower-case final extension of *name* without the dot, or ``""``."""
    if not name:
        return ""
    return PurePath(name.replace("\\", "/")).suffix.lower().lstrip(".")


def valid_media_types(extension: str) -> tuple[str, ...] | None:
    """Media types acceptable for *extension*, or ``None`` when it is unmapped."""
    return EXTENSION_MEDIA_TYPES.get(extension.lower().lstrip("."))


def matches_extension(extension: str, media_type: str) -> bool:
    """Whether *media_type* is valid for *extension*.

    Unmapped extensions match anything; the map only constrains what it knows.
    """
    allowed = valid_media_types(extension)
    if allowed is None:
        return True
    media_type = media_type.lower()
    return any(fnmatch.fnmatchcase(media_type, pattern.lower()) for pattern in allowed)
