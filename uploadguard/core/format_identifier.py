"""Content-based media type identification.

:class:`FormatIdentifier` classifies a file from a bounded prefix of its bytes.
The client-supplied name and content type are never consulted.

Detection order:

1. Caller-supplied custom signatures (``policy.mime.custom_signatures``).
2. The built-in table in :mod:`uploadguard.core.signatures`, first match wins.
3. Container refinement for ZIP, RIFF, ISO-BMFF and XML/HTML candidates.
4. Leading byte-order mark / whitespace is skipped for markup sniffing.
5. libmagic via python-magic, when installed.
6. ``"unknown"``.

Identification never raises: malformed input simply ends at step 6.

Usage::

    from uploadguard.core.format_identifier import FormatIdentifier

    identifier = FormatIdentifier()
    identifier.identify(b"%PDF-1.7\\n...")  # "application/pdf"
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable

from uploadguard.config import ScanPolicy
from uploadguard.core import signatures as sig

try:
    import magic
    MAGIC_AVAILABLE = True
except ImportError:
    MAGIC_AVAILABLE = False
    magic = None

logger = logging.getLogger(__name__)

#: Bytes read from the start of a file.  Covers the tar ``ustar`` marker at
#: offset 257 and the ZIP refinement window.
PREFIX_SIZE = 4096

_ODF_MIMETYPE_RE = re.compile(rb"^mimetype(application/[a-z0-9.+-]+)")
_BOM = b"\xef\xbb\xbf"


class FormatIdentifier:
    """Classify bytes into a media type string.

    Args:
        use_magic: Consult libmagic when no signature matches.  Disabled
            automatically when python-magic or libmagic is missing.
    """

    def __init__(self, *, use_magic: bool = True) -> None:
        self._use_magic = use_magic and MAGIC_AVAILABLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def identify(
        self,
        prefix: bytes,
        custom_signatures: Iterable[sig.SignatureEntry] = (),
    ) -> str:
        """Return the media type of the file starting with *prefix*.

        Args:
            prefix: Leading bytes of the file.  Only the first
                :data:`PREFIX_SIZE` bytes are examined.
            custom_signatures: Extra entries checked before the built-ins.

        Returns:
            A media type such as ``"image/png"``, or ``"unknown"``.
        """
        prefix = bytes(prefix[:PREFIX_SIZE])
        if not prefix:
            return sig.UNKNOWN

        for entry in (*custom_signatures, *sig.SIGNATURES):
            if entry.matches(prefix):
                return self._refine(entry, prefix)

        markup = self._sniff_markup(prefix)
        if markup is not None:
            return markup

        return self._magic_fallback(prefix)

    def identify_path(self, path: str | os.PathLike[str], policy: ScanPolicy) -> str:
        """Read the prefix of *path* and identify it under *policy*.

        Raises:
            OSError: If the file cannot be read.  Callers run the
                :class:`~uploadguard.core.access.AccessValidator` first.
        """
        with open(path, "rb") as fh:
            prefix = fh.read(PREFIX_SIZE)
        return self.identify(prefix, custom_signature_entries(policy))

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def _refine(self, entry: sig.SignatureEntry, prefix: bytes) -> str:
        if entry.refine == "zip":
            return _refine_zip(prefix)
        if entry.refine == "riff":
            return sig.RIFF_FORMS.get(prefix[8:12], sig.OCTET_STREAM)
        if entry.refine == "ftyp":
            return sig.FTYP_BRANDS.get(prefix[8:12], sig.FTYP_DEFAULT)
        if entry.refine == "markup":
            return _refine_markup(prefix, entry.media_type)
        return entry.media_type

    @staticmethod
    def _sniff_markup(prefix: bytes) -> str | None:
        stripped = prefix
        if stripped.startswith(_BOM):
            stripped = stripped[len(_BOM):]
        stripped = stripped.lstrip()
        if stripped == prefix:
            return None
        for entry in sig.SIGNATURES:
            if entry.offset == 0 and entry.media_type in (sig.SVG, "application/xml", "text/html"):
                if entry.matches(stripped):
                    return _refine_markup(stripped, entry.media_type)
        return None

    def _magic_fallback(self, prefix: bytes) -> str:
        if not self._use_magic:
            return sig.UNKNOWN
        try:
            detected = magic.from_buffer(prefix, mime=True)
        except Exception as exc:  # noqa: BLE001
            logger.debug("libmagic sniffing failed: %s", exc)
            return sig.UNKNOWN
        return detected or sig.UNKNOWN


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _refine_zip(prefix: bytes) -> str:
    """Narrow a ZIP candidate using entry names near the start of the archive."""
    # OpenDocument and EPUB store an uncompressed ``mimetype`` entry first;
    # its name starts at offset 30 of the first local file header.
    odf = _ODF_MIMETYPE_RE.match(prefix[30:])
    if odf is not None:
        return odf.group(1).decode("ascii")
    for marker, media_type in sig.OFFICE_MARKERS:
        if marker in prefix:
            return media_type
    if sig.JAR_MARKER in prefix:
        return sig.JAR
    return sig.ZIP


def _refine_markup(prefix: bytes, candidate: str) -> str:
    lowered = prefix.lower()
    if b"<svg" in lowered and b"<html" not in lowered:
        return sig.SVG
    return candidate


def custom_signature_entries(policy: ScanPolicy) -> tuple[sig.SignatureEntry, ...]:
    """Build :class:`SignatureEntry` objects from ``policy.mime.custom_signatures``."""
    return tuple(
        sig.SignatureEntry(bytes.fromhex(hex_prefix), media_type)
        for hex_prefix, media_type in policy.mime.custom_signatures.items()
    )


def is_binary_media(media_type: str) -> bool:
    """Whether *media_type* is a binary format that cannot host script text."""
    if media_type in sig.BINARY_MEDIA_TYPES:
        return True
    media_type = media_type.lower()
    if media_type == sig.SVG:
        return False
    return media_type.startswith(("image/", "audio/", "video/"))


def is_dangerous(media_type: str, policy: ScanPolicy) -> bool:
    """Whether *media_type* is in the policy's dangerous type list."""
    return media_type.lower() in {t.lower() for t in policy.mime.dangerous_types}
