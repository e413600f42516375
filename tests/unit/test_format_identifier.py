"""Unit tests for uploadguard/core/format_identifier.py and signatures.py.

The identifier fixture disables libmagic so results depend only on the
signature table; the fallback itself is exercised with a patched ``magic``.
"""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from uploadguard.config import AccessPolicy, MimePolicy, ScanPolicy
from uploadguard.core import signatures as sig
from uploadguard.core.format_identifier import (
    FormatIdentifier,
    is_binary_media,
    is_dangerous,
)


def _image_bytes(fmt: str) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), "blue").save(buf, fmt)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Signature table
# ---------------------------------------------------------------------------


class TestSignatures:
    @pytest.mark.parametrize(
        "prefix, expected",
        [
            (b"\xff\xd8\xff\xe0\x00\x10JFIF", "image/jpeg"),
            (b"\x89PNG\r\n\x1a\n\x00\x00", "image/png"),
            (b"GIF89a\x01\x00", "image/gif"),
            (b"II*\x00\x08\x00", "image/tiff"),
            (b"%PDF-1.7\n", "application/pdf"),
            (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1\x00", sig.OLE_STORAGE),
            (b"Rar!\x1a\x07\x01\x00", "application/x-rar-compressed"),
            (b"7z\xbc\xaf\x27\x1c\x00\x04", "application/x-7z-compressed"),
            (b"\x1f\x8b\x08\x00", "application/gzip"),
            (b"BZh91AY", "application/x-bzip2"),
            (b"\xfd7zXZ\x00\x00", "application/x-xz"),
            (b"MZ\x90\x00\x03\x00", "application/x-dosexec"),
            (b"MZP\x00", "application/x-msdownload"),
            (b"\x7fELF\x02\x01", "application/x-executable"),
            (b"\xca\xfe\xba\xbe\x00\x00", "application/java-vm"),
            (b"#!/bin/sh\necho hi\n", "application/x-shellscript"),
            (b"<?php echo 1;", "application/x-php"),
            (b"ID3\x04\x00", "audio/mpeg"),
            (b"<svg xmlns='http://www.w3.org/2000/svg'/>", sig.SVG),
            (b"BM\x36\x00\x00\x00", "image/bmp"),
        ],
    )
    def test_builtin_signature(
        self, identifier: FormatIdentifier, prefix: bytes, expected: str
    ) -> None:
        assert identifier.identify(prefix) == expected

    def test_tar_marker_at_offset(self, identifier: FormatIdentifier) -> None:
        prefix = b"a.txt".ljust(257, b"\x00") + b"ustar\x0000"
        assert identifier.identify(prefix) == "application/x-tar"

    def test_specific_pattern_wins_over_shorter(self) -> None:
        dosexec = [e for e in sig.SIGNATURES if e.media_type == "application/x-dosexec"][0]
        msdownload = [e for e in sig.SIGNATURES if e.media_type == "application/x-msdownload"][0]
        assert sig.SIGNATURES.index(dosexec) < sig.SIGNATURES.index(msdownload)

    def test_pattern_longer_than_prefix_does_not_match(self) -> None:
        entry = sig.SignatureEntry(b"ustar", "application/x-tar", offset=257)
        assert not entry.matches(b"short")

    @pytest.mark.parametrize("fmt, expected", [("JPEG", "image/jpeg"), ("PNG", "image/png"), ("GIF", "image/gif")])
    def test_real_images(self, identifier: FormatIdentifier, fmt: str, expected: str) -> None:
        assert identifier.identify(_image_bytes(fmt)) == expected


# ---------------------------------------------------------------------------
# Container refinement
# ---------------------------------------------------------------------------


class TestZipRefinement:
    def test_plain_zip(self, identifier: FormatIdentifier, make_zip) -> None:
        assert identifier.identify(make_zip({"notes.txt": b"hello"})) == sig.ZIP

    def test_docx(self, identifier: FormatIdentifier, make_docx) -> None:
        assert identifier.identify(make_docx()) == sig.DOCX

    def test_xlsx(self, identifier: FormatIdentifier, make_zip) -> None:
        data = make_zip({"[Content_Types].xml": b"<Types/>", "xl/workbook.xml": b"<workbook/>"})
        assert identifier.identify(data) == sig.XLSX

    def test_pptx(self, identifier: FormatIdentifier, make_zip) -> None:
        data = make_zip({"[Content_Types].xml": b"<Types/>", "ppt/presentation.xml": b"<p/>"})
        assert identifier.identify(data) == sig.PPTX

    def test_opendocument_mimetype_entry(self, identifier: FormatIdentifier, make_zip) -> None:
        data = make_zip({
            "mimetype": b"application/vnd.oasis.opendocument.text",
            "content.xml": b"<office:document-content/>",
        })
        assert identifier.identify(data) == "application/vnd.oasis.opendocument.text"

    def test_java_archive(self, identifier: FormatIdentifier, make_zip) -> None:
        data = make_zip({"META-INF/MANIFEST.MF": b"Manifest-Version: 1.0\n"})
        assert identifier.identify(data) == sig.JAR


class TestOtherRefinement:
    @pytest.mark.parametrize(
        "form, expected",
        [(b"WEBP", "image/webp"), (b"AVI ", "video/x-msvideo"), (b"WAVE", "audio/wav")],
    )
    def test_riff_forms(self, identifier: FormatIdentifier, form: bytes, expected: str) -> None:
        assert identifier.identify(b"RIFF\x24\x00\x00\x00" + form + b"fmt ") == expected

    def test_unknown_riff_form(self, identifier: FormatIdentifier) -> None:
        assert identifier.identify(b"RIFF\x24\x00\x00\x00XXXX") == sig.OCTET_STREAM

    @pytest.mark.parametrize(
        "brand, expected",
        [
            (b"isom", "video/mp4"),
            (b"qt  ", "video/quicktime"),
            (b"M4A ", "audio/mp4"),
            (b"heic", "image/heic"),
            (b"zzzz", sig.FTYP_DEFAULT),
        ],
    )
    def test_ftyp_brands(self, identifier: FormatIdentifier, brand: bytes, expected: str) -> None:
        assert identifier.identify(b"\x00\x00\x00\x18ftyp" + brand + b"\x00\x00\x00\x00") == expected

    def test_xml_with_svg_root(self, identifier: FormatIdentifier) -> None:
        data = b'<?xml version="1.0"?>\n<svg xmlns="http://www.w3.org/2000/svg"></svg>'
        assert identifier.identify(data) == sig.SVG

    def test_plain_xml(self, identifier: FormatIdentifier) -> None:
        assert identifier.identify(b'<?xml version="1.0"?><note/>') == "application/xml"

    def test_html_mentioning_svg_stays_html(self, identifier: FormatIdentifier) -> None:
        data = b"<!DOCTYPE html><html><body><svg></svg></body></html>"
        assert identifier.identify(data) == "text/html"

    def test_leading_whitespace_and_bom_skipped(self, identifier: FormatIdentifier) -> None:
        data = b"\xef\xbb\xbf  \n<svg xmlns='http://www.w3.org/2000/svg'/>"
        assert identifier.identify(data) == sig.SVG


# ---------------------------------------------------------------------------
# Fallbacks and policy
# ---------------------------------------------------------------------------


class TestFallback:
    def test_empty_input_is_unknown(self, identifier: FormatIdentifier) -> None:
        assert identifier.identify(b"") == sig.UNKNOWN

    def test_unmatched_without_magic_is_unknown(self, identifier: FormatIdentifier) -> None:
        assert identifier.identify(b"\x01\x02\x03\x04plain") == sig.UNKNOWN

    def test_magic_consulted_last(self) -> None:
        fake_magic = MagicMock()
        fake_magic.from_buffer.return_value = "text/plain"
        with patch("uploadguard.core.format_identifier.MAGIC_AVAILABLE", True), patch(
            "uploadguard.core.format_identifier.magic", fake_magic
        ):
            identifier = FormatIdentifier()
            assert identifier.identify(b"just some words") == "text/plain"
            assert identifier.identify(b"%PDF-1.4") == "application/pdf"
        fake_magic.from_buffer.assert_called_once_with(b"just some words", mime=True)

    def test_magic_failure_is_unknown(self) -> None:
        fake_magic = MagicMock()
        fake_magic.from_buffer.side_effect = RuntimeError("no magic database")
        with patch("uploadguard.core.format_identifier.MAGIC_AVAILABLE", True), patch(
            "uploadguard.core.format_identifier.magic", fake_magic
        ):
            assert FormatIdentifier().identify(b"\x00\x01garbage") == sig.UNKNOWN

    def test_only_prefix_examined(self, identifier: FormatIdentifier) -> None:
        data = b"\x01" * 5000 + b"%PDF-"
        assert identifier.identify(data) == sig.UNKNOWN


class TestIdentifyPath:
    def test_reads_file_prefix(self, identifier: FormatIdentifier, write_file, policy: ScanPolicy) -> None:
        path = write_file("doc.pdf", b"%PDF-1.4\n" + b"x" * 10_000)
        assert identifier.identify_path(path, policy) == "application/pdf"

    def test_custom_signature_checked_first(self, identifier: FormatIdentifier, write_file, tmp_path: Path) -> None:
        policy = ScanPolicy(
            access=AccessPolicy(allowed_roots=(tmp_path,)),
            mime=MimePolicy(custom_signatures={"89504e47": "image/x-house-png"}),
        )
        path = write_file("pic.png", _image_bytes("PNG"))
        assert identifier.identify_path(path, policy) == "image/x-house-png"


class TestClassification:
    @pytest.mark.parametrize(
        "media_type, binary",
        [
            ("image/png", True),
            ("video/mp4", True),
            ("application/pdf", True),
            (sig.DOCX, True),
            (sig.SVG, False),
            ("text/plain", False),
            (sig.UNKNOWN, False),
        ],
    )
    def test_is_binary_media(self, media_type: str, binary: bool) -> None:
        assert is_binary_media(media_type) is binary

    def test_is_dangerous_case_insensitive(self, policy: ScanPolicy) -> None:
        assert is_dangerous("Application/X-DOSEXEC", policy)
        assert not is_dangerous("image/png", policy)
