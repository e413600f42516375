"""Unit tests for uploadguard/scanners/macro.py.

OOXML packages are synthesised with zipfile.  olefile cannot author compound
files, so the OLE path runs against a patched ``olefile`` module.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from uploadguard.config import MacroScanPolicy, ScanPolicy
from uploadguard.core.results import MacroScanResult
from uploadguard.scanners.macro import MacroScanner, disguise_extensions

OLE_HEADER = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


@pytest.fixture
def scanner() -> MacroScanner:
    return MacroScanner()


class TestOOXML:
    def test_clean_docx_is_safe(self, scanner, write_file, make_docx, policy: ScanPolicy) -> None:
        result = scanner.scan(write_file("report.docx", make_docx()), policy)
        assert isinstance(result, MacroScanResult)
        assert result.safe
        assert result.has_macros is False

    def test_macro_enabled_docm_reports_macros_only(
        self, scanner, write_file, make_docx, policy: ScanPolicy
    ) -> None:
        path = write_file("report.docm", make_docx(with_macros=True))
        result = scanner.scan(path, policy)
        assert result.has_macros is True
        assert result.threats == (
            "VBA macro detected: word/vbaProject.bin",
            "Macro content type detected: application/vnd.ms-office.vbaProject",
        )

    def test_macros_disguised_as_docx(self, scanner, write_file, make_docx, policy: ScanPolicy) -> None:
        path = write_file("upload.bin", make_docx(with_macros=True))
        result = scanner.scan(path, policy, declared_name="report.docx")
        assert "Macro-enabled document disguised as .docx" in result.threats

    def test_disguise_uses_file_name_without_declared_name(
        self, scanner, write_file, make_docx, policy: ScanPolicy
    ) -> None:
        result = scanner.scan(write_file("report.xlsx", make_docx(with_macros=True)), policy)
        assert "Macro-enabled document disguised as .xlsx" in result.threats

    def test_macros_allowed_by_policy(self, scanner, write_file, make_docx, with_section) -> None:
        policy = with_section("macro", block_macros=False, allowed_macro_extensions=("docx",))
        result = scanner.scan(write_file("report.docx", make_docx(with_macros=True)), policy)
        assert result.safe
        assert result.has_macros is True

    def test_activex_controls(self, scanner, write_file, make_zip, policy: ScanPolicy) -> None:
        data = make_zip({
            "[Content_Types].xml": b"<Types/>",
            "word/document.xml": b"<w:document/>",
            "word/activeX/activeX1.xml": b"<ax/>",
            "word/activeX/activeX1.bin": b"\x00",
            "word/embeddings/oleObject1.bin": b"\x00",
        })
        result = scanner.scan(write_file("form.docx", data), policy)
        assert result.has_legacy_controls is True
        assert "ActiveX control detected: 3 control(s)" in result.threats

    def test_plain_zip_is_not_office(self, scanner, write_file, make_zip, policy: ScanPolicy) -> None:
        result = scanner.scan(write_file("report.docx", make_zip({"a.txt": b"x"})), policy)
        assert result.threats == ("File is not a valid Office document",)

    def test_non_container(self, scanner, write_file, policy: ScanPolicy) -> None:
        result = scanner.scan(write_file("report.docx", b"just text"), policy)
        assert result.threats == ("File is not a valid Office document",)


class TestOLE:
    @staticmethod
    def _fake_olefile(entries: list[list[str]]) -> MagicMock:
        fake = MagicMock()
        fake.isOleFile.return_value = True
        fake.OleFileIO.return_value.__enter__.return_value.listdir.return_value = entries
        return fake

    def test_vba_storage_and_controls(self, scanner, write_file, policy: ScanPolicy) -> None:
        fake = self._fake_olefile([
            ["WordDocument"],
            ["Macros", "VBA", "ThisDocument"],
            ["ObjectPool", "_1234", "\x03OCXNAME"],
            ["ObjectPool", "_1234", "contents"],
            ["ObjectPool", "_5678", "contents"],
        ])
        path = write_file("legacy.doc", OLE_HEADER + b"\x00" * 504)
        with patch("uploadguard.scanners.macro.OLEFILE_AVAILABLE", True), patch(
            "uploadguard.scanners.macro.olefile", fake
        ):
            result = scanner.scan(path, policy)
        assert result.has_macros is True
        assert result.threats == (
            "VBA macro detected: Macros/VBA/ThisDocument",
            "ActiveX control detected: 2 control(s)",
        )

    def test_clean_ole_document(self, scanner, write_file, policy: ScanPolicy) -> None:
        fake = self._fake_olefile([["WordDocument"], ["\x05SummaryInformation"]])
        path = write_file("legacy.doc", OLE_HEADER + b"\x00" * 504)
        with patch("uploadguard.scanners.macro.OLEFILE_AVAILABLE", True), patch(
            "uploadguard.scanners.macro.olefile", fake
        ):
            assert scanner.scan(path, policy).safe

    def test_missing_olefile_fails_closed(self, scanner, write_file, policy: ScanPolicy) -> None:
        path = write_file("legacy.doc", OLE_HEADER + b"\x00" * 504)
        with patch("uploadguard.scanners.macro.OLEFILE_AVAILABLE", False):
            result = scanner.scan(path, policy)
        assert not result.safe
        assert result.threats[0].startswith("Scan failed: RuntimeError")


class TestDisguiseExtensions:
    def test_allowed_extensions_removed(self) -> None:
        policy = MacroScanPolicy(allowed_macro_extensions=("xlsx",))
        extensions = disguise_extensions(policy)
        assert "docx" in extensions
        assert "xlsx" not in extensions
