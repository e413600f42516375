"""Unit tests for uploadguard/scanners/document_action.py."""

from __future__ import annotations

import pytest

from uploadguard.config import DocumentScanPolicy, ScanPolicy
from uploadguard.core.results import DocumentScanResult
from uploadguard.scanners.document_action import (
    DocumentActionScanner,
    actions_for,
    normalise_names,
)


def _pdf(*objects: str) -> bytes:
    body = "\n".join(f"{n} 0 obj\n{obj}\nendobj" for n, obj in enumerate(objects, start=1))
    return f"%PDF-1.7\n{body}\ntrailer << /Root 1 0 R >>\n%%EOF\n".encode("latin-1")


CLEAN_PDF = _pdf(
    "<< /Type /Catalog /Pages 2 0 R >>",
    "<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
    "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>",
)


@pytest.fixture
def scanner() -> DocumentActionScanner:
    return DocumentActionScanner()


class TestBasics:
    def test_clean_pdf_is_safe(self, scanner, write_file, policy: ScanPolicy) -> None:
        result = scanner.scan(write_file("doc.pdf", CLEAN_PDF), policy)
        assert isinstance(result, DocumentScanResult)
        assert result.safe
        assert result.has_javascript is False
        assert result.has_external_links is False

    def test_not_a_pdf(self, scanner, write_file, policy: ScanPolicy) -> None:
        result = scanner.scan(write_file("doc.pdf", b"GIF89a not a pdf"), policy)
        assert result.threats == ("Not a valid PDF file",)


class TestJavaScript:
    def test_open_action_javascript(self, scanner, write_file, policy: ScanPolicy) -> None:
        data = _pdf(
            "<< /Type /Catalog /OpenAction 2 0 R >>",
            "<< /S /JavaScript /JS (app.alert('hello');) >>",
        )
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert not result.safe
        assert result.has_javascript is True
        assert "Dangerous PDF action detected: JavaScript" in result.threats
        assert "JavaScript code detected in PDF" in result.threats
        assert "Suspicious JavaScript function detected: app.alert" in result.threats

    def test_hex_escaped_name(self, scanner, write_file, policy: ScanPolicy) -> None:
        data = _pdf("<< /S /Java#53cript /JS (x) >>")
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert result.has_javascript is True
        assert "Dangerous PDF action detected: JavaScript" in result.threats

    def test_normalise_names(self) -> None:
        assert normalise_names("/Java#53cript /OpenAction") == "/JavaScript /OpenAction"

    def test_launch_action(self, scanner, write_file, policy: ScanPolicy) -> None:
        data = _pdf("<< /S /Launch /F (cmd.exe) >>")
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert "Dangerous PDF action detected: Launch" in result.threats
        assert result.has_javascript is False


class TestLinks:
    LINK_PDF = _pdf("<< /Type /Annot /Subtype /Link /A << /S /URI /URI (https://example.com/) >> >>")

    def test_external_link_reported(self, scanner, write_file, policy: ScanPolicy) -> None:
        result = scanner.scan(write_file("doc.pdf", self.LINK_PDF), policy)
        assert result.has_external_links is True
        assert "External URL link detected in PDF" in result.threats
        assert "Dangerous PDF action detected: URI" in result.threats

    def test_external_link_allowed_by_policy(self, scanner, write_file, with_section) -> None:
        policy = with_section("document", allow_external_links=True)
        result = scanner.scan(write_file("doc.pdf", self.LINK_PDF), policy)
        assert result.safe
        assert result.has_external_links is True

    def test_script_protocol_in_uri(self, scanner, write_file, with_section) -> None:
        policy = with_section("document", allow_external_links=True)
        data = _pdf("<< /S /URI /URI (javascript:app.alert(1)) >>")
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert "Dangerous URL protocol detected: javascript:" in result.threats

    def test_form_submission(self, scanner, write_file, policy: ScanPolicy) -> None:
        data = _pdf("<< /S /SubmitForm /F << /FS /URL /F (https://collector.example/) >> >>")
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert "Form submission to external URL detected" in result.threats
        assert result.has_external_links is True


class TestObfuscationAndEmbedding:
    def test_many_compressed_streams(self, scanner, write_file, with_section) -> None:
        policy = with_section("document", max_compressed_streams=2)
        data = _pdf(*["<< /Length 0 /Filter /FlateDecode >>"] * 3)
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert "Suspicious amount of compressed streams detected (3)" in result.threats

    def test_long_hex_string(self, scanner, write_file, with_section) -> None:
        policy = with_section("document", max_hex_string_length=20)
        data = _pdf(f"<< /Data <{'41' * 40}> >>")
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert "Suspicious hex-encoded content detected" in result.threats

    def test_multiple_encryption_directives(self, scanner, write_file, policy: ScanPolicy) -> None:
        data = _pdf("<< /Encrypt 2 0 R >>", "<< /Encrypt 3 0 R >>", "<< /Filter /Standard >>")
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert "Multiple encryption layers detected" in result.threats

    def test_single_encryption_directive_tolerated(self, scanner, write_file, policy: ScanPolicy) -> None:
        data = _pdf("<< /Type /Catalog >>", "<< /Filter /Standard /V 2 >>")
        data = data.replace(b"trailer << /Root 1 0 R >>", b"trailer << /Root 1 0 R /Encrypt 2 0 R >>")
        assert scanner.scan(write_file("doc.pdf", data), policy).safe

    def test_embedded_executable(self, scanner, write_file, policy: ScanPolicy) -> None:
        data = _pdf("<< /Type /Filespec /F (invoice.exe) /EF << /F 2 0 R >> >>", "<< /Type /EmbeddedFile >>")
        result = scanner.scan(write_file("doc.pdf", data), policy)
        assert "Embedded file detected in PDF" in result.threats
        assert "Suspicious executable file embedded in PDF" in result.threats


class TestPolicy:
    def test_custom_and_excluded_actions(self) -> None:
        actions = actions_for(DocumentScanPolicy(custom_actions=("Rendition",), exclude_actions=("/Sound",)))
        assert "/Rendition" in actions
        assert "/Sound" not in actions

    def test_allow_links_drops_uri_action(self) -> None:
        assert "/URI" not in actions_for(DocumentScanPolicy(allow_external_links=True))
