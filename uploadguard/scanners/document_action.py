"""Auto-executing action and script detection for PDF uploads.

The scan works on raw bytes; no object model is built.  PDF name objects may
hex-escape any character (``/Java#53cript`` is ``/JavaScript``), so names are
decoded before any pattern runs.

``has_javascript`` and ``has_external_links`` are recorded independently of
the findings so a caller can, for example, accept documents with hyperlinks
while still rejecting anything scripted.
"""
from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path

from uploadguard.config import DocumentScanPolicy, ScanPolicy
from uploadguard.core.results import DocumentScanResult, ScanResult
from uploadguard.scanners.base import ThreatScanner

logger = logging.getLogger(__name__)

#: How far into the file the ``%PDF-`` header may appear.
HEADER_WINDOW = 1024

DANGEROUS_ACTIONS: tuple[str, ...] = (
    "/Launch",
    "/JavaScript",
    "/JS",
    "/URI",
    "/SubmitForm",
    "/ImportData",
    "/GoToR",
    "/GoToE",
    "/Sound",
    "/Movie",
    "/RichMedia",
    "/EmbeddedFile",
    "/FileAttachment",
)

SCRIPT_FUNCTIONS: tuple[str, ...] = (
    "app.alert",
    "app.launchURL",
    "app.openDoc",
    "app.execMenuItem",
    "util.printf",
    "getURL",
    "submitForm",
    "importDataObject",
    "exportDataObject",
    "this.exportDataObject",
    "this.submitForm",
    "eval(",
    "unescape(",
    "String.fromCharCode",
)

DANGEROUS_PROTOCOLS: tuple[str, ...] = ("javascript:", "file://", "vbscript:", "data:")

_NAME_RE = re.compile(r"/[^\s/<>\[\]()%{}]+")
_NAME_ESCAPE_RE = re.compile(r"#([0-9A-Fa-f]{2})")
_SCRIPT_TRIGGER_RE = re.compile(r"/JavaScript|/JS\s*<<|/JS\s*\[|/JS\s*\(", re.IGNORECASE)
_URI_LINK_RE = re.compile(r"/URI\s*\(", re.IGNORECASE)
_SUBMIT_EXTERNAL_RE = re.compile(r"/SubmitForm.*?https?:", re.IGNORECASE | re.DOTALL)
_FLATE_RE = re.compile(r"/Filter\s*\[?\s*/FlateDecode", re.IGNORECASE)
_HEX_STRING_RE = re.compile(r"<[0-9a-fA-F\s]+>")
_ENCRYPT_RE = re.compile(r"/Encrypt(?![A-Za-z0-9])", re.IGNORECASE)
_EMBEDDED_FILE_RE = re.compile(r"/EmbeddedFile", re.IGNORECASE)
_EMBEDDED_EXECUTABLE_RE = re.compile(r"\.(?:exe|bat|cmd|scr|vbs|js|ps1|hta|msi)\b", re.IGNORECASE)
_ATTACHMENT_RE = re.compile(r"/FileAttachment", re.IGNORECASE)


@lru_cache(maxsize=64)
def _action_pattern(action: str) -> re.Pattern[str]:
    name = action if action.startswith("/") else f"/{action}"
    return re.compile(rf"{re.escape(name)}(?![A-Za-z0-9])", re.IGNORECASE)


@lru_cache(maxsize=8)
def _protocol_pattern(protocol: str) -> re.Pattern[str]:
    return re.compile(rf"/(?:URI|URL|F|UF|D)\s*\(\s*{re.escape(protocol)}", re.IGNORECASE)


def normalise_names(text: str) -> str:
    """Decode ``#xx`` escapes inside PDF name objects."""
    def _decode(match: re.Match[str]) -> str:
        return _NAME_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), match.group(0))

    return _NAME_RE.sub(_decode, text)


def actions_for(policy: DocumentScanPolicy) -> tuple[str, ...]:
    builtin = DANGEROUS_ACTIONS
    if policy.allow_external_links:
        builtin = tuple(a for a in builtin if a != "/URI")
    extra = tuple(a if a.startswith("/") else f"/{a}" for a in policy.custom_actions)
    excluded = {(a if a.startswith("/") else f"/{a}").lower() for a in policy.exclude_actions}
    return tuple(a for a in dict.fromkeys(builtin + extra) if a.lower() not in excluded)


class DocumentActionScanner(ThreatScanner):
    """Detect scripts and dangerous actions in PDF documents."""

    name = "document"
    result_type = DocumentScanResult

    def _scan(
        self,
        path: Path,
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        raw = self._read_bytes(path)
        if b"%PDF-" not in raw[:HEADER_WINDOW]:
            return self._result(["Not a valid PDF file"])

        text = normalise_names(raw.decode("latin-1"))
        doc_policy = policy.document

        has_javascript = _SCRIPT_TRIGGER_RE.search(text) is not None
        has_external_links = (
            _URI_LINK_RE.search(text) is not None
            or _SUBMIT_EXTERNAL_RE.search(text) is not None
        )

        findings: list[str] = []
        findings.extend(self._scan_actions(text, actions_for(doc_policy)))
        if has_javascript:
            findings.extend(self._scan_script(text))
        findings.extend(self._scan_links(text, doc_policy))
        findings.extend(self._scan_obfuscation(text, doc_policy))
        findings.extend(self._scan_embedded(text))

        return self._result(
            findings,
            has_javascript=has_javascript,
            has_external_links=has_external_links,
        )

    # ------------------------------------------------------------------
    # Detection passes
    # ------------------------------------------------------------------

    @staticmethod
    def _scan_actions(text: str, actions: tuple[str, ...]) -> list[str]:
        return [
            f"Dangerous PDF action detected: {action.lstrip('/')}"
            for action in actions
            if _action_pattern(action).search(text)
        ]

    @staticmethod
    def _scan_script(text: str) -> list[str]:
        findings = ["JavaScript code detected in PDF"]
        lowered = text.lower()
        for func in SCRIPT_FUNCTIONS:
            if func.lower() in lowered:
                findings.append(f"Suspicious JavaScript function detected: {func}")
        return findings

    @staticmethod
    def _scan_links(text: str, policy: DocumentScanPolicy) -> list[str]:
        findings = [
            f"Dangerous URL protocol detected: {protocol}"
            for protocol in DANGEROUS_PROTOCOLS
            if _protocol_pattern(protocol).search(text)
        ]
        if not policy.allow_external_links and _URI_LINK_RE.search(text):
            findings.append("External URL link detected in PDF")
        if _SUBMIT_EXTERNAL_RE.search(text):
            findings.append("Form submission to external URL detected")
        return findings

    @staticmethod
    def _scan_obfuscation(text: str, policy: DocumentScanPolicy) -> list[str]:
        findings = []

        streams = len(_FLATE_RE.findall(text))
        if streams > policy.max_compressed_streams:
            findings.append(f"Suspicious amount of compressed streams detected ({streams})")

        for match in _HEX_STRING_RE.finditer(text):
            if len(match.group(0)) > policy.max_hex_string_length:
                findings.append("Suspicious hex-encoded content detected")
                break

        if len(_ENCRYPT_RE.findall(text)) > 1:
            findings.append("Multiple encryption layers detected")
        return findings

    @staticmethod
    def _scan_embedded(text: str) -> list[str]:
        findings = []
        if _EMBEDDED_FILE_RE.search(text):
            findings.append("Embedded file detected in PDF")
            if _EMBEDDED_EXECUTABLE_RE.search(text):
                findings.append("Suspicious executable file embedded in PDF")
        if _ATTACHMENT_RE.search(text):
            findings.append("File attachment detected in PDF")
        return findings
