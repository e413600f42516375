"""ScanEngine: the upload scanning entry point, with OpenTelemetry instrumentation.

:meth:`ScanEngine.scan_file` runs these steps in order:

1. **access**      - validate the path once via :class:`~uploadguard.core.access.AccessValidator`
2. **identify**    - classify the content via :class:`~uploadguard.core.format_identifier.FormatIdentifier`
3. **type checks** - dangerous-type block and strict extension matching
4. **scanners**    - dispatch to the scanners that apply to the detected type
5. **events**      - one :class:`~uploadguard.services.security_log.SecurityEvent` per finding
6. **strip**       - optional metadata-free copy of a clean raster image

Each scanner runs inside a child span named ``uploadguard.<scanner>`` under
the root ``uploadguard.scan`` span.

**Fail-closed contract**: a scanner that raises is recorded on its span and
turned into an unsafe result.  ``scan_file`` itself never reports a file as
safe that a dispatched scanner could not inspect.

Usage::

    from uploadguard.core.engine import ScanEngine

    engine = ScanEngine()
    result = engine.scan_file("/srv/uploads/tmp/abc123", "avatar.png")
    if not result.safe:
        print(result.threats)
"""

from __future__ import annotations

import functools
import hashlib
import logging
import os
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from uploadguard.config import ScanPolicy, get_policy
from uploadguard.core import signatures as sig
from uploadguard.core.access import AccessValidator
from uploadguard.core.extension_map import declared_extension, matches_extension
from uploadguard.core.format_identifier import FormatIdentifier, is_dangerous
from uploadguard.core.results import FileScanResult, MetadataScanResult, ScanResult, dedupe
from uploadguard.scanners.archive import ArchiveInspector
from uploadguard.scanners.base import ThreatScanner
from uploadguard.scanners.code_injection import CodeInjectionScanner
from uploadguard.scanners.document_action import DocumentActionScanner
from uploadguard.scanners.macro import MacroScanner
from uploadguard.scanners.markup import MarkupInjectionScanner
from uploadguard.scanners.metadata import MetadataScanner, strip_metadata
from uploadguard.services.security_log import (
    EventType,
    LoggingSecurityEventSink,
    SecurityEvent,
    SecurityEventSink,
    ThreatLevel,
)

logger = logging.getLogger(__name__)

# OTel tracer: one per module, reused across all scans.
tracer = trace.get_tracer(
    "uploadguard.engine",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

_HASH_CHUNK = 64 * 1024

#: Legacy binary Office extensions, routed to the macro scanner by name.
_LEGACY_OFFICE_EXTENSIONS = frozenset({"doc", "xls", "ppt", "dot", "xlt", "pot"})

#: Media types the strict extension check cannot judge.
_UNJUDGED_TYPES = frozenset({sig.UNKNOWN, sig.OCTET_STREAM})

#: XML media types and extensions handed to the markup scanner.
_MARKUP_TYPES = frozenset({sig.SVG, "application/xml", "text/xml"})
_MARKUP_EXTENSIONS = frozenset({"svg", "xml"})

_GPS_FINDING = "GPS location data detected"


class ScanEngine:
    """Classify an uploaded file and run every scanner that applies to it.

    All collaborators are injected at construction time so tests can swap in
    mocks.  Scanners created by default share the engine's access validator
    and format identifier.

    Args:
        access_validator: Validator applied before anything is read.
        format_identifier: Content classifier.
        scanners: Replacement scanners keyed by scanner name (``"code_injection"``,
            ``"markup"``, ``"document"``, ``"macro"``, ``"metadata"``,
            ``"archive"``).  Names not given use the built-in scanner.
        event_sink: Receiver for security events.  Defaults to a
            :class:`~uploadguard.services.security_log.LoggingSecurityEventSink`
            built from the scan policy's logging section.
    """

    def __init__(
        self,
        *,
        access_validator: AccessValidator | None = None,
        format_identifier: FormatIdentifier | None = None,
        scanners: Mapping[str, ThreatScanner] | None = None,
        event_sink: SecurityEventSink | None = None,
    ) -> None:
        self._access = access_validator or AccessValidator()
        self._identifier = format_identifier or FormatIdentifier()
        shared = {"access_validator": self._access, "format_identifier": self._identifier}
        self._scanners: dict[str, ThreatScanner] = {
            "code_injection": CodeInjectionScanner(**shared),
            "markup": MarkupInjectionScanner(**shared),
            "document": DocumentActionScanner(**shared),
            "macro": MacroScanner(**shared),
            "metadata": MetadataScanner(**shared),
            "archive": ArchiveInspector(**shared),
        }
        self._scanners.update(scanners or {})
        self._sink = event_sink

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def scan_file(
        self,
        path: str | os.PathLike[str],
        declared_name: str | None = None,
        policy: ScanPolicy | None = None,
        *,
        strip_destination: str | os.PathLike[str] | None = None,
    ) -> FileScanResult:
        """Scan the uploaded file at *path*.

        Args:
            path: Location of the uploaded bytes.
            declared_name: Client-supplied file name.  Only its extension is
                used, for the strict extension check and the macro disguise
                check.  Defaults to the file's own name.
            policy: Scan policy.  Defaults to :func:`~uploadguard.config.get_policy`.
            strip_destination: Where to write a metadata-free copy of a clean
                raster image when ``policy.metadata.strip_metadata`` is set.

        Returns:
            A :class:`~uploadguard.core.results.FileScanResult` whose
            ``threats`` merge every scanner's findings in dispatch order.
        """
        policy = policy or get_policy()
        name = declared_name if declared_name is not None else Path(os.fspath(path)).name
        start_ms = int(time.monotonic() * 1000)

        with tracer.start_as_current_span(
            "uploadguard.scan",
            kind=trace.SpanKind.INTERNAL,
        ) as root_span:
            root_span.set_attribute("scan.declared_name", name)

            result = self._scan(path, name, policy, strip_destination)

            elapsed_ms = int(time.monotonic() * 1000) - start_ms
            root_span.set_attribute("scan.media_type", result.media_type)
            root_span.set_attribute("scan.safe", result.safe)
            root_span.set_attribute("scan.findings_count", len(result.threats))
            root_span.set_attribute("scan.scanners", [r.scanner for r in result.results])
            root_span.set_attribute("scan.duration_ms", elapsed_ms)

            logger.info(
                "ScanEngine complete: file=%s media_type=%s safe=%s findings=%d duration_ms=%d",
                name,
                result.media_type,
                result.safe,
                len(result.threats),
                elapsed_ms,
            )

        self._emit_events(path, result, policy)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _scan(
        self,
        path: str | os.PathLike[str],
        name: str,
        policy: ScanPolicy,
        strip_destination: str | os.PathLike[str] | None,
    ) -> FileScanResult:
        decision = self._access.ensure_allowed(path, policy)
        if not decision.allowed:
            return FileScanResult.rejected(
                decision.reason or "Access denied", scanner="engine", declared_name=name
            )

        try:
            media_type = self._identifier.identify_path(path, policy)
        except OSError as exc:
            logger.warning("Cannot read %s for identification: %s", name, exc)
            return FileScanResult.rejected("File cannot be read", scanner="engine", declared_name=name)
        extension = declared_extension(name)

        type_findings = self._type_findings(media_type, extension, policy)
        if type_findings:
            return FileScanResult.from_findings(
                type_findings, scanner="engine", media_type=media_type, declared_name=name
            )

        results = tuple(
            self._run_scanner(scanner_name, path, name, policy)
            for scanner_name in self.dispatch(media_type, extension, policy)
        )
        findings = dedupe(threat for r in results for threat in r.threats)

        stripped = False
        if not findings and strip_destination is not None:
            stripped = self._strip(path, media_type, policy, strip_destination)

        return FileScanResult.from_findings(
            findings,
            scanner="engine",
            media_type=media_type,
            declared_name=name,
            results=results,
            metadata_stripped=stripped,
        )

    @staticmethod
    def _type_findings(media_type: str, extension: str, policy: ScanPolicy) -> list[str]:
        if policy.mime.block_dangerous and is_dangerous(media_type, policy):
            return [f"Dangerous file type detected: {media_type}"]
        if (
            policy.mime.strict_extension_check
            and extension
            and media_type not in _UNJUDGED_TYPES
            and not matches_extension(extension, media_type)
        ):
            return [f"File content ({media_type}) does not match extension .{extension}"]
        return []

    @staticmethod
    def dispatch(media_type: str, extension: str, policy: ScanPolicy) -> list[str]:
        """Names of the scanners that apply to *media_type*, in run order."""
        names: list[str] = []
        if policy.code.enabled:
            names.append("code_injection")
        # Identification only sees a bounded prefix, so text and unidentified
        # uploads still get the entity and script checks.
        if policy.markup.enabled and (
            media_type in _MARKUP_TYPES
            or media_type.startswith("text/")
            or media_type in _UNJUDGED_TYPES
            or extension in _MARKUP_EXTENSIONS
        ):
            names.append("markup")
        if policy.document.enabled and media_type == "application/pdf":
            names.append("document")
        office_extensions = (
            set(policy.macro.non_macro_extensions)
            | set(policy.macro.macro_extensions)
            | _LEGACY_OFFICE_EXTENSIONS
        )
        if policy.macro.enabled and (
            media_type in sig.OOXML_TYPES
            or media_type in sig.OLE_TYPES
            or extension in office_extensions
        ):
            names.append("macro")
        if policy.metadata.enabled and media_type in sig.RASTER_IMAGE_TYPES:
            names.append("metadata")
        if policy.archive.enabled and media_type in sig.ARCHIVE_TYPES:
            names.append("archive")
        return names

    def _run_scanner(
        self,
        scanner_name: str,
        path: str | os.PathLike[str],
        declared_name: str,
        policy: ScanPolicy,
    ) -> ScanResult:
        """Run one scanner inside a ``uploadguard.<scanner_name>`` child span."""
        scanner = self._scanners[scanner_name]
        with tracer.start_as_current_span(f"uploadguard.{scanner_name}") as span:
            span.set_attribute("scanner.name", scanner_name)
            step_start_ms = int(time.monotonic() * 1000)

            try:
                result = scanner.scan(path, policy, declared_name=declared_name)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                span.set_attribute("scanner.error", type(exc).__name__)
                logger.exception("Scanner '%s' raised on %s", scanner_name, declared_name)
                result = scanner.result_type.rejected(
                    f"Scan failed: {type(exc).__name__}: {exc}", scanner=scanner_name
                )

            elapsed_ms = int(time.monotonic() * 1000) - step_start_ms
            span.set_attribute("scanner.safe", result.safe)
            span.set_attribute("scanner.findings_count", len(result.threats))
            span.set_attribute("scanner.duration_ms", elapsed_ms)
            logger.debug(
                "Scanner '%s' complete: file=%s safe=%s duration_ms=%d",
                scanner_name,
                declared_name,
                result.safe,
                elapsed_ms,
            )
        return result

    @staticmethod
    def _strip(
        path: str | os.PathLike[str],
        media_type: str,
        policy: ScanPolicy,
        destination: str | os.PathLike[str],
    ) -> bool:
        if not policy.metadata.strip_metadata or media_type not in sig.RASTER_IMAGE_TYPES:
            return False
        try:
            strip_metadata(path, destination)
        except (OSError, ValueError) as exc:
            logger.error("Metadata stripping failed for %s: %r", os.fspath(path), exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def _emit_events(
        self,
        path: str | os.PathLike[str],
        result: FileScanResult,
        policy: ScanPolicy,
    ) -> None:
        events: list[SecurityEvent] = []
        if result.threats:
            context = self._event_context(path, result, policy)
            owners = _finding_owners(result)
            events.extend(
                SecurityEvent.for_finding(threat, owners.get(threat, "engine"), context)
                for threat in result.threats
            )

        metadata = result.result_for("metadata")
        if (
            isinstance(metadata, MetadataScanResult)
            and metadata.has_gps
            and _GPS_FINDING not in result.threats
        ):
            events.append(
                SecurityEvent(
                    event_type=EventType.GPS_DETECTED,
                    threat_level=ThreatLevel.LOW,
                    message="GPS location data present in image metadata",
                    context=self._event_context(path, result, policy),
                )
            )

        if not events:
            return
        sink = self._sink or LoggingSecurityEventSink(policy.logging)
        for event in events:
            sink.emit(event)

    @staticmethod
    def _event_context(
        path: str | os.PathLike[str],
        result: FileScanResult,
        policy: ScanPolicy,
    ) -> dict[str, Any]:
        context: dict[str, Any] = {
            "file_name": result.declared_name,
            "media_type": result.media_type,
            "findings": list(result.threats),
        }
        if policy.logging.detailed:
            try:
                context["file_size"] = os.stat(path).st_size
                context[policy.logging.hash_algorithm] = file_digest(
                    path, policy.logging.hash_algorithm
                )
            except OSError as exc:
                logger.debug("File summary unavailable for %s: %s", os.fspath(path), exc)
        return context


def _finding_owners(result: FileScanResult) -> dict[str, str]:
    """Map each finding to the first scanner that reported it."""
    owners: dict[str, str] = {}
    for scanner_result in result.results:
        for threat in scanner_result.threats:
            owners.setdefault(threat, scanner_result.scanner)
    return owners


def file_digest(path: str | os.PathLike[str], algorithm: str = "sha256") -> str:
    """Hex digest of the file at *path*, read in chunks."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(functools.partial(fh.read, _HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Module-level convenience
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def default_engine() -> ScanEngine:
    """Return a cached :class:`ScanEngine` with the built-in collaborators."""
    return ScanEngine()


def scan_file(
    path: str | os.PathLike[str],
    declared_name: str | None = None,
    policy: ScanPolicy | None = None,
    *,
    strip_destination: str | os.PathLike[str] | None = None,
) -> FileScanResult:
    """Scan *path* with :func:`default_engine`.  See :meth:`ScanEngine.scan_file`."""
    return default_engine().scan_file(
        path, declared_name, policy, strip_destination=strip_destination
    )
