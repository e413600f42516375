"""Immutable value types returned by UploadGuard scanners.

Every scanner returns a :class:`ScanResult` (or a subclass carrying
scanner-specific flags).  Findings are plain human-readable strings kept in
detection order with duplicates collapsed, so two scans of identical bytes
under an identical policy compare equal.

Usage::

    from uploadguard.core.results import ScanResult

    result = ScanResult.from_findings(["Dangerous tag detected: <script>"], scanner="markup")
    assert not result.safe
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, TypeVar

_R = TypeVar("_R", bound="ScanResult")


def dedupe(findings: Iterable[str]) -> tuple[str, ...]:
    """Return *findings* as a tuple with later duplicates dropped."""
    return tuple(dict.fromkeys(findings))


@dataclass(frozen=True)
class ScanResult:
    """Outcome of a single scanner run.

    Attributes:
        safe: ``True`` iff ``threats`` is empty.
        threats: Distinct findings in the order the detection passes produced them.
        scanner: Short name of the scanner that produced the result.
    """

    safe: bool
    threats: tuple[str, ...] = ()
    scanner: str = ""

    @classmethod
    def from_findings(cls: type[_R], findings: Iterable[str], **kwargs: Any) -> _R:
        """Build a result from raw findings, deriving ``safe``."""
        threats = dedupe(findings)
        return cls(safe=not threats, threats=threats, **kwargs)

    @classmethod
    def rejected(cls: type[_R], reason: str, **kwargs: Any) -> _R:
        """Build an unsafe result carrying a single finding."""
        return cls(safe=False, threats=(reason,), **kwargs)


@dataclass(frozen=True)
class CodeScanResult(ScanResult):
    skipped_binary: bool = False


@dataclass(frozen=True)
class MarkupScanResult(ScanResult):
    has_entity_declarations: bool = False


@dataclass(frozen=True)
class DocumentScanResult(ScanResult):
    """PDF scan outcome.

    ``has_javascript`` and ``has_external_links`` are recorded whether or not
    they produced findings, so callers can allow links while blocking script.
    """

    has_javascript: bool = False
    has_external_links: bool = False


@dataclass(frozen=True)
class MacroScanResult(ScanResult):
    has_macros: bool = False
    has_legacy_controls: bool = False


@dataclass(frozen=True)
class MetadataScanResult(ScanResult):
    """Image metadata scan outcome.

    Attributes:
        has_gps: Location metadata is present.  Only a finding when the
            policy blocks GPS.
        has_trailing_data: Bytes follow the format's end marker.
        metadata: Free-text metadata fields that were read, by field name.
    """

    has_gps: bool = False
    has_trailing_data: bool = False
    metadata: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class ArchiveScanResult(ScanResult):
    """Archive inspection outcome.

    Attributes:
        files_count: Entries enumerated before the scan finished or aborted.
        uncompressed_size: Sum of declared uncompressed entry sizes seen.
        backend_unavailable: The format's backend is missing, so no entries
            were enumerated.
    """

    files_count: int = 0
    uncompressed_size: int = 0
    backend_unavailable: bool = False


@dataclass(frozen=True)
class FileScanResult(ScanResult):
    """Aggregate returned by :meth:`uploadguard.core.engine.ScanEngine.scan_file`.

    Attributes:
        media_type: Content-derived media type, or ``"unknown"``.
        declared_name: Client-supplied file name the scan was run for.
        results: Per-scanner results in dispatch order.
        metadata_stripped: A metadata-free copy was written to the requested
            destination.
    """

    media_type: str = "unknown"
    declared_name: str | None = None
    results: tuple[ScanResult, ...] = ()
    metadata_stripped: bool = False

    def result_for(self, scanner: str) -> ScanResult | None:
        """Return the result produced by *scanner*, if it ran."""
        for result in self.results:
            if result.scanner == scanner:
                return result
        return None


@dataclass(frozen=True)
class AccessDecision:
    """Whether a path may be opened, and why not when it may not."""

    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class ArchiveEntry:
    """Archive member as described by the archive's own metadata.

    Sizes are the values the archive declares; payloads are not read.
    """

    name: str
    compressed_size: int
    uncompressed_size: int
    is_dir: bool = False
    link_target: str | None = None
