"""Macro and legacy control detection for office documents.

Two container families are handled:

* **OOXML** (``docx`` / ``xlsx`` / ``pptx`` and their macro-enabled
  variants): a ZIP archive with ``[Content_Types].xml`` and a ``word/``,
  ``xl/`` or ``ppt/`` part tree.  Macros live in ``vbaProject.bin`` and are
  announced by macro content types in the manifest.
* **OLE compound files** (legacy ``doc`` / ``xls`` / ``ppt``): macros live
  in ``Macros``, ``_VBA_PROJECT_CUR`` or ``VBA`` storages, read with olefile.

The scanner exists mainly for the spoofing case: a ``.docx`` name on a file
that carries VBA code is reported as a disguised macro-enabled document on
top of the macro finding itself.
"""
from __future__ import annotations

import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

from uploadguard.config import MacroScanPolicy, ScanPolicy
from uploadguard.core.extension_map import declared_extension
from uploadguard.core.results import MacroScanResult, ScanResult
from uploadguard.scanners.base import ThreatScanner

try:
    import olefile
    OLEFILE_AVAILABLE = True
except ImportError:
    OLEFILE_AVAILABLE = False
    olefile = None

logger = logging.getLogger(__name__)

CONTENT_TYPES_PART = "[Content_Types].xml"
#: Upper bound on manifest bytes read; real manifests are a few KB.
_MAX_CONTENT_TYPES_BYTES = 1024 * 1024

VBA_LOCATIONS: tuple[str, ...] = (
    "word/vbaProject.bin",
    "xl/vbaProject.bin",
    "ppt/vbaProject.bin",
    "vbaProject.bin",
)

MACRO_CONTENT_TYPES: tuple[str, ...] = (
    "application/vnd.ms-office.vbaProject",
    "application/vnd.ms-word.document.macroEnabled",
    "application/vnd.ms-word.template.macroEnabled",
    "application/vnd.ms-excel.sheet.macroEnabled",
    "application/vnd.ms-excel.template.macroEnabled",
    "application/vnd.ms-powerpoint.presentation.macroEnabled",
    "application/vnd.ms-powerpoint.template.macroEnabled",
)

OFFICE_ROOTS: tuple[str, ...] = ("word/", "xl/", "ppt/")

OLE_MACRO_STORAGES = frozenset({"macros", "_vba_project_cur", "vba"})
OLE_CONTROL_STORAGES = frozenset({"objectpool", "_1234567890"})

_ACTIVEX_RE = re.compile(r"activex[/\\]activex\d*\.(?:xml|bin)$", re.IGNORECASE)
_OLE_OBJECT_RE = re.compile(r"embeddings[/\\]oleObject\d*\.bin$", re.IGNORECASE)

_OLE_HEADER = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


@dataclass
class _Inspection:
    vba_location: str | None = None
    macro_types: list[str] = field(default_factory=list)
    control_count: int = 0

    @property
    def has_macros(self) -> bool:
        return self.vba_location is not None or bool(self.macro_types)


def disguise_extensions(policy: MacroScanPolicy) -> frozenset[str]:
    """Non-macro extensions that must not carry macros under *policy*."""
    return frozenset(policy.non_macro_extensions) - frozenset(policy.allowed_macro_extensions)


class MacroScanner(ThreatScanner):
    """Detect VBA macros and embedded controls in office documents."""

    name = "macro"
    result_type = MacroScanResult

    def _scan(
        self,
        path: Path,
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        with open(path, "rb") as fh:
            header = fh.read(len(_OLE_HEADER))

        if header == _OLE_HEADER:
            inspection = self._inspect_ole(path)
        elif zipfile.is_zipfile(path):
            inspection = self._inspect_ooxml(path)
        else:
            inspection = None

        if inspection is None:
            return self._result(["File is not a valid Office document"])

        macro_policy = policy.macro
        findings: list[str] = []
        if inspection.has_macros and macro_policy.block_macros:
            if inspection.vba_location is not None:
                findings.append(f"VBA macro detected: {inspection.vba_location}")
            for content_type in inspection.macro_types:
                findings.append(f"Macro content type detected: {content_type}")

        if inspection.control_count and macro_policy.block_legacy_controls:
            findings.append(f"ActiveX control detected: {inspection.control_count} control(s)")

        extension = declared_extension(declared_name or path.name)
        if inspection.has_macros and extension in disguise_extensions(macro_policy):
            findings.append(f"Macro-enabled document disguised as .{extension}")

        return self._result(
            findings,
            has_macros=inspection.has_macros,
            has_legacy_controls=inspection.control_count > 0,
        )

    # ------------------------------------------------------------------
    # Container inspection
    # ------------------------------------------------------------------

    @staticmethod
    def _inspect_ooxml(path: Path) -> _Inspection | None:
        try:
            zf = zipfile.ZipFile(path)
        except zipfile.BadZipFile:
            return None

        with zf:
            names = zf.namelist()
            name_set = set(names)
            if CONTENT_TYPES_PART not in name_set:
                return None
            if not any(name.startswith(OFFICE_ROOTS) for name in names):
                return None

            inspection = _Inspection()
            for location in VBA_LOCATIONS:
                if location in name_set:
                    inspection.vba_location = location
                    break
            else:
                for name in names:
                    if name.lower().endswith("vbaproject.bin"):
                        inspection.vba_location = name
                        break

            with zf.open(CONTENT_TYPES_PART) as member:
                manifest = member.read(_MAX_CONTENT_TYPES_BYTES).decode("utf-8", "replace").lower()
            inspection.macro_types = [t for t in MACRO_CONTENT_TYPES if t.lower() in manifest]

            inspection.control_count = sum(
                1 for name in names if _ACTIVEX_RE.search(name) or _OLE_OBJECT_RE.search(name)
            )
        return inspection

    @staticmethod
    def _inspect_ole(path: Path) -> _Inspection | None:
        if not OLEFILE_AVAILABLE:
            raise RuntimeError("olefile is required to inspect OLE compound documents")
        if not olefile.isOleFile(str(path)):
            return None

        inspection = _Inspection()
        controls: set[str] = set()
        with olefile.OleFileIO(str(path)) as ole:
            for entry in ole.listdir(streams=True, storages=True):
                parts = [part.lower() for part in entry]
                if inspection.vba_location is None and OLE_MACRO_STORAGES.intersection(parts):
                    inspection.vba_location = "/".join(entry)
                # Each embedded object is one storage directly under the pool.
                if len(parts) >= 2 and parts[0] in OLE_CONTROL_STORAGES:
                    controls.add(parts[1])
        inspection.control_count = len(controls)
        logger.debug(
            "OLE inspection of %s: vba=%s controls=%d",
            path,
            inspection.vba_location,
            inspection.control_count,
        )
        return inspection
