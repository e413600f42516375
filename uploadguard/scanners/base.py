"""Abstract threat scanner interface.

Every scanner follows the same contract:

1. validate file access via the injected
   :class:`~uploadguard.core.access.AccessValidator`; a rejection is the only
   finding and nothing is read;
2. check the content is the format the scanner understands;
3. run its detection passes in a fixed order;
4. return a :class:`~uploadguard.core.results.ScanResult`, safe iff no findings.

Findings are data, never exceptions.  An exception escaping a detection pass
means the file could not actually be inspected, so :meth:`ThreatScanner.scan`
converts it into an unsafe result instead of letting the file through.

Usage::

    from uploadguard.scanners.base import ThreatScanner

    class NullScanner(ThreatScanner):
        name = "null"

        def _scan(self, path, policy, *, declared_name=None):
            return self.result_type.from_findings([], scanner=self.name)
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import ClassVar

from uploadguard.config import ScanPolicy
from uploadguard.core.access import AccessValidator
from uploadguard.core.format_identifier import FormatIdentifier
from uploadguard.core.results import ScanResult

logger = logging.getLogger(__name__)


class ThreatScanner(ABC):
    """Base class for format-specific threat scanners.

    Args:
        access_validator: Validator run before the file is opened.  A fresh
            :class:`AccessValidator` is created when omitted.
        format_identifier: Identifier used by scanners that branch on the
            detected type.  A fresh :class:`FormatIdentifier` is created when
            omitted.
    """

    #: Short scanner name, used in results, logs and span names.
    name: ClassVar[str] = "scanner"
    #: Result class returned by this scanner.
    result_type: ClassVar[type[ScanResult]] = ScanResult

    def __init__(
        self,
        *,
        access_validator: AccessValidator | None = None,
        format_identifier: FormatIdentifier | None = None,
    ) -> None:
        self._access = access_validator or AccessValidator()
        self._identifier = format_identifier or FormatIdentifier()

    def scan(
        self,
        path: str | os.PathLike[str],
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        """Scan the file at *path* under *policy*.

        Args:
            path: File to scan.
            policy: Immutable scan policy.
            declared_name: Client-supplied file name, used only by checks
                that compare it against the content.

        Returns:
            The scanner's result.  Never raises.
        """
        return self._guarded(
            path,
            policy,
            lambda resolved: self._scan(resolved, policy, declared_name=declared_name),
        )

    @abstractmethod
    def _scan(
        self,
        path: Path,
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        """Run the detection passes on an access-validated *path*."""

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _guarded(
        self,
        path: str | os.PathLike[str],
        policy: ScanPolicy,
        body: Callable[[Path], ScanResult],
    ) -> ScanResult:
        decision = self._access.ensure_allowed(path, policy)
        if not decision.allowed:
            return self.result_type.rejected(decision.reason or "Access denied", scanner=self.name)

        try:
            return body(Path(path))
        except Exception as exc:
            logger.exception("%s scanner failed on %s", self.name, os.fspath(path))
            return self.result_type.rejected(
                f"Scan failed: {type(exc).__name__}: {exc}", scanner=self.name
            )

    def _result(self, findings: list[str], **flags: object) -> ScanResult:
        result = self.result_type.from_findings(findings, scanner=self.name, **flags)
        logger.debug(
            "%s scan complete: safe=%s findings=%d", self.name, result.safe, len(result.threats)
        )
        return result

    @staticmethod
    def _read_bytes(path: Path) -> bytes:
        with open(path, "rb") as fh:
            return fh.read()

    @staticmethod
    def _read_text(path: Path) -> str:
        """Read *path* as text, mapping undecodable bytes one-to-one."""
        with open(path, "rb") as fh:
            return fh.read().decode("latin-1")
