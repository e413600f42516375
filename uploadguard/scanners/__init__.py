"""Format-specific threat scanners.

Public re-exports for the scanners package::

    from uploadguard.scanners import ArchiveInspector, MarkupInjectionScanner
"""

from uploadguard.scanners.archive import ArchiveInspector
from uploadguard.scanners.base import ThreatScanner
from uploadguard.scanners.code_injection import CodeInjectionScanner
from uploadguard.scanners.document_action import DocumentActionScanner
from uploadguard.scanners.macro import MacroScanner
from uploadguard.scanners.markup import MarkupInjectionScanner
from uploadguard.scanners.metadata import MetadataScanner, strip_metadata

__all__ = [
    "ArchiveInspector",
    "CodeInjectionScanner",
    "DocumentActionScanner",
    "MacroScanner",
    "MarkupInjectionScanner",
    "MetadataScanner",
    "ThreatScanner",
    "strip_metadata",
]
