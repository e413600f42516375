"""UploadGuard: content-security scanning for uploaded files.

Typical use::

    from uploadguard import scan_file

    result = scan_file("/srv/uploads/tmp/abc123", declared_name="invoice.pdf")
    if not result.safe:
        reject(result.threats)
"""

from uploadguard.config import ScanPolicy, get_policy
from uploadguard.core.access import AccessValidator
from uploadguard.core.engine import ScanEngine, scan_file
from uploadguard.core.format_identifier import FormatIdentifier
from uploadguard.core.results import FileScanResult, ScanResult

__all__ = [
    "AccessValidator",
    "FileScanResult",
    "FormatIdentifier",
    "ScanEngine",
    "ScanPolicy",
    "ScanResult",
    "get_policy",
    "scan_file",
]
