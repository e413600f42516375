"""Archive inspection without extraction.

:class:`ArchiveInspector` enumerates archive entries from the archive's own
metadata and evaluates each against the archive policy:

* running compression ratio (uncompressed total / bytes on disk)
* running uncompressed size
* entry count
* path traversal in entry names and link targets
* blocked extensions, including one hidden before a benign final extension
* nested archives, inspected recursively with ``depth + 1``

Every limit is checked while enumerating, so a hostile archive is abandoned
at the first entry that breaks one.  Entry payloads are never read, except
for nested ZIP / tar members, which are copied through a bounded spooled
temporary file so they can be inspected in turn.

Supported containers:

============  ==========================================================
ZIP           stdlib ``zipfile`` central directory
tar family    stdlib ``tarfile`` headers (plain, gzip, bzip2, xz)
gzip / bz2 /  single compressed stream, size counted by streaming
xz            decompression with an early exit
7z            ``py7zr`` metadata listing (optional dependency)
RAR           no backend; rejected unless ``backend_fail_open`` is set
============  ==========================================================
"""
from __future__ import annotations

import bz2
import contextlib
import functools
import gzip
import logging
import lzma
import os
import re
import struct
import tarfile
import tempfile
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path, PurePosixPath
from typing import IO, Optional

from uploadguard.config import ArchivePolicy, ScanPolicy
from uploadguard.core.results import ArchiveEntry, ArchiveScanResult, ScanResult
from uploadguard.scanners.base import ThreatScanner

try:
    import py7zr
    PY7ZR_AVAILABLE = True
except ImportError:
    PY7ZR_AVAILABLE = False
    py7zr = None

logger = logging.getLogger(__name__)

#: Bytes read by the container probe; covers the tar magic at offset 257.
PROBE_SIZE = 262
_CHUNK_SIZE = 64 * 1024
#: Nested members larger than this spill from memory to disk while spooled.
_SPOOL_MEMORY_BYTES = 8 * 1024 * 1024

_ZIP_EOCD = b"PK\x05\x06"
_ZIP_EOCD_SIZE = 22
_ZIP64_LOCATOR = b"PK\x06\x07"
_ZIP64_EOCD = b"PK\x06\x06"

BLOCKED_EXTENSIONS = frozenset({
    # Server-side scripts
    "php", "phtml", "php3", "php4", "php5", "php7", "phps", "phar",
    "asp", "aspx", "jsp", "jspx", "cfm",
    # Windows executables and scripts
    "exe", "com", "bat", "cmd", "ps1", "vbs", "vbe", "js", "jse", "wsf",
    "wsh", "msc", "scr", "pif", "hta", "cpl", "msi",
    # Unix shells
    "sh", "bash", "zsh", "csh", "ksh",
    # Java
    "jar", "war", "ear",
    # Libraries
    "dll", "so", "dylib",
})

_TRAVERSAL_RE = re.compile(r"(?:^|[\\/])\.\.(?:[\\/]|$)")
_ABSOLUTE_RE = re.compile(r"^(?:[\\/]|[A-Za-z]:)")
_ENCODED_TRAVERSAL_RE = re.compile(r"(?:%2e|\.)(?:%2e|\.)(?:%2f|%5c)|%2e%2e[\\/]", re.IGNORECASE)

#: Opens a nested member's payload, or ``None`` when the format has no
#: random access to individual members.
MemberOpener = Optional[Callable[[], Optional[IO[bytes]]]]

_ARCHIVE_ERRORS: tuple[type[BaseException], ...] = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    tarfile.TarError,
    lzma.LZMAError,
    gzip.BadGzipFile,
    EOFError,
    NotImplementedError,
)
if PY7ZR_AVAILABLE:
    _ARCHIVE_ERRORS += (py7zr.exceptions.Bad7zFile,)


# ---------------------------------------------------------------------------
# Entry checks
# ---------------------------------------------------------------------------


def detect_container(probe: bytes) -> str | None:
    """Identify the container format from its first :data:`PROBE_SIZE` bytes."""
    if probe.startswith((b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")):
        return "zip"
    if probe.startswith(b"\x1f\x8b"):
        return "gzip"
    if probe.startswith(b"BZh"):
        return "bzip2"
    if probe.startswith(b"\xfd7zXZ\x00"):
        return "xz"
    if probe.startswith(b"Rar!\x1a\x07"):
        return "rar"
    if probe.startswith(b"7z\xbc\xaf\x27\x1c"):
        return "7z"
    if probe[257:262] == b"ustar":
        return "tar"
    return None


def traversal_findings(name: str) -> list[str]:
    """Path traversal findings for an archive entry name."""
    findings = []
    if _TRAVERSAL_RE.search(name):
        findings.append(f"Path traversal detected: {name}")
    if _ABSOLUTE_RE.search(name):
        findings.append(f"Absolute path detected in archive: {name}")
    if _ENCODED_TRAVERSAL_RE.search(name):
        findings.append(f"URL-encoded path traversal detected: {name}")
    if "\x00" in name:
        findings.append(f"Null byte in filename detected: {name!r}")
    return findings


def blocked_extensions_for(policy: ArchivePolicy) -> frozenset[str]:
    return (BLOCKED_EXTENSIONS | frozenset(policy.blocked_extensions)) - frozenset(
        policy.exclude_extensions
    )


def _basename(name: str) -> str:
    return name.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def extension_findings(name: str, blocked: frozenset[str]) -> list[str]:
    """Blocked final or hidden secondary extension findings."""
    parts = _basename(name).lower().split(".")
    if len(parts) < 2:
        return []
    if parts[-1] in blocked:
        return [f"Dangerous file detected in archive: {name}"]
    if any(part in blocked for part in parts[1:-1]):
        return [f"Hidden dangerous extension detected: {name}"]
    return []


def is_archive_name(name: str, policy: ArchivePolicy) -> bool:
    suffix = PurePosixPath(_basename(name)).suffix.lower().lstrip(".")
    return bool(suffix) and suffix in policy.archive_extensions


def _link_escapes(target: str) -> bool:
    return bool(_TRAVERSAL_RE.search(target) or _ABSOLUTE_RE.search(target))


def _gzip_member_name(probe: bytes) -> str | None:
    """Original file name stored in a gzip header (FNAME), if any."""
    if len(probe) < 10 or not probe[3] & 0x08:
        return None
    pos = 10
    if probe[3] & 0x04:  # FEXTRA
        if len(probe) < pos + 2:
            return None
        pos += 2 + struct.unpack_from("<H", probe, pos)[0]
    end = probe.find(b"\x00", pos)
    if end < 0:
        return None
    return probe[pos:end].decode("latin-1")


def _strip_compression_suffix(label: str) -> str:
    for suffix in (".gz", ".bz2", ".xz", ".gzip"):
        if label.lower().endswith(suffix):
            return label[: -len(suffix)]
    return label


# ---------------------------------------------------------------------------
# ArchiveInspector
# ---------------------------------------------------------------------------


class ArchiveInspector(ThreatScanner):
    """Enumerate archive entries and evaluate them against the archive policy.

    :meth:`scan` takes an explicit ``depth``; nested archives are inspected
    with ``depth + 1`` and rejected once ``depth`` reaches
    ``policy.archive.max_nesting_depth``.
    """

    name = "archive"
    result_type = ArchiveScanResult

    def scan(
        self,
        path: str | os.PathLike[str],
        policy: ScanPolicy,
        depth: int = 0,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        """Inspect the archive at *path*, starting at nesting level *depth*."""
        return self._guarded(
            path,
            policy,
            lambda resolved: self._inspect_path(resolved, policy, depth, declared_name),
        )

    def _scan(
        self,
        path: Path,
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        return self._inspect_path(path, policy, 0, declared_name)

    def _inspect_path(
        self,
        path: Path,
        policy: ScanPolicy,
        depth: int,
        declared_name: str | None,
    ) -> ScanResult:
        with open(path, "rb") as fh:
            disk_size = os.fstat(fh.fileno()).st_size
            return self._inspect(fh, disk_size, policy, depth, declared_name or path.name)

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _inspect(
        self,
        fh: IO[bytes],
        disk_size: int,
        policy: ScanPolicy,
        depth: int,
        label: str,
    ) -> ScanResult:
        limits = policy.archive
        if depth >= limits.max_nesting_depth:
            return self._result(["Archive nesting depth exceeds limit"])

        fh.seek(0)
        probe = fh.read(PROBE_SIZE)
        fh.seek(0)
        kind = detect_container(probe)
        if kind is None:
            return self._result(["Unsupported archive format"])
        if kind == "rar":
            return self._backend_unavailable("RAR", "a RAR", limits)
        if kind == "7z" and not PY7ZR_AVAILABLE:
            return self._backend_unavailable("7Z", "the py7zr", limits)
        if kind == "zip":
            # Declared count, read before zipfile parses the central directory.
            declared = _zip_declared_entries(fh, disk_size)
            if declared is not None and declared > limits.max_files_count:
                return self._result(
                    [f"Archive contains too many files ({declared} > {limits.max_files_count})"]
                )

        blocked = blocked_extensions_for(limits)
        findings: list[str] = []
        files_count = 0
        total = 0

        entries = self._entries(kind, fh, disk_size, limits, label, probe)
        try:
            with contextlib.closing(entries):
                for entry, opener in entries:
                    files_count += 1
                    total += entry.uncompressed_size

                    if disk_size > 0 and total / disk_size > limits.max_compression_ratio:
                        findings.append(
                            "Potential zip bomb detected: compression ratio "
                            f"{total / disk_size:.1f}:1"
                        )
                        break
                    if total > limits.max_uncompressed_size:
                        findings.append("Archive uncompressed size exceeds limit")
                        break
                    if files_count > limits.max_files_count:
                        findings.append(
                            f"Archive contains too many files ({files_count} > {limits.max_files_count})"
                        )
                        break

                    findings.extend(traversal_findings(entry.name))
                    if entry.link_target is not None and _link_escapes(entry.link_target):
                        findings.append(
                            f"Link target escapes archive: {entry.name} -> {entry.link_target}"
                        )
                    if entry.is_dir:
                        continue
                    findings.extend(extension_findings(entry.name, blocked))
                    if is_archive_name(entry.name, limits):
                        findings.extend(self._inspect_nested(entry, opener, policy, depth))
        except _ARCHIVE_ERRORS as exc:
            logger.info("Archive %s could not be read as %s: %s", label, kind, exc)
            findings.append(f"Failed to read {kind.upper()} archive: {exc}")

        logger.debug(
            "Archive %s inspected: kind=%s depth=%d files=%d uncompressed=%d findings=%d",
            label,
            kind,
            depth,
            files_count,
            total,
            len(findings),
        )
        return self._result(findings, files_count=files_count, uncompressed_size=total)

    def _inspect_nested(
        self,
        entry: ArchiveEntry,
        opener: MemberOpener,
        policy: ScanPolicy,
        depth: int,
    ) -> list[str]:
        if opener is None:
            return [f"Nested archive detected: {entry.name}"]

        limit = policy.archive.max_nested_member_bytes
        if entry.uncompressed_size > limit:
            return [f"Nested archive too large to inspect: {entry.name}"]

        member = opener()
        if member is None:
            return [f"Nested archive detected: {entry.name}"]

        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MEMORY_BYTES) as spool:
            with member:
                copied = _copy_bounded(member, spool, limit)
            if copied is None:
                return [f"Nested archive too large to inspect: {entry.name}"]
            nested = self._inspect(spool, copied, policy, depth + 1, entry.name)
        return [f"{entry.name}: {threat}" for threat in nested.threats]

    def _backend_unavailable(self, kind: str, backend: str, limits: ArchivePolicy) -> ScanResult:
        message = f"{kind} scanning requires {backend} backend"
        if limits.backend_fail_open:
            logger.warning("%s; archive accepted unscanned because backend_fail_open is set", message)
            return self._result([], backend_unavailable=True)
        return self._result([message], backend_unavailable=True)

    # ------------------------------------------------------------------
    # Enumerators
    # ------------------------------------------------------------------

    def _entries(
        self,
        kind: str,
        fh: IO[bytes],
        disk_size: int,
        limits: ArchivePolicy,
        label: str,
        probe: bytes,
    ) -> Iterator[tuple[ArchiveEntry, MemberOpener]]:
        if kind == "zip":
            return _zip_entries(fh)
        if kind == "7z":
            return _sevenzip_entries(fh)
        payload = _gzip_member_name(probe) if kind == "gzip" else None
        return _tar_or_stream_entries(
            kind, fh, disk_size, limits, payload or _strip_compression_suffix(label)
        )


def _zip_declared_entries(fh: IO[bytes], disk_size: int) -> int | None:
    """Total entry count from the end-of-central-directory record, or ``None``."""
    tail_size = min(disk_size, _ZIP_EOCD_SIZE + 0xFFFF)
    fh.seek(disk_size - tail_size)
    tail = fh.read(tail_size)
    fh.seek(0)
    pos = tail.rfind(_ZIP_EOCD)
    if pos < 0 or pos + _ZIP_EOCD_SIZE > len(tail):
        return None
    total = struct.unpack_from("<H", tail, pos + 10)[0]
    if total != 0xFFFF:
        return total

    locator = pos - 20
    if locator < 0 or tail[locator:locator + 4] != _ZIP64_LOCATOR:
        return total
    fh.seek(struct.unpack_from("<Q", tail, locator + 8)[0])
    record = fh.read(56)
    fh.seek(0)
    if len(record) < 40 or not record.startswith(_ZIP64_EOCD):
        return total
    return struct.unpack_from("<Q", record, 32)[0]


def _zip_entries(fh: IO[bytes]) -> Iterator[tuple[ArchiveEntry, MemberOpener]]:
    with zipfile.ZipFile(fh) as zf:
        for info in zf.infolist():
            entry = ArchiveEntry(
                name=info.filename,
                compressed_size=info.compress_size,
                uncompressed_size=info.file_size,
                is_dir=info.is_dir(),
            )
            yield entry, functools.partial(zf.open, info)


def _tar_or_stream_entries(
    kind: str,
    fh: IO[bytes],
    disk_size: int,
    limits: ArchivePolicy,
    payload_name: str,
) -> Iterator[tuple[ArchiveEntry, MemberOpener]]:
    try:
        tf = tarfile.open(fileobj=fh, mode="r:*")
    except tarfile.ReadError:
        if kind == "tar":
            raise
        fh.seek(0)
        yield from _stream_entries(kind, fh, disk_size, limits, payload_name)
        return

    with tf:
        for member in tf:
            link_target = member.linkname if (member.issym() or member.islnk()) else None
            entry = ArchiveEntry(
                name=member.name,
                compressed_size=member.size,
                uncompressed_size=member.size,
                is_dir=member.isdir(),
                link_target=link_target,
            )
            opener = functools.partial(tf.extractfile, member) if member.isfile() else None
            yield entry, opener


_STREAM_OPENERS: dict[str, Callable[[IO[bytes]], IO[bytes]]] = {
    "gzip": lambda fh: gzip.GzipFile(fileobj=fh, mode="rb"),
    "bzip2": lambda fh: bz2.BZ2File(fh, mode="rb"),
    "xz": lambda fh: lzma.LZMAFile(fh, mode="rb"),
}


def _stream_entries(
    kind: str,
    fh: IO[bytes],
    disk_size: int,
    limits: ArchivePolicy,
    payload_name: str,
) -> Iterator[tuple[ArchiveEntry, MemberOpener]]:
    """Single compressed payload, sized by decompressing up to the policy limits."""
    limit = limits.max_uncompressed_size
    if disk_size > 0:
        limit = min(limit, int(limits.max_compression_ratio * disk_size))

    size = 0
    with _STREAM_OPENERS[kind](fh) as stream:
        while size <= limit:
            chunk = stream.read(_CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
    yield ArchiveEntry(name=payload_name, compressed_size=disk_size, uncompressed_size=size), None


def _sevenzip_entries(fh: IO[bytes]) -> Iterator[tuple[ArchiveEntry, MemberOpener]]:
    with py7zr.SevenZipFile(fh, mode="r") as archive:
        for info in archive.list():
            entry = ArchiveEntry(
                name=info.filename,
                compressed_size=info.compressed or 0,
                uncompressed_size=info.uncompressed or 0,
                is_dir=info.is_directory,
            )
            yield entry, None


def _copy_bounded(source: IO[bytes], target: IO[bytes], limit: int) -> int | None:
    """Copy *source* into *target*; ``None`` once more than *limit* bytes arrive."""
    copied = 0
    while True:
        chunk = source.read(_CHUNK_SIZE)
        if not chunk:
            break
        copied += len(chunk)
        if copied > limit:
            return None
        target.write(chunk)
    target.seek(0)
    return copied
