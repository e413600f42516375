"""Shared pytest configuration and fixtures for UploadGuard tests.

Every test builds its input files under ``tmp_path`` and scans them with a
policy whose only allowed root is that directory, so no test depends on the
system temp directory or on ``UPLOADGUARD_*`` variables in the environment.
"""
from __future__ import annotations

import io
import os
import struct
import zipfile
from pathlib import Path
from typing import Callable

import pytest

from uploadguard.config import AccessPolicy, ScanPolicy, get_policy
from uploadguard.core.format_identifier import FormatIdentifier

# Keep ambient configuration out of the tests
for _name in [n for n in os.environ if n.upper().startswith("UPLOADGUARD_")]:
    del os.environ[_name]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _make_zip(
    members: dict[str, bytes],
    compression: int = zipfile.ZIP_STORED,
) -> bytes:
    """Return in-memory ZIP bytes containing *members* in insertion order."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, data in members.items():
            zf.writestr(zipfile.ZipInfo(name), data, compress_type=compression)
    return buf.getvalue()


def _inflate_declared_sizes(data: bytes, uncompressed_size: int) -> bytes:
    """Rewrite every central directory entry to declare *uncompressed_size*.

    The payloads are untouched; only the sizes the archive claims change,
    which is all an inspector that never extracts can see.
    """
    buf = bytearray(data)
    pos = buf.find(b"PK\x01\x02")
    while pos >= 0:
        struct.pack_into("<I", buf, pos + 24, uncompressed_size)
        pos = buf.find(b"PK\x01\x02", pos + 4)
    return bytes(buf)


def _make_docx(*, with_macros: bool = False) -> bytes:
    """Minimal OOXML word-processing package, optionally carrying a VBA project."""
    content_types = '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    if with_macros:
        content_types += (
            '<Default Extension="bin" ContentType="application/vnd.ms-office.vbaProject"/>'
        )
    content_types += "</Types>"
    members = {
        "[Content_Types].xml": content_types.encode(),
        "word/document.xml": b"<w:document/>",
    }
    if with_macros:
        members["word/vbaProject.bin"] = b"\x00" * 64
    return _make_zip(members)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clear_policy_cache():
    get_policy.cache_clear()
    yield
    get_policy.cache_clear()


@pytest.fixture
def policy(tmp_path: Path) -> ScanPolicy:
    """Default policy with ``tmp_path`` as the only allowed root."""
    return ScanPolicy(access=AccessPolicy(allowed_roots=(tmp_path,)))


@pytest.fixture
def with_section(policy: ScanPolicy) -> Callable[..., ScanPolicy]:
    """Derive a policy with one section's fields overridden.

    ``with_section("archive", max_files_count=2)``
    """

    def _derive(section: str, **changes: object) -> ScanPolicy:
        current = getattr(policy, section)
        return policy.model_copy(update={section: current.model_copy(update=changes)})

    return _derive


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[[str, bytes], Path]:
    """Write bytes to ``tmp_path / name`` and return the path."""

    def _write(name: str, data: bytes) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    return _write


@pytest.fixture
def identifier() -> FormatIdentifier:
    """Signature-only identifier, independent of the local libmagic install."""
    return FormatIdentifier(use_magic=False)


@pytest.fixture
def make_zip() -> Callable[..., bytes]:
    return _make_zip


@pytest.fixture
def make_docx() -> Callable[..., bytes]:
    return _make_docx


@pytest.fixture
def inflate_declared_sizes() -> Callable[[bytes, int], bytes]:
    return _inflate_declared_sizes
