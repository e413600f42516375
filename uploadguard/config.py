"""Scan policy configuration via Pydantic Settings.

Every scanner receives a :class:`ScanPolicy` value as an explicit argument; no
scanner reads environment variables or module globals on its own.  The
policy is immutable, so a single instance can be shared by concurrent scans.

Environment variables use the ``UPLOADGUARD_`` prefix and ``__`` as the
nested-section delimiter.  List-valued settings are given as JSON arrays::

    UPLOADGUARD_ARCHIVE__MAX_COMPRESSION_RATIO=50
    UPLOADGUARD_CODE__MODE=strict
    UPLOADGUARD_ACCESS__ALLOWED_ROOTS='["/srv/uploads"]'

Usage::

    from uploadguard.config import get_policy

    policy = get_policy()
    lenient = policy.model_copy(
        update={"archive": policy.archive.model_copy(update={"backend_fail_open": True})}
    )

The ``get_policy`` function is cached with ``functools.lru_cache``.  Clear the
cache with ``get_policy.cache_clear()`` between tests.
"""
from __future__ import annotations

import functools
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _normalise_extensions(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(v.strip().lower().lstrip(".") for v in values if v.strip())


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Format identification
# ---------------------------------------------------------------------------


class MimePolicy(_Section):
    """Content-type identification and extension matching."""

    strict_extension_check: bool = Field(
        default=True,
        description="Reject files whose detected type is not valid for the declared extension",
    )
    block_dangerous: bool = Field(
        default=True,
        description="Reject files whose detected type is in dangerous_types",
    )
    dangerous_types: tuple[str, ...] = Field(
        default=(
            "application/x-executable",
            "application/x-dosexec",
            "application/x-msdownload",
            "application/x-msdos-program",
            "application/x-sh",
            "application/x-shellscript",
            "application/x-php",
            "application/x-httpd-php",
            "application/x-perl",
            "application/x-python",
            "application/x-ruby",
            "application/javascript",
            "text/javascript",
            "application/x-bat",
            "application/x-msi",
            "application/java-archive",
            "application/x-elf",
            "application/x-mach-binary",
            "application/java-vm",
        ),
        description="Detected media types rejected outright",
    )
    custom_signatures: dict[str, str] = Field(
        default_factory=dict,
        description="Extra signatures as hex byte prefix -> media type, checked before built-ins",
    )

    @field_validator("custom_signatures")
    @classmethod
    def validate_custom_signatures(cls, v: dict[str, str]) -> dict[str, str]:
        for hex_prefix in v:
            try:
                bytes.fromhex(hex_prefix)
            except ValueError as exc:
                raise ValueError(f"custom signature {hex_prefix!r} is not valid hex") from exc
        return v


# ---------------------------------------------------------------------------
# Scanners
# ---------------------------------------------------------------------------


class CodeScanPolicy(_Section):
    """Embedded script and dangerous-function detection."""

    enabled: bool = True
    mode: Literal["default", "strict", "custom"] = Field(
        default="default",
        description=(
            "default: built-in list plus custom_functions minus exclusions; "
            "strict: the most dangerous functions only; "
            "custom: exactly scan_functions"
        ),
    )
    scan_functions: tuple[str, ...] = Field(
        default=(), description="Function list used when mode is 'custom'"
    )
    custom_functions: tuple[str, ...] = Field(
        default=(), description="Functions added to the built-in list in default mode"
    )
    exclude_functions: tuple[str, ...] = Field(
        default=(), description="Functions never reported, in any mode"
    )
    custom_patterns: tuple[str, ...] = Field(
        default=(), description="Additional regular expressions treated as suspicious"
    )
    exclude_patterns: tuple[str, ...] = Field(
        default=(), description="Built-in suspicious patterns to disable, by exact source"
    )


class MarkupScanPolicy(_Section):
    """Vector markup (SVG) script and entity detection."""

    enabled: bool = True
    custom_dangerous_tags: tuple[str, ...] = ()
    exclude_tags: tuple[str, ...] = ()
    custom_dangerous_attributes: tuple[str, ...] = ()
    exclude_attributes: tuple[str, ...] = ()


class DocumentScanPolicy(_Section):
    """Page-description document (PDF) action detection."""

    enabled: bool = True
    custom_actions: tuple[str, ...] = ()
    exclude_actions: tuple[str, ...] = ()
    allow_external_links: bool = Field(
        default=False,
        description="Track external links in has_external_links without reporting them",
    )
    max_compressed_streams: int = Field(
        default=50, ge=1, description="FlateDecode filters tolerated before flagging obfuscation"
    )
    max_hex_string_length: int = Field(
        default=500, ge=1, description="Longest inline hex string tolerated"
    )


class MacroScanPolicy(_Section):
    """Office document macro and legacy control detection."""

    enabled: bool = True
    block_macros: bool = True
    block_legacy_controls: bool = True
    non_macro_extensions: tuple[str, ...] = ("docx", "xlsx", "pptx", "dotx", "xltx", "potx")
    macro_extensions: tuple[str, ...] = ("docm", "xlsm", "pptm", "dotm", "xltm", "potm")
    allowed_macro_extensions: tuple[str, ...] = Field(
        default=(),
        description="Extensions removed from non_macro_extensions for the disguise check",
    )

    @field_validator("non_macro_extensions", "macro_extensions", "allowed_macro_extensions")
    @classmethod
    def normalise_extensions(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return _normalise_extensions(v)


class MetadataScanPolicy(_Section):
    """Raster image metadata inspection."""

    enabled: bool = True
    block_gps: bool = Field(
        default=False, description="Report GPS metadata as a threat instead of only flagging it"
    )
    strip_metadata: bool = Field(
        default=False, description="Re-encode safe images without metadata when a destination is given"
    )
    scanned_fields: tuple[str, ...] = (
        "Comment",
        "UserComment",
        "ImageDescription",
        "Artist",
        "Copyright",
        "Software",
        "ProcessingSoftware",
        "DocumentName",
        "HostComputer",
        "XPComment",
        "XPAuthor",
        "XPTitle",
        "XPSubject",
        "Make",
        "Model",
    )
    max_trailing_bytes: int = Field(
        default=100,
        ge=0,
        description="Bytes tolerated after the image end marker",
    )


class ArchivePolicy(_Section):
    """Archive enumeration limits and entry rules."""

    enabled: bool = True
    max_compression_ratio: float = Field(
        default=100.0, gt=0, description="Uncompressed/on-disk ratio above which a zip bomb is reported"
    )
    max_uncompressed_size: int = Field(
        default=500 * 1024 * 1024, gt=0, description="Total uncompressed bytes allowed"
    )
    max_files_count: int = Field(default=10_000, gt=0)
    max_nesting_depth: int = Field(
        default=3, gt=0, description="Nested archives deeper than this are rejected"
    )
    blocked_extensions: tuple[str, ...] = Field(
        default=(), description="Extensions blocked in addition to the built-in set"
    )
    exclude_extensions: tuple[str, ...] = Field(
        default=(), description="Built-in blocked extensions to allow"
    )
    archive_extensions: tuple[str, ...] = (
        "zip", "tar", "gz", "tgz", "bz2", "tbz2", "xz", "txz", "7z", "rar", "cab", "iso",
    )
    max_nested_member_bytes: int = Field(
        default=100 * 1024 * 1024,
        gt=0,
        description="Largest nested archive member copied out for recursive inspection",
    )
    backend_fail_open: bool = Field(
        default=False,
        description="Accept archives whose format backend is unavailable instead of rejecting them",
    )

    @field_validator("blocked_extensions", "exclude_extensions", "archive_extensions")
    @classmethod
    def normalise_extensions(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return _normalise_extensions(v)


# ---------------------------------------------------------------------------
# Access and logging
# ---------------------------------------------------------------------------


class AccessPolicy(_Section):
    """File access validation."""

    check_symlinks: bool = True
    allowed_roots: tuple[Path, ...] | None = Field(
        default=None,
        description="Directories scanned files must live under; None selects the defaults",
    )
    storage_root: Path | None = Field(
        default=None,
        description="Application storage directory added to the default roots",
    )


class LoggingPolicy(_Section):
    """Security event emission."""

    enabled: bool = True
    detailed: bool = Field(
        default=True, description="Include the file size and hash in event context"
    )
    hash_algorithm: str = "sha256"


# ---------------------------------------------------------------------------
# Root policy
# ---------------------------------------------------------------------------


class ScanPolicy(BaseSettings):
    """UploadGuard scan policy.

    Environment variables are read case-insensitively.  A ``.env`` file in the
    working directory is loaded automatically when present.
    """

    model_config = SettingsConfigDict(
        env_prefix="UPLOADGUARD_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    mime: MimePolicy = Field(default_factory=MimePolicy)
    code: CodeScanPolicy = Field(default_factory=CodeScanPolicy)
    markup: MarkupScanPolicy = Field(default_factory=MarkupScanPolicy)
    document: DocumentScanPolicy = Field(default_factory=DocumentScanPolicy)
    macro: MacroScanPolicy = Field(default_factory=MacroScanPolicy)
    metadata: MetadataScanPolicy = Field(default_factory=MetadataScanPolicy)
    archive: ArchivePolicy = Field(default_factory=ArchivePolicy)
    access: AccessPolicy = Field(default_factory=AccessPolicy)
    logging: LoggingPolicy = Field(default_factory=LoggingPolicy)


@functools.lru_cache(maxsize=1)
def get_policy() -> ScanPolicy:
    """Return the cached default policy.

    The first call reads environment variables (and ``.env``).  Subsequent
    calls return the cached instance.
    """
    return ScanPolicy()
