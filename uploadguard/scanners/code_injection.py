"""Embedded server-side script detection.

:class:`CodeInjectionScanner` looks for PHP-style script openers, calls to
dangerous functions, high-confidence composite patterns and known web shell
names inside uploaded content.

Files that identify as binary media (raster images, audio, video, archives,
PDF and office containers) are skipped: incidental ``<?`` or ``eval(`` byte
runs inside compressed payloads are noise, and script hidden in image
metadata is the :class:`~uploadguard.scanners.metadata.MetadataScanner`'s job.

Function matching uses a word boundary plus an opening parenthesis, so
``evaluate(`` and ``my_system(`` do not count as ``eval(`` or ``system(``.
"""
from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path

from uploadguard.config import CodeScanPolicy, ScanPolicy
from uploadguard.core.format_identifier import PREFIX_SIZE, custom_signature_entries, is_binary_media
from uploadguard.core.results import CodeScanResult, ScanResult
from uploadguard.scanners.base import ThreatScanner

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Detection tables
# ---------------------------------------------------------------------------

DANGEROUS_FUNCTIONS: tuple[str, ...] = (
    # Code execution
    "eval", "assert", "create_function", "call_user_func", "call_user_func_array",
    # Command execution
    "exec", "shell_exec", "system", "passthru", "popen", "proc_open", "pcntl_exec",
    # File system
    "file_put_contents", "file_get_contents", "fopen", "fwrite", "fputs",
    # Decoding, usually paired with eval
    "base64_decode", "gzinflate", "gzuncompress", "str_rot13", "convert_uudecode",
    # Inclusion
    "include", "include_once", "require", "require_once",
    # Variable injection
    "extract", "parse_str",
    # Regex with code execution
    "preg_replace", "mb_ereg_replace",
    # File manipulation
    "move_uploaded_file", "copy", "rename", "unlink", "chmod", "chown", "chgrp",
)

STRICT_FUNCTIONS: tuple[str, ...] = (
    "eval", "assert", "exec", "shell_exec", "system", "passthru", "proc_open",
)

#: Composite patterns, keyed by regex source so they can be excluded by policy.
SUSPICIOUS_PATTERNS: dict[str, str] = {
    r"<script[^>]*language\s*=\s*[\"']?php": "script element with PHP language",
    r"<%[\s\S]*?%>": "ASP-style code block",
    r"\b(?:eval|assert)\s*\(\s*(?:base64_decode|gzinflate|gzuncompress|str_rot13)\s*\(": (
        "dynamic evaluation of decoded data"
    ),
    r"preg_replace\s*\(\s*[\"'](.).*?\1[a-zA-Z]*e[a-zA-Z]*[\"']": "preg_replace with /e modifier",
    r"\\x3c\\x3f": "hex-encoded script opener",
    r"\$_(?:GET|POST|REQUEST|COOKIE)\s*\[[^\]]*\]\s*\(": "request variable invoked as function",
}

WEB_SHELL_SIGNATURES: tuple[str, ...] = (
    "c99shell", "c99", "r57shell", "r57", "b374k", "wso shell", "FilesMan",
    "Safe0ver", "Tryag", "Angel Shell", "weevely",
)

_TAG_CHECKS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"<\?php\s", re.IGNORECASE), "PHP opening tag (<?php) detected"),
    (re.compile(r"<\?=\s*[a-zA-Z$_]", re.IGNORECASE), "PHP short echo tag (<?=) detected"),
    (
        re.compile(r"<\?(?!xml\s|xml\?)(?:\s+[a-zA-Z$_])", re.IGNORECASE),
        "PHP short tag (<?) detected",
    ),
)


@lru_cache(maxsize=256)
def _function_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(name)}\s*\(", re.IGNORECASE)


@lru_cache(maxsize=64)
def _web_shell_pattern(fragment: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(fragment)}\b", re.IGNORECASE)


def functions_for(policy: CodeScanPolicy) -> tuple[str, ...]:
    """Resolve the function list for the configured mode.

    ``default`` is the built-in list plus ``custom_functions``; ``strict`` is
    the most dangerous subset; ``custom`` is exactly ``scan_functions``.
    ``exclude_functions`` applies in every mode.
    """
    if policy.mode == "strict":
        functions = STRICT_FUNCTIONS
    elif policy.mode == "custom":
        functions = policy.scan_functions
    else:
        functions = DANGEROUS_FUNCTIONS + policy.custom_functions
    excluded = {f.lower() for f in policy.exclude_functions}
    return tuple(f for f in dict.fromkeys(functions) if f.lower() not in excluded)


def patterns_for(policy: CodeScanPolicy) -> dict[str, str]:
    patterns = dict(SUSPICIOUS_PATTERNS)
    for source in policy.custom_patterns:
        patterns.setdefault(source, source)
    for source in policy.exclude_patterns:
        patterns.pop(source, None)
    return patterns


class CodeInjectionScanner(ThreatScanner):
    """Detect server-side script code embedded in an upload."""

    name = "code_injection"
    result_type = CodeScanResult

    def _scan(
        self,
        path: Path,
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        content = self._read_bytes(path)
        media_type = self._identifier.identify(content[:PREFIX_SIZE], custom_signature_entries(policy))
        if is_binary_media(media_type):
            logger.debug("Skipping code scan of binary media %s (%s)", path, media_type)
            return self._result([], skipped_binary=True)

        text = content.decode("latin-1")
        findings: list[str] = []
        findings.extend(self._scan_tags(text))
        findings.extend(self._scan_functions(text, functions_for(policy.code)))
        findings.extend(self._scan_patterns(text, patterns_for(policy.code)))
        findings.extend(self._scan_web_shells(text))
        return self._result(findings)

    # ------------------------------------------------------------------
    # Detection passes
    # ------------------------------------------------------------------

    @staticmethod
    def _scan_tags(text: str) -> list[str]:
        return [message for pattern, message in _TAG_CHECKS if pattern.search(text)]

    @staticmethod
    def _scan_functions(text: str, functions: tuple[str, ...]) -> list[str]:
        return [
            f"Dangerous function detected: {name}()"
            for name in functions
            if _function_pattern(name).search(text)
        ]

    @staticmethod
    def _scan_patterns(text: str, patterns: dict[str, str]) -> list[str]:
        findings = []
        for source, label in patterns.items():
            try:
                matched = re.search(source, text, re.IGNORECASE) is not None
            except re.error as exc:
                logger.warning("Ignoring invalid code scan pattern %r: %s", source, exc)
                continue
            if matched:
                findings.append(f"Suspicious code pattern detected: {label}")
        return findings

    @staticmethod
    def _scan_web_shells(text: str) -> list[str]:
        return [
            f"Known web shell signature detected: {fragment}"
            for fragment in WEB_SHELL_SIGNATURES
            if _web_shell_pattern(fragment).search(text)
        ]
