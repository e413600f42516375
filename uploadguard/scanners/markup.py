"""Script and entity injection detection for SVG uploads.

SVG is XML that browsers render with scripting enabled, so an "image" can
carry ``<script>`` elements, ``onload`` handlers or ``javascript:`` links.

The document type declaration is examined before anything else.  External
identifiers (``SYSTEM`` / ``PUBLIC``), parameter entities and internal
entities that expand other entities end the scan immediately: nothing in this
package ever hands the markup to an XML parser, and the declaration alone is
enough to reject the file.  A declaration without those constructs is
tolerated.
"""
from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path

from uploadguard.config import MarkupScanPolicy, ScanPolicy
from uploadguard.core.extension_map import declared_extension
from uploadguard.core.results import MarkupScanResult, ScanResult
from uploadguard.scanners.base import ThreatScanner

logger = logging.getLogger(__name__)

DANGEROUS_TAGS: tuple[str, ...] = (
    "script",
    "iframe",
    "embed",
    "object",
    "use",
    "foreignObject",
    "animate",
    "animateTransform",
    "set",
)

EVENT_ATTRIBUTES: tuple[str, ...] = (
    "onload", "onclick", "onmouseover", "onmouseout", "onmousemove",
    "onmouseenter", "onmouseleave", "onfocus", "onblur", "onchange",
    "oninput", "onsubmit", "onkeydown", "onkeyup", "onkeypress",
    "onerror", "onabort", "onresize", "onscroll", "onbegin", "onend",
    "onrepeat", "onactivate", "onfocusin", "onfocusout", "onunload",
)

DANGEROUS_PROTOCOLS: tuple[str, ...] = ("javascript:", "data:text/html", "vbscript:")

#: Predefined XML entities; references to these never expand further.
_PREDEFINED_ENTITIES = frozenset({"amp", "lt", "gt", "quot", "apos"})

_SVG_ROOT_RE = re.compile(r"<svg[^>]*>", re.IGNORECASE)
_QUOTED_RE = re.compile(r"\"[^\"]*\"|'[^']*'")
_DOCTYPE_HEAD_RE = re.compile(r"<!DOCTYPE\b(?:[^\[>\"']|\"[^\"]*\"|'[^']*')*", re.IGNORECASE)
_MARKUP_DECL_RE = re.compile(r"<!(?:ENTITY|NOTATION)\b(?:[^>\"']|\"[^\"]*\"|'[^']*')*>?", re.IGNORECASE)
_EXTERNAL_ID_RE = re.compile(r"\b(SYSTEM|PUBLIC)\b")
_PARAMETER_ENTITY_RE = re.compile(r"<!ENTITY\s+%", re.IGNORECASE)
_ENTITY_DECL_RE = re.compile(
    r"<!ENTITY\s+([A-Za-z_:][\w.:-]*)\s+([\"'])(.*?)\2", re.IGNORECASE | re.DOTALL
)
_ENTITY_REF_RE = re.compile(r"&([A-Za-z_:][\w.:-]*);")

_OBFUSCATION_CHECKS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"data:image/svg\+xml;base64,", re.IGNORECASE), "Base64 encoded SVG content detected"),
    (re.compile(r"%6F%6E|%3Cscript", re.IGNORECASE), "URL encoded suspicious content detected"),
    (re.compile(r"&#(x?[0-9a-f]+);.*script", re.IGNORECASE), "HTML entity obfuscation detected"),
    (re.compile(r"<!\[CDATA\[.*?script", re.IGNORECASE | re.DOTALL), "CDATA section with script detected"),
)


@lru_cache(maxsize=128)
def _tag_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(rf"<{re.escape(tag)}[\s>/]", re.IGNORECASE)


@lru_cache(maxsize=128)
def _attribute_pattern(attribute: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(attribute)}\s*=", re.IGNORECASE)


@lru_cache(maxsize=16)
def _protocol_pattern(protocol: str) -> re.Pattern[str]:
    # Browsers ignore whitespace and control characters inside a scheme.
    scheme = r"[\s\x00-\x1f]*".join(re.escape(ch) for ch in protocol)
    return re.compile(rf"(?:xlink:)?href\s*=\s*[\"']?[\s\x00-\x1f]*{scheme}", re.IGNORECASE)


def _resolve(builtin: tuple[str, ...], extra: tuple[str, ...], excluded: tuple[str, ...]) -> tuple[str, ...]:
    skip = {name.lower() for name in excluded}
    return tuple(name for name in dict.fromkeys(builtin + extra) if name.lower() not in skip)


def tags_for(policy: MarkupScanPolicy) -> tuple[str, ...]:
    return _resolve(DANGEROUS_TAGS, policy.custom_dangerous_tags, policy.exclude_tags)


def attributes_for(policy: MarkupScanPolicy) -> tuple[str, ...]:
    return _resolve(EVENT_ATTRIBUTES, policy.custom_dangerous_attributes, policy.exclude_attributes)


def entity_findings(text: str) -> tuple[list[str], bool]:
    """Inspect document type declarations for entity attacks.

    Returns:
        ``(findings, has_entity_declarations)``.
    """
    findings: list[str] = []
    has_entities = "<!entity" in text.lower()

    keywords: list[str] = []
    for declaration in (*_DOCTYPE_HEAD_RE.finditer(text), *_MARKUP_DECL_RE.finditer(text)):
        # Quoted literals may legitimately contain the keywords or brackets.
        keywords.extend(_EXTERNAL_ID_RE.findall(_QUOTED_RE.sub("", declaration.group(0))))
    for keyword in dict.fromkeys(keywords):
        findings.append(f"External entity reference detected in DOCTYPE: {keyword}")

    if _PARAMETER_ENTITY_RE.search(text):
        findings.append("Parameter entity declaration detected")

    declared = {m.group(1): m.group(3) for m in _ENTITY_DECL_RE.finditer(text)}
    for name, value in declared.items():
        refs = {ref for ref in _ENTITY_REF_RE.findall(value) if ref not in _PREDEFINED_ENTITIES}
        if refs:
            logger.debug("Entity %s expands %s", name, sorted(refs))
            findings.append("Recursive entity expansion detected")
            break

    return findings, has_entities


class MarkupInjectionScanner(ThreatScanner):
    """Detect script, handler, protocol and entity injection in SVG files."""

    name = "markup"
    result_type = MarkupScanResult

    def _scan(
        self,
        path: Path,
        policy: ScanPolicy,
        *,
        declared_name: str | None = None,
    ) -> ScanResult:
        text = self._read_text(path)

        findings, has_entities = entity_findings(text)
        if findings:
            return self._result(findings, has_entity_declarations=has_entities)

        if not _SVG_ROOT_RE.search(text):
            if declared_extension(declared_name or path.name) == "svg":
                return self._result(["Not a valid SVG file"], has_entity_declarations=has_entities)
            # Plain XML: the declaration checks above are all that apply.
            return self._result([], has_entity_declarations=has_entities)

        findings.extend(self._scan_tags(text, tags_for(policy.markup)))
        findings.extend(self._scan_attributes(text, attributes_for(policy.markup)))
        findings.extend(self._scan_protocols(text))
        findings.extend(self._scan_obfuscation(text))
        return self._result(findings, has_entity_declarations=has_entities)

    # ------------------------------------------------------------------
    # Detection passes
    # ------------------------------------------------------------------

    @staticmethod
    def _scan_tags(text: str, tags: tuple[str, ...]) -> list[str]:
        return [f"Dangerous tag detected: <{tag}>" for tag in tags if _tag_pattern(tag).search(text)]

    @staticmethod
    def _scan_attributes(text: str, attributes: tuple[str, ...]) -> list[str]:
        return [
            f"Event handler detected: {attribute}"
            for attribute in attributes
            if _attribute_pattern(attribute).search(text)
        ]

    @staticmethod
    def _scan_protocols(text: str) -> list[str]:
        return [
            f"Dangerous protocol detected: {protocol}"
            for protocol in DANGEROUS_PROTOCOLS
            if _protocol_pattern(protocol).search(text)
        ]

    @staticmethod
    def _scan_obfuscation(text: str) -> list[str]:
        return [message for pattern, message in _OBFUSCATION_CHECKS if pattern.search(text)]
