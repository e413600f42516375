"""Security event taxonomy and sinks.

The engine emits one :class:`SecurityEvent` per finding.  Sinks decide what
to do with them; the default :class:`LoggingSecurityEventSink` writes one
JSON record per event to the ``uploadguard.security`` logger and counts
events in Prometheus.

Usage::

    from uploadguard.services.security_log import LoggingSecurityEventSink

    sink = LoggingSecurityEventSink()
    engine = ScanEngine(event_sink=sink)

Custom sinks only need an ``emit(event)`` method; see
:class:`SecurityEventSink`.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from prometheus_client import Counter

from uploadguard.config import LoggingPolicy

logger = logging.getLogger(__name__)

#: Dedicated logger for event records, so deployments can route them apart
#: from diagnostic logs.
security_logger = logging.getLogger("uploadguard.security")

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

#: Incremented once per emitted security event.
#: Labels: ``event_type`` (:class:`EventType` value) and ``threat_level``
#: (:class:`ThreatLevel` value).
security_events_total = Counter(
    "uploadguard_security_events_total",
    "Total number of security events raised by upload scans",
    ["event_type", "threat_level"],
)


class EventType(str, Enum):
    """Classification of a security event."""

    MIME_MISMATCH = "mime_mismatch"
    DANGEROUS_FILE = "dangerous_file"
    CODE_INJECTION = "code_injection"
    MARKUP_INJECTION = "markup_injection"
    METADATA_THREAT = "metadata_threat"
    DOCUMENT_THREAT = "document_threat"
    GPS_DETECTED = "gps_detected"
    ENTITY_ATTACK = "entity_attack"
    ARCHIVE_THREAT = "archive_threat"
    MACRO_DETECTED = "macro_detected"
    SYMLINK_DETECTED = "symlink_detected"
    DECOMPRESSION_BOMB = "decompression_bomb"


class ThreatLevel(str, Enum):
    """Severity tiers, mapped onto logging levels by the logging sink."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


#: Default severity for each event type.
DEFAULT_LEVELS: Mapping[EventType, ThreatLevel] = MappingProxyType({
    EventType.MIME_MISMATCH: ThreatLevel.HIGH,
    EventType.DANGEROUS_FILE: ThreatLevel.CRITICAL,
    EventType.CODE_INJECTION: ThreatLevel.CRITICAL,
    EventType.MARKUP_INJECTION: ThreatLevel.HIGH,
    EventType.METADATA_THREAT: ThreatLevel.HIGH,
    EventType.DOCUMENT_THREAT: ThreatLevel.HIGH,
    EventType.GPS_DETECTED: ThreatLevel.LOW,
    EventType.ENTITY_ATTACK: ThreatLevel.CRITICAL,
    EventType.ARCHIVE_THREAT: ThreatLevel.HIGH,
    EventType.MACRO_DETECTED: ThreatLevel.HIGH,
    EventType.SYMLINK_DETECTED: ThreatLevel.CRITICAL,
    EventType.DECOMPRESSION_BOMB: ThreatLevel.CRITICAL,
})

_LOG_LEVELS: Mapping[ThreatLevel, int] = MappingProxyType({
    ThreatLevel.CRITICAL: logging.CRITICAL,
    ThreatLevel.HIGH: logging.ERROR,
    ThreatLevel.MEDIUM: logging.WARNING,
    ThreatLevel.LOW: logging.INFO,
})

#: Events raised by each scanner when no finding-specific override applies.
SCANNER_EVENT_TYPES: Mapping[str, EventType] = MappingProxyType({
    "code_injection": EventType.CODE_INJECTION,
    "markup": EventType.MARKUP_INJECTION,
    "document": EventType.DOCUMENT_THREAT,
    "macro": EventType.MACRO_DETECTED,
    "metadata": EventType.METADATA_THREAT,
    "archive": EventType.ARCHIVE_THREAT,
})

#: Finding fragments that override the scanner's event type, checked in order.
_FINDING_OVERRIDES: tuple[tuple[str, EventType], ...] = (
    ("symbolic link", EventType.SYMLINK_DETECTED),
    ("zip bomb", EventType.DECOMPRESSION_BOMB),
    ("decompression limit", EventType.DECOMPRESSION_BOMB),
    ("entity reference", EventType.ENTITY_ATTACK),
    ("entity declaration", EventType.ENTITY_ATTACK),
    ("entity expansion", EventType.ENTITY_ATTACK),
    ("gps location", EventType.GPS_DETECTED),
    ("does not match extension", EventType.MIME_MISMATCH),
    ("dangerous file type", EventType.DANGEROUS_FILE),
)


def classify(finding: str, scanner: str) -> EventType:
    """Map a finding produced by *scanner* to an :class:`EventType`."""
    lowered = finding.lower()
    for fragment, event_type in _FINDING_OVERRIDES:
        if fragment in lowered:
            return event_type
    return SCANNER_EVENT_TYPES.get(scanner, EventType.DANGEROUS_FILE)


@dataclass(frozen=True)
class SecurityEvent:
    """One finding, ready for a sink.

    Attributes:
        event_type: Taxonomy tag.
        threat_level: Severity tier.
        message: The finding text.
        context: File summary and the full finding list of the scan.
        timestamp: UTC time the event was created.
    """

    event_type: EventType
    threat_level: ThreatLevel
    message: str
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_finding(
        cls,
        finding: str,
        scanner: str,
        context: Mapping[str, Any],
    ) -> "SecurityEvent":
        event_type = classify(finding, scanner)
        return cls(
            event_type=event_type,
            threat_level=DEFAULT_LEVELS[event_type],
            message=finding,
            context=MappingProxyType(dict(context)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "uploadguard.security_event",
            "event_type": self.event_type.value,
            "threat_level": self.threat_level.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": dict(self.context),
        }


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


@runtime_checkable
class SecurityEventSink(Protocol):
    """Anything with an ``emit(event)`` method can receive events."""

    def emit(self, event: SecurityEvent) -> None:
        ...


class LoggingSecurityEventSink:
    """Write events as JSON log records and count them in Prometheus.

    Args:
        policy: Logging section of the scan policy.  When ``enabled`` is
            false events are counted but not logged; when ``detailed`` is
            false the context bundle is reduced to the file name.
        event_logger: Logger receiving the records.  Defaults to
            ``uploadguard.security``.
    """

    def __init__(
        self,
        policy: LoggingPolicy | None = None,
        event_logger: logging.Logger | None = None,
    ) -> None:
        self._policy = policy or LoggingPolicy()
        self._logger = event_logger or security_logger

    def emit(self, event: SecurityEvent) -> None:
        security_events_total.labels(
            event_type=event.event_type.value,
            threat_level=event.threat_level.value,
        ).inc()

        if not self._policy.enabled:
            return

        record = event.to_dict()
        if not self._policy.detailed:
            record["context"] = {"file_name": event.context.get("file_name")}
        self._logger.log(_LOG_LEVELS[event.threat_level], json.dumps(record, default=str))


class NullSecurityEventSink:
    """Discard every event."""

    def emit(self, event: SecurityEvent) -> None:
        return None
