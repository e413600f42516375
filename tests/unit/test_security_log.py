"""Unit tests for uploadguard/services/security_log.py."""

from __future__ import annotations

import json
import logging

import pytest
from prometheus_client import REGISTRY

from uploadguard.config import LoggingPolicy
from uploadguard.services.security_log import (
    DEFAULT_LEVELS,
    EventType,
    LoggingSecurityEventSink,
    NullSecurityEventSink,
    SecurityEvent,
    SecurityEventSink,
    ThreatLevel,
    classify,
)


def _counter(event_type: str, threat_level: str) -> float:
    value = REGISTRY.get_sample_value(
        "uploadguard_security_events_total",
        {"event_type": event_type, "threat_level": threat_level},
    )
    return value or 0.0


def _event(message: str = "Dangerous tag detected: <script>", scanner: str = "markup") -> SecurityEvent:
    return SecurityEvent.for_finding(
        message,
        scanner,
        {"file_name": "logo.svg", "media_type": "image/svg+xml", "file_size": 42},
    )


class TestClassify:
    @pytest.mark.parametrize(
        "finding, scanner, expected",
        [
            ("Symbolic link detected", "engine", EventType.SYMLINK_DETECTED),
            ("Potential zip bomb detected: compression ratio 512.0:1", "archive", EventType.DECOMPRESSION_BOMB),
            ("inner.zip: Potential zip bomb detected: compression ratio 300.0:1", "archive", EventType.DECOMPRESSION_BOMB),
            ("External entity reference detected in DOCTYPE: SYSTEM", "markup", EventType.ENTITY_ATTACK),
            ("Parameter entity declaration detected", "markup", EventType.ENTITY_ATTACK),
            ("Recursive entity expansion detected", "markup", EventType.ENTITY_ATTACK),
            ("GPS location data detected", "metadata", EventType.GPS_DETECTED),
            ("File content (image/png) does not match extension .pdf", "engine", EventType.MIME_MISMATCH),
            ("Dangerous file type detected: application/x-executable", "engine", EventType.DANGEROUS_FILE),
            ("Dangerous tag detected: <script>", "markup", EventType.MARKUP_INJECTION),
            ("Dangerous function detected: eval()", "code_injection", EventType.CODE_INJECTION),
            ("JavaScript code detected in PDF", "document", EventType.DOCUMENT_THREAT),
            ("VBA macro detected: word/vbaProject.bin", "macro", EventType.MACRO_DETECTED),
            ("Script code detected in trailing bytes", "metadata", EventType.METADATA_THREAT),
            ("Path traversal detected: ../x", "archive", EventType.ARCHIVE_THREAT),
            ("Access denied", "engine", EventType.DANGEROUS_FILE),
        ],
    )
    def test_mapping(self, finding: str, scanner: str, expected: EventType) -> None:
        assert classify(finding, scanner) is expected

    def test_html_entity_obfuscation_is_not_entity_attack(self) -> None:
        assert classify("HTML entity obfuscation detected", "markup") is EventType.MARKUP_INJECTION

    def test_every_type_has_a_level(self) -> None:
        assert set(DEFAULT_LEVELS) == set(EventType)


class TestSecurityEvent:
    def test_for_finding_uses_default_level(self) -> None:
        event = _event("VBA macro detected: x", "macro")
        assert event.event_type is EventType.MACRO_DETECTED
        assert event.threat_level is ThreatLevel.HIGH
        assert event.message == "VBA macro detected: x"

    def test_context_is_read_only_copy(self) -> None:
        context = {"file_name": "a.txt"}
        event = SecurityEvent.for_finding("Dangerous function detected: eval()", "code_injection", context)
        context["file_name"] = "b.txt"
        assert event.context["file_name"] == "a.txt"
        with pytest.raises(TypeError):
            event.context["file_name"] = "c.txt"  # type: ignore[index]

    def test_to_dict_is_json_serialisable(self) -> None:
        record = _event().to_dict()
        decoded = json.loads(json.dumps(record))
        assert decoded["event"] == "uploadguard.security_event"
        assert decoded["event_type"] == "markup_injection"
        assert decoded["threat_level"] == "high"
        assert decoded["context"]["file_size"] == 42
        assert decoded["timestamp"].endswith("+00:00")


class TestLoggingSink:
    def test_emits_json_at_mapped_level(self, caplog) -> None:
        sink = LoggingSecurityEventSink()
        with caplog.at_level(logging.INFO, logger="uploadguard.security"):
            sink.emit(_event())
        (record,) = [r for r in caplog.records if r.name == "uploadguard.security"]
        assert record.levelno == logging.ERROR
        payload = json.loads(record.getMessage())
        assert payload["message"] == "Dangerous tag detected: <script>"
        assert payload["context"]["media_type"] == "image/svg+xml"

    def test_low_events_log_at_info(self, caplog) -> None:
        sink = LoggingSecurityEventSink()
        with caplog.at_level(logging.INFO, logger="uploadguard.security"):
            sink.emit(_event("GPS location data detected", "metadata"))
        assert caplog.records[-1].levelno == logging.INFO

    def test_summary_context_when_not_detailed(self, caplog) -> None:
        sink = LoggingSecurityEventSink(LoggingPolicy(detailed=False))
        with caplog.at_level(logging.INFO, logger="uploadguard.security"):
            sink.emit(_event())
        payload = json.loads(caplog.records[-1].getMessage())
        assert payload["context"] == {"file_name": "logo.svg"}

    def test_disabled_counts_but_does_not_log(self, caplog) -> None:
        sink = LoggingSecurityEventSink(LoggingPolicy(enabled=False))
        before = _counter("markup_injection", "high")
        with caplog.at_level(logging.DEBUG, logger="uploadguard.security"):
            sink.emit(_event())
        assert [r for r in caplog.records if r.name == "uploadguard.security"] == []
        assert _counter("markup_injection", "high") == before + 1

    def test_custom_logger(self, caplog) -> None:
        custom = logging.getLogger("tests.security")
        sink = LoggingSecurityEventSink(event_logger=custom)
        with caplog.at_level(logging.INFO, logger="tests.security"):
            sink.emit(_event())
        assert caplog.records[-1].name == "tests.security"


class TestSinkProtocol:
    def test_builtin_sinks_satisfy_protocol(self) -> None:
        assert isinstance(LoggingSecurityEventSink(), SecurityEventSink)
        assert isinstance(NullSecurityEventSink(), SecurityEventSink)

    def test_null_sink_discards(self, caplog) -> None:
        with caplog.at_level(logging.DEBUG):
            NullSecurityEventSink().emit(_event())
        assert caplog.records == []
