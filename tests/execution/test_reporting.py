"""Tests for fault records and observer sinks."""

from datetime import timedelta

import pytest

from rampart.core.errors import ErrorClassification, ErrorKind, Severity
from rampart.core.settings import get_settings
from rampart.execution.reporting import (
    FanoutSink,
    FaultRecord,
    LoggingSink,
    MemorySink,
    ObserverSink,
    safe_emit,
    utcnow,
)


def make_record(severity=Severity.MEDIUM, code="X", age=timedelta(0), now=None):
    return FaultRecord(
        classification=ErrorClassification(ErrorKind.SYSTEM, severity, False, code),
        correlation_id="req_test",
        timestamp=(now or utcnow()) - age,
        message="boom",
    )


class BrokenSink:
    def emit(self, record):
        raise RuntimeError("sink down")


class TestMemorySink:
    """Tests for MemorySink."""

    def test_keeps_most_recent(self):
        """Only the last ``limit`` records are kept, total counts all."""
        sink = MemorySink(limit=2)
        for code in ("A", "B", "C"):
            sink.emit(make_record(code=code))
        assert [r.classification.code for r in sink.records] == ["B", "C"]
        assert sink.total == 3
        assert sink.counts_by_code() == {"B": 1, "C": 1}

    def test_default_limit_from_settings(self, monkeypatch):
        """The default limit comes from RAMPART_RECENT_FAULT_LIMIT."""
        monkeypatch.setenv("RAMPART_RECENT_FAULT_LIMIT", "1")
        get_settings.cache_clear()
        sink = MemorySink()
        sink.emit(make_record(code="A"))
        sink.emit(make_record(code="B"))
        assert [r.classification.code for r in sink.records] == ["B"]

    def test_recent_window_and_severity(self):
        """recent() filters by age and minimum severity."""
        now = utcnow()
        sink = MemorySink()
        sink.emit(make_record(Severity.HIGH, "NEW", now=now))
        sink.emit(make_record(Severity.HIGH, "OLD", age=timedelta(minutes=10), now=now))
        sink.emit(make_record(Severity.LOW, "LOW", now=now))

        recent = sink.recent(timedelta(minutes=5), now=now, min_severity=Severity.MEDIUM)
        assert [r.classification.code for r in recent] == ["NEW"]

    def test_clear(self):
        """clear() empties the sink."""
        sink = MemorySink()
        sink.emit(make_record())
        sink.clear()
        assert len(sink) == 0
        assert sink.total == 0

    def test_is_observer_sink(self):
        """Sinks satisfy the protocol."""
        assert isinstance(MemorySink(), ObserverSink)
        assert isinstance(LoggingSink(), ObserverSink)


class TestFanoutAndSafeEmit:
    """Tests for sink isolation."""

    def test_fanout_isolates_failures(self):
        """One failing sink does not block the others."""
        good = MemorySink()
        FanoutSink([BrokenSink(), good]).emit(make_record())
        assert len(good) == 1

    def test_safe_emit(self):
        """safe_emit reports success instead of raising."""
        assert safe_emit(MemorySink(), make_record()) is True
        assert safe_emit(BrokenSink(), make_record()) is False
        assert safe_emit(None, make_record()) is False

    @pytest.mark.parametrize("severity", list(Severity))
    def test_logging_sink_every_severity(self, severity):
        """LoggingSink accepts records of every severity."""
        LoggingSink().emit(make_record(severity))

    def test_to_dict(self):
        """Records serialize to plain data."""
        data = make_record(code="CODE").to_dict()
        assert data["classification"]["code"] == "CODE"
        assert data["source"] == "boundary"
