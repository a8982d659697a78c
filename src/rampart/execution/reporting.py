"""Fault records and the observer sinks that receive them.

Fault isolation boundaries and the global capture hook both produce
``FaultRecord`` objects and hand them to an ``ObserverSink``. Rampart only
produces records; shipping them to an external tracker is the sink's job.

::

    FaultIsolationBoundary ──┐
                             ├── FaultRecord ──► ObserverSink.emit()
    GlobalCaptureHook ───────┘                     ├─ MemorySink   (recent N, health checks)
                                                   ├─ LoggingSink  (structlog)
                                                   └─ FanoutSink   (several, isolated)
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from rampart.core.errors import ErrorClassification, Severity
from rampart.core.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class FaultRecord:
    """One terminal fault, as reported to the observer sink.

    ``message`` is already redacted by the producer.
    """

    classification: ErrorClassification
    correlation_id: str
    timestamp: datetime
    context: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    source: str = "boundary"

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification.to_dict(),
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "context": dict(self.context),
            "message": self.message,
            "source": self.source,
        }


@runtime_checkable
class ObserverSink(Protocol):
    """Receives fault records. Implementations should not raise."""

    def emit(self, record: FaultRecord) -> None: ...


class MemorySink:
    """Keeps the most recent ``limit`` records in memory.

    ``limit`` defaults to ``RampartSettings.recent_fault_limit``.
    """

    def __init__(self, limit: int | None = None):
        if limit is None:
            from rampart.core.settings import get_settings

            limit = get_settings().recent_fault_limit
        self._records: deque[FaultRecord] = deque(maxlen=limit)
        self.total = 0

    def emit(self, record: FaultRecord) -> None:
        self._records.append(record)
        self.total += 1

    @property
    def records(self) -> list[FaultRecord]:
        return list(self._records)

    def recent(
        self,
        window: timedelta,
        *,
        now: datetime | None = None,
        min_severity: Severity = Severity.LOW,
    ) -> list[FaultRecord]:
        """Records newer than ``window`` at or above ``min_severity``."""
        cutoff = (now or utcnow()) - window
        return [
            r
            for r in self._records
            if r.timestamp >= cutoff and r.classification.severity.rank >= min_severity.rank
        ]

    def counts_by_code(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._records:
            code = record.classification.code
            counts[code] = counts.get(code, 0) + 1
        return counts

    def clear(self) -> None:
        self._records.clear()
        self.total = 0

    def __len__(self) -> int:
        return len(self._records)


_LOG_METHOD = {
    Severity.LOW: "info",
    Severity.MEDIUM: "warning",
    Severity.HIGH: "error",
    Severity.CRITICAL: "critical",
}


class LoggingSink:
    """Writes each record as a structlog event."""

    def __init__(self, event: str = "fault_reported"):
        self.event = event

    def emit(self, record: FaultRecord) -> None:
        method = getattr(logger, _LOG_METHOD[record.classification.severity])
        method(
            self.event,
            source=record.source,
            correlation_id=record.correlation_id,
            fault_message=record.message,
            **record.classification.to_dict(),
            **{f"ctx_{k}": v for k, v in record.context.items()},
        )


class FanoutSink:
    """Forwards to several sinks; one failing sink does not affect the rest."""

    def __init__(self, sinks: Iterable[ObserverSink] = ()):
        self.sinks: list[ObserverSink] = list(sinks)

    def add(self, sink: ObserverSink) -> None:
        self.sinks.append(sink)

    def emit(self, record: FaultRecord) -> None:
        for sink in list(self.sinks):
            try:
                sink.emit(record)
            except Exception as e:
                logger.warning(
                    "sink_emit_failed",
                    sink=type(sink).__name__,
                    error_type=type(e).__name__,
                )


def safe_emit(sink: ObserverSink | None, record: FaultRecord) -> bool:
    """Emit ``record`` to ``sink``, logging instead of raising on failure."""
    if sink is None:
        return False
    try:
        sink.emit(record)
    except Exception as e:
        logger.warning("sink_emit_failed", sink=type(sink).__name__, error_type=type(e).__name__)
        return False
    return True
