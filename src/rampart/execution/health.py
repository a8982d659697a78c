"""System health derived from circuit breakers and recent faults.

Levels:
    critical  more than 2 open circuits, or more than 10 recent faults
    degraded  any open circuit, or more than 5 recent faults
    healthy   otherwise

"Recent faults" are records in the sink from the last 5 minutes with
severity above ``low``.

Example:
    >>> from rampart.execution.health import assess_health
    >>>
    >>> report = assess_health(registry, sink)
    >>> print(report.status)  # "healthy" | "degraded" | "critical"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from rampart.core.errors import Severity
from rampart.core.logging import get_logger

from .circuit_breaker import CircuitBreakerRegistry
from .reporting import MemorySink, utcnow

logger = get_logger(__name__)

RECENT_WINDOW = timedelta(minutes=5)
CRITICAL_OPEN_CIRCUITS = 2
CRITICAL_RECENT_FAULTS = 10
DEGRADED_RECENT_FAULTS = 5


class HealthStatus(str, Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass
class HealthReport:
    """Overall health report."""

    status: HealthStatus
    open_circuits: list[str]
    recent_faults: int
    circuits: dict[str, dict[str, Any]] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def healthy(self) -> bool:
        """Check if overall status is healthy."""
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "open_circuits": list(self.open_circuits),
            "recent_faults": self.recent_faults,
            "circuits": self.circuits,
        }


def assess_health(
    registry: CircuitBreakerRegistry | None = None,
    sink: MemorySink | None = None,
    now: datetime | None = None,
) -> HealthReport:
    """Assess health from breaker states and the sink's recent records."""
    if registry is None:
        registry = CircuitBreakerRegistry.default()
    open_circuits = registry.open_circuits()
    recent = 0
    if sink is not None:
        recent = len(sink.recent(RECENT_WINDOW, now=now or utcnow(), min_severity=Severity.MEDIUM))

    if len(open_circuits) > CRITICAL_OPEN_CIRCUITS or recent > CRITICAL_RECENT_FAULTS:
        status = HealthStatus.CRITICAL
    elif open_circuits or recent > DEGRADED_RECENT_FAULTS:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    report = HealthReport(
        status=status,
        open_circuits=open_circuits,
        recent_faults=recent,
        circuits=registry.all_stats(),
        timestamp=now or utcnow(),
    )
    if status != HealthStatus.HEALTHY:
        logger.warning(
            "system_health_degraded",
            status=status.value,
            open_circuits=open_circuits,
            recent_faults=recent,
        )
    return report
