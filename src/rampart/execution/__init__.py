"""Rampart execution — resilience controls around calls to dependencies.

ARCHITECTURE
────────────
::

    caller
      │
      ▼
    FaultIsolationBoundary  ─ contains faults, offers recovery actions
      │
      ▼
    RetryPolicyEngine       ─ named policies, backoff, statistics
      │
      ▼
    CircuitBreaker          ─ closed / open / half-open per dependency
      ├── cache fallback    ─ ScopedStorage "circuit:{name}"
      └── queue fallback    ─ DeferredActionQueue "queue:{name}"
      │
      ▼
    dependency

    GlobalCaptureHook       ─ faults that escaped every boundary
    ObserverSink            ─ receives FaultRecords from boundaries + capture
    assess_health()         ─ healthy / degraded / critical
"""

from rampart.execution.boundary import (
    BoundaryEvent,
    BoundaryOutcome,
    BoundaryState,
    FaultIsolationBoundary,
    FaultSnapshot,
    RecoveryAction,
    guarded,
)
from rampart.execution.capture import GlobalCaptureHook, install_global_capture
from rampart.execution.circuit_breaker import (
    PRESETS,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStats,
    FallbackStrategy,
    QueuedResult,
    create_preset_breaker,
    get_circuit_breaker,
)
from rampart.execution.deferred import DeferredActionQueue, DrainResult, QueuedAction
from rampart.execution.health import HealthReport, HealthStatus, assess_health
from rampart.execution.reporting import (
    FanoutSink,
    FaultRecord,
    LoggingSink,
    MemorySink,
    ObserverSink,
)
from rampart.execution.retry import (
    DEFAULT_POLICIES,
    BackoffStrategy,
    CancellationToken,
    RetryPolicy,
    RetryPolicyEngine,
    RetryStatistics,
    get_retry_engine,
    retryable,
)

__all__ = [
    # retry
    "BackoffStrategy",
    "RetryPolicy",
    "DEFAULT_POLICIES",
    "RetryStatistics",
    "RetryPolicyEngine",
    "CancellationToken",
    "get_retry_engine",
    "retryable",
    # circuit breaker
    "CircuitState",
    "CircuitStats",
    "FallbackStrategy",
    "CircuitBreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "QueuedResult",
    "PRESETS",
    "get_circuit_breaker",
    "create_preset_breaker",
    # deferred
    "DeferredActionQueue",
    "QueuedAction",
    "DrainResult",
    # boundary
    "BoundaryState",
    "BoundaryEvent",
    "BoundaryOutcome",
    "FaultSnapshot",
    "RecoveryAction",
    "FaultIsolationBoundary",
    "guarded",
    # capture / reporting / health
    "GlobalCaptureHook",
    "install_global_capture",
    "FaultRecord",
    "ObserverSink",
    "MemorySink",
    "LoggingSink",
    "FanoutSink",
    "HealthStatus",
    "HealthReport",
    "assess_health",
]
