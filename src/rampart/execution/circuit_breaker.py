"""Circuit breaker pattern for fault tolerance.

Prevents cascading failures by failing fast when a downstream dependency
is experiencing issues. One breaker per dependency name; breakers share
nothing except the process-wide key/value store, where each one keeps its
cached response under its own namespace.

States:
    CLOSED: Normal operation, calls pass through
    OPEN: Failing fast, calls go to the fallback strategy
    HALF_OPEN: Trial calls test whether the dependency recovered

Transitions:
    CLOSED ──(failure_threshold failures within monitoring_window)──► OPEN
    OPEN ────(recovery_timeout elapsed, on next call)───────────────► HALF_OPEN
    HALF_OPEN ──(trial succeeds)──► CLOSED   (failure window cleared)
    HALF_OPEN ──(trial fails)─────► OPEN     (recovery timeout restarts)

Fallback strategies while OPEN:
    reject  raise CircuitOpenError
    cache   return the last successful response, or raise NoCachedResponseError
    queue   park the payload in a DeferredActionQueue, return a QueuedResult
    custom  return whatever ``fallback_handler`` produces

Example:
    >>> from rampart.execution.circuit_breaker import get_circuit_breaker
    >>>
    >>> breaker = get_circuit_breaker("ai_service", failure_threshold=5)
    >>> result = await breaker.execute(lambda: client.submit(task))
"""

from __future__ import annotations

import inspect
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, TypeVar

from rampart.core.classify import Classifier, classify, describe
from rampart.core.errors import (
    CircuitOpenError,
    ConfigError,
    ErrorClassification,
    NoCachedResponseError,
    ReentrantCallError,
)
from rampart.core.logging import get_logger
from rampart.core.redaction import redact
from rampart.core.storage import KeyValueStore, MemoryStore, ScopedStorage
from rampart.execution.deferred import DeferredActionQueue

T = TypeVar("T")

logger = get_logger(__name__)

_CACHE_KEY = "cache"


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Short-circuiting calls
    HALF_OPEN = "half_open"  # Testing recovery


class FallbackStrategy(str, Enum):
    """What an open circuit does with a call it will not forward."""

    REJECT = "reject"
    CACHE = "cache"
    QUEUE = "queue"
    CUSTOM = "custom"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Breaker configuration.

    Attributes:
        failure_threshold: Failures within the window that open the circuit
        recovery_timeout: Seconds to stay open before allowing a trial call
        monitoring_window: Seconds a failure stays in the sliding window
        half_open_max_calls: Trial calls allowed while half-open
        fallback: Strategy used while the circuit is open
        fallback_handler: Callable for the ``custom`` strategy (sync or async)
        counts_as_failure: Predicate over the classification; None counts all
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    monitoring_window: float = 60.0
    half_open_max_calls: int = 1
    fallback: FallbackStrategy = FallbackStrategy.REJECT
    fallback_handler: Callable[[], Any] | None = None
    counts_as_failure: Callable[[ErrorClassification], bool] | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigError("failure_threshold must be >= 1")
        if self.half_open_max_calls < 1:
            raise ConfigError("half_open_max_calls must be >= 1")
        if self.recovery_timeout < 0 or self.monitoring_window <= 0:
            raise ConfigError("recovery_timeout must be >= 0 and monitoring_window > 0")
        if self.fallback == FallbackStrategy.CUSTOM and self.fallback_handler is None:
            raise ConfigError("custom fallback strategy requires a fallback_handler")


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_calls + self.failed_calls
        if total == 0:
            return 0.0
        return (self.failed_calls / total) * 100


@dataclass(frozen=True)
class QueuedResult:
    """Returned instead of a response when the queue fallback parks a call."""

    queued: bool
    action_id: str
    retry_at: datetime
    message: str = "Request queued - will retry when service is available"


StateListener = Callable[["CircuitState"], None]


class CircuitBreaker:
    """Per-dependency circuit breaker.

    ``clock`` returns monotonic seconds and is injectable for tests. The
    failure window and state transitions are guarded by a re-entrant lock so
    ``call`` may also be used from worker threads.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        store: KeyValueStore | None = None,
        queue: DeferredActionQueue | None = None,
        clock: Callable[[], float] = time.monotonic,
        classifier: Classifier = classify,
        key_prefix: str = "rampart",
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._store = store if store is not None else MemoryStore()
        self._storage = ScopedStorage(self._store, f"circuit:{name}", prefix=key_prefix)
        self._queue = queue
        self._key_prefix = key_prefix
        self._clock = clock
        self._classifier = classifier

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._half_open_calls = 0
        self._listeners: list[StateListener] = []
        self._notifying = False
        self._lock = threading.RLock()
        self._stats = CircuitStats()

    # ── Introspection ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Current state. Reading it never triggers a transition."""
        return self._state

    @property
    def stats(self) -> CircuitStats:
        """A copy of the breaker statistics."""
        with self._lock:
            return replace(self._stats)

    @property
    def failure_count(self) -> int:
        """Failures currently inside the monitoring window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    @property
    def is_available(self) -> bool:
        """Whether the next call would reach the dependency."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return self._recovery_elapsed(self._clock())
            return self._half_open_calls < self.config.half_open_max_calls

    @property
    def queue(self) -> DeferredActionQueue:
        """Deferred queue used by the ``queue`` strategy (created on demand)."""
        if self._queue is None:
            self._queue = DeferredActionQueue(self.name, self._store, prefix=self._key_prefix)
        return self._queue

    def cached_response(self) -> Any | None:
        """Last cached successful response, if any."""
        return self._storage.try_get_json(_CACHE_KEY)

    # ── Listeners ────────────────────────────────────────────────

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called with the new state; returns unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _guard_reentry(self, operation: str) -> None:
        if self._notifying:
            raise ReentrantCallError(
                f"State-change listener called {operation}() on circuit '{self.name}'",
                retryable=False,
            )

    # ── State machine ────────────────────────────────────────────

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _recovery_elapsed(self, now: float) -> bool:
        return self._opened_at is not None and now - self._opened_at >= self.config.recovery_timeout

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = utcnow()

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._half_open_calls = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
        else:
            self._failures.clear()
            self._opened_at = None
            self._half_open_calls = 0

        logger.info(
            "circuit_state_changed",
            circuit=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )
        self._notify(new_state)

    def _notify(self, state: CircuitState) -> None:
        self._notifying = True
        try:
            for listener in list(self._listeners):
                try:
                    listener(state)
                except Exception as e:
                    logger.warning(
                        "circuit_listener_failed",
                        circuit=self.name,
                        error_type=type(e).__name__,
                        error=redact(describe(e)),
                    )
        finally:
            self._notifying = False

    def _admit(self) -> tuple[bool, bool]:
        """Decide whether a call may reach the dependency.

        Returns ``(admitted, trial)``; ``trial`` is True when the call holds
        one of the half-open trial slots.
        """
        with self._lock:
            self._stats.total_calls += 1
            if self._state == CircuitState.OPEN:
                if not self._recovery_elapsed(self._clock()):
                    self._stats.rejected_calls += 1
                    return False, False
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    self._stats.rejected_calls += 1
                    return False, False
                self._half_open_calls += 1
                return True, True
            return True, False

    def _release_trial(self) -> None:
        """Give back a half-open trial slot whose call ended without a verdict."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1
                logger.debug("circuit_trial_released", circuit=self.name)

    def record_success(self, result: Any = None) -> None:
        """Record a successful call."""
        with self._lock:
            self._stats.successful_calls += 1
            self._stats.last_success_time = utcnow()
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
        if self.config.fallback == FallbackStrategy.CACHE:
            self._storage.try_set_json(_CACHE_KEY, result)

    def record_failure(self, error: BaseException, *, trial: bool = False) -> None:
        """Record a failed call.

        ``trial`` marks a call that held a half-open trial slot; the slot is
        released when ``counts_as_failure`` ignores the failure.
        """
        classification = self._classifier(error)
        with self._lock:
            self._stats.failed_calls += 1
            self._stats.last_failure_time = utcnow()

            predicate = self.config.counts_as_failure
            if predicate is not None and not predicate(classification):
                logger.debug(
                    "circuit_failure_ignored",
                    circuit=self.name,
                    code=classification.code,
                )
                if trial:
                    self._release_trial()
                return

            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                return

            self._failures.append(now)
            self._prune(now)
            if self._state == CircuitState.CLOSED and len(self._failures) >= self.config.failure_threshold:
                logger.warning(
                    "circuit_opened",
                    circuit=self.name,
                    failures=len(self._failures),
                    code=classification.code,
                )
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Reset circuit to closed state with an empty failure window."""
        self._guard_reentry("reset")
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failures.clear()
            self._opened_at = None

    def force_open(self) -> None:
        """Force circuit to open state (for testing/maintenance)."""
        self._guard_reentry("force_open")
        with self._lock:
            self._transition_to(CircuitState.OPEN)
            self._opened_at = self._clock()

    def force_close(self) -> None:
        """Force circuit to closed state."""
        self.reset()

    # ── Fallbacks ────────────────────────────────────────────────

    def _fallback(self, payload: Any) -> Any:
        """Fallback for the non-custom strategies."""
        strategy = self.config.fallback
        logger.info("circuit_fallback", circuit=self.name, strategy=strategy.value)

        if strategy == FallbackStrategy.CACHE:
            raw = self._storage.try_get(_CACHE_KEY)
            if raw is None:
                raise NoCachedResponseError(self.name)
            cached = self._storage.try_get_json(_CACHE_KEY)
            if cached is None and raw.strip() != "null":
                raise NoCachedResponseError(self.name)
            return cached

        if strategy == FallbackStrategy.QUEUE:
            action = self.queue.enqueue(payload)
            return QueuedResult(
                queued=True,
                action_id=action.id,
                retry_at=utcnow() + timedelta(seconds=self.config.recovery_timeout),
            )

        raise CircuitOpenError(self.name)

    def _custom_handler(self) -> Callable[[], Any]:
        handler = self.config.fallback_handler
        if handler is None:
            raise ConfigError("custom fallback strategy requires a fallback_handler")
        logger.info("circuit_fallback", circuit=self.name, strategy=FallbackStrategy.CUSTOM.value)
        return handler

    def _custom_failed(self, error: Exception) -> CircuitOpenError:
        return CircuitOpenError(
            self.name,
            f"Circuit breaker '{self.name}' is open and its fallback failed",
            cause=error,
        )

    async def _fallback_async(self, payload: Any) -> Any:
        if self.config.fallback != FallbackStrategy.CUSTOM:
            return self._fallback(payload)
        handler = self._custom_handler()
        try:
            result = handler()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise self._custom_failed(e) from e
        return result

    def _fallback_sync(self, payload: Any) -> Any:
        if self.config.fallback != FallbackStrategy.CUSTOM:
            return self._fallback(payload)
        handler = self._custom_handler()
        try:
            result = handler()
        except Exception as e:
            raise self._custom_failed(e) from e
        if inspect.isawaitable(result):
            if inspect.iscoroutine(result):
                result.close()
            raise ConfigError("call() cannot await an async fallback_handler; use execute()")
        return result

    # ── Execution ────────────────────────────────────────────────

    async def execute(
        self,
        operation: Callable[[], Awaitable[T] | T],
        *,
        payload: Any = None,
    ) -> T | Any:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument callable, sync or async
            payload: Stored in the deferred queue if the ``queue`` fallback fires

        Raises:
            CircuitOpenError: Circuit open and fallback is ``reject``
            NoCachedResponseError: Circuit open, ``cache`` fallback, nothing cached
            ReentrantCallError: Called from one of this breaker's listeners
        """
        self._guard_reentry("execute")
        admitted, trial = self._admit()
        if not admitted:
            return await self._fallback_async(payload)

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self.record_failure(e, trial=trial)
            raise
        except BaseException:
            # Cancelled or interrupted: no verdict on the dependency.
            if trial:
                self._release_trial()
            raise
        self.record_success(result)
        return result

    def call(self, func: Callable[..., T], *args: Any, payload: Any = None, **kwargs: Any) -> T | Any:
        """Execute a synchronous function through the circuit breaker."""
        self._guard_reentry("call")
        admitted, trial = self._admit()
        if not admitted:
            return self._fallback_sync(payload)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e, trial=trial)
            raise
        except BaseException:
            if trial:
                self._release_trial()
            raise
        self.record_success(result)
        return result

    def snapshot(self) -> dict[str, Any]:
        """State and statistics, JSON-ready."""
        stats = self.stats
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self.failure_count,
            "total_calls": stats.total_calls,
            "successful_calls": stats.successful_calls,
            "failed_calls": stats.failed_calls,
            "rejected_calls": stats.rejected_calls,
            "state_changes": stats.state_changes,
            "failure_rate": round(stats.failure_rate, 2),
            "fallback": self.config.fallback.value,
        }


def count_retryable(classification: ErrorClassification) -> bool:
    """Failure predicate counting only faults a retry could fix."""
    return classification.retryable


PRESETS: dict[str, CircuitBreakerConfig] = {
    "ai_service": CircuitBreakerConfig(
        failure_threshold=5,
        recovery_timeout=30.0,
        monitoring_window=60.0,
        half_open_max_calls=3,
        fallback=FallbackStrategy.QUEUE,
        counts_as_failure=count_retryable,
    ),
    "database": CircuitBreakerConfig(
        failure_threshold=3,
        recovery_timeout=10.0,
        monitoring_window=30.0,
        half_open_max_calls=2,
        fallback=FallbackStrategy.CACHE,
        counts_as_failure=count_retryable,
    ),
    "payment_gateway": CircuitBreakerConfig(
        failure_threshold=2,
        recovery_timeout=60.0,
        monitoring_window=120.0,
        half_open_max_calls=1,
        fallback=FallbackStrategy.REJECT,
    ),
    "email_service": CircuitBreakerConfig(
        failure_threshold=10,
        recovery_timeout=120.0,
        monitoring_window=300.0,
        half_open_max_calls=5,
        fallback=FallbackStrategy.QUEUE,
        counts_as_failure=count_retryable,
    ),
    "file_upload": CircuitBreakerConfig(
        failure_threshold=3,
        recovery_timeout=15.0,
        monitoring_window=60.0,
        half_open_max_calls=2,
        fallback=FallbackStrategy.QUEUE,
        counts_as_failure=count_retryable,
    ),
}


class CircuitBreakerRegistry:
    """Registry of named circuit breakers sharing one key/value store.

    The process-wide instance is created by :meth:`default` on first
    lookup and lives for the rest of the process.
    """

    _default: ClassVar[CircuitBreakerRegistry | None] = None
    _default_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        key_prefix: str = "rampart",
    ):
        self.store = store if store is not None else MemoryStore()
        self._clock = clock
        self._key_prefix = key_prefix
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    @classmethod
    def default(cls) -> CircuitBreakerRegistry:
        """Return the process-wide registry, creating it on first use."""
        with cls._default_lock:
            if cls._default is None:
                from rampart.core.settings import get_settings
                from rampart.core.storage import open_default_store

                settings = get_settings()
                cls._default = cls(open_default_store(), key_prefix=settings.key_prefix)
                logger.debug("circuit_registry_created", store=type(cls._default.store).__name__)
            return cls._default

    @classmethod
    def reset_default(cls) -> None:
        """Forget the process-wide registry (test isolation only)."""
        with cls._default_lock:
            cls._default = None

    def get(self, name: str) -> CircuitBreaker | None:
        """Get a circuit breaker by name, returns None if not found."""
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        **overrides: Any,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker by name.

        ``config`` and ``overrides`` only apply when the breaker is created.
        """
        with self._lock:
            if name not in self._breakers:
                base = config or CircuitBreakerConfig()
                self._breakers[name] = CircuitBreaker(
                    name,
                    replace(base, **overrides) if overrides else base,
                    store=self.store,
                    clock=self._clock,
                    key_prefix=self._key_prefix,
                )
            return self._breakers[name]

    def names(self) -> list[str]:
        """List all registered circuit breaker names."""
        with self._lock:
            return list(self._breakers.keys())

    def all(self) -> dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def all_stats(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every breaker, keyed by name."""
        return {name: breaker.snapshot() for name, breaker in self.all().items()}

    def open_circuits(self) -> list[str]:
        return [name for name, b in self.all().items() if b.state == CircuitState.OPEN]

    def remove(self, name: str) -> bool:
        """Remove a circuit breaker by name."""
        with self._lock:
            return self._breakers.pop(name, None) is not None

    def clear(self) -> None:
        """Remove all circuit breakers."""
        with self._lock:
            self._breakers.clear()

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in self.all().values():
            breaker.reset()

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)


def get_circuit_breaker(
    name: str,
    config: CircuitBreakerConfig | None = None,
    **overrides: Any,
) -> CircuitBreaker:
    """Get a circuit breaker from the default registry."""
    return CircuitBreakerRegistry.default().get_or_create(name, config, **overrides)


def create_preset_breaker(
    preset: str,
    name: str | None = None,
    registry: CircuitBreakerRegistry | None = None,
    **overrides: Any,
) -> CircuitBreaker:
    """Create (or fetch) a breaker configured from a named preset."""
    try:
        config = PRESETS[preset]
    except KeyError:
        raise ConfigError(
            f"Unknown circuit breaker preset '{preset}'",
            code="MISSING_CONFIG",
        ) from None
    target = registry if registry is not None else CircuitBreakerRegistry.default()
    return target.get_or_create(name or preset, config, **overrides)
