"""Fault isolation boundaries.

A boundary wraps a unit of work (a handler, a render step, a job) and makes
sure a fault inside it never escapes. Instead the fault is classified,
redacted, reported to the observer sink, and turned into a snapshot with a
list of recovery actions the presentation layer can offer.

State machine::

    HEALTHY ──fault──► FAULTED ──retry──► RECOVERING ──ok──► HEALTHY
                          │                    └──fault──► FAULTED
                          └──reset──────────────────────► HEALTHY

Listener notification is queued: a listener that triggers another state
change (for example by calling ``retry()``) does not recurse into the
notification loop; the new event is delivered after the current pass.

Example:
    >>> boundary = FaultIsolationBoundary("checkout", fallback="Unavailable")
    >>> outcome = boundary.run(render_checkout, cart)
    >>> if not outcome.ok:
    ...     show(outcome.value, outcome.fault.message, outcome.fault.actions)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import traceback
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from rampart.core.classify import Classifier, classify, describe
from rampart.core.correlation import get_correlation_id, generate_correlation_id
from rampart.core.errors import (
    UNKNOWN_CLASSIFICATION,
    ConfigError,
    ErrorClassification,
    Severity,
)
from rampart.core.logging import get_logger
from rampart.core.redaction import redact
from rampart.core.settings import RampartSettings, get_settings
from rampart.execution.reporting import (
    FaultRecord,
    LoggingSink,
    ObserverSink,
    safe_emit,
    utcnow,
)

logger = get_logger(__name__)


class BoundaryState(str, Enum):
    """Lifecycle of a fault isolation boundary."""

    HEALTHY = "healthy"
    FAULTED = "faulted"
    RECOVERING = "recovering"


@dataclass(frozen=True)
class RecoveryAction:
    """A user-invokable recovery option.

    ``run`` may return an awaitable when the wrapped work is asynchronous.
    """

    id: str
    label: str
    run: Callable[[], Any] = field(repr=False, compare=False)
    primary: bool = False


@dataclass(frozen=True)
class FaultSnapshot:
    """What a boundary exposes about its current fault.

    ``message`` is always redacted. ``detail`` carries the exception type and
    traceback, redacted, and is only populated in debug mode.
    """

    state: BoundaryState
    classification: ErrorClassification
    message: str
    correlation_id: str
    occurred_at: datetime
    actions: tuple[RecoveryAction, ...] = ()
    detail: str | None = None

    def action(self, action_id: str) -> RecoveryAction | None:
        return next((a for a in self.actions if a.id == action_id), None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "classification": self.classification.to_dict(),
            "message": self.message,
            "correlation_id": self.correlation_id,
            "occurred_at": self.occurred_at.isoformat(),
            "actions": [a.id for a in self.actions],
        }
        if self.detail is not None:
            data["detail"] = self.detail
        return data


@dataclass(frozen=True)
class BoundaryEvent:
    """Delivered to state-change listeners."""

    faulted: bool
    state: BoundaryState
    classification: ErrorClassification | None = None
    snapshot: FaultSnapshot | None = None


@dataclass(frozen=True)
class BoundaryOutcome:
    """Result of running work inside a boundary.

    On success ``value`` is the work's return value. On fault it is the
    boundary's fallback and ``fault`` describes what happened.
    """

    ok: bool
    value: Any = None
    fault: FaultSnapshot | None = None


BoundaryListener = Callable[[BoundaryEvent], None]


class FaultIsolationBoundary:
    """Contains faults raised by a unit of work."""

    def __init__(
        self,
        name: str,
        *,
        sink: ObserverSink | None = None,
        classifier: Classifier = classify,
        settings: RampartSettings | None = None,
        fallback: Any = None,
        auto_retry_delay: float | None = None,
        max_auto_retries: int = 3,
    ):
        self.name = name
        self.sink: ObserverSink = sink if sink is not None else LoggingSink()
        self.debug = (settings or get_settings()).debug
        self.fallback = fallback
        self.auto_retry_delay = auto_retry_delay
        self.max_auto_retries = max_auto_retries
        self._classifier = classifier

        self._state = BoundaryState.HEALTHY
        self._snapshot: FaultSnapshot | None = None
        self._last_work: tuple[Callable[..., Any], tuple, dict, bool] | None = None
        self._listeners: list[BoundaryListener] = []
        self._pending: deque[BoundaryEvent] = deque()
        self._notifying = False
        self._torn_down = False
        self._retry_tasks: set[asyncio.Task] = set()
        self._auto_retries = 0

    # ── Introspection ────────────────────────────────────────────

    @property
    def state(self) -> BoundaryState:
        return self._state

    @property
    def snapshot(self) -> FaultSnapshot | None:
        """Current fault, or None while healthy."""
        return self._snapshot

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def pending_retries(self) -> set[asyncio.Task]:
        return set(self._retry_tasks)

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    # ── Listeners ────────────────────────────────────────────────

    def on_state_change(self, listener: BoundaryListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        if self._torn_down:
            logger.warning("boundary_listener_after_teardown", boundary=self.name)
            return lambda: None
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: BoundaryEvent) -> None:
        if self._torn_down:
            return
        self._pending.append(event)
        if self._notifying:
            return

        self._notifying = True
        try:
            while self._pending and not self._torn_down:
                current = self._pending.popleft()
                for listener in list(self._listeners):
                    if self._torn_down:
                        break
                    try:
                        listener(current)
                    except Exception as e:
                        logger.warning(
                            "boundary_listener_failed",
                            boundary=self.name,
                            error_type=type(e).__name__,
                            error=redact(describe(e)),
                        )
        finally:
            self._notifying = False
            if self._torn_down:
                self._pending.clear()

    # ── Running work ─────────────────────────────────────────────

    def run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> BoundaryOutcome:
        """Run synchronous work; faults are contained, never raised."""
        self._last_work = (func, args, kwargs, False)
        try:
            value = func(*args, **kwargs)
            if inspect.isawaitable(value):
                if inspect.iscoroutine(value):
                    value.close()
                raise ConfigError(f"Boundary '{self.name}': use run_async() for async work")
        except Exception as e:
            return self._handle_fault(e)
        self._mark_healthy()
        return BoundaryOutcome(ok=True, value=value)

    async def run_async(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> BoundaryOutcome:
        """Run sync or async work; faults are contained, never raised."""
        self._last_work = (func, args, kwargs, True)
        try:
            value = func(*args, **kwargs)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            return self._handle_fault(e)
        self._mark_healthy()
        return BoundaryOutcome(ok=True, value=value)

    def _classify(self, fault: BaseException) -> ErrorClassification:
        try:
            return self._classifier(fault)
        except Exception:
            logger.warning("boundary_classifier_failed", boundary=self.name)
            return UNKNOWN_CLASSIFICATION

    def _handle_fault(self, fault: Exception) -> BoundaryOutcome:
        classification = self._classify(fault)
        correlation_id = get_correlation_id() or generate_correlation_id()
        message = redact(describe(fault))
        detail = None
        if self.debug:
            detail = redact("".join(traceback.format_exception(fault)))

        is_async = bool(self._last_work and self._last_work[3])
        snapshot = FaultSnapshot(
            state=BoundaryState.FAULTED,
            classification=classification,
            message=message,
            correlation_id=correlation_id,
            occurred_at=utcnow(),
            actions=self._actions_for(classification, is_async),
            detail=detail,
        )
        self._snapshot = snapshot
        self._state = BoundaryState.FAULTED

        logger.warning(
            "boundary_fault",
            boundary=self.name,
            correlation_id=correlation_id,
            error_type=type(fault).__name__,
            **classification.to_dict(),
        )
        safe_emit(
            self.sink,
            FaultRecord(
                classification=classification,
                correlation_id=correlation_id,
                timestamp=snapshot.occurred_at,
                context={"boundary": self.name, "error_type": type(fault).__name__},
                message=message,
                source="boundary",
            ),
        )
        self._emit(BoundaryEvent(True, BoundaryState.FAULTED, classification, snapshot))

        if self.auto_retry_delay is not None and classification.retryable:
            self._schedule_auto_retry()

        return BoundaryOutcome(ok=False, value=self._fallback_value(snapshot), fault=snapshot)

    def _schedule_auto_retry(self) -> None:
        # Counted per fault episode; the delay doubles on each attempt.
        if self._auto_retries >= self.max_auto_retries:
            logger.warning(
                "boundary_auto_retry_exhausted",
                boundary=self.name,
                attempts=self._auto_retries,
            )
            return
        delay = self.auto_retry_delay * (2 ** self._auto_retries)
        if self.schedule_retry(delay) is not None:
            self._auto_retries += 1

    def _fallback_value(self, snapshot: FaultSnapshot) -> Any:
        if not callable(self.fallback):
            return self.fallback
        try:
            return self.fallback(snapshot)
        except Exception as e:
            logger.error(
                "boundary_fallback_failed",
                boundary=self.name,
                error_type=type(e).__name__,
                error=redact(describe(e)),
            )
            return None

    def _mark_healthy(self) -> None:
        if self._state == BoundaryState.HEALTHY:
            return
        self._state = BoundaryState.HEALTHY
        self._snapshot = None
        self._auto_retries = 0
        logger.info("boundary_recovered", boundary=self.name)
        self._emit(BoundaryEvent(False, BoundaryState.HEALTHY))

    # ── Recovery actions ─────────────────────────────────────────

    def _actions_for(self, classification: ErrorClassification, is_async: bool) -> tuple[RecoveryAction, ...]:
        actions = [
            RecoveryAction(
                "retry",
                "Try again",
                self.retry_async if is_async else self.retry,
                primary=True,
            ),
            RecoveryAction("reset", "Dismiss", self.reset),
        ]
        if classification.severity == Severity.CRITICAL:
            actions.append(RecoveryAction("escalate", "Report problem", self.escalate))
        return tuple(actions)

    def _begin_recovery(self) -> tuple[Callable[..., Any], tuple, dict, bool]:
        if self._last_work is None:
            raise ConfigError(f"Boundary '{self.name}' has no work to retry")
        self._state = BoundaryState.RECOVERING
        classification = self._snapshot.classification if self._snapshot else None
        self._emit(BoundaryEvent(False, BoundaryState.RECOVERING, classification, self._snapshot))
        return self._last_work

    def retry(self) -> BoundaryOutcome:
        """Re-run the last synchronous unit of work."""
        if self._last_work is not None and self._last_work[3]:
            raise ConfigError(f"Boundary '{self.name}': last work was async, use retry_async()")
        func, args, kwargs, _ = self._begin_recovery()
        return self.run(func, *args, **kwargs)

    async def retry_async(self) -> BoundaryOutcome:
        """Re-run the last unit of work, sync or async."""
        func, args, kwargs, is_async = self._begin_recovery()
        if is_async:
            return await self.run_async(func, *args, **kwargs)
        return self.run(func, *args, **kwargs)

    def reset(self) -> None:
        """Clear the fault without re-running anything."""
        self._mark_healthy()

    def escalate(self) -> bool:
        """Report the current fault to the sink as critical."""
        snapshot = self._snapshot
        if snapshot is None:
            return False
        escalated = ErrorClassification(
            kind=snapshot.classification.kind,
            severity=Severity.CRITICAL,
            retryable=False,
            code=snapshot.classification.code,
        )
        logger.error("boundary_escalated", boundary=self.name, correlation_id=snapshot.correlation_id)
        return safe_emit(
            self.sink,
            FaultRecord(
                classification=escalated,
                correlation_id=snapshot.correlation_id,
                timestamp=utcnow(),
                context={"boundary": self.name, "escalated": True},
                message=snapshot.message,
                source="escalation",
            ),
        )

    def schedule_retry(self, delay: float) -> asyncio.Task | None:
        """Schedule ``retry_async`` after ``delay`` seconds on the running loop."""
        if self._torn_down or self._last_work is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("boundary_retry_not_scheduled", boundary=self.name, reason="no running loop")
            return None

        async def delayed() -> None:
            await asyncio.sleep(delay)
            if not self._torn_down and self._state == BoundaryState.FAULTED:
                await self.retry_async()

        task = loop.create_task(delayed())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
        return task

    # ── Lifecycle ────────────────────────────────────────────────

    def teardown(self) -> None:
        """Cancel scheduled retries and drop every listener."""
        self._torn_down = True
        for task in list(self._retry_tasks):
            task.cancel()
        self._retry_tasks.clear()
        self._listeners.clear()
        self._pending.clear()
        logger.debug("boundary_torn_down", boundary=self.name)

    def __enter__(self) -> FaultIsolationBoundary:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.teardown()


def guarded(
    boundary: FaultIsolationBoundary | str,
    fallback: Any = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator running a function inside a boundary.

    The decorated function returns its own value, or the boundary's fallback
    when it faults. The boundary is available as ``wrapper.boundary``.

    Example:
        >>> @guarded("sidebar", fallback=[])
        ... def load_sidebar(user):
        ...     return fetch_widgets(user)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        target = (
            boundary
            if isinstance(boundary, FaultIsolationBoundary)
            else FaultIsolationBoundary(boundary, fallback=fallback)
        )

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                outcome = await target.run_async(func, *args, **kwargs)
                return outcome.value

            async_wrapper.boundary = target  # type: ignore[attr-defined]
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return target.run(func, *args, **kwargs).value

        wrapper.boundary = target  # type: ignore[attr-defined]
        return wrapper

    return decorator
