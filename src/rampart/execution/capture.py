"""Process-wide capture of faults that escaped every boundary.

Three entry points feed the same pipeline:

    sys.excepthook            uncaught exceptions on the main thread
    threading.excepthook      uncaught exceptions in worker threads
    loop exception handler    asyncio "Task exception was never retrieved"
                              and callback failures (unhandled rejections)

Each fault is classified, redacted and forwarded to the observer sink as a
``FaultRecord``. Non-``Exception`` base exceptions (``KeyboardInterrupt``,
``SystemExit``) are passed to the previously installed hook untouched.

Only one hook may be installed per process; installing again is a no-op.
Nothing in the capture path raises.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from collections.abc import Mapping
from typing import Any, ClassVar

from rampart.core.classify import Classifier, classify, describe
from rampart.core.correlation import generate_correlation_id, get_correlation_id
from rampart.core.errors import UNKNOWN_CLASSIFICATION
from rampart.core.logging import get_logger
from rampart.core.redaction import redact, redact_mapping
from rampart.execution.reporting import (
    FaultRecord,
    LoggingSink,
    ObserverSink,
    safe_emit,
    utcnow,
)

logger = get_logger(__name__)


class GlobalCaptureHook:
    """Routes uncaught faults through the classifier to an observer sink."""

    _installed: ClassVar[GlobalCaptureHook | None] = None
    _install_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, sink: ObserverSink | None = None, *, classifier: Classifier = classify):
        self.sink: ObserverSink = sink if sink is not None else LoggingSink("uncaught_fault")
        self._classifier = classifier
        self.error_counts: dict[str, int] = {}
        self._previous_excepthook: Any = None
        self._previous_threading_hook: Any = None
        self._loops: dict[asyncio.AbstractEventLoop, Any] = {}

    @classmethod
    def active(cls) -> GlobalCaptureHook | None:
        """The hook currently installed in this process, if any."""
        return cls._installed

    @property
    def installed(self) -> bool:
        return GlobalCaptureHook._installed is self

    # ── Lifecycle ────────────────────────────────────────────────

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Install the process hooks (and the loop handler when a loop is known).

        Returns True if anything new was installed.
        """
        with self._install_lock:
            current = GlobalCaptureHook._installed
            if current is not None and current is not self:
                logger.debug("capture_hook_already_installed")
                return False

            changed = False
            if current is None:
                self._previous_excepthook = sys.excepthook
                self._previous_threading_hook = threading.excepthook
                sys.excepthook = self._handle_excepthook
                threading.excepthook = self._handle_thread_exception
                GlobalCaptureHook._installed = self
                changed = True

            if loop is None:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = None
            if loop is not None and loop not in self._loops:
                self._loops[loop] = loop.get_exception_handler()
                loop.set_exception_handler(self._handle_loop_exception)
                changed = True

        if changed:
            logger.info("capture_hook_installed", loops=len(self._loops))
        return changed

    def uninstall(self) -> None:
        """Restore every hook replaced by :meth:`install`."""
        with self._install_lock:
            if GlobalCaptureHook._installed is not self:
                return
            if sys.excepthook == self._handle_excepthook:
                sys.excepthook = self._previous_excepthook or sys.__excepthook__
            if threading.excepthook == self._handle_thread_exception:
                threading.excepthook = self._previous_threading_hook or threading.__excepthook__
            for loop, previous in self._loops.items():
                if not loop.is_closed():
                    loop.set_exception_handler(previous)
            self._loops.clear()
            GlobalCaptureHook._installed = None
        logger.info("capture_hook_uninstalled")

    # ── Capture ──────────────────────────────────────────────────

    def capture(
        self,
        fault: object,
        context: Mapping[str, Any] | None = None,
        *,
        source: str = "manual",
    ) -> FaultRecord | None:
        """Classify ``fault`` and forward it to the sink. Never raises."""
        try:
            try:
                classification = self._classifier(fault)
            except Exception:
                classification = UNKNOWN_CLASSIFICATION

            type_name = type(fault).__name__ if fault is not None else "None"
            key = f"{type_name}:{source}"
            self.error_counts[key] = self.error_counts.get(key, 0) + 1

            record = FaultRecord(
                classification=classification,
                correlation_id=get_correlation_id() or generate_correlation_id(),
                timestamp=utcnow(),
                context={
                    "error_type": type_name,
                    "occurrences": self.error_counts[key],
                    **redact_mapping({str(k): v for k, v in (context or {}).items()}),
                },
                message=redact(describe(fault)),
                source=source,
            )
            safe_emit(self.sink, record)
            return record
        except Exception as e:
            try:
                logger.error("capture_failed", error_type=type(e).__name__)
            except Exception:
                pass
            return None

    # ── Hook adapters ────────────────────────────────────────────

    def _handle_excepthook(self, exc_type: type[BaseException], exc: BaseException, tb: Any) -> None:
        if not issubclass(exc_type, Exception):
            self._chain(self._previous_excepthook or sys.__excepthook__, exc_type, exc, tb)
            return
        self.capture(exc, {"origin": "sys.excepthook"}, source="uncaught")

    def _handle_thread_exception(self, args: Any) -> None:
        exc_type = getattr(args, "exc_type", None)
        if exc_type is None or not issubclass(exc_type, Exception):
            self._chain(self._previous_threading_hook or threading.__excepthook__, args)
            return
        thread = getattr(args, "thread", None)
        self.capture(
            args.exc_value,
            {"origin": "threading.excepthook", "thread": getattr(thread, "name", None)},
            source="thread",
        )

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is not None and not isinstance(exc, Exception):
            previous = self._loops.get(loop)
            if previous is not None:
                self._chain(previous, loop, context)
            else:
                self._chain(loop.default_exception_handler, context)
            return

        fault = exc if exc is not None else context.get("message")
        details: dict[str, Any] = {"origin": "asyncio"}
        if exc is not None and context.get("message"):
            details["loop_message"] = str(context["message"])
        task = context.get("task") or context.get("future")
        if task is not None:
            details["task"] = repr(task)
        self.capture(fault, details, source="async")

    def _chain(self, hook: Any, *args: Any) -> None:
        try:
            hook(*args)
        except Exception as e:
            logger.warning("capture_chain_failed", error_type=type(e).__name__)


def install_global_capture(
    sink: ObserverSink | None = None,
    *,
    loop: asyncio.AbstractEventLoop | None = None,
) -> GlobalCaptureHook:
    """Install the process-wide hook once and return it.

    Later calls return the installed hook (hooking ``loop`` if it is new) and
    ignore ``sink``.
    """
    hook = GlobalCaptureHook.active()
    if hook is None:
        hook = GlobalCaptureHook(sink)
    hook.install(loop)
    return hook
