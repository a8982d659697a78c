"""Deferred action queue — park work while a dependency is unavailable.

When a protected call cannot proceed (circuit open, fallback ``queue``) the
request is parked here and replayed later, once the dependency recovers.

ARCHITECTURE
────────────
::

    DeferredActionQueue(name, store)
      ├── .enqueue(payload)        ─ append QueuedAction (FIFO)
      ├── .drain(replay)           ─ replay in order; remove on success,
      │                              count attempt on failure, discard at max
      ├── .pending()               ─ current actions
      ├── .remove(id) / .clear()
      └── .persistent              ─ False once degraded to memory

    Persistence goes through ScopedStorage under "queue:{name}" → "actions".
    If a write fails (quota, restricted context) or the stored list cannot be
    read, the queue switches to an in-memory list for the rest of the process
    lifetime and logs a warning. An unreadable list is never overwritten.
    Persistence is best-effort; enqueue never fails the caller.

BEST PRACTICES
──────────────
- Payloads should be JSON-serializable; other values are stored via ``str()``.
- Set ``max_attempts`` so a poison action cannot be replayed forever.
- Set ``max_age`` when stale actions are worse than dropped ones.

Example::

    queue = DeferredActionQueue("ai_service", store, max_attempts=3)
    queue.enqueue({"id": "task-42", "effect": "anime"})

    async def replay(action):
        return await client.submit(action.payload)

    result = await queue.drain(replay)
    # DrainResult(processed=1, failed=0, discarded=[])
"""

from __future__ import annotations

import inspect
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from rampart.core.classify import describe
from rampart.core.logging import get_logger
from rampart.core.redaction import redact
from rampart.core.settings import RampartSettings, get_settings
from rampart.core.storage import KeyValueStore, MemoryStore, ScopedStorage

logger = get_logger(__name__)

_ACTIONS_KEY = "actions"


@dataclass
class QueuedAction:
    """A unit of work waiting for replay."""

    id: str
    payload: Any
    enqueued_at: float
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QueuedAction:
        return cls(
            id=str(data["id"]),
            payload=data.get("payload"),
            enqueued_at=float(data.get("enqueued_at") or 0.0),
            attempts=int(data.get("attempts") or 0),
        )


@dataclass
class DrainResult:
    """Outcome of one :meth:`DeferredActionQueue.drain` pass."""

    processed: int = 0
    failed: int = 0
    discarded: list[QueuedAction] = field(default_factory=list)


Replay = Callable[[QueuedAction], Awaitable[bool] | bool]


class DeferredActionQueue:
    """FIFO queue of deferred actions, persisted on a best-effort basis."""

    def __init__(
        self,
        name: str,
        store: KeyValueStore | None = None,
        *,
        max_attempts: int = 3,
        max_age: float | None = None,
        clock: Callable[[], float] = time.time,
        prefix: str = "rampart",
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.name = name
        self.max_attempts = max_attempts
        self.max_age = max_age
        self._clock = clock
        if store is None:
            store = MemoryStore()
        self._storage = ScopedStorage(store, f"queue:{name}", prefix=prefix)
        self._memory: list[QueuedAction] | None = None
        self._known: list[QueuedAction] = []

    @classmethod
    def from_settings(
        cls,
        name: str,
        store: KeyValueStore | None = None,
        settings: RampartSettings | None = None,
        **kwargs: Any,
    ) -> DeferredActionQueue:
        """Build a queue whose limits and key prefix come from ``RampartSettings``."""
        settings = settings or get_settings()
        kwargs.setdefault("max_attempts", settings.queue_max_attempts)
        kwargs.setdefault("max_age", settings.queue_max_age)
        kwargs.setdefault("prefix", settings.key_prefix)
        return cls(name, store, **kwargs)

    @property
    def persistent(self) -> bool:
        """False once the queue has degraded to memory-only."""
        return self._memory is None

    # ── Storage round-trip ───────────────────────────────────────

    def _load(self) -> list[QueuedAction]:
        if self._memory is not None:
            return list(self._memory)
        readable, raw = self._storage.try_load_json(_ACTIONS_KEY)
        if not readable:
            # Never write back over a list that could not be read.
            logger.warning(
                "deferred_queue_degraded",
                queue=self.name,
                pending=len(self._known),
                reason="persistent store unreadable",
            )
            self._memory = list(self._known)
            return list(self._memory)
        if not isinstance(raw, list):
            self._known = []
            return []
        actions: list[QueuedAction] = []
        for entry in raw:
            try:
                actions.append(QueuedAction.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning("deferred_action_malformed", queue=self.name)
        self._known = list(actions)
        return actions

    def _save(self, actions: list[QueuedAction]) -> None:
        if self._memory is None:
            if self._storage.try_set_json(_ACTIONS_KEY, [a.to_dict() for a in actions]):
                self._known = list(actions)
                return
            logger.warning(
                "deferred_queue_degraded",
                queue=self.name,
                pending=len(actions),
                reason="persistent store rejected write",
            )
        self._memory = list(actions)

    # ── Public API ───────────────────────────────────────────────

    def enqueue(self, payload: Any = None, *, action_id: str | None = None) -> QueuedAction:
        """Append an action. Never raises because of storage problems.

        A mapping payload with an ``"id"`` key supplies the action id.
        Enqueueing an id that is already pending returns the pending action.
        """
        if action_id is None and isinstance(payload, Mapping) and payload.get("id") is not None:
            action_id = str(payload["id"])
        action_id = action_id or f"req_{uuid.uuid4().hex[:12]}"

        actions = self._load()
        for existing in actions:
            if existing.id == action_id:
                return existing

        action = QueuedAction(id=action_id, payload=payload, enqueued_at=self._clock())
        actions.append(action)
        self._save(actions)
        logger.info(
            "deferred_action_enqueued",
            queue=self.name,
            action_id=action.id,
            pending=len(actions),
            persistent=self.persistent,
        )
        return action

    def pending(self) -> list[QueuedAction]:
        return self._load()

    def __len__(self) -> int:
        return len(self._load())

    def remove(self, action_id: str) -> bool:
        actions = self._load()
        remaining = [a for a in actions if a.id != action_id]
        if len(remaining) == len(actions):
            return False
        self._save(remaining)
        return True

    def clear(self) -> int:
        count = len(self._load())
        self._save([])
        return count

    def expire(self) -> list[QueuedAction]:
        """Drop actions older than ``max_age``; return what was dropped."""
        if self.max_age is None:
            return []
        now = self._clock()
        actions = self._load()
        expired = [a for a in actions if now - a.enqueued_at > self.max_age]
        if expired:
            self._save([a for a in actions if a not in expired])
            for action in expired:
                logger.error(
                    "deferred_action_discarded",
                    queue=self.name,
                    action_id=action.id,
                    reason="expired",
                    age=now - action.enqueued_at,
                )
        return expired

    async def drain(self, replay: Replay) -> DrainResult:
        """Replay pending actions in FIFO order.

        ``replay`` returns truthy on success. A falsy return or an exception
        counts as a failed attempt; the action stays queued until it reaches
        ``max_attempts``, then it is discarded and reported.
        """
        result = DrainResult(discarded=self.expire())

        for action in self._load():
            if not any(a.id == action.id for a in self._load()):
                continue

            try:
                outcome = replay(action)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                ok = bool(outcome)
            except Exception as e:
                ok = False
                logger.warning(
                    "deferred_replay_failed",
                    queue=self.name,
                    action_id=action.id,
                    error_type=type(e).__name__,
                    error=redact(describe(e)),
                )

            # Re-read: replay may have suspended while others enqueued.
            actions = self._load()
            current = next((a for a in actions if a.id == action.id), None)

            if ok:
                result.processed += 1
                if current is not None:
                    actions.remove(current)
            else:
                result.failed += 1
                if current is not None:
                    current.attempts += 1
                    if current.attempts >= self.max_attempts:
                        actions.remove(current)
                        result.discarded.append(current)
                        logger.error(
                            "deferred_action_discarded",
                            queue=self.name,
                            action_id=current.id,
                            reason="max_attempts",
                            attempts=current.attempts,
                        )
            self._save(actions)

        logger.info(
            "deferred_queue_drained",
            queue=self.name,
            processed=result.processed,
            failed=result.failed,
            discarded=len(result.discarded),
        )
        return result
