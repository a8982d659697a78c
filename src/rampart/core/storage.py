"""
Scoped, fallible key/value storage.

Circuit breakers cache responses and deferred action queues persist pending
work in a process-wide key/value store. That store is *unreliable by
contract*: it may raise when its quota is exceeded, when it is disabled in a
restricted execution context, or when a value cannot be serialized.

``ScopedStorage`` is the only way rampart touches the store. It namespaces
keys per dependency/queue and swallows every store exception, returning
``None`` / ``False`` instead. A storage failure is a resource limitation,
never an application error.

Architecture:
    ::

        CircuitBreaker ──┐                 ┌── MemoryStore   (quota-limited)
                         ├─ ScopedStorage ─┼── SqliteStore   (persistent file)
        DeferredQueue ───┘  try_get/try_set └── UnavailableStore (always raises)
                            (never raises)

        key layout:  "{prefix}:{namespace}:{key}"
                     rampart:circuit:ai_service:cache
                     rampart:queue:ai_service:actions

Examples:
    >>> storage = ScopedStorage(MemoryStore(), "circuit:ai_service")
    >>> storage.try_set("cache", '{"ok": true}')
    True
    >>> storage.try_get("cache")
    '{"ok": true}'
    >>> ScopedStorage(UnavailableStore(), "queue:x").try_set("k", "v")
    False

Guardrails:
    ❌ DON'T: Call ``store.get_item`` directly from breaker/queue code
    ✅ DO: Go through ``ScopedStorage`` so failures degrade, not crash

Tags:
    storage, key-value, protocol, degradation, rampart
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .classify import describe
from .errors import StorageQuotaError, StorageUnavailableError
from .logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal string key/value store. Every method may raise."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...


class MemoryStore:
    """In-process store with an optional byte quota.

    Writes that would push the total size of keys and values over
    ``quota_bytes`` raise :class:`StorageQuotaError`.
    """

    def __init__(self, quota_bytes: int | None = None):
        self._data: dict[str, str] = {}
        self._quota_bytes = quota_bytes

    def _size_with(self, key: str, value: str) -> int:
        total = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
        return total + len(key) + len(value)

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self._quota_bytes is not None and self._size_with(key, value) > self._quota_bytes:
            raise StorageQuotaError(f"Quota of {self._quota_bytes} bytes exceeded writing '{key}'")
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


class UnavailableStore:
    """Store for restricted contexts: every call raises."""

    def __init__(self, reason: str = "Storage is disabled in this execution context"):
        self.reason = reason

    def get_item(self, key: str) -> str | None:
        raise StorageUnavailableError(self.reason)

    def set_item(self, key: str, value: str) -> None:
        raise StorageUnavailableError(self.reason)

    def remove_item(self, key: str) -> None:
        raise StorageUnavailableError(self.reason)

    def keys(self, prefix: str = "") -> list[str]:
        raise StorageUnavailableError(self.reason)


class SqliteStore:
    """Persistent store backed by a single ``kv`` table in a SQLite file."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
        )
        self._conn.commit()

    def get_item(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            self._conn.commit()

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (f"{escaped}%",),
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class ScopedStorage:
    """Namespaced accessor over a :class:`KeyValueStore` that never raises."""

    def __init__(self, store: KeyValueStore, namespace: str, prefix: str = "rampart"):
        self.store = store
        self.namespace = namespace
        self.prefix = prefix

    def key(self, key: str) -> str:
        return f"{self.prefix}:{self.namespace}:{key}"

    def try_get(self, key: str) -> str | None:
        try:
            value = self.store.get_item(self.key(key))
        except Exception as e:
            self._warn("storage_read_failed", key, e)
            return None
        return value if isinstance(value, str) else None

    def try_set(self, key: str, value: str) -> bool:
        try:
            self.store.set_item(self.key(key), value)
        except Exception as e:
            self._warn("storage_write_failed", key, e)
            return False
        return True

    def try_remove(self, key: str) -> bool:
        try:
            self.store.remove_item(self.key(key))
        except Exception as e:
            self._warn("storage_remove_failed", key, e)
            return False
        return True

    def try_keys(self) -> list[str]:
        scope = f"{self.prefix}:{self.namespace}:"
        try:
            return [k[len(scope):] for k in self.store.keys(scope)]
        except Exception as e:
            self._warn("storage_list_failed", "*", e)
            return []

    def try_get_json(self, key: str) -> Any | None:
        return self.try_load_json(key)[1]

    def try_load_json(self, key: str) -> tuple[bool, Any | None]:
        """Read and decode ``key``; the flag is False when the value exists but is unreadable.

        A missing key is ``(True, None)``. A failing store or an undecodable
        value is ``(False, None)``, so callers can tell "empty" from "unknown".
        """
        try:
            raw = self.store.get_item(self.key(key))
        except Exception as e:
            self._warn("storage_read_failed", key, e)
            return False, None
        if not isinstance(raw, str):
            return True, None
        try:
            return True, json.loads(raw)
        except (TypeError, ValueError) as e:
            self._warn("storage_decode_failed", key, e)
            return False, None

    def try_set_json(self, key: str, value: Any) -> bool:
        try:
            raw = json.dumps(value, default=str)
        except Exception as e:
            self._warn("storage_encode_failed", key, e)
            return False
        return self.try_set(key, raw)

    def _warn(self, event: str, key: str, error: BaseException) -> None:
        logger.warning(
            event,
            namespace=self.namespace,
            key=key,
            error_type=type(error).__name__,
            error=describe(error),
        )


def open_default_store(path: str | Path | None = None) -> KeyValueStore:
    """Open the process-wide persistent store, or an in-memory one on failure."""
    from .settings import get_settings

    target = path or get_settings().resolved_store_path
    try:
        return SqliteStore(target)
    except (OSError, sqlite3.Error) as e:
        logger.warning("persistent_store_unavailable", path=str(target), error=str(e))
        return MemoryStore()
