"""
Shared pytest fixtures for rampart tests.

This module provides:
- Process-state isolation (settings cache, default breaker registry,
  default retry engine, global capture hook)
- Fake clock and fake sleep so no test waits on real time
- Failing stores for storage-degradation tests
"""

import os
import tempfile
from typing import Any

import pytest

# Keep the default persistent store out of the user's home directory.
os.environ.setdefault("RAMPART_DATA_DIR", tempfile.mkdtemp(prefix="rampart-tests-"))

from rampart.core.settings import get_settings  # noqa: E402
from rampart.core.storage import MemoryStore  # noqa: E402
from rampart.execution import retry as retry_module  # noqa: E402
from rampart.execution.capture import GlobalCaptureHook  # noqa: E402
from rampart.execution.circuit_breaker import CircuitBreakerRegistry  # noqa: E402


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ExplodingStore:
    """Store whose every method raises a plain RuntimeError."""

    def __init__(self):
        self.calls = 0

    def _boom(self, *args: Any, **kwargs: Any) -> Any:
        self.calls += 1
        raise RuntimeError("storage exploded")

    get_item = _boom
    set_item = _boom
    remove_item = _boom
    keys = _boom


class FlakyReadStore(MemoryStore):
    """Reads raise while ``failing_reads`` is positive; writes always work."""

    def __init__(self):
        super().__init__()
        self.failing_reads = 0

    def get_item(self, key: str) -> str | None:
        if self.failing_reads > 0:
            self.failing_reads -= 1
            raise OSError("transient read failure")
        return super().get_item(key)


class ReadOnlyStore(MemoryStore):
    """Reads work, writes raise (quota reached after seeding)."""

    def set_item(self, key: str, value: str) -> None:
        raise OSError("disk quota exceeded")


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch, tmp_path):
    """Reset every process-wide singleton around each test."""
    monkeypatch.setenv("RAMPART_DATA_DIR", str(tmp_path / "rampart"))
    monkeypatch.delenv("RAMPART_DEBUG", raising=False)
    monkeypatch.delenv("RAMPART_STORE_PATH", raising=False)
    get_settings.cache_clear()
    CircuitBreakerRegistry.reset_default()
    retry_module._DefaultEngine.instance = None
    yield
    hook = GlobalCaptureHook.active()
    if hook is not None:
        hook.uninstall()
    get_settings.cache_clear()
    CircuitBreakerRegistry.reset_default()
    retry_module._DefaultEngine.instance = None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def exploding_store() -> ExplodingStore:
    return ExplodingStore()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def flaky_store() -> FlakyReadStore:
    return FlakyReadStore()


@pytest.fixture
def read_only_store() -> ReadOnlyStore:
    return ReadOnlyStore()
