"""Correlation IDs linking one operation across the failure pipeline.

A correlation id is bound in a ``ContextVar`` so it follows the current
asyncio task, and is mirrored into structlog's contextvars so every log line
emitted while it is active carries it.

Example:
    >>> with correlation_scope() as cid:
    ...     assert get_correlation_id() == cid
    >>> get_correlation_id() is None
    True
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog

_correlation_id: ContextVar[str | None] = ContextVar("rampart_correlation_id", default=None)


def generate_correlation_id() -> str:
    """Generate a 12-character correlation ID (UUID prefix)."""
    return uuid.uuid4().hex[:12]


def get_correlation_id() -> str | None:
    """Return the correlation ID bound to the current context, if any."""
    return _correlation_id.get()


def ensure_correlation_id() -> str:
    """Return the current correlation ID, generating a fresh one if unbound."""
    return _correlation_id.get() or generate_correlation_id()


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind ``correlation_id`` for the current context and its log lines."""
    _correlation_id.set(correlation_id)
    if correlation_id is None:
        structlog.contextvars.unbind_contextvars("correlation_id")
    else:
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of a ``with`` block."""
    cid = correlation_id or generate_correlation_id()
    token = _correlation_id.set(cid)
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)
        previous = _correlation_id.get()
        if previous is None:
            structlog.contextvars.unbind_contextvars("correlation_id")
        else:
            structlog.contextvars.bind_contextvars(correlation_id=previous)
