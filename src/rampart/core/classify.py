"""Error classifier — map any raised fault to an ``ErrorClassification``.

The classifier is a pure, total function: it never raises and has no side
effects, so it can be called from hot failure paths (breaker bookkeeping,
retry decisions, global exception hooks).

Rules are evaluated in order and the first match wins:

::

    1. RetryExhaustedError   → classification of the last error, not retryable
    2. RampartError          → the error's own classification
    3. builtin exception type (MemoryError, TimeoutError, ConnectionError, ...)
    4. HTTP status attribute (status / status_code / response.status_code)
    5. message patterns      (payment, auth, network, processing, ...)
    6. ValueError            → validation
    7. default               → SYSTEM / MEDIUM / not retryable

Example:
    >>> from rampart.core.classify import classify
    >>> classify(ConnectionResetError("peer reset")).retryable
    True
    >>> classify("totally unknown").code
    'UNKNOWN_ERROR'
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from .errors import (
    UNKNOWN_CLASSIFICATION,
    ErrorClassification,
    ErrorKind,
    RampartError,
    RetryExhaustedError,
    Severity,
)


@dataclass(frozen=True)
class PatternRule:
    """A message-pattern rule: any matching regex yields ``classification``."""

    name: str
    patterns: tuple[re.Pattern[str], ...]
    classification: ErrorClassification

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def _rule(name: str, patterns: list[str], kind: ErrorKind, severity: Severity,
          retryable: bool, code: str) -> PatternRule:
    return PatternRule(
        name=name,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        classification=ErrorClassification(kind, severity, retryable, code),
    )


# Order matters: the first matching rule wins.
MESSAGE_RULES: tuple[PatternRule, ...] = (
    _rule(
        "payment",
        [r"payment.*failed", r"wechat.*pay.*error", r"alipay.*error", r"transaction.*error"],
        ErrorKind.BUSINESS, Severity.CRITICAL, False, "PAYMENT_FAILED",
    ),
    _rule(
        "authentication",
        [r"invalid.*token", r"jwt.*expired", r"unauthori[sz]ed", r"authentication.*failed",
         r"access.*denied", r"forbidden"],
        ErrorKind.AUTH, Severity.MEDIUM, False, "AUTH_ERROR",
    ),
    _rule(
        "processing",
        [r"processing.*timeout", r"task.*(failed|timeout|timed out)", r"processing.*failed"],
        ErrorKind.PROCESSING, Severity.HIGH, True, "TASK_FAILED",
    ),
    _rule(
        "database",
        [r"connection.*refused", r"timeout.*database", r"database.*(error|unavailable)"],
        ErrorKind.SYSTEM, Severity.HIGH, True, "DATABASE_ERROR",
    ),
    _rule(
        "network",
        [r"network.*error", r"networkerror", r"fetch.*failed", r"failed to fetch", r"econnreset",
         r"etimedout", r"enotfound", r"service.*unavailable", r"timed? ?out",
         r"\b50[234]\b", r"\b429\b", r"external.*service", r"api.*request.*failed"],
        ErrorKind.NETWORK, Severity.HIGH, True, "NETWORK_ERROR",
    ),
    _rule(
        "validation",
        [r"validation.*error", r"invalid.*input", r"bad.*request", r"missing.*required",
         r"unique.*constraint", r"foreign.*key.*constraint"],
        ErrorKind.VALIDATION, Severity.LOW, False, "INVALID_INPUT",
    ),
    _rule(
        "file_upload",
        [r"upload.*failed", r"file.*too.*large", r"invalid.*file.*type"],
        ErrorKind.PROCESSING, Severity.MEDIUM, False, "FILE_UPLOAD_FAILED",
    ),
)


def _by_type(fault: object) -> ErrorClassification | None:
    if isinstance(fault, (MemoryError, RecursionError)):
        return ErrorClassification(ErrorKind.SYSTEM, Severity.CRITICAL, False, "RESOURCE_EXHAUSTED")
    if isinstance(fault, (TimeoutError, asyncio.TimeoutError)):
        return ErrorClassification(ErrorKind.NETWORK, Severity.MEDIUM, True, "TIMEOUT_ERROR")
    if isinstance(fault, ConnectionError):
        return ErrorClassification(ErrorKind.NETWORK, Severity.HIGH, True, "NETWORK_ERROR")
    if isinstance(fault, PermissionError):
        return ErrorClassification(ErrorKind.AUTH, Severity.MEDIUM, False, "PERMISSION_DENIED")
    return None


def extract_status(fault: object) -> int | None:
    """Best-effort HTTP status lookup on an exception or rejection payload."""
    candidates: list[Any] = []
    if isinstance(fault, Mapping):
        candidates += [fault.get("status"), fault.get("status_code")]
    else:
        candidates += [getattr(fault, "status", None), getattr(fault, "status_code", None)]
        response = getattr(fault, "response", None)
        if response is not None:
            candidates += [getattr(response, "status_code", None), getattr(response, "status", None)]
    for value in candidates:
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _by_status(status: int) -> ErrorClassification | None:
    if status in (408, 429) or 500 <= status <= 599:
        severity = Severity.MEDIUM if status in (408, 429) else Severity.HIGH
        return ErrorClassification(ErrorKind.NETWORK, severity, True, f"HTTP_{status}")
    if status in (401, 403):
        return ErrorClassification(ErrorKind.AUTH, Severity.MEDIUM, False, f"HTTP_{status}")
    if status in (400, 404, 409, 413, 422):
        return ErrorClassification(ErrorKind.VALIDATION, Severity.LOW, False, f"HTTP_{status}")
    return None


def describe(fault: object) -> str:
    """Render a fault as ``"<TypeName> <message>"`` without ever raising."""
    if isinstance(fault, BaseException):
        name = type(fault).__name__
        try:
            message = str(fault)
        except Exception:
            message = ""
        return f"{name} {message}".strip()
    if isinstance(fault, Mapping):
        try:
            return str(fault.get("message") or fault.get("error") or "")
        except Exception:
            return ""
    if fault is None:
        return ""
    try:
        return str(fault)
    except Exception:
        return type(fault).__name__


def classify(fault: object) -> ErrorClassification:
    """Classify a fault. Pure, total and deterministic."""
    try:
        return _classify(fault)
    except Exception:
        return UNKNOWN_CLASSIFICATION


def _classify(fault: object) -> ErrorClassification:
    if isinstance(fault, RetryExhaustedError):
        return replace(_classify(fault.last_error), retryable=False)

    if isinstance(fault, RampartError):
        return fault.classification

    by_type = _by_type(fault)
    if by_type is not None:
        return by_type

    status = extract_status(fault)
    if status is not None:
        by_status = _by_status(status)
        if by_status is not None:
            return by_status

    text = describe(fault)
    if text:
        for rule in MESSAGE_RULES:
            if rule.matches(text):
                return rule.classification

    if isinstance(fault, ValueError):
        return ErrorClassification(ErrorKind.VALIDATION, Severity.LOW, False, "INVALID_INPUT")

    return UNKNOWN_CLASSIFICATION


Classifier = Callable[[object], ErrorClassification]
