"""
Structured error types for the rampart resilience layer.

Every fault that passes through rampart is normalised into an
``ErrorClassification`` (kind, severity, retryable, code). Errors raised by
rampart itself carry that classification as class-level defaults so the
classifier never has to guess about its own exceptions.

Manifesto:
    - **Typed hierarchy:** One base class, ``RampartError``, for everything
      rampart raises
    - **Explicit retry semantics:** Each error knows whether it is retryable
    - **Immutable classification:** ``ErrorClassification`` is frozen once
      computed
    - **Error chaining:** The wrapped fault is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                        RampartError                          │
        │        (kind, severity, retryable, code, context, cause)     │
        ├─────────────────────────────────────────────────────────────┤
        │                                                              │
        │  CircuitOpenError        NoCachedResponseError               │
        │  (NETWORK, HIGH)         (SYSTEM, MEDIUM)                    │
        │                                                              │
        │  RetryExhaustedError     RetryCancelledError                 │
        │  (wraps last error)      (SYSTEM, LOW)                       │
        │                                                              │
        │  ConfigError             ReentrantCallError                  │
        │     └ PolicyNotFoundError                                    │
        │                                                              │
        │  StorageError                                                │
        │     ├ StorageQuotaError                                      │
        │     └ StorageUnavailableError                                │
        └─────────────────────────────────────────────────────────────┘

Examples:
    >>> err = CircuitOpenError("ai_service")
    >>> err.classification.kind
    <ErrorKind.NETWORK: 'network'>
    >>> err.retryable
    False

Tags:
    error-handling, exception-hierarchy, classification, rampart
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Normalized categories for a raised fault."""

    NETWORK = "network"  # Connection, timeout, upstream 5xx
    VALIDATION = "validation"  # Bad input, 4xx request errors
    AUTH = "auth"  # Authentication, authorization
    PROCESSING = "processing"  # Remote job / task failures
    SYSTEM = "system"  # Bugs, resource exhaustion, unknown
    BUSINESS = "business"  # Domain rule violations (payments, quotas)


class Severity(str, Enum):
    """How badly a fault affects the user."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True)
class ErrorClassification:
    """Normalized, immutable description of a fault.

    Attributes:
        kind: Category used for routing and recovery decisions
        severity: Impact on the user
        retryable: Whether repeating the same operation may succeed
        code: Stable machine-readable identifier (e.g. ``NETWORK_ERROR``)
    """

    kind: ErrorKind
    severity: Severity
    retryable: bool
    code: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "code": self.code,
        }


UNKNOWN_CLASSIFICATION = ErrorClassification(
    kind=ErrorKind.SYSTEM,
    severity=Severity.MEDIUM,
    retryable=False,
    code="UNKNOWN_ERROR",
)


@dataclass
class ErrorContext:
    """Structured metadata attached to a rampart error."""

    dependency: str | None = None
    operation: str | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("dependency", "operation", "correlation_id"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class RampartError(Exception):
    """
    Base exception for everything rampart raises.

    Subclasses set ``default_kind``, ``default_severity``,
    ``default_retryable`` and ``default_code``; instances may override any of
    them. The classifier reads ``classification`` directly instead of
    pattern-matching the message.

    Examples:
        >>> err = RampartError("Something went wrong")
        >>> err.classification.code
        'RAMPART_ERROR'
        >>> RampartError("x", retryable=True).retryable
        True
    """

    default_kind: ErrorKind = ErrorKind.SYSTEM
    default_severity: Severity = Severity.MEDIUM
    default_retryable: bool = False
    default_code: str = "RAMPART_ERROR"

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        severity: Severity | None = None,
        retryable: bool | None = None,
        code: str | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.severity = severity or self.default_severity
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.code = code or self.default_code
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    @property
    def classification(self) -> ErrorClassification:
        return ErrorClassification(
            kind=self.kind,
            severity=self.severity,
            retryable=self.retryable,
            code=self.code,
        )

    def with_context(self, **kwargs: Any) -> RampartError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            **self.classification.to_dict(),
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, code={self.code})"


# =============================================================================
# CIRCUIT BREAKER ERRORS
# =============================================================================


class CircuitOpenError(RampartError):
    """Raised when a circuit is open and the fallback strategy is reject."""

    default_kind = ErrorKind.NETWORK
    default_severity = Severity.HIGH
    default_code = "CIRCUIT_OPEN"

    def __init__(self, dependency: str, message: str | None = None, **kwargs: Any):
        super().__init__(
            message or f"Circuit breaker '{dependency}' is open - service unavailable",
            context=ErrorContext(dependency=dependency),
            **kwargs,
        )
        self.dependency = dependency


class NoCachedResponseError(RampartError):
    """Raised by the cache fallback when nothing was cached yet."""

    default_kind = ErrorKind.SYSTEM
    default_severity = Severity.MEDIUM
    default_code = "NO_CACHED_RESPONSE"

    def __init__(self, dependency: str, **kwargs: Any):
        super().__init__(
            f"No cached response available for '{dependency}'",
            context=ErrorContext(dependency=dependency),
            **kwargs,
        )
        self.dependency = dependency


class ReentrantCallError(RampartError):
    """A state-change listener tried to call back into the breaker it observes."""

    default_kind = ErrorKind.SYSTEM
    default_severity = Severity.HIGH
    default_code = "REENTRANT_CALL"


# =============================================================================
# RETRY ERRORS
# =============================================================================


class RetryExhaustedError(RampartError):
    """All attempts allowed by a retry policy failed.

    The last underlying failure is available as ``last_error`` (and as
    ``__cause__``); ``attempts`` records how many attempts were made.
    """

    default_kind = ErrorKind.SYSTEM
    default_severity = Severity.HIGH
    default_code = "RETRY_EXHAUSTED"

    def __init__(
        self,
        last_error: BaseException,
        attempts: int,
        max_attempts: int,
        policy: str | None = None,
    ):
        super().__init__(
            f"Max retries ({max_attempts}) exceeded after {attempts} attempts. "
            f"Last error: {last_error}",
            cause=last_error,
            context=ErrorContext(operation=policy),
        )
        self.last_error = last_error
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.policy = policy


class RetryCancelledError(RampartError):
    """Retrying was cancelled cooperatively between attempts."""

    default_kind = ErrorKind.SYSTEM
    default_severity = Severity.LOW
    default_code = "RETRY_CANCELLED"

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        super().__init__(
            f"Retry cancelled after {attempts} attempts",
            cause=last_error,
        )
        self.attempts = attempts
        self.last_error = last_error


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(RampartError):
    """Invalid or missing configuration. Never retryable."""

    default_kind = ErrorKind.SYSTEM
    default_severity = Severity.CRITICAL
    default_code = "INVALID_CONFIG"


class PolicyNotFoundError(ConfigError):
    """No retry policy is registered under the requested name."""

    default_code = "MISSING_CONFIG"

    def __init__(self, policy: str):
        super().__init__(f"No retry configuration found for operation type: {policy}")
        self.policy = policy


# =============================================================================
# STORAGE ERRORS (never escape the ScopedStorage adapter)
# =============================================================================


class StorageError(RampartError):
    """Failure reported by an underlying key/value store."""

    default_kind = ErrorKind.SYSTEM
    default_severity = Severity.LOW
    default_code = "STORAGE_ERROR"


class StorageQuotaError(StorageError):
    """The store refused a write because its quota would be exceeded."""

    default_code = "STORAGE_QUOTA_EXCEEDED"


class StorageUnavailableError(StorageError):
    """The store cannot be used in the current execution context."""

    default_code = "STORAGE_UNAVAILABLE"
