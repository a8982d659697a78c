"""Rampart core primitives.

Leaf modules with no dependency on the execution layer:

- errors       ErrorKind, Severity, ErrorClassification, RampartError hierarchy
- classify     Error classifier (total, pure)
- redaction    Credential / IP / path masking
- correlation  Correlation ids bound per context
- storage      KeyValueStore protocol, stores, ScopedStorage adapter
- settings     RampartSettings, get_settings()
- logging      structlog configuration
"""

from rampart.core.classify import classify, describe
from rampart.core.correlation import (
    correlation_scope,
    ensure_correlation_id,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from rampart.core.errors import (
    UNKNOWN_CLASSIFICATION,
    CircuitOpenError,
    ConfigError,
    ErrorClassification,
    ErrorContext,
    ErrorKind,
    NoCachedResponseError,
    PolicyNotFoundError,
    RampartError,
    ReentrantCallError,
    RetryCancelledError,
    RetryExhaustedError,
    Severity,
    StorageError,
    StorageQuotaError,
    StorageUnavailableError,
)
from rampart.core.logging import configure_logging, get_logger
from rampart.core.redaction import redact, redact_mapping
from rampart.core.settings import RampartSettings, get_settings
from rampart.core.storage import (
    KeyValueStore,
    MemoryStore,
    ScopedStorage,
    SqliteStore,
    UnavailableStore,
    open_default_store,
)

__all__ = [
    # errors
    "ErrorKind",
    "Severity",
    "ErrorClassification",
    "ErrorContext",
    "UNKNOWN_CLASSIFICATION",
    "RampartError",
    "CircuitOpenError",
    "NoCachedResponseError",
    "ReentrantCallError",
    "RetryExhaustedError",
    "RetryCancelledError",
    "ConfigError",
    "PolicyNotFoundError",
    "StorageError",
    "StorageQuotaError",
    "StorageUnavailableError",
    # classify / redaction
    "classify",
    "describe",
    "redact",
    "redact_mapping",
    # correlation
    "correlation_scope",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
    # storage
    "KeyValueStore",
    "MemoryStore",
    "SqliteStore",
    "UnavailableStore",
    "ScopedStorage",
    "open_default_store",
    # settings / logging
    "RampartSettings",
    "get_settings",
    "configure_logging",
    "get_logger",
]
