"""Retry policy engine with named policies, backoff and rolling statistics.

An operation is executed under a *named* policy. Failures are classified;
retryable ones are retried after a backoff delay until the policy's attempt
budget runs out, non-retryable ones propagate immediately.

::

    engine.execute(operation, "api_call")
      │
      ├─ attempt 1 ── ok ──────────────────────────────► result
      │      └─ fail ─ classify ─ not retryable ───────► raise original
      │                    └─ retryable
      │                         └─ cancelled? ─────────► RetryCancelledError
      │                         └─ await sleep(delay_for(1))
      ├─ attempt 2 ...
      └─ attempt N ── fail ────────────────────────────► RetryExhaustedError

Delay formulas (``attempt`` is the 1-based number of the failed attempt):

    exponential  min(base_delay * multiplier ** (attempt - 1), max_delay)
    linear       min(base_delay * attempt, max_delay)
    fixed        min(base_delay, max_delay)
    jitter       exponential * uniform(0.5, 1.0)

Example:
    >>> engine = RetryPolicyEngine()
    >>> result = await engine.execute(lambda: fetch_status(task_id), "api_call")
    >>> engine.statistics.average_attempts
    1.0
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from rampart.core.classify import Classifier, classify
from rampart.core.errors import (
    PolicyNotFoundError,
    RetryCancelledError,
    RetryExhaustedError,
)
from rampart.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class BackoffStrategy(str, Enum):
    """Shape of the delay curve between attempts."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    JITTER = "jitter"


@dataclass(frozen=True)
class RetryPolicy:
    """Named retry configuration.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay in seconds before the first retry
        max_delay: Cap on any single delay, in seconds
        backoff_multiplier: Growth factor for exponential/jitter strategies
        strategy: Delay curve
        is_retryable: Optional predicate overriding the classifier's verdict
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    is_retryable: Callable[[BaseException], bool] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after failed attempt number ``attempt`` (1-based)."""
        attempt = max(1, attempt)
        if self.strategy == BackoffStrategy.LINEAR:
            delay = self.base_delay * attempt
        elif self.strategy == BackoffStrategy.FIXED:
            delay = self.base_delay
        else:
            delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
            if self.strategy == BackoffStrategy.JITTER:
                delay *= random.uniform(0.5, 1.0)
        return max(0.0, min(delay, self.max_delay))


DEFAULT_POLICIES: dict[str, RetryPolicy] = {
    "api_call": RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, backoff_multiplier=2),
    "file_upload": RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=30.0, backoff_multiplier=1.5),
    "ai_processing": RetryPolicy(max_attempts=2, base_delay=5.0, max_delay=15.0, backoff_multiplier=2),
    "authentication": RetryPolicy(
        max_attempts=2, base_delay=1.0, max_delay=5.0, strategy=BackoffStrategy.FIXED
    ),
    # Single attempt: a retried payment risks a double charge.
    "payment": RetryPolicy(
        max_attempts=1, base_delay=0.0, max_delay=0.0, backoff_multiplier=1,
        strategy=BackoffStrategy.FIXED,
    ),
    "database": RetryPolicy(
        max_attempts=3, base_delay=0.5, max_delay=5.0, strategy=BackoffStrategy.JITTER
    ),
}


@dataclass
class RetryStatistics:
    """Rolling statistics over concluded operations.

    ``successful_attempts`` and ``failed_attempts`` count *operations* that
    ended in success or failure; ``average_attempts`` is the running mean of
    attempts per operation.
    """

    successful_attempts: int = 0
    failed_attempts: int = 0
    average_attempts: float = 0.0
    total_attempts: int = 0
    total_retries: int = 0
    last_retry_at: datetime | None = None

    @property
    def total_operations(self) -> int:
        return self.successful_attempts + self.failed_attempts

    def record(self, attempts: int, *, success: bool) -> None:
        if success:
            self.successful_attempts += 1
        else:
            self.failed_attempts += 1
        total = self.total_operations
        if total <= 1 or self.average_attempts <= 0:
            # First operation seeds the mean; never divide by a zero total.
            self.average_attempts = float(attempts)
        else:
            self.average_attempts = (self.average_attempts * (total - 1) + attempts) / total


class CancellationToken:
    """Cooperative cancellation flag checked between retry attempts."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


OnRetry = Callable[[int, BaseException, float], None]


class RetryPolicyEngine:
    """Executes operations under named retry policies."""

    def __init__(
        self,
        policies: Mapping[str, RetryPolicy] | None = None,
        *,
        classifier: Classifier = classify,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._policies: dict[str, RetryPolicy] = dict(
            DEFAULT_POLICIES if policies is None else policies
        )
        self._classifier = classifier
        self._sleep = sleep
        self._stats = RetryStatistics()

    # ── Policy management ────────────────────────────────────────

    def register_policy(self, name: str, policy: RetryPolicy) -> None:
        self._policies[name] = policy

    def update_policy(self, name: str, **changes: Any) -> RetryPolicy:
        policy = replace(self.get_policy(name), **changes)
        self._policies[name] = policy
        return policy

    def remove_policy(self, name: str) -> bool:
        return self._policies.pop(name, None) is not None

    def get_policy(self, name: str) -> RetryPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise PolicyNotFoundError(name) from None

    @property
    def policy_names(self) -> list[str]:
        return sorted(self._policies)

    # ── Statistics ───────────────────────────────────────────────

    @property
    def statistics(self) -> RetryStatistics:
        """A copy of the current statistics."""
        return replace(self._stats)

    def reset_statistics(self) -> None:
        self._stats = RetryStatistics()

    @property
    def success_rate(self) -> float:
        total = self._stats.total_operations
        return self._stats.successful_attempts / total if total else 0.0

    @property
    def retry_rate(self) -> float:
        total = self._stats.total_attempts
        return self._stats.total_retries / total if total else 0.0

    # ── Execution ────────────────────────────────────────────────

    def _should_retry(self, policy: RetryPolicy, error: BaseException) -> bool:
        if policy.is_retryable is not None:
            try:
                return bool(policy.is_retryable(error))
            except Exception:
                logger.warning("retry_predicate_failed", error_type=type(error).__name__)
                return False
        return self._classifier(error).retryable

    async def execute(
        self,
        operation: Callable[[], Awaitable[T] | T],
        policy_name: str = "api_call",
        *,
        cancel_token: CancellationToken | None = None,
        on_retry: OnRetry | None = None,
    ) -> T:
        """Run ``operation`` under the named policy.

        Raises:
            PolicyNotFoundError: No policy registered under ``policy_name``
            RetryExhaustedError: Every attempt failed with a retryable fault
            RetryCancelledError: ``cancel_token`` was cancelled between attempts
            Exception: The original fault when it is not retryable
        """
        policy = self.get_policy(policy_name)
        attempt = 0

        while True:
            attempt += 1
            self._stats.total_attempts += 1
            try:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                if not self._should_retry(policy, e):
                    self._stats.record(attempt, success=False)
                    logger.debug(
                        "retry_not_retryable",
                        policy=policy_name,
                        attempt=attempt,
                        error_type=type(e).__name__,
                    )
                    raise

                if attempt >= policy.max_attempts:
                    self._stats.record(attempt, success=False)
                    logger.warning(
                        "retry_exhausted",
                        policy=policy_name,
                        attempts=attempt,
                        error_type=type(e).__name__,
                    )
                    raise RetryExhaustedError(e, attempt, policy.max_attempts, policy_name) from e

                delay = policy.delay_for(attempt)
                self._stats.total_retries += 1
                self._stats.last_retry_at = utcnow()

                if on_retry is not None:
                    try:
                        on_retry(attempt, e, delay)
                    except Exception as callback_error:
                        logger.warning(
                            "retry_callback_failed",
                            policy=policy_name,
                            attempt=attempt,
                            error_type=type(callback_error).__name__,
                        )

                logger.info(
                    "retry_scheduled",
                    policy=policy_name,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay=delay,
                    error_type=type(e).__name__,
                )

                if cancel_token is not None and cancel_token.cancelled:
                    self._stats.record(attempt, success=False)
                    raise RetryCancelledError(attempt, e) from e
                await self._sleep(delay)
                if cancel_token is not None and cancel_token.cancelled:
                    self._stats.record(attempt, success=False)
                    raise RetryCancelledError(attempt, e) from e
                continue

            self._stats.record(attempt, success=True)
            return result  # type: ignore[return-value]


# ── Process-wide default engine ──────────────────────────────────


class _DefaultEngine:
    """Holder for the lazily created process-wide engine."""

    instance: RetryPolicyEngine | None = None


def get_retry_engine() -> RetryPolicyEngine:
    """Return the process-wide engine, creating it on first use."""
    if _DefaultEngine.instance is None:
        _DefaultEngine.instance = RetryPolicyEngine()
    return _DefaultEngine.instance


def retryable(
    policy_name: str = "api_call",
    engine: RetryPolicyEngine | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator running an async function under a named retry policy.

    Example:
        >>> @retryable("file_upload")
        ... async def upload(path):
        ...     return await client.put(path)
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            active = engine or get_retry_engine()
            return await active.execute(lambda: func(*args, **kwargs), policy_name)

        return wrapper

    return decorator
