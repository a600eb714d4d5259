"""Bounded exponential-backoff retry for transient storage failures."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

import asyncpg

if TYPE_CHECKING:
    from chatsync.config import RetryConfig
    from chatsync.core.metrics import SyncMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorClassifier = Callable[[BaseException], bool]
RetryCallback = Callable[[int, BaseException, float], None]

TRANSIENT_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55P03",  # lock_not_available
    }
)
_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.LockNotAvailableError,
)
_CONFLICT_MARKERS = ("deadlock", "conflict", "could not serialize", "write conflict")


def is_transient_error(exc: BaseException) -> bool:
    """Classify *exc* as a transient storage conflict worth retrying.

    Transient: timeouts, serialization failures and deadlocks (by type or
    SQLSTATE), errors carrying an explicit truthy ``retryable`` attribute, and
    errors whose message mentions a conflict.
    """
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return True
    if getattr(exc, "sqlstate", None) in TRANSIENT_SQLSTATES:
        return True
    if getattr(exc, "retryable", False) is True:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONFLICT_MARKERS)


class RetryExecutor:
    """Runs storage operations with bounded exponential-backoff retry.

    Attempt *n* that fails transiently waits ``base_delay_s * 2**(n-1)`` plus a
    random jitter in ``[0, jitter_s]`` before attempt *n+1*.  Non-transient
    errors propagate immediately; once ``max_attempts`` is exhausted the last
    error is re-raised unchanged.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay_s: float = 0.1,
        jitter_s: float = 0.1,
        classify: ErrorClassifier = is_transient_error,
        metrics: SyncMetrics | None = None,
        session_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.jitter_s = jitter_s
        self.classify = classify
        self._metrics = metrics
        self._session_id = session_id
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: RetryConfig,
        *,
        metrics: SyncMetrics | None = None,
        session_id: str | None = None,
    ) -> RetryExecutor:
        return cls(
            max_attempts=config.max_attempts,
            base_delay_s=config.base_delay_s,
            jitter_s=config.jitter_s,
            metrics=metrics,
            session_id=session_id,
        )

    def backoff_delay(self, attempt: int, base_delay_s: float | None = None) -> float:
        """Delay after failed attempt *attempt* (1-based), jitter included."""
        base = self.base_delay_s if base_delay_s is None else base_delay_s
        jitter = random.uniform(0, self.jitter_s) if self.jitter_s > 0 else 0.0
        return base * (2 ** (attempt - 1)) + jitter

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        classify: ErrorClassifier | None = None,
        max_attempts: int | None = None,
        base_delay_s: float | None = None,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Await ``operation()`` until it succeeds or retrying stops.

        *operation* must build a fresh awaitable on each call; a transaction
        that rolled back is retried from scratch.
        """
        classify = classify or self.classify
        attempts = max_attempts or self.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                if not classify(exc):
                    raise
                if attempt >= attempts:
                    logger.error(
                        "Operation %s failed after %d attempt(s): %s",
                        name,
                        attempt,
                        exc,
                        extra={"operation": name, "attempts": attempt},
                    )
                    raise
                delay = self.backoff_delay(attempt, base_delay_s)
                logger.warning(
                    "Transient failure in %s (attempt %d/%d), retrying in %.3fs: %s",
                    name,
                    attempt,
                    attempts,
                    delay,
                    exc,
                    extra={"operation": name, "attempt": attempt},
                )
                if self._metrics is not None:
                    self._metrics.record_retry(session=self._session_id, operation=name)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover
