"""Retry policy with exponential backoff, jitter, and failure classification.

Engine calls fail in two ways: transiently (throttling, 5xx, a dropped
connection) and terminally (a rejected statement, a failed query). The
policy classifies each failure, retries the transient ones with capped
exponential backoff and gives up with :class:`RetriesExhausted` once the
attempt ceiling is reached.

Example:
    >>> from queryspine.execution.retry import ExponentialBackoff, RetryPolicy
    >>>
    >>> backoff = ExponentialBackoff(base_delay=0.2, max_delay=5.0, jitter=False)
    >>> [backoff.next_delay(attempt) for attempt in range(3)]
    [0.2, 0.4, 0.8]
    >>>
    >>> policy = RetryPolicy(max_attempts=3, backoff=backoff)
    >>> execution_id = await policy.run(lambda: client.submit(statement), operation="submit")
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, TypeVar

from queryspine.core.errors import RetriesExhausted, get_retry_after, is_retryable
from queryspine.core.logging import get_logger

if TYPE_CHECKING:
    from queryspine.core.settings import QuerySpineSettings

T = TypeVar("T")

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class FailureKind(str, Enum):
    """Classification of a failed engine call."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

    Also used without jitter as the status poll schedule
    (0.5s, 0.75s, 1.125s ... capped at 5s).

    Attributes:
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Delay before the next try; ``attempt`` is zero-based."""
        try:
            delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        except OverflowError:
            # long polls run far past the cap
            delay = self.max_delay

        if self.jitter and self.jitter_range > 0:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = min(max(0.0, delay), self.max_delay)

        return delay

    @classmethod
    def poll_schedule(cls, settings: QuerySpineSettings) -> ExponentialBackoff:
        """Jitter-free status polling schedule from settings."""
        return cls(
            base_delay=settings.poll_initial_interval,
            max_delay=settings.poll_max_interval,
            multiplier=settings.poll_multiplier,
            jitter=False,
        )


@dataclass
class RetryContext:
    """Retry state of one operation.

    ``attempt`` counts tries started so far; ``errors`` keeps every failure
    with the attempt it belongs to.
    """

    operation: str = "operation"
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    def record_failure(self, error: Exception) -> None:
        """Record a failed attempt."""
        self.errors.append((self.attempt, error, utcnow()))
        self.last_error = error

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since first attempt."""
        return (utcnow() - self.started_at).total_seconds()

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt


@dataclass
class RetryPolicy:
    """Transient-failure retry policy for engine calls.

    Attributes:
        max_attempts: Total tries per operation, the first one included
        backoff: Delay schedule between tries
        sleep: Awaitable sleep, injectable for tests
        on_retry: Callback called before each retry (attempt, error, delay)
    """

    max_attempts: int = 3
    backoff: ExponentialBackoff = field(
        default_factory=lambda: ExponentialBackoff(base_delay=0.2, max_delay=5.0)
    )
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    on_retry: Callable[[int, Exception, float], None] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_settings(cls, settings: QuerySpineSettings, **kwargs) -> RetryPolicy:
        backoff = ExponentialBackoff(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter > 0,
            jitter_range=settings.retry_jitter,
        )
        return cls(max_attempts=settings.retry_max_attempts, backoff=backoff, **kwargs)

    def classify(self, error: BaseException) -> FailureKind:
        """Transient if the error is retryable, terminal otherwise (unknown included)."""
        return FailureKind.TRANSIENT if is_retryable(error) else FailureKind.TERMINAL

    def next_delay(self, attempt: int, error: BaseException | None = None) -> float:
        """Backoff delay for zero-based ``attempt``, raised to the error's retry-after hint."""
        delay = self.backoff.next_delay(attempt)
        hint = get_retry_after(error) if error is not None else None
        if hint is not None:
            delay = min(max(delay, hint), self.backoff.max_delay)
        return delay

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        operation: str = "operation",
    ) -> T:
        """Await ``func()`` until it succeeds, fails terminally, or attempts run out.

        Raises:
            The terminal error unchanged, or :class:`RetriesExhausted`
            carrying the attempt count and the last transient error.
        """
        ctx = RetryContext(operation=operation)
        while True:
            ctx.attempt += 1
            try:
                return await func()
            except Exception as e:
                ctx.record_failure(e)

                if self.classify(e) is FailureKind.TERMINAL:
                    raise

                if ctx.attempt >= self.max_attempts:
                    logger.warning(
                        "retry.exhausted",
                        operation=operation,
                        attempts=ctx.attempt,
                        error=str(e),
                    )
                    raise RetriesExhausted(
                        f"{operation} failed after {ctx.attempt} attempts: {e}",
                        attempts=ctx.attempt,
                        last_error=e,
                        operation=operation,
                    ) from e

                delay = self.next_delay(ctx.attempt - 1, e)
                logger.info(
                    "retry.scheduled",
                    operation=operation,
                    attempt=ctx.attempt,
                    delay_seconds=round(delay, 3),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if self.on_retry:
                    self.on_retry(ctx.attempt, e, delay)

                await self.sleep(delay)


__all__ = ["FailureKind", "ExponentialBackoff", "RetryContext", "RetryPolicy"]
