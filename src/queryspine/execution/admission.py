"""Admission control for new engine executions.

Each caller has two independent budgets:

- a concurrency bound: at most ``max_concurrent`` executions it initiated
  may be in flight at once
- a token bucket: ``bucket_capacity`` tokens, refilled by
  ``refill_tokens`` every ``refill_interval_seconds``

Only callers that would start a new engine execution come here. Cache hits
and callers joining an in-flight execution never consume a permit or a
token.

Example::

    controller = AdmissionController(max_concurrent=4, bucket_capacity=20)
    with controller.try_acquire("analyst-1"):
        ...  # run the execution
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

from queryspine.core.errors import Denied
from queryspine.core.logging import get_logger
from queryspine.execution.rate_limit import CallerBuckets, Clock

if TYPE_CHECKING:
    from queryspine.core.settings import QuerySpineSettings

logger = get_logger(__name__)

# Suggested wait when the concurrency bound (not the bucket) denied
DEFAULT_CONCURRENCY_RETRY_AFTER = 1.0


class AdmissionPermit:
    """Grant to run one execution for ``caller``.

    Releasing is idempotent; a permit can be used as a context manager.
    """

    def __init__(self, controller: AdmissionController, caller: str):
        self._controller = controller
        self.caller = caller
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._controller._release(self)

    def __enter__(self) -> AdmissionPermit:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"AdmissionPermit(caller={self.caller!r}, released={self._released})"


class AdmissionController:
    """Per-caller concurrency bound plus token bucket.

    The concurrency bound is checked first, so a request denied for
    concurrency never spends a token.
    """

    def __init__(
        self,
        *,
        max_concurrent: int = 4,
        bucket_capacity: int = 20,
        refill_tokens: float = 20.0,
        refill_interval_seconds: float = 60.0,
        clock: Clock = time.monotonic,
        concurrency_retry_after: float = DEFAULT_CONCURRENCY_RETRY_AFTER,
    ):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.max_concurrent = max_concurrent
        self.concurrency_retry_after = concurrency_retry_after
        self._buckets = CallerBuckets(
            rate=refill_tokens / refill_interval_seconds,
            capacity=bucket_capacity,
            clock=clock,
        )
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: QuerySpineSettings, **kwargs) -> AdmissionController:
        return cls(
            max_concurrent=settings.admission_max_concurrent,
            bucket_capacity=settings.admission_bucket_capacity,
            refill_tokens=settings.admission_refill_tokens,
            refill_interval_seconds=settings.admission_refill_interval_seconds,
            **kwargs,
        )

    def try_acquire(self, caller: str) -> AdmissionPermit:
        """Admit one new execution for ``caller``.

        Raises:
            Denied: With ``reason`` ``"concurrency"`` or ``"rate"`` and a
                retry-after hint in seconds.
        """
        with self._lock:
            active = self._active.get(caller, 0)
            if active >= self.max_concurrent:
                logger.info(
                    "admission.denied",
                    caller=caller,
                    reason="concurrency",
                    active=active,
                )
                raise Denied(
                    f"Caller {caller!r} already has {active} executions in flight",
                    caller=caller,
                    reason="concurrency",
                    retry_after=self.concurrency_retry_after,
                )
            retry_after = self._buckets.take(caller)
            if retry_after:
                logger.info(
                    "admission.denied",
                    caller=caller,
                    reason="rate",
                    retry_after=round(retry_after, 3),
                )
                raise Denied(
                    f"Caller {caller!r} exceeded its query rate",
                    caller=caller,
                    reason="rate",
                    retry_after=retry_after,
                )
            self._active[caller] = active + 1
        return AdmissionPermit(self, caller)

    def active(self, caller: str) -> int:
        """Executions currently admitted for ``caller``."""
        with self._lock:
            return self._active.get(caller, 0)

    def available_tokens(self, caller: str) -> float:
        return self._buckets.tokens(caller)

    def _release(self, permit: AdmissionPermit) -> None:
        with self._lock:
            if permit._released:
                return
            permit._released = True
            remaining = self._active[permit.caller] - 1
            if remaining > 0:
                self._active[permit.caller] = remaining
            else:
                del self._active[permit.caller]


__all__ = ["AdmissionController", "AdmissionPermit", "DEFAULT_CONCURRENCY_RETRY_AFTER"]
