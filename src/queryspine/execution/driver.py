"""Execution driver: one full submit → poll… → fetch run.

The driver owns the :class:`ExecutionHandle` of its run. It submits under
the retry policy, polls with a capped exponential schedule until the
engine reports a terminal state, and drains the results. The whole run is
bounded by a wall-clock timeout.

Whenever a run ends without a terminal engine state (timeout, caller
cancellation, retries exhausted while polling) the engine execution is
cancelled in the background, best effort.

Example::

    driver = ExecutionDriver(EngineAdapter(client), timeout_seconds=300)
    table = await driver.run(statement, fingerprint=fp)
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from queryspine.core.errors import ExecutionCancelled, ExecutionTimeout, QueryFailed
from queryspine.core.hashing import compute_hash
from queryspine.core.logging import get_logger
from queryspine.execution.adapter import EngineAdapter
from queryspine.execution.models import ExecutionHandle, ExecutionState
from queryspine.execution.retry import ExponentialBackoff, RetryPolicy
from queryspine.query.models import ResultTable
from queryspine.query.statement import QueryStatement

if TYPE_CHECKING:
    from queryspine.core.settings import QuerySpineSettings

logger = get_logger(__name__)


@dataclass
class _Run:
    """Mutable bookkeeping of one run, shared with the timeout handler."""

    run_id: str
    fingerprint: str
    handle: ExecutionHandle | None = None


class ExecutionDriver:
    """Drives one execution through the adapter.

    Args:
        adapter: Engine adapter
        retry: Policy for transient submit/poll/fetch failures
        poll_backoff: Status polling schedule (jitter-free)
        timeout_seconds: Wall-clock budget of a whole run
        sleep: Awaitable sleep used between polls
    """

    def __init__(
        self,
        adapter: EngineAdapter,
        *,
        retry: RetryPolicy | None = None,
        poll_backoff: ExponentialBackoff | None = None,
        timeout_seconds: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapter = adapter
        self.retry = retry or RetryPolicy()
        self.poll_backoff = poll_backoff or ExponentialBackoff(
            base_delay=0.5, max_delay=5.0, multiplier=1.5, jitter=False
        )
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        adapter: EngineAdapter,
        settings: QuerySpineSettings,
        **kwargs,
    ) -> ExecutionDriver:
        kwargs.setdefault("retry", RetryPolicy.from_settings(settings))
        return cls(
            adapter,
            poll_backoff=ExponentialBackoff.poll_schedule(settings),
            timeout_seconds=settings.execution_timeout_seconds,
            **kwargs,
        )

    async def run(
        self,
        statement: QueryStatement,
        *,
        fingerprint: str,
        page_size: int | None = None,
    ) -> ResultTable:
        """Execute ``statement`` and return its result table.

        Raises:
            EngineUnavailable / EngineRejected: Submit failed
            QueryFailed: Engine reported FAILED
            ExecutionCancelled: Engine reported CANCELLED
            RetriesExhausted: Transient failures past the retry ceiling
            ExecutionTimeout: The run exceeded ``timeout_seconds``
        """
        run = _Run(run_id=uuid.uuid4().hex, fingerprint=fingerprint)
        started = time.monotonic()
        try:
            return await asyncio.wait_for(
                self._execute(statement, run, page_size),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._abandon(run, "timeout")
            handle = run.handle
            if handle is not None and not handle.is_terminal:
                # a timed-out run ends as FAILED(timeout) on our side
                handle = run.handle = dataclasses.replace(
                    handle, state=ExecutionState.FAILED, failure_reason="timeout"
                )
            logger.warning(
                "execution.timeout",
                fingerprint=fingerprint[:12],
                execution_id=handle.execution_id if handle else None,
                state=handle.state.value if handle else None,
                timeout_seconds=self.timeout_seconds,
            )
            raise ExecutionTimeout(
                f"Execution exceeded {self.timeout_seconds}s",
                timeout_seconds=self.timeout_seconds,
            ).with_context(
                fingerprint=fingerprint,
                execution_id=handle.execution_id if handle else None,
                execution_state=handle.state.value if handle else None,
                failure_reason=handle.failure_reason if handle else None,
            ) from None
        except asyncio.CancelledError:
            self._abandon(run, "cancelled")
            raise
        except Exception as e:
            self._abandon(run, "error")
            logger.warning(
                "execution.failed",
                fingerprint=fingerprint[:12],
                execution_id=run.handle.execution_id if run.handle else None,
                error_type=type(e).__name__,
                error=str(e),
                elapsed_seconds=round(time.monotonic() - started, 3),
            )
            raise

    async def _execute(
        self,
        statement: QueryStatement,
        run: _Run,
        page_size: int | None,
    ) -> ResultTable:
        # One token per run: a retried submit must not start a second execution
        client_token = compute_hash(run.fingerprint, run.run_id)
        attempts = 0

        async def submit() -> ExecutionHandle:
            nonlocal attempts
            attempts += 1
            return await self.adapter.submit(
                statement,
                fingerprint=run.fingerprint,
                attempt=attempts,
                client_token=client_token,
            )

        handle = await self.retry.run(submit, operation="submit")
        run.handle = handle

        polls = 0
        while not handle.is_terminal:
            await self.sleep(self.poll_backoff.next_delay(polls))
            polls += 1
            current = handle
            handle = await self.retry.run(lambda: self.adapter.poll(current), operation="poll")
            run.handle = handle

        if handle.state is ExecutionState.FAILED:
            raise QueryFailed(
                f"Query failed: {handle.failure_reason or 'no reason given'}",
                reason=handle.failure_reason,
            ).with_context(fingerprint=run.fingerprint, execution_id=handle.execution_id)
        if handle.state is ExecutionState.CANCELLED:
            raise ExecutionCancelled(
                f"Execution was cancelled by the engine: {handle.failure_reason or 'no reason given'}"
            ).with_context(fingerprint=run.fingerprint, execution_id=handle.execution_id)

        table = await self.adapter.fetch(handle, page_size=page_size, retry=self.retry)
        logger.info(
            "execution.succeeded",
            fingerprint=run.fingerprint[:12],
            execution_id=handle.execution_id,
            polls=handle.polls,
            rows=table.row_count,
            truncated=table.truncated,
        )
        return table

    def _abandon(self, run: _Run, reason: str) -> None:
        handle = run.handle
        if handle is None or handle.is_terminal:
            return
        logger.info(
            "execution.abandoned",
            fingerprint=run.fingerprint[:12],
            execution_id=handle.execution_id,
            reason=reason,
        )
        self.adapter.cancel_in_background(handle)


__all__ = ["ExecutionDriver"]
