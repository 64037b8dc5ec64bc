"""Test doubles for the query execution core.

Provides an in-memory :class:`~queryspine.execution.adapter.EngineClient`
with scripted behaviour, a hand-advanced clock and an instant sleep, so
single-flight, retry, timeout and TTL behaviour can be exercised without
a real engine or real waiting.

Example::

    from queryspine.testing import ManualClock, ScriptedEngine, instant_sleep

    engine = ScriptedEngine(
        states=["queued", "running", "succeeded"],
        columns=[("event_date", "date"), ("visits", "bigint")],
        rows=[("2024-01-01", "10"), ("2024-01-02", "12"), ("2024-01-03", "9")],
    )
    clock = ManualClock()
    cache = ResultCache.from_settings(engine, catalog, clock=clock, sleep=instant_sleep)

    # Flaky engine: two 503s, then success
    engine = ScriptedEngine(submit_errors=[EngineUnavailable("503"), EngineUnavailable("503")])

    # Keep executions RUNNING until the test lets them finish
    engine = ScriptedEngine(hold=True)
    ...
    engine.release()
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from typing import Any

from queryspine.execution.models import EngineStatus, ExecutionState, ResultPage
from queryspine.query.statement import QueryStatement


async def instant_sleep(delay: float) -> None:
    """Sleep replacement that only yields to the event loop."""
    await asyncio.sleep(0)


class ManualClock:
    """Monotonic clock advanced by hand.

    Example::

        clock = ManualClock(start=100.0)
        clock.advance(10)
        clock()  # 110.0
    """

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


_NOT_YET_FINISHED = (ExecutionState.SUBMITTED, ExecutionState.QUEUED, ExecutionState.RUNNING)


class ScriptedEngine:
    """Engine client that walks every execution through a scripted state list.

    Each ``status()`` call advances the execution to the next scripted
    state; the last state repeats. Results are served from ``rows`` in
    pages of the requested size.

    Parameters
    ----------
    states
        Ordered states reported by ``status()`` (names, any case).
    columns
        ``(name, engine_type)`` pairs of the result.
    rows
        Result rows, as the engine would return them (often text).
    failure_reason
        Reason reported alongside a ``failed`` state.
    submit_errors, status_errors, fetch_errors
        Exceptions raised, one per call, before calls start succeeding.
    cancel_error
        Raised by every ``cancel()`` call if set.
    hold
        If True, executions report ``running`` until :meth:`release`, then
        continue from the first scripted state past ``running``.
    report_total
        Whether pages carry ``total_rows``.
    """

    def __init__(
        self,
        *,
        states: Sequence[str] = ("queued", "running", "succeeded"),
        columns: Sequence[tuple[str, str]] = (("event_date", "date"), ("visits", "bigint")),
        rows: Iterable[Sequence[Any]] = (),
        failure_reason: str | None = "Query exhausted resources",
        submit_errors: Iterable[BaseException] = (),
        status_errors: Iterable[BaseException] = (),
        fetch_errors: Iterable[BaseException] = (),
        cancel_error: BaseException | None = None,
        cancel_ack: bool = True,
        hold: bool = False,
        report_total: bool = True,
    ):
        self.states = [ExecutionState.parse(s) for s in states]
        self._resume_at = next(
            (i for i, s in enumerate(self.states) if s not in _NOT_YET_FINISHED), len(self.states) - 1
        )
        self.columns = list(columns)
        self.rows = [tuple(row) for row in rows]
        self.failure_reason = failure_reason
        self.cancel_error = cancel_error
        self.cancel_ack = cancel_ack
        self.report_total = report_total

        self._submit_errors = list(submit_errors)
        self._status_errors = list(status_errors)
        self._fetch_errors = list(fetch_errors)
        self._held = hold
        self._positions: dict[str, int] = {}
        self._tokens: dict[str, str] = {}
        self._cancelled: set[str] = set()
        self._active: set[str] = set()

        self.submit_calls = 0
        self.status_calls = 0
        self.fetch_calls = 0
        self.cancel_calls = 0
        self.statements: list[QueryStatement] = []
        self.cancelled_ids: list[str] = []
        self.max_active = 0
        self.submitted = asyncio.Event()

    # ── Scripting ────────────────────────────────────────────────────

    def release(self) -> None:
        """Let held executions continue through their scripted states."""
        self._held = False

    @property
    def calls(self) -> int:
        """Total calls of any kind."""
        return self.submit_calls + self.status_calls + self.fetch_calls + self.cancel_calls

    @property
    def executions(self) -> int:
        """Distinct executions started."""
        return len(self._positions)

    # ── EngineClient ─────────────────────────────────────────────────

    async def submit(self, statement: QueryStatement, *, client_token: str | None = None) -> str:
        self.submit_calls += 1
        await asyncio.sleep(0)
        if self._submit_errors:
            raise self._submit_errors.pop(0)
        if client_token is not None and client_token in self._tokens:
            return self._tokens[client_token]

        execution_id = f"exec-{len(self._positions) + 1}"
        self._positions[execution_id] = 0
        if client_token is not None:
            self._tokens[client_token] = execution_id
        self.statements.append(statement)
        self._active.add(execution_id)
        self.max_active = max(self.max_active, len(self._active))
        self.submitted.set()
        return execution_id

    async def status(self, execution_id: str) -> EngineStatus:
        self.status_calls += 1
        await asyncio.sleep(0)
        if self._status_errors:
            raise self._status_errors.pop(0)
        if execution_id not in self._positions:
            raise KeyError(f"Unknown execution: {execution_id}")
        if execution_id in self._cancelled:
            return EngineStatus(ExecutionState.CANCELLED, "Cancelled by request")
        if self._held:
            # skip the scripted states a running execution has already left
            self._positions[execution_id] = max(self._positions[execution_id], self._resume_at)
            return EngineStatus(ExecutionState.RUNNING)

        position = self._positions[execution_id]
        state = self.states[min(position, len(self.states) - 1)]
        self._positions[execution_id] = position + 1
        if state.is_terminal:
            self._active.discard(execution_id)
        reason = self.failure_reason if state is ExecutionState.FAILED else None
        return EngineStatus(state, reason)

    async def fetch(self, execution_id: str, page_token: str | None, page_size: int) -> ResultPage:
        self.fetch_calls += 1
        await asyncio.sleep(0)
        if self._fetch_errors:
            raise self._fetch_errors.pop(0)
        start = int(page_token) if page_token else 0
        end = start + page_size
        return ResultPage(
            columns=self.columns,
            rows=self.rows[start:end],
            next_page_token=str(end) if end < len(self.rows) else None,
            total_rows=len(self.rows) if self.report_total else None,
        )

    async def cancel(self, execution_id: str) -> bool:
        self.cancel_calls += 1
        await asyncio.sleep(0)
        if self.cancel_error is not None:
            raise self.cancel_error
        self._cancelled.add(execution_id)
        self._active.discard(execution_id)
        self.cancelled_ids.append(execution_id)
        return self.cancel_ack


__all__ = ["ManualClock", "ScriptedEngine", "instant_sleep"]
