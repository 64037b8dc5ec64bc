"""
Tests for the engine adapter.

Covers:
- Error mapping of client failures
- Status polling and state advancement
- Paged result fetching, type normalization and row cap truncation
- Best-effort cancellation
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from queryspine.core.errors import (
    EngineError,
    EngineRejected,
    EngineUnavailable,
    FetchIncomplete,
)
from queryspine.execution.adapter import EngineAdapter, EngineClient, semantic_type_for
from queryspine.execution.models import (
    ExecutionHandle,
    ExecutionState,
    InvalidTransitionError,
)
from queryspine.execution.retry import ExponentialBackoff, RetryPolicy
from queryspine.query.models import SemanticType
from queryspine.query.statement import QueryStatement
from queryspine.testing import ScriptedEngine, instant_sleep

THREE_DAYS = [("2024-01-01", "120"), ("2024-01-02", "98"), ("2024-01-03", "143")]

STATEMENT = QueryStatement('SELECT SUM("visits") AS "visits" FROM "analytics"."web_traffic"')


def _succeeded(execution_id: str = "exec-1") -> ExecutionHandle:
    return ExecutionHandle(execution_id=execution_id, fingerprint="f" * 64, state=ExecutionState.SUCCEEDED)


class StringStatusClient(ScriptedEngine):
    """Client whose status() returns bare state strings."""

    async def status(self, execution_id):
        status = await super().status(execution_id)
        return status.state.value.upper()


class TestEngineClientProtocol:
    def test_scripted_engine_satisfies_protocol(self):
        assert isinstance(ScriptedEngine(), EngineClient)

    def test_adapter_from_settings(self, settings):
        adapter = EngineAdapter.from_settings(ScriptedEngine(), settings)
        assert adapter.max_rows == settings.max_rows
        assert adapter.page_size == settings.default_page_size


class TestSemanticTypes:
    @pytest.mark.parametrize(
        "engine_type, expected",
        [
            ("bigint", SemanticType.INTEGER),
            ("INTEGER", SemanticType.INTEGER),
            ("decimal(18,2)", SemanticType.DECIMAL),
            ("double", SemanticType.DECIMAL),
            ("varchar(255)", SemanticType.TEXT),
            ("timestamp with time zone", SemanticType.TIMESTAMP),
            ("date", SemanticType.DATE),
            ("boolean", SemanticType.BOOLEAN),
            ("category", SemanticType.CATEGORY),
            ("map<string,string>", SemanticType.TEXT),
        ],
    )
    def test_mapping(self, engine_type, expected):
        assert semantic_type_for(engine_type) is expected


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_connection_error_becomes_unavailable(self):
        error = ConnectionResetError("connection reset by peer")
        adapter = EngineAdapter(ScriptedEngine(submit_errors=[error]))
        with pytest.raises(EngineUnavailable) as exc_info:
            await adapter.submit(STATEMENT, fingerprint="abc")
        assert exc_info.value.retryable
        assert exc_info.value.cause is error
        assert exc_info.value.context.fingerprint == "abc"
        assert exc_info.value.context.metadata["operation"] == "submit"

    @pytest.mark.asyncio
    async def test_timeout_error_becomes_unavailable(self):
        adapter = EngineAdapter(ScriptedEngine(status_errors=[TimeoutError()]))
        with pytest.raises(EngineUnavailable, match="TimeoutError"):
            await adapter.poll(ExecutionHandle(execution_id="exec-1", fingerprint="abc"))

    @pytest.mark.asyncio
    async def test_typed_errors_pass_through_with_context(self):
        error = EngineRejected("line 1: syntax error")
        adapter = EngineAdapter(ScriptedEngine(submit_errors=[error]))
        with pytest.raises(EngineRejected) as exc_info:
            await adapter.submit(STATEMENT, fingerprint="abc")
        assert exc_info.value is error
        assert error.context.fingerprint == "abc"

    @pytest.mark.asyncio
    async def test_unknown_errors_pass_through_unchanged(self):
        error = RuntimeError("client bug")
        adapter = EngineAdapter(ScriptedEngine(submit_errors=[error]))
        with pytest.raises(RuntimeError) as exc_info:
            await adapter.submit(STATEMENT, fingerprint="abc")
        assert exc_info.value is error


class TestSubmitAndPoll:
    @pytest.mark.asyncio
    async def test_submit_returns_submitted_handle(self):
        engine = ScriptedEngine()
        handle = await EngineAdapter(engine).submit(STATEMENT, fingerprint="abc", attempt=2)
        assert handle.execution_id == "exec-1"
        assert handle.state is ExecutionState.SUBMITTED
        assert handle.attempt == 2
        assert engine.statements == [STATEMENT]

    @pytest.mark.asyncio
    async def test_poll_walks_states(self):
        adapter = EngineAdapter(ScriptedEngine())
        handle = await adapter.submit(STATEMENT, fingerprint="abc")
        states = []
        while not handle.is_terminal:
            handle = await adapter.poll(handle)
            states.append(handle.state)
        assert states == [ExecutionState.QUEUED, ExecutionState.RUNNING, ExecutionState.SUCCEEDED]
        assert handle.polls == 3

    @pytest.mark.asyncio
    async def test_bare_state_strings_accepted(self):
        adapter = EngineAdapter(StringStatusClient(states=["succeeded"]))
        handle = await adapter.submit(STATEMENT, fingerprint="abc")
        assert (await adapter.poll(handle)).state is ExecutionState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_failure_reason_recorded(self):
        adapter = EngineAdapter(ScriptedEngine(states=["failed"], failure_reason="OOM"))
        handle = await adapter.poll(await adapter.submit(STATEMENT, fingerprint="abc"))
        assert handle.state is ExecutionState.FAILED
        assert handle.failure_reason == "OOM"

    @pytest.mark.asyncio
    async def test_backward_transition_rejected(self):
        adapter = EngineAdapter(ScriptedEngine(states=["running", "queued"]))
        handle = await adapter.poll(await adapter.submit(STATEMENT, fingerprint="abc"))
        with pytest.raises(InvalidTransitionError):
            await adapter.poll(handle)


class TestFetch:
    @pytest.mark.asyncio
    async def test_requires_succeeded(self):
        adapter = EngineAdapter(ScriptedEngine())
        running = ExecutionHandle(execution_id="exec-1", fingerprint="abc", state=ExecutionState.RUNNING)
        with pytest.raises(FetchIncomplete):
            await adapter.fetch(running)

    @pytest.mark.asyncio
    async def test_converts_rows(self):
        adapter = EngineAdapter(ScriptedEngine(rows=THREE_DAYS))
        table = await adapter.fetch(_succeeded())
        assert table.column_names == ["event_date", "visits"]
        assert [c.semantic_type for c in table.columns] == [SemanticType.DATE, SemanticType.INTEGER]
        assert table.rows == (
            (date(2024, 1, 1), 120),
            (date(2024, 1, 2), 98),
            (date(2024, 1, 3), 143),
        )
        assert table.total_row_count == 3
        assert not table.truncated

    @pytest.mark.asyncio
    async def test_drains_all_pages(self):
        engine = ScriptedEngine(rows=THREE_DAYS)
        table = await EngineAdapter(engine).fetch(_succeeded(), page_size=2)
        assert table.row_count == 3
        assert engine.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_mixed_types_and_nulls(self):
        engine = ScriptedEngine(
            columns=[
                ("revenue", "decimal(18,2)"),
                ("bounce_rate", "double"),
                ("is_bot", "boolean"),
                ("session_start", "timestamp"),
                ("country", "varchar"),
            ],
            rows=[
                ("12.50", "0.25", "false", "2024-01-01T08:00:00+00:00", "us"),
                (None, None, None, None, None),
            ],
        )
        table = await EngineAdapter(engine).fetch(_succeeded())
        assert table.rows[0] == (
            Decimal("12.50"),
            0.25,
            False,
            datetime(2024, 1, 1, 8, tzinfo=timezone.utc),
            "us",
        )
        assert table.rows[1] == (None, None, None, None, None)
        assert table.to_records()[0]["country"] == "us"

    @pytest.mark.asyncio
    async def test_truncates_at_max_rows(self):
        adapter = EngineAdapter(ScriptedEngine(rows=THREE_DAYS), max_rows=2)
        table = await adapter.fetch(_succeeded())
        assert table.row_count == 2
        assert table.truncated
        assert table.total_row_count == 3

    @pytest.mark.asyncio
    async def test_truncation_on_page_boundary(self):
        engine = ScriptedEngine(rows=THREE_DAYS)
        table = await EngineAdapter(engine, max_rows=2).fetch(_succeeded(), page_size=2)
        assert table.row_count == 2
        assert table.truncated
        assert engine.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_exactly_max_rows_is_not_truncated(self):
        engine = ScriptedEngine(rows=THREE_DAYS[:2])
        table = await EngineAdapter(engine, max_rows=2).fetch(_succeeded(), page_size=2)
        assert not table.truncated

    @pytest.mark.asyncio
    async def test_truncated_without_reported_total(self):
        engine = ScriptedEngine(rows=THREE_DAYS, report_total=False)
        table = await EngineAdapter(engine, max_rows=2).fetch(_succeeded())
        assert table.truncated
        assert table.total_row_count == 2

    @pytest.mark.asyncio
    async def test_empty_result(self):
        table = await EngineAdapter(ScriptedEngine(rows=[])).fetch(_succeeded())
        assert table.rows == ()
        assert table.column_names == ["event_date", "visits"]

    @pytest.mark.asyncio
    async def test_row_width_mismatch(self):
        engine = ScriptedEngine(rows=[("2024-01-01",)])
        with pytest.raises(EngineError, match="1 values for 2 columns"):
            await EngineAdapter(engine).fetch(_succeeded())

    @pytest.mark.asyncio
    async def test_value_type_mismatch(self):
        engine = ScriptedEngine(rows=[("2024-01-01", "lots")])
        with pytest.raises(EngineError, match="does not match its column type"):
            await EngineAdapter(engine).fetch(_succeeded())

    @pytest.mark.asyncio
    async def test_page_fetch_retried(self):
        engine = ScriptedEngine(rows=THREE_DAYS, fetch_errors=[EngineUnavailable("503")])
        retry = RetryPolicy(backoff=ExponentialBackoff(jitter=False), sleep=instant_sleep)
        table = await EngineAdapter(engine).fetch(_succeeded(), retry=retry)
        assert table.row_count == 3
        assert engine.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_page_fetch_not_retried_without_policy(self):
        engine = ScriptedEngine(rows=THREE_DAYS, fetch_errors=[EngineUnavailable("503")])
        with pytest.raises(EngineUnavailable):
            await EngineAdapter(engine).fetch(_succeeded())


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_acknowledged(self):
        engine = ScriptedEngine()
        adapter = EngineAdapter(engine)
        handle = await adapter.submit(STATEMENT, fingerprint="abc")
        assert await adapter.cancel(handle) is True
        assert engine.cancelled_ids == ["exec-1"]

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self):
        engine = ScriptedEngine()
        assert await EngineAdapter(engine).cancel(_succeeded()) is False
        assert engine.cancel_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_never_raises(self):
        engine = ScriptedEngine(cancel_error=ConnectionError("gone"))
        handle = ExecutionHandle(execution_id="exec-1", fingerprint="abc", state=ExecutionState.RUNNING)
        assert await EngineAdapter(engine).cancel(handle) is False
        assert engine.cancel_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_not_acknowledged(self):
        engine = ScriptedEngine(cancel_ack=False)
        handle = ExecutionHandle(execution_id="exec-1", fingerprint="abc", state=ExecutionState.QUEUED)
        assert await EngineAdapter(engine).cancel(handle) is False

    @pytest.mark.asyncio
    async def test_cancel_in_background(self):
        engine = ScriptedEngine()
        adapter = EngineAdapter(engine)
        handle = ExecutionHandle(execution_id="exec-7", fingerprint="abc", state=ExecutionState.RUNNING)
        task = adapter.cancel_in_background(handle)
        await adapter.wait_background()
        assert task.done()
        assert engine.cancelled_ids == ["exec-7"]
