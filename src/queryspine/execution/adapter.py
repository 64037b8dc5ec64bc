"""Engine adapter: submit, poll, fetch and cancel against an external engine.

The adapter talks to an :class:`EngineClient` (the engine's async job
API) and turns whatever it returns into query-spine types: execution
handles, typed result tables and typed errors.

Error mapping
─────────────
- ``QuerySpineError`` raised by the client passes through unchanged
  (clients raise ``EngineThrottled``/``EngineRejected`` themselves)
- ``ConnectionError``/``OSError``/``asyncio.TimeoutError`` become
  :class:`EngineUnavailable` (transient)
- anything else propagates unchanged and is treated as terminal

Cancellation is best effort: ``cancel`` never raises, it logs and reports
``False`` on failure.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable, Sequence
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from queryspine.core.errors import (
    EngineError,
    EngineUnavailable,
    FetchIncomplete,
    QuerySpineError,
)
from queryspine.core.logging import get_logger
from queryspine.execution.models import (
    EngineStatus,
    ExecutionHandle,
    ExecutionState,
    ResultPage,
    advance,
)
from queryspine.query.models import ColumnDescriptor, ResultTable, SemanticType
from queryspine.query.statement import QueryStatement

if TYPE_CHECKING:
    from queryspine.core.settings import QuerySpineSettings
    from queryspine.execution.retry import RetryPolicy

T = TypeVar("T")

logger = get_logger(__name__)


@runtime_checkable
class EngineClient(Protocol):
    """Async job-style query engine API."""

    async def submit(self, statement: QueryStatement, *, client_token: str | None = None) -> str:
        """Submit a statement and return the engine's execution id."""
        ...

    async def status(self, execution_id: str) -> EngineStatus:
        """Read the current state of an execution."""
        ...

    async def fetch(self, execution_id: str, page_token: str | None, page_size: int) -> ResultPage:
        """Fetch one page of results of a SUCCEEDED execution."""
        ...

    async def cancel(self, execution_id: str) -> bool:
        """Request cancellation; returns the engine's acknowledgement."""
        ...


# =============================================================================
# TYPE NORMALIZATION
# =============================================================================


_TYPE_PARAMS_RE = re.compile(r"\(.*\)$")

ENGINE_TYPES: dict[str, SemanticType] = {
    "tinyint": SemanticType.INTEGER,
    "smallint": SemanticType.INTEGER,
    "int": SemanticType.INTEGER,
    "integer": SemanticType.INTEGER,
    "bigint": SemanticType.INTEGER,
    "long": SemanticType.INTEGER,
    "decimal": SemanticType.DECIMAL,
    "numeric": SemanticType.DECIMAL,
    "double": SemanticType.DECIMAL,
    "float": SemanticType.DECIMAL,
    "real": SemanticType.DECIMAL,
    "boolean": SemanticType.BOOLEAN,
    "bool": SemanticType.BOOLEAN,
    "date": SemanticType.DATE,
    "timestamp": SemanticType.TIMESTAMP,
    "timestamp with time zone": SemanticType.TIMESTAMP,
    "datetime": SemanticType.TIMESTAMP,
    "varchar": SemanticType.TEXT,
    "char": SemanticType.TEXT,
    "string": SemanticType.TEXT,
    "text": SemanticType.TEXT,
}

# Floating point engine types keep float cells; exact types become Decimal
_FLOAT_TYPES = frozenset({"double", "float", "real"})


def semantic_type_for(engine_type: str) -> SemanticType:
    """Map an engine type name (``"decimal(18,2)"``, ``"VARCHAR"``) to a semantic type."""
    name = _TYPE_PARAMS_RE.sub("", engine_type.strip().lower()).strip()
    if name in ENGINE_TYPES:
        return ENGINE_TYPES[name]
    try:
        return SemanticType(name)
    except ValueError:
        return SemanticType.TEXT


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "t", "1", "yes"):
        return True
    if text in ("false", "f", "0", "no"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def _to_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).strip())


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def _converter(engine_type: str, semantic_type: SemanticType) -> Callable[[Any], Any]:
    if semantic_type == SemanticType.INTEGER:
        return lambda v: v if isinstance(v, int) and not isinstance(v, bool) else int(str(v).strip())
    if semantic_type == SemanticType.DECIMAL:
        base = _TYPE_PARAMS_RE.sub("", engine_type.strip().lower()).strip()
        return float if base in _FLOAT_TYPES else _to_decimal
    if semantic_type == SemanticType.BOOLEAN:
        return _to_bool
    if semantic_type == SemanticType.DATE:
        return _to_date
    if semantic_type == SemanticType.TIMESTAMP:
        return _to_timestamp
    return lambda v: v if isinstance(v, str) else str(v)


# =============================================================================
# ADAPTER
# =============================================================================


class EngineAdapter:
    """Typed, error-mapped access to one :class:`EngineClient`.

    Args:
        client: The engine client
        max_rows: Row cap per result; beyond it the table is truncated
        page_size: Default rows requested per fetch page
    """

    def __init__(self, client: EngineClient, *, max_rows: int = 10_000, page_size: int = 1000):
        self.client = client
        self.max_rows = max_rows
        self.page_size = page_size
        self._background: set[asyncio.Task[bool]] = set()

    @classmethod
    def from_settings(cls, client: EngineClient, settings: QuerySpineSettings) -> EngineAdapter:
        return cls(client, max_rows=settings.max_rows, page_size=settings.default_page_size)

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]], **context: Any) -> T:
        try:
            return await func()
        except QuerySpineError as e:
            e.with_context(**context)
            raise
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            raise EngineUnavailable(
                f"Engine {operation} failed: {str(e) or type(e).__name__}",
                cause=e,
            ).with_context(operation=operation, **context) from e

    async def submit(
        self,
        statement: QueryStatement,
        *,
        fingerprint: str,
        attempt: int = 1,
        client_token: str | None = None,
    ) -> ExecutionHandle:
        """Submit ``statement``; returns a handle in ``SUBMITTED``.

        Raises:
            EngineUnavailable: Transient (network, 5xx, throttling)
            EngineRejected: Terminal (malformed statement, resource limit)
        """
        execution_id = await self._call(
            "submit",
            lambda: self.client.submit(statement, client_token=client_token),
            fingerprint=fingerprint,
        )
        handle = ExecutionHandle(
            execution_id=str(execution_id),
            fingerprint=fingerprint,
            attempt=attempt,
        )
        logger.info(
            "execution.submitted",
            fingerprint=fingerprint[:12],
            execution_id=handle.execution_id,
            attempt=attempt,
        )
        return handle

    async def poll(self, handle: ExecutionHandle) -> ExecutionHandle:
        """Read the engine status once and return the advanced handle."""
        status = await self._call(
            "status",
            lambda: self.client.status(handle.execution_id),
            fingerprint=handle.fingerprint,
            execution_id=handle.execution_id,
        )
        if not isinstance(status, EngineStatus):
            status = EngineStatus(status)
        advanced = advance(handle, status)
        if advanced.state != handle.state:
            logger.debug(
                "execution.state_changed",
                execution_id=handle.execution_id,
                previous=handle.state.value,
                state=advanced.state.value,
                polls=advanced.polls,
            )
        return advanced

    async def fetch(
        self,
        handle: ExecutionHandle,
        *,
        page_size: int | None = None,
        retry: RetryPolicy | None = None,
    ) -> ResultTable:
        """Drain all result pages of a SUCCEEDED execution into a table.

        Stops at ``max_rows`` and marks the table truncated if more rows
        were available. Each page request goes through ``retry`` if given.

        Raises:
            FetchIncomplete: If the execution has not SUCCEEDED.
        """
        if handle.state is not ExecutionState.SUCCEEDED:
            raise FetchIncomplete(
                f"Cannot fetch results in state {handle.state.value}"
            ).with_context(fingerprint=handle.fingerprint, execution_id=handle.execution_id)

        size = page_size or self.page_size
        columns: tuple[ColumnDescriptor, ...] | None = None
        converters: list[Callable[[Any], Any]] = []
        rows: list[tuple[Any, ...]] = []
        reported_total: int | None = None
        truncated = False
        token: str | None = None
        pages = 0

        while True:
            request_token = token

            async def fetch_page() -> ResultPage:
                return await self._call(
                    "fetch",
                    lambda: self.client.fetch(handle.execution_id, request_token, size),
                    fingerprint=handle.fingerprint,
                    execution_id=handle.execution_id,
                )

            page = await (retry.run(fetch_page, operation="fetch") if retry else fetch_page())
            pages += 1

            if columns is None:
                columns, converters = self._describe(page.columns)
            if page.total_rows is not None:
                reported_total = page.total_rows

            for raw in page.rows:
                if len(rows) >= self.max_rows:
                    truncated = True
                    break
                rows.append(self._convert_row(raw, columns, converters, handle))

            if truncated or page.next_page_token is None:
                break
            if len(rows) >= self.max_rows:
                truncated = True
                break
            token = page.next_page_token

        total = len(rows)
        if truncated and reported_total is not None:
            total = max(reported_total, total)

        table = ResultTable(
            columns=columns or (),
            rows=tuple(rows),
            total_row_count=total,
            truncated=truncated,
        )
        logger.info(
            "execution.fetched",
            execution_id=handle.execution_id,
            rows=table.row_count,
            pages=pages,
            truncated=truncated,
        )
        return table

    async def cancel(self, handle: ExecutionHandle) -> bool:
        """Best-effort cancel. Never raises; ``False`` if not acknowledged."""
        if handle.is_terminal:
            return False
        try:
            acknowledged = bool(await self.client.cancel(handle.execution_id))
        except Exception as e:
            logger.warning(
                "execution.cancel_failed",
                execution_id=handle.execution_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info(
            "execution.cancel_requested",
            execution_id=handle.execution_id,
            acknowledged=acknowledged,
        )
        return acknowledged

    def cancel_in_background(self, handle: ExecutionHandle) -> asyncio.Task[bool]:
        """Schedule :meth:`cancel` without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.cancel(handle))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_background(self) -> None:
        """Wait for all scheduled background cancels to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------ #

    @staticmethod
    def _describe(
        raw_columns: Sequence[tuple[str, str]],
    ) -> tuple[tuple[ColumnDescriptor, ...], list[Callable[[Any], Any]]]:
        columns = []
        converters = []
        for name, engine_type in raw_columns:
            semantic_type = semantic_type_for(engine_type)
            columns.append(ColumnDescriptor(name=name, semantic_type=semantic_type))
            converters.append(_converter(engine_type, semantic_type))
        return tuple(columns), converters

    @staticmethod
    def _convert_row(
        raw: Sequence[Any],
        columns: tuple[ColumnDescriptor, ...],
        converters: list[Callable[[Any], Any]],
        handle: ExecutionHandle,
    ) -> tuple[Any, ...]:
        if len(raw) != len(columns):
            raise EngineError(
                f"Row has {len(raw)} values for {len(columns)} columns"
            ).with_context(execution_id=handle.execution_id)
        try:
            return tuple(
                None if value is None else convert(value)
                for value, convert in zip(raw, converters)
            )
        except ValueError as exc:
            raise EngineError(
                f"Engine returned a value that does not match its column type: {exc}",
                cause=exc,
            ).with_context(execution_id=handle.execution_id) from exc


__all__ = ["EngineClient", "EngineAdapter", "ENGINE_TYPES", "semantic_type_for"]
