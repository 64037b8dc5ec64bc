"""Query domain models.

Defines the data structures that flow through the query layer:
- QueryRequest: what a dashboard asks for (immutable)
- CanonicalQuery: normalized, order-independent form of a request
- Fingerprint: digest of the canonical bytes, the cache/dedup key
- ResultTable: the unified row/column result of one execution
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, NewType

CANONICAL_FORMAT_VERSION = 1

Fingerprint = NewType("Fingerprint", str)


def _freeze(value: Any) -> Any:
    """Recursively convert lists/dicts into tuples/read-only mappings."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(v) for v in value)
    return value


@dataclass(frozen=True)
class QueryRequest:
    """A dashboard query request.

    Attributes:
        caller: Caller key used for admission control
        params: Named parameters (dates, filters, columns, aggregations)
        page_size: Requested page size, ``None`` for the configured default
    """

    caller: str
    params: Mapping[str, Any] = field(default_factory=dict)
    page_size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", _freeze(dict(self.params)))


class SemanticType(str, Enum):
    """Semantic type of a column, independent of the engine's type names."""

    DATE = "date"
    TIMESTAMP = "timestamp"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    CATEGORY = "category"
    TEXT = "text"

    @property
    def is_numeric(self) -> bool:
        return self in (SemanticType.INTEGER, SemanticType.DECIMAL)


@dataclass(frozen=True)
class CanonicalQuery:
    """Normalized, order-independent representation of a QueryRequest.

    ``params`` holds ``(name, value)`` pairs sorted by name; values are
    strings, tuples of strings, or (for filters) tuples of
    ``(column, values)`` pairs. Two semantically identical requests produce
    byte-identical ``to_bytes()`` output.
    """

    dataset: str
    params: tuple[tuple[str, Any], ...]
    version: int = CANONICAL_FORMAT_VERSION

    def get(self, name: str, default: Any = None) -> Any:
        for key, value in self.params:
            if key == name:
                return value
        return default

    def as_dict(self) -> dict[str, Any]:
        """Plain-dict view (tuples become lists) for logging and display."""
        return {key: _thaw(value) for key, value in self.params}

    def to_bytes(self) -> bytes:
        payload = {"dataset": self.dataset, "params": self.as_dict(), "v": self.version}
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
        ).encode("ascii")


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        if value and all(isinstance(v, tuple) and len(v) == 2 for v in value):
            return {k: _thaw(v) for k, v in value}
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ColumnDescriptor:
    """Name and semantic type of a result column."""

    name: str
    semantic_type: SemanticType = SemanticType.TEXT


@dataclass(frozen=True)
class ResultTable:
    """Result of one successful execution. Immutable once produced.

    Attributes:
        columns: Ordered column descriptors
        rows: Ordered rows, each aligned to ``columns``
        total_row_count: Rows the engine produced (may exceed ``len(rows)``
            when truncated and the engine reports a total)
        truncated: True if the configured row cap was reached
    """

    columns: tuple[ColumnDescriptor, ...]
    rows: tuple[tuple[Any, ...], ...]
    total_row_count: int
    truncated: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def to_records(self) -> list[dict[str, Any]]:
        """Rows as dicts keyed by column name."""
        names = self.column_names
        return [dict(zip(names, row)) for row in self.rows]


__all__ = [
    "CANONICAL_FORMAT_VERSION",
    "Fingerprint",
    "QueryRequest",
    "SemanticType",
    "CanonicalQuery",
    "ColumnDescriptor",
    "ResultTable",
]
