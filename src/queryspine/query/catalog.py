"""Query catalog: the whitelist a request is validated against.

A catalog names one dataset (table), its date column, every column a
request may reference together with its semantic type, which of those are
metric columns, and the aggregation functions callers may request.
Nothing outside the catalog ever reaches a generated statement.

Example::

    catalog = QueryCatalog.from_dict({
        "dataset": "web_traffic",
        "date_column": "event_date",
        "columns": {"country": "category", "device": "category",
                    "visits": "integer", "revenue": "decimal"},
        "metrics": ["visits", "revenue"],
    })
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from queryspine.core.errors import ConfigError
from queryspine.query.models import SemanticType

IDENTIFIER_RE = re.compile(r"[a-z_][a-z0-9_]*")

DEFAULT_AGGREGATIONS = frozenset({"count", "count_distinct", "sum", "avg", "min", "max"})

# Aggregations that only make sense over numeric columns
NUMERIC_AGGREGATIONS = frozenset({"sum", "avg"})


@dataclass(frozen=True)
class QueryCatalog:
    """Whitelist of columns, metrics and aggregation functions for one dataset."""

    dataset: str
    columns: Mapping[str, SemanticType]
    metrics: frozenset[str] = field(default_factory=frozenset)
    date_column: str = "event_date"
    aggregations: frozenset[str] = DEFAULT_AGGREGATIONS

    def __post_init__(self) -> None:
        columns = {name.strip().casefold(): SemanticType(t) for name, t in self.columns.items()}
        object.__setattr__(self, "columns", MappingProxyType(columns))
        object.__setattr__(self, "metrics", frozenset(m.strip().casefold() for m in self.metrics))
        object.__setattr__(self, "aggregations", frozenset(a.strip().casefold() for a in self.aggregations))
        object.__setattr__(self, "date_column", self.date_column.strip().casefold())

        for name in [*columns, self.date_column]:
            if not IDENTIFIER_RE.fullmatch(name):
                raise ConfigError(f"Invalid column identifier: {name!r}")
        if not all(IDENTIFIER_RE.fullmatch(part) for part in self.dataset.split(".")):
            raise ConfigError(f"Invalid dataset identifier: {self.dataset!r}")

        unknown_metrics = self.metrics - set(columns)
        if unknown_metrics:
            raise ConfigError(f"Metrics not declared as columns: {sorted(unknown_metrics)}")
        for metric in self.metrics:
            if not columns[metric].is_numeric:
                raise ConfigError(f"Metric column must be numeric: {metric}")
        unknown_aggs = self.aggregations - DEFAULT_AGGREGATIONS
        if unknown_aggs:
            raise ConfigError(f"Unsupported aggregation functions: {sorted(unknown_aggs)}")

    def has_column(self, name: str) -> bool:
        return name in self.columns or name == self.date_column

    def column_type(self, name: str) -> SemanticType:
        if name == self.date_column and name not in self.columns:
            return SemanticType.DATE
        return self.columns[name]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QueryCatalog:
        """Build a catalog from a plain mapping (e.g. a JSON config file)."""
        try:
            dataset = data["dataset"]
            columns = data["columns"]
        except KeyError as exc:
            raise ConfigError(f"Catalog is missing required key: {exc.args[0]}") from exc

        kwargs: dict[str, Any] = {}
        if "date_column" in data:
            kwargs["date_column"] = data["date_column"]
        if "aggregations" in data:
            kwargs["aggregations"] = frozenset(_strings(data["aggregations"]))

        try:
            return cls(
                dataset=dataset,
                columns=dict(columns),
                metrics=frozenset(_strings(data.get("metrics", ()))),
                **kwargs,
            )
        except ValueError as exc:
            raise ConfigError(f"Invalid catalog: {exc}", cause=exc) from exc


def _strings(values: Iterable[Any]) -> list[str]:
    return [str(v) for v in values]


__all__ = ["QueryCatalog", "DEFAULT_AGGREGATIONS", "NUMERIC_AGGREGATIONS"]
