"""Statement rendering.

Builds the parameterized SQL statement submitted to the engine from a
canonical query. Identifiers come only from the catalog whitelist and are
always quoted; values are never interpolated, they travel as ``?``
placeholders in :attr:`QueryStatement.parameters`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from queryspine.query.catalog import QueryCatalog
from queryspine.query.models import CanonicalQuery, SemanticType


@dataclass(frozen=True)
class QueryStatement:
    """A parameterized statement ready for submission."""

    sql: str
    parameters: tuple[Any, ...] = ()

    def __str__(self) -> str:
        return self.sql


def quote_identifier(name: str) -> str:
    """Double-quote an identifier (dotted names are quoted per part)."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


def _bind_value(text: str, semantic_type: SemanticType) -> Any:
    if semantic_type == SemanticType.INTEGER:
        return int(text)
    if semantic_type == SemanticType.DECIMAL:
        return Decimal(text)
    if semantic_type == SemanticType.BOOLEAN:
        return text == "true"
    if semantic_type == SemanticType.DATE:
        return date.fromisoformat(text)
    if semantic_type == SemanticType.TIMESTAMP:
        return datetime.fromisoformat(text)
    return text


def _aggregate_expression(spec: str) -> tuple[str, str]:
    """``"sum(revenue)"`` -> (``SUM("revenue")``, ``sum_revenue``)."""
    fn, _, rest = spec.partition("(")
    column = rest.rstrip(")")
    if column == "*":
        return "COUNT(*)", "count_all"
    if fn == "count_distinct":
        return f"COUNT(DISTINCT {quote_identifier(column)})", f"count_distinct_{column}"
    return f"{fn.upper()}({quote_identifier(column)})", f"{fn}_{column}"


def render_statement(canonical: CanonicalQuery, catalog: QueryCatalog) -> QueryStatement:
    """Render the SQL statement for ``canonical``.

    Dimensions (``columns``) are selected, grouped and ordered; each metric
    is summed under its own name; extra aggregations are aliased
    ``<fn>_<column>``. The date range filters the catalog's date column.
    """
    dimensions: tuple[str, ...] = canonical.get("columns", ())
    metrics: tuple[str, ...] = canonical.get("metric", ())
    aggregations: tuple[str, ...] = canonical.get("aggregations", ())

    select = [quote_identifier(column) for column in dimensions]
    select += [f"SUM({quote_identifier(m)}) AS {quote_identifier(m)}" for m in metrics]
    for spec in aggregations:
        expression, alias = _aggregate_expression(spec)
        select.append(f"{expression} AS {quote_identifier(alias)}")

    where: list[str] = []
    parameters: list[Any] = []
    date_column = quote_identifier(catalog.date_column)
    if canonical.get("start") is not None:
        where.append(f"{date_column} >= ?")
        parameters.append(date.fromisoformat(canonical.get("start")))
    if canonical.get("end") is not None:
        where.append(f"{date_column} <= ?")
        parameters.append(date.fromisoformat(canonical.get("end")))
    for column, values in canonical.get("filters", ()):
        semantic_type = catalog.column_type(column)
        if len(values) == 1:
            where.append(f"{quote_identifier(column)} = ?")
        else:
            where.append(f"{quote_identifier(column)} IN ({', '.join('?' for _ in values)})")
        parameters.extend(_bind_value(v, semantic_type) for v in values)

    sql = f"SELECT {', '.join(select)} FROM {quote_identifier(canonical.dataset)}"
    if where:
        sql += " WHERE " + " AND ".join(where)
    if dimensions and (metrics or aggregations):
        grouping = ", ".join(quote_identifier(column) for column in dimensions)
        sql += f" GROUP BY {grouping}"
    if dimensions:
        sql += " ORDER BY " + ", ".join(quote_identifier(column) for column in dimensions)

    return QueryStatement(sql=sql, parameters=tuple(parameters))


__all__ = ["QueryStatement", "quote_identifier", "render_statement"]
