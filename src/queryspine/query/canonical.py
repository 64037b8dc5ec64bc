"""Query canonicalization and validation.

Turns a :class:`QueryRequest` into a deterministic :class:`CanonicalQuery`
or raises :class:`InvalidQuery` naming the offending parameter.

The canonicalizer is the injection boundary: no free-text SQL is ever
accepted. Every identifier must be whitelisted by the :class:`QueryCatalog`
and every value must pass the type check of the column it is compared
against, so only typed, known parameters reach the statement renderer.

Normalization rules
───────────────────
- parameter names and identifiers: stripped and case-folded
- dates: ISO-8601 ``YYYY-MM-DD``; timestamps: ISO-8601 in UTC
- category/text values: stripped and case-folded
- numbers: fixed textual form (``1.50`` and ``1.5`` are the same value)
- set-like lists (metrics, columns, aggregations, filter values):
  de-duplicated and sorted
- parameters: sorted by name

Example::

    canonicalizer = QueryCanonicalizer(catalog)
    canonical = canonicalizer.canonicalize(
        QueryRequest(caller="analyst-1",
                     params={"start": "2024-01-01", "end": "2024-01-31", "metric": "visits"})
    )
    canonical.get("metric")   # ('visits',)
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from queryspine.core.errors import InvalidQuery
from queryspine.query.catalog import NUMERIC_AGGREGATIONS, QueryCatalog
from queryspine.query.models import CanonicalQuery, QueryRequest, SemanticType

KNOWN_PARAMETERS = frozenset({"start", "end", "metric", "columns", "aggregations", "filters"})

_AGGREGATION_RE = re.compile(r"\s*([A-Za-z_]+)\s*\(\s*(\*|[A-Za-z_][A-Za-z0-9_]*)\s*\)\s*")

_BOOLEAN_TEXT = {
    "true": "true", "1": "true", "yes": "true", "t": "true",
    "false": "false", "0": "false", "no": "false", "f": "false",
}

_SEQUENCE_TYPES = (list, tuple, set, frozenset)

# Largest decimal exponent accepted for numeric filter values
MAX_NUMERIC_EXPONENT = 1000


class QueryCanonicalizer:
    """Validates requests against a catalog and produces canonical queries.

    Stateless apart from its configuration; ``canonicalize`` is a pure
    function of the request.
    """

    def __init__(
        self,
        catalog: QueryCatalog,
        *,
        default_page_size: int = 1000,
        max_page_size: int = 10_000,
    ):
        self.catalog = catalog
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self._normalizers: dict[str, Callable[[Any], Any]] = {
            "start": lambda v: _parse_date(v, "start"),
            "end": lambda v: _parse_date(v, "end"),
            "metric": self._normalize_metrics,
            "columns": self._normalize_columns,
            "aggregations": self._normalize_aggregations,
            "filters": self._normalize_filters,
        }

    def canonicalize(self, request: QueryRequest) -> CanonicalQuery:
        """Validate ``request`` and return its canonical form.

        Raises:
            InvalidQuery: On the first violated rule, naming the parameter.
        """
        self.effective_page_size(request)

        normalized: dict[str, Any] = {}
        for raw_name, value in request.params.items():
            if not isinstance(raw_name, str):
                raise InvalidQuery(
                    f"parameter names must be strings, got {raw_name!r}",
                    parameter=repr(raw_name),
                    rule="parameter_name",
                )
            name = raw_name.strip().casefold()
            if name not in KNOWN_PARAMETERS:
                raise InvalidQuery(
                    f"unknown parameter {name!r}",
                    parameter=name,
                    value=value,
                    rule="unknown_parameter",
                )
            if name in normalized:
                raise InvalidQuery(
                    f"parameter {name!r} given more than once",
                    parameter=name,
                    rule="duplicate_parameter",
                )
            normalized[name] = self._normalizers[name](value)

        start, end = normalized.get("start"), normalized.get("end")
        if start is not None and end is not None and end < start:
            raise InvalidQuery(
                f"end ({end.isoformat()}) is before start ({start.isoformat()})",
                parameter="end",
                value=end,
                rule="date_order",
            )
        if not any(key in normalized for key in ("metric", "columns", "aggregations")):
            raise InvalidQuery(
                "at least one of metric, columns or aggregations is required",
                parameter="metric",
                rule="required",
            )

        params = tuple(
            (name, value.isoformat() if isinstance(value, date) else value)
            for name, value in sorted(normalized.items())
        )
        return CanonicalQuery(dataset=self.catalog.dataset, params=params)

    def effective_page_size(self, request: QueryRequest) -> int:
        """Requested page size, defaulted and capped by configuration."""
        page_size = request.page_size
        if page_size is None:
            return self.default_page_size
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
            raise InvalidQuery(
                f"page_size must be a positive integer, got {page_size!r}",
                parameter="page_size",
                value=page_size,
                rule="positive_integer",
            )
        return min(page_size, self.max_page_size)

    # ------------------------------------------------------------------ #
    # Parameter normalizers
    # ------------------------------------------------------------------ #

    def _normalize_metrics(self, value: Any) -> tuple[str, ...]:
        names = _identifier_list(value, "metric")
        for name in names:
            if name not in self.catalog.metrics:
                raise InvalidQuery(
                    f"metric {name!r} is not an allowed metric",
                    parameter="metric",
                    value=name,
                    rule="whitelist",
                )
        return names

    def _normalize_columns(self, value: Any) -> tuple[str, ...]:
        names = _identifier_list(value, "columns")
        for name in names:
            if not self.catalog.has_column(name):
                raise InvalidQuery(
                    f"column {name!r} is not an allowed column",
                    parameter="columns",
                    value=name,
                    rule="whitelist",
                )
        return names

    def _normalize_aggregations(self, value: Any) -> tuple[str, ...]:
        pairs: list[tuple[str, str]] = []
        if isinstance(value, Mapping) and not {"fn", "column"} & set(value):
            # {column: fn} or {column: [fn, ...]}
            for column, fns in value.items():
                for fn in fns if isinstance(fns, _SEQUENCE_TYPES) else (fns,):
                    pairs.append((_text(fn, "aggregations"), _text(column, "aggregations")))
        else:
            items = value if isinstance(value, _SEQUENCE_TYPES) else (value,)
            for item in items:
                pairs.append(_parse_aggregation(item))

        if not pairs:
            raise InvalidQuery(
                "aggregations must not be empty", parameter="aggregations", rule="non_empty"
            )

        rendered = set()
        for fn, column in pairs:
            fn, column = fn.strip().casefold(), column.strip().casefold()
            if fn not in self.catalog.aggregations:
                raise InvalidQuery(
                    f"aggregation function {fn!r} is not allowed",
                    parameter="aggregations",
                    value=fn,
                    rule="aggregation_whitelist",
                )
            if column == "*":
                if fn != "count":
                    raise InvalidQuery(
                        f"{fn}(*) is not allowed; only count(*)",
                        parameter="aggregations",
                        value=f"{fn}(*)",
                        rule="aggregation_whitelist",
                    )
            elif not self.catalog.has_column(column):
                raise InvalidQuery(
                    f"column {column!r} is not an allowed column",
                    parameter="aggregations",
                    value=column,
                    rule="whitelist",
                )
            elif fn in NUMERIC_AGGREGATIONS and not self.catalog.column_type(column).is_numeric:
                raise InvalidQuery(
                    f"{fn} requires a numeric column, {column!r} is not numeric",
                    parameter="aggregations",
                    value=column,
                    rule="numeric_aggregation",
                )
            rendered.add(f"{fn}({column})")
        return tuple(sorted(rendered))

    def _normalize_filters(self, value: Any) -> tuple[tuple[str, tuple[str, ...]], ...]:
        if not isinstance(value, Mapping):
            raise InvalidQuery(
                f"filters must be a mapping of column to values, got {type(value).__name__}",
                parameter="filters",
                value=value,
                rule="type",
            )
        filters: dict[str, tuple[str, ...]] = {}
        for raw_column, raw_values in value.items():
            column = _text(raw_column, "filters").strip().casefold()
            parameter = f"filters.{column}"
            if not self.catalog.has_column(column):
                raise InvalidQuery(
                    f"column {column!r} is not an allowed filter column",
                    parameter=parameter,
                    value=column,
                    rule="whitelist",
                )
            if column in filters:
                raise InvalidQuery(
                    f"filter column {column!r} given more than once",
                    parameter=parameter,
                    rule="duplicate_parameter",
                )
            values = raw_values if isinstance(raw_values, _SEQUENCE_TYPES) else (raw_values,)
            if not values:
                raise InvalidQuery(
                    "filter values must not be empty", parameter=parameter, rule="non_empty"
                )
            semantic_type = self.catalog.column_type(column)
            filters[column] = tuple(
                sorted({_normalize_value(v, semantic_type, parameter) for v in values})
            )
        return tuple(sorted(filters.items()))


def canonicalize(request: QueryRequest, catalog: QueryCatalog) -> CanonicalQuery:
    """Canonicalize ``request`` against ``catalog`` with default page limits."""
    return QueryCanonicalizer(catalog).canonicalize(request)


# ---------------------------------------------------------------------- #
# Value helpers
# ---------------------------------------------------------------------- #


def _text(value: Any, parameter: str) -> str:
    if not isinstance(value, str):
        raise InvalidQuery(
            f"expected text, got {type(value).__name__}",
            parameter=parameter,
            value=value,
            rule="type",
        )
    return value


def _identifier_list(value: Any, parameter: str) -> tuple[str, ...]:
    items = value if isinstance(value, _SEQUENCE_TYPES) else (value,)
    names = {_text(item, parameter).strip().casefold() for item in items}
    if not names or "" in names:
        raise InvalidQuery(
            "must name at least one non-empty identifier",
            parameter=parameter,
            value=value,
            rule="non_empty",
        )
    return tuple(sorted(names))


def _parse_aggregation(item: Any) -> tuple[str, str]:
    if isinstance(item, Mapping):
        try:
            return _text(item["fn"], "aggregations"), _text(item["column"], "aggregations")
        except KeyError as exc:
            raise InvalidQuery(
                f"aggregation mapping is missing {exc.args[0]!r}",
                parameter="aggregations",
                value=dict(item),
                rule="aggregation_format",
            ) from exc
    match = _AGGREGATION_RE.fullmatch(_text(item, "aggregations"))
    if match is None:
        raise InvalidQuery(
            f"aggregation {item!r} is not of the form fn(column)",
            parameter="aggregations",
            value=item,
            rule="aggregation_format",
        )
    return match.group(1), match.group(2)


def _parse_date(value: Any, parameter: str) -> date:
    if isinstance(value, datetime):
        return value.astimezone(UTC).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return _parse_date(datetime.fromisoformat(text), parameter)
        except ValueError:
            pass
    raise InvalidQuery(
        f"{parameter} is not an ISO-8601 date: {value!r}",
        parameter=parameter,
        value=value,
        rule="iso_date",
    )


def _parse_timestamp(value: Any, parameter: str) -> str:
    moment: datetime | None = None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.strip())
        except ValueError:
            moment = None
    if moment is None:
        raise InvalidQuery(
            f"{parameter} is not an ISO-8601 timestamp: {value!r}",
            parameter=parameter,
            value=value,
            rule="iso_timestamp",
        )
    moment = moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment.astimezone(UTC)
    return moment.isoformat()


def _parse_decimal(value: Any, parameter: str) -> Decimal:
    if isinstance(value, bool):
        number = None
    elif isinstance(value, (int, Decimal)):
        number = Decimal(value)
    elif isinstance(value, float):
        number = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            number = None
    else:
        number = None
    if number is None or not number.is_finite():
        raise InvalidQuery(
            f"{parameter} expects a number, got {value!r}",
            parameter=parameter,
            value=value,
            rule="numeric",
        )
    if number and abs(number.adjusted()) > MAX_NUMERIC_EXPONENT:
        raise InvalidQuery(
            f"{parameter} is out of range: {value!r}",
            parameter=parameter,
            value=value,
            rule="numeric_range",
        )
    return number


def _decimal_text(number: Decimal) -> str:
    if number == 0:
        return "0"
    return format(number.normalize(), "f")


def _normalize_value(value: Any, semantic_type: SemanticType, parameter: str) -> str:
    """Fixed textual form of one filter value for a column of ``semantic_type``."""
    if isinstance(value, (Mapping, *_SEQUENCE_TYPES)) or value is None:
        raise InvalidQuery(
            f"{parameter} values must be scalars, got {value!r}",
            parameter=parameter,
            value=value,
            rule="type",
        )

    if semantic_type in (SemanticType.CATEGORY, SemanticType.TEXT):
        text = _text(value, parameter).strip().casefold()
        if not text:
            raise InvalidQuery(
                "filter value must not be blank", parameter=parameter, rule="non_empty"
            )
        return text

    if semantic_type == SemanticType.INTEGER:
        number = _parse_decimal(value, parameter)
        if number != number.to_integral_value():
            raise InvalidQuery(
                f"{parameter} expects an integer, got {value!r}",
                parameter=parameter,
                value=value,
                rule="integer",
            )
        return str(int(number))

    if semantic_type == SemanticType.DECIMAL:
        return _decimal_text(_parse_decimal(value, parameter))

    if semantic_type == SemanticType.BOOLEAN:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, str) and value.strip().casefold() in _BOOLEAN_TEXT:
            return _BOOLEAN_TEXT[value.strip().casefold()]
        raise InvalidQuery(
            f"{parameter} expects a boolean, got {value!r}",
            parameter=parameter,
            value=value,
            rule="boolean",
        )

    if semantic_type == SemanticType.DATE:
        return _parse_date(value, parameter).isoformat()

    return _parse_timestamp(value, parameter)


__all__ = ["KNOWN_PARAMETERS", "QueryCanonicalizer", "canonicalize"]
