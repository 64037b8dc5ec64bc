"""Tests for queryspine.query.statement."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from queryspine.query.canonical import QueryCanonicalizer
from queryspine.query.models import QueryRequest
from queryspine.query.statement import QueryStatement, quote_identifier, render_statement


@pytest.fixture
def render(catalog):
    canonicalizer = QueryCanonicalizer(catalog)

    def _render(**params) -> QueryStatement:
        canonical = canonicalizer.canonicalize(QueryRequest(caller="analyst-1", params=params))
        return render_statement(canonical, catalog)

    return _render


class TestQuoteIdentifier:
    def test_simple(self):
        assert quote_identifier("visits") == '"visits"'

    def test_dotted(self):
        assert quote_identifier("analytics.web_traffic") == '"analytics"."web_traffic"'

    def test_embedded_quote_doubled(self):
        assert quote_identifier('a"b') == '"a""b"'


class TestRenderStatement:
    def test_metric_over_date_range(self, render):
        statement = render(start="2024-01-01", end="2024-01-31", metric="visits")
        assert statement.sql == (
            'SELECT SUM("visits") AS "visits" FROM "analytics"."web_traffic" '
            'WHERE "event_date" >= ? AND "event_date" <= ?'
        )
        assert statement.parameters == (date(2024, 1, 1), date(2024, 1, 31))

    def test_dimensions_group_and_order(self, render):
        statement = render(columns=["event_date", "country"], metric="visits")
        assert statement.sql == (
            'SELECT "country", "event_date", SUM("visits") AS "visits" '
            'FROM "analytics"."web_traffic" '
            'GROUP BY "country", "event_date" ORDER BY "country", "event_date"'
        )
        assert statement.parameters == ()

    def test_columns_only_has_no_group_by(self, render):
        statement = render(columns="country")
        assert "GROUP BY" not in statement.sql
        assert statement.sql.endswith('ORDER BY "country"')

    def test_aggregation_aliases(self, render):
        statement = render(aggregations=["count(*)", "count_distinct(country)", "avg(revenue)"])
        assert statement.sql == (
            'SELECT AVG("revenue") AS "avg_revenue", COUNT(*) AS "count_all", '
            'COUNT(DISTINCT "country") AS "count_distinct_country" '
            'FROM "analytics"."web_traffic"'
        )

    def test_filters_are_placeholders(self, render):
        statement = render(
            metric="visits",
            filters={"country": ["us", "fr"], "is_bot": False, "revenue": "2.50"},
        )
        assert statement.sql.endswith(
            'WHERE "country" IN (?, ?) AND "is_bot" = ? AND "revenue" = ?'
        )
        assert statement.parameters == ("fr", "us", False, Decimal("2.5"))

    def test_values_never_interpolated(self, render):
        statement = render(metric="visits", filters={"page": "/home'; DROP TABLE users; --"})
        assert "DROP" not in statement.sql
        assert statement.parameters == ("/home'; drop table users; --",)

    def test_typed_bind_values(self, render):
        statement = render(
            metric="visits",
            filters={"visits": "42", "session_start": "2024-01-01T08:00:00Z", "event_date": "2024-01-05"},
        )
        assert statement.parameters == (
            date(2024, 1, 5),
            datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
            42,
        )

    def test_str_is_sql(self, render):
        statement = render(metric="visits")
        assert str(statement) == statement.sql
