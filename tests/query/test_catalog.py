"""Tests for queryspine.query.catalog."""

import pytest

from queryspine.core.errors import ConfigError
from queryspine.query.catalog import DEFAULT_AGGREGATIONS, QueryCatalog
from queryspine.query.models import SemanticType


class TestQueryCatalog:
    def test_from_dict(self, catalog):
        assert catalog.dataset == "analytics.web_traffic"
        assert catalog.date_column == "event_date"
        assert catalog.metrics == frozenset({"visits", "revenue"})
        assert catalog.columns["country"] == SemanticType.CATEGORY
        assert catalog.aggregations == DEFAULT_AGGREGATIONS

    def test_names_are_casefolded(self):
        catalog = QueryCatalog(dataset="t", columns={" Country ": "category", "Visits": "integer"}, metrics={"VISITS"})
        assert set(catalog.columns) == {"country", "visits"}
        assert catalog.metrics == frozenset({"visits"})

    def test_columns_are_read_only(self, catalog):
        with pytest.raises(TypeError):
            catalog.columns["evil"] = SemanticType.TEXT

    def test_date_column_is_implicitly_allowed(self, catalog):
        assert catalog.has_column("event_date")
        assert catalog.column_type("event_date") == SemanticType.DATE
        assert not catalog.has_column("password")

    def test_restricted_aggregations(self):
        catalog = QueryCatalog.from_dict(
            {"dataset": "t", "columns": {"visits": "integer"}, "aggregations": ["SUM", "count"]}
        )
        assert catalog.aggregations == frozenset({"sum", "count"})


class TestCatalogValidation:
    """A bad catalog is a configuration error, raised at load time."""

    def test_missing_dataset(self):
        with pytest.raises(ConfigError, match="dataset"):
            QueryCatalog.from_dict({"columns": {}})

    def test_unknown_semantic_type(self):
        with pytest.raises(ConfigError, match="Invalid catalog"):
            QueryCatalog.from_dict({"dataset": "t", "columns": {"visits": "bigint"}})

    @pytest.mark.parametrize("name", ["visits; drop table t", "1visits", "vi-sits", ""])
    def test_bad_column_identifier(self, name):
        with pytest.raises(ConfigError, match="column identifier"):
            QueryCatalog.from_dict({"dataset": "t", "columns": {name: "integer"}})

    def test_bad_dataset_identifier(self):
        with pytest.raises(ConfigError, match="dataset identifier"):
            QueryCatalog.from_dict({"dataset": 't"; --', "columns": {}})

    def test_metric_must_be_declared(self):
        with pytest.raises(ConfigError, match="not declared"):
            QueryCatalog.from_dict({"dataset": "t", "columns": {"visits": "integer"}, "metrics": ["revenue"]})

    def test_metric_must_be_numeric(self):
        with pytest.raises(ConfigError, match="numeric"):
            QueryCatalog.from_dict({"dataset": "t", "columns": {"country": "category"}, "metrics": ["country"]})

    def test_unsupported_aggregation(self):
        with pytest.raises(ConfigError, match="Unsupported aggregation"):
            QueryCatalog.from_dict({"dataset": "t", "columns": {}, "aggregations": ["median"]})
