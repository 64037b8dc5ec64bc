"""
Shared pytest fixtures and configuration for query-spine tests.

This module provides:
- A reference catalog for the ``web_traffic`` dataset
- Scripted engines and fully wired result caches with a manual clock
- Settings cache isolation

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    @pytest.mark.asyncio
    async def test_something(make_cache, engine):
        cache = make_cache(engine)
        ...
"""

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from queryspine.cache.result_cache import ResultCache
from queryspine.core.settings import QuerySpineSettings, clear_settings_cache
from queryspine.query.catalog import QueryCatalog
from queryspine.query.models import QueryRequest
from queryspine.testing import ManualClock, ScriptedEngine, instant_sleep

CATALOG_CONFIG: dict[str, Any] = {
    "dataset": "analytics.web_traffic",
    "date_column": "event_date",
    "columns": {
        "country": "category",
        "device": "category",
        "page": "text",
        "visits": "integer",
        "revenue": "decimal",
        "bounce_rate": "decimal",
        "is_bot": "boolean",
        "session_start": "timestamp",
    },
    "metrics": ["visits", "revenue"],
}

THREE_DAYS = [
    ("2024-01-01", "120"),
    ("2024-01-02", "98"),
    ("2024-01-03", "143"),
]


# =============================================================================
# Test Markers Configuration
# =============================================================================

INTEGRATION_DIRS = {"cache"}


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location.

    Result cache tests drive the whole stack (canonicalizer, admission,
    driver, adapter) and count as integration tests.
    """
    for item in items:
        test_path = Path(item.path).relative_to(Path(__file__).parent)

        if test_path.parts[0] in INTEGRATION_DIRS:
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None, None, None]:
    """Clear the cached settings before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Query fixtures
# =============================================================================


@pytest.fixture
def catalog() -> QueryCatalog:
    return QueryCatalog.from_dict(CATALOG_CONFIG)


@pytest.fixture
def visits_request() -> QueryRequest:
    """The January visits request used across cache tests."""
    return QueryRequest(
        caller="analyst-1",
        params={"start": "2024-01-01", "end": "2024-01-31", "metric": "visits"},
    )


# =============================================================================
# Engine / cache fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def engine() -> ScriptedEngine:
    """Engine that reports QUEUED, RUNNING, SUCCEEDED and serves three rows."""
    return ScriptedEngine(rows=THREE_DAYS)


@pytest.fixture
def settings() -> QuerySpineSettings:
    return QuerySpineSettings(_env_file=None)


@pytest.fixture
def make_cache(
    catalog: QueryCatalog,
    clock: ManualClock,
    settings: QuerySpineSettings,
) -> Callable[..., ResultCache]:
    """Factory for a ResultCache over a scripted engine, a manual clock and instant sleeps."""

    def _make(engine: ScriptedEngine, **overrides: Any) -> ResultCache:
        effective = settings.model_copy(update=overrides) if overrides else settings
        return ResultCache.from_settings(
            engine,
            catalog,
            effective,
            clock=clock,
            sleep=instant_sleep,
        )

    return _make
