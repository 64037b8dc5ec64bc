"""
query-spine: query execution core for interactive dashboards.

Validates and canonicalizes dashboard requests, fingerprints them, serves
results from a TTL cache and makes sure identical concurrent requests
share a single execution on the external query engine.

    from queryspine import QueryCatalog, QueryRequest, ResultCache

    cache = ResultCache.from_settings(engine_client, QueryCatalog.from_dict(config))
    table = await cache.get_or_execute(QueryRequest(caller="analyst-1", params={...}))
"""

from queryspine.cache import CacheEntry, CacheStats, ResultCache
from queryspine.core.errors import (
    Denied,
    EngineRejected,
    EngineUnavailable,
    ExecutionCancelled,
    ExecutionTimeout,
    InvalidQuery,
    QueryFailed,
    QuerySpineError,
    RetriesExhausted,
)
from queryspine.core.settings import QuerySpineSettings, get_settings
from queryspine.execution import (
    AdmissionController,
    EngineAdapter,
    EngineClient,
    ExecutionDriver,
    RetryPolicy,
)
from queryspine.query import (
    CanonicalQuery,
    Fingerprint,
    QueryCanonicalizer,
    QueryCatalog,
    QueryRequest,
    ResultTable,
    canonicalize,
    fingerprint,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Query
    "QueryRequest",
    "QueryCatalog",
    "QueryCanonicalizer",
    "CanonicalQuery",
    "Fingerprint",
    "ResultTable",
    "canonicalize",
    "fingerprint",
    # Execution
    "EngineClient",
    "EngineAdapter",
    "ExecutionDriver",
    "RetryPolicy",
    "AdmissionController",
    # Cache
    "ResultCache",
    "CacheEntry",
    "CacheStats",
    # Settings
    "QuerySpineSettings",
    "get_settings",
    # Errors
    "QuerySpineError",
    "InvalidQuery",
    "Denied",
    "EngineUnavailable",
    "EngineRejected",
    "QueryFailed",
    "ExecutionCancelled",
    "ExecutionTimeout",
    "RetriesExhausted",
]
