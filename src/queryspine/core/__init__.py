"""
Core primitives shared by every query-spine layer.

- errors: typed error hierarchy with retry semantics
- hashing: deterministic digests
- logging: structlog configuration
- settings: pydantic-settings configuration
"""

from queryspine.core.errors import (
    ConfigError,
    Denied,
    EngineError,
    EngineRejected,
    EngineThrottled,
    EngineUnavailable,
    ErrorCategory,
    ErrorContext,
    ExecutionCancelled,
    ExecutionTimeout,
    FetchIncomplete,
    InvalidQuery,
    QueryFailed,
    QuerySpineError,
    RetriesExhausted,
    categorize_error,
    get_retry_after,
    is_retryable,
)
from queryspine.core.hashing import compute_digest, compute_hash
from queryspine.core.logging import configure_logging, get_logger
from queryspine.core.settings import QuerySpineSettings, clear_settings_cache, get_settings

__all__ = [
    # Errors
    "ErrorCategory",
    "ErrorContext",
    "QuerySpineError",
    "InvalidQuery",
    "Denied",
    "EngineError",
    "EngineUnavailable",
    "EngineThrottled",
    "EngineRejected",
    "QueryFailed",
    "ExecutionCancelled",
    "FetchIncomplete",
    "ExecutionTimeout",
    "RetriesExhausted",
    "ConfigError",
    "is_retryable",
    "get_retry_after",
    "categorize_error",
    # Hashing
    "compute_digest",
    "compute_hash",
    # Logging
    "configure_logging",
    "get_logger",
    # Settings
    "QuerySpineSettings",
    "get_settings",
    "clear_settings_cache",
]
