"""Settings for the query execution layer.

All tunables of the cache, retry policy, poll schedule, admission
controller and result fetching live on one validated ``QuerySpineSettings``
object read from ``QUERYSPINE_*`` environment variables (and an optional
``.env`` file).

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    A bad TTL or a backoff cap below its base is rejected at startup, not
    discovered under load.

Examples:
    >>> from queryspine.core.settings import QuerySpineSettings
    >>> settings = QuerySpineSettings(cache_ttl_seconds=60)
    >>> settings.cache_ttl_seconds
    60.0

Tags:
    settings, configuration, pydantic, environment, query-spine
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuerySpineSettings(BaseSettings):
    """Configuration consumed by the query execution core.

    Fields
    ──────
    cache_*      : Result cache TTL and size bound
    retry_*      : Transient-failure retry ceiling and backoff
    poll_*       : Status polling backoff
    admission_*  : Per-caller concurrency bound and token bucket
    max_rows     : Per-query row cap (result marked truncated beyond it)
    log_*        : Structlog level and renderer
    """

    model_config = SettingsConfigDict(
        env_prefix="QUERYSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Cache ────────────────────────────────────────────────────
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_max_entries: int = Field(default=10_000, ge=1)

    # ── Retry ────────────────────────────────────────────────────
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.2, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay: float = Field(default=5.0, ge=0)
    retry_jitter: float = Field(default=0.25, ge=0, le=1)

    # ── Polling ──────────────────────────────────────────────────
    poll_initial_interval: float = Field(default=0.5, gt=0)
    poll_multiplier: float = Field(default=1.5, ge=1)
    poll_max_interval: float = Field(default=5.0, gt=0)
    execution_timeout_seconds: float = Field(default=300.0, gt=0)

    # ── Admission ────────────────────────────────────────────────
    admission_max_concurrent: int = Field(default=4, ge=1)
    admission_bucket_capacity: int = Field(default=20, ge=1)
    admission_refill_tokens: float = Field(default=20.0, gt=0)
    admission_refill_interval_seconds: float = Field(default=60.0, gt=0)

    # ── Results ──────────────────────────────────────────────────
    max_rows: int = Field(default=10_000, ge=1)
    default_page_size: int = Field(default=1000, ge=1)
    max_page_size: int = Field(default=10_000, ge=1)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @model_validator(mode="after")
    def _validate_bounds(self) -> QuerySpineSettings:
        """Reject caps that sit below their base values."""
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError(
                f"retry_max_delay ({self.retry_max_delay}) must be >= "
                f"retry_base_delay ({self.retry_base_delay})"
            )
        if self.poll_max_interval < self.poll_initial_interval:
            raise ValueError(
                f"poll_max_interval ({self.poll_max_interval}) must be >= "
                f"poll_initial_interval ({self.poll_initial_interval})"
            )
        if self.default_page_size > self.max_page_size:
            raise ValueError(
                f"default_page_size ({self.default_page_size}) must be <= "
                f"max_page_size ({self.max_page_size})"
            )
        return self

    @property
    def admission_refill_rate(self) -> float:
        """Token refill rate in tokens per second."""
        return self.admission_refill_tokens / self.admission_refill_interval_seconds


@lru_cache(maxsize=1)
def get_settings() -> QuerySpineSettings:
    """Return the process-wide settings, read once from the environment."""
    return QuerySpineSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    get_settings.cache_clear()


__all__ = ["QuerySpineSettings", "get_settings", "clear_settings_cache"]
