"""
Result cache: TTL entries, single-flight executions, admission at the edge.
"""

from queryspine.cache.result_cache import CacheEntry, CacheStats, InFlightEntry, ResultCache

__all__ = ["CacheEntry", "CacheStats", "InFlightEntry", "ResultCache"]
