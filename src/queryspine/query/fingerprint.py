"""Query fingerprints.

A fingerprint is the SHA-256 of a canonical query's byte encoding. Two
requests that canonicalize identically share a fingerprint; the cache and
the single-flight coordinator key everything on it.
"""

from queryspine.core.hashing import compute_digest
from queryspine.query.models import CanonicalQuery, Fingerprint


def fingerprint(canonical: CanonicalQuery) -> Fingerprint:
    """Deterministic digest of ``canonical`` (64 lowercase hex chars)."""
    return Fingerprint(compute_digest(canonical.to_bytes()))


def short_fingerprint(fp: str, length: int = 12) -> str:
    """Abbreviated fingerprint for log lines and CLI output."""
    return fp[:length]


__all__ = ["fingerprint", "short_fingerprint"]
