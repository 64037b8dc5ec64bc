"""
Deterministic hashing utilities.

Provides the stable digest functions behind query fingerprints. Hash values
must never depend on process state (no ``hash()``, no dict ordering): the
same bytes produce the same digest in every process and on every host.

Examples:
    >>> compute_digest(b'{"metric":["visits"]}') == compute_digest(b'{"metric":["visits"]}')
    True
    >>> len(compute_hash("2024-01-01", "visits", length=16))
    16

Tags:
    hashing, deduplication, fingerprint, query-spine
"""

import hashlib
from typing import Any


def compute_digest(payload: bytes, length: int = 64) -> str:
    """
    SHA-256 hex digest of raw bytes.

    Args:
        payload: Bytes to hash
        length: Hex digest length (default 64 = full 256 bits)

    Returns:
        Lowercase hex string of the requested length
    """
    return hashlib.sha256(payload).hexdigest()[:length]


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Joins the string form of each value with ``|`` and hashes the UTF-8
    bytes. Order-dependent: ``compute_hash("a", "b") != compute_hash("b", "a")``.
    """
    content = "|".join(str(v) for v in values)
    return compute_digest(content.encode("utf-8"), length=length)
