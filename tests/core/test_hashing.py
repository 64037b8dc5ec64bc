"""Tests for queryspine.core.hashing."""

import hashlib

from queryspine.core.hashing import compute_digest, compute_hash


class TestComputeDigest:
    def test_full_sha256_by_default(self):
        payload = b'{"metric":["visits"]}'
        assert compute_digest(payload) == hashlib.sha256(payload).hexdigest()
        assert len(compute_digest(payload)) == 64

    def test_truncated(self):
        assert compute_digest(b"abc", length=16) == hashlib.sha256(b"abc").hexdigest()[:16]

    def test_deterministic(self):
        assert compute_digest(b"same") == compute_digest(b"same")
        assert compute_digest(b"same") != compute_digest(b"other")


class TestComputeHash:
    def test_default_length(self):
        assert len(compute_hash("a", "b")) == 32

    def test_order_dependent(self):
        assert compute_hash("a", "b") != compute_hash("b", "a")

    def test_values_stringified(self):
        assert compute_hash(1, None) == compute_hash("1", "None")

    def test_separator_prevents_ambiguity(self):
        assert compute_hash("ab", "c") != compute_hash("a", "bc")
