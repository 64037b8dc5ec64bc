"""
Query layer: request validation, canonical form, fingerprints and statements.
"""

from queryspine.query.canonical import KNOWN_PARAMETERS, QueryCanonicalizer, canonicalize
from queryspine.query.catalog import DEFAULT_AGGREGATIONS, QueryCatalog
from queryspine.query.fingerprint import fingerprint, short_fingerprint
from queryspine.query.models import (
    CANONICAL_FORMAT_VERSION,
    CanonicalQuery,
    ColumnDescriptor,
    Fingerprint,
    QueryRequest,
    ResultTable,
    SemanticType,
)
from queryspine.query.statement import QueryStatement, quote_identifier, render_statement

__all__ = [
    "CANONICAL_FORMAT_VERSION",
    "CanonicalQuery",
    "ColumnDescriptor",
    "DEFAULT_AGGREGATIONS",
    "Fingerprint",
    "KNOWN_PARAMETERS",
    "QueryCanonicalizer",
    "QueryCatalog",
    "QueryRequest",
    "QueryStatement",
    "ResultTable",
    "SemanticType",
    "canonicalize",
    "fingerprint",
    "quote_identifier",
    "render_statement",
    "short_fingerprint",
]
