"""
Structured error types for query-spine.

Every failure that can reach a dashboard caller is a typed
``QuerySpineError`` carrying its category, retry semantics and a
structured context. The retry policy, the admission controller and the
result cache make their decisions from these attributes rather than from
exception messages.

Manifesto:
    - **Typed Error Hierarchy:** One class per caller-visible condition
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** caller, fingerprint and execution id travel with it
    - **Error Chaining:** The engine client's exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      QuerySpineError                             │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  InvalidQuery        Denied             ExecutionTimeout         │
        │  (VALIDATION)        (ADMISSION)        (TIMEOUT)                │
        │                                                                  │
        │  EngineError (ENGINE)                   RetriesExhausted         │
        │    ├── EngineUnavailable  (retryable)   (ENGINE, terminal)       │
        │    │     └── EngineThrottled (retry_after)                       │
        │    ├── EngineRejected                                            │
        │    ├── QueryFailed                                               │
        │    ├── ExecutionCancelled                                        │
        │    └── FetchIncomplete                                           │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = EngineUnavailable("engine returned 503")
    >>> error.retryable
    True
    >>> InvalidQuery("unknown parameter", parameter="colour").parameter
    'colour'

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    query-spine
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"     # Request failed canonicalization
    ADMISSION = "ADMISSION"       # Caller over its concurrency/rate budget
    ENGINE = "ENGINE"             # External query engine failures
    NETWORK = "NETWORK"           # Connection, DNS, socket errors
    TIMEOUT = "TIMEOUT"           # Wall-clock execution budget exceeded
    CONFIG = "CONFIG"             # Invalid settings
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"           # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Only non-None fields are serialized by ``to_dict()`` so log lines stay
    compact. Anything that does not have a dedicated field goes into
    ``metadata``.

    Attributes:
        caller: Caller key the request was issued under
        fingerprint: Fingerprint of the canonical query
        execution_id: Engine-assigned execution id
        parameter: Request parameter the error refers to
        metadata: Additional key-value pairs
    """

    caller: str | None = None
    fingerprint: str | None = None
    execution_id: str | None = None
    parameter: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["caller", "fingerprint", "execution_id", "parameter"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class QuerySpineError(Exception):
    """
    Base exception for all query-spine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites only pass what differs from the defaults.

    Examples:
        >>> error = QuerySpineError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(caller="analyst-1").context.caller
        'analyst-1'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> QuerySpineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise EngineRejected("bad statement").with_context(
                fingerprint=fp, execution_id=handle.execution_id
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CALLER ERRORS (never retryable by the engine layer)
# =============================================================================


class InvalidQuery(QuerySpineError):
    """
    The request failed canonicalization.

    One instance corresponds to exactly one violated rule, and the message
    always names the offending parameter.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        parameter: str,
        value: Any = None,
        rule: str | None = None,
        **kwargs: Any,
    ):
        if parameter not in message:
            message = f"{parameter}: {message}"
        super().__init__(message, **kwargs)
        self.parameter = parameter
        self.value = value
        self.rule = rule
        self.context.parameter = parameter

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["parameter"] = self.parameter
        if self.value is not None:
            result["value"] = repr(self.value)
        if self.rule:
            result["rule"] = self.rule
        return result


class Denied(QuerySpineError):
    """Admission limit hit. The caller should retry after ``retry_after`` seconds."""

    default_category = ErrorCategory.ADMISSION
    default_retryable = False

    def __init__(
        self,
        message: str = "Admission denied",
        *,
        caller: str | None = None,
        reason: str = "rate",
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)
        self.caller = caller
        self.reason = reason
        if caller is not None:
            self.context.caller = caller

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason
        return result


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class EngineError(QuerySpineError):
    """Failure reported by, or while talking to, the external query engine."""

    default_category = ErrorCategory.ENGINE
    default_retryable = False


class EngineUnavailable(EngineError):
    """Engine could not be reached or answered with a server-side error."""

    default_retryable = True


class EngineThrottled(EngineUnavailable):
    """Engine throttled the request."""

    def __init__(
        self,
        message: str = "Engine throttled the request",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class EngineRejected(EngineError):
    """Engine refused the statement (malformed, resource or workgroup limit)."""


class QueryFailed(EngineError):
    """Engine ran the statement and reported FAILED."""

    def __init__(self, message: str, *, reason: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.reason = reason


class ExecutionCancelled(EngineError):
    """Engine reported the execution as CANCELLED."""


class FetchIncomplete(EngineError):
    """Results were requested before the execution reached SUCCEEDED."""


class ExecutionTimeout(QuerySpineError):
    """Execution exceeded its wall-clock budget."""

    default_category = ErrorCategory.TIMEOUT
    default_retryable = False

    def __init__(self, message: str, *, timeout_seconds: float, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds


class RetriesExhausted(QuerySpineError):
    """Transient failures persisted past the retry ceiling."""

    default_category = ErrorCategory.ENGINE
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException,
        operation: str | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("cause", last_error)
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.last_error = last_error
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        if self.operation:
            result["operation"] = self.operation
        return result


class ConfigError(QuerySpineError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, QuerySpineError):
        return error.retryable
    retryable_types = (
        ConnectionError,
        asyncio.TimeoutError,
        OSError,  # Includes network errors
    )
    return isinstance(error, retryable_types)


def get_retry_after(error: BaseException) -> float | None:
    """Get retry delay from error, if specified."""
    if isinstance(error, QuerySpineError):
        return error.retry_after
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, QuerySpineError):
        return error.category
    if isinstance(error, asyncio.TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
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
]
