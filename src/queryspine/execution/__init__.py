"""
Execution layer: engine adapter, driver, retry policy and admission control.
"""

from queryspine.execution.adapter import EngineAdapter, EngineClient, semantic_type_for
from queryspine.execution.admission import AdmissionController, AdmissionPermit
from queryspine.execution.driver import ExecutionDriver
from queryspine.execution.models import (
    EngineStatus,
    ExecutionHandle,
    ExecutionState,
    InvalidTransitionError,
    ResultPage,
    advance,
    validate_state_transition,
)
from queryspine.execution.rate_limit import CallerBuckets, TokenBucket
from queryspine.execution.retry import ExponentialBackoff, FailureKind, RetryContext, RetryPolicy

__all__ = [
    # Adapter
    "EngineClient",
    "EngineAdapter",
    "semantic_type_for",
    # Driver
    "ExecutionDriver",
    # Models
    "ExecutionState",
    "ExecutionHandle",
    "EngineStatus",
    "ResultPage",
    "InvalidTransitionError",
    "advance",
    "validate_state_transition",
    # Retry
    "FailureKind",
    "ExponentialBackoff",
    "RetryContext",
    "RetryPolicy",
    # Admission
    "AdmissionController",
    "AdmissionPermit",
    "TokenBucket",
    "CallerBuckets",
]
