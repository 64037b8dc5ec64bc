"""Execution domain models.

Defines the data structures of one engine execution:
- ExecutionState: lifecycle state as reported by the engine
- EngineStatus / ResultPage: what an engine client returns
- ExecutionHandle: immutable snapshot of one execution, advanced by polling

The driver owns a handle for the duration of one run; nothing else mutates
it (it cannot be mutated at all, ``advance`` returns a new one).
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class InvalidTransitionError(ValueError):
    """Raised when an engine reports an illegal state transition.

    A backward move (RUNNING → QUEUED) or a move out of a terminal state is
    an engine protocol violation and is never retried.
    """

    def __init__(self, current: str, target: str, enum_name: str = "ExecutionState") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


class ExecutionState(str, Enum):
    """State of one engine execution.

    Valid transition graph::

        SUBMITTED → QUEUED | RUNNING | SUCCEEDED | FAILED | CANCELLED
        QUEUED    → RUNNING | SUCCEEDED | FAILED | CANCELLED
        RUNNING   → SUCCEEDED | FAILED | CANCELLED
        SUCCEEDED → (terminal)
        FAILED    → (terminal)
        CANCELLED → (terminal)

    Status is sampled by polling, so intermediate states may never be
    observed: forward skips are legal. Re-reading the same state is a no-op.
    """

    SUBMITTED = "submitted"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @classmethod
    def parse(cls, value: str | ExecutionState) -> ExecutionState:
        """Case-insensitive lookup by value or name (``"SUCCEEDED"``, ``"succeeded"``)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown execution state: {value!r}") from None


TERMINAL_STATES = frozenset({
    ExecutionState.SUCCEEDED,
    ExecutionState.FAILED,
    ExecutionState.CANCELLED,
})

# --- ExecutionState transition rules ---

STATE_VALID_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.SUBMITTED: frozenset({
        ExecutionState.QUEUED,
        ExecutionState.RUNNING,
        *TERMINAL_STATES,
    }),
    ExecutionState.QUEUED: frozenset({
        ExecutionState.RUNNING,
        *TERMINAL_STATES,
    }),
    ExecutionState.RUNNING: frozenset(TERMINAL_STATES),
    ExecutionState.SUCCEEDED: frozenset(),  # terminal
    ExecutionState.FAILED: frozenset(),  # terminal
    ExecutionState.CANCELLED: frozenset(),  # terminal
}


def validate_state_transition(current: ExecutionState, target: ExecutionState) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_state_transition(ExecutionState.QUEUED, ExecutionState.SUCCEEDED)
        >>> # OK, forward skip
        >>> validate_state_transition(ExecutionState.RUNNING, ExecutionState.QUEUED)
        InvalidTransitionError: Invalid ExecutionState transition: running → queued
    """
    if current == target:
        return
    if target not in STATE_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


@dataclass(frozen=True)
class EngineStatus:
    """One status reading from the engine."""

    state: ExecutionState
    reason: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "state", ExecutionState.parse(self.state))


@dataclass(frozen=True)
class ResultPage:
    """One page of results.

    Attributes:
        columns: ``(name, engine_type)`` pairs, e.g. ``("visits", "bigint")``
        rows: Row values aligned to ``columns``
        next_page_token: Token for the next page, ``None`` on the last page
        total_rows: Total row count if the engine reports it
    """

    columns: Sequence[tuple[str, str]]
    rows: Sequence[Sequence[Any]]
    next_page_token: str | None = None
    total_rows: int | None = None


@dataclass(frozen=True)
class ExecutionHandle:
    """Snapshot of one engine execution.

    Attributes:
        execution_id: Engine-assigned execution id
        fingerprint: Fingerprint of the query being executed
        state: Last observed state
        submitted_at: When the submit succeeded
        attempt: Submit attempt that produced this execution (1-based)
        polls: Number of successful status reads
        failure_reason: Engine-reported reason for FAILED/CANCELLED
    """

    execution_id: str
    fingerprint: str
    state: ExecutionState = ExecutionState.SUBMITTED
    submitted_at: datetime = field(default_factory=utcnow)
    attempt: int = 1
    polls: int = 0
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "fingerprint": self.fingerprint,
            "state": self.state.value,
            "submitted_at": self.submitted_at.isoformat(),
            "attempt": self.attempt,
            "polls": self.polls,
            "failure_reason": self.failure_reason,
        }


def advance(handle: ExecutionHandle, status: EngineStatus) -> ExecutionHandle:
    """Return the handle that follows ``handle`` after reading ``status``.

    Pure: validates the transition and returns a new handle with the state
    updated and the poll counter incremented.

    Raises:
        InvalidTransitionError: If the engine reported an illegal move.
    """
    validate_state_transition(handle.state, status.state)
    reason = handle.failure_reason
    if status.state in (ExecutionState.FAILED, ExecutionState.CANCELLED):
        reason = status.reason or reason
    return dataclasses.replace(
        handle,
        state=status.state,
        polls=handle.polls + 1,
        failure_reason=reason,
    )


__all__ = [
    "InvalidTransitionError",
    "ExecutionState",
    "TERMINAL_STATES",
    "STATE_VALID_TRANSITIONS",
    "validate_state_transition",
    "EngineStatus",
    "ResultPage",
    "ExecutionHandle",
    "advance",
]
