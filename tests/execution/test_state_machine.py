"""
Tests for the execution state machine.

Covers:
- Terminal states and parsing of engine state strings
- Forward (and forward-skip) transitions accepted
- Backward transitions and moves out of terminal states rejected
- ``advance`` producing new immutable handles
"""

import dataclasses

import pytest

from queryspine.execution.models import (
    STATE_VALID_TRANSITIONS,
    TERMINAL_STATES,
    EngineStatus,
    ExecutionHandle,
    ExecutionState,
    InvalidTransitionError,
    advance,
    validate_state_transition,
)

S = ExecutionState


class TestExecutionState:
    def test_terminal_states(self):
        assert TERMINAL_STATES == {S.SUCCEEDED, S.FAILED, S.CANCELLED}
        assert all(state.is_terminal for state in TERMINAL_STATES)
        assert not S.RUNNING.is_terminal

    @pytest.mark.parametrize("raw", ["SUCCEEDED", "succeeded", " Succeeded "])
    def test_parse_case_insensitive(self, raw):
        assert S.parse(raw) is S.SUCCEEDED

    def test_parse_passthrough(self):
        assert S.parse(S.QUEUED) is S.QUEUED

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown execution state"):
            S.parse("PAUSED")

    def test_every_state_has_rules(self):
        assert set(STATE_VALID_TRANSITIONS) == set(S)
        for state in TERMINAL_STATES:
            assert STATE_VALID_TRANSITIONS[state] == frozenset()


class TestTransitions:
    @pytest.mark.parametrize(
        "current, target",
        [
            (S.SUBMITTED, S.QUEUED),
            (S.QUEUED, S.RUNNING),
            (S.RUNNING, S.SUCCEEDED),
            (S.RUNNING, S.FAILED),
            (S.RUNNING, S.CANCELLED),
            (S.SUBMITTED, S.SUCCEEDED),
            (S.QUEUED, S.FAILED),
        ],
    )
    def test_forward_allowed(self, current, target):
        validate_state_transition(current, target)

    @pytest.mark.parametrize("state", list(S))
    def test_same_state_is_noop(self, state):
        validate_state_transition(state, state)

    @pytest.mark.parametrize(
        "current, target",
        [
            (S.RUNNING, S.QUEUED),
            (S.QUEUED, S.SUBMITTED),
            (S.SUCCEEDED, S.RUNNING),
            (S.FAILED, S.SUCCEEDED),
            (S.CANCELLED, S.QUEUED),
        ],
    )
    def test_illegal_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_state_transition(current, target)
        assert exc_info.value.current == current.value
        assert exc_info.value.target == target.value

    def test_invalid_transition_is_value_error(self):
        assert issubclass(InvalidTransitionError, ValueError)


class TestEngineStatus:
    def test_state_string_parsed(self):
        assert EngineStatus("RUNNING").state is S.RUNNING

    def test_unknown_state_rejected(self):
        with pytest.raises(ValueError):
            EngineStatus("exploded")


class TestAdvance:
    @pytest.fixture
    def handle(self):
        return ExecutionHandle(execution_id="exec-1", fingerprint="abc")

    def test_new_handle_starts_submitted(self, handle):
        assert handle.state is S.SUBMITTED
        assert handle.polls == 0
        assert not handle.is_terminal

    def test_advance_returns_new_handle(self, handle):
        queued = advance(handle, EngineStatus(S.QUEUED))
        assert queued is not handle
        assert handle.state is S.SUBMITTED
        assert queued.state is S.QUEUED
        assert queued.polls == 1

    def test_handle_is_immutable(self, handle):
        with pytest.raises(dataclasses.FrozenInstanceError):
            handle.state = S.RUNNING

    def test_full_lifecycle(self, handle):
        for state in (S.QUEUED, S.RUNNING, S.RUNNING, S.SUCCEEDED):
            handle = advance(handle, EngineStatus(state))
        assert handle.state is S.SUCCEEDED
        assert handle.polls == 4
        assert handle.is_terminal
        assert handle.failure_reason is None

    def test_failure_reason_recorded(self, handle):
        failed = advance(handle, EngineStatus(S.FAILED, reason="Query exhausted resources"))
        assert failed.failure_reason == "Query exhausted resources"

    def test_backward_move_rejected(self, handle):
        running = advance(handle, EngineStatus(S.RUNNING))
        with pytest.raises(InvalidTransitionError):
            advance(running, EngineStatus(S.QUEUED))

    def test_to_dict(self, handle):
        data = advance(handle, EngineStatus(S.CANCELLED, reason="user")).to_dict()
        assert data["execution_id"] == "exec-1"
        assert data["state"] == "cancelled"
        assert data["polls"] == 1
        assert data["failure_reason"] == "user"
