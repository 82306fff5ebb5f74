"""Tests for the ticket lifecycle topology."""

import pytest

from ticket_orchestrator.core.state_machine import (
    TRANSITIONS,
    InvalidTransitionError,
    allowed_transitions,
    is_transition_valid,
    validate_transition,
)
from ticket_orchestrator.db.models import TicketState as S


class TestTopology:
    def test_every_state_has_an_entry(self):
        assert set(TRANSITIONS) == set(S)

    def test_terminal_states_have_no_exits(self):
        for state in (S.COMPLETED, S.FAILED, S.SKIPPED):
            assert state.is_terminal
            assert allowed_transitions(state) == []

    def test_happy_path(self):
        path = [S.QUEUED, S.ASSIGNED, S.PLANNING, S.IMPLEMENTING, S.GATE_CHECK, S.COMPLETED]
        for current, new in zip(path, path[1:]):
            assert is_transition_valid(current, new)

    def test_trivial_tickets_skip_planning(self):
        assert is_transition_valid(S.ASSIGNED, S.IMPLEMENTING)

    def test_retry_self_transitions(self):
        assert is_transition_valid(S.PLANNING, S.PLANNING)
        assert is_transition_valid(S.IMPLEMENTING, S.IMPLEMENTING)
        assert is_transition_valid(S.GATE_CHECK, S.IMPLEMENTING)
        assert is_transition_valid(S.GATE_CHECK, S.GATE_CHECK)

    def test_escalation_from_every_worker_state(self):
        for state in (S.ASSIGNED, S.PLANNING, S.IMPLEMENTING, S.GATE_CHECK):
            assert is_transition_valid(state, S.ESCALATED)

    def test_hard_block_from_every_execution_state(self):
        for state in (S.PLANNING, S.IMPLEMENTING, S.GATE_CHECK):
            assert is_transition_valid(state, S.FAILED)
        assert not is_transition_valid(S.ASSIGNED, S.FAILED)

    def test_escalation_resolutions(self):
        assert is_transition_valid(S.ESCALATED, S.QUEUED)
        assert is_transition_valid(S.ESCALATED, S.FAILED)
        assert not is_transition_valid(S.ESCALATED, S.COMPLETED)

    def test_cancel_from_any_non_terminal_state(self):
        for state in S:
            if not state.is_terminal:
                assert is_transition_valid(state, S.SKIPPED), state

    def test_queued_cannot_jump_ahead(self):
        assert not is_transition_valid(S.QUEUED, S.IMPLEMENTING)
        assert not is_transition_valid(S.QUEUED, S.COMPLETED)


class TestValidate:
    def test_valid_passes(self):
        validate_transition(S.QUEUED, S.ASSIGNED)

    def test_invalid_raises_with_details(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(S.QUEUED, S.GATE_CHECK)
        err = exc_info.value
        assert err.current_state == S.QUEUED
        assert err.requested_state == S.GATE_CHECK
        assert err.allowed == frozenset({S.ASSIGNED, S.SKIPPED})
        assert "assigned, skipped" in str(err)

    def test_terminal_message(self):
        with pytest.raises(InvalidTransitionError, match="terminal"):
            validate_transition(S.COMPLETED, S.QUEUED)
