"""
Unit tests for the operation state machine.
"""

import pytest
from unittest.mock import Mock

from updates.state_machine import OperationStateMachine


def _operation(status):
    return Mock(operation_id="op_test", status=status, started_at=None, completed_at=None)


class TestOperationStateMachine:

    @pytest.mark.unit
    @pytest.mark.parametrize("from_state,to_state", [
        ("pending", "in_progress"),
        ("pending", "failed"),
        ("in_progress", "complete"),
        ("in_progress", "failed"),
    ])
    def test_valid_transitions(self, from_state, to_state):
        assert OperationStateMachine().can_transition(from_state, to_state)

    @pytest.mark.unit
    @pytest.mark.parametrize("from_state,to_state", [
        ("pending", "complete"),
        ("complete", "failed"),
        ("failed", "in_progress"),
        ("complete", "in_progress"),
        ("bogus", "failed"),
        ("pending", "bogus"),
    ])
    def test_invalid_transitions(self, from_state, to_state):
        assert not OperationStateMachine().can_transition(from_state, to_state)

    @pytest.mark.unit
    def test_transition_stamps_times(self):
        sm = OperationStateMachine()
        operation = _operation("pending")

        assert sm.transition(operation, "in_progress")
        assert operation.started_at is not None
        assert operation.completed_at is None

        assert sm.transition(operation, "complete")
        assert operation.status == "complete"
        assert operation.completed_at is not None

    @pytest.mark.unit
    def test_terminal_states_are_final(self):
        sm = OperationStateMachine()
        operation = _operation("failed")

        assert not sm.transition(operation, "in_progress")
        assert operation.status == "failed"
        assert sm.is_terminal("failed")
        assert sm.is_terminal("complete")
        assert not sm.is_terminal("pending")
        assert sm.get_valid_next_states("complete") == []
