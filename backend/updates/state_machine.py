"""
Operation state machine.

State Flow:
    pending -> in_progress -> complete
       |                  |-> failed
       |-> failed

complete and failed are terminal: a terminal operation is never changed
again, which is what lets the poll side trust the store.

Usage:
    sm = OperationStateMachine()

    if sm.can_transition(operation.status, 'in_progress'):
        sm.transition(operation, 'in_progress')
"""

from datetime import datetime, timezone
from typing import List
import logging

logger = logging.getLogger(__name__)


class OperationStateMachine:
    """
    State machine for update operation lifecycle.

    Works on any object exposing status / started_at / completed_at
    (the UpdateOperation model in practice).
    """

    # Valid state transitions (from_state -> to_state)
    VALID_TRANSITIONS = {
        'pending': ['in_progress', 'failed'],
        'in_progress': ['complete', 'failed'],
        'complete': [],  # Terminal state
        'failed': [],  # Terminal state
    }

    VALID_STATES = {'pending', 'in_progress', 'complete', 'failed'}

    TERMINAL_STATES = {'complete', 'failed'}

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """
        Check if a state transition is valid.

        Examples:
            >>> sm = OperationStateMachine()
            >>> sm.can_transition('pending', 'in_progress')
            True
            >>> sm.can_transition('complete', 'failed')
            False  # Terminal state
        """
        if from_state not in self.VALID_STATES:
            logger.warning(f"Invalid from_state: {from_state}")
            return False

        if to_state not in self.VALID_STATES:
            logger.warning(f"Invalid to_state: {to_state}")
            return False

        return to_state in self.VALID_TRANSITIONS.get(from_state, [])

    def transition(self, operation, to_state: str) -> bool:
        """
        Transition operation to a new state with validation.

        Side Effects:
            - Updates operation.status
            - Sets started_at when entering 'in_progress'
            - Sets completed_at when entering a terminal state

        Returns:
            True if transition succeeded, False if invalid
        """
        from_state = operation.status

        if not self.can_transition(from_state, to_state):
            logger.error(
                f"Invalid state transition for operation {operation.operation_id}: "
                f"{from_state} -> {to_state}"
            )
            return False

        operation.status = to_state

        utcnow = datetime.now(timezone.utc)

        if to_state == 'in_progress' and not operation.started_at:
            operation.started_at = utcnow

        if to_state in self.TERMINAL_STATES and not operation.completed_at:
            operation.completed_at = utcnow

        logger.info(
            f"Operation {operation.operation_id} transitioned: {from_state} -> {to_state}"
        )

        return True

    def is_terminal(self, state: str) -> bool:
        return state in self.TERMINAL_STATES

    def get_valid_next_states(self, current_state: str) -> List[str]:
        return self.VALID_TRANSITIONS.get(current_state, [])
