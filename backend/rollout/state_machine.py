"""
Rollout state machine for bgshift

Manages rollout phase transitions and the commitment point after which a
rollout can no longer be aborted.

State Flow:
    idle -> provisioning -> test_traffic_shifted -> canary_shifted -> baking
         -> fully_shifted -> terminating -> idle

    provisioning | test_traffic_shifted | canary_shifted | baking | fully_shifted
         -> aborting -> idle

Commitment Point:
    Entering `terminating` marks the rollout committed: the old environment
    is being deleted, so there is nothing left to roll back to.

Optimistic Concurrency:
    Rollout rows carry a version column. transition() only mutates the ORM
    object; the compare-and-set happens when the caller commits, and a
    concurrent writer surfaces as StaleDataError (wrapped by the executor
    into StaleRolloutError).

Usage:
    sm = RolloutStateMachine()

    if sm.can_transition(rollout.status, 'baking'):
        sm.transition(rollout, 'baking')
        session.commit()
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

IDLE = 'idle'
PROVISIONING = 'provisioning'
TEST_TRAFFIC_SHIFTED = 'test_traffic_shifted'
CANARY_SHIFTED = 'canary_shifted'
BAKING = 'baking'
FULLY_SHIFTED = 'fully_shifted'
TERMINATING = 'terminating'
ABORTING = 'aborting'

# Phases during which bound alarms are watched
ALARM_WATCH_STATES = {CANARY_SHIFTED, BAKING, FULLY_SHIFTED}


class RolloutStateMachine:
    """
    State machine for the blue-green rollout lifecycle.

    Enforces valid phase transitions and tracks the commitment point
    to prevent aborting a rollout whose old environment is already gone.
    """

    # Valid state transitions (from_state -> to_state)
    VALID_TRANSITIONS = {
        IDLE: [PROVISIONING],
        PROVISIONING: [TEST_TRAFFIC_SHIFTED, ABORTING],
        TEST_TRAFFIC_SHIFTED: [CANARY_SHIFTED, ABORTING],
        CANARY_SHIFTED: [BAKING, ABORTING],
        BAKING: [FULLY_SHIFTED, ABORTING],
        FULLY_SHIFTED: [TERMINATING, ABORTING],
        TERMINATING: [IDLE],  # Committed: no abort
        ABORTING: [IDLE],
    }

    VALID_STATES = set(VALID_TRANSITIONS)

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """
        Check if a state transition is valid.

        Examples:
            >>> sm = RolloutStateMachine()
            >>> sm.can_transition('idle', 'provisioning')
            True
            >>> sm.can_transition('idle', 'baking')
            False
            >>> sm.can_transition('terminating', 'aborting')
            False
        """
        if from_state not in self.VALID_STATES:
            logger.warning(f"Invalid from_state: {from_state}")
            return False

        if to_state not in self.VALID_STATES:
            logger.warning(f"Invalid to_state: {to_state}")
            return False

        return to_state in self.VALID_TRANSITIONS.get(from_state, [])

    def transition(self, rollout, to_state: str) -> bool:
        """
        Transition rollout to a new phase with validation.

        Side Effects:
            - Updates rollout.status
            - Sets started_at when leaving idle
            - Sets completed_at when returning to idle
            - Marks the rollout committed when entering terminating

        Returns:
            True if transition succeeded, False if invalid
        """
        from_state = rollout.status

        if not self.can_transition(from_state, to_state):
            logger.error(
                f"Invalid state transition for rollout {rollout.id}: "
                f"{from_state} -> {to_state}"
            )
            return False

        rollout.status = to_state
        now = self.clock()

        if to_state == PROVISIONING and not rollout.started_at:
            rollout.started_at = now

        if to_state == TERMINATING:
            self.mark_committed(rollout)

        if to_state == IDLE and not rollout.completed_at:
            rollout.completed_at = now

        logger.info(f"Rollout {rollout.id} transitioned: {from_state} -> {to_state}")
        return True

    def mark_committed(self, rollout) -> None:
        """
        Mark the rollout as past its point of no return.

        After this point abort requests are refused: the previous
        environment is being deleted.
        """
        rollout.committed = True
        logger.info(f"Rollout {rollout.id} marked as committed")

    def should_rollback(self, rollout) -> bool:
        """
        Determine if a failing rollout can still be rolled back.

        Checks:
            1. Rollout is NOT committed
            2. Rollout is in an abortable phase
        """
        if rollout.committed:
            logger.warning(
                f"Rollout {rollout.id}: rollback requested but rollout is committed. "
                f"Refusing to abort."
            )
            return False

        if not self.can_transition(rollout.status, ABORTING):
            logger.debug(f"Rollout {rollout.id}: status '{rollout.status}' not eligible for rollback")
            return False

        return True

    def is_in_flight(self, rollout) -> bool:
        return rollout.status != IDLE

    def validate_state(self, state: str) -> bool:
        return state in self.VALID_STATES

    def get_valid_next_states(self, current_state: str) -> list:
        """
        Examples:
            >>> RolloutStateMachine().get_valid_next_states('baking')
            ['fully_shifted', 'aborting']
        """
        return self.VALID_TRANSITIONS.get(current_state, [])
