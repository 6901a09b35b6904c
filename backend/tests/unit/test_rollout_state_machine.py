"""
Unit tests for RolloutStateMachine

Phase flow:
    idle -> provisioning -> test_traffic_shifted -> canary_shifted -> baking
         -> fully_shifted -> terminating -> idle
    any pre-commit phase -> aborting -> idle
"""

import pytest
from datetime import datetime, timezone

from rollout.state_machine import RolloutStateMachine


class MockRollout:
    """Mock rollout model for testing"""
    def __init__(self, status='idle'):
        self.id = 'rollout-123'
        self.status = status
        self.started_at = None
        self.completed_at = None
        self.committed = False


FIXED_NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sm():
    return RolloutStateMachine(clock=lambda: FIXED_NOW)


@pytest.mark.unit
class TestTransitions:

    def test_happy_path_sequence(self, sm):
        rollout = MockRollout()
        for state in ('provisioning', 'test_traffic_shifted', 'canary_shifted', 'baking',
                      'fully_shifted', 'terminating', 'idle'):
            assert sm.transition(rollout, state) is True
            assert rollout.status == state

    @pytest.mark.parametrize('state', [
        'provisioning', 'test_traffic_shifted', 'canary_shifted', 'baking', 'fully_shifted',
    ])
    def test_every_pre_commit_phase_can_abort(self, sm, state):
        assert sm.can_transition(state, 'aborting')

    def test_phases_cannot_be_skipped(self, sm):
        assert not sm.can_transition('provisioning', 'canary_shifted')
        assert not sm.can_transition('test_traffic_shifted', 'fully_shifted')
        assert not sm.can_transition('baking', 'terminating')

    def test_idle_only_starts_provisioning(self, sm):
        assert sm.get_valid_next_states('idle') == ['provisioning']
        assert not sm.can_transition('idle', 'aborting')

    def test_unknown_states(self, sm):
        assert not sm.can_transition('running', 'idle')
        assert not sm.can_transition('idle', 'deploying')
        assert not sm.validate_state('completed')

    def test_invalid_transition_leaves_rollout_untouched(self, sm):
        rollout = MockRollout('baking')
        assert sm.transition(rollout, 'idle') is False
        assert rollout.status == 'baking'


@pytest.mark.unit
class TestTimestamps:

    def test_started_at_set_when_provisioning(self, sm):
        rollout = MockRollout()
        sm.transition(rollout, 'provisioning')
        assert rollout.started_at == FIXED_NOW
        assert rollout.completed_at is None

    def test_completed_at_set_when_back_to_idle(self, sm):
        rollout = MockRollout('aborting')
        sm.transition(rollout, 'idle')
        assert rollout.completed_at == FIXED_NOW


@pytest.mark.unit
class TestCommitmentPoint:

    def test_terminating_commits(self, sm):
        rollout = MockRollout('fully_shifted')
        sm.transition(rollout, 'terminating')
        assert rollout.committed is True

    def test_terminating_cannot_abort(self, sm):
        rollout = MockRollout('terminating')
        rollout.committed = True
        assert not sm.can_transition('terminating', 'aborting')
        assert sm.should_rollback(rollout) is False

    def test_committed_rollout_is_never_rolled_back(self, sm):
        rollout = MockRollout('fully_shifted')
        rollout.committed = True
        assert sm.should_rollback(rollout) is False

    def test_in_flight_rollout_can_roll_back(self, sm):
        assert sm.should_rollback(MockRollout('baking')) is True

    def test_idle_and_aborting_do_not_roll_back(self, sm):
        assert sm.should_rollback(MockRollout('idle')) is False
        assert sm.should_rollback(MockRollout('aborting')) is False

    def test_in_flight(self, sm):
        assert sm.is_in_flight(MockRollout('canary_shifted'))
        assert not sm.is_in_flight(MockRollout('idle'))
