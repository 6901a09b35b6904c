"""
Integration tests for failed rollouts.

Every failure must put both listeners back on the previous environment.
Covers alarm-triggered rollback (during bake and after the full shift),
validation hook failures, provisioning failures and timeouts, operator
cancellation and the commitment point after which nothing is rolled back.
"""

import json
from datetime import timedelta

import httpx
import pytest

from database import ScheduledTask, as_utc
from rollout.errors import InvalidTransitionError, RolloutNotFoundError
from rollout.executor import PROVISION
from rollout.platform import PlatformError
from rollout.scheduler import CANCELLED
from rollout.traffic_router import PRODUCTION, TEST
from rollout.validation_hooks import ValidationHookRunner

BLUE_TG = 'ServiceTargetGroupBlue'
GREEN_TG = 'ServiceTargetGroupGreen'
ALL_BLUE = {BLUE_TG: 100, GREEN_TG: 0}
ALL_GREEN = {BLUE_TG: 0, GREEN_TG: 100}

BAKE_SECONDS = 15 * 60
TERMINATION_WAIT_SECONDS = 30 * 60
HOOK_URL = 'http://validator.internal/hooks/trivia'


def fire_green_5xx(harness, count=5):
    harness.metric_source.put(
        'HTTPCode_Target_5XX_Count',
        harness.target_group_dimension(GREEN_TG),
        count,
        harness.clock.now,
    )


def aborted_event(harness, rollout_id):
    events = [
        event.to_dict() for event in harness.db.get_events(rollout_id=rollout_id)
        if event.event_type == 'rollout_aborted'
    ]
    assert len(events) == 1
    return events[0]


@pytest.mark.integration
class TestAlarmRollback:

    @pytest.mark.asyncio
    async def test_alarm_during_bake_rolls_back(self, ready_stack, template_body, v2_parameters, platform):
        harness = ready_stack
        result = await harness.start_rollout(template_body, v2_parameters)
        started = harness.clock.now
        green_task_set = harness.environment('green').task_set_id

        fire_green_5xx(harness)
        await harness.advance(60)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.status == 'idle'
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'HealthAlarmTriggered'
        assert 'trivia-backend-Http-500-Green' in rollout.error_message
        assert as_utc(rollout.completed_at) - started <= timedelta(seconds=60)

        assert harness.weights(PRODUCTION) == ALL_BLUE
        assert harness.weights(TEST) == ALL_BLUE
        assert harness.stack().active_color == 'blue'
        assert harness.stack().active_rollout_id is None

        green = harness.environment('green')
        assert green.status == 'retained'
        assert green_task_set in platform.task_sets

        assert aborted_event(harness, rollout.id)['data']['retained'] is True
        assert harness.phases(rollout.id)[-2:] == ['aborting', 'idle']

    @pytest.mark.asyncio
    async def test_alarm_state_change_is_recorded(self, ready_stack, template_body, v2_parameters):
        harness = ready_stack
        result = await harness.start_rollout(template_body, v2_parameters)

        fire_green_5xx(harness)
        await harness.advance(60)

        changes = [
            event.to_dict()['data'] for event in harness.db.get_events(rollout_id=result.rollout_id)
            if event.event_type == 'alarm_state_changed'
        ]
        assert changes[0]['alarm'] == 'trivia-backend-Http-500-Green'
        assert changes[0]['new_state'] == 'ALARM'

        states = {alarm.logical_id: alarm.state for alarm in harness.db.get_alarm_states(harness.stack_name)}
        assert states['Http5xxAlarmGreen'] == 'ALARM'
        assert states['Http5xxAlarmBlue'] == 'INSUFFICIENT_DATA'

    @pytest.mark.asyncio
    async def test_next_rollout_replaces_retained_environment(self, ready_stack, template_body,
                                                              v2_parameters, platform):
        harness = ready_stack
        await harness.start_rollout(template_body, v2_parameters)
        retained_task_set = harness.environment('green').task_set_id
        fire_green_5xx(harness)
        await harness.advance(60)
        assert harness.environment('green').status == 'retained'

        harness.metric_source.clear()
        v3_parameters = dict(v2_parameters, ImageUrl=v2_parameters['ImageUrl'].replace(':v2', ':v3'))
        result = await harness.start_rollout(template_body, v3_parameters)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.status == 'baking'
        assert rollout.target_color == 'green'

        green = harness.environment('green')
        assert green.image == v3_parameters['ImageUrl']
        assert green.rollout_id == rollout.id
        assert green.task_set_id != retained_task_set
        assert retained_task_set not in platform.task_sets

        event_types = harness.event_types(rollout.id)
        assert event_types.index('environment_deleted') < event_types.index('environment_provisioned')

    @pytest.mark.asyncio
    async def test_alarm_after_full_shift_rolls_back(self, ready_stack, template_body, v2_parameters, platform):
        harness = ready_stack
        result = await harness.start_rollout(template_body, v2_parameters)
        await harness.advance(BAKE_SECONDS)
        assert harness.rollout(result.rollout_id).status == 'fully_shifted'

        fire_green_5xx(harness)
        await harness.advance(60)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'HealthAlarmTriggered'
        assert rollout.committed is False
        assert harness.weights(PRODUCTION) == ALL_BLUE
        assert harness.weights(TEST) == ALL_BLUE

        blue = harness.environment('blue')
        assert blue.status == 'active'
        assert platform.primary_task_sets[harness.resource('Service').physical_id] == blue.task_set_id

    @pytest.mark.asyncio
    async def test_alarms_are_advisory_when_rollback_disabled(self, ready_stack, template_body, v2_parameters):
        harness = ready_stack
        result = await harness.executor.submit(harness.stack_name, template_body, v2_parameters,
                                               alarm_rollback=False)
        await harness.run_due()

        fire_green_5xx(harness)
        await harness.advance(BAKE_SECONDS + TERMINATION_WAIT_SECONDS)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.alarm_rollback is False
        assert rollout.outcome == 'succeeded'
        assert harness.stack().active_color == 'green'
        assert 'alarm_state_changed' in harness.event_types(rollout.id)


@pytest.mark.integration
class TestValidationHook:

    @pytest.mark.asyncio
    async def test_hook_failure_rolls_back_before_production_shift(self, ready_stack, template_body,
                                                                   v2_parameters):
        harness = ready_stack
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={'status': 'Failed', 'reason': 'GET /api/trivia/all returned 500'})

        harness.executor = harness.build_executor(
            hook_runner=ValidationHookRunner(timeout_seconds=5, transport=httpx.MockTransport(handler))
        )

        result = await harness.executor.submit(harness.stack_name, template_body, v2_parameters,
                                               hook_url=HOOK_URL)
        await harness.run_due()

        rollout = harness.rollout(result.rollout_id)
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'ValidationHookFailure'
        assert 'returned 500' in rollout.error_message

        assert len(requests) == 1
        body = json.loads(requests[0].content)
        assert body['target_color'] == 'green'
        assert body['rollout_id'] == rollout.id
        assert body['test_endpoint'].startswith('http://')
        assert body['test_endpoint'].endswith(':9000')

        assert all(weights[GREEN_TG] == 0 for weights in harness.applied_weights(PRODUCTION))
        assert harness.applied_weights(TEST)[-1] == ALL_BLUE
        assert harness.weights(TEST) == ALL_BLUE
        assert 'validation_hook_failed' in harness.event_types(rollout.id)
        assert 'canary_shifted' not in harness.phases(rollout.id)

    @pytest.mark.asyncio
    async def test_hook_success_continues_rollout(self, ready_stack, template_body, v2_parameters):
        harness = ready_stack
        harness.executor = harness.build_executor(
            hook_runner=ValidationHookRunner(
                timeout_seconds=5,
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json={'status': 'Succeeded'})),
            )
        )

        result = await harness.executor.submit(harness.stack_name, template_body, v2_parameters,
                                               hook_url=HOOK_URL)
        await harness.run_due()

        assert harness.rollout(result.rollout_id).status == 'baking'
        assert 'validation_hook_passed' in harness.event_types(result.rollout_id)
        assert harness.stack().hook_url == HOOK_URL


@pytest.mark.integration
class TestProvisioningFailures:

    @pytest.mark.asyncio
    async def test_failed_task_set(self, ready_stack, template_body, v2_parameters, platform):
        harness = ready_stack
        platform.failing_images.add(v2_parameters['ImageUrl'])

        result = await harness.start_rollout(template_body, v2_parameters)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'ProvisioningFailure'
        assert 'CannotPullContainerError' in rollout.error_message

        # Production and test listeners were never touched after creation
        assert harness.applied_weights(PRODUCTION) == [ALL_BLUE]
        assert harness.applied_weights(TEST) == [ALL_BLUE]
        assert harness.stack().active_rollout_id is None

    @pytest.mark.asyncio
    async def test_provisioning_timeout(self, ready_stack, template_body, v2_parameters, platform):
        harness = ready_stack
        platform.stalled_images.add(v2_parameters['ImageUrl'])

        result = await harness.start_rollout(template_body, v2_parameters)

        await harness.advance(540)
        assert harness.rollout(result.rollout_id).status == 'provisioning'

        await harness.advance(60)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'TimeoutExceeded'
        assert harness.applied_weights(PRODUCTION) == [ALL_BLUE]
        assert harness.environment('green').status == 'retained'

    @pytest.mark.asyncio
    async def test_failed_environment_deleted_when_not_retained(self, ready_stack, template_body,
                                                               v2_parameters, platform):
        harness = ready_stack
        platform.failing_images.add(v2_parameters['ImageUrl'])

        await harness.start_rollout(template_body, v2_parameters, retain_on_failure=False)

        green = harness.environment('green')
        assert green.status == 'empty'
        assert green.task_set_id is None
        assert not [ts for ts in platform.task_sets.values() if ts['image'] == v2_parameters['ImageUrl']]


@pytest.mark.integration
class TestUnexpectedErrors:

    @pytest.mark.asyncio
    async def test_provisioning_timeout_is_armed_at_submission(self, ready_stack, template_body, v2_parameters):
        harness = ready_stack
        result = await harness.executor.submit(harness.stack_name, template_body, v2_parameters)

        pending = harness.db.get_pending_tasks(result.rollout_id)
        assert [task.kind for task in pending] == ['provision', 'phase_timeout']

        # The provision task never gets to run
        with harness.db.get_session() as session:
            session.query(ScheduledTask).filter(
                ScheduledTask.rollout_id == result.rollout_id,
                ScheduledTask.kind == PROVISION,
            ).update({'status': CANCELLED}, synchronize_session=False)
            session.commit()

        await harness.advance(600)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'TimeoutExceeded'
        assert harness.stack().active_rollout_id is None

    @pytest.mark.asyncio
    async def test_persistent_error_aborts_rollout(self, ready_stack, template_body, v2_parameters,
                                                   base_parameters, platform):
        harness = ready_stack

        async def throttled(stack_name, properties):
            raise RuntimeError("throttled")

        platform.register_task_definition = throttled

        result = await harness.start_rollout(template_body, v2_parameters)
        assert harness.rollout(result.rollout_id).status == 'provisioning'

        await harness.advance(120)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.status == 'idle'
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'ProvisioningFailure'
        assert 'throttled' in rollout.error_message
        assert harness.stack().active_rollout_id is None
        assert harness.environment('green').status == 'empty'
        assert harness.weights(PRODUCTION) == ALL_BLUE

        # The stack takes the next rollout
        del platform.register_task_definition
        v3_parameters = dict(base_parameters, ImageUrl=base_parameters['ImageUrl'].replace(':v1', ':v3'))
        result = await harness.start_rollout(template_body, v3_parameters)
        assert harness.rollout(result.rollout_id).status == 'baking'

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, ready_stack, template_body, v2_parameters, platform):
        harness = ready_stack
        register = platform.register_task_definition
        calls = []

        async def flaky(stack_name, properties):
            calls.append(stack_name)
            if len(calls) == 1:
                raise RuntimeError("throttled")
            return await register(stack_name, properties)

        platform.register_task_definition = flaky

        result = await harness.start_rollout(template_body, v2_parameters)
        await harness.advance(60)

        assert harness.rollout(result.rollout_id).status == 'baking'
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_load_balancer_error_after_full_shift(self, ready_stack, template_body, v2_parameters,
                                                        load_balancer):
        harness = ready_stack
        result = await harness.start_rollout(template_body, v2_parameters)
        await harness.advance(BAKE_SECONDS - 60)

        set_forward_weights = load_balancer.set_forward_weights
        calls = []

        async def flaky(listener_id, weights):
            calls.append(listener_id)
            if len(calls) == 1:
                raise RuntimeError("listener is being modified")
            await set_forward_weights(listener_id, weights)

        load_balancer.set_forward_weights = flaky

        await harness.advance(60)
        assert harness.rollout(result.rollout_id).status == 'fully_shifted'
        assert harness.weights(PRODUCTION) == {BLUE_TG: 80, GREEN_TG: 20}

        await harness.advance(60)
        assert harness.weights(PRODUCTION) == ALL_GREEN

        await harness.advance(TERMINATION_WAIT_SECONDS)
        assert harness.rollout(result.rollout_id).outcome == 'succeeded'


@pytest.mark.integration
class TestOperatorCancel:

    @pytest.mark.asyncio
    async def test_cancel_during_bake(self, ready_stack, template_body, v2_parameters, platform):
        harness = ready_stack
        result = await harness.start_rollout(template_body, v2_parameters)
        green_task_set = harness.environment('green').task_set_id

        rollout = await harness.executor.cancel(result.rollout_id)

        assert rollout.status == 'idle'
        assert rollout.outcome == 'rolled_back'
        assert rollout.failure_kind == 'OperatorCancelled'
        assert harness.weights(PRODUCTION) == ALL_BLUE
        assert harness.weights(TEST) == ALL_BLUE
        assert harness.environment('green').status == 'empty'
        assert green_task_set not in platform.task_sets
        assert aborted_event(harness, rollout.id)['data']['retained'] is False

        # Timers of the cancelled rollout are gone
        assert harness.db.get_pending_tasks(rollout.id) == []

    @pytest.mark.asyncio
    async def test_cancel_finished_rollout(self, ready_stack, template_body, v2_parameters):
        harness = ready_stack
        result = await harness.start_rollout(template_body, v2_parameters)
        await harness.executor.cancel(result.rollout_id)

        with pytest.raises(InvalidTransitionError):
            await harness.executor.cancel(result.rollout_id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_rollout(self, ready_stack):
        with pytest.raises(RolloutNotFoundError):
            await ready_stack.executor.cancel('no-such-rollout')


@pytest.mark.integration
class TestCommitmentPoint:

    @pytest.mark.asyncio
    async def test_terminating_rollout_is_never_rolled_back(self, ready_stack, template_body,
                                                            v2_parameters, platform):
        harness = ready_stack

        async def unavailable(task_set_id):
            raise PlatformError("Service unavailable")

        result = await harness.start_rollout(template_body, v2_parameters)
        platform.delete_task_set = unavailable

        await harness.advance(BAKE_SECONDS + TERMINATION_WAIT_SECONDS)

        rollout = harness.rollout(result.rollout_id)
        assert rollout.status == 'terminating'
        assert rollout.committed is True

        with pytest.raises(InvalidTransitionError):
            await harness.executor.cancel(rollout.id)

        # Alarms no longer matter once committed
        fire_green_5xx(harness)
        await harness.advance(60)
        assert harness.rollout(rollout.id).status == 'terminating'

        del platform.delete_task_set
        await harness.advance(60)

        rollout = harness.rollout(rollout.id)
        assert rollout.status == 'idle'
        assert rollout.outcome == 'succeeded'
        assert harness.stack().active_color == 'green'
        assert harness.weights(PRODUCTION) == {BLUE_TG: 0, GREEN_TG: 100}
        assert 'aborting' not in harness.phases(rollout.id)
