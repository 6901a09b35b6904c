"""
Rollout executor for bgshift

Drives blue-green rollouts through their phases:

    1. submit()              - parse/compile the template, create the stack or
                               claim its rollout slot
    2. provision             - new environment in the idle color slot
    3. check_provisioning    - poll until the task set is steady
    4. validation_hook       - 100% test traffic, call the hook
    5. canary / baking       - shift canary_percent of production, bake
    6. bake_elapsed          - 100% of production to the new environment
    7. termination_elapsed   - commit, delete the old environment

Every step is a durable scheduled task. The executor only ever commits a
phase change before acting on it; actions (weights, deletions) are derived
from the committed phase and are idempotent, so resume() can replay them.

Failures abort the rollout through _abort_locked(): traffic goes back to the
previous environment and the new one is deleted or retained.

Mutual exclusion:
    - Stack.active_rollout_id holds at most one rollout; claiming it is a
      compare-and-set on the stack's version column
    - Within the process, every mutation of a rollout runs under its lock
"""

import asyncio
import json
import logging
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from config.settings import AppConfig
from database import Environment, Rollout, ScheduledTask, Stack, StackResource, as_utc
from event_bus import Event, EventType
from .alarm_monitor import AlarmMonitor, AlarmStateValue
from .environments import EnvironmentManager, shared_attributes
from .errors import (
    EnvironmentInUseError, HealthAlarmTriggered, InvalidTransitionError, OperatorCancelled,
    ProvisioningFailure, RolloutFailure, RolloutInProgressError,
    RolloutNotFoundError, StackNotReadyError, StaleRolloutError, TimeoutExceeded,
    ValidationHookFailure,
)
from .platform import PlatformError
from .resource_graph import CompiledStack, ResourceGraphCompiler, canonical_json, resolve, task_definition_changed
from .rollback import RollbackController, stable_weights
from .scheduler import DurableScheduler, FAILED, PENDING
from .state_machine import (
    ABORTING, ALARM_WATCH_STATES, BAKING, CANARY_SHIFTED, FULLY_SHIFTED, IDLE, PROVISIONING,
    RolloutStateMachine, TERMINATING, TEST_TRAFFIC_SHIFTED,
)
from .template_parser import TemplateError, TemplateParser
from .template_validator import BLUE, COLORS, GREEN, BlueGreenSettings
from .traffic_router import PRODUCTION, TEST, TrafficRouter
from .validation_hooks import HookContext, ValidationHookRunner

logger = logging.getLogger(__name__)

# Scheduled task kinds
CREATE_STACK = 'create_stack'
PROVISION = 'provision'
CHECK_PROVISIONING = 'check_provisioning'
VALIDATION_HOOK = 'validation_hook'
EVALUATE_ALARMS = 'evaluate_alarms'
BAKE_ELAPSED = 'bake_elapsed'
TERMINATION_ELAPSED = 'termination_elapsed'
PHASE_TIMEOUT = 'phase_timeout'
RESUME = 'resume'
COMPLETE_ABORT = 'complete_abort'
COMPLETE_TERMINATION = 'complete_termination'

SUCCEEDED = 'succeeded'
ROLLED_BACK = 'rolled_back'

# Failed tasks a rollout tolerates before it is aborted
MAX_TASK_FAILURES = 3


def other_color(color: str) -> str:
    return GREEN if color == BLUE else BLUE


@dataclass
class SubmitResult:
    """What a deployment submission did"""
    action: str  # create | rollout | update | none
    stack_name: str
    rollout_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {'action': self.action, 'stack': self.stack_name, 'rollout_id': self.rollout_id}


def _setting(value, default):
    return default if value is None else value


class RolloutExecutor:
    """Executes blue-green rollouts for every stack in the database"""

    def __init__(
        self,
        db,
        event_bus,
        platform,
        load_balancer,
        metric_source,
        hook_runner: Optional[ValidationHookRunner] = None,
        scheduler: Optional[DurableScheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
        alarm_evaluation_seconds: Optional[int] = None,
        provisioning_poll_seconds: Optional[int] = None,
        provisioning_timeout_seconds: Optional[int] = None,
        alarm_rollback_default: Optional[bool] = None,
        retain_failed_environment: Optional[bool] = None,
        region: Optional[str] = None,
        account_id: Optional[str] = None,
        partition: Optional[str] = None,
    ):
        self.db = db
        self.event_bus = event_bus
        self.platform = platform
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.alarm_evaluation_seconds = _setting(alarm_evaluation_seconds, AppConfig.ALARM_EVALUATION_SECONDS)
        self.provisioning_poll_seconds = _setting(provisioning_poll_seconds, AppConfig.PROVISIONING_POLL_SECONDS)
        self.provisioning_timeout_seconds = _setting(provisioning_timeout_seconds,
                                                     AppConfig.PROVISIONING_TIMEOUT_SECONDS)
        self.alarm_rollback_default = _setting(alarm_rollback_default, AppConfig.ALARM_ROLLBACK_DEFAULT)
        self.retain_failed_environment = _setting(retain_failed_environment, AppConfig.RETAIN_FAILED_ENVIRONMENT)

        self.parser = TemplateParser()
        self.compiler = ResourceGraphCompiler(
            region=_setting(region, AppConfig.REGION),
            account_id=_setting(account_id, AppConfig.ACCOUNT_ID),
            partition=_setting(partition, AppConfig.PARTITION),
        )
        self.state_machine = RolloutStateMachine(self.clock)
        self.router = TrafficRouter(db, load_balancer, event_bus)
        self.environments = EnvironmentManager(db, platform, event_bus)
        self.alarm_monitor = AlarmMonitor(db, metric_source, event_bus, self.clock)
        self.rollback_controller = RollbackController(db, self.router, self.environments)
        self.hook_runner = hook_runner or ValidationHookRunner(AppConfig.HOOK_TIMEOUT_SECONDS)
        self.scheduler = scheduler or DurableScheduler(db, AppConfig.SCHEDULER_POLL_SECONDS, self.clock)

        # An entry lives only while a coroutine holds or waits on the lock
        self._locks = weakref.WeakValueDictionary()

        self.scheduler.register(CREATE_STACK, self._handle_create_stack)
        for kind, handler in (
            (PROVISION, self._handle_provision),
            (CHECK_PROVISIONING, self._handle_check_provisioning),
            (VALIDATION_HOOK, self._handle_validation_hook),
            (EVALUATE_ALARMS, self._handle_evaluate_alarms),
            (BAKE_ELAPSED, self._handle_bake_elapsed),
            (TERMINATION_ELAPSED, self._handle_termination_elapsed),
            (PHASE_TIMEOUT, self._handle_phase_timeout),
            (RESUME, self._handle_resume),
            (COMPLETE_ABORT, self._handle_complete_abort),
            (COMPLETE_TERMINATION, self._handle_complete_termination),
        ):
            self.scheduler.register(kind, self._rollout_task(handler))

    # ==================== Helpers ====================

    def _now(self) -> datetime:
        return self.clock()

    def _lock(self, rollout_id: str) -> asyncio.Lock:
        lock = self._locks.get(rollout_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[rollout_id] = lock
        return lock

    def _rollout_task(self, handler):
        """Wrap a rollout phase handler so an unexpected error never strands the rollout"""
        async def run(task: ScheduledTask) -> None:
            try:
                await handler(task)
            except Exception as e:
                await self._task_failed(task, e)
                raise
        return run

    async def _task_failed(self, task: ScheduledTask, error: Exception) -> None:
        """
        Resume the rollout's phase a little later, or abort it once its
        tasks have failed MAX_TASK_FAILURES times.
        """
        rollout = self._load(task.rollout_id)
        if rollout is None or not self.state_machine.is_in_flight(rollout):
            return

        async with self._lock(rollout.id):
            rollout = self._load(rollout.id)
            if rollout.committed or not self.state_machine.can_transition(rollout.status, ABORTING):
                return

            with self.db.get_session() as session:
                # The failing task itself is marked failed after this returns
                failures = 1 + session.query(ScheduledTask).filter(
                    ScheduledTask.rollout_id == rollout.id,
                    ScheduledTask.status == FAILED,
                ).count()
                if failures < MAX_TASK_FAILURES:
                    logger.warning(
                        f"Rollout {rollout.id}: {task.kind} failed ({failures}/{MAX_TASK_FAILURES}), "
                        f"resuming {rollout.status} in {self.provisioning_poll_seconds}s: {error}"
                    )
                    self.scheduler.schedule(session, RESUME, rollout.stack_name, rollout.id,
                                            delay_seconds=self.provisioning_poll_seconds,
                                            payload={'phase': rollout.status})
                    session.commit()
                    return

            failure_type = ProvisioningFailure if rollout.status == PROVISIONING else TimeoutExceeded
            await self._abort_locked(rollout.id, failure_type(
                f"Phase {rollout.status} made no progress after {failures} failed attempts: {error}"
            ))

    def _commit(self, session, what: str) -> None:
        """Commit, turning version conflicts into StaleRolloutError"""
        try:
            session.commit()
        except StaleDataError as e:
            session.rollback()
            raise StaleRolloutError(f"{what} was modified concurrently") from e

    def compile_template(self, stack_name: str, template_body: str,
                         parameters: Optional[Dict[str, Any]] = None) -> CompiledStack:
        template = self.parser.parse(template_body, parameters or {})
        return self.compiler.compile(template, stack_name)

    def _compile_stack(self, stack: Stack) -> CompiledStack:
        return self.compile_template(stack.name, stack.template_body, stack.parameters)

    def _stack_settings(self, stack_name: str) -> BlueGreenSettings:
        with self.db.get_session() as session:
            stack = session.get(Stack, stack_name)
        return self._compile_stack(stack).settings

    def _load(self, rollout_id: str, phase: Optional[str] = None) -> Optional[Rollout]:
        """Load a rollout, or None if it is gone or no longer in `phase`"""
        with self.db.get_session() as session:
            rollout = session.get(Rollout, rollout_id)
        if rollout is None:
            logger.warning(f"Rollout {rollout_id} not found")
            return None
        if phase is not None and rollout.status != phase:
            logger.debug(f"Rollout {rollout_id} is {rollout.status}, not {phase}; skipping")
            return None
        return rollout

    async def _emit(self, event_type: EventType, stack_name: str, rollout_id: Optional[str] = None,
                    message: Optional[str] = None, **data) -> None:
        await self.event_bus.emit(Event(
            event_type=event_type,
            stack_name=stack_name,
            rollout_id=rollout_id,
            message=message,
            data=data,
        ))

    async def _phase_changed(self, rollout: Rollout, from_state: str) -> None:
        await self._emit(
            EventType.ROLLOUT_PHASE_CHANGED, rollout.stack_name, rollout.id,
            from_state=from_state, to_state=rollout.status,
        )

    def _transition(self, rollout: Rollout, to_state: str) -> str:
        from_state = rollout.status
        if not self.state_machine.transition(rollout, to_state):
            raise InvalidTransitionError(f"Rollout {rollout.id} cannot go from {from_state} to {to_state}")
        return from_state

    def phase_weights(self, rollout: Rollout, settings: BlueGreenSettings) -> Dict[str, Dict[str, int]]:
        """Listener weights implied by the rollout's committed phase"""
        old = settings.target_groups[rollout.source_color]
        new = settings.target_groups[rollout.target_color]
        everything_old = {old: 100, new: 0}
        everything_new = {old: 0, new: 100}

        if rollout.status in (PROVISIONING, ABORTING):
            return {PRODUCTION: everything_old, TEST: everything_old}
        if rollout.status == TEST_TRAFFIC_SHIFTED:
            return {PRODUCTION: everything_old, TEST: everything_new}
        if rollout.status in (CANARY_SHIFTED, BAKING):
            canary = rollout.canary_percent
            return {PRODUCTION: {old: 100 - canary, new: canary}, TEST: everything_new}
        if rollout.status in (FULLY_SHIFTED, TERMINATING):
            return {PRODUCTION: everything_new, TEST: everything_new}
        if rollout.outcome == SUCCEEDED:
            return {PRODUCTION: everything_new, TEST: everything_new}
        return {PRODUCTION: everything_old, TEST: everything_old}

    async def _apply_phase_weights(self, rollout: Rollout, settings: BlueGreenSettings) -> None:
        weights = self.phase_weights(rollout, settings)
        await self.router.set_weights(rollout.stack_name, PRODUCTION, weights[PRODUCTION], rollout.id)
        await self.router.set_weights(rollout.stack_name, TEST, weights[TEST], rollout.id)

    def _service_id(self, stack_name: str, settings: BlueGreenSettings) -> str:
        with self.db.get_session() as session:
            return shared_attributes(session, stack_name)[settings.service]['Ref']

    def _environment(self, stack_name: str, color: str) -> Environment:
        with self.db.get_session() as session:
            return session.query(Environment).filter_by(stack_name=stack_name, color=color).first()

    # ==================== Submission ====================

    async def submit(self, stack_name: str, template_body: str, parameters: Optional[Dict[str, Any]] = None,
                     alarm_rollback: Optional[bool] = None, hook_url: Optional[str] = None,
                     retain_on_failure: Optional[bool] = None) -> SubmitResult:
        """
        Submit a template for a stack.

        Creates the stack on first submission. Afterwards, a changed task
        definition starts a rollout; any other change is recorded in place.

        Raises:
            TemplateError: If the template does not parse, validate or compile
            RolloutInProgressError: If another rollout owns the stack
            StackNotReadyError: If the stack is still being created
        """
        parameters = {name: str(value) for name, value in (parameters or {}).items()}
        compiled = self.compile_template(stack_name, template_body, parameters)
        parameters_json = json.dumps(parameters, sort_keys=True)

        with self.db.get_session() as session:
            stack = session.get(Stack, stack_name)

            if stack is None or stack.status == 'failed':
                result = self._submit_create(session, stack, stack_name, compiled, template_body,
                                             parameters_json, alarm_rollback, hook_url)
            elif stack.status == 'creating':
                raise StackNotReadyError(f"Stack {stack_name} is still being created")
            elif stack.active_rollout_id:
                raise RolloutInProgressError(
                    f"Rollout {stack.active_rollout_id} is in progress on {stack_name}"
                )
            else:
                result = self._submit_change(session, stack, compiled, template_body, parameters_json,
                                             alarm_rollback, hook_url, retain_on_failure)

        if result.action == 'create':
            await self._emit(EventType.STACK_CREATE_STARTED, stack_name, image=compiled.image)
        elif result.action == 'rollout':
            await self._emit(
                EventType.ROLLOUT_STARTED, stack_name, result.rollout_id,
                image=compiled.image, canary_percent=compiled.settings.canary_percent,
                bake_seconds=compiled.settings.bake_seconds,
            )
            await self._emit(
                EventType.ROLLOUT_PHASE_CHANGED, stack_name, result.rollout_id,
                from_state=IDLE, to_state=PROVISIONING,
            )
        elif result.action == 'update':
            await self._emit(EventType.STACK_UPDATED, stack_name)

        logger.info(f"Submission for {stack_name}: {result.action}"
                    + (f" (rollout {result.rollout_id})" if result.rollout_id else ""))
        return result

    def _submit_create(self, session, stack: Optional[Stack], stack_name: str, compiled: CompiledStack,
                       template_body: str, parameters_json: str, alarm_rollback: Optional[bool],
                       hook_url: Optional[str]) -> SubmitResult:
        if stack is None:
            stack = Stack(name=stack_name, active_color=BLUE)
            stack.environments = [
                Environment(color=color, target_group=compiled.settings.target_groups[color], status='empty')
                for color in COLORS
            ]
            session.add(stack)
        else:
            logger.info(f"Retrying creation of failed stack {stack_name}")

        stack.template_body = template_body
        stack.parameters_json = parameters_json
        stack.status = 'creating'
        stack.error_message = None
        stack.alarm_rollback = _setting(alarm_rollback, self.alarm_rollback_default)
        stack.hook_url = hook_url
        self.scheduler.schedule(session, CREATE_STACK, stack_name)

        try:
            self._commit(session, f"Stack {stack_name}")
        except (IntegrityError, StaleRolloutError) as e:
            # Lost the race against a concurrent first submission
            session.rollback()
            logger.warning(f"Creation of stack {stack_name} conflicted: {e}")
            raise StackNotReadyError(f"Stack {stack_name} is already being created") from e
        return SubmitResult('create', stack_name)

    def _submit_change(self, session, stack: Stack, compiled: CompiledStack, template_body: str,
                       parameters_json: str, alarm_rollback: Optional[bool], hook_url: Optional[str],
                       retain_on_failure: Optional[bool]) -> SubmitResult:
        active = session.query(Environment).filter_by(stack_name=stack.name, color=stack.active_color).first()
        current = json.loads(active.task_definition_json) if active and active.task_definition_json else None

        alarm_rollback = _setting(alarm_rollback, stack.alarm_rollback)
        hook_url = hook_url if hook_url is not None else stack.hook_url

        if not task_definition_changed(current, compiled.task_definition):
            changed = (
                stack.template_body != template_body
                or stack.parameters_json != parameters_json
                or stack.alarm_rollback != alarm_rollback
                or stack.hook_url != hook_url
            )
            if not changed:
                return SubmitResult('none', stack.name)

            # Shared resources are not reconciled in place; the new template
            # is recorded and its alarm definitions take effect.
            stack.template_body = template_body
            stack.parameters_json = parameters_json
            stack.alarm_rollback = alarm_rollback
            stack.hook_url = hook_url
            self.alarm_monitor.register_alarms(session, stack.name, compiled.alarms)
            self._commit(session, f"Stack {stack.name}")
            return SubmitResult('update', stack.name)

        settings = compiled.settings
        rollout = Rollout(
            id=str(uuid.uuid4()),
            stack_name=stack.name,
            status=IDLE,
            source_color=stack.active_color,
            target_color=other_color(stack.active_color),
            canary_percent=settings.canary_percent,
            bake_seconds=settings.bake_seconds,
            termination_wait_seconds=settings.termination_wait_seconds,
            alarm_rollback=alarm_rollback,
            retain_on_failure=_setting(retain_on_failure, self.retain_failed_environment),
            hook_url=hook_url,
            image=compiled.image,
            task_definition_json=canonical_json(compiled.task_definition),
            created_at=self._now(),
        )
        session.add(rollout)
        self._transition(rollout, PROVISIONING)

        # Claiming the slot bumps the stack version: a concurrent claim fails
        stack.active_rollout_id = rollout.id
        stack.template_body = template_body
        stack.parameters_json = parameters_json
        stack.alarm_rollback = alarm_rollback
        stack.hook_url = hook_url
        self.alarm_monitor.register_alarms(session, stack.name, compiled.alarms)
        self.scheduler.schedule(session, PROVISION, stack.name, rollout.id, payload={'phase': PROVISIONING})
        # The provisioning bound holds even if the provision task itself never finishes
        rollout.phase_deadline = self._now() + timedelta(seconds=self.provisioning_timeout_seconds)
        self.scheduler.schedule(session, PHASE_TIMEOUT, stack.name, rollout.id,
                                due_at=rollout.phase_deadline, payload={'phase': PROVISIONING})

        try:
            self._commit(session, f"Stack {stack.name}")
        except StaleRolloutError as e:
            raise RolloutInProgressError(f"Another rollout claimed {stack.name} first") from e
        return SubmitResult('rollout', stack.name, rollout.id)

    # ==================== Stack creation ====================

    async def _handle_create_stack(self, task: ScheduledTask) -> None:
        stack_name = task.stack_name
        with self.db.get_session() as session:
            stack = session.get(Stack, stack_name)
        if stack is None or stack.status != 'creating':
            logger.debug(f"Stack {stack_name} is not being created; skipping")
            return

        try:
            compiled = self._compile_stack(stack)
            settings = compiled.settings
            await self._create_shared_resources(compiled)

            initial = stable_weights(settings, BLUE)
            await self.router.initialize(stack_name, PRODUCTION, settings.production_listener, initial)
            await self.router.initialize(stack_name, TEST, settings.test_listener, initial)

            env = await self.environments.provision(compiled, BLUE, compiled.task_definition)
            await self.platform.set_primary_task_set(self._service_id(stack_name, settings), env.task_set_id)

            with self.db.get_session() as session:
                outputs = self._resolve_outputs(compiled, shared_attributes(session, stack_name))
                stack = session.get(Stack, stack_name)
                stack.status = 'ready'
                stack.active_color = BLUE
                stack.outputs_json = json.dumps(outputs, sort_keys=True)
                self.alarm_monitor.register_alarms(session, stack_name, compiled.alarms)
                blue = session.query(Environment).filter_by(stack_name=stack_name, color=BLUE).first()
                blue.status = 'active'
                self._commit(session, f"Stack {stack_name}")

        except Exception as e:
            logger.error(f"Creation of stack {stack_name} failed: {e}", exc_info=True)
            with self.db.get_session() as session:
                stack = session.get(Stack, stack_name)
                stack.status = 'failed'
                stack.error_message = str(e)
                session.commit()
            await self._emit(EventType.STACK_CREATE_FAILED, stack_name, error=str(e))
            return

        logger.info(f"Stack {stack_name} created")
        await self._emit(EventType.STACK_CREATED, stack_name, outputs=outputs, image=compiled.image)

    async def _create_shared_resources(self, compiled: CompiledStack) -> None:
        """Create shared resources in dependency order, skipping existing ones"""
        stack_name = compiled.stack_name
        with self.db.get_session() as session:
            attributes = shared_attributes(session, stack_name)

        for operation in compiled.operations:
            if operation.logical_id in attributes:
                continue
            properties = resolve(operation.properties, compiled.parameters, attributes)
            provisioned = await self.platform.create_resource(
                stack_name, operation.logical_id, operation.resource_type, properties
            )
            attribute_map = provisioned.attribute_map()

            with self.db.get_session() as session:
                session.add(StackResource(
                    stack_name=stack_name,
                    logical_id=operation.logical_id,
                    resource_type=operation.resource_type,
                    physical_id=provisioned.physical_id,
                    attributes_json=json.dumps(attribute_map, sort_keys=True),
                ))
                session.commit()

            attributes[operation.logical_id] = attribute_map
            logger.info(f"Created {operation.resource_type} {operation.logical_id} for {stack_name}")

    def _resolve_outputs(self, compiled: CompiledStack, attributes: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        outputs = {}
        for name, output in compiled.outputs.items():
            value = output.get('Value') if isinstance(output, dict) else output
            try:
                outputs[name] = resolve(value, compiled.parameters, attributes)
            except TemplateError as e:
                logger.warning(f"Output {name} of {compiled.stack_name} cannot be resolved: {e}")
        return outputs

    # ==================== Rollout phases ====================

    async def _handle_provision(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id, PROVISIONING)
            if rollout is None:
                return

            stack_name = rollout.stack_name
            try:
                with self.db.get_session() as session:
                    compiled = self._compile_stack(session.get(Stack, stack_name))

                env = self._environment(stack_name, rollout.target_color)
                if env.has_resources and env.rollout_id != rollout.id:
                    # Environment retained by an earlier failed rollout
                    await self.environments.delete(stack_name, rollout.target_color, rollout_id=rollout.id)

                await self.environments.provision(compiled, rollout.target_color,
                                                  rollout.task_definition, rollout.id)
            except (PlatformError, TemplateError, EnvironmentInUseError) as e:
                logger.error(f"Provisioning for rollout {rollout.id} failed: {e}")
                await self._abort_locked(rollout.id, ProvisioningFailure(str(e)))
                return

            with self.db.get_session() as session:
                self.scheduler.schedule(session, CHECK_PROVISIONING, stack_name, rollout.id,
                                        payload={'phase': PROVISIONING})
                session.commit()

    async def _handle_check_provisioning(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id, PROVISIONING)
            if rollout is None:
                return

            env = self._environment(rollout.stack_name, rollout.target_color)
            if not env.task_set_id:
                await self._abort_locked(rollout.id, ProvisioningFailure("New environment has no task set"))
                return

            try:
                status = await self.platform.describe_task_set(env.task_set_id)
            except PlatformError as e:
                logger.warning(f"Could not describe task set {env.task_set_id}: {e}")
                status = None

            if status is not None and status.is_failed:
                await self._abort_locked(
                    rollout.id,
                    ProvisioningFailure(f"New environment failed: {status.reason or 'task set failed'}"),
                )
                return

            if status is not None and status.is_steady:
                await self._enter_test_traffic(rollout.id)
                return

            if self._now() >= as_utc(rollout.phase_deadline):
                await self._abort_locked(rollout.id, TimeoutExceeded(
                    f"New environment not steady after {self.provisioning_timeout_seconds}s"
                ))
                return

            with self.db.get_session() as session:
                self.scheduler.schedule(session, CHECK_PROVISIONING, rollout.stack_name, rollout.id,
                                        delay_seconds=self.provisioning_poll_seconds,
                                        payload={'phase': PROVISIONING})
                session.commit()

    async def _enter_test_traffic(self, rollout_id: str) -> None:
        with self.db.get_session() as session:
            rollout = session.get(Rollout, rollout_id)
            from_state = self._transition(rollout, TEST_TRAFFIC_SHIFTED)
            env = session.query(Environment).filter_by(
                stack_name=rollout.stack_name, color=rollout.target_color
            ).first()
            env.status = 'staged'
            self.scheduler.cancel_pending(session, rollout.id, kinds=[PHASE_TIMEOUT])
            self.scheduler.schedule(session, VALIDATION_HOOK, rollout.stack_name, rollout.id,
                                    payload={'phase': TEST_TRAFFIC_SHIFTED})
            self._commit(session, f"Rollout {rollout_id}")
            task_set_id = env.task_set_id

        await self._phase_changed(rollout, from_state)
        await self._emit(EventType.ENVIRONMENT_PROVISIONED, rollout.stack_name, rollout.id,
                         color=rollout.target_color, task_set_id=task_set_id, image=rollout.image)
        await self._apply_phase_weights(rollout, self._stack_settings(rollout.stack_name))

    def _test_endpoint(self, compiled: CompiledStack) -> Optional[str]:
        listener = compiled.template.resources.get(compiled.settings.test_listener) or {}
        properties = listener.get('Properties') or {}
        load_balancer = properties.get('LoadBalancerArn')
        if not isinstance(load_balancer, dict) or 'Ref' not in load_balancer:
            return None
        with self.db.get_session() as session:
            attributes = shared_attributes(session, compiled.stack_name)
        dns_name = (attributes.get(load_balancer['Ref']) or {}).get('DNSName')
        port = properties.get('Port')
        if not dns_name or not port:
            return None
        return f"{str(properties.get('Protocol', 'HTTP')).lower()}://{dns_name}:{port}"

    async def _handle_validation_hook(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id, TEST_TRAFFIC_SHIFTED)
            if rollout is None:
                return

            with self.db.get_session() as session:
                compiled = self._compile_stack(session.get(Stack, rollout.stack_name))

            context = HookContext(
                rollout_id=rollout.id,
                stack=rollout.stack_name,
                target_color=rollout.target_color,
                test_listener=compiled.settings.test_listener,
                test_endpoint=self._test_endpoint(compiled),
            )

            try:
                await self.hook_runner.run(rollout.hook_url, context)
            except ValidationHookFailure as e:
                logger.warning(f"Rollout {rollout.id}: validation hook failed: {e}")
                await self._emit(EventType.VALIDATION_HOOK_FAILED, rollout.stack_name, rollout.id, error=str(e))
                await self._abort_locked(rollout.id, e)
                return

            await self._emit(EventType.VALIDATION_HOOK_PASSED, rollout.stack_name, rollout.id,
                             hook_url=rollout.hook_url)
            await self._enter_canary(rollout.id, compiled.settings)

    async def _enter_canary(self, rollout_id: str, settings: BlueGreenSettings) -> None:
        with self.db.get_session() as session:
            rollout = session.get(Rollout, rollout_id)
            from_state = self._transition(rollout, CANARY_SHIFTED)
            self._commit(session, f"Rollout {rollout_id}")

        await self._phase_changed(rollout, from_state)
        await self._apply_phase_weights(rollout, settings)
        await self._enter_baking(rollout_id)

    async def _enter_baking(self, rollout_id: str) -> None:
        with self.db.get_session() as session:
            rollout = session.get(Rollout, rollout_id)
            from_state = self._transition(rollout, BAKING)
            rollout.bake_deadline = self._now() + timedelta(seconds=rollout.bake_seconds)
            self.scheduler.schedule(session, BAKE_ELAPSED, rollout.stack_name, rollout.id,
                                    due_at=rollout.bake_deadline, payload={'phase': BAKING})
            self.scheduler.schedule(session, EVALUATE_ALARMS, rollout.stack_name, rollout.id,
                                    delay_seconds=self.alarm_evaluation_seconds)
            self._commit(session, f"Rollout {rollout_id}")

        await self._phase_changed(rollout, from_state)

    async def _firing_alarms(self, rollout: Rollout) -> List[str]:
        evaluations = await self.alarm_monitor.evaluate_stack(rollout.stack_name, rollout.id)
        return [e.alarm_name for e in evaluations if e.state == AlarmStateValue.ALARM]

    async def _check_alarms(self, rollout: Rollout) -> bool:
        """
        Evaluate the stack's alarms; abort if any is in ALARM and the rollout
        rolls back on alarms.

        Returns:
            True if the rollout was aborted
        """
        firing = await self._firing_alarms(rollout)
        if not firing:
            return False

        if not rollout.alarm_rollback:
            logger.warning(
                f"Rollout {rollout.id}: alarms in ALARM ({', '.join(firing)}) "
                f"but alarm rollback is disabled; continuing"
            )
            return False

        await self._abort_locked(rollout.id, HealthAlarmTriggered(f"Alarms in ALARM: {', '.join(firing)}"))
        return True

    async def _handle_evaluate_alarms(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id)
            if rollout is None or rollout.status not in ALARM_WATCH_STATES:
                return

            if await self._check_alarms(rollout):
                return

            with self.db.get_session() as session:
                self.scheduler.schedule(session, EVALUATE_ALARMS, rollout.stack_name, rollout.id,
                                        delay_seconds=self.alarm_evaluation_seconds)
                session.commit()

    async def _handle_bake_elapsed(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id, BAKING)
            if rollout is None:
                return

            if await self._check_alarms(rollout):
                return

            with self.db.get_session() as session:
                rollout = session.get(Rollout, rollout.id)
                from_state = self._transition(rollout, FULLY_SHIFTED)
                rollout.termination_deadline = self._now() + timedelta(seconds=rollout.termination_wait_seconds)
                self.scheduler.schedule(session, TERMINATION_ELAPSED, rollout.stack_name, rollout.id,
                                        due_at=rollout.termination_deadline, payload={'phase': FULLY_SHIFTED})
                self._commit(session, f"Rollout {rollout.id}")

            await self._phase_changed(rollout, from_state)
            await self._apply_phase_weights(rollout, self._stack_settings(rollout.stack_name))

    async def _handle_termination_elapsed(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id, FULLY_SHIFTED)
            if rollout is None:
                return

            if await self._check_alarms(rollout):
                return

            with self.db.get_session() as session:
                rollout = session.get(Rollout, rollout.id)
                from_state = self._transition(rollout, TERMINATING)
                self.scheduler.cancel_pending(session, rollout.id)
                self._commit(session, f"Rollout {rollout.id}")

            await self._phase_changed(rollout, from_state)
            await self._complete_termination(rollout.id)

    async def _handle_complete_termination(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            await self._complete_termination(task.rollout_id)

    async def _complete_termination(self, rollout_id: str) -> None:
        rollout = self._load(rollout_id, TERMINATING)
        if rollout is None:
            return
        stack_name = rollout.stack_name

        try:
            settings = self._stack_settings(stack_name)
            await self._apply_phase_weights(rollout, settings)
            await self.environments.delete(stack_name, rollout.source_color, rollout_id=rollout.id)
            new_env = self._environment(stack_name, rollout.target_color)
            await self.platform.set_primary_task_set(self._service_id(stack_name, settings), new_env.task_set_id)
        except Exception as e:
            # Committed: there is no way back, keep retrying
            logger.error(f"Rollout {rollout.id}: termination failed, retrying: {e}", exc_info=True)
            with self.db.get_session() as session:
                self.scheduler.schedule(session, COMPLETE_TERMINATION, stack_name, rollout.id,
                                        delay_seconds=self.provisioning_poll_seconds,
                                        payload={'phase': TERMINATING})
                session.commit()
            return

        with self.db.get_session() as session:
            rollout = session.get(Rollout, rollout_id)
            from_state = self._transition(rollout, IDLE)
            rollout.outcome = SUCCEEDED
            stack = session.get(Stack, stack_name)
            stack.active_color = rollout.target_color
            stack.active_rollout_id = None
            env = session.query(Environment).filter_by(stack_name=stack_name, color=rollout.target_color).first()
            env.status = 'active'
            self._commit(session, f"Rollout {rollout_id}")

        logger.info(f"Rollout {rollout_id} completed: {stack_name} now serves {rollout.target_color} ({rollout.image})")
        await self._phase_changed(rollout, from_state)
        await self._emit(EventType.ROLLOUT_COMPLETED, stack_name, rollout_id,
                         active_color=rollout.target_color, image=rollout.image)

    async def _handle_phase_timeout(self, task: ScheduledTask) -> None:
        phase = task.payload.get('phase')
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id, phase)
            if rollout is None:
                return
            await self._abort_locked(rollout.id, TimeoutExceeded(f"Phase {phase} exceeded its time limit"))

    # ==================== Abort ====================

    async def abort(self, rollout_id: str, failure: RolloutFailure,
                    delete_new_environment: Optional[bool] = None) -> bool:
        """
        Abort a rollout and roll traffic back.

        Returns:
            True if the rollout was aborted, False if it could no longer be
        """
        async with self._lock(rollout_id):
            return await self._abort_locked(rollout_id, failure, delete_new_environment)

    async def cancel(self, rollout_id: str) -> Rollout:
        """
        Operator cancel: roll back and delete the new environment.

        Raises:
            RolloutNotFoundError: If the rollout does not exist
            InvalidTransitionError: If the rollout finished or is committed
        """
        async with self._lock(rollout_id):
            rollout = self._load(rollout_id)
            if rollout is None:
                raise RolloutNotFoundError(f"Rollout {rollout_id} not found")
            if not self.state_machine.is_in_flight(rollout):
                raise InvalidTransitionError(f"Rollout {rollout_id} is not in flight")
            if not self.state_machine.should_rollback(rollout):
                raise InvalidTransitionError(
                    f"Rollout {rollout_id} is {rollout.status} and can no longer be cancelled"
                )

            await self._abort_locked(rollout_id, OperatorCancelled("Cancelled by operator"),
                                     delete_new_environment=True)
        return self._load(rollout_id)

    def rollback_plan(self, rollout: Rollout, delete_new_environment: Optional[bool] = None) -> Optional[List[dict]]:
        """Steps an abort would take right now, or None once the rollout can no longer roll back"""
        if rollout.committed or not self.state_machine.can_transition(rollout.status, ABORTING):
            return None
        if delete_new_environment is None:
            delete_new_environment = not rollout.retain_on_failure
        return self.rollback_controller.plan_rollback(
            rollout, self._stack_settings(rollout.stack_name), delete_new_environment
        )

    async def _abort_locked(self, rollout_id: str, failure: RolloutFailure,
                            delete_new_environment: Optional[bool] = None) -> bool:
        with self.db.get_session() as session:
            rollout = session.get(Rollout, rollout_id)
            if rollout is None or not self.state_machine.should_rollback(rollout):
                return False

            from_state = self._transition(rollout, ABORTING)
            rollout.failure_kind = failure.kind
            rollout.error_message = str(failure)
            if delete_new_environment is not None:
                rollout.retain_on_failure = not delete_new_environment
            self.scheduler.cancel_pending(session, rollout.id)
            self._commit(session, f"Rollout {rollout_id}")

        logger.warning(f"Aborting rollout {rollout_id} from {from_state}: {failure.kind}: {failure}")
        await self._phase_changed(rollout, from_state)
        await self._complete_abort(rollout_id)
        return True

    async def _handle_complete_abort(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            await self._complete_abort(task.rollout_id)

    async def _complete_abort(self, rollout_id: str) -> None:
        rollout = self._load(rollout_id, ABORTING)
        if rollout is None:
            return

        try:
            settings = self._stack_settings(rollout.stack_name)
            await self.rollback_controller.rollback(
                rollout, settings, delete_new_environment=not rollout.retain_on_failure
            )
        except Exception as e:
            logger.error(f"Rollout {rollout_id}: rollback failed, retrying: {e}", exc_info=True)
            with self.db.get_session() as session:
                self.scheduler.schedule(session, COMPLETE_ABORT, rollout.stack_name, rollout.id,
                                        delay_seconds=self.provisioning_poll_seconds,
                                        payload={'phase': ABORTING})
                session.commit()
            return

        with self.db.get_session() as session:
            rollout = session.get(Rollout, rollout_id)
            from_state = self._transition(rollout, IDLE)
            rollout.outcome = ROLLED_BACK
            stack = session.get(Stack, rollout.stack_name)
            stack.active_rollout_id = None
            self._commit(session, f"Rollout {rollout_id}")

        await self._phase_changed(rollout, from_state)
        await self._emit(EventType.ROLLOUT_ABORTED, rollout.stack_name, rollout_id,
                         failure_kind=rollout.failure_kind, error=rollout.error_message,
                         retained=rollout.retain_on_failure)

    # ==================== Recovery ====================

    async def recover(self) -> int:
        """
        Resume work interrupted by a restart.

        Interrupted tasks go back to pending. In-flight rollouts and stacks
        being created that have no pending task get one scheduled.

        Returns:
            Number of resume tasks scheduled
        """
        self.scheduler.recover()
        scheduled = 0

        with self.db.get_session() as session:
            pending = session.query(ScheduledTask).filter(ScheduledTask.status == PENDING).all()
            pending_rollouts = {task.rollout_id for task in pending if task.rollout_id}
            pending_creates = {task.stack_name for task in pending if task.kind == CREATE_STACK}

            for rollout in session.query(Rollout).filter(Rollout.status != IDLE).all():
                if rollout.id in pending_rollouts:
                    continue
                logger.info(f"Resuming rollout {rollout.id} ({rollout.status}) on {rollout.stack_name}")
                self.scheduler.schedule(session, RESUME, rollout.stack_name, rollout.id,
                                        payload={'phase': rollout.status})
                scheduled += 1

            for stack in session.query(Stack).filter(Stack.status == 'creating').all():
                if stack.name not in pending_creates:
                    logger.info(f"Resuming creation of stack {stack.name}")
                    self.scheduler.schedule(session, CREATE_STACK, stack.name)
                    scheduled += 1

            session.commit()

        return scheduled

    async def _handle_resume(self, task: ScheduledTask) -> None:
        async with self._lock(task.rollout_id):
            rollout = self._load(task.rollout_id, task.payload.get('phase'))
            if rollout is None:
                return

            phase = rollout.status
            if phase == ABORTING:
                await self._complete_abort(rollout.id)
                return
            if phase == TERMINATING:
                await self._complete_termination(rollout.id)
                return

            await self._apply_phase_weights(rollout, self._stack_settings(rollout.stack_name))

            if phase == CANARY_SHIFTED:
                await self._enter_baking(rollout.id)
                return

            with self.db.get_session() as session:
                pending = {
                    row.kind for row in session.query(ScheduledTask.kind).filter(
                        ScheduledTask.rollout_id == rollout.id,
                        ScheduledTask.status == PENDING,
                    )
                }

                def schedule(kind, **kwargs):
                    # Timers that survived keep their due time
                    if kind not in pending:
                        self.scheduler.schedule(session, kind, rollout.stack_name, rollout.id, **kwargs)

                if phase == PROVISIONING:
                    schedule(PROVISION, payload={'phase': PROVISIONING})
                    schedule(PHASE_TIMEOUT, due_at=as_utc(rollout.phase_deadline) or self._now(),
                             payload={'phase': PROVISIONING})
                elif phase == TEST_TRAFFIC_SHIFTED:
                    schedule(VALIDATION_HOOK, payload={'phase': TEST_TRAFFIC_SHIFTED})
                elif phase == BAKING:
                    schedule(BAKE_ELAPSED, due_at=as_utc(rollout.bake_deadline) or self._now(),
                             payload={'phase': BAKING})
                    schedule(EVALUATE_ALARMS, delay_seconds=self.alarm_evaluation_seconds)
                elif phase == FULLY_SHIFTED:
                    schedule(TERMINATION_ELAPSED, due_at=as_utc(rollout.termination_deadline) or self._now(),
                             payload={'phase': FULLY_SHIFTED})
                    schedule(EVALUATE_ALARMS, delay_seconds=self.alarm_evaluation_seconds)
                session.commit()
