"""
Shared pytest fixtures for bgshift tests.

Fixtures provided:
- db: DatabaseManager on a temporary SQLite file
- clock: Controllable clock shared by executor, scheduler and alarm monitor
- event_bus: EventBus persisting into the temporary database
- template_body / base_parameters: The blue-green fixture template and its parameters
- platform / load_balancer / metric_source: In-memory drivers
- harness: RolloutHarness wiring an executor to all of the above
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import DatabaseManager, StackResource
from event_bus import EventBus
from rollout.alarm_monitor import InMemoryMetricSource
from rollout.executor import RolloutExecutor
from rollout.platform import InMemoryPlatform
from rollout.scheduler import DurableScheduler
from rollout.traffic_router import InMemoryLoadBalancer, PRODUCTION

FIXTURES_DIR = Path(__file__).parent / 'fixtures'

STACK = 'trivia-backend'
IMAGE_V1 = '123456789012.dkr.ecr.us-east-1.amazonaws.com/reinvent-trivia-backend:v1'
IMAGE_V2 = '123456789012.dkr.ecr.us-east-1.amazonaws.com/reinvent-trivia-backend:v2'
BLUE_TG = 'ServiceTargetGroupBlue'
GREEN_TG = 'ServiceTargetGroupGreen'

# Shorter than the server default, still inside the allowed 60..300s
ALARM_EVALUATION_SECONDS = 60
PROVISIONING_POLL_SECONDS = 15
PROVISIONING_TIMEOUT_SECONDS = 600


class FakeClock:
    """Clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RolloutHarness:
    """Executor plus helpers to drive it through time"""

    def __init__(self, db, event_bus, clock, platform, load_balancer, metric_source, **executor_kwargs):
        self.db = db
        self.event_bus = event_bus
        self.clock = clock
        self.platform = platform
        self.load_balancer = load_balancer
        self.metric_source = metric_source
        self.stack_name = STACK
        self.executor_kwargs = executor_kwargs
        self.executor = self.build_executor()

    def build_executor(self, **overrides) -> RolloutExecutor:
        kwargs = dict(
            alarm_evaluation_seconds=ALARM_EVALUATION_SECONDS,
            provisioning_poll_seconds=PROVISIONING_POLL_SECONDS,
            provisioning_timeout_seconds=PROVISIONING_TIMEOUT_SECONDS,
            alarm_rollback_default=True,
            retain_failed_environment=True,
        )
        kwargs.update(self.executor_kwargs)
        kwargs.update(overrides)
        return RolloutExecutor(
            self.db,
            self.event_bus,
            self.platform,
            self.load_balancer,
            self.metric_source,
            scheduler=DurableScheduler(self.db, poll_interval=1, clock=self.clock),
            clock=self.clock,
            **kwargs,
        )

    async def run_due(self) -> int:
        return await self.executor.scheduler.run_due()

    async def advance(self, seconds: int, step: int = ALARM_EVALUATION_SECONDS) -> None:
        """Move the clock forward in steps, running due tasks after each"""
        remaining = seconds
        while remaining > 0:
            delta = min(step, remaining)
            self.clock.advance(delta)
            remaining -= delta
            await self.run_due()

    async def create_stack(self, template_body: str, parameters: dict, **kwargs):
        result = await self.executor.submit(STACK, template_body, parameters, **kwargs)
        await self.run_due()
        return result

    async def start_rollout(self, template_body: str, parameters: dict, **kwargs):
        """Submit a change and run until the rollout is waiting on a timer"""
        result = await self.executor.submit(STACK, template_body, parameters, **kwargs)
        await self.run_due()
        return result

    def rollout(self, rollout_id):
        return self.db.get_rollout(rollout_id)

    def weights(self, role: str = PRODUCTION) -> dict:
        return self.executor.router.get_weights(STACK, role)

    def listener_id(self, role: str = PRODUCTION) -> str:
        logical_id = 'ProductionListener' if role == PRODUCTION else 'TestListener'
        return self.resource(logical_id).physical_id

    def resource(self, logical_id: str) -> StackResource:
        for resource in self.db.get_stack_resources(STACK):
            if resource.logical_id == logical_id:
                return resource
        raise KeyError(logical_id)

    def target_group_dimension(self, logical_id: str) -> str:
        return self.resource(logical_id).attributes['TargetGroupFullName']

    def applied_weights(self, role: str = PRODUCTION) -> list:
        """Every forward config the load balancer received for a listener, by logical target group"""
        by_physical = {self.resource(tg).physical_id: tg for tg in (BLUE_TG, GREEN_TG)}
        listener = self.listener_id(role)
        return [
            {by_physical[tg]: weight for tg, weight in weights.items()}
            for listener_id, weights in self.load_balancer.history
            if listener_id == listener
        ]

    def event_types(self, rollout_id) -> list:
        return [event.event_type for event in self.db.get_events(rollout_id=rollout_id)]

    def phases(self, rollout_id) -> list:
        """Phases the rollout entered, in order"""
        return [
            event.to_dict()['data']['to_state']
            for event in self.db.get_events(rollout_id=rollout_id)
            if event.event_type == 'rollout_phase_changed'
        ]

    def environment(self, color: str):
        for env in self.db.get_environments(STACK):
            if env.color == color:
                return env
        raise KeyError(color)

    def stack(self):
        return self.db.get_stack(STACK)


@pytest.fixture
def db():
    """
    Create a temporary SQLite database for testing.

    Every test gets its own file; it is removed afterwards.
    """
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    manager = DatabaseManager(f'sqlite:///{db_path}')

    yield manager

    manager.dispose()
    os.close(db_fd)
    for suffix in ('', '-wal', '-shm'):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def event_bus(db):
    return EventBus(db)


@pytest.fixture
def template_body() -> str:
    return (FIXTURES_DIR / 'blue_green_template.yaml').read_text()


@pytest.fixture
def base_parameters() -> dict:
    return {
        'Vpc': 'vpc-0a1b2c3d',
        'Subnet1': 'subnet-0a1b2c3d',
        'Subnet2': 'subnet-4e5f6a7b',
        'ImageUrl': IMAGE_V1,
    }


@pytest.fixture
def v2_parameters(base_parameters) -> dict:
    return dict(base_parameters, ImageUrl=IMAGE_V2)


@pytest.fixture
def platform():
    return InMemoryPlatform(steady_after_polls=1)


@pytest.fixture
def load_balancer():
    return InMemoryLoadBalancer()


@pytest.fixture
def metric_source():
    return InMemoryMetricSource()


@pytest.fixture
def harness(db, event_bus, clock, platform, load_balancer, metric_source):
    return RolloutHarness(db, event_bus, clock, platform, load_balancer, metric_source)


@pytest_asyncio.fixture
async def ready_stack(harness, template_body, base_parameters):
    """Stack created from the fixture template and serving IMAGE_V1 on blue"""
    await harness.create_stack(template_body, base_parameters)
    return harness
