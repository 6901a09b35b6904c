"""
Integration tests for the stack, rollout and template API routes.

The app is assembled from the routers alone, without main.py's lifespan:
the scheduler is driven by the test through the harness.
"""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from rollout import routes
from rollout.routes import rollout_router, stack_router, template_router

BLUE_TG = 'ServiceTargetGroupBlue'
GREEN_TG = 'ServiceTargetGroupGreen'


@pytest.fixture
def client(harness):
    app = FastAPI()
    app.include_router(stack_router)
    app.include_router(rollout_router)
    app.include_router(template_router)

    routes.set_rollout_executor(harness.executor)
    routes.set_database_manager(harness.db)
    yield TestClient(app)
    routes.set_rollout_executor(None)
    routes.set_database_manager(None)


def deploy(client, template_body, parameters, **options):
    return client.post(
        '/api/stacks/trivia-backend/deployments',
        json={'template': template_body, 'parameters': parameters, **options},
    )


@pytest.fixture
def created(client, harness, template_body, base_parameters):
    response = deploy(client, template_body, base_parameters)
    assert response.status_code == 202
    asyncio.run(harness.run_due())
    return client


@pytest.fixture
def rollout_id(created, harness, template_body, v2_parameters):
    response = deploy(created, template_body, v2_parameters)
    assert response.status_code == 202
    asyncio.run(harness.run_due())
    return response.json()['rollout_id']


@pytest.mark.integration
class TestDeploymentRoutes:

    def test_first_submission_creates_stack(self, client, template_body, base_parameters):
        response = deploy(client, template_body, base_parameters)

        assert response.status_code == 202
        assert response.json() == {'action': 'create', 'stack': 'trivia-backend', 'rollout_id': None}

    def test_invalid_template(self, client, base_parameters):
        response = deploy(client, "Resources:\n  Broken: [", base_parameters)

        assert response.status_code == 400

    def test_submission_while_creating(self, client, template_body, base_parameters):
        deploy(client, template_body, base_parameters)

        response = deploy(client, template_body, base_parameters)

        assert response.status_code == 409
        assert 'still being created' in response.json()['detail']

    def test_unknown_stack(self, client):
        assert client.get('/api/stacks/nope').status_code == 404
        assert client.get('/api/stacks/nope/rollouts').status_code == 404

    def test_stack_state(self, created):
        response = created.get('/api/stacks/trivia-backend')

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'ready'
        assert body['active_color'] == 'blue'
        assert body['listeners']['production'] == {BLUE_TG: 100, GREEN_TG: 0}
        assert body['listeners']['test'] == {BLUE_TG: 100, GREEN_TG: 0}
        assert [env['status'] for env in body['environments']] == ['active', 'empty']
        assert len(body['alarms']) == 4
        assert body['outputs']['ServiceURL'].startswith('http://')

    def test_change_starts_rollout(self, created, template_body, v2_parameters):
        response = deploy(created, template_body, v2_parameters)

        assert response.status_code == 202
        assert response.json()['action'] == 'rollout'
        assert response.json()['rollout_id']

    def test_identical_submission(self, created, template_body, base_parameters):
        response = deploy(created, template_body, base_parameters)

        assert response.status_code == 202
        assert response.json()['action'] == 'none'


@pytest.mark.integration
class TestRolloutRoutes:

    def test_get_rollout(self, created, rollout_id):
        response = created.get(f'/api/rollouts/{rollout_id}')

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'baking'
        assert body['source_color'] == 'blue'
        assert body['target_color'] == 'green'
        assert body['canary_percent'] == 20
        assert body['bake_deadline'].endswith('+00:00')

    def test_rollback_plan(self, created, rollout_id):
        body = created.get(f'/api/rollouts/{rollout_id}').json()

        assert body['rollback_plan'] == [
            {'action': 'set_weights', 'listener': 'production', 'weights': {BLUE_TG: 100, GREEN_TG: 0}},
            {'action': 'set_weights', 'listener': 'test', 'weights': {BLUE_TG: 100, GREEN_TG: 0}},
            {'action': 'retain_environment', 'color': 'green'},
        ]

        created.post(f'/api/rollouts/{rollout_id}/cancel')
        assert created.get(f'/api/rollouts/{rollout_id}').json()['rollback_plan'] is None

    def test_rollout_events(self, created, rollout_id):
        response = created.get(f'/api/rollouts/{rollout_id}/events')

        assert response.status_code == 200
        event_types = [event['event_type'] for event in response.json()]
        assert event_types[0] == 'rollout_started'
        assert 'traffic_shifted' in event_types

    def test_stack_rollouts(self, created, rollout_id):
        response = created.get('/api/stacks/trivia-backend/rollouts')

        assert response.status_code == 200
        assert [rollout['id'] for rollout in response.json()] == [rollout_id]

    def test_submission_during_rollout(self, created, rollout_id, template_body, base_parameters):
        parameters = dict(base_parameters, ImageUrl=base_parameters['ImageUrl'].replace(':v1', ':v3'))

        response = deploy(created, template_body, parameters)

        assert response.status_code == 409
        assert rollout_id in response.json()['detail']

    def test_cancel(self, created, rollout_id):
        response = created.post(f'/api/rollouts/{rollout_id}/cancel')

        assert response.status_code == 200
        assert response.json()['status'] == 'idle'
        assert response.json()['outcome'] == 'rolled_back'
        assert response.json()['failure_kind'] == 'OperatorCancelled'

        assert created.post(f'/api/rollouts/{rollout_id}/cancel').status_code == 409

        stack = created.get('/api/stacks/trivia-backend').json()
        assert stack['listeners']['production'] == {BLUE_TG: 100, GREEN_TG: 0}
        assert stack['active_rollout_id'] is None

    def test_unknown_rollout(self, client):
        assert client.get('/api/rollouts/nope').status_code == 404
        assert client.get('/api/rollouts/nope/events').status_code == 404
        assert client.post('/api/rollouts/nope/cancel').status_code == 404


@pytest.mark.integration
class TestTemplateRoutes:

    def test_plan(self, client, template_body, base_parameters):
        response = client.post('/api/templates/plan', json={
            'stack': 'trivia-backend',
            'template': template_body,
            'parameters': base_parameters,
        })

        assert response.status_code == 200
        plan = response.json()
        assert plan['image'] == base_parameters['ImageUrl']
        assert plan['blue_green']['canary_percent'] == 20
        operations = [op['logical_id'] for op in plan['operations']]
        assert operations.index('LoadBalancer') < operations.index('ProductionListener')
        assert 'TaskSetBlue' not in operations

    def test_plan_rejects_invalid_template(self, client, template_body, base_parameters):
        broken = template_body.replace('StepPercentage: 20', 'StepPercentage: 100')

        response = client.post('/api/templates/plan', json={'template': broken, 'parameters': base_parameters})

        assert response.status_code == 400
