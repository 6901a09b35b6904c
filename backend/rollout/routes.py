"""
Rollout API routes for bgshift

Provides REST endpoints for:
- Submitting templates (stack creation, rollouts, in-place updates)
- Inspecting stacks, rollouts and their event trail
- Cancelling in-flight rollouts
- Dry-run compilation of templates
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from database import DatabaseManager, Rollout, as_utc
from .errors import (
    InvalidTransitionError, RolloutInProgressError, RolloutNotFoundError,
    StackNotReadyError, StaleRolloutError,
)
from .executor import RolloutExecutor
from .template_parser import TemplateError
from .traffic_router import PRODUCTION, TEST

logger = logging.getLogger(__name__)

# Create routers
stack_router = APIRouter(prefix="/api/stacks", tags=["stacks"])
rollout_router = APIRouter(prefix="/api/rollouts", tags=["rollouts"])
template_router = APIRouter(prefix="/api/templates", tags=["templates"])


# ==================== Request/Response Models ====================

class DeploymentSubmit(BaseModel):
    """Submit a template for a stack."""
    template: str = Field(..., description="Blue-green template (YAML)")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Template parameter values")
    alarm_rollback: Optional[bool] = Field(
        None,
        description="Roll back when a bound alarm fires (default: server setting)"
    )
    hook_url: Optional[str] = Field(None, description="Validation hook called once test traffic is shifted")
    retain_on_failure: Optional[bool] = Field(
        None,
        description="Keep the new environment after a failed rollout for inspection (default: server setting)"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "template": "Parameters:\n  ImageUrl:\n    Type: String\n...",
                "parameters": {
                    "Vpc": "vpc-0a1b2c3d",
                    "Subnet1": "subnet-0a1b2c3d",
                    "Subnet2": "subnet-4e5f6a7b",
                    "ImageUrl": "123456789012.dkr.ecr.us-east-1.amazonaws.com/trivia-backend:v2"
                },
                "hook_url": "http://validator.internal/hooks/trivia"
            }
        }
    )


class SubmitResponse(BaseModel):
    action: str
    stack: str
    rollout_id: Optional[str] = None


class TemplatePlanRequest(BaseModel):
    """Compile a template without deploying it."""
    stack: str = Field("plan", description="Stack name used for AWS::StackName")
    template: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class RolloutResponse(BaseModel):
    id: str
    stack: str
    status: str
    outcome: Optional[str]
    source_color: str
    target_color: str
    image: Optional[str]
    canary_percent: int
    bake_seconds: int
    termination_wait_seconds: int
    alarm_rollback: bool
    retain_on_failure: bool
    committed: bool
    failure_kind: Optional[str]
    error_message: Optional[str]
    created_at: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]
    bake_deadline: Optional[str] = None
    termination_deadline: Optional[str] = None
    rollback_plan: Optional[List[Dict[str, Any]]] = None


# ==================== Dependency Injection ====================

# These will be set by main.py during startup
_rollout_executor: Optional[RolloutExecutor] = None
_database_manager: Optional[DatabaseManager] = None


def set_rollout_executor(executor: RolloutExecutor):
    """Set rollout executor instance (called from main.py)."""
    global _rollout_executor
    _rollout_executor = executor


def set_database_manager(db: DatabaseManager):
    """Set database manager instance (called from main.py)."""
    global _database_manager
    _database_manager = db


def get_rollout_executor() -> RolloutExecutor:
    """Get rollout executor (dependency)."""
    if _rollout_executor is None:
        raise RuntimeError("RolloutExecutor not initialized")
    return _rollout_executor


def get_database_manager() -> DatabaseManager:
    """Get database manager (dependency)."""
    if _database_manager is None:
        raise RuntimeError("DatabaseManager not initialized")
    return _database_manager


# ==================== Serialization ====================

def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _rollout_to_response(rollout: Rollout) -> RolloutResponse:
    return RolloutResponse(
        id=rollout.id,
        stack=rollout.stack_name,
        status=rollout.status,
        outcome=rollout.outcome,
        source_color=rollout.source_color,
        target_color=rollout.target_color,
        image=rollout.image,
        canary_percent=rollout.canary_percent,
        bake_seconds=rollout.bake_seconds,
        termination_wait_seconds=rollout.termination_wait_seconds,
        alarm_rollback=rollout.alarm_rollback,
        retain_on_failure=rollout.retain_on_failure,
        committed=bool(rollout.committed),
        failure_kind=rollout.failure_kind,
        error_message=rollout.error_message,
        created_at=_iso(rollout.created_at),
        started_at=_iso(rollout.started_at),
        completed_at=_iso(rollout.completed_at),
        bake_deadline=_iso(rollout.bake_deadline),
        termination_deadline=_iso(rollout.termination_deadline),
    )


def _stack_state(db: DatabaseManager, name: str) -> Dict[str, Any]:
    stack = db.get_stack(name)
    if stack is None:
        raise HTTPException(status_code=404, detail=f"Stack {name} not found")

    listeners = {state.role: state.weights for state in db.get_listener_states(name)}
    return {
        'name': stack.name,
        'status': stack.status,
        'active_color': stack.active_color,
        'active_rollout_id': stack.active_rollout_id,
        'alarm_rollback': stack.alarm_rollback,
        'hook_url': stack.hook_url,
        'outputs': stack.outputs,
        'error_message': stack.error_message,
        'parameters': stack.parameters,
        'environments': [
            {
                'color': env.color,
                'status': env.status,
                'target_group': env.target_group,
                'image': env.image,
                'task_set_id': env.task_set_id,
                'rollout_id': env.rollout_id,
            }
            for env in db.get_environments(name)
        ],
        'listeners': {
            PRODUCTION: listeners.get(PRODUCTION, {}),
            TEST: listeners.get(TEST, {}),
        },
        'alarms': [
            {
                'name': alarm.alarm_name,
                'color': alarm.color,
                'metric': alarm.metric_name,
                'state': alarm.state,
                'reason': alarm.reason,
            }
            for alarm in db.get_alarm_states(name)
        ],
        'resources': [
            {
                'logical_id': resource.logical_id,
                'type': resource.resource_type,
                'physical_id': resource.physical_id,
            }
            for resource in db.get_stack_resources(name)
        ],
        'created_at': _iso(stack.created_at),
        'updated_at': _iso(stack.updated_at),
    }


# ==================== Stack Endpoints ====================

@stack_router.post("/{name}/deployments", response_model=SubmitResponse, status_code=202)
async def submit_deployment(
    name: str,
    request: DeploymentSubmit,
    executor: RolloutExecutor = Depends(get_rollout_executor),
):
    """
    Submit a template for a stack.

    - First submission creates the stack (`action: create`)
    - A changed task definition starts a blue-green rollout (`action: rollout`)
    - Any other change is recorded in place (`action: update`)
    - An identical template does nothing (`action: none`)

    Progress is tracked through GET /api/rollouts/{id} and its events.
    """
    try:
        result = await executor.submit(
            name,
            request.template,
            request.parameters,
            alarm_rollback=request.alarm_rollback,
            hook_url=request.hook_url,
            retain_on_failure=request.retain_on_failure,
        )
        return SubmitResponse(**result.to_dict())

    except TemplateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (RolloutInProgressError, StackNotReadyError, StaleRolloutError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to submit deployment for {name}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@stack_router.get("/{name}")
async def get_stack(name: str, db: DatabaseManager = Depends(get_database_manager)):
    """Stack state: environments, listener weights, alarms and resources."""
    return _stack_state(db, name)


@stack_router.get("/{name}/rollouts", response_model=List[RolloutResponse])
async def list_rollouts(name: str, limit: int = 50, db: DatabaseManager = Depends(get_database_manager)):
    """Rollouts of a stack, newest first."""
    if db.get_stack(name) is None:
        raise HTTPException(status_code=404, detail=f"Stack {name} not found")
    limit = max(1, min(limit, 500))
    return [_rollout_to_response(rollout) for rollout in db.get_rollouts(name, limit=limit)]


# ==================== Rollout Endpoints ====================

@rollout_router.get("/{rollout_id}", response_model=RolloutResponse)
async def get_rollout(
    rollout_id: str,
    db: DatabaseManager = Depends(get_database_manager),
    executor: RolloutExecutor = Depends(get_rollout_executor),
):
    """
    Rollout state. While the rollout can still be aborted, `rollback_plan`
    lists the steps an abort would take.
    """
    rollout = db.get_rollout(rollout_id)
    if rollout is None:
        raise HTTPException(status_code=404, detail="Rollout not found")
    response = _rollout_to_response(rollout)
    response.rollback_plan = executor.rollback_plan(rollout)
    return response


@rollout_router.get("/{rollout_id}/events")
async def get_rollout_events(rollout_id: str, limit: int = 500,
                             db: DatabaseManager = Depends(get_database_manager)):
    """Audit trail of a rollout: phase changes, traffic shifts, alarms, hooks."""
    if db.get_rollout(rollout_id) is None:
        raise HTTPException(status_code=404, detail="Rollout not found")
    return [event.to_dict() for event in db.get_events(rollout_id=rollout_id, limit=limit)]


@rollout_router.post("/{rollout_id}/cancel", response_model=RolloutResponse)
async def cancel_rollout(
    rollout_id: str,
    executor: RolloutExecutor = Depends(get_rollout_executor),
):
    """
    Cancel an in-flight rollout.

    Traffic returns to the previous environment and the new environment is
    deleted. Rollouts past the commitment point (terminating) cannot be
    cancelled.
    """
    try:
        rollout = await executor.cancel(rollout_id)
        return _rollout_to_response(rollout)

    except RolloutNotFoundError:
        raise HTTPException(status_code=404, detail="Rollout not found")
    except (InvalidTransitionError, StaleRolloutError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to cancel rollout {rollout_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ==================== Template Endpoints ====================

@template_router.post("/plan")
async def plan_template(
    request: TemplatePlanRequest,
    executor: RolloutExecutor = Depends(get_rollout_executor),
):
    """Parse, validate and compile a template; return the provisioning plan."""
    try:
        compiled = executor.compile_template(request.stack, request.template, request.parameters)
        return compiled.plan()
    except TemplateError as e:
        raise HTTPException(status_code=400, detail=str(e))
