"""
Environment lifecycle.

A stack has two color slots. At most one of them holds the active
environment outside a rollout; during a rollout the other slot holds the
new environment. An environment is a registered task definition plus a
task set attached to the slot's target group.
"""

from typing import Any, Dict, Optional
import logging

from database import Environment, ListenerState, StackResource
from event_bus import Event, EventType
from .errors import EnvironmentInUseError
from .resource_graph import CompiledStack, canonical_json, environment_task_set, resolve
from .traffic_router import PRODUCTION

logger = logging.getLogger(__name__)


def shared_attributes(session, stack_name: str) -> Dict[str, Dict[str, Any]]:
    """Ref / GetAtt view of the stack's provisioned shared resources"""
    rows = session.query(StackResource).filter_by(stack_name=stack_name).all()
    return {row.logical_id: row.attributes for row in rows}


def _image(task_definition: Dict[str, Any]) -> Optional[str]:
    for container in task_definition.get('ContainerDefinitions') or []:
        if isinstance(container, dict) and container.get('Essential', True):
            return container.get('Image')
    return None


class EnvironmentManager:
    """Provisions, retains and deletes environments in color slots"""

    def __init__(self, db, platform, event_bus=None):
        self.db = db
        self.platform = platform
        self.event_bus = event_bus

    def _get(self, session, stack_name: str, color: str) -> Environment:
        env = session.query(Environment).filter_by(stack_name=stack_name, color=color).first()
        if env is None:
            raise ValueError(f"Stack {stack_name} has no {color} environment slot")
        return env

    async def provision(self, compiled: CompiledStack, color: str, task_definition: Dict[str, Any],
                        rollout_id: Optional[str] = None) -> Environment:
        """
        Register the task definition and start the task set for a slot.

        Provisioning the same rollout into the same slot again picks up
        where the previous attempt stopped: an existing task set is returned
        as is, an already registered task definition is reused.

        Raises:
            EnvironmentInUseError: If the slot still holds another environment
            PlatformError: If the platform rejects a step
        """
        stack_name = compiled.stack_name
        settings = compiled.settings

        with self.db.get_session() as session:
            env = self._get(session, stack_name, color)
            resumed = env.has_resources and env.rollout_id == rollout_id
            if resumed and env.task_set_id:
                logger.info(f"{color} environment of {stack_name} already provisioned for rollout {rollout_id}")
                return env
            if env.has_resources and not resumed:
                raise EnvironmentInUseError(f"{color} slot of {stack_name} is not empty ({env.status})")

            task_definition_id = env.task_definition_id if resumed else None
            env.status = 'provisioning'
            env.rollout_id = rollout_id
            attributes = shared_attributes(session, stack_name)
            session.commit()

        if task_definition_id:
            logger.info(f"Reusing task definition {task_definition_id} for {color} environment of {stack_name}")
        else:
            definition = resolve(task_definition, compiled.parameters, attributes)
            task_definition_id = await self.platform.register_task_definition(stack_name, definition)

            # Persist before the task set exists so a failure can still clean up
            with self.db.get_session() as session:
                env = self._get(session, stack_name, color)
                env.task_definition_id = task_definition_id
                env.task_definition_json = canonical_json(task_definition)
                env.image = _image(definition)
                session.commit()

        attributes[settings.task_definitions[color]] = {'Ref': task_definition_id}
        task_set = resolve(environment_task_set(compiled, color), compiled.parameters, attributes)
        task_set_id = await self.platform.create_task_set(stack_name, task_set)

        with self.db.get_session() as session:
            env = self._get(session, stack_name, color)
            env.task_set_id = task_set_id
            session.commit()

        logger.info(f"Provisioned {color} environment of {stack_name}: task set {task_set_id}")
        return env

    def set_status(self, stack_name: str, color: str, status: str) -> None:
        with self.db.get_session() as session:
            env = self._get(session, stack_name, color)
            env.status = status
            session.commit()

    async def retain(self, stack_name: str, color: str, rollout_id: Optional[str] = None) -> None:
        """Keep a failed environment around for inspection (no production traffic)"""
        self.set_status(stack_name, color, 'retained')
        logger.info(f"Retaining {color} environment of {stack_name} for inspection")
        if self.event_bus:
            await self.event_bus.emit(Event(
                event_type=EventType.ENVIRONMENT_RETAINED,
                stack_name=stack_name,
                rollout_id=rollout_id,
                data={'color': color},
            ))

    async def delete(self, stack_name: str, color: str, rollout_id: Optional[str] = None) -> bool:
        """
        Stop the slot's task set and deregister its task definition.

        A slot without resources is reset to empty.

        Returns:
            True if something was deleted, False if the slot was empty

        Raises:
            EnvironmentInUseError: If production traffic still reaches the slot
        """
        with self.db.get_session() as session:
            env = self._get(session, stack_name, color)
            if not env.has_resources:
                # Provisioning may have stopped before anything was registered
                if env.status != 'empty':
                    env.status = 'empty'
                    env.rollout_id = None
                    session.commit()
                return False

            production = session.query(ListenerState).filter_by(
                stack_name=stack_name, role=PRODUCTION
            ).first()
            weight = production.weights.get(env.target_group, 0) if production else 0
            if weight > 0:
                raise EnvironmentInUseError(
                    f"{color} environment of {stack_name} receives {weight}% of production traffic"
                )

            task_set_id = env.task_set_id
            task_definition_id = env.task_definition_id
            image = env.image

        if task_set_id:
            await self.platform.delete_task_set(task_set_id)
        if task_definition_id:
            await self.platform.deregister_task_definition(task_definition_id)

        with self.db.get_session() as session:
            env = self._get(session, stack_name, color)
            env.status = 'empty'
            env.task_set_id = None
            env.task_definition_id = None
            env.task_definition_json = None
            env.image = None
            env.rollout_id = None
            session.commit()

        logger.info(f"Deleted {color} environment of {stack_name} ({image})")
        if self.event_bus:
            await self.event_bus.emit(Event(
                event_type=EventType.ENVIRONMENT_DELETED,
                stack_name=stack_name,
                rollout_id=rollout_id,
                data={'color': color, 'image': image, 'task_set_id': task_set_id},
            ))
        return True
