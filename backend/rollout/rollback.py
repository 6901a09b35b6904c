"""
Rollback controller.

Reverts traffic to the previous stable environment after a rollout
failure: both listeners return to {old: 100, new: 0} before the new
environment is deleted or retained for inspection.
"""

from typing import Dict, List
import logging

from database import Environment
from .template_validator import BlueGreenSettings
from .traffic_router import PRODUCTION, TEST

logger = logging.getLogger(__name__)


def stable_weights(settings: BlueGreenSettings, stable_color: str) -> Dict[str, int]:
    """Weight map sending all traffic to one color"""
    return {
        target_group: 100 if color == stable_color else 0
        for color, target_group in settings.target_groups.items()
    }


class RollbackController:
    """Restores the previous environment after an aborted rollout"""

    def __init__(self, db, router, environments):
        self.db = db
        self.router = router
        self.environments = environments

    def _has_resources(self, stack_name: str, color: str) -> bool:
        with self.db.get_session() as session:
            env = session.query(Environment).filter_by(stack_name=stack_name, color=color).first()
            return bool(env and env.has_resources)

    def plan_rollback(self, rollout, settings: BlueGreenSettings, delete_new_environment: bool) -> List[dict]:
        """Describe the rollback steps without executing them"""
        weights = stable_weights(settings, rollout.source_color)
        steps = [
            {'action': 'set_weights', 'listener': PRODUCTION, 'weights': weights},
            {'action': 'set_weights', 'listener': TEST, 'weights': weights},
        ]
        if delete_new_environment:
            steps.append({'action': 'delete_environment', 'color': rollout.target_color})
        elif self._has_resources(rollout.stack_name, rollout.target_color):
            steps.append({'action': 'retain_environment', 'color': rollout.target_color})
        return steps

    async def rollback(self, rollout, settings: BlueGreenSettings, delete_new_environment: bool) -> None:
        """
        Execute the rollback. Every step is idempotent, so a rollback that
        was interrupted can simply be run again.
        """
        stack_name = rollout.stack_name
        weights = stable_weights(settings, rollout.source_color)

        logger.warning(
            f"Rolling back rollout {rollout.id} on {stack_name}: "
            f"traffic back to {rollout.source_color}"
        )

        # Production first: that is where users are
        await self.router.set_weights(stack_name, PRODUCTION, weights, rollout_id=rollout.id)
        await self.router.set_weights(stack_name, TEST, weights, rollout_id=rollout.id)

        if not delete_new_environment and self._has_resources(stack_name, rollout.target_color):
            await self.environments.retain(stack_name, rollout.target_color, rollout_id=rollout.id)
            return

        # Also resets a slot whose provisioning never registered anything
        await self.environments.delete(stack_name, rollout.target_color, rollout_id=rollout.id)
