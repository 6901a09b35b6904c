"""
Traffic router adapter.

Translates rollout phase changes into weighted forward configurations on
the load balancer's listeners. A weight map names every target group the
listener forwards to, uses non-negative integers and sums to exactly 100.

Each change is one LoadBalancerBackend call, so clients never observe a
half-applied map. Reapplying the current map is a no-op.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
import json
import logging

from database import ListenerState, StackResource
from event_bus import Event, EventType
from .errors import InvalidWeightsError

logger = logging.getLogger(__name__)

PRODUCTION = 'production'
TEST = 'test'
LISTENER_ROLES = (PRODUCTION, TEST)


class LoadBalancerBackend(ABC):
    """
    Abstract interface to the load balancer's listener rules.

    Weights passed to the backend are keyed by target group physical id.
    """

    @abstractmethod
    async def set_forward_weights(self, listener_id: str, weights: Dict[str, int]) -> None:
        """
        Replace the listener's default forward action in a single update.

        Raises:
            Exception: Backend-specific errors are propagated to the caller
        """
        pass

    @abstractmethod
    async def get_forward_weights(self, listener_id: str) -> Dict[str, int]:
        pass


class InMemoryLoadBalancer(LoadBalancerBackend):
    """Load balancer simulation that records every applied forward config"""

    def __init__(self):
        self.listeners: Dict[str, Dict[str, int]] = {}
        self.history: List[Tuple[str, Dict[str, int]]] = []

    async def set_forward_weights(self, listener_id: str, weights: Dict[str, int]) -> None:
        if sum(weights.values()) != 100:
            raise ValueError(f"Forward weights for {listener_id} must sum to 100: {weights}")
        self.listeners[listener_id] = dict(weights)
        self.history.append((listener_id, dict(weights)))

    async def get_forward_weights(self, listener_id: str) -> Dict[str, int]:
        return dict(self.listeners.get(listener_id, {}))


def validate_weights(target_groups, weights: Dict[str, int]) -> None:
    """
    Validate a weight map against the listener's target groups.

    Raises:
        InvalidWeightsError: On unknown/missing target groups, non-integer
            or negative weights, or a total other than 100
    """
    if set(weights) != set(target_groups):
        raise InvalidWeightsError(
            f"Weights must name exactly the target groups {sorted(target_groups)}, got {sorted(weights)}"
        )
    for target_group, weight in weights.items():
        # bool is an int subclass; True is not a weight
        if isinstance(weight, bool) or not isinstance(weight, int):
            raise InvalidWeightsError(f"Weight for {target_group} must be an integer, got {weight!r}")
        if weight < 0:
            raise InvalidWeightsError(f"Weight for {target_group} must not be negative, got {weight}")
    total = sum(weights.values())
    if total != 100:
        raise InvalidWeightsError(f"Weights must sum to 100, got {total}")


class TrafficRouter:
    """Applies and tracks listener weights for blue-green stacks"""

    def __init__(self, db, backend: LoadBalancerBackend, event_bus=None):
        self.db = db
        self.backend = backend
        self.event_bus = event_bus

    def get_weights(self, stack_name: str, role: str) -> Dict[str, int]:
        with self.db.get_session() as session:
            state = session.query(ListenerState).filter_by(stack_name=stack_name, role=role).first()
            return state.weights if state else {}

    def _physical_ids(self, session, stack_name: str, logical_ids) -> Dict[str, str]:
        rows = session.query(StackResource).filter(
            StackResource.stack_name == stack_name,
            StackResource.logical_id.in_(list(logical_ids)),
        ).all()
        found = {row.logical_id: row.physical_id for row in rows}
        missing = set(logical_ids) - set(found)
        if missing:
            raise InvalidWeightsError(f"Resources not provisioned: {', '.join(sorted(missing))}")
        return found

    async def initialize(self, stack_name: str, role: str, listener: str, weights: Dict[str, int]) -> None:
        """Record the listener and apply its initial forward config"""
        validate_weights(weights.keys(), weights)

        with self.db.get_session() as session:
            physical = self._physical_ids(session, stack_name, [listener, *weights])

        await self.backend.set_forward_weights(
            physical[listener], {physical[tg]: w for tg, w in weights.items()}
        )

        with self.db.get_session() as session:
            state = session.query(ListenerState).filter_by(stack_name=stack_name, role=role).first()
            if state is None:
                state = ListenerState(stack_name=stack_name, role=role, listener=listener)
                session.add(state)
            state.listener = listener
            state.weights_json = json.dumps(weights, sort_keys=True)
            state.revision = (state.revision or 0) + 1
            session.commit()

        logger.info(f"Initialized {role} listener {listener} of {stack_name} with {weights}")

    async def set_weights(self, stack_name: str, role: str, weights: Dict[str, int],
                          rollout_id: Optional[str] = None) -> bool:
        """
        Apply a weight map to a listener.

        Returns:
            True if the forward config changed, False if it was already applied

        Raises:
            InvalidWeightsError: If the map is not valid for the listener
        """
        with self.db.get_session() as session:
            state = session.query(ListenerState).filter_by(stack_name=stack_name, role=role).first()
            if state is None:
                raise InvalidWeightsError(f"Stack {stack_name} has no {role} listener")

            current = state.weights
            validate_weights(current.keys(), weights)

            if current == weights:
                logger.debug(f"{role} listener of {stack_name} already at {weights}")
                return False

            listener = state.listener
            physical = self._physical_ids(session, stack_name, [listener, *weights])

        # No session held during the backend call
        await self.backend.set_forward_weights(
            physical[listener], {physical[tg]: w for tg, w in weights.items()}
        )

        with self.db.get_session() as session:
            state = session.query(ListenerState).filter_by(stack_name=stack_name, role=role).first()
            state.weights_json = json.dumps(weights, sort_keys=True)
            state.revision += 1
            session.commit()

        logger.info(f"Shifted {role} traffic of {stack_name}: {current} -> {weights}")

        if self.event_bus:
            await self.event_bus.emit(Event(
                event_type=EventType.TRAFFIC_SHIFTED,
                stack_name=stack_name,
                rollout_id=rollout_id,
                data={'listener': role, 'previous': current, 'weights': weights},
            ))
        return True
