"""
Event Bus - Centralized event coordination system

This module provides a central event bus that:
1. Receives events from the rollout executor, router and alarm monitor
2. Logs events to the rollout_events audit table
3. Manages event subscribers for extensibility (notifications, webhooks)

Events flow: Service → EventBus → [Database, Subscribers]
"""

import asyncio
import logging
from typing import Dict, Any, Optional, List, Callable, Awaitable
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Standard event types in the system"""
    # Stack lifecycle
    STACK_CREATE_STARTED = "stack_create_started"
    STACK_CREATED = "stack_created"
    STACK_CREATE_FAILED = "stack_create_failed"
    STACK_UPDATED = "stack_updated"

    # Rollout lifecycle
    ROLLOUT_STARTED = "rollout_started"
    ROLLOUT_PHASE_CHANGED = "rollout_phase_changed"
    ROLLOUT_COMPLETED = "rollout_completed"
    ROLLOUT_ABORTED = "rollout_aborted"

    # Traffic and health
    TRAFFIC_SHIFTED = "traffic_shifted"
    VALIDATION_HOOK_PASSED = "validation_hook_passed"
    VALIDATION_HOOK_FAILED = "validation_hook_failed"
    ALARM_STATE_CHANGED = "alarm_state_changed"

    # Environment lifecycle
    ENVIRONMENT_PROVISIONED = "environment_provisioned"
    ENVIRONMENT_DELETED = "environment_deleted"
    ENVIRONMENT_RETAINED = "environment_retained"


class Event:
    """
    Standard event object passed through the event bus
    """
    def __init__(
        self,
        event_type: EventType,
        stack_name: str,
        rollout_id: Optional[str] = None,
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ):
        self.event_type = event_type
        self.stack_name = stack_name
        self.rollout_id = rollout_id
        self.message = message
        self.data = data or {}
        self.timestamp = timestamp or datetime.now(timezone.utc)

    @property
    def scope_type(self) -> str:
        return 'rollout' if self.rollout_id else 'stack'

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/processing"""
        return {
            'event_type': self.event_type.value if isinstance(self.event_type, EventType) else str(self.event_type),
            'stack_name': self.stack_name,
            'rollout_id': self.rollout_id,
            'message': self.message,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
        }


class EventBus:
    """
    Centralized event bus for rollout events

    Usage:
        bus = EventBus(db)
        await bus.emit(Event(
            event_type=EventType.TRAFFIC_SHIFTED,
            stack_name='trivia-backend',
            rollout_id=rollout_id,
            data={'listener': 'production', 'weights': {...}}
        ))
    """

    def __init__(self, db):
        """
        Initialize event bus

        Args:
            db: DatabaseManager used to persist the audit trail (None disables persistence)
        """
        self.db = db
        self.subscribers: Dict[str, List[Callable[[Event], Awaitable[None]]]] = {}
        logger.info("EventBus initialized")

    def subscribe(self, event_type: EventType, handler: Callable[[Event], Awaitable[None]]):
        """
        Subscribe to specific event type

        Args:
            event_type: Type of event to subscribe to
            handler: Async function that handles the event
        """
        event_type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
        if event_type_str not in self.subscribers:
            self.subscribers[event_type_str] = []
        self.subscribers[event_type_str].append(handler)
        logger.info(f"Subscribed handler to event type: {event_type_str}")

    def unsubscribe(self, event_type: EventType, handler: Callable[[Event], Awaitable[None]]):
        """
        Unsubscribe from specific event type
        """
        event_type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
        if event_type_str in self.subscribers:
            try:
                self.subscribers[event_type_str].remove(handler)
                if not self.subscribers[event_type_str]:
                    del self.subscribers[event_type_str]
                logger.info(f"Unsubscribed handler from event type: {event_type_str}")
            except ValueError:
                logger.warning(f"Handler not found in subscribers for event type: {event_type_str}")

    async def emit(self, event: Event):
        """
        Emit an event - logs to database and notifies subscribers

        Event delivery never fails the caller: a rollout must not stop
        because an audit row or a subscriber failed.
        """
        try:
            logger.debug(f"EventBus: Emitting {event.event_type} for {event.scope_type}:{event.stack_name}")

            await self._log_event_to_database(event)
            await self._notify_subscribers(event)

        except Exception as e:
            logger.error(f"EventBus: Error processing event {event.event_type}: {e}", exc_info=True)

    async def _log_event_to_database(self, event: Event):
        """Persist event to the rollout_events table"""
        if self.db is None:
            return
        payload = event.to_dict()
        payload['message'] = event.message or self._default_message(event)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.db.add_event, payload)

    async def _notify_subscribers(self, event: Event):
        """Notify all subscribers for this event type"""
        event_type_str = event.event_type.value if isinstance(event.event_type, EventType) else str(event.event_type)
        handlers = list(self.subscribers.get(event_type_str, []))

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"EventBus: Subscriber failed for {event_type_str}: {e}", exc_info=True)

    def _default_message(self, event: Event) -> str:
        """Human readable message for events emitted without one"""
        data = event.data
        if event.event_type == EventType.ROLLOUT_PHASE_CHANGED:
            return f"Rollout phase {data.get('from_state', '?')} → {data.get('to_state', '?')}"
        if event.event_type == EventType.TRAFFIC_SHIFTED:
            return f"{data.get('listener', 'listener')} weights set to {data.get('weights')}"
        if event.event_type == EventType.ALARM_STATE_CHANGED:
            return f"Alarm {data.get('alarm')} {data.get('old_state')} → {data.get('new_state')}"
        if event.event_type == EventType.ROLLOUT_ABORTED:
            return f"Rollout aborted ({data.get('failure_kind', 'unknown')}): {data.get('error', '')}"
        return f"{event.event_type.value}: {event.stack_name}"


# Global singleton instance
_event_bus: Optional[EventBus] = None


def get_event_bus(db=None) -> EventBus:
    """Get or create global event bus instance"""
    global _event_bus
    if _event_bus is None:
        if db is None:
            raise RuntimeError("EventBus not initialized - must provide db on first call")
        _event_bus = EventBus(db)
    return _event_bus


def reset_event_bus():
    """Drop the global instance (used on shutdown and by tests)"""
    global _event_bus
    _event_bus = None
