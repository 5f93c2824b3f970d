"""
Event Bus - Progress channel for DockPilot operations

This module provides a central event bus that:
1. Receives progress and lifecycle events from the orchestrator
2. Logs lifecycle events
3. Fans events out to subscribers (UI streams, progress watchers)

Delivery is best effort: a subscriber that raises is logged and skipped,
and nothing is persisted here. The Operation Store stays authoritative.

Events flow: Orchestrator → EventBus → Subscribers
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Standard event types in the system"""
    # Operation lifecycle
    OPERATION_STARTED = "operation_started"
    OPERATION_PROGRESS = "operation_progress"
    OPERATION_COMPLETED = "operation_completed"
    OPERATION_FAILED = "operation_failed"

    # Container events
    UPDATE_AVAILABLE = "update_available"
    CONTAINER_LABELS_CHANGED = "container_labels_changed"
    DEPENDENT_BLOCKED = "dependent_blocked"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProgressEvent:
    """
    One progress report for one container inside an operation.

    Not persisted on its own; the member row in the Operation Store carries
    the latest stage and percent.
    """
    operation_id: str
    container_name: str
    stage: str
    percent: int
    message: str = ""
    stack_name: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def dedup_key(self) -> Tuple[str, str, str, int]:
        return (self.operation_id, self.container_name, self.stage, self.percent)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation_id': self.operation_id,
            'container_name': self.container_name,
            'stage': self.stage,
            'percent': self.percent,
            'message': self.message,
            'stack_name': self.stack_name,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProgressEvent':
        timestamp = data.get('timestamp')
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            operation_id=data['operation_id'],
            container_name=data['container_name'],
            stage=data['stage'],
            percent=int(data.get('percent', 0)),
            message=data.get('message', ''),
            stack_name=data.get('stack_name'),
            timestamp=timestamp or _utcnow(),
        )


class Event:
    """
    Standard event object passed through the event bus
    """
    def __init__(
        self,
        event_type: EventType,
        scope_name: str,  # container name, or batch group id for group-level events
        operation_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ):
        self.event_type = event_type
        self.scope_name = scope_name
        self.operation_id = operation_id
        self.data = data or {}
        self.timestamp = timestamp or _utcnow()

    @property
    def progress(self) -> Optional[ProgressEvent]:
        """The ProgressEvent carried by an OPERATION_PROGRESS event"""
        if self.event_type != EventType.OPERATION_PROGRESS:
            return None
        return ProgressEvent.from_dict(self.data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/processing"""
        return {
            'event_type': self.event_type.value if isinstance(self.event_type, EventType) else str(self.event_type),
            'scope_name': self.scope_name,
            'operation_id': self.operation_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat()
        }


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Centralized event bus for operation progress

    Usage:
        bus = get_event_bus()
        bus.subscribe(EventType.OPERATION_PROGRESS, handler)
        await bus.emit_progress(ProgressEvent(
            operation_id=op_id,
            container_name='web',
            stage='pulling_image',
            percent=30,
        ))
    """

    def __init__(self):
        self.subscribers: Dict[str, List[EventHandler]] = {}
        logger.info("EventBus initialized")

    @staticmethod
    def _key(event_type) -> str:
        return event_type.value if isinstance(event_type, EventType) else str(event_type)

    def subscribe(self, event_type: EventType, handler: EventHandler):
        """
        Subscribe to specific event type

        Args:
            event_type: Type of event to subscribe to
            handler: Async function that handles the event
        """
        event_type_str = self._key(event_type)
        self.subscribers.setdefault(event_type_str, []).append(handler)
        logger.debug(f"Subscribed handler to event type: {event_type_str}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler):
        """
        Unsubscribe from specific event type

        Args:
            event_type: Type of event to unsubscribe from
            handler: Handler function to remove
        """
        event_type_str = self._key(event_type)
        if event_type_str in self.subscribers:
            try:
                self.subscribers[event_type_str].remove(handler)
                if not self.subscribers[event_type_str]:
                    del self.subscribers[event_type_str]
                logger.debug(f"Unsubscribed handler from event type: {event_type_str}")
            except ValueError:
                logger.warning(f"Handler not found in subscribers for event type: {event_type_str}")

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self.subscribers.get(self._key(event_type), []))

    async def emit(self, event: Event):
        """
        Emit an event - logs lifecycle events and notifies subscribers

        Never raises; delivery problems are logged.
        """
        try:
            if event.event_type == EventType.OPERATION_PROGRESS:
                logger.debug(f"EventBus: progress {event.scope_name} {event.data.get('stage')} {event.data.get('percent')}%")
            else:
                title, message = self._generate_event_message(event)
                logger.info(f"{title}: {message}")

            await self._notify_subscribers(event)
        except Exception as e:
            logger.error(f"EventBus: Error processing event {event.event_type}: {e}", exc_info=True)

    async def emit_progress(self, progress: ProgressEvent):
        await self.emit(Event(
            event_type=EventType.OPERATION_PROGRESS,
            scope_name=progress.container_name,
            operation_id=progress.operation_id,
            data=progress.to_dict(),
            timestamp=progress.timestamp,
        ))

    async def _notify_subscribers(self, event: Event):
        """Notify all subscribers of this event type"""
        # Copy so a handler may unsubscribe itself while being called
        handlers = list(self.subscribers.get(self._key(event.event_type), []))
        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"EventBus: Error in subscriber handler: {e}", exc_info=True)

    def _generate_event_message(self, event: Event) -> Tuple[str, str]:
        """Generate human-readable title and message for event"""
        data = event.data
        operation_type = data.get('operation_type', 'operation')
        if event.event_type == EventType.OPERATION_STARTED:
            title = f"Operation Started: {event.scope_name}"
            message = f"{operation_type} {event.operation_id} started"
        elif event.event_type == EventType.OPERATION_COMPLETED:
            title = f"Operation Completed: {event.scope_name}"
            message = f"{operation_type} {event.operation_id} completed"
            if data.get('dependents_blocked'):
                message += f" (blocked dependents: {', '.join(data['dependents_blocked'])})"
        elif event.event_type == EventType.OPERATION_FAILED:
            title = f"Operation Failed: {event.scope_name}"
            error = data.get('error_message', 'Unknown error')
            message = f"{operation_type} {event.operation_id} failed: {error}"
        elif event.event_type == EventType.UPDATE_AVAILABLE:
            title = f"Update Available: {event.scope_name}"
            current = data.get('current_tag', '?')
            latest = data.get('latest_tag', '?')
            message = f"Update available: {current} → {latest}"
        elif event.event_type == EventType.CONTAINER_LABELS_CHANGED:
            title = f"Labels Changed: {event.scope_name}"
            message = f"set={data.get('set', {})} removed={data.get('removed', [])}"
        elif event.event_type == EventType.DEPENDENT_BLOCKED:
            title = f"Dependent Blocked: {event.scope_name}"
            message = data.get('reason', 'restart blocked')
        else:
            title = f"Event: {event.scope_name}"
            message = f"{event.event_type}"
        return title, message


# Global event bus instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create global event bus instance"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
