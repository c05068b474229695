"""
Event Bus implementation for device-aware event routing.

The Event Bus is a simple, synchronous dispatcher for domain events. Sensor
value changes come in from the host platform; occupancy and data-quality
changes go out to whoever listens.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Optional, Dict, Any, Callable, List

import logging

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time (for default factory)."""
    return datetime.now(UTC)


@dataclass
class Event:
    """
    A domain event.

    Attributes:
        type: Event type (e.g., "sensor.state_changed", "occupancy.changed")
        source: Event source (e.g., "homey", "occupancy_fusion")
        device_id: Optional virtual device ID this event relates to
        entity_id: Optional sensor/entity ID this event relates to
        payload: Event-specific data
        timestamp: When the event occurred
    """

    type: str
    source: str
    device_id: Optional[str] = None
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utc_now)


class EventFilter:
    """
    Filter for event subscriptions.

    Allows subscribers to filter events by type, device or entity.
    """

    def __init__(
        self,
        event_type: Optional[str] = None,
        device_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ):
        """
        Initialize an event filter.

        Args:
            event_type: Filter by event type (None = all types)
            device_id: Filter by virtual device ID (None = all devices)
            entity_id: Filter by sensor/entity ID (None = all entities)
        """
        self.event_type = event_type
        self.device_id = device_id
        self.entity_id = entity_id

    def matches(self, event: Event) -> bool:
        """
        Check if an event matches this filter.

        Args:
            event: The event to check

        Returns:
            True if the event matches the filter
        """
        if self.event_type and event.type != self.event_type:
            return False

        if self.device_id and event.device_id != self.device_id:
            return False

        if self.entity_id and event.entity_id != self.entity_id:
            return False

        return True

    def __repr__(self) -> str:
        return (
            f"EventFilter(event_type={self.event_type!r}, device_id={self.device_id!r}, "
            f"entity_id={self.entity_id!r})"
        )


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Simple, synchronous event bus.

    Handlers are wrapped in try/except to prevent one bad module from crashing the kernel.
    """

    def __init__(self) -> None:
        """Initialize the event bus."""
        self._handlers: List[tuple[EventFilter, EventHandler]] = []

    def subscribe(
        self,
        handler: EventHandler,
        event_filter: Optional[EventFilter] = None,
    ) -> None:
        """
        Subscribe to events.

        Args:
            handler: Callable that receives Event objects
            event_filter: Optional filter for events (None = receive all events)
        """
        if event_filter is None:
            event_filter = EventFilter()

        self._handlers.append((event_filter, handler))
        logger.debug(f"Subscribed handler {_name_of(handler)} with filter {event_filter}")

    def publish(self, event: Event) -> None:
        """
        Publish an event to all matching subscribers.

        Handlers are called synchronously, in subscription order, and wrapped
        in try/except.

        Args:
            event: The event to publish
        """
        logger.debug(f"Publishing event: {event.type} from {event.source}")

        for event_filter, handler in list(self._handlers):
            if event_filter.matches(event):
                try:
                    handler(event)
                except Exception as e:
                    logger.error(
                        f"Error in event handler {_name_of(handler)} "
                        f"for event {event.type}: {e}",
                        exc_info=True,
                    )

    def unsubscribe(self, handler: EventHandler) -> None:
        """
        Unsubscribe a handler from all events.

        Args:
            handler: The handler to unsubscribe
        """
        self._handlers = [(f, h) for f, h in self._handlers if h != handler]
        logger.debug(f"Unsubscribed handler {_name_of(handler)}")


def _name_of(handler: EventHandler) -> str:
    return getattr(handler, "__name__", repr(handler))
