"""
Lightweight event bus for decoupled graph change notifications.

Follows publisher-subscriber pattern for real-time updates without coupling.

Design Principles:
- Publisher-subscriber pattern (decoupled)
- Supports both sync and async handlers
- Non-blocking (async handlers scheduled via create_task)
- One bus per GraphStore, passed explicitly; there is no global instance
- Type-safe events via msgspec

Architecture:
    GraphStore / Dispatcher → EventBus → [WebSocket, MutationLogger, UI listeners]

Usage:
    bus = EventBus()
    bus.publish(GraphEvent(
        type=EventType.NODE_UPDATED,
        payload={"node_id": "video-1", "node": node},
        timestamp=time.time(),
        source="graph_store",
    ))

    # Every event, regardless of type
    unsubscribe = bus.subscribe_all(lambda event: print(event.type))
"""
from typing import Callable, List, Dict, Any, Optional
from enum import Enum
import msgspec
import asyncio
import time
from collections import defaultdict
import logging


logger = logging.getLogger("canvasflow.event_bus")


class EventType(str, Enum):
    """Types of events published by the store and the orchestration core."""
    NODE_CREATED = "node_created"
    NODE_UPDATED = "node_updated"
    NODE_DELETED = "node_deleted"
    EDGE_CREATED = "edge_created"
    EDGE_UPDATED = "edge_updated"
    EDGE_DELETED = "edge_deleted"
    GRAPH_LOADED = "graph_loaded"
    # Alert-level messages (precondition failures, failed batches)
    ALERT = "alert"


class GraphEvent(msgspec.Struct, kw_only=True):
    """
    Event emitted when the canvas changes.

    Attributes:
        type: Type of event (NODE_CREATED, EDGE_UPDATED, etc.)
        payload: Event-specific data (node_id, node, previous, edge, ...)
        timestamp: Unix timestamp when event occurred
        source: Source of event ("graph_store", "dispatcher", "api")
    """
    type: EventType
    payload: Dict[str, Any]
    timestamp: float
    source: str


class EventBus:
    """
    Event bus for canvas change notifications.

    Thread Safety:
        NOT thread-safe. The orchestration core runs on one event loop, and
        asyncio.create_task is used for async handlers.

    Performance:
        - O(1) event publishing
        - O(n) notification per event type (where n = subscriber count)
        - Non-blocking for async handlers (fire-and-forget)
    """

    def __init__(self):
        """Initialize empty subscriber lists."""
        self._subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._async_subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._wildcard: List[Callable] = []
        self._async_wildcard: List[Callable] = []

    def subscribe(self, event_type: EventType, handler: Callable[[GraphEvent], None]):
        """Subscribe to one event type with a synchronous handler."""
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)
            logger.debug(f"Subscribed sync handler to {event_type.value}")

    def subscribe_async(self, event_type: EventType, handler: Callable[[GraphEvent], Any]):
        """
        Subscribe to one event type with an async handler.

        Example:
            async def on_node_created(event: GraphEvent):
                await broadcast_to_websocket(event.payload)

            bus.subscribe_async(EventType.NODE_CREATED, on_node_created)
        """
        if handler not in self._async_subscribers[event_type]:
            self._async_subscribers[event_type].append(handler)
            logger.debug(f"Subscribed async handler to {event_type.value}")

    def subscribe_all(self, handler: Callable[[GraphEvent], Any], is_async: bool = False) -> Callable[[], None]:
        """
        Subscribe to every event type.

        Returns:
            A callable that removes the subscription
        """
        target = self._async_wildcard if is_async else self._wildcard
        if handler not in target:
            target.append(handler)

        def unsubscribe() -> None:
            if handler in target:
                target.remove(handler)

        return unsubscribe

    def publish(self, event: GraphEvent):
        """
        Publish an event to all subscribers.

        Note:
            - Sync handlers run immediately (blocking)
            - Async handlers are scheduled and run in the background
            - Exceptions in handlers are logged but don't propagate
        """
        logger.debug(
            f"Publishing {event.type.value} from {event.source} "
            f"(payload keys: {list(event.payload.keys())})"
        )

        for handler in [*self._subscribers[event.type], *self._wildcard]:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in sync handler for {event.type.value}: {e}",
                    exc_info=True
                )

        async_handlers = [*self._async_subscribers[event.type], *self._async_wildcard]
        if not async_handlers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"Cannot schedule async handlers for {event.type.value}: "
                "no event loop running"
            )
            return
        for handler in async_handlers:
            try:
                loop.create_task(handler(event))
            except Exception as e:
                logger.error(
                    f"Error scheduling async handler for {event.type.value}: {e}",
                    exc_info=True
                )

    def emit(self, event_type: EventType, payload: Dict[str, Any], source: str) -> GraphEvent:
        """Build and publish an event stamped with the current time."""
        event = GraphEvent(type=event_type, payload=payload, timestamp=time.time(), source=source)
        self.publish(event)
        return event

    def unsubscribe(self, event_type: EventType, handler: Callable):
        if handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)
            logger.debug(f"Unsubscribed sync handler from {event_type.value}")

        if handler in self._async_subscribers[event_type]:
            self._async_subscribers[event_type].remove(handler)
            logger.debug(f"Unsubscribed async handler from {event_type.value}")

    def clear_subscribers(self, event_type: Optional[EventType] = None):
        """
        Clear all subscribers for an event type (or all types).

        Warning:
            This is primarily for testing.
        """
        if event_type is None:
            self._subscribers.clear()
            self._async_subscribers.clear()
            self._wildcard.clear()
            self._async_wildcard.clear()
            logger.info("Cleared all event subscribers")
        else:
            self._subscribers[event_type].clear()
            self._async_subscribers[event_type].clear()
            logger.info(f"Cleared subscribers for {event_type.value}")

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        """Count subscribers for an event type (None = all), wildcards included."""
        wildcards = len(self._wildcard) + len(self._async_wildcard)
        if event_type is None:
            total = sum(len(handlers) for handlers in self._subscribers.values())
            total += sum(len(handlers) for handlers in self._async_subscribers.values())
            return total + wildcards
        return (
            len(self._subscribers[event_type]) +
            len(self._async_subscribers[event_type]) +
            wildcards
        )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def publish_alert(
    bus: EventBus,
    message: str,
    node_id: Optional[str] = None,
    error_type: str = "Exception",
    source: str = "dispatcher",
) -> GraphEvent:
    """
    Publish an ALERT event.

    Args:
        bus: Bus to publish on
        message: Human-readable message
        node_id: Node the alert concerns, if any
        error_type: Exception type name
        source: Source of the event
    """
    return bus.emit(
        EventType.ALERT,
        {
            "message": message,
            "node_id": node_id,
            "error_type": error_type,
        },
        source,
    )
