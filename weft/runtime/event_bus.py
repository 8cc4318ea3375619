"""
Event Bus - Pub/sub for run lifecycle events.

The executor publishes an event at every run, node, merge and edge
transition. Subscribers observe; they can never influence a run, and a
failing handler is logged and otherwise ignored.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"

    # State and routing
    STATE_MERGED = "state_merged"
    EDGE_TRAVERSED = "edge_traversed"
    FAN_OUT = "fan_out"
    FAN_IN = "fan_in"


@dataclass
class GraphEvent:
    """An event emitted during a run."""

    type: EventType
    run_id: str
    node_id: str | None = None
    step: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "step": self.step,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[GraphEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Async pub/sub bus with type-based subscriptions and bounded history.

    Example:
        bus = EventBus()

        async def on_node_done(event: GraphEvent):
            print(f"{event.node_id} finished at step {event.step}")

        bus.subscribe([EventType.NODE_COMPLETED], on_node_done)
        runner = GraphRunner(graph, event_bus=bus)
    """

    def __init__(self, max_history: int = 1000):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[GraphEvent] = []
        self._max_history = max_history
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: GraphEvent) -> None:
        """Record an event and deliver it to every matching subscriber."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await asyncio.gather(*[self._run_handler(h, event) for h in handlers])

    async def emit(
        self,
        event_type: EventType,
        run_id: str,
        node_id: str | None = None,
        step: int | None = None,
        **data: Any,
    ) -> None:
        """Build and publish an event in one call."""
        await self.publish(
            GraphEvent(type=event_type, run_id=run_id, node_id=node_id, step=step, data=data)
        )

    def _matches(self, subscription: Subscription, event: GraphEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _run_handler(self, handler: EventHandler, event: GraphEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(f"Handler error for {event.type}: {e}")

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int | None = None,
    ) -> list[GraphEvent]:
        """Past events, oldest first, optionally filtered."""
        events = [
            e
            for e in self._event_history
            if (event_type is None or e.type == event_type)
            and (run_id is None or e.run_id == run_id)
        ]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        self._event_history.clear()
