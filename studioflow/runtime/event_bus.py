"""
Event Bus - Pub/sub of node lifecycle events.

Lets the editor (or any observer):
- Follow a node through working / success / error
- Track pipeline stage changes and generation progress
- Learn about nodes spawned by graph growth
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

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_CANCELLED = "node_cancelled"
    NODE_REJECTED = "node_rejected"  # Already running

    # Pipeline tracking
    STAGE_CHANGED = "stage_changed"
    PROGRESS = "progress"

    # Graph growth
    NODES_SPAWNED = "nodes_spawned"

    # Canvas
    SNAPSHOT_PUBLISHED = "snapshot_published"


@dataclass
class NodeEvent:
    """An event about one node."""

    type: EventType
    node_id: str | None = None
    node_kind: str | None = None
    action: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "node_id": self.node_id,
            "node_kind": self.node_kind,
            "action": self.action,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[NodeEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for node lifecycle events.

    Handlers run concurrently; a failing handler is logged and never reaches
    the publisher.

    Example:
        bus = EventBus()

        async def on_failed(event: NodeEvent):
            print(f"{event.node_id} failed: {event.data['error']}")

        bus.subscribe([EventType.NODE_FAILED], on_failed)
        await bus.emit_node_failed("n-1", "image_generator", "quota exceeded")
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[NodeEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
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

    async def publish(self, event: NodeEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if matching:
            await self._execute_handlers(event, matching)

    def _matches(self, subscription: Subscription, event: NodeEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(self, event: NodeEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_node_started(
        self, node_id: str, node_kind: str, action: str | None = None
    ) -> None:
        await self.publish(
            NodeEvent(
                type=EventType.NODE_STARTED, node_id=node_id, node_kind=node_kind, action=action
            )
        )

    async def emit_node_completed(
        self, node_id: str, node_kind: str, action: str | None = None, latency_ms: int = 0
    ) -> None:
        await self.publish(
            NodeEvent(
                type=EventType.NODE_COMPLETED,
                node_id=node_id,
                node_kind=node_kind,
                action=action,
                data={"latency_ms": latency_ms},
            )
        )

    async def emit_node_failed(
        self, node_id: str, node_kind: str, error: str, action: str | None = None
    ) -> None:
        await self.publish(
            NodeEvent(
                type=EventType.NODE_FAILED,
                node_id=node_id,
                node_kind=node_kind,
                action=action,
                data={"error": error},
            )
        )

    async def emit_node_cancelled(
        self, node_id: str, node_kind: str, action: str | None = None
    ) -> None:
        await self.publish(
            NodeEvent(
                type=EventType.NODE_CANCELLED, node_id=node_id, node_kind=node_kind, action=action
            )
        )

    async def emit_node_rejected(
        self, node_id: str, node_kind: str, action: str | None = None
    ) -> None:
        await self.publish(
            NodeEvent(
                type=EventType.NODE_REJECTED, node_id=node_id, node_kind=node_kind, action=action
            )
        )

    async def emit_stage_changed(self, node_id: str, old_stage: str | None, new_stage: str) -> None:
        await self.publish(
            NodeEvent(
                type=EventType.STAGE_CHANGED,
                node_id=node_id,
                data={"old_stage": old_stage, "new_stage": new_stage},
            )
        )

    async def emit_progress(self, node_id: str, progress: int) -> None:
        await self.publish(
            NodeEvent(type=EventType.PROGRESS, node_id=node_id, data={"progress": progress})
        )

    async def emit_nodes_spawned(
        self, parent_id: str, child_ids: list[str], group_id: str | None = None
    ) -> None:
        await self.publish(
            NodeEvent(
                type=EventType.NODES_SPAWNED,
                node_id=parent_id,
                data={"child_ids": child_ids, "group_id": group_id},
            )
        )

    async def emit_snapshot_published(self, version: int) -> None:
        await self.publish(NodeEvent(type=EventType.SNAPSHOT_PUBLISHED, data={"version": version}))

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[NodeEvent]:
        """
        Get event history for debugging.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if node_id:
            events = [e for e in events if e.node_id == node_id]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    async def wait_for(
        self,
        event_type: EventType,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> NodeEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: NodeEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: NodeEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(event_types=[event_type], handler=handler, filter_node=node_id)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
