"""In-process event bus for MCP lifecycle events.

One EventBus is created per application context and handed to whichever
component publishes or consumes events. Subscribers receive events through
their own bounded asyncio queue; a slow subscriber loses its oldest events
rather than blocking publishers.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

import structlog

logger = structlog.get_logger()


class MCPEventType(str, Enum):
    """MCP lifecycle event kinds."""

    STARTING = "starting"
    STARTED = "started"
    START_FAILED = "start_failed"
    STOPPED = "stopped"
    UNHEALTHY = "unhealthy"
    RESTARTING = "restarting"
    TOOL_CALLED = "tool_called"
    TOOL_COMPLETED = "tool_completed"
    DELETED = "deleted"


@dataclass(frozen=True)
class MCPEvent:
    """A single MCP lifecycle event."""

    type: MCPEventType
    mcp_id: UUID
    name: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class EventBus:
    """Fan-out publisher of MCP events.

    Example usage:
        bus = EventBus()
        queue = bus.subscribe()
        bus.publish(MCPEvent(MCPEventType.STARTED, mcp_id, "fs"))
        event = await queue.get()
    """

    def __init__(self, capacity: int = 256) -> None:
        self._capacity = capacity
        self._subscribers: list[asyncio.Queue[MCPEvent]] = []

    def subscribe(self) -> "asyncio.Queue[MCPEvent]":
        """Register a new subscriber queue."""
        queue: asyncio.Queue[MCPEvent] = asyncio.Queue(maxsize=self._capacity)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[MCPEvent]") -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: MCPEvent) -> int:
        """Deliver an event to every subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        delivered = 0
        for queue in list(self._subscribers):
            if queue.full():
                # Drop the oldest event for this subscriber
                queue.get_nowait()
                logger.debug("event_dropped", event_type=event.type.value)
            queue.put_nowait(event)
            delivered += 1
        return delivered
