"""Event system for Server-Sent Events (SSE)."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class Event:
    """An SSE event."""

    event_type: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_sse(self) -> str:
        """Convert to SSE format."""
        data_json = json.dumps({**self.data, "timestamp": self.timestamp.isoformat()})
        return f"event: {self.event_type}\ndata: {data_json}\n\n"


TERMINAL_EVENTS = ("deployment_completed", "deployment_failed")


class EventBus:
    """Simple event bus for deployment events, keyed by server id."""

    def __init__(self):
        self._subscribers: dict[str, list[asyncio.Queue[Event]]] = {}

    def subscribe(self, server_id: str) -> asyncio.Queue[Event]:
        """Subscribe to events for a deployment."""
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._subscribers.setdefault(server_id, []).append(queue)
        return queue

    def unsubscribe(self, server_id: str, queue: asyncio.Queue[Event]) -> None:
        """Unsubscribe one listener from deployment events."""
        queues = self._subscribers.get(server_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(server_id, None)

    async def publish(self, server_id: str, event: Event) -> None:
        """Publish an event for a deployment."""
        for queue in self._subscribers.get(server_id, []):
            await queue.put(event)

    async def publish_step(
        self,
        server_id: str,
        step_id: str,
        status: str,
        progress: int,
        message: str | None = None,
        error: str | None = None,
    ) -> None:
        """Publish a step transition."""
        await self.publish(
            server_id,
            Event(
                event_type="step_updated",
                data={
                    "step": step_id,
                    "status": status,
                    "progress": progress,
                    "message": message,
                    "error": error,
                },
            ),
        )

    async def publish_completed(self, server_id: str) -> None:
        """Publish a deployment completed event."""
        await self.publish(
            server_id,
            Event(event_type="deployment_completed", data={"server_id": server_id}),
        )

    async def publish_failed(
        self, server_id: str, error: str, step: str | None = None
    ) -> None:
        """Publish a deployment failed event."""
        await self.publish(
            server_id,
            Event(
                event_type="deployment_failed",
                data={"server_id": server_id, "error": error, "step": step},
            ),
        )


# Singleton instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the event bus singleton."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
