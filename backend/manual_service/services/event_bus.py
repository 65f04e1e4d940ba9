import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


@dataclass
class _Subscription:
    entity_id: str
    origin: str | None
    queue: asyncio.Queue


class EventBus:
    """In-process change notifications with SSE broadcast, keyed by entity id.

    A subscriber never receives events published with its own origin tag, so
    the tab that saved a diagram is not told its own write happened.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, _Subscription] = {}

    def publish(
        self,
        event_type: str,
        entity_id: str,
        payload: dict | None = None,
        origin: str | None = None,
    ) -> dict:
        """Queue an event for every matching subscriber without waiting on them."""
        event = {
            "id": str(uuid.uuid4()),
            "type": event_type,
            "entity_id": entity_id,
            "origin": origin,
            "payload": payload or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        dead_subscribers = []
        for sub_id, sub in self._subscribers.items():
            if sub.entity_id != entity_id:
                continue
            if origin is not None and sub.origin == origin:
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                dead_subscribers.append(sub_id)
                logger.warning("Dropping events for slow subscriber %s", sub_id)

        for sub_id in dead_subscribers:
            self._subscribers.pop(sub_id, None)

        return event

    def subscribe(self, entity_id: str, origin: str | None = None) -> tuple[str, asyncio.Queue]:
        sub_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=256)
        self._subscribers[sub_id] = _Subscription(entity_id=entity_id, origin=origin, queue=queue)
        return sub_id, queue

    def unsubscribe(self, sub_id: str) -> None:
        self._subscribers.pop(sub_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def stream(self, sub_id: str, queue: asyncio.Queue) -> AsyncGenerator[str, None]:
        try:
            while True:
                event = await queue.get()
                yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            self.unsubscribe(sub_id)


# Global singleton
event_bus = EventBus()
