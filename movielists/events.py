"""In-process notifications that an owner's lists changed remotely."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

LISTS_STALE = "lists_stale"


@dataclass(frozen=True)
class ListEvent:
    event_type: str
    owner_id: int
    list_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)


class ListEventBus:
    def __init__(self, max_queue_size: int = 100) -> None:
        self._subscribers: dict[int, list[asyncio.Queue]] = {}
        self._max_queue_size = max_queue_size

    def subscribe(self, owner_id: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(owner_id, []).append(queue)
        return queue

    def unsubscribe(self, owner_id: int, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(owner_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(owner_id, None)

    def subscriber_count(self, owner_id: int) -> int:
        return len(self._subscribers.get(owner_id, []))

    def publish(self, event: ListEvent) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(event.owner_id, [])):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                # A subscriber that stopped reading only misses refresh hints.
                logger.warning("Dropping %s event for owner %s: subscriber queue full", event.event_type, event.owner_id)
        return delivered

    def publish_stale(self, owner_id: int, list_id: int | None = None, **data: Any) -> int:
        return self.publish(ListEvent(LISTS_STALE, owner_id, list_id, dict(data)))


# Global singleton
event_bus = ListEventBus()
