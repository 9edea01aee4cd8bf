"""
events.py: in-process change notifications.

The ingestion service publishes a `report_created` and a `hotspot_updated`
event after every successful submission. Subscribers (the WebSocket stream
in routes/hotspots.py, or anything else in-process) each get a bounded
asyncio.Queue. A subscriber that falls behind loses its oldest frames
rather than blocking ingestion.

Delivery beyond this process (pub/sub, push notifications) is an external
concern; collaborators should treat frames as at-least-once and key on the
ids in the payload.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from noisemap.models.hotspot import ChangeEvent

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event_type: str, payload: dict[str, Any]) -> ChangeEvent:
        event = ChangeEvent(
            type=event_type,
            payload=payload,
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
        )
        self.publish(event)
        return event

    def publish(self, event: ChangeEvent) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
                logger.warning("Change-stream subscriber lagging, dropped oldest frame")
            queue.put_nowait(event)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
