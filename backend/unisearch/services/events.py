"""Event broadcast for indexer notifications.

Indexer progress is pushed to subscribers (the SSE route, tests) as typed
events:
- progress: a crawl page was stored
- completed: the full crawl finished
- paused: the crawl stopped at a checkpoint
- error: a crawl or poll iteration failed
- incremental_sync: a change-feed poll was applied
- state_changed: the indexer status moved
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator

from pydantic import BaseModel, Field

from unisearch.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 100


class IndexerEventType(str, Enum):
    """Types of events emitted by the indexer."""

    PROGRESS = "progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    ERROR = "error"
    INCREMENTAL_SYNC = "incremental_sync"
    STATE_CHANGED = "state_changed"

    # Transport only
    HEARTBEAT = "heartbeat"


class IndexerEvent(BaseModel):
    """Event payload delivered to subscribers."""

    type: IndexerEventType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        """Format event for SSE transmission."""
        data = {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }
        return f"event: {self.type.value}\ndata: {json.dumps(data)}\n\n"


class EventBroadcaster:
    """Fans events out to subscriber queues.

    Each subscriber gets a bounded queue; when it is full the event is
    dropped for that subscriber only.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: list[asyncio.Queue[IndexerEvent]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @asynccontextmanager
    async def subscribe(self) -> AsyncGenerator[asyncio.Queue[IndexerEvent], None]:
        """Subscribe to events until the context exits.

        Usage:
            async with broadcaster.subscribe() as queue:
                event = await queue.get()
        """
        queue: asyncio.Queue[IndexerEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        logger.debug("event_subscriber_added", subscriber_count=self.subscriber_count)
        try:
            yield queue
        finally:
            self._subscribers.remove(queue)
            logger.debug("event_subscriber_removed", subscriber_count=self.subscriber_count)

    def publish(self, event: IndexerEvent) -> None:
        """Deliver ``event`` to every subscriber without blocking."""
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("event_subscriber_queue_full", event_type=event.type.value)

        logger.debug(
            "event_published",
            event_type=event.type.value,
            subscriber_count=self.subscriber_count,
        )

    def emit(self, event_type: IndexerEventType, **payload: Any) -> IndexerEvent:
        """Build and publish an event in one call."""
        event = IndexerEvent(type=event_type, payload=payload)
        self.publish(event)
        return event
