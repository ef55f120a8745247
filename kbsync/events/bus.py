"""In-process fan-out of data change events.

One :class:`EventBus` is created at startup and handed to everything that
publishes or subscribes. Delivery is best-effort and at-most-once: each
subscriber owns a bounded queue, a full queue drops the event for that
subscriber only, and nothing survives a restart except what is still in the
bounded recent-events buffer.

The same subscriptions also carry `ai:content` notices, which ask clients
to review knowledge-base content an agent wrote. Those are never buffered.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import deque
from typing import Any, Iterable, Optional, Union

from kbsync import config
from kbsync.models import AIContentEvent, DataChangeEvent
from kbsync.observability import record_event_dropped, record_event_published

logger = logging.getLogger("kbsync.events")

_CLOSED = object()

StreamEvent = Union[DataChangeEvent, AIContentEvent]


class Subscription:
    """Registration handle returned by :meth:`EventBus.subscribe`.

    Iterate it (``async for event in sub``) until :meth:`close` is called.
    """

    def __init__(self, bus: "EventBus", queue_size: int):
        self.id = f"SUB-{uuid.uuid4().hex[:12]}"
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self.closed = False
        self.delivered = 0
        self.dropped = 0

    def offer(self, event: StreamEvent) -> bool:
        """Enqueue without blocking. Returns False when the event was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        self.delivered += 1
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> StreamEvent | None:
        """Wait for the next event. Returns None on timeout or once closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        # Wake a consumer blocked in get()
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """Process-wide publish/subscribe channel with a bounded history."""

    def __init__(self, buffer_size: int | None = None, queue_size: int | None = None):
        self.buffer_size = max(1, buffer_size if buffer_size is not None else config.EVENT_BUFFER_SIZE)
        self.queue_size = max(1, queue_size if queue_size is not None else config.SUBSCRIBER_QUEUE_SIZE)
        self._recent: deque[DataChangeEvent] = deque(maxlen=self.buffer_size)
        self._subscribers: dict[str, Subscription] = {}
        self.published = 0

    def publish(self, event: DataChangeEvent) -> int:
        """Buffer the event and offer it to every subscriber.

        Never blocks. Returns the number of subscribers that accepted it.
        """
        self._recent.append(event)
        self.published += 1
        record_event_published(str(event.entity), str(event.mutation))
        return self._fan_out(event, f"{event.entity}/{event.mutation}")

    def notify(self, event: AIContentEvent) -> int:
        """Offer an AI content notice to every subscriber without buffering it."""
        record_event_published("ai:content", str(event.contentType))
        return self._fan_out(event, f"ai:content {event.filePath}")

    def _fan_out(self, event: StreamEvent, label: str) -> int:
        accepted = 0
        for subscription in list(self._subscribers.values()):
            try:
                if subscription.offer(event):
                    accepted += 1
                else:
                    logger.warning(
                        "Dropped %s for slow subscriber %s (pending=%d)",
                        label,
                        subscription.id,
                        subscription.pending,
                    )
                    record_event_dropped("slow_subscriber")
            except Exception as exc:
                logger.warning("Removing failed subscriber %s: %s", subscription.id, exc)
                record_event_dropped("subscriber_error")
                self.unsubscribe(subscription)
        return accepted

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self.queue_size)
        self._subscribers[subscription.id] = subscription
        logger.info("Subscriber %s connected (%d active)", subscription.id, len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscribers.pop(subscription.id, None) is not None:
            logger.info("Subscriber %s disconnected (%d active)", subscription.id, len(self._subscribers))
        if not subscription.closed:
            subscription.close()

    def recent(self, limit: int | None = None) -> list[DataChangeEvent]:
        """Buffered events, oldest first."""
        events = list(self._recent)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def stats(self) -> dict[str, Any]:
        return {
            "published": self.published,
            "buffered": len(self._recent),
            "bufferSize": self.buffer_size,
            "subscribers": self.subscriber_count,
            "dropped": sum(s.dropped for s in self._subscribers.values()),
        }


# ── NDJSON framing ──────────────────────────────────────────────────


def encode_frame(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":")) + "\n"


def init_frame(events: Iterable[DataChangeEvent]) -> str:
    return encode_frame({"type": "init", "events": [event.to_wire() for event in events]})


def event_frame(event: DataChangeEvent) -> str:
    return encode_frame({"type": "data:changed", "event": event.to_wire()})


def ping_frame() -> str:
    return encode_frame({"type": "ping"})


def ai_content_frame(event: AIContentEvent) -> str:
    return encode_frame({"type": "ai:content", "event": event.to_wire()})


def stream_frame(event: StreamEvent) -> str:
    if isinstance(event, AIContentEvent):
        return ai_content_frame(event)
    return event_frame(event)
