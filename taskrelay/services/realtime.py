"""
Realtime fan-out of domain events over Server-Sent Events.

Each connection polls the outbox for its owner, advances an in-memory
(created_at, id) cursor past every event it sees, and writes the events whose
derived topics match the subscription. Streams close after a bounded lifetime;
clients reconnect with Last-Event-ID and resume from the cursor.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from taskrelay.domain.models import Cursor
from taskrelay.domain.topics import derive_topics, matches_subscription
from taskrelay.api.v1.metrics import (
    REALTIME_CONNECTIONS,
    REALTIME_UPDATES_DELIVERED_TOTAL,
    REALTIME_POLL_FAILURES_TOTAL,
)
from taskrelay.settings import settings

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_MEDIA_TYPE = "text/event-stream; charset=utf-8"

def format_sse(event: str, data: Any, event_id: Optional[str] = None) -> str:
    lines = []
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    return "\n".join(lines) + "\n\n"

def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

class RealtimeStream:
    """One subscriber connection. Not shared between requests."""

    def __init__(
        self,
        feed,
        owner_id: str,
        topics: list[str],
        cursor: Cursor,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        max_lifetime: Optional[float] = None,
        batch_size: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ):
        self.feed = feed
        self.owner_id = owner_id
        self.topics = list(topics)
        self.subscribed = frozenset(topics)
        self.cursor = cursor
        self.is_disconnected = is_disconnected
        self.poll_interval = poll_interval if poll_interval is not None else settings.REALTIME_POLL_INTERVAL_SECONDS
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else settings.REALTIME_HEARTBEAT_INTERVAL_SECONDS
        )
        self.max_lifetime = max_lifetime if max_lifetime is not None else settings.REALTIME_MAX_LIFETIME_SECONDS
        self.batch_size = batch_size or settings.REALTIME_MAX_BATCH_SIZE
        self.correlation_id = correlation_id
        self.delivered = 0

    async def poll(self) -> list[str]:
        """Fetches one batch after the cursor and returns the SSE chunks to write."""
        try:
            events = await self.feed.fetch_after(self.owner_id, self.cursor, self.batch_size)
        except Exception as e:
            REALTIME_POLL_FAILURES_TOTAL.inc()
            logger.error(
                "Realtime poll failed owner=%s correlation=%s: %s",
                self.owner_id, self.correlation_id, e,
                exc_info=True,
            )
            return []

        chunks = []
        for event in events:
            if not self.cursor.is_before(event.created_at, event.id):
                continue
            topics = derive_topics(event.type, event.payload)
            # Filtered-out events still move the cursor
            self.cursor = Cursor(created_at=event.created_at, event_id=event.id)
            if not topics or not matches_subscription(topics, self.subscribed):
                continue
            update = {
                "id": str(event.id),
                "type": event.type,
                "topics": topics,
                "createdAt": _iso(event.created_at),
                "payload": event.payload,
            }
            chunks.append(format_sse("update", update, str(event.id)))
        return chunks

    async def events(self) -> AsyncIterator[str]:
        connected_at = time.monotonic()
        deadline = connected_at + self.max_lifetime
        next_poll = connected_at
        next_ping = connected_at + self.heartbeat_interval

        REALTIME_CONNECTIONS.inc()
        logger.info(
            "Realtime stream opened owner=%s topics=%s correlation=%s",
            self.owner_id, ",".join(self.topics) or "*", self.correlation_id,
        )
        try:
            yield format_sse("ready", {
                "connectedAt": _iso(datetime.now(timezone.utc)),
                "topics": self.topics,
            })

            while True:
                if self.is_disconnected is not None and await self.is_disconnected():
                    break
                now = time.monotonic()
                if now >= deadline:
                    break

                if now >= next_poll:
                    for chunk in await self.poll():
                        self.delivered += 1
                        REALTIME_UPDATES_DELIVERED_TOTAL.inc()
                        yield chunk
                    next_poll = time.monotonic() + self.poll_interval

                if now >= next_ping:
                    yield format_sse("ping", {"ts": int(time.time() * 1000)})
                    next_ping = now + self.heartbeat_interval

                wait = min(next_poll, next_ping, deadline) - time.monotonic()
                if wait > 0:
                    await asyncio.sleep(wait)
        finally:
            REALTIME_CONNECTIONS.dec()
            logger.info(
                "Realtime stream closed owner=%s delivered=%s after %.1fs correlation=%s",
                self.owner_id, self.delivered, time.monotonic() - connected_at, self.correlation_id,
            )
