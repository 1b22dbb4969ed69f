"""Outbox Publisher and event bus adapters.

Events are written to the outbox in the same unit of work as the state change
they announce; the publisher drains PENDING rows to the bus and marks each one
PUBLISHED only after the bus acknowledged it. Delivery is at-least-once, so
consumers deduplicate on the event id.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, List, Optional, Protocol

import httpx

from .clock import Clock
from .domain import OutboxEvent, OutboxStatus
from .errors import PublishError
from .logging import ServiceLogger
from .repositories import OutboxRepository


class EventBus(Protocol):
    async def publish(self, event: OutboxEvent) -> None: ...


class InMemoryEventBus(EventBus):
    """In-process bus; ``published`` keeps only the most recent ``history`` events."""

    def __init__(self, history: int = 1000) -> None:
        self._subscribers: List[asyncio.Queue] = []
        self.published: Deque[OutboxEvent] = deque(maxlen=history)

    async def publish(self, event: OutboxEvent) -> None:
        self.published.append(event)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                continue

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)


class HttpEventBus(EventBus):
    """Posts each event as JSON; any 2xx answer is the acknowledgment."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def publish(self, event: OutboxEvent) -> None:
        try:
            response = await self._client.post(
                self._url,
                json={
                    "id": event.id,
                    "type": event.type,
                    "aggregate_id": event.aggregate_id,
                    "created_at": event.created_at.isoformat(),
                    "payload": event.payload,
                },
                headers={"X-Event-Id": event.id, "X-Event-Type": event.type},
            )
        except httpx.HTTPError as exc:
            raise PublishError(f"Event bus unreachable: {exc}") from exc
        if response.status_code >= 300:
            raise PublishError(f"Event bus answered {response.status_code}")

    async def close(self) -> None:
        await self._client.aclose()


class OutboxPublisher:
    def __init__(
        self,
        outbox: OutboxRepository,
        bus: EventBus,
        clock: Clock,
        batch_size: int = 100,
        publish_timeout: float = 5.0,
    ) -> None:
        self._outbox = outbox
        self._bus = bus
        self._clock = clock
        self._batch_size = batch_size
        self._publish_timeout = publish_timeout
        self._log = ServiceLogger("outbox")

    def enqueue(self, event: OutboxEvent) -> None:
        """Store an event that is not tied to a state change of its own."""
        self._outbox.add([event])

    async def drain(self) -> int:
        """Publish one batch of pending events; returns how many were acknowledged."""
        published = 0
        for event in self._outbox.list_pending(self._batch_size):
            try:
                await asyncio.wait_for(self._bus.publish(event), timeout=self._publish_timeout)
            except (PublishError, asyncio.TimeoutError) as exc:
                error = str(exc) or type(exc).__name__
                self._outbox.record_failure(event.id, error)
                self._log.warning("Event publish failed", event_id=event.id, type=event.type, error=error)
                continue
            self._outbox.mark_published(event.id, self._clock.now())
            published += 1
        if published:
            self._log.debug("Outbox drained", published=published)
        return published

    async def drain_all(self, max_batches: int = 100) -> int:
        total = 0
        for _ in range(max_batches):
            published = await self.drain()
            total += published
            if published == 0:
                break
        return total

    def pending_count(self) -> int:
        return self._outbox.count_pending()

    def list_events(self, status: Optional[OutboxStatus] = None, limit: int = 100) -> List[OutboxEvent]:
        return self._outbox.list(status, limit)
