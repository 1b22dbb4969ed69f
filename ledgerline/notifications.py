from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Optional, Set

from .domain import EventType, OutboxEvent
from .logging import ServiceLogger
from .outbox import InMemoryEventBus

NOTIFIED_EVENTS = frozenset({EventType.ORDER_CONFIRMED.value, EventType.ORDER_CANCELLED.value})


class NotificationSink:
    """Consumer of order outcome events; delivery transport lives elsewhere.

    The bus delivers at least once, so each of the last ``memory`` event ids is
    handled a single time.
    """

    def __init__(self, bus: InMemoryEventBus, memory: int = 10000) -> None:
        self._bus = bus
        self._queue: Optional[asyncio.Queue] = None
        self._seen: Set[str] = set()
        self._seen_order: Deque[str] = deque()
        self._memory = memory
        self.delivered: Deque[OutboxEvent] = deque(maxlen=memory)
        self._log = ServiceLogger("notifications")

    def subscribe(self) -> None:
        if self._queue is None:
            self._queue = self._bus.subscribe()

    def unsubscribe(self) -> None:
        if self._queue is not None:
            self._bus.unsubscribe(self._queue)
            self._queue = None

    def handle(self, event: OutboxEvent) -> bool:
        if event.type not in NOTIFIED_EVENTS:
            return False
        if event.id in self._seen:
            self._log.debug("Duplicate event skipped", event_id=event.id)
            return False
        self._remember(event.id)
        self.delivered.append(event)
        self._log.info("Notification queued", event_id=event.id, type=event.type, order_id=event.aggregate_id)
        return True

    def _remember(self, event_id: str) -> None:
        self._seen.add(event_id)
        self._seen_order.append(event_id)
        while len(self._seen_order) > self._memory:
            self._seen.discard(self._seen_order.popleft())

    def process_pending(self) -> int:
        """Handle whatever is already queued without waiting."""
        if self._queue is None:
            return 0
        handled = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return handled
            if self.handle(event):
                handled += 1

    async def run(self, stop: asyncio.Event) -> None:
        self.subscribe()
        queue = self._queue
        try:
            while not stop.is_set():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                self.handle(event)
        finally:
            self.unsubscribe()
