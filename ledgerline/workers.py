from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

from .inventory import InventoryReservationEngine
from .logging import ServiceLogger
from .notifications import NotificationSink
from .outbox import OutboxPublisher
from .saga import CheckoutOrchestrator

logger = ServiceLogger("workers")


class BackgroundWorkers:
    """Outbox drain, reservation sweeper, saga recovery and the notification sink.

    Each loop runs as its own task and waits on a shared stop event between
    passes, so ``stop`` returns promptly.
    """

    def __init__(
        self,
        publisher: OutboxPublisher,
        inventory: InventoryReservationEngine,
        orchestrator: CheckoutOrchestrator,
        notifications: Optional[NotificationSink],
        outbox_interval: float,
        sweeper_interval: float,
        recovery_interval: float,
    ) -> None:
        self._publisher = publisher
        self._inventory = inventory
        self._orchestrator = orchestrator
        self._notifications = notifications
        self._outbox_interval = outbox_interval
        self._sweeper_interval = sweeper_interval
        self._recovery_interval = recovery_interval
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        if self._notifications is not None:
            self._notifications.subscribe()
        self._tasks = [
            asyncio.create_task(self._loop("outbox", self._publisher.drain, self._outbox_interval)),
            asyncio.create_task(self._loop("sweeper", self._inventory.sweep_expired, self._sweeper_interval)),
            asyncio.create_task(self._loop("recovery", self._orchestrator.recover_all, self._recovery_interval)),
        ]
        if self._notifications is not None:
            self._tasks.append(asyncio.create_task(self._notifications.run(self._stop)))
        logger.info("Background workers started", tasks=len(self._tasks))

    async def stop(self) -> None:
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Background workers stopped")

    async def _loop(self, name: str, operation: Callable[[], Awaitable[object]], interval: float) -> None:
        while not self._stop.is_set():
            try:
                await operation()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker pass failed", worker=name)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
