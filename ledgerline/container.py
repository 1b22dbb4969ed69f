from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .carts import CartSource, HttpCartSource, InMemoryCartSource
from .clock import Clock, SystemClock
from .gateway import HttpPaymentGateway, PaymentGateway, SimulatedPaymentGateway
from .id_provider import IdProvider, UUIDProvider
from .inventory import InventoryReservationEngine
from .locks import OrderLocks
from .notifications import NotificationSink
from .outbox import EventBus, HttpEventBus, InMemoryEventBus, OutboxPublisher
from .payments import PaymentCoordinator
from .persistence.db import Database
from .persistence.repositories import (
    SqlAlchemyInventoryRepository,
    SqlAlchemyOrderRepository,
    SqlAlchemyOutboxRepository,
    SqlAlchemyPaymentRepository,
)
from .persistence.seed import seed_inventory_if_empty
from .repositories import (
    InMemoryInventoryRepository,
    InMemoryOrderRepository,
    InMemoryOutboxRepository,
    InMemoryPaymentRepository,
)
from .retry import RetryPolicy
from .saga import CheckoutOrchestrator
from .seed import load_cart_seed, load_inventory_seed
from .settings import Settings
from .workers import BackgroundWorkers


@dataclass
class Container:
    settings: Settings
    orchestrator: CheckoutOrchestrator
    inventory: InventoryReservationEngine
    payments: PaymentCoordinator
    publisher: OutboxPublisher
    carts: CartSource
    gateway: PaymentGateway
    event_bus: EventBus
    workers: BackgroundWorkers
    clock: Clock
    id_provider: IdProvider
    notifications: Optional[NotificationSink] = None
    db: Optional[Database] = None

    async def close(self) -> None:
        await self.workers.stop()
        await self.gateway.close()
        for adapter in (self.carts, self.event_bus):
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
        if self.db:
            self.db.dispose()


def build_container(
    settings: Settings,
    clock: Optional[Clock] = None,
    ids: Optional[IdProvider] = None,
    gateway: Optional[PaymentGateway] = None,
    event_bus: Optional[EventBus] = None,
    carts: Optional[CartSource] = None,
) -> Container:
    clock = clock or SystemClock()
    ids = ids or UUIDProvider()
    db: Optional[Database] = None

    if settings.database_url:
        db = Database(settings.database_url, echo=settings.db_echo)
        db.create_tables()
        seed_inventory_if_empty(db, settings.inventory_seed_path)
        outbox = SqlAlchemyOutboxRepository(db)
        orders = SqlAlchemyOrderRepository(db)
        inventory_repo = SqlAlchemyInventoryRepository(db)
        payment_repo = SqlAlchemyPaymentRepository(db)
    else:
        outbox = InMemoryOutboxRepository()
        orders = InMemoryOrderRepository(outbox)
        inventory_repo = InMemoryInventoryRepository(load_inventory_seed(settings.inventory_seed_path), outbox)
        payment_repo = InMemoryPaymentRepository()

    if gateway is None:
        if settings.payment_gateway_url:
            gateway = HttpPaymentGateway(
                settings.payment_gateway_url,
                settings.payment_gateway_api_key,
                timeout=settings.gateway_timeout_seconds,
            )
        else:
            gateway = SimulatedPaymentGateway(settings.simulated_gateway_mode)

    if event_bus is None:
        if settings.event_bus_url:
            event_bus = HttpEventBus(settings.event_bus_url, timeout=settings.step_timeout_seconds)
        else:
            event_bus = InMemoryEventBus()

    if carts is None:
        if settings.cart_service_url:
            carts = HttpCartSource(settings.cart_service_url, timeout=settings.step_timeout_seconds)
        else:
            carts = InMemoryCartSource(clock, load_cart_seed(settings.cart_seed_path))

    inventory = InventoryReservationEngine(inventory_repo, clock, ids, settings.reservation_ttl_seconds)
    payments = PaymentCoordinator(
        payment_repo,
        gateway,
        clock,
        ids,
        webhook_secret=settings.webhook_secret,
        webhook_tolerance_seconds=settings.webhook_tolerance_seconds,
        gateway_timeout_seconds=settings.gateway_timeout_seconds,
    )
    policy = RetryPolicy(
        max_attempts=settings.step_max_attempts,
        base_delay=settings.step_base_delay_seconds,
        max_delay=settings.step_max_delay_seconds,
        timeout=settings.step_timeout_seconds,
    )
    orchestrator = CheckoutOrchestrator(
        orders,
        inventory,
        payments,
        clock,
        ids,
        policy,
        price_freshness_seconds=settings.price_freshness_seconds,
        payment_timeout_seconds=settings.payment_timeout_seconds,
        worker_concurrency=settings.worker_concurrency,
        locks=OrderLocks(),
    )
    publisher = OutboxPublisher(
        outbox,
        event_bus,
        clock,
        batch_size=settings.outbox_batch_size,
        publish_timeout=settings.step_timeout_seconds,
    )
    notifications = NotificationSink(event_bus) if isinstance(event_bus, InMemoryEventBus) else None
    workers = BackgroundWorkers(
        publisher,
        inventory,
        orchestrator,
        notifications,
        outbox_interval=settings.outbox_poll_interval_seconds,
        sweeper_interval=settings.sweeper_interval_seconds,
        recovery_interval=settings.recovery_interval_seconds,
    )

    return Container(
        settings=settings,
        orchestrator=orchestrator,
        inventory=inventory,
        payments=payments,
        publisher=publisher,
        carts=carts,
        gateway=gateway,
        event_bus=event_bus,
        workers=workers,
        clock=clock,
        id_provider=ids,
        notifications=notifications,
        db=db,
    )
