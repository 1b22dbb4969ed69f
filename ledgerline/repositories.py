from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Dict, Hashable, Iterable, Iterator, List, Optional, Protocol, Tuple

from .domain import (
    TERMINAL_STATUSES,
    InventoryRecord,
    InventoryShortage,
    Order,
    OrderStatus,
    OutboxEvent,
    OutboxStatus,
    PaymentIntent,
    Reservation,
    ReservationState,
    SagaInstance,
)
from .errors import ConflictError, InsufficientStock, InvalidState, NotFoundError, ValidationError

StockKey = Tuple[str, str]


class OutboxRepository(Protocol):
    def add(self, events: Iterable[OutboxEvent]) -> None: ...

    def list_pending(self, limit: int) -> List[OutboxEvent]: ...

    def list(self, status: Optional[OutboxStatus], limit: int) -> List[OutboxEvent]: ...

    def mark_published(self, event_id: str, published_at: datetime) -> None: ...

    def record_failure(self, event_id: str, error: str) -> None: ...

    def count_pending(self) -> int: ...


class OrderRepository(Protocol):
    def create(
        self,
        order: Order,
        saga: SagaInstance,
        events: Iterable[OutboxEvent],
        idempotency_key: Optional[str] = None,
    ) -> Order: ...

    def get(self, order_id: str) -> Optional[Order]: ...

    def get_saga(self, order_id: str) -> Optional[SagaInstance]: ...

    def get_by_idempotency_key(self, key: str) -> Optional[Order]: ...

    def list(self, status: Optional[OrderStatus], limit: int) -> List[Order]: ...

    def list_active_sagas(self, limit: int) -> List[SagaInstance]: ...

    def save_transition(
        self,
        order: Order,
        saga: SagaInstance,
        events: Iterable[OutboxEvent],
        expected_version: int,
    ) -> None: ...

    def save_saga(self, saga: SagaInstance, expected_version: int) -> None: ...


class InventoryRepository(Protocol):
    def get(self, product_id: str, variant_id: str) -> Optional[InventoryRecord]: ...

    def list_all(self) -> List[InventoryRecord]: ...

    def set_stock(self, product_id: str, variant_id: str, stock_count: int) -> InventoryRecord: ...

    def hold(self, reservation: Reservation) -> Reservation: ...

    def commit(self, reservation_id: str, now: datetime) -> Reservation: ...

    def release(
        self,
        reservation_id: str,
        reason: str,
        now: datetime,
        events: Iterable[OutboxEvent],
    ) -> Reservation: ...

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]: ...

    def get_reservation_by_key(self, key: str) -> Optional[Reservation]: ...

    def list_expired(self, now: datetime, limit: int) -> List[Reservation]: ...


class PaymentRepository(Protocol):
    def add(self, intent: PaymentIntent) -> PaymentIntent: ...

    def get(self, intent_id: str) -> Optional[PaymentIntent]: ...

    def get_by_key(self, key: str) -> Optional[PaymentIntent]: ...

    def list_by_order(self, order_id: str) -> List[PaymentIntent]: ...

    def update(self, intent: PaymentIntent) -> PaymentIntent: ...


class KeyedMutex:
    """One ``threading.Lock`` per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}
        self._registry = threading.Lock()

    @contextmanager
    def lock_for(self, key: Hashable) -> Iterator[None]:
        with self._registry:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._registry:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class InMemoryOutboxRepository(OutboxRepository):
    def __init__(self) -> None:
        self._events: Dict[str, OutboxEvent] = {}
        self._lock = threading.Lock()

    def add(self, events: Iterable[OutboxEvent]) -> None:
        with self._lock:
            for event in events:
                self._events[event.id] = event

    def list_pending(self, limit: int) -> List[OutboxEvent]:
        return self.list(OutboxStatus.PENDING, limit)

    def list(self, status: Optional[OutboxStatus], limit: int) -> List[OutboxEvent]:
        with self._lock:
            events = list(self._events.values())
        if status:
            events = [event for event in events if event.status == status]
        events.sort(key=lambda event: event.created_at)
        return events[:limit]

    def mark_published(self, event_id: str, published_at: datetime) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if not event:
                return
            self._events[event_id] = event.model_copy(
                update={
                    "status": OutboxStatus.PUBLISHED,
                    "published_at": published_at,
                    "attempts": event.attempts + 1,
                }
            )

    def record_failure(self, event_id: str, error: str) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if not event:
                return
            self._events[event_id] = event.model_copy(update={"attempts": event.attempts + 1, "last_error": error})

    def count_pending(self) -> int:
        with self._lock:
            return len([event for event in self._events.values() if event.status == OutboxStatus.PENDING])


class InMemoryOrderRepository(OrderRepository):
    def __init__(self, outbox: InMemoryOutboxRepository) -> None:
        self._orders: Dict[str, Order] = {}
        self._sagas: Dict[str, SagaInstance] = {}
        self._idempotency: Dict[str, str] = {}
        self._outbox = outbox
        self._lock = threading.Lock()

    def create(
        self,
        order: Order,
        saga: SagaInstance,
        events: Iterable[OutboxEvent],
        idempotency_key: Optional[str] = None,
    ) -> Order:
        with self._lock:
            if idempotency_key and idempotency_key in self._idempotency:
                raise ConflictError(f"Idempotency key {idempotency_key} already used")
            if order.id in self._orders:
                raise ConflictError(f"Order {order.id} already exists")
            self._orders[order.id] = order
            self._sagas[order.id] = saga
            if idempotency_key:
                self._idempotency[idempotency_key] = order.id
            self._outbox.add(events)
        return order

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def get_saga(self, order_id: str) -> Optional[SagaInstance]:
        return self._sagas.get(order_id)

    def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        order_id = self._idempotency.get(key)
        return self._orders.get(order_id) if order_id else None

    def list(self, status: Optional[OrderStatus], limit: int) -> List[Order]:
        orders = list(self._orders.values())
        if status:
            orders = [order for order in orders if order.status == status]
        return orders[:limit]

    def list_active_sagas(self, limit: int) -> List[SagaInstance]:
        sagas = [saga for saga in self._sagas.values() if saga.step not in TERMINAL_STATUSES]
        sagas.sort(key=lambda saga: saga.updated_at)
        return sagas[:limit]

    def save_transition(
        self,
        order: Order,
        saga: SagaInstance,
        events: Iterable[OutboxEvent],
        expected_version: int,
    ) -> None:
        with self._lock:
            self._check_version(saga.order_id, expected_version)
            self._orders[order.id] = order
            self._sagas[saga.order_id] = saga
            self._outbox.add(events)

    def save_saga(self, saga: SagaInstance, expected_version: int) -> None:
        with self._lock:
            self._check_version(saga.order_id, expected_version)
            self._sagas[saga.order_id] = saga

    def _check_version(self, order_id: str, expected_version: int) -> None:
        current = self._sagas.get(order_id)
        if not current:
            raise NotFoundError()
        if current.version != expected_version:
            raise ConflictError(f"Saga {order_id} is at version {current.version}, expected {expected_version}")


class InMemoryInventoryRepository(InventoryRepository):
    def __init__(self, records: Iterable[InventoryRecord], outbox: InMemoryOutboxRepository) -> None:
        self._records: Dict[StockKey, InventoryRecord] = {
            (record.product_id, record.variant_id): record for record in records
        }
        self._reservations: Dict[str, Reservation] = {}
        self._by_key: Dict[str, str] = {}
        self._outbox = outbox
        self._mutex = KeyedMutex()
        self._index_lock = threading.Lock()

    def get(self, product_id: str, variant_id: str) -> Optional[InventoryRecord]:
        return self._records.get((product_id, variant_id))

    def list_all(self) -> List[InventoryRecord]:
        return sorted(self._records.values(), key=lambda record: (record.product_id, record.variant_id))

    def set_stock(self, product_id: str, variant_id: str, stock_count: int) -> InventoryRecord:
        key = (product_id, variant_id)
        with self._mutex.lock_for(key):
            current = self._records.get(key)
            reserved = current.reserved_count if current else 0
            if stock_count < reserved:
                raise ValidationError(f"Stock {stock_count} is below the {reserved} units currently reserved")
            record = InventoryRecord(
                product_id=product_id,
                variant_id=variant_id,
                stock_count=stock_count,
                reserved_count=reserved,
            )
            self._records[key] = record
            return record

    def hold(self, reservation: Reservation) -> Reservation:
        with self._mutex.lock_for(("idempotency", reservation.idempotency_key)):
            existing = self.get_reservation_by_key(reservation.idempotency_key)
            if existing:
                return existing

            keys = sorted({line.key for line in reservation.lines})
            with ExitStack() as stack:
                for key in keys:
                    stack.enter_context(self._mutex.lock_for(key))
                shortages = self._shortages(reservation)
                if shortages:
                    raise InsufficientStock(shortages)
                for line in reservation.lines:
                    record = self._records[line.key]
                    self._records[line.key] = record.model_copy(
                        update={"reserved_count": record.reserved_count + line.qty}
                    )

            with self._index_lock:
                self._reservations[reservation.id] = reservation
                self._by_key[reservation.idempotency_key] = reservation.id
        return reservation

    def commit(self, reservation_id: str, now: datetime) -> Reservation:
        with self._mutex.lock_for(("reservation", reservation_id)):
            reservation = self._require(reservation_id)
            if reservation.state == ReservationState.COMMITTED:
                return reservation
            if reservation.state == ReservationState.RELEASED:
                raise InvalidState(f"Reservation {reservation_id} was released", reservation.state.value)
            for line in sorted(reservation.lines, key=lambda line: line.key):
                with self._mutex.lock_for(line.key):
                    record = self._records[line.key]
                    self._records[line.key] = record.model_copy(
                        update={
                            "stock_count": record.stock_count - line.qty,
                            "reserved_count": record.reserved_count - line.qty,
                        }
                    )
            return self._store(reservation.model_copy(update={"state": ReservationState.COMMITTED, "updated_at": now}))

    def release(
        self,
        reservation_id: str,
        reason: str,
        now: datetime,
        events: Iterable[OutboxEvent],
    ) -> Reservation:
        with self._mutex.lock_for(("reservation", reservation_id)):
            reservation = self._require(reservation_id)
            if reservation.state == ReservationState.RELEASED:
                return reservation
            if reservation.state == ReservationState.COMMITTED:
                raise InvalidState(f"Reservation {reservation_id} was committed", reservation.state.value)
            for line in sorted(reservation.lines, key=lambda line: line.key):
                with self._mutex.lock_for(line.key):
                    record = self._records[line.key]
                    self._records[line.key] = record.model_copy(
                        update={"reserved_count": record.reserved_count - line.qty}
                    )
            released = self._store(
                reservation.model_copy(
                    update={"state": ReservationState.RELEASED, "release_reason": reason, "updated_at": now}
                )
            )
            self._outbox.add(events)
            return released

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        return self._reservations.get(reservation_id)

    def get_reservation_by_key(self, key: str) -> Optional[Reservation]:
        reservation_id = self._by_key.get(key)
        return self._reservations.get(reservation_id) if reservation_id else None

    def list_expired(self, now: datetime, limit: int) -> List[Reservation]:
        with self._index_lock:
            reservations = list(self._reservations.values())
        expired = [
            reservation
            for reservation in reservations
            if reservation.state == ReservationState.HELD and reservation.expires_at <= now
        ]
        expired.sort(key=lambda reservation: reservation.expires_at)
        return expired[:limit]

    def _shortages(self, reservation: Reservation) -> List[InventoryShortage]:
        shortages: List[InventoryShortage] = []
        for line in reservation.lines:
            current = self._records.get(line.key)
            available = current.available if current else 0
            if available < line.qty:
                shortages.append(
                    InventoryShortage(
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        available=available,
                        requested=line.qty,
                    )
                )
        return shortages

    def _require(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if not reservation:
            raise NotFoundError()
        return reservation

    def _store(self, reservation: Reservation) -> Reservation:
        with self._index_lock:
            self._reservations[reservation.id] = reservation
        return reservation


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self) -> None:
        self._payments: Dict[str, PaymentIntent] = {}
        self._by_key: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add(self, intent: PaymentIntent) -> PaymentIntent:
        with self._lock:
            existing_id = self._by_key.get(intent.idempotency_key)
            if existing_id:
                return self._payments[existing_id]
            self._payments[intent.id] = intent
            self._by_key[intent.idempotency_key] = intent.id
        return intent

    def get(self, intent_id: str) -> Optional[PaymentIntent]:
        return self._payments.get(intent_id)

    def get_by_key(self, key: str) -> Optional[PaymentIntent]:
        intent_id = self._by_key.get(key)
        return self._payments.get(intent_id) if intent_id else None

    def list_by_order(self, order_id: str) -> List[PaymentIntent]:
        return [payment for payment in self._payments.values() if payment.order_id == order_id]

    def update(self, intent: PaymentIntent) -> PaymentIntent:
        with self._lock:
            self._payments[intent.id] = intent
        return intent
