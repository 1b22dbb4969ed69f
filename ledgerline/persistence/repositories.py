from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ..clock import as_utc
from ..domain import (
    TERMINAL_STATUSES,
    InventoryRecord,
    InventoryShortage,
    LineItem,
    Order,
    OrderStatus,
    OutboxEvent,
    OutboxStatus,
    PaymentIntent,
    PaymentMethod,
    PaymentOutcome,
    PaymentStatus,
    Reservation,
    ReservationLine,
    ReservationState,
    SagaInstance,
    SagaStepRecord,
    ShippingAddress,
)
from ..errors import ConflictError, InsufficientStock, InvalidState, NotFoundError, ValidationError
from .db import Database
from .models import (
    InventoryRow,
    OrderItemRecord,
    OrderRecord,
    OutboxRecord,
    PaymentIntentRecord,
    ReservationLineRecord,
    ReservationRecord,
    SagaRecord,
)


class _SettleRaced(Exception):
    """Another writer moved the reservation out of HELD between read and claim."""


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value else None


def order_from_record(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        user_id=record.user_id,
        status=OrderStatus(record.status),
        payment_status=PaymentStatus(record.payment_status) if record.payment_status else None,
        currency=record.currency,
        items=[
            LineItem(product_id=item.product_id, variant_id=item.variant_id, qty=item.qty, unit_price=item.unit_price)
            for item in record.items
        ],
        total=record.total,
        shipping_address=ShippingAddress(**record.shipping_address),
        payment_method=PaymentMethod(record.payment_method),
        failure_reason=record.failure_reason,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def saga_from_record(record: SagaRecord) -> SagaInstance:
    return SagaInstance(
        order_id=record.order_id,
        step=OrderStatus(record.step),
        version=record.version,
        steps={name: SagaStepRecord(**data) for name, data in (record.steps or {}).items()},
        reservation_id=record.reservation_id,
        payment_intent_id=record.payment_intent_id,
        payment_outcome=PaymentOutcome(record.payment_outcome) if record.payment_outcome else None,
        failure_reason=record.failure_reason,
        payment_deadline=_optional_utc(record.payment_deadline),
        archived_at=_optional_utc(record.archived_at),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def saga_values(saga: SagaInstance) -> dict:
    return {
        "step": saga.step.value,
        "version": saga.version,
        "steps": {name: step.model_dump(mode="json") for name, step in saga.steps.items()},
        "reservation_id": saga.reservation_id,
        "payment_intent_id": saga.payment_intent_id,
        "payment_outcome": saga.payment_outcome.value if saga.payment_outcome else None,
        "failure_reason": saga.failure_reason,
        "payment_deadline": saga.payment_deadline,
        "archived_at": saga.archived_at,
        "updated_at": saga.updated_at,
    }


def reservation_from_record(record: ReservationRecord) -> Reservation:
    return Reservation(
        id=record.id,
        order_id=record.order_id,
        idempotency_key=record.idempotency_key,
        lines=[
            ReservationLine(product_id=line.product_id, variant_id=line.variant_id, qty=line.qty)
            for line in record.lines
        ],
        state=ReservationState(record.state),
        expires_at=as_utc(record.expires_at),
        release_reason=record.release_reason,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def payment_from_record(record: PaymentIntentRecord) -> PaymentIntent:
    return PaymentIntent(
        id=record.id,
        order_id=record.order_id,
        amount=record.amount,
        currency=record.currency,
        method=PaymentMethod(record.method),
        status=PaymentStatus(record.status),
        idempotency_key=record.idempotency_key,
        gateway_reference=record.gateway_reference,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def outbox_from_record(record: OutboxRecord) -> OutboxEvent:
    return OutboxEvent(
        id=record.id,
        type=record.type,
        aggregate_id=record.aggregate_id,
        payload=record.payload,
        status=OutboxStatus(record.status),
        attempts=record.attempts,
        last_error=record.last_error,
        created_at=as_utc(record.created_at),
        published_at=_optional_utc(record.published_at),
    )


def outbox_to_record(event: OutboxEvent) -> OutboxRecord:
    return OutboxRecord(
        id=event.id,
        type=event.type,
        aggregate_id=event.aggregate_id,
        payload=event.payload,
        status=event.status.value,
        attempts=event.attempts,
        last_error=event.last_error,
        created_at=event.created_at,
        published_at=event.published_at,
    )


class SqlAlchemyOutboxRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, events: Iterable[OutboxEvent]) -> None:
        with self._db.session() as session:
            session.add_all([outbox_to_record(event) for event in events])

    def list_pending(self, limit: int) -> List[OutboxEvent]:
        return self.list(OutboxStatus.PENDING, limit)

    def list(self, status: Optional[OutboxStatus], limit: int) -> List[OutboxEvent]:
        with self._db.session() as session:
            stmt = select(OutboxRecord).order_by(OutboxRecord.created_at.asc(), OutboxRecord.id.asc())
            if status:
                stmt = stmt.where(OutboxRecord.status == status.value)
            records = session.execute(stmt.limit(limit)).scalars().all()
            return [outbox_from_record(record) for record in records]

    def mark_published(self, event_id: str, published_at: datetime) -> None:
        with self._db.session() as session:
            session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.id == event_id)
                .values(
                    status=OutboxStatus.PUBLISHED.value,
                    published_at=published_at,
                    attempts=OutboxRecord.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )

    def record_failure(self, event_id: str, error: str) -> None:
        with self._db.session() as session:
            session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.id == event_id)
                .values(attempts=OutboxRecord.attempts + 1, last_error=error)
                .execution_options(synchronize_session=False)
            )

    def count_pending(self) -> int:
        with self._db.session() as session:
            stmt = select(func.count()).select_from(OutboxRecord).where(
                OutboxRecord.status == OutboxStatus.PENDING.value
            )
            return int(session.execute(stmt).scalar_one())


class SqlAlchemyOrderRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create(
        self,
        order: Order,
        saga: SagaInstance,
        events: Iterable[OutboxEvent],
        idempotency_key: Optional[str] = None,
    ) -> Order:
        try:
            with self._db.session() as session:
                session.add(
                    OrderRecord(
                        id=order.id,
                        user_id=order.user_id,
                        status=order.status.value,
                        payment_status=order.payment_status.value if order.payment_status else None,
                        currency=order.currency,
                        total=order.total,
                        shipping_address=order.shipping_address.model_dump(mode="json"),
                        payment_method=order.payment_method.value,
                        failure_reason=order.failure_reason,
                        idempotency_key=idempotency_key,
                        created_at=order.created_at,
                        updated_at=order.updated_at,
                        items=[
                            OrderItemRecord(
                                product_id=item.product_id,
                                variant_id=item.variant_id,
                                qty=item.qty,
                                unit_price=float(item.unit_price),
                            )
                            for item in order.items
                        ],
                    )
                )
                session.flush()
                session.add(SagaRecord(order_id=saga.order_id, created_at=saga.created_at, **saga_values(saga)))
                session.add_all([outbox_to_record(event) for event in events])
        except IntegrityError as exc:
            raise ConflictError(f"Order {order.id} or its idempotency key already exists") from exc
        return order

    def get(self, order_id: str) -> Optional[Order]:
        with self._db.session() as session:
            stmt = select(OrderRecord).options(joinedload(OrderRecord.items)).where(OrderRecord.id == order_id)
            record = session.execute(stmt).unique().scalars().first()
            if not record:
                return None
            return order_from_record(record)

    def get_saga(self, order_id: str) -> Optional[SagaInstance]:
        with self._db.session() as session:
            record = session.get(SagaRecord, order_id)
            return saga_from_record(record) if record else None

    def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        with self._db.session() as session:
            stmt = (
                select(OrderRecord)
                .options(joinedload(OrderRecord.items))
                .where(OrderRecord.idempotency_key == key)
            )
            record = session.execute(stmt).unique().scalars().first()
            return order_from_record(record) if record else None

    def list(self, status: Optional[OrderStatus], limit: int) -> List[Order]:
        with self._db.session() as session:
            stmt = select(OrderRecord).options(joinedload(OrderRecord.items)).order_by(OrderRecord.created_at.desc())
            if status:
                stmt = stmt.where(OrderRecord.status == status.value)
            records = session.execute(stmt.limit(limit)).unique().scalars().all()
            return [order_from_record(record) for record in records]

    def list_active_sagas(self, limit: int) -> List[SagaInstance]:
        terminal = [status.value for status in TERMINAL_STATUSES]
        with self._db.session() as session:
            stmt = (
                select(SagaRecord)
                .where(SagaRecord.step.not_in(terminal))
                .order_by(SagaRecord.updated_at.asc())
                .limit(limit)
            )
            return [saga_from_record(record) for record in session.execute(stmt).scalars().all()]

    def save_transition(
        self,
        order: Order,
        saga: SagaInstance,
        events: Iterable[OutboxEvent],
        expected_version: int,
    ) -> None:
        with self._db.session() as session:
            self._update_saga(session, saga, expected_version)
            session.execute(
                update(OrderRecord)
                .where(OrderRecord.id == order.id)
                .values(
                    status=order.status.value,
                    payment_status=order.payment_status.value if order.payment_status else None,
                    failure_reason=order.failure_reason,
                    updated_at=order.updated_at,
                )
                .execution_options(synchronize_session=False)
            )
            session.add_all([outbox_to_record(event) for event in events])

    def save_saga(self, saga: SagaInstance, expected_version: int) -> None:
        with self._db.session() as session:
            self._update_saga(session, saga, expected_version)

    def _update_saga(self, session: Session, saga: SagaInstance, expected_version: int) -> None:
        result = session.execute(
            update(SagaRecord)
            .where(SagaRecord.order_id == saga.order_id, SagaRecord.version == expected_version)
            .values(**saga_values(saga))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if session.get(SagaRecord, saga.order_id) is None:
                raise NotFoundError()
            raise ConflictError(f"Saga {saga.order_id} moved past version {expected_version}")


class SqlAlchemyInventoryRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, product_id: str, variant_id: str) -> Optional[InventoryRecord]:
        with self._db.session() as session:
            row = session.get(InventoryRow, (product_id, variant_id))
            return self._to_domain(row) if row else None

    def list_all(self) -> List[InventoryRecord]:
        with self._db.session() as session:
            stmt = select(InventoryRow).order_by(InventoryRow.product_id.asc(), InventoryRow.variant_id.asc())
            return [self._to_domain(row) for row in session.execute(stmt).scalars().all()]

    def set_stock(self, product_id: str, variant_id: str, stock_count: int) -> InventoryRecord:
        with self._db.session() as session:
            row = session.get(InventoryRow, (product_id, variant_id), with_for_update=True)
            if row is None:
                row = InventoryRow(product_id=product_id, variant_id=variant_id, stock_count=0, reserved_count=0)
                session.add(row)
            if stock_count < row.reserved_count:
                raise ValidationError(f"Stock {stock_count} is below the {row.reserved_count} units currently reserved")
            row.stock_count = stock_count
            session.flush()
            return self._to_domain(row)

    def hold(self, reservation: Reservation) -> Reservation:
        existing = self.get_reservation_by_key(reservation.idempotency_key)
        if existing:
            return existing
        try:
            with self._db.session() as session:
                shortages: List[InventoryShortage] = []
                for line in sorted(reservation.lines, key=lambda line: line.key):
                    result = session.execute(
                        update(InventoryRow)
                        .where(
                            InventoryRow.product_id == line.product_id,
                            InventoryRow.variant_id == line.variant_id,
                            InventoryRow.stock_count - InventoryRow.reserved_count >= line.qty,
                        )
                        .values(reserved_count=InventoryRow.reserved_count + line.qty)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        shortages.append(self._shortage(session, line))
                if shortages:
                    raise InsufficientStock(shortages)
                session.add(
                    ReservationRecord(
                        id=reservation.id,
                        order_id=reservation.order_id,
                        idempotency_key=reservation.idempotency_key,
                        state=reservation.state.value,
                        expires_at=reservation.expires_at,
                        created_at=reservation.created_at,
                        updated_at=reservation.updated_at,
                        lines=[
                            ReservationLineRecord(product_id=line.product_id, variant_id=line.variant_id, qty=line.qty)
                            for line in reservation.lines
                        ],
                    )
                )
        except IntegrityError:
            existing = self.get_reservation_by_key(reservation.idempotency_key)
            if existing:
                return existing
            raise
        return reservation

    def commit(self, reservation_id: str, now: datetime) -> Reservation:
        return self._settle(reservation_id, ReservationState.COMMITTED, now, None, ())

    def release(
        self,
        reservation_id: str,
        reason: str,
        now: datetime,
        events: Iterable[OutboxEvent],
    ) -> Reservation:
        return self._settle(reservation_id, ReservationState.RELEASED, now, reason, list(events))

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._db.session() as session:
            record = self._load(session, reservation_id)
            return reservation_from_record(record) if record else None

    def get_reservation_by_key(self, key: str) -> Optional[Reservation]:
        with self._db.session() as session:
            stmt = (
                select(ReservationRecord)
                .options(joinedload(ReservationRecord.lines))
                .where(ReservationRecord.idempotency_key == key)
            )
            record = session.execute(stmt).unique().scalars().first()
            return reservation_from_record(record) if record else None

    def list_expired(self, now: datetime, limit: int) -> List[Reservation]:
        with self._db.session() as session:
            stmt = (
                select(ReservationRecord)
                .options(joinedload(ReservationRecord.lines))
                .where(
                    ReservationRecord.state == ReservationState.HELD.value,
                    ReservationRecord.expires_at <= now,
                )
                .order_by(ReservationRecord.expires_at.asc())
                .limit(limit)
            )
            records = session.execute(stmt).unique().scalars().all()
            return [reservation_from_record(record) for record in records]

    def _settle(
        self,
        reservation_id: str,
        target: ReservationState,
        now: datetime,
        reason: Optional[str],
        events: List[OutboxEvent],
    ) -> Reservation:
        try:
            with self._db.session() as session:
                record = self._load(session, reservation_id)
                if record is None:
                    raise NotFoundError()
                current = ReservationState(record.state)
                if current == target:
                    return reservation_from_record(record)
                if current != ReservationState.HELD:
                    raise InvalidState(f"Reservation {reservation_id} was {current.value}", current.value)

                claimed = session.execute(
                    update(ReservationRecord)
                    .where(
                        ReservationRecord.id == reservation_id,
                        ReservationRecord.state == ReservationState.HELD.value,
                    )
                    .values(state=target.value, release_reason=reason, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    raise _SettleRaced()

                for line in sorted(record.lines, key=lambda line: (line.product_id, line.variant_id)):
                    values = {"reserved_count": InventoryRow.reserved_count - line.qty}
                    if target == ReservationState.COMMITTED:
                        values["stock_count"] = InventoryRow.stock_count - line.qty
                    session.execute(
                        update(InventoryRow)
                        .where(InventoryRow.product_id == line.product_id, InventoryRow.variant_id == line.variant_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                session.add_all([outbox_to_record(event) for event in events])
                return reservation_from_record(record).model_copy(
                    update={"state": target, "release_reason": reason, "updated_at": now}
                )
        except _SettleRaced:
            return self._settle(reservation_id, target, now, reason, events)

    def _load(self, session: Session, reservation_id: str) -> Optional[ReservationRecord]:
        stmt = (
            select(ReservationRecord)
            .options(joinedload(ReservationRecord.lines))
            .where(ReservationRecord.id == reservation_id)
        )
        return session.execute(stmt).unique().scalars().first()

    def _shortage(self, session: Session, line: ReservationLine) -> InventoryShortage:
        row = session.get(InventoryRow, (line.product_id, line.variant_id), populate_existing=True)
        available = row.stock_count - row.reserved_count if row else 0
        return InventoryShortage(
            product_id=line.product_id,
            variant_id=line.variant_id,
            available=available,
            requested=line.qty,
        )

    @staticmethod
    def _to_domain(row: InventoryRow) -> InventoryRecord:
        return InventoryRecord(
            product_id=row.product_id,
            variant_id=row.variant_id,
            stock_count=row.stock_count,
            reserved_count=row.reserved_count,
        )


class SqlAlchemyPaymentRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, intent: PaymentIntent) -> PaymentIntent:
        try:
            with self._db.session() as session:
                session.add(
                    PaymentIntentRecord(
                        id=intent.id,
                        order_id=intent.order_id,
                        amount=intent.amount,
                        currency=intent.currency,
                        method=intent.method.value,
                        status=intent.status.value,
                        idempotency_key=intent.idempotency_key,
                        gateway_reference=intent.gateway_reference,
                        created_at=intent.created_at,
                        updated_at=intent.updated_at,
                    )
                )
        except IntegrityError:
            existing = self.get_by_key(intent.idempotency_key)
            if existing:
                return existing
            raise
        return intent

    def get(self, intent_id: str) -> Optional[PaymentIntent]:
        with self._db.session() as session:
            record = session.get(PaymentIntentRecord, intent_id)
            return payment_from_record(record) if record else None

    def get_by_key(self, key: str) -> Optional[PaymentIntent]:
        with self._db.session() as session:
            stmt = select(PaymentIntentRecord).where(PaymentIntentRecord.idempotency_key == key)
            record = session.execute(stmt).scalars().first()
            return payment_from_record(record) if record else None

    def list_by_order(self, order_id: str) -> List[PaymentIntent]:
        with self._db.session() as session:
            stmt = (
                select(PaymentIntentRecord)
                .where(PaymentIntentRecord.order_id == order_id)
                .order_by(PaymentIntentRecord.created_at.desc())
            )
            return [payment_from_record(record) for record in session.execute(stmt).scalars().all()]

    def update(self, intent: PaymentIntent) -> PaymentIntent:
        with self._db.session() as session:
            record = session.get(PaymentIntentRecord, intent.id)
            if not record:
                return intent
            record.status = intent.status.value
            record.gateway_reference = intent.gateway_reference
            record.updated_at = intent.updated_at
        return intent
