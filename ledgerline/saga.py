"""Saga Orchestrator.

Drives an order through ``CREATED -> RESERVING -> RESERVED -> PAYMENT_PENDING ->
CONFIRMED`` and issues compensations when a step cannot complete. Every status
change goes through ``_transition``, which checks the state machine, bumps the
saga version and persists the order, the saga and the emitted outbox events in
one unit of work.

``_drive`` is the single loop that advances a saga from whatever step was last
persisted, so a fresh checkout, a webhook, an explicit cancel and crash
recovery all share the same code path. Work for one order always runs under its
``OrderLocks`` entry.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .clock import Clock
from .domain import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    CheckoutRequest,
    CheckoutResult,
    EventType,
    LineItem,
    Order,
    OrderDetail,
    OrderStatus,
    OutboxEvent,
    PaymentIntent,
    PaymentOutcome,
    PaymentOutcomeAck,
    PaymentStatus,
    ReservationState,
    SagaInstance,
    SagaStepRecord,
    StepName,
    WebhookReceipt,
    WebhookRequest,
)
from .errors import (
    ConflictError,
    DomainError,
    InsufficientStock,
    InvalidState,
    NotFoundError,
    PaymentFailed,
    RetryExhausted,
    UnknownIntent,
    ValidationError,
)
from .id_provider import IdProvider, derive_key
from .inventory import InventoryReservationEngine
from .locks import OrderLocks
from .logging import ServiceLogger
from .payments import PaymentCoordinator
from .repositories import OrderRepository
from .retry import AttemptLog, RetryPolicy, call_with_retry

Step = Callable[[Order, SagaInstance], Awaitable[bool]]

_SUCCEEDED_PAYMENTS = (PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED)
_PAYMENT_FAILURES = ("payment_failed", "payment_timeout", "payment_rejected")


def order_total(items: Iterable[LineItem]) -> float:
    return round(sum(item.line_total for item in items), 2)


def intent_outcome(intent: PaymentIntent) -> Optional[PaymentOutcome]:
    if intent.status in (PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED, PaymentStatus.FAILED):
        return PaymentOutcome(intent.status.value)
    return None


class CheckoutOrchestrator:
    def __init__(
        self,
        orders: OrderRepository,
        inventory: InventoryReservationEngine,
        payments: PaymentCoordinator,
        clock: Clock,
        ids: IdProvider,
        policy: RetryPolicy,
        price_freshness_seconds: int,
        payment_timeout_seconds: int,
        worker_concurrency: int = 8,
        locks: Optional[OrderLocks] = None,
    ) -> None:
        self._orders = orders
        self._inventory = inventory
        self._payments = payments
        self._clock = clock
        self._ids = ids
        self._policy = policy
        self._freshness = timedelta(seconds=price_freshness_seconds)
        self._payment_timeout = timedelta(seconds=payment_timeout_seconds)
        self._concurrency = max(1, worker_concurrency)
        self._locks = locks or OrderLocks()
        self._log = ServiceLogger("saga")
        self._steps: Dict[OrderStatus, Step] = {
            OrderStatus.CREATED: self._begin_reservation,
            OrderStatus.RESERVING: self._reserve,
            OrderStatus.RESERVED: self._pay,
            OrderStatus.PAYMENT_PENDING: self._await_payment,
            OrderStatus.COMPENSATING: self._compensate,
            OrderStatus.REFUNDING: self._refund,
        }

    async def start_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        if request.idempotency_key:
            existing = self._orders.get_by_idempotency_key(request.idempotency_key)
            if existing:
                return CheckoutResult(order=existing, idempotency_replayed=True)

        self._validate(request)
        now = self._clock.now()
        cart = request.cart
        order = Order(
            id=self._ids.new_id("ord_"),
            user_id=request.user_id,
            status=OrderStatus.CREATED,
            currency=cart.currency,
            items=cart.items,
            total=order_total(cart.items),
            shipping_address=request.shipping_address,
            payment_method=request.payment_method,
            created_at=now,
            updated_at=now,
        )
        saga = SagaInstance(order_id=order.id, step=OrderStatus.CREATED, created_at=now, updated_at=now)
        created = self._event(
            EventType.ORDER_CREATED,
            order.id,
            {
                "order_id": order.id,
                "user_id": order.user_id,
                "cart_id": cart.cart_id,
                "total": order.total,
                "currency": order.currency,
                "items": [item.model_dump(mode="json") for item in order.items],
            },
        )

        async with self._locks.hold(order.id):
            try:
                self._orders.create(order, saga, [created], request.idempotency_key)
            except ConflictError:
                # Two requests with one key raced past the lookup above.
                existing = (
                    self._orders.get_by_idempotency_key(request.idempotency_key)
                    if request.idempotency_key
                    else None
                )
                if existing:
                    return CheckoutResult(order=existing, idempotency_replayed=True)
                raise
            self._log.info("Checkout started", order_id=order.id, user_id=order.user_id, total=order.total)
            order = await self._drive(order.id)

        if order.status == OrderStatus.CANCELLED and order.failure_reason in _PAYMENT_FAILURES:
            raise PaymentFailed(order.id, order.failure_reason, order.status.value)
        return CheckoutResult(order=order)

    async def handle_payment_outcome(self, intent_id: str, outcome: PaymentOutcome) -> PaymentOutcomeAck:
        try:
            intent = self._payments.get(intent_id)
        except NotFoundError as exc:
            raise UnknownIntent(intent_id) from exc

        async with self._locks.hold(intent.order_id):
            intent = self._payments.apply_outcome(intent_id, outcome)
            reconciled = intent_outcome(intent)
            order, saga = self._load(intent.order_id)

            if saga.step == OrderStatus.PAYMENT_PENDING:
                applied = saga.payment_outcome is None and reconciled is not None
                if applied:
                    self._save(
                        saga.model_copy(update={"payment_outcome": reconciled, "payment_intent_id": intent.id})
                    )
                order = await self._drive(order.id)
                return PaymentOutcomeAck(order_id=order.id, status=order.status, applied=applied)

            if saga.step in (OrderStatus.CANCELLED, OrderStatus.FAILED) and reconciled and reconciled.succeeded:
                await self._refund_late_payment(intent)

            self._log.info(
                "Payment outcome ignored",
                order_id=order.id,
                intent_id=intent.id,
                outcome=outcome.value,
                step=saga.step.value,
            )
            return PaymentOutcomeAck(order_id=order.id, status=order.status, applied=False)

    async def handle_webhook(self, request: WebhookRequest) -> WebhookReceipt:
        intent, outcome = self._payments.reconcile_webhook(request)
        outcome = intent_outcome(intent) or outcome
        ack = await self.handle_payment_outcome(intent.id, outcome)
        return WebhookReceipt(
            received=True,
            intent_id=intent.id,
            outcome=outcome,
            order_status=ack.status,
            applied=ack.applied,
        )

    async def cancel(self, order_id: str) -> Order:
        async with self._locks.hold(order_id):
            order, saga = self._load(order_id)
            if saga.step == OrderStatus.CANCELLED:
                return order
            if saga.step == OrderStatus.COMPENSATING:
                return await self._drive(order_id)
            if saga.step == OrderStatus.PAYMENT_PENDING and saga.payment_outcome and saga.payment_outcome.succeeded:
                raise InvalidState(f"Order {order_id} is already paid and confirming", saga.step.value)
            if OrderStatus.COMPENSATING not in ALLOWED_TRANSITIONS[saga.step]:
                raise InvalidState(f"Order {order_id} cannot be cancelled from {saga.step.value}", saga.step.value)

            self._transition(order, saga, OrderStatus.COMPENSATING, order_updates={"failure_reason": "cancelled"})
            return await self._drive(order_id)

    async def refund(self, order_id: str) -> Order:
        async with self._locks.hold(order_id):
            order, saga = self._load(order_id)
            if saga.step in (OrderStatus.REFUNDING, OrderStatus.REFUNDED):
                return await self._drive(order_id)
            if saga.step != OrderStatus.CONFIRMED:
                raise InvalidState(f"Order {order_id} cannot be refunded from {saga.step.value}", saga.step.value)
            self._transition(order, saga, OrderStatus.REFUNDING)
            return await self._drive(order_id)

    async def resume(self, order_id: str) -> Order:
        async with self._locks.hold(order_id):
            return await self._drive(order_id)

    async def recover_all(self, limit: int = 100) -> List[Order]:
        """Drive every non-terminal saga that is not already being worked on in this process."""
        semaphore = asyncio.Semaphore(self._concurrency)
        sagas = [saga for saga in self._orders.list_active_sagas(limit) if not self._locks.is_held(saga.order_id)]

        async def run(order_id: str) -> Optional[Order]:
            async with semaphore:
                try:
                    return await self.resume(order_id)
                except InsufficientStock:
                    return self._load(order_id)[0]
                except DomainError as exc:
                    self._log.warning("Saga recovery failed", order_id=order_id, error=str(exc))
                    return None
                except Exception:
                    self._log.exception("Saga recovery crashed", order_id=order_id)
                    return None

        results = await asyncio.gather(*(run(saga.order_id) for saga in sagas))
        recovered = [order for order in results if order is not None]
        if sagas:
            self._log.info("Saga recovery pass", scanned=len(sagas), recovered=len(recovered))
        return recovered

    def get_order(self, order_id: str) -> OrderDetail:
        order, saga = self._load(order_id)
        return OrderDetail(order=order, saga=saga)

    # Step handlers. Each returns True after a transition and False when the
    # saga has to wait (for a webhook or for the next recovery pass).

    async def _drive(self, order_id: str) -> Order:
        while True:
            order, saga = self._load(order_id)
            step = self._steps.get(saga.step)
            if step is None:
                return order
            if not await step(order, saga):
                return self._load(order_id)[0]

    async def _begin_reservation(self, order: Order, saga: SagaInstance) -> bool:
        self._transition(order, saga, OrderStatus.RESERVING)
        return True

    async def _reserve(self, order: Order, saga: SagaInstance) -> bool:
        log = AttemptLog()
        try:
            reservation = await call_with_retry(
                lambda: self._inventory.reserve(order.id, order.items, order.id),
                self._policy,
                step=StepName.RESERVE.value,
                log=log,
                order_id=order.id,
            )
        except InsufficientStock as exc:
            saga = self._with_step(saga, StepName.RESERVE, order.id, log, "insufficient_stock")
            shortages = [shortage.model_dump() for shortage in exc.shortages]
            self._transition(
                order,
                saga,
                OrderStatus.FAILED,
                events=[
                    (
                        EventType.ORDER_FAILED,
                        {"order_id": order.id, "reason": "insufficient_stock", "shortages": shortages},
                    )
                ],
                order_updates={"failure_reason": "insufficient_stock"},
                saga_updates={"failure_reason": "insufficient_stock"},
            )
            raise InsufficientStock(exc.shortages, order.id, OrderStatus.FAILED.value) from exc
        except RetryExhausted:
            saga = self._with_step(saga, StepName.RESERVE, order.id, log, "exhausted")
            await self._release_unknown_hold(order.id)
            self._transition(
                order,
                saga,
                OrderStatus.FAILED,
                events=[(EventType.ORDER_FAILED, {"order_id": order.id, "reason": "reservation_unavailable"})],
                order_updates={"failure_reason": "reservation_unavailable"},
                saga_updates={"failure_reason": "reservation_unavailable"},
            )
            return True

        saga = self._with_step(saga, StepName.RESERVE, order.id, log, "held")
        if reservation.state != ReservationState.HELD:
            # A resumed saga can find its reservation already swept.
            return self._start_compensation(order, saga, "reservation_expired", reservation_id=reservation.id)
        self._transition(order, saga, OrderStatus.RESERVED, saga_updates={"reservation_id": reservation.id})
        return True

    async def _pay(self, order: Order, saga: SagaInstance) -> bool:
        if not self._reservation_held(saga):
            return self._start_compensation(order, saga, "reservation_expired")

        key = derive_key(order.id, "payment")
        log = AttemptLog()
        try:
            intent = await call_with_retry(
                lambda: self._payments.initiate(order.id, order.total, order.currency, order.payment_method, key),
                self._policy,
                step=StepName.PAY.value,
                log=log,
                order_id=order.id,
            )
        except RetryExhausted:
            saga = self._with_step(saga, StepName.PAY, key, log, "exhausted")
            existing = self._payments.get_for_order(order.id)
            return self._start_compensation(
                order,
                saga,
                "payment_timeout",
                payment_intent_id=existing.id if existing else None,
            )
        except ValidationError as exc:
            saga = self._with_step(saga, StepName.PAY, key, log, "rejected", error=str(exc.detail))
            existing = self._payments.get_for_order(order.id)
            return self._start_compensation(
                order,
                saga,
                "payment_rejected",
                payment_intent_id=existing.id if existing else None,
            )

        outcome = intent_outcome(intent)
        saga = self._with_step(saga, StepName.PAY, key, log, outcome.value if outcome else "pending")
        self._transition(
            order,
            saga,
            OrderStatus.PAYMENT_PENDING,
            order_updates={"payment_status": intent.status},
            saga_updates={
                "payment_intent_id": intent.id,
                "payment_outcome": outcome,
                "payment_deadline": self._clock.now() + self._payment_timeout,
            },
        )
        return True

    async def _await_payment(self, order: Order, saga: SagaInstance) -> bool:
        outcome = saga.payment_outcome
        if outcome is None and saga.payment_intent_id:
            # The intent may have been reconciled before the saga recorded it.
            outcome = intent_outcome(self._payments.get(saga.payment_intent_id))
            if outcome is not None:
                saga = self._save(saga.model_copy(update={"payment_outcome": outcome}))

        if outcome is None:
            if saga.payment_deadline and self._clock.now() >= saga.payment_deadline:
                return self._start_compensation(order, saga, "payment_timeout")
            if not self._reservation_held(saga):
                return self._start_compensation(order, saga, "reservation_expired")
            return False

        if not outcome.succeeded:
            return self._start_compensation(order, saga, "payment_failed")
        return await self._confirm(order, saga)

    async def _confirm(self, order: Order, saga: SagaInstance) -> bool:
        reservation_id = saga.reservation_id or ""
        if not self._reservation_held(saga, allow_committed=True):
            return self._start_compensation(order, saga, "reservation_expired")

        log = AttemptLog()
        try:
            await call_with_retry(
                lambda: self._inventory.commit(reservation_id),
                self._policy,
                step=StepName.COMMIT.value,
                log=log,
                order_id=order.id,
            )
        except InvalidState:
            # Released by the sweeper between the check and the commit.
            saga = self._with_step(saga, StepName.COMMIT, reservation_id, log, "released")
            return self._start_compensation(order, saga, "reservation_expired")
        except RetryExhausted:
            self._save(self._with_step(saga, StepName.COMMIT, reservation_id, log, "exhausted"))
            return False

        saga = self._with_step(saga, StepName.COMMIT, reservation_id, log, "committed")
        intent = self._payments.get(saga.payment_intent_id or "")
        self._transition(
            order,
            saga,
            OrderStatus.CONFIRMED,
            events=[
                (
                    EventType.ORDER_CONFIRMED,
                    {
                        "order_id": order.id,
                        "user_id": order.user_id,
                        "total": order.total,
                        "currency": order.currency,
                        "reservation_id": reservation_id,
                        "payment_intent_id": intent.id,
                    },
                ),
                (
                    EventType.PAYMENT_COMPLETED,
                    {
                        "order_id": order.id,
                        "intent_id": intent.id,
                        "amount": intent.amount,
                        "currency": intent.currency,
                        "outcome": saga.payment_outcome.value if saga.payment_outcome else intent.status.value,
                    },
                ),
            ],
            order_updates={"payment_status": intent.status},
        )
        return True

    async def _compensate(self, order: Order, saga: SagaInstance) -> bool:
        reason = saga.failure_reason or order.failure_reason or "cancelled"
        intent = self._payment_for(saga)

        if intent and intent.status in _SUCCEEDED_PAYMENTS:
            refund_key = derive_key(order.id, "refund")
            log = AttemptLog()
            try:
                intent = await call_with_retry(
                    lambda: self._payments.refund(intent.id),
                    self._policy,
                    step=StepName.REFUND.value,
                    log=log,
                    order_id=order.id,
                )
            except RetryExhausted:
                self._save(self._with_step(saga, StepName.REFUND, refund_key, log, "exhausted"))
                return False
            saga = self._with_step(saga, StepName.REFUND, refund_key, log, "refunded")

        release_key = saga.reservation_id or order.id
        log = AttemptLog()
        try:
            if saga.reservation_id:
                reservation_id = saga.reservation_id
                await call_with_retry(
                    lambda: self._inventory.release(reservation_id, reason),
                    self._policy,
                    step=StepName.RELEASE.value,
                    log=log,
                    order_id=order.id,
                )
            else:
                await call_with_retry(
                    lambda: self._inventory.release_for_key(order.id, reason),
                    self._policy,
                    step=StepName.RELEASE.value,
                    log=log,
                    order_id=order.id,
                )
        except RetryExhausted:
            self._save(self._with_step(saga, StepName.RELEASE, release_key, log, "exhausted"))
            return False
        saga = self._with_step(saga, StepName.RELEASE, release_key, log, "released")

        order_updates: Dict[str, Any] = {"failure_reason": reason}
        if intent:
            order_updates["payment_status"] = intent.status
        self._transition(
            order,
            saga,
            OrderStatus.CANCELLED,
            events=[(EventType.ORDER_CANCELLED, {"order_id": order.id, "reason": reason})],
            order_updates=order_updates,
        )
        self._log.info("Order compensated", order_id=order.id, reason=reason)
        return True

    async def _refund(self, order: Order, saga: SagaInstance) -> bool:
        intent = self._payment_for(saga)
        if not intent:
            raise InvalidState(f"Order {order.id} has no payment to refund", saga.step.value)

        refund_key = derive_key(order.id, "refund")
        log = AttemptLog()
        try:
            intent = await call_with_retry(
                lambda: self._payments.refund(intent.id),
                self._policy,
                step=StepName.REFUND.value,
                log=log,
                order_id=order.id,
            )
        except RetryExhausted:
            self._save(self._with_step(saga, StepName.REFUND, refund_key, log, "exhausted"))
            return False

        saga = self._with_step(saga, StepName.REFUND, refund_key, log, "refunded")
        self._transition(
            order,
            saga,
            OrderStatus.REFUNDED,
            events=[
                (
                    EventType.ORDER_REFUNDED,
                    {"order_id": order.id, "intent_id": intent.id, "amount": intent.amount, "currency": intent.currency},
                )
            ],
            order_updates={"payment_status": intent.status},
        )
        return True

    async def _refund_late_payment(self, intent: PaymentIntent) -> None:
        current = self._payments.get(intent.id)
        if current.status not in _SUCCEEDED_PAYMENTS:
            return
        try:
            await call_with_retry(
                lambda: self._payments.refund(current.id),
                self._policy,
                step=StepName.REFUND.value,
                order_id=current.order_id,
            )
        except RetryExhausted:
            self._log.error("Late payment refund failed", order_id=current.order_id, intent_id=current.id)
            return
        self._log.warning("Late payment refunded", order_id=current.order_id, intent_id=current.id)

    async def _release_unknown_hold(self, order_id: str) -> None:
        # The last reserve attempt may have landed after its timeout fired.
        try:
            await self._inventory.release_for_key(order_id, "reservation_failed")
        except DomainError as exc:
            self._log.warning("Could not release unknown hold", order_id=order_id, error=str(exc))

    # Persistence helpers

    def _start_compensation(
        self,
        order: Order,
        saga: SagaInstance,
        reason: str,
        **saga_updates: Any,
    ) -> bool:
        self._transition(
            order,
            saga,
            OrderStatus.COMPENSATING,
            order_updates={"failure_reason": reason},
            saga_updates={"failure_reason": reason, **saga_updates},
        )
        return True

    def _transition(
        self,
        order: Order,
        saga: SagaInstance,
        target: OrderStatus,
        events: Iterable[Tuple[EventType, Dict[str, Any]]] = (),
        order_updates: Optional[Dict[str, Any]] = None,
        saga_updates: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Order, SagaInstance]:
        if target not in ALLOWED_TRANSITIONS[saga.step]:
            raise InvalidState(
                f"Order {order.id} cannot move from {saga.step.value} to {target.value}",
                saga.step.value,
            )
        now = self._clock.now()
        updated_order = order.model_copy(update={**(order_updates or {}), "status": target, "updated_at": now})
        saga_fields: Dict[str, Any] = {
            **(saga_updates or {}),
            "step": target,
            "version": saga.version + 1,
            "updated_at": now,
        }
        if target in TERMINAL_STATUSES:
            saga_fields["archived_at"] = now
        updated_saga = saga.model_copy(update=saga_fields)
        outbox = [self._event(event_type, order.id, payload) for event_type, payload in events]

        self._orders.save_transition(updated_order, updated_saga, outbox, expected_version=saga.version)
        self._log.info(
            "Saga transition",
            order_id=order.id,
            from_step=saga.step.value,
            to_step=target.value,
            version=updated_saga.version,
        )
        return updated_order, updated_saga

    def _save(self, saga: SagaInstance) -> SagaInstance:
        updated = saga.model_copy(update={"version": saga.version + 1, "updated_at": self._clock.now()})
        self._orders.save_saga(updated, expected_version=saga.version)
        return updated

    def _with_step(
        self,
        saga: SagaInstance,
        step: StepName,
        key: str,
        log: AttemptLog,
        outcome: str,
        error: Optional[str] = None,
    ) -> SagaInstance:
        previous = saga.steps.get(step.value)
        record = SagaStepRecord(
            idempotency_key=key,
            attempts=(previous.attempts if previous else 0) + log.attempts,
            outcome=outcome,
            last_error=error or log.last_error,
            updated_at=self._clock.now(),
        )
        return saga.model_copy(update={"steps": {**saga.steps, step.value: record}})

    def _event(self, event_type: EventType, order_id: str, payload: Dict[str, Any]) -> OutboxEvent:
        return OutboxEvent(
            id=self._ids.new_id("evt_"),
            type=event_type.value,
            aggregate_id=order_id,
            payload=payload,
            created_at=self._clock.now(),
        )

    def _load(self, order_id: str) -> Tuple[Order, SagaInstance]:
        order = self._orders.get(order_id)
        saga = self._orders.get_saga(order_id)
        if not order or not saga:
            raise NotFoundError()
        return order, saga

    def _payment_for(self, saga: SagaInstance) -> Optional[PaymentIntent]:
        if saga.payment_intent_id:
            return self._payments.get(saga.payment_intent_id)
        return self._payments.get_for_order(saga.order_id)

    def _reservation_held(self, saga: SagaInstance, allow_committed: bool = False) -> bool:
        if not saga.reservation_id:
            return False
        reservation = self._inventory.get_reservation(saga.reservation_id)
        if reservation.state == ReservationState.HELD:
            return True
        return allow_committed and reservation.state == ReservationState.COMMITTED

    def _validate(self, request: CheckoutRequest) -> None:
        cart = request.cart
        if not cart.items:
            raise ValidationError("Cart is empty")
        if cart.user_id != request.user_id:
            raise ValidationError("Cart belongs to another user")
        age = self._clock.now() - cart.priced_at
        if age > self._freshness:
            raise ValidationError(f"Cart prices are stale ({int(age.total_seconds())}s old)")
        if order_total(cart.items) <= 0:
            raise ValidationError("Cart total must be positive")
