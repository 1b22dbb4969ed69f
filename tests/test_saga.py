import asyncio
import json

import pytest

from ledgerline.container import build_container
from ledgerline.domain import (
    EventType,
    OrderStatus,
    OutboxStatus,
    PaymentOutcome,
    PaymentStatus,
    ReservationState,
    StockUpdate,
    WebhookRequest,
)
from ledgerline.errors import InsufficientStock, InvalidState, PaymentFailed, UnknownIntent, ValidationError
from ledgerline.gateway import SimulatedPaymentGateway
from signing import sign_webhook


def events_of(container, event_type, order_id=None):
    return [
        event
        for event in container.publisher.list_events(limit=1000)
        if event.type == event_type.value and (order_id is None or event.aggregate_id == order_id)
    ]


def webhook(container, intent_id, status):
    payload = json.dumps({"intent_id": intent_id, "status": status}).encode()
    timestamp = int(container.clock.now().timestamp())
    header = sign_webhook(container.settings.webhook_secret, payload, timestamp)
    return WebhookRequest(signature_header=header, payload=payload)


def record(container, product_id="p_1", variant_id="default"):
    return container.inventory.get_record(product_id, variant_id)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_checkout_confirms_and_commits_stock(self, container, stock, make_request, item):
        stock("p_1", 3)
        stock("p_lamp", 5)

        result = await container.orchestrator.start_checkout(
            make_request([item("p_1", qty=2, unit_price=10.0), item("p_lamp", qty=1, unit_price=4.99)])
        )

        order = result.order
        assert order.status == OrderStatus.CONFIRMED
        assert order.total == 24.99
        assert order.payment_status == PaymentStatus.AUTHORIZED
        assert (record(container).stock_count, record(container).reserved_count) == (1, 0)
        assert record(container, "p_lamp").stock_count == 4

        detail = container.orchestrator.get_order(order.id)
        assert detail.saga.step == OrderStatus.CONFIRMED
        assert detail.saga.archived_at is not None
        assert detail.saga.payment_outcome == PaymentOutcome.AUTHORIZED
        assert container.inventory.get_reservation(detail.saga.reservation_id).state == ReservationState.COMMITTED
        assert set(detail.saga.steps) == {"reserve", "pay", "commit"}

        types = [event.type for event in container.publisher.list_events(limit=100)]
        assert types == ["order.created", "order.confirmed", "payment.completed"]

    @pytest.mark.asyncio
    async def test_events_reach_the_bus_and_notification_sink(self, container, stock, make_request, item):
        stock("p_1", 1)
        container.notifications.subscribe()
        await container.orchestrator.start_checkout(make_request([item()]))

        assert await container.publisher.drain_all() == 3
        assert container.publisher.pending_count() == 0
        assert container.notifications.process_pending() == 1
        assert container.notifications.delivered[0].type == "order.confirmed"

    @pytest.mark.asyncio
    async def test_idempotency_key_replays_the_order(self, container, stock, make_request, item):
        stock("p_1", 5)
        first = await container.orchestrator.start_checkout(make_request([item()], idempotency_key="idem-1"))
        second = await container.orchestrator.start_checkout(make_request([item()], idempotency_key="idem-1"))

        assert second.idempotency_replayed is True
        assert second.order.id == first.order.id
        assert record(container).stock_count == 4


class TestValidation:
    @pytest.mark.asyncio
    async def test_empty_cart_is_rejected(self, container, make_request):
        with pytest.raises(ValidationError):
            await container.orchestrator.start_checkout(make_request([]))

    @pytest.mark.asyncio
    async def test_stale_prices_are_rejected(self, container, clock, stock, make_request, item):
        stock("p_1", 1)
        request = make_request([item()])
        clock.advance(901)
        with pytest.raises(ValidationError):
            await container.orchestrator.start_checkout(request)
        assert record(container).reserved_count == 0

    @pytest.mark.asyncio
    async def test_cart_of_another_user_is_rejected(self, container, stock, make_request, item):
        stock("p_1", 1)
        request = make_request([item()], user_id="user-1")
        with pytest.raises(ValidationError):
            await container.orchestrator.start_checkout(request.model_copy(update={"user_id": "user-2"}))


class TestInsufficientStock:
    @pytest.mark.asyncio
    async def test_shortage_fails_order_before_payment(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)

        with pytest.raises(InsufficientStock) as exc_info:
            await container.orchestrator.start_checkout(make_request([item(qty=2)]))

        error = exc_info.value
        assert error.order_id == "ord_1"
        assert error.status == "failed"
        assert error.shortages[0].available == 1
        detail = container.orchestrator.get_order("ord_1")
        assert detail.order.status == OrderStatus.FAILED
        assert detail.order.failure_reason == "insufficient_stock"
        assert gateway.calls == []
        assert len(events_of(container, EventType.ORDER_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_two_checkouts_race_for_the_last_unit(self, container, stock, make_request, item):
        stock("p_1", 1)
        first = make_request([item()], user_id="user-a", cart_id="cart-a")
        second = make_request([item()], user_id="user-b", cart_id="cart-b")

        results = await asyncio.gather(
            container.orchestrator.start_checkout(first),
            container.orchestrator.start_checkout(second),
            return_exceptions=True,
        )

        confirmed = [result for result in results if not isinstance(result, Exception)]
        failed = [result for result in results if isinstance(result, InsufficientStock)]
        assert len(confirmed) == 1 and len(failed) == 1
        assert confirmed[0].order.status == OrderStatus.CONFIRMED
        assert container.orchestrator.get_order(failed[0].order_id).order.status == OrderStatus.FAILED
        assert (record(container).stock_count, record(container).reserved_count) == (0, 0)


class TestPaymentFailures:
    @pytest.mark.asyncio
    async def test_timeouts_then_decline_cancels_once(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "timeout", "timeout", "failed")

        with pytest.raises(PaymentFailed) as exc_info:
            await container.orchestrator.start_checkout(make_request([item()]))

        assert exc_info.value.order_id == "ord_1"
        assert exc_info.value.status == "cancelled"
        detail = container.orchestrator.get_order("ord_1")
        assert detail.order.status == OrderStatus.CANCELLED
        assert detail.order.payment_status == PaymentStatus.FAILED
        assert detail.saga.steps["pay"].attempts == 3
        assert container.inventory.get_reservation(detail.saga.reservation_id).state == ReservationState.RELEASED
        assert (record(container).stock_count, record(container).reserved_count) == (1, 0)

        await container.publisher.drain_all()
        cancelled = [event for event in container.event_bus.published if event.type == "order.cancelled"]
        assert len(cancelled) == 1
        assert len(events_of(container, EventType.INVENTORY_RELEASED)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_payment_retries_compensate(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "timeout", "timeout", "timeout")

        with pytest.raises(PaymentFailed) as exc_info:
            await container.orchestrator.start_checkout(make_request([item()]))

        assert exc_info.value.reason == "payment_timeout"
        assert record(container).available == 1

    @pytest.mark.asyncio
    async def test_decline_releases_stock(self, container, gateway, stock, make_request, item):
        stock("p_1", 2)
        gateway.script("ord_1", "failed")

        with pytest.raises(PaymentFailed):
            await container.orchestrator.start_checkout(make_request([item(qty=2)]))

        assert record(container).available == 2
        assert events_of(container, EventType.ORDER_CANCELLED)[0].payload["reason"] == "payment_failed"


class TestAsyncPayment:
    @pytest.mark.asyncio
    async def test_webhook_confirms_pending_order(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")

        result = await container.orchestrator.start_checkout(make_request([item()]))
        assert result.order.status == OrderStatus.PAYMENT_PENDING
        assert record(container).reserved_count == 1

        intent = container.payments.get_for_order("ord_1")
        receipt = await container.orchestrator.handle_webhook(webhook(container, intent.id, "succeeded"))

        assert receipt.applied is True
        assert receipt.outcome == PaymentOutcome.CAPTURED
        assert receipt.order_status == OrderStatus.CONFIRMED
        assert (record(container).stock_count, record(container).reserved_count) == (0, 0)

    @pytest.mark.asyncio
    async def test_replayed_webhook_for_confirmed_order_is_ignored(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))
        intent = container.payments.get_for_order("ord_1")

        await container.orchestrator.handle_webhook(webhook(container, intent.id, "succeeded"))
        replay = await container.orchestrator.handle_webhook(webhook(container, intent.id, "succeeded"))

        assert replay.applied is False
        assert replay.order_status == OrderStatus.CONFIRMED
        assert len(events_of(container, EventType.ORDER_CONFIRMED)) == 1
        assert record(container).stock_count == 0

    @pytest.mark.asyncio
    async def test_failed_webhook_compensates(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))
        intent = container.payments.get_for_order("ord_1")

        receipt = await container.orchestrator.handle_webhook(webhook(container, intent.id, "declined"))

        assert receipt.order_status == OrderStatus.CANCELLED
        assert record(container).available == 1

    @pytest.mark.asyncio
    async def test_late_success_after_cancel_is_refunded(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))
        cancelled = await container.orchestrator.cancel("ord_1")
        assert cancelled.status == OrderStatus.CANCELLED

        intent = container.payments.get_for_order("ord_1")
        receipt = await container.orchestrator.handle_webhook(webhook(container, intent.id, "succeeded"))

        assert receipt.applied is False
        assert receipt.order_status == OrderStatus.CANCELLED
        assert gateway.refunds == ["ord_1:refund"]
        assert container.payments.get(intent.id).status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_success_after_reservation_expired_is_voided(self, container, clock, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))
        clock.advance(901)
        await container.inventory.sweep_expired()

        intent = container.payments.get_for_order("ord_1")
        receipt = await container.orchestrator.handle_webhook(webhook(container, intent.id, "succeeded"))

        assert receipt.order_status == OrderStatus.CANCELLED
        detail = container.orchestrator.get_order("ord_1")
        assert detail.order.failure_reason == "reservation_expired"
        assert detail.order.payment_status == PaymentStatus.REFUNDED
        assert gateway.refunds == ["ord_1:refund"]
        assert (record(container).stock_count, record(container).reserved_count) == (1, 0)

    @pytest.mark.asyncio
    async def test_payment_deadline_expiry_cancels_on_recovery(self, container, clock, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))

        assert [order.status for order in await container.orchestrator.recover_all()] == [OrderStatus.PAYMENT_PENDING]

        clock.advance(601)
        recovered = await container.orchestrator.recover_all()

        assert [order.status for order in recovered] == [OrderStatus.CANCELLED]
        assert recovered[0].failure_reason == "payment_timeout"
        assert record(container).available == 1

    @pytest.mark.asyncio
    async def test_resume_picks_up_outcome_reconciled_elsewhere(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))
        intent = container.payments.get_for_order("ord_1")
        container.payments.reconcile_webhook(webhook(container, intent.id, "succeeded"))

        order = await container.orchestrator.resume("ord_1")

        assert order.status == OrderStatus.CONFIRMED
        assert container.orchestrator.get_order("ord_1").saga.payment_outcome == PaymentOutcome.CAPTURED

    @pytest.mark.asyncio
    async def test_unknown_intent_outcome_is_rejected(self, container):
        with pytest.raises(UnknownIntent):
            await container.orchestrator.handle_payment_outcome("pi_missing", PaymentOutcome.CAPTURED)

    @pytest.mark.asyncio
    async def test_direct_outcome_confirms_then_refunds(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))
        intent = container.payments.get_for_order("ord_1")

        ack = await container.orchestrator.handle_payment_outcome(intent.id, PaymentOutcome.CAPTURED)

        assert ack.applied is True
        assert ack.status == OrderStatus.CONFIRMED
        assert container.payments.get(intent.id).status == PaymentStatus.CAPTURED
        assert container.orchestrator.get_order("ord_1").order.payment_status == PaymentStatus.CAPTURED

        refunded = await container.orchestrator.refund("ord_1")

        assert refunded.status == OrderStatus.REFUNDED
        assert refunded.payment_status == PaymentStatus.REFUNDED
        assert gateway.refunds == ["ord_1:refund"]
        assert await container.orchestrator.recover_all() == []
        with pytest.raises(InvalidState):
            await container.orchestrator.cancel("ord_1")

    @pytest.mark.asyncio
    async def test_direct_success_after_cancel_is_refunded(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))
        await container.orchestrator.cancel("ord_1")
        intent = container.payments.get_for_order("ord_1")

        ack = await container.orchestrator.handle_payment_outcome(intent.id, PaymentOutcome.CAPTURED)

        assert ack.applied is False
        assert ack.status == OrderStatus.CANCELLED
        assert gateway.refunds == ["ord_1:refund"]
        assert container.payments.get(intent.id).status == PaymentStatus.REFUNDED


class TestCancelAndRefund:
    @pytest.mark.asyncio
    async def test_cancel_pending_order_restores_stock(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))

        first = await container.orchestrator.cancel("ord_1")
        second = await container.orchestrator.cancel("ord_1")

        assert first.status == second.status == OrderStatus.CANCELLED
        assert first.failure_reason == "cancelled"
        assert record(container).available == 1
        assert len(events_of(container, EventType.ORDER_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_confirmed_order_cannot_be_cancelled(self, container, stock, make_request, item):
        stock("p_1", 1)
        result = await container.orchestrator.start_checkout(make_request([item()]))

        with pytest.raises(InvalidState) as exc_info:
            await container.orchestrator.cancel(result.order.id)
        assert exc_info.value.status == "confirmed"

    @pytest.mark.asyncio
    async def test_refund_confirmed_order(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        result = await container.orchestrator.start_checkout(make_request([item()]))

        refunded = await container.orchestrator.refund(result.order.id)
        again = await container.orchestrator.refund(result.order.id)

        assert refunded.status == again.status == OrderStatus.REFUNDED
        assert refunded.payment_status == PaymentStatus.REFUNDED
        assert gateway.refunds == [f"{result.order.id}:refund"]
        assert len(events_of(container, EventType.ORDER_REFUNDED)) == 1

    @pytest.mark.asyncio
    async def test_refund_requires_confirmed_order(self, container, gateway, stock, make_request, item):
        stock("p_1", 1)
        gateway.script("ord_1", "pending")
        await container.orchestrator.start_checkout(make_request([item()]))

        with pytest.raises(InvalidState):
            await container.orchestrator.refund("ord_1")


class CrashingGateway(SimulatedPaymentGateway):
    """Kills the process mid-call while ``crash`` is set, before or after the charge lands."""

    def __init__(self, after_charge: bool) -> None:
        super().__init__("approve")
        self.after_charge = after_charge
        self.crash = True

    async def authorize(self, intent):
        if not self.crash:
            return await super().authorize(intent)
        if self.after_charge:
            await super().authorize(intent)
        raise RuntimeError("process killed")


class TestResumption:
    @pytest.fixture
    def durable_settings(self, settings, tmp_path):
        return settings.model_copy(update={"database_url": f"sqlite:///{tmp_path / 'saga.db'}"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("after_charge", [False, True])
    async def test_restart_drives_order_to_confirmed(self, durable_settings, clock, make_request, item, after_charge):
        gateway = CrashingGateway(after_charge)
        first = build_container(durable_settings, clock=clock, gateway=gateway)
        first.inventory.set_stock("p_1", "default", StockUpdate(stock_count=1))

        with pytest.raises(RuntimeError):
            await first.orchestrator.start_checkout(make_request([item()]))
        assert first.inventory.get_record("p_1", "default").reserved_count == 1

        gateway.crash = False
        restarted = build_container(durable_settings, clock=clock, gateway=gateway)
        recovered = await restarted.orchestrator.recover_all()

        assert [order.status for order in recovered] == [OrderStatus.CONFIRMED]
        order_id = recovered[0].id
        inventory = restarted.inventory.get_record("p_1", "default")
        assert (inventory.stock_count, inventory.reserved_count) == (0, 0)
        intents = restarted.payments.list_by_order(order_id)
        assert len(intents) == 1
        assert intents[0].status == PaymentStatus.AUTHORIZED
        assert len(set(gateway.calls)) == 1
        confirmed = [event for event in restarted.publisher.list_events(limit=100) if event.type == "order.confirmed"]
        assert len(confirmed) == 1

    @pytest.mark.asyncio
    async def test_restart_finishes_expired_payment(self, durable_settings, clock, make_request, item):
        gateway = SimulatedPaymentGateway("async")
        first = build_container(durable_settings, clock=clock, gateway=gateway)
        first.inventory.set_stock("p_1", "default", StockUpdate(stock_count=1))
        result = await first.orchestrator.start_checkout(make_request([item()]))
        assert result.order.status == OrderStatus.PAYMENT_PENDING

        clock.advance(601)
        restarted = build_container(durable_settings, clock=clock, gateway=gateway)
        recovered = await restarted.orchestrator.recover_all()

        assert [order.status for order in recovered] == [OrderStatus.CANCELLED]
        assert recovered[0].failure_reason == "payment_timeout"
        assert restarted.inventory.get_record("p_1", "default").available == 1
        pending = restarted.publisher.list_events(OutboxStatus.PENDING, 100)
        assert [event.type for event in pending].count("order.cancelled") == 1


class ExplodingGateway(SimulatedPaymentGateway):
    """Raises an unexpected error for the orders in ``broken_orders``."""

    def __init__(self) -> None:
        super().__init__("async")
        self.broken_orders = {"ord_1"}

    async def authorize(self, intent):
        if intent.order_id in self.broken_orders:
            raise RuntimeError("gateway client bug")
        return await super().authorize(intent)


class TestRecovery:
    @pytest.fixture
    def gateway(self):
        return ExplodingGateway()

    @pytest.mark.asyncio
    async def test_one_crashing_saga_does_not_stop_the_pass(self, container, clock, stock, make_request, item):
        stock("p_1", 2)
        with pytest.raises(RuntimeError):
            await container.orchestrator.start_checkout(make_request([item()]))
        pending = await container.orchestrator.start_checkout(make_request([item()], cart_id="cart-2"))
        assert pending.order.status == OrderStatus.PAYMENT_PENDING

        clock.advance(601)
        recovered = await container.orchestrator.recover_all()

        assert [(order.id, order.status) for order in recovered] == [("ord_2", OrderStatus.CANCELLED)]
        assert container.orchestrator.get_order("ord_1").saga.step == OrderStatus.RESERVED
        assert record(container).reserved_count == 1


class TestBackgroundWorkers:
    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(
            update={
                "outbox_poll_interval_seconds": 0.01,
                "sweeper_interval_seconds": 0.01,
                "recovery_interval_seconds": 0.01,
            }
        )

    @pytest.mark.asyncio
    async def test_workers_publish_and_stop(self, container, stock, make_request, item):
        stock("p_1", 1)
        await container.orchestrator.start_checkout(make_request([item()]))

        container.workers.start()
        assert container.workers.running
        for _ in range(100):
            if container.publisher.pending_count() == 0 and container.notifications.delivered:
                break
            await asyncio.sleep(0.01)
        await container.close()

        assert not container.workers.running
        assert container.publisher.pending_count() == 0
        assert [event.type for event in container.notifications.delivered] == ["order.confirmed"]
