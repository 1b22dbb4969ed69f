import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from ledgerline.clock import ManualClock
from ledgerline.domain import (
    EventType,
    InventoryRecord,
    LineItem,
    OutboxStatus,
    Reservation,
    ReservationLine,
    ReservationState,
    StockUpdate,
)
from ledgerline.errors import InsufficientStock, InvalidState, ValidationError
from ledgerline.inventory import InventoryReservationEngine, merge_lines
from ledgerline.persistence.db import Database
from ledgerline.persistence.repositories import SqlAlchemyInventoryRepository, SqlAlchemyOutboxRepository
from ledgerline.repositories import InMemoryInventoryRepository, InMemoryOutboxRepository, KeyedMutex

SEED = [
    InventoryRecord(product_id="p_1", stock_count=1),
    InventoryRecord(product_id="p_chair", variant_id="red", stock_count=5),
    InventoryRecord(product_id="p_lamp", stock_count=10),
]


def build_repos(backend, tmp_path):
    if backend == "memory":
        outbox = InMemoryOutboxRepository()
        return InMemoryInventoryRepository(SEED, outbox), outbox
    db = Database(f"sqlite:///{tmp_path / 'inventory.db'}")
    db.create_tables()
    inventory = SqlAlchemyInventoryRepository(db)
    for record in SEED:
        inventory.set_stock(record.product_id, record.variant_id, record.stock_count)
    return inventory, SqlAlchemyOutboxRepository(db)


@pytest.fixture(params=["memory", "sql"])
def backend(request, tmp_path, ids):
    inventory, outbox = build_repos(request.param, tmp_path)
    clock = ManualClock()
    engine = InventoryReservationEngine(inventory, clock, ids, reservation_ttl_seconds=60)
    return engine, outbox, clock


def lines(*pairs):
    return [ReservationLine(product_id=product_id, variant_id=variant_id, qty=qty) for product_id, variant_id, qty in pairs]


class TestMergeLines:
    def test_duplicate_keys_are_summed(self):
        merged = merge_lines(
            [
                LineItem(product_id="p_lamp", qty=1, unit_price=5.0),
                LineItem(product_id="p_lamp", qty=2, unit_price=5.0),
                LineItem(product_id="p_chair", variant_id="red", qty=1, unit_price=9.0),
            ]
        )
        assert {(line.product_id, line.variant_id, line.qty) for line in merged} == {
            ("p_lamp", "default", 3),
            ("p_chair", "red", 1),
        }


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_increments_reserved_count(self, backend):
        engine, _, _ = backend
        reservation = await engine.reserve("ord_a", lines(("p_lamp", "default", 3)), "ord_a")

        assert reservation.state == ReservationState.HELD
        record = engine.get_record("p_lamp", "default")
        assert record.reserved_count == 3
        assert record.stock_count == 10
        assert record.available == 7

    @pytest.mark.asyncio
    async def test_same_key_returns_existing_reservation(self, backend):
        engine, _, _ = backend
        first = await engine.reserve("ord_a", lines(("p_lamp", "default", 2)), "ord_a")
        second = await engine.reserve("ord_a", lines(("p_lamp", "default", 2)), "ord_a")

        assert first.id == second.id
        assert engine.get_record("p_lamp", "default").reserved_count == 2

    @pytest.mark.asyncio
    async def test_shortage_leaves_no_partial_hold(self, backend):
        engine, _, _ = backend
        with pytest.raises(InsufficientStock) as exc_info:
            await engine.reserve(
                "ord_a",
                lines(("p_lamp", "default", 2), ("p_chair", "red", 6)),
                "ord_a",
            )

        shortage = exc_info.value.shortages[0]
        assert (shortage.product_id, shortage.variant_id) == ("p_chair", "red")
        assert shortage.available == 5
        assert shortage.requested == 6
        assert engine.get_record("p_lamp", "default").reserved_count == 0
        assert engine.get_record("p_chair", "red").reserved_count == 0

    @pytest.mark.asyncio
    async def test_unknown_product_is_a_shortage(self, backend):
        engine, _, _ = backend
        with pytest.raises(InsufficientStock) as exc_info:
            await engine.reserve("ord_a", lines(("p_missing", "default", 1)), "ord_a")
        assert exc_info.value.shortages[0].available == 0


class TestSettle:
    @pytest.mark.asyncio
    async def test_commit_moves_units_out_of_stock(self, backend):
        engine, _, _ = backend
        reservation = await engine.reserve("ord_a", lines(("p_chair", "red", 2)), "ord_a")

        committed = await engine.commit(reservation.id)

        assert committed.state == ReservationState.COMMITTED
        record = engine.get_record("p_chair", "red")
        assert record.stock_count == 3
        assert record.reserved_count == 0

    @pytest.mark.asyncio
    async def test_commit_twice_is_a_no_op(self, backend):
        engine, _, _ = backend
        reservation = await engine.reserve("ord_a", lines(("p_chair", "red", 2)), "ord_a")
        await engine.commit(reservation.id)
        await engine.commit(reservation.id)

        assert engine.get_record("p_chair", "red").stock_count == 3

    @pytest.mark.asyncio
    async def test_release_restores_availability_and_emits_event(self, backend):
        engine, outbox, _ = backend
        reservation = await engine.reserve("ord_a", lines(("p_lamp", "default", 4)), "ord_a")

        released = await engine.release(reservation.id, "payment_failed")
        await engine.release(reservation.id, "payment_failed")

        assert released.state == ReservationState.RELEASED
        assert released.release_reason == "payment_failed"
        record = engine.get_record("p_lamp", "default")
        assert record.reserved_count == 0
        assert record.available == 10
        events = [event for event in outbox.list(OutboxStatus.PENDING, 100) if event.type == EventType.INVENTORY_RELEASED.value]
        assert len(events) == 1
        assert events[0].payload["reason"] == "payment_failed"
        assert events[0].aggregate_id == "ord_a"

    @pytest.mark.asyncio
    async def test_commit_after_release_is_rejected(self, backend):
        engine, _, _ = backend
        reservation = await engine.reserve("ord_a", lines(("p_lamp", "default", 1)), "ord_a")
        await engine.release(reservation.id)

        with pytest.raises(InvalidState):
            await engine.commit(reservation.id)

    @pytest.mark.asyncio
    async def test_release_after_commit_is_rejected(self, backend):
        engine, _, _ = backend
        reservation = await engine.reserve("ord_a", lines(("p_lamp", "default", 1)), "ord_a")
        await engine.commit(reservation.id)

        with pytest.raises(InvalidState):
            await engine.release(reservation.id)

    @pytest.mark.asyncio
    async def test_release_for_unknown_key_returns_none(self, backend):
        engine, _, _ = backend
        assert await engine.release_for_key("ord_nothing") is None


class TestSweeper:
    @pytest.mark.asyncio
    async def test_expired_holds_are_released(self, backend):
        engine, outbox, clock = backend
        stale = await engine.reserve("ord_a", lines(("p_lamp", "default", 2)), "ord_a")
        clock.advance(30)
        fresh = await engine.reserve("ord_b", lines(("p_lamp", "default", 3)), "ord_b")
        clock.advance(45)

        released = await engine.sweep_expired()

        assert [reservation.id for reservation in released] == [stale.id]
        assert engine.get_reservation(stale.id).release_reason == "expired"
        assert engine.get_reservation(fresh.id).state == ReservationState.HELD
        assert engine.get_record("p_lamp", "default").reserved_count == 3

    @pytest.mark.asyncio
    async def test_committed_reservations_are_not_swept(self, backend):
        engine, _, clock = backend
        reservation = await engine.reserve("ord_a", lines(("p_lamp", "default", 2)), "ord_a")
        await engine.commit(reservation.id)
        clock.advance(120)

        assert await engine.sweep_expired() == []


class TestStock:
    def test_set_stock_below_reserved_is_rejected(self, backend):
        engine, _, _ = backend
        asyncio.run(engine.reserve("ord_a", lines(("p_chair", "red", 4)), "ord_a"))

        with pytest.raises(ValidationError):
            engine.set_stock("p_chair", "red", StockUpdate(stock_count=3))

    def test_set_stock_creates_missing_record(self, backend):
        engine, _, _ = backend
        record = engine.set_stock("p_new", "default", StockUpdate(stock_count=7))
        assert record.available == 7
        assert engine.get_record("p_new", "default").stock_count == 7


class TestKeyedMutex:
    def test_locks_are_dropped_after_use(self):
        mutex = KeyedMutex()
        with mutex.lock_for(("p_1", "default")):
            with mutex.lock_for(("p_2", "default")):
                assert len(mutex) == 2
        assert len(mutex) == 0

    def test_contended_key_is_dropped_once_idle(self):
        mutex = KeyedMutex()
        counter = {"value": 0}

        def bump(_):
            with mutex.lock_for("p_hot"):
                current = counter["value"]
                counter["value"] = current + 1

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(bump, range(200)))

        assert counter["value"] == 200
        assert len(mutex) == 0


class TestNoOversell:
    def test_parallel_threads_never_exceed_stock(self):
        outbox = InMemoryOutboxRepository()
        inventory = InMemoryInventoryRepository([InventoryRecord(product_id="p_hot", stock_count=5)], outbox)
        clock = ManualClock()

        def attempt(index):
            reservation = Reservation(
                id=f"res_{index}",
                order_id=f"ord_{index}",
                idempotency_key=f"ord_{index}",
                lines=lines(("p_hot", "default", 1)),
                state=ReservationState.HELD,
                expires_at=clock.now() + timedelta(minutes=5),
                created_at=clock.now(),
                updated_at=clock.now(),
            )
            try:
                inventory.hold(reservation)
                return True
            except InsufficientStock:
                return False

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(50)))

        record = inventory.get("p_hot", "default")
        assert results.count(True) == 5
        assert record.reserved_count == 5
        assert record.reserved_count <= record.stock_count

    @pytest.mark.asyncio
    async def test_concurrent_reserves_for_last_units(self, backend):
        engine, _, _ = backend

        async def attempt(index):
            try:
                await engine.reserve(f"ord_{index}", lines(("p_chair", "red", 2)), f"ord_{index}")
                return True
            except InsufficientStock:
                return False

        results = await asyncio.gather(*(attempt(index) for index in range(6)))

        assert results.count(True) == 2
        record = engine.get_record("p_chair", "red")
        assert record.reserved_count == 4
        assert record.available == 1
