"""Inventory Reservation Engine.

Hard reservations: available stock is checked and incremented atomically per
(product, variant) before a reservation is returned, and a reservation covers
every line of an order or none of them. Counters are only ever changed through
the HELD -> COMMITTED / HELD -> RELEASED lifecycle.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .clock import Clock
from .domain import (
    EventType,
    InventoryRecord,
    LineItem,
    OutboxEvent,
    Reservation,
    ReservationLine,
    ReservationState,
    StockUpdate,
)
from .errors import InsufficientStock, InvalidState, NotFoundError, ValidationError
from .id_provider import IdProvider
from .logging import ServiceLogger
from .repositories import InventoryRepository


def merge_lines(items: Iterable[Union[LineItem, ReservationLine]]) -> List[ReservationLine]:
    """Collapse repeated (product, variant) lines into one line per key."""
    totals: Dict[Tuple[str, str], int] = {}
    for item in items:
        key = (item.product_id, item.variant_id)
        totals[key] = totals.get(key, 0) + int(item.qty)
    return [
        ReservationLine(product_id=product_id, variant_id=variant_id, qty=qty)
        for (product_id, variant_id), qty in totals.items()
    ]


class InventoryReservationEngine:
    def __init__(
        self,
        inventory: InventoryRepository,
        clock: Clock,
        ids: IdProvider,
        reservation_ttl_seconds: int,
    ) -> None:
        self._inventory = inventory
        self._clock = clock
        self._ids = ids
        self._ttl = timedelta(seconds=reservation_ttl_seconds)
        self._log = ServiceLogger("inventory")

    async def reserve(
        self,
        order_id: str,
        items: Iterable[Union[LineItem, ReservationLine]],
        idempotency_key: str,
    ) -> Reservation:
        lines = merge_lines(items)
        if not lines:
            raise ValidationError("Nothing to reserve")

        now = self._clock.now()
        candidate = Reservation(
            id=self._ids.new_id("res_"),
            order_id=order_id,
            idempotency_key=idempotency_key,
            lines=lines,
            state=ReservationState.HELD,
            expires_at=now + self._ttl,
            created_at=now,
            updated_at=now,
        )
        try:
            reservation = self._inventory.hold(candidate)
        except InsufficientStock as exc:
            self._log.info(
                "Reservation rejected",
                order_id=order_id,
                shortages=",".join(f"{s.product_id}/{s.variant_id}" for s in exc.shortages),
            )
            raise

        if reservation.id != candidate.id:
            self._log.info("Reservation replayed", order_id=order_id, reservation_id=reservation.id)
        else:
            self._log.info("Reservation held", order_id=order_id, reservation_id=reservation.id, lines=len(lines))
        return reservation

    async def commit(self, reservation_id: str) -> Reservation:
        reservation = self._inventory.commit(reservation_id, self._clock.now())
        self._log.info("Reservation committed", reservation_id=reservation_id, order_id=reservation.order_id)
        return reservation

    async def release(self, reservation_id: str, reason: str = "cancelled") -> Reservation:
        current = self._inventory.get_reservation(reservation_id)
        if not current:
            raise NotFoundError()
        now = self._clock.now()
        event = OutboxEvent(
            id=self._ids.new_id("evt_"),
            type=EventType.INVENTORY_RELEASED.value,
            aggregate_id=current.order_id,
            payload={
                "reservation_id": current.id,
                "order_id": current.order_id,
                "reason": reason,
                "lines": [line.model_dump(mode="json") for line in current.lines],
            },
            created_at=now,
        )
        reservation = self._inventory.release(reservation_id, reason, now, [event])
        self._log.info(
            "Reservation released",
            reservation_id=reservation_id,
            order_id=reservation.order_id,
            reason=reservation.release_reason,
        )
        return reservation

    async def release_for_key(self, idempotency_key: str, reason: str = "cancelled") -> Optional[Reservation]:
        """Release whatever reservation a key produced, if any; used when the reserve outcome is unknown."""
        reservation = self._inventory.get_reservation_by_key(idempotency_key)
        if not reservation:
            return None
        return await self.release(reservation.id, reason)

    async def sweep_expired(self, limit: int = 100) -> List[Reservation]:
        released: List[Reservation] = []
        for reservation in self._inventory.list_expired(self._clock.now(), limit):
            try:
                released.append(await self.release(reservation.id, "expired"))
            except InvalidState:
                # Committed between the scan and the release.
                self._log.debug("Skipped expired reservation", reservation_id=reservation.id)
        if released:
            self._log.info("Expired reservations released", count=len(released))
        return released

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self._inventory.get_reservation(reservation_id)
        if not reservation:
            raise NotFoundError()
        return reservation

    def get_record(self, product_id: str, variant_id: str) -> InventoryRecord:
        record = self._inventory.get(product_id, variant_id)
        if not record:
            raise NotFoundError()
        return record

    def list_records(self) -> List[InventoryRecord]:
        return self._inventory.list_all()

    def set_stock(self, product_id: str, variant_id: str, payload: StockUpdate) -> InventoryRecord:
        record = self._inventory.set_stock(product_id, variant_id, payload.stock_count)
        self._log.info("Stock set", product_id=product_id, variant_id=variant_id, stock=record.stock_count)
        return record
