from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field, computed_field, conint, confloat


class OrderStatus(str, Enum):
    CREATED = "created"
    RESERVING = "reserving"
    RESERVED = "reserved"
    PAYMENT_PENDING = "payment_pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    COMPENSATING = "compensating"
    CANCELLED = "cancelled"
    REFUNDING = "refunding"
    REFUNDED = "refunded"


TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)

# CONFIRMED is terminal for checkout but still admits the refund path.
ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.RESERVING, OrderStatus.COMPENSATING}),
    OrderStatus.RESERVING: frozenset({OrderStatus.RESERVED, OrderStatus.FAILED, OrderStatus.COMPENSATING}),
    OrderStatus.RESERVED: frozenset({OrderStatus.PAYMENT_PENDING, OrderStatus.COMPENSATING}),
    OrderStatus.PAYMENT_PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.COMPENSATING}),
    OrderStatus.COMPENSATING: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.REFUNDING}),
    OrderStatus.REFUNDING: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


class ReservationState(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentOutcome(str, Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"

    @property
    def succeeded(self) -> bool:
        return self is not PaymentOutcome.FAILED


class PaymentMethod(str, Enum):
    CARD = "card"
    WALLET = "wallet"
    BANK_TRANSFER = "bank_transfer"


class EventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_CONFIRMED = "order.confirmed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_FAILED = "order.failed"
    ORDER_REFUNDED = "order.refunded"
    PAYMENT_COMPLETED = "payment.completed"
    INVENTORY_RELEASED = "inventory.released"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"


class StepName(str, Enum):
    RESERVE = "reserve"
    PAY = "pay"
    COMMIT = "commit"
    RELEASE = "release"
    REFUND = "refund"


class ShippingAddress(BaseModel):
    name: str
    line1: str
    line2: Optional[str] = None
    city: str
    postal_code: str
    country: str = Field(min_length=2, max_length=2)


class LineItem(BaseModel):
    product_id: str
    variant_id: str = "default"
    qty: conint(gt=0)
    unit_price: confloat(gt=0)

    @property
    def line_total(self) -> float:
        return round(self.qty * self.unit_price, 2)


class CartSnapshot(BaseModel):
    cart_id: str
    user_id: str
    currency: str = Field(min_length=3, max_length=3)
    items: List[LineItem]
    priced_at: datetime


class Order(BaseModel):
    id: str
    user_id: str
    status: OrderStatus
    payment_status: Optional[PaymentStatus] = None
    currency: str
    items: List[LineItem]
    total: float
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ReservationLine(BaseModel):
    product_id: str
    variant_id: str = "default"
    qty: conint(gt=0)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.product_id, self.variant_id)


class Reservation(BaseModel):
    id: str
    order_id: str
    idempotency_key: str
    lines: List[ReservationLine]
    state: ReservationState
    expires_at: datetime
    release_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class InventoryRecord(BaseModel):
    product_id: str
    variant_id: str = "default"
    stock_count: conint(ge=0)
    reserved_count: conint(ge=0) = 0

    @computed_field
    @property
    def available(self) -> int:
        return self.stock_count - self.reserved_count


class InventoryShortage(BaseModel):
    product_id: str
    variant_id: str
    available: int
    requested: int


class StockUpdate(BaseModel):
    stock_count: conint(ge=0)


class PaymentIntent(BaseModel):
    id: str
    order_id: str
    amount: float
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    idempotency_key: str
    gateway_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class GatewayCharge(BaseModel):
    reference: str
    status: str


class SagaStepRecord(BaseModel):
    idempotency_key: str
    attempts: int = 0
    outcome: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None


class SagaInstance(BaseModel):
    order_id: str
    step: OrderStatus
    version: int = 0
    steps: Dict[str, SagaStepRecord] = Field(default_factory=dict)
    reservation_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_outcome: Optional[PaymentOutcome] = None
    failure_reason: Optional[str] = None
    payment_deadline: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OutboxEvent(BaseModel):
    id: str
    type: str
    aggregate_id: str
    payload: Dict[str, Any]
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    published_at: Optional[datetime] = None


class CheckoutCreate(BaseModel):
    user_id: str
    cart_id: str
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.CARD


class CheckoutRequest(BaseModel):
    user_id: str
    cart: CartSnapshot
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.CARD
    idempotency_key: Optional[str] = None


class CheckoutResult(BaseModel):
    order: Order
    idempotency_replayed: bool = False


class OrderDetail(BaseModel):
    order: Order
    saga: SagaInstance


class PaymentOutcomeAck(BaseModel):
    order_id: str
    status: OrderStatus
    applied: bool


class WebhookRequest(BaseModel):
    signature_header: str
    payload: bytes


class WebhookNotice(BaseModel):
    intent_id: str
    status: str


class WebhookReceipt(BaseModel):
    received: bool
    intent_id: str
    outcome: PaymentOutcome
    order_status: OrderStatus
    applied: bool


class HealthStatus(BaseModel):
    status: str
    time: datetime
    pending_events: int
