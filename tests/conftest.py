import os
from typing import Callable, Dict, List, Optional

import pytest

from ledgerline.clock import ManualClock
from ledgerline.container import Container, build_container
from ledgerline.domain import CheckoutRequest, LineItem, PaymentMethod, ShippingAddress, StockUpdate
from ledgerline.gateway import SimulatedPaymentGateway
from ledgerline.settings import Settings

# ledgerline.main builds its app from the environment at import time.
os.environ.setdefault("PARTNER_API_KEY", "test-partner-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")


class SequenceIds:
    """Predictable ids (``ord_1``, ``ord_2``...) so tests can script the gateway per order."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = {}

    def new_id(self, prefix: str = "") -> str:
        self._counters[prefix] = self._counters.get(prefix, 0) + 1
        return f"{prefix}{self._counters[prefix]}"


ADDRESS = ShippingAddress(name="Ada Lovelace", line1="1 Analytical Way", city="London", postal_code="N1 9GU", country="GB")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ids() -> SequenceIds:
    return SequenceIds()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        workers_enabled=False,
        step_max_attempts=3,
        step_base_delay_seconds=0.001,
        step_max_delay_seconds=0.01,
        step_timeout_seconds=1.0,
        gateway_timeout_seconds=0.05,
        reservation_ttl_seconds=900,
        payment_timeout_seconds=600,
        price_freshness_seconds=900,
        webhook_secret="test-webhook-secret",
        partner_api_key="test-partner-key",
    )


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway("approve", hang_seconds=5.0)


@pytest.fixture
def container(settings, clock, ids, gateway) -> Container:
    return build_container(settings, clock=clock, ids=ids, gateway=gateway)


@pytest.fixture
def stock(container) -> Callable[..., None]:
    def _stock(product_id: str, count: int, variant_id: str = "default") -> None:
        container.inventory.set_stock(product_id, variant_id, StockUpdate(stock_count=count))

    return _stock


@pytest.fixture
def make_request(container) -> Callable[..., CheckoutRequest]:
    def _make(
        items: List[LineItem],
        user_id: str = "user-1",
        cart_id: str = "cart-1",
        idempotency_key: Optional[str] = None,
    ) -> CheckoutRequest:
        cart = container.carts.put(cart_id, user_id, items)
        return CheckoutRequest(
            user_id=user_id,
            cart=cart,
            shipping_address=ADDRESS,
            payment_method=PaymentMethod.CARD,
            idempotency_key=idempotency_key,
        )

    return _make


def line(product_id: str = "p_1", qty: int = 1, unit_price: float = 10.0, variant_id: str = "default") -> LineItem:
    return LineItem(product_id=product_id, variant_id=variant_id, qty=qty, unit_price=unit_price)


@pytest.fixture
def item() -> Callable[..., LineItem]:
    return line
