from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from .clock import Clock
from .domain import CartSnapshot, LineItem
from .errors import NotFoundError, TransientError, ValidationError
from .seed import CartSeedEntry


class CartSource(Protocol):
    async def get_cart_snapshot(self, cart_id: str) -> CartSnapshot: ...


class InMemoryCartSource(CartSource):
    """Carts priced at the moment they are stored; ``put`` re-prices a cart."""

    def __init__(self, clock: Clock, entries: Optional[Iterable[CartSeedEntry]] = None) -> None:
        self._clock = clock
        self._carts: Dict[str, CartSnapshot] = {}
        for entry in entries or []:
            self.put(entry.cart_id, entry.user_id, entry.items, entry.currency)

    def put(self, cart_id: str, user_id: str, items: List[LineItem], currency: str = "USD") -> CartSnapshot:
        snapshot = CartSnapshot(
            cart_id=cart_id,
            user_id=user_id,
            currency=currency,
            items=items,
            priced_at=self._clock.now(),
        )
        self._carts[cart_id] = snapshot
        return snapshot

    async def get_cart_snapshot(self, cart_id: str) -> CartSnapshot:
        snapshot = self._carts.get(cart_id)
        if not snapshot:
            raise NotFoundError()
        return snapshot


class HttpCartSource(CartSource):
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def get_cart_snapshot(self, cart_id: str) -> CartSnapshot:
        try:
            response = await self._client.get(f"/carts/{cart_id}/snapshot")
        except httpx.HTTPError as exc:
            raise TransientError(f"Cart service unreachable: {exc}") from exc
        if response.status_code == 404:
            raise NotFoundError()
        if response.status_code >= 500:
            raise TransientError(f"Cart service returned {response.status_code}")
        if response.status_code >= 400:
            raise ValidationError(f"Cart service rejected cart {cart_id}")
        try:
            return CartSnapshot.model_validate(response.json())
        except PydanticValidationError as exc:
            raise ValidationError("Cart service returned a malformed snapshot") from exc

    async def close(self) -> None:
        await self._client.aclose()
