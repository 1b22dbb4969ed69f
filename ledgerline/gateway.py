from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol
from uuid import uuid4

import httpx

from .domain import GatewayCharge, PaymentIntent
from .errors import PaymentTimeout, TransientError, ValidationError


class PaymentGateway(Protocol):
    async def authorize(self, intent: PaymentIntent) -> GatewayCharge: ...

    async def refund(self, intent: PaymentIntent, idempotency_key: str) -> GatewayCharge: ...

    async def close(self) -> None: ...


class HttpPaymentGateway:
    """Gateway adapter speaking JSON over HTTP; every call carries an ``Idempotency-Key``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    async def authorize(self, intent: PaymentIntent) -> GatewayCharge:
        body = {
            "amount": intent.amount,
            "currency": intent.currency,
            "method": intent.method.value,
            "metadata": {"order_id": intent.order_id, "intent_id": intent.id},
        }
        data = await self._post("/v1/charges", body, intent.idempotency_key)
        return _charge(data, data.get("id"))

    async def refund(self, intent: PaymentIntent, idempotency_key: str) -> GatewayCharge:
        body = {"charge": intent.gateway_reference, "amount": intent.amount}
        data = await self._post("/v1/refunds", body, idempotency_key)
        return _charge(data, data.get("id", intent.gateway_reference))

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=body, headers={"Idempotency-Key": idempotency_key})
        except httpx.TimeoutException as exc:
            raise PaymentTimeout(f"Gateway timed out on {path}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"Gateway unreachable: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"Gateway returned {response.status_code}")
        if response.status_code == 402:
            data = _json_body(response)
            data.setdefault("status", "declined")
            return data
        if response.status_code >= 400:
            raise ValidationError(f"Gateway rejected request with {response.status_code}")
        return _json_body(response)


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise ValidationError("Gateway returned a non-JSON body") from exc
    if not isinstance(data, dict):
        raise ValidationError("Gateway returned an unexpected body")
    return data


def _charge(data: Dict[str, Any], reference: Optional[str]) -> GatewayCharge:
    status = data.get("status")
    if not reference or not isinstance(status, str):
        raise ValidationError("Gateway response is missing the charge id or status")
    return GatewayCharge(reference=str(reference), status=status)


# Gateway vocabulary emitted by the simulator for each scripted action.
_SIMULATED_STATUS = {
    "authorized": "requires_capture",
    "captured": "succeeded",
    "failed": "declined",
    "pending": "processing",
}

_MODE_ACTIONS = {
    "approve": "authorized",
    "capture": "captured",
    "decline": "failed",
    "async": "pending",
}


class SimulatedPaymentGateway:
    """In-process gateway for local runs and tests.

    ``mode`` picks the default answer (``approve``, ``capture``, ``decline`` or
    ``async``). ``script(order_id, ...)`` queues per-order actions consumed one
    per call: any of ``authorized``, ``captured``, ``failed``, ``pending``,
    ``timeout`` (hang past the caller's deadline) or ``error`` (transient
    failure). Like a real gateway it answers a repeated idempotency key with the
    charge it already created.
    """

    def __init__(self, mode: str = "approve", hang_seconds: float = 30.0) -> None:
        if mode not in _MODE_ACTIONS:
            raise ValueError(f"Unknown simulated gateway mode {mode!r}")
        self._mode = mode
        self._hang_seconds = hang_seconds
        self._scripts: Dict[str, Deque[str]] = {}
        self._charges: Dict[str, GatewayCharge] = {}
        self.calls: List[str] = []
        self.refunds: List[str] = []

    def script(self, order_id: str, *actions: str) -> None:
        self._scripts.setdefault(order_id, deque()).extend(actions)

    async def authorize(self, intent: PaymentIntent) -> GatewayCharge:
        self.calls.append(intent.idempotency_key)
        existing = self._charges.get(intent.idempotency_key)
        if existing:
            return existing

        action = self._next_action(intent.order_id)
        if action == "timeout":
            await asyncio.sleep(self._hang_seconds)
            raise PaymentTimeout("Simulated gateway hung")
        if action == "error":
            raise TransientError("Simulated gateway unavailable")

        charge = GatewayCharge(reference=f"ch_{uuid4().hex}", status=_SIMULATED_STATUS[action])
        self._charges[intent.idempotency_key] = charge
        return charge

    async def refund(self, intent: PaymentIntent, idempotency_key: str) -> GatewayCharge:
        if idempotency_key not in self.refunds:
            self.refunds.append(idempotency_key)
        return GatewayCharge(reference=intent.gateway_reference or f"ch_{uuid4().hex}", status="refunded")

    async def close(self) -> None:
        return None

    def _next_action(self, order_id: str) -> str:
        queue = self._scripts.get(order_id)
        if queue:
            return queue.popleft()
        return _MODE_ACTIONS[self._mode]
