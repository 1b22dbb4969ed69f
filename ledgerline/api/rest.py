from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from ..carts import CartSource
from ..container import Container
from ..deps import get_cart_source, get_container, get_inventory, get_orchestrator, get_publisher, get_settings
from ..domain import (
    CheckoutCreate,
    CheckoutRequest,
    HealthStatus,
    InventoryRecord,
    Order,
    OrderDetail,
    OutboxEvent,
    OutboxStatus,
    StockUpdate,
    WebhookReceipt,
    WebhookRequest,
)
from ..inventory import InventoryReservationEngine
from ..outbox import OutboxPublisher
from ..saga import CheckoutOrchestrator
from ..settings import Settings

router = APIRouter()


def partner_auth(
    x_api_key: str = Header("", alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> str:
    if x_api_key != settings.partner_api_key:
        raise HTTPException(status_code=401, detail="Invalid partner API key")
    return x_api_key


@router.get("/health", response_model=HealthStatus)
async def health(
    container: Container = Depends(get_container),
    publisher: OutboxPublisher = Depends(get_publisher),
):
    return HealthStatus(status="ok", time=container.clock.now(), pending_events=publisher.pending_count())


@router.post("/orders", response_model=Order, status_code=201)
async def create_order(
    payload: CheckoutCreate,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    settings: Settings = Depends(get_settings),
    carts: CartSource = Depends(get_cart_source),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    cart = await carts.get_cart_snapshot(payload.cart_id)
    result = await orchestrator.start_checkout(
        CheckoutRequest(
            user_id=payload.user_id,
            cart=cart,
            shipping_address=payload.shipping_address,
            payment_method=payload.payment_method,
            idempotency_key=idempotency_key,
        )
    )
    if result.idempotency_replayed:
        return JSONResponse(
            status_code=200,
            content=result.order.model_dump(mode="json"),
            headers={settings.idempotency_replay_header: "true"},
        )
    return result.order


@router.get("/orders/{order_id}", response_model=OrderDetail)
async def get_order(order_id: str, orchestrator: CheckoutOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_order(order_id)


@router.post("/orders/{order_id}/cancel", response_model=Order)
async def cancel_order(order_id: str, orchestrator: CheckoutOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.cancel(order_id)


@router.post("/orders/{order_id}/refund", response_model=Order)
async def refund_order(order_id: str, orchestrator: CheckoutOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.refund(order_id)


@router.post("/payments/webhook", response_model=WebhookReceipt)
async def payment_webhook(
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    signature_header = request.headers.get("X-Signature", "")
    if not signature_header:
        raise HTTPException(status_code=400, detail="Missing signature")
    payload = await request.body()
    return await orchestrator.handle_webhook(WebhookRequest(signature_header=signature_header, payload=payload))


@router.get("/inventory", response_model=list[InventoryRecord])
async def list_inventory(inventory: InventoryReservationEngine = Depends(get_inventory)):
    return inventory.list_records()


@router.get("/inventory/{product_id}/{variant_id}", response_model=InventoryRecord)
async def get_inventory_record(
    product_id: str,
    variant_id: str,
    inventory: InventoryReservationEngine = Depends(get_inventory),
):
    return inventory.get_record(product_id, variant_id)


@router.put("/inventory/{product_id}/{variant_id}", response_model=InventoryRecord)
async def set_inventory_stock(
    product_id: str,
    variant_id: str,
    payload: StockUpdate,
    _: str = Depends(partner_auth),
    inventory: InventoryReservationEngine = Depends(get_inventory),
):
    return inventory.set_stock(product_id, variant_id, payload)


@router.get("/outbox", response_model=list[OutboxEvent])
async def list_outbox(
    status: Optional[str] = None,
    limit: int = 100,
    publisher: OutboxPublisher = Depends(get_publisher),
):
    try:
        status_value = OutboxStatus(status) if status else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid status") from exc
    return publisher.list_events(status_value, limit)
