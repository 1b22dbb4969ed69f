from __future__ import annotations

from fastapi import Depends, Request

from .carts import CartSource
from .container import Container
from .inventory import InventoryReservationEngine
from .outbox import OutboxPublisher
from .saga import CheckoutOrchestrator
from .settings import Settings


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_settings(container: Container = Depends(get_container)) -> Settings:
    return container.settings


def get_orchestrator(container: Container = Depends(get_container)) -> CheckoutOrchestrator:
    return container.orchestrator


def get_inventory(container: Container = Depends(get_container)) -> InventoryReservationEngine:
    return container.inventory


def get_publisher(container: Container = Depends(get_container)) -> OutboxPublisher:
    return container.publisher


def get_cart_source(container: Container = Depends(get_container)) -> CartSource:
    return container.carts

