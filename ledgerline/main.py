from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.rest import router as rest_router
from .container import Container, build_container
from .errors import (
    ConflictError,
    InsufficientStock,
    InvalidState,
    NotFoundError,
    PaymentFailed,
    RetryExhausted,
    TransientError,
    UnauthorizedError,
    UnknownIntent,
    ValidationError,
)
from .logging import ServiceLogger, setup_logging
from .observability import configure_observability
from .settings import Settings, load_settings

logger = ServiceLogger("api")


def create_app(settings: Settings, container: Optional[Container] = None) -> FastAPI:
    setup_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        description="Checkout saga engine: stock reservation, payment and order confirmation.",
    )

    container = container or build_container(settings)
    app.state.container = container

    configure_observability(app, settings, engine=container.db.engine if container.db else None)

    @app.on_event("startup")
    async def startup_event() -> None:
        if settings.workers_enabled:
            container.workers.start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await container.close()

    @app.exception_handler(UnknownIntent)
    async def handle_unknown_intent(_, exc: UnknownIntent):
        return JSONResponse(status_code=404, content={"detail": "Unknown payment intent", "intent_id": exc.intent_id})

    @app.exception_handler(NotFoundError)
    async def handle_not_found(_, __):
        return JSONResponse(status_code=404, content={"detail": "Not found"})

    @app.exception_handler(UnauthorizedError)
    async def handle_unauthorized(_, __):
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

    @app.exception_handler(ValidationError)
    async def handle_validation(_, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.detail})

    @app.exception_handler(ConflictError)
    async def handle_conflict(_, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": exc.detail})

    @app.exception_handler(InvalidState)
    async def handle_invalid_state(_, exc: InvalidState):
        return JSONResponse(status_code=409, content={"detail": exc.detail, "status": exc.status})

    @app.exception_handler(InsufficientStock)
    async def handle_insufficient_stock(_, exc: InsufficientStock):
        return JSONResponse(
            status_code=409,
            content={
                "detail": "Insufficient stock",
                "order_id": exc.order_id,
                "status": exc.status,
                "shortages": [shortage.model_dump(mode="json") for shortage in exc.shortages],
            },
        )

    @app.exception_handler(PaymentFailed)
    async def handle_payment_failed(_, exc: PaymentFailed):
        return JSONResponse(
            status_code=402,
            content={"detail": "Payment failed", "order_id": exc.order_id, "status": exc.status, "reason": exc.reason},
        )

    @app.exception_handler(TransientError)
    async def handle_transient(_, exc: TransientError):
        logger.warning("Upstream unavailable", error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Upstream unavailable"})

    @app.exception_handler(RetryExhausted)
    async def handle_retry_exhausted(_, exc: RetryExhausted):
        return JSONResponse(status_code=503, content={"detail": str(exc), "step": exc.step})

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(settings.request_id_header, "") or container.id_provider.new_id()
        response = await call_next(request)
        response.headers[settings.request_id_header] = request_id
        return response

    app.include_router(rest_router)
    app.include_router(rest_router, prefix="/v1")

    return app


app = create_app(load_settings())
