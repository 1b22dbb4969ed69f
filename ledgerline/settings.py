from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field("Ledgerline Checkout", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field("", alias="DATABASE_URL")
    db_echo: bool = Field(False, alias="DB_ECHO")
    partner_api_key: str = Field(..., alias="PARTNER_API_KEY")
    webhook_secret: str = Field(..., alias="WEBHOOK_SECRET")
    webhook_tolerance_seconds: int = Field(300, alias="WEBHOOK_TOLERANCE_SECONDS")
    inventory_seed_path: str = Field("", alias="INVENTORY_SEED_PATH")
    cart_seed_path: str = Field("", alias="CART_SEED_PATH")
    cart_service_url: str = Field("", alias="CART_SERVICE_URL")
    payment_gateway_url: str = Field("", alias="PAYMENT_GATEWAY_URL")
    payment_gateway_api_key: str = Field("", alias="PAYMENT_GATEWAY_API_KEY")
    simulated_gateway_mode: str = Field("approve", alias="SIMULATED_GATEWAY_MODE")
    event_bus_url: str = Field("", alias="EVENT_BUS_URL")
    price_freshness_seconds: int = Field(900, alias="PRICE_FRESHNESS_SECONDS")
    reservation_ttl_seconds: int = Field(900, alias="RESERVATION_TTL_SECONDS")
    payment_timeout_seconds: int = Field(600, alias="PAYMENT_TIMEOUT_SECONDS")
    step_max_attempts: int = Field(3, alias="STEP_MAX_ATTEMPTS")
    step_base_delay_seconds: float = Field(0.2, alias="STEP_BASE_DELAY_SECONDS")
    step_max_delay_seconds: float = Field(2.0, alias="STEP_MAX_DELAY_SECONDS")
    step_timeout_seconds: float = Field(5.0, alias="STEP_TIMEOUT_SECONDS")
    gateway_timeout_seconds: float = Field(3.0, alias="GATEWAY_TIMEOUT_SECONDS")
    workers_enabled: bool = Field(True, alias="WORKERS_ENABLED")
    worker_concurrency: int = Field(8, alias="WORKER_CONCURRENCY")
    outbox_poll_interval_seconds: float = Field(1.0, alias="OUTBOX_POLL_INTERVAL_SECONDS")
    outbox_batch_size: int = Field(100, alias="OUTBOX_BATCH_SIZE")
    sweeper_interval_seconds: float = Field(30.0, alias="SWEEPER_INTERVAL_SECONDS")
    recovery_interval_seconds: float = Field(15.0, alias="RECOVERY_INTERVAL_SECONDS")
    request_id_header: str = Field("X-Request-Id", alias="REQUEST_ID_HEADER")
    idempotency_replay_header: str = Field(
        "Idempotency-Replayed",
        alias="IDEMPOTENCY_REPLAY_HEADER",
    )
    otel_enabled: bool = Field(False, alias="OTEL_ENABLED")
    otel_service_name: str = Field("ledgerline", alias="OTEL_SERVICE_NAME")
    otel_exporter_otlp_endpoint: str = Field("", alias="OTEL_EXPORTER_OTLP_ENDPOINT")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("partner_api_key", "webhook_secret")
    @classmethod
    def secret_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be set to a non-empty secret")
        return value


def resolve_env_file() -> Optional[Path]:
    explicit = os.getenv("LEDGERLINE_ENV_FILE")
    if explicit:
        return Path(explicit)
    default = Path.cwd() / "config" / "api.env"
    if default.exists():
        return default
    return None


def load_settings() -> Settings:
    env_file = resolve_env_file()
    if env_file:
        return Settings(_env_file=str(env_file))
    return Settings()
