from __future__ import annotations

from typing import Protocol
from uuid import uuid4


class IdProvider(Protocol):
    def new_id(self, prefix: str = "") -> str: ...


class UUIDProvider:
    def new_id(self, prefix: str = "") -> str:
        return f"{prefix}{uuid4().hex}"


def derive_key(order_id: str, purpose: str) -> str:
    """Idempotency key for a side-effecting step, stable across retries and restarts."""
    return f"{order_id}:{purpose}"
