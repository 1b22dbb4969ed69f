from __future__ import annotations

from typing import Any, List, Optional


class DomainError(Exception):
    """Base class for domain/service errors."""


class NotFoundError(DomainError):
    pass


class UnauthorizedError(DomainError):
    pass


class ConflictError(DomainError):
    def __init__(self, detail):
        super().__init__("Conflict")
        self.detail = detail


class ValidationError(DomainError):
    def __init__(self, detail):
        super().__init__("Validation error")
        self.detail = detail


class InvalidState(DomainError):
    """An operation was attempted on a saga or reservation in an incompatible step."""

    def __init__(self, detail: str, status: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status = status


class InsufficientStock(DomainError):
    def __init__(self, shortages: List[Any], order_id: Optional[str] = None, status: Optional[str] = None) -> None:
        super().__init__("Insufficient stock")
        self.shortages = shortages
        self.order_id = order_id
        self.status = status


class PaymentFailed(DomainError):
    def __init__(self, order_id: str, reason: str, status: Optional[str] = None) -> None:
        super().__init__(f"Payment failed for {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason
        self.status = status


class InvalidSignature(UnauthorizedError):
    pass


class UnknownIntent(NotFoundError):
    def __init__(self, intent_id: str) -> None:
        super().__init__(f"Unknown payment intent {intent_id}")
        self.intent_id = intent_id


class TransientError(DomainError):
    """Retryable failure of an outbound call (transport error, 5xx, timeout)."""


class PaymentTimeout(TransientError):
    pass


class PublishError(TransientError):
    pass


class RetryExhausted(DomainError):
    def __init__(self, step: str, attempts: int, last_error: Exception) -> None:
        super().__init__(f"{step} failed after {attempts} attempts: {last_error}")
        self.step = step
        self.attempts = attempts
        self.last_error = last_error
