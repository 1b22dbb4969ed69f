"""Payment Coordinator: idempotent intents, refunds, and signed webhook reconciliation."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .clock import Clock
from .domain import PaymentIntent, PaymentMethod, PaymentOutcome, PaymentStatus, WebhookNotice, WebhookRequest
from .errors import InvalidSignature, InvalidState, NotFoundError, PaymentTimeout, UnknownIntent, ValidationError
from .gateway import PaymentGateway
from .id_provider import IdProvider, derive_key
from .logging import ServiceLogger
from .repositories import PaymentRepository

GATEWAY_OUTCOMES: Dict[str, PaymentOutcome] = {
    "requires_capture": PaymentOutcome.AUTHORIZED,
    "authorized": PaymentOutcome.AUTHORIZED,
    "succeeded": PaymentOutcome.CAPTURED,
    "captured": PaymentOutcome.CAPTURED,
    "paid": PaymentOutcome.CAPTURED,
    "failed": PaymentOutcome.FAILED,
    "declined": PaymentOutcome.FAILED,
    "canceled": PaymentOutcome.FAILED,
    "cancelled": PaymentOutcome.FAILED,
    "expired": PaymentOutcome.FAILED,
}

GATEWAY_PENDING = frozenset({"processing", "pending", "requires_action"})

_NEXT_STATUSES: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED, PaymentStatus.FAILED}),
    PaymentStatus.AUTHORIZED: frozenset({PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.REFUNDED}),
    PaymentStatus.CAPTURED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def map_gateway_status(raw_status: str) -> Optional[PaymentOutcome]:
    """Translate gateway vocabulary; ``None`` means the gateway is still working on it."""
    status = raw_status.strip().lower()
    if status in GATEWAY_PENDING:
        return None
    try:
        return GATEWAY_OUTCOMES[status]
    except KeyError as exc:
        raise ValidationError(f"Unsupported gateway status {raw_status!r}") from exc


class PaymentCoordinator:
    def __init__(
        self,
        payments: PaymentRepository,
        gateway: PaymentGateway,
        clock: Clock,
        ids: IdProvider,
        webhook_secret: str,
        webhook_tolerance_seconds: int,
        gateway_timeout_seconds: float,
    ) -> None:
        self._payments = payments
        self._gateway = gateway
        self._clock = clock
        self._ids = ids
        self._webhook_secret = webhook_secret
        self._tolerance = webhook_tolerance_seconds
        self._gateway_timeout = gateway_timeout_seconds
        self._log = ServiceLogger("payments")

    async def initiate(
        self,
        order_id: str,
        amount: float,
        currency: str,
        method: PaymentMethod,
        idempotency_key: str,
    ) -> PaymentIntent:
        intent = self._payments.get_by_key(idempotency_key)
        if intent is None:
            now = self._clock.now()
            intent = self._payments.add(
                PaymentIntent(
                    id=self._ids.new_id("pi_"),
                    order_id=order_id,
                    amount=amount,
                    currency=currency,
                    method=method,
                    status=PaymentStatus.PENDING,
                    idempotency_key=idempotency_key,
                    created_at=now,
                    updated_at=now,
                )
            )
        if intent.order_id != order_id or intent.amount != amount:
            raise ValidationError("Idempotency key reused with different payment parameters")

        if intent.status != PaymentStatus.PENDING or intent.gateway_reference:
            return intent

        try:
            charge = await asyncio.wait_for(self._gateway.authorize(intent), timeout=self._gateway_timeout)
        except asyncio.TimeoutError as exc:
            raise PaymentTimeout(f"Gateway did not answer for intent {intent.id}") from exc

        updated = self._apply(intent, map_gateway_status(charge.status), charge.reference)
        self._log.info(
            "Payment intent submitted",
            order_id=order_id,
            intent_id=updated.id,
            gateway_status=charge.status,
            status=updated.status.value,
        )
        return updated

    async def refund(self, intent_id: str) -> PaymentIntent:
        intent = self.get(intent_id)
        if intent.status == PaymentStatus.REFUNDED:
            return intent
        if intent.status not in (PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED):
            raise InvalidState(f"Intent {intent_id} cannot be refunded from {intent.status.value}", intent.status.value)

        try:
            await asyncio.wait_for(
                self._gateway.refund(intent, derive_key(intent.order_id, "refund")),
                timeout=self._gateway_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise PaymentTimeout(f"Gateway did not answer refund for intent {intent.id}") from exc

        updated = self._payments.update(
            intent.model_copy(update={"status": PaymentStatus.REFUNDED, "updated_at": self._clock.now()})
        )
        self._log.info("Payment refunded", order_id=intent.order_id, intent_id=intent.id)
        return updated

    def reconcile_webhook(self, request: WebhookRequest) -> Tuple[PaymentIntent, PaymentOutcome]:
        try:
            self._verify_signature(request.signature_header, request.payload)
        except InvalidSignature:
            self._log.warning("Webhook rejected: bad signature")
            raise

        try:
            notice = WebhookNotice.model_validate_json(request.payload)
        except PydanticValidationError as exc:
            raise ValidationError("Malformed webhook payload") from exc

        outcome = map_gateway_status(notice.status)
        if outcome is None:
            raise ValidationError(f"Webhook status {notice.status!r} is not an outcome")

        intent = self._payments.get(notice.intent_id)
        if not intent:
            self._log.warning("Webhook rejected: unknown intent", intent_id=notice.intent_id)
            raise UnknownIntent(notice.intent_id)

        updated = self._apply(intent, outcome, intent.gateway_reference)
        self._log.info("Webhook reconciled", intent_id=intent.id, order_id=intent.order_id, outcome=outcome.value)
        return updated, outcome

    def apply_outcome(self, intent_id: str, outcome: PaymentOutcome) -> PaymentIntent:
        """Record an outcome reported outside the webhook path; status still only moves forward."""
        intent = self._payments.get(intent_id)
        if not intent:
            raise UnknownIntent(intent_id)
        updated = self._apply(intent, outcome, intent.gateway_reference)
        if updated.status != intent.status:
            self._log.info("Payment outcome applied", intent_id=intent.id, order_id=intent.order_id, outcome=outcome.value)
        return updated

    def get(self, intent_id: str) -> PaymentIntent:
        intent = self._payments.get(intent_id)
        if not intent:
            raise NotFoundError()
        return intent

    def get_for_order(self, order_id: str) -> Optional[PaymentIntent]:
        return self._payments.get_by_key(derive_key(order_id, "payment"))

    def list_by_order(self, order_id: str) -> List[PaymentIntent]:
        return self._payments.list_by_order(order_id)

    def _apply(
        self,
        intent: PaymentIntent,
        outcome: Optional[PaymentOutcome],
        reference: Optional[str],
    ) -> PaymentIntent:
        status = intent.status
        if outcome is not None:
            target = PaymentStatus(outcome.value)
            if target in _NEXT_STATUSES[intent.status]:
                status = target
        if status == intent.status and reference == intent.gateway_reference:
            return intent
        return self._payments.update(
            intent.model_copy(
                update={"status": status, "gateway_reference": reference, "updated_at": self._clock.now()}
            )
        )

    def _verify_signature(self, signature_header: str, payload: bytes) -> None:
        parts: Dict[str, str] = {}
        try:
            for part in signature_header.split(","):
                if not part.strip():
                    continue
                key, value = part.strip().split("=", 1)
                parts[key] = value
        except ValueError as exc:
            raise InvalidSignature("Malformed signature header") from exc

        timestamp = parts.get("t", "")
        signature = parts.get("v1", "")
        signed_payload = f"{timestamp}.".encode() + payload
        expected = hmac.new(
            self._webhook_secret.encode(),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignature("Signature mismatch")

        if self._tolerance:
            try:
                sent_at = int(timestamp)
            except ValueError as exc:
                raise InvalidSignature("Malformed signature timestamp") from exc
            if abs(self._clock.now().timestamp() - sent_at) > self._tolerance:
                raise InvalidSignature("Signature timestamp outside tolerance")
