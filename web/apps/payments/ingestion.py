"""Turns provider callbacks into lifecycle events.

``PaymentIngestion`` authenticates what the payment provider (or the
client, echoing a provider signature) tells us, figures out which order
it is about, and hands a typed event to the lifecycle manager. Delivery
order and duplicate deliveries do not matter: the lifecycle manager's
processed-event store and its monotonic payment rules absorb them.

Webhooks that cannot be tied to an order, or that carry events we do not
handle, are logged and acknowledged so the provider stops retrying them.
"""

import json
import logging
from typing import Optional

from pydantic import ValidationError

from apps.orders.domain import (
    Order,
    OrderRepositoryPort,
    PaymentCaptured,
    PaymentCaptureFailed,
    PaymentFailed,
    PaymentGatewayPort,
    PaymentVerified,
    RefundStatus,
)
from apps.orders.errors import InvalidRefundState, InvalidSignature, OrderNotFound, ValidationFailure
from apps.orders.lifecycle import OrderLifecycleManager

from .schemas import WebhookEnvelope
from .signatures import verify_webhook_signature

logger = logging.getLogger(__name__)

CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})
FAILURE_EVENTS = frozenset({"payment.failed", "order.payment_failed"})
REFUND_EVENTS = {"refund.processed": RefundStatus.PROCESSED, "refund.failed": RefundStatus.FAILED}

PROCESSED = "processed"
IGNORED = "ignored"


class PaymentIngestion:
    def __init__(
        self,
        service: OrderLifecycleManager,
        orders: OrderRepositoryPort,
        gateway: PaymentGatewayPort,
        webhook_secret: str,
    ):
        self.service = service
        self.orders = orders
        self.gateway = gateway
        self.webhook_secret = webhook_secret

    # ---- client-side checkout callbacks ----
    def verify_payment(self, order_id, gateway_order_id: str, payment_id: str, signature: str) -> Order:
        """Apply a checkout success after checking its signature.

        Raises:
            InvalidSignature: If the signature does not authenticate
                ``gateway_order_id|payment_id``, or the order was started
                with another provider order.
            OrderNotFound: If the order does not exist.
        """
        if not self.gateway.verify_signature(gateway_order_id, payment_id, signature):
            logger.warning("payment signature rejected", extra={"order_id": str(order_id)})
            raise InvalidSignature("signature mismatch")

        return self.service.apply_payment_event(
            order_id,
            PaymentVerified(payment_id=payment_id, transaction_id=payment_id, gateway_order_id=gateway_order_id),
        )

    def report_failure(self, order_id, payment_id: Optional[str] = None, reason: str = "") -> Order:
        """Record a checkout failure reported by the client.

        A failure never moves money and a later success still wins, so the
        report needs no signature.
        """
        return self.service.apply_payment_event(order_id, PaymentFailed(payment_id=payment_id, reason=reason))

    # ---- provider webhooks ----
    def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str], event_id: Optional[str] = None) -> str:
        """Authenticate and apply one webhook delivery.

        Returns:
            str: ``"processed"`` when the event reached an order, otherwise
            ``"ignored"``. Both are acknowledged with 200.

        Raises:
            InvalidSignature: If the header is missing or does not match.
            ValidationFailure: If an authentic body is not a webhook.
        """
        if not verify_webhook_signature(self.webhook_secret, raw_payload, signature_header):
            logger.warning("webhook signature rejected", extra={"event_id": event_id})
            raise InvalidSignature("webhook signature mismatch")

        try:
            envelope = WebhookEnvelope.model_validate(json.loads(raw_payload))
        except (ValueError, ValidationError):
            raise ValidationFailure("malformed webhook body")

        event = envelope.event
        log_extra = {"webhook_event": event, "event_id": event_id}
        if event in CAPTURE_EVENTS or event in FAILURE_EVENTS:
            return self._apply_payment(envelope, event_id, log_extra)
        if event in REFUND_EVENTS:
            return self._apply_refund(envelope, log_extra)

        logger.info("unhandled webhook event", extra=log_extra)
        return IGNORED

    def _apply_payment(self, envelope: WebhookEnvelope, event_id: Optional[str], log_extra: dict) -> str:
        payment = envelope.entity("payment")
        provider_order = envelope.entity("order")
        payment_id = payment.get("id")
        gateway_order_id = payment.get("order_id") or provider_order.get("id")
        notes = payment.get("notes") or provider_order.get("notes") or {}

        order = self._resolve(notes, gateway_order_id=gateway_order_id)
        if order is None:
            logger.error("webhook for unknown order", extra={**log_extra, "gateway_order_id": gateway_order_id})
            return IGNORED

        if envelope.event in CAPTURE_EVENTS:
            evt = PaymentCaptured(payment_id=payment_id, transaction_id=payment_id, event_id=event_id)
        else:
            evt = PaymentCaptureFailed(
                payment_id=payment_id,
                reason=payment.get("error_description") or "",
                event_id=event_id,
            )
        self.service.apply_payment_event(order.id, evt)
        logger.info("webhook applied", extra={**log_extra, "order_id": str(order.id)})
        return PROCESSED

    def _apply_refund(self, envelope: WebhookEnvelope, log_extra: dict) -> str:
        refund = envelope.entity("refund")
        payment_id = refund.get("payment_id")
        order = self._resolve(refund.get("notes") or {}, payment_id=payment_id)
        if order is None:
            logger.error("refund webhook for unknown order", extra={**log_extra, "payment_id": payment_id})
            return IGNORED

        outcome = REFUND_EVENTS[envelope.event]
        try:
            self.service.process_refund(order.id, outcome, refund.get("error_description") or "")
        except InvalidRefundState:
            logger.info("refund already settled", extra={**log_extra, "order_id": str(order.id)})
            return IGNORED
        return PROCESSED

    def _resolve(self, notes, gateway_order_id: Optional[str] = None, payment_id: Optional[str] = None):
        order_id = notes.get("order_id") if isinstance(notes, dict) else None
        if order_id:
            try:
                return self.orders.get(order_id)
            except OrderNotFound:
                logger.warning("webhook notes name a missing order", extra={"order_id": order_id})
        if gateway_order_id:
            found = self.orders.find_by_gateway_order_id(gateway_order_id)
            if found is not None:
                return found
        if payment_id:
            return self.orders.find_by_payment_id(payment_id)
        return None
