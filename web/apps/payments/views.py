"""HTTP views for payments: checkout intents, verification and webhooks.

The webhook endpoint is public; authenticity comes from the
``X-Razorpay-Signature`` HMAC over the raw body, so the view reads
``request.body`` and never the parsed data. Signature failures always get
the same bare ``INVALID_SIGNATURE`` body.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.orders import providers
from apps.orders.errors import InvalidSignature, OrderError
from apps.orders.views import (
    UPSTREAM_ERRORS,
    CallerAPIView,
    domain_error_response,
    invalid_payload,
    render_order,
    upstream_unavailable,
)

from .schemas import PaymentFailureDTO, StartPaymentDTO, VerifyPaymentDTO

logger = logging.getLogger(__name__)


class StartPaymentView(CallerAPIView):
    """Create the provider order for a prepaid order (checkout step 1)."""

    throttle_scope = "payments"

    def post(self, request):
        self.require_caller()
        try:
            dto = StartPaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return invalid_payload(e)

        service = providers.get_order_service()
        try:
            self.load_visible_order(service, dto.order_id)
            order = service.start_payment(dto.order_id)
        except OrderError as e:
            return domain_error_response(e)
        except UPSTREAM_ERRORS as e:
            return upstream_unavailable(e)

        return Response(
            {
                "order": render_order(order),
                "gateway_order_id": order.payment.gateway_order_id,
                "amount": order.total,
                "currency": order.currency,
            },
            status=200,
        )


class VerifyPaymentView(CallerAPIView):
    """Apply the signed checkout result the client received (step 2)."""

    throttle_scope = "payments"

    def post(self, request):
        self.require_caller()
        try:
            dto = VerifyPaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return invalid_payload(e)

        service = providers.get_order_service()
        ingestion = providers.get_ingestion()
        try:
            self.load_visible_order(service, dto.order_id)
            order = ingestion.verify_payment(dto.order_id, dto.gateway_order_id, dto.payment_id, dto.signature)
        except OrderError as e:
            return domain_error_response(e)
        return Response(render_order(order), status=200)


class PaymentFailureView(CallerAPIView):
    throttle_scope = "payments"

    def post(self, request):
        self.require_caller()
        try:
            dto = PaymentFailureDTO.model_validate(request.data)
        except ValidationError as e:
            return invalid_payload(e)

        service = providers.get_order_service()
        ingestion = providers.get_ingestion()
        try:
            self.load_visible_order(service, dto.order_id)
            order = ingestion.report_failure(dto.order_id, dto.payment_id, dto.reason)
        except OrderError as e:
            return domain_error_response(e)
        return Response(render_order(order), status=200)


class PaymentWebhookView(APIView):
    """Provider webhook; always 200 once the signature checks out."""

    authentication_classes = []
    permission_classes = []
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "webhooks"

    def post(self, request):
        signature = request.headers.get("X-Razorpay-Signature")
        event_id = request.headers.get("X-Razorpay-Event-Id")
        ingestion = providers.get_ingestion()
        try:
            result = ingestion.handle_webhook(request.body, signature, event_id)
        except InvalidSignature:
            return Response({"detail": "INVALID_SIGNATURE"}, status=status.HTTP_400_BAD_REQUEST)
        except OrderError as e:
            return domain_error_response(e)
        return Response({"status": result}, status=200)
