"""HTTP views for the orders app.

Views are kept small: they check who is calling (``request.caller`` set by
``gateway.middleware.CallerMiddleware``), validate the body with a
Pydantic DTO, delegate to the lifecycle manager from
``providers.get_order_service()`` and render the result with
``OrderReadDTO``.

Error mapping, shared with the payments views through
``domain_error_response``:

- validation errors → 400 ``{detail: CODE}``
- missing order or food item → 404
- unavailable food or insufficient stock → 422
- state errors (bad transition, terminal order, refund state) → 409
- invalid signature → 400 ``{detail: "INVALID_SIGNATURE"}``
- transport errors and open circuits → 503 ``UPSTREAM_UNAVAILABLE``

Idempotency: ``POST /api/orders/`` honors an ``Idempotency-Key`` header.
The first request stores its response; retries with the same payload get
it back with ``Idempotent-Replay: true``; the same key with another
payload is a 409 ``IDEMPOTENCY_CONFLICT``.
"""

import logging
from datetime import timedelta

import httpx
from django.core.paginator import Paginator
from django.db.models import Avg, Count, Sum
from django.utils import timezone
from pydantic import ValidationError
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import OrderStatus, PaymentStatus
from .errors import (
    FoodNotFound,
    FoodUnavailable,
    InsufficientStock,
    IntegrityFailure,
    MissingDeliveryField,
    OrderError,
    OrderNotFound,
    StateError,
    ValidationFailure,
)
from .http_adapters import CircuitOpenError
from .idempotency import IdempotencyConflict, discard, finalize, get_or_create_idempotent
from .models import OrderModel
from .schemas import (
    CancelOrderDTO,
    CreateOrderDTO,
    OrderReadDTO,
    RefundOutcomeDTO,
    SubmitRefundDTO,
    UpdateStatusDTO,
)

logger = logging.getLogger(__name__)

UPSTREAM_ERRORS = (httpx.HTTPError, CircuitOpenError)


def domain_error_response(exc: OrderError) -> Response:
    """Translate a lifecycle error into its HTTP response."""
    body = {"detail": str(exc)}
    if isinstance(exc, IntegrityFailure):
        return Response(body, status=status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, ValidationFailure):
        if isinstance(exc, MissingDeliveryField):
            body["field"] = exc.field
        return Response(body, status=status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, (OrderNotFound, FoodNotFound)):
        return Response(body, status=status.HTTP_404_NOT_FOUND)
    if isinstance(exc, (FoodUnavailable, InsufficientStock)):
        return Response(body, status=422)
    if isinstance(exc, StateError):
        return Response(body, status=status.HTTP_409_CONFLICT)
    return Response(body, status=status.HTTP_400_BAD_REQUEST)


def upstream_unavailable(exc: Exception) -> Response:
    logger.warning("upstream unavailable", extra={"error": repr(exc)})
    return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)


def invalid_payload(exc: ValidationError) -> Response:
    return Response(
        {"detail": "INVALID_PAYLOAD", "errors": exc.errors(include_url=False, include_context=False)},
        status=status.HTTP_400_BAD_REQUEST,
    )


def render_order(order) -> dict:
    return OrderReadDTO.from_domain(order, timezone.now()).model_dump(mode="json")


class CallerAPIView(APIView):
    """Base view: every endpoint needs a caller; some need an admin."""

    throttle_classes = [ScopedRateThrottle]
    admin_only = False

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self.caller = getattr(request, "caller", None)

    def require_caller(self):
        if self.caller is None:
            raise _Denied("AUTHENTICATION_REQUIRED", status.HTTP_401_UNAUTHORIZED)
        if self.admin_only and not self.caller.is_admin:
            raise _Denied("FORBIDDEN", status.HTTP_403_FORBIDDEN)
        return self.caller

    def load_visible_order(self, service, oid):
        """Load an order the caller may see. Others' orders look absent."""
        order = service.orders.get(oid)
        if not self.caller.is_admin and order.user_id != self.caller.user_id:
            raise OrderNotFound(f"order {oid} not visible to caller")
        return order


class _Denied(APIException):
    """401/403 with a bare code, rendered by DRF's exception handler."""

    def __init__(self, code: str, status_code: int):
        super().__init__(detail=code, code=code)
        self.status_code = status_code


def _page(request, items):
    try:
        page = int(request.GET.get("page", 1))
        page_size = min(max(int(request.GET.get("page_size", 20)), 1), 100)
    except ValueError:
        page, page_size = 1, 20
    p = Paginator(items, page_size)
    page_obj = p.get_page(page)
    return {
        "count": p.count,
        "page": page_obj.number,
        "page_size": page_size,
        "results": [render_order(o) for o in page_obj.object_list],
    }


class OrdersCollectionView(CallerAPIView):
    """List orders (own, or all with filters for admins) and create orders."""

    def get_throttles(self):
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        caller = self.require_caller()
        try:
            status_filter = OrderStatus(request.GET["status"]) if request.GET.get("status") else None
            payment_filter = (
                PaymentStatus(request.GET["payment_status"]) if request.GET.get("payment_status") else None
            )
        except ValueError:
            return Response({"detail": "INVALID_FILTER"}, status=status.HTTP_400_BAD_REQUEST)

        user_filter = request.GET.get("user_id") if caller.is_admin else caller.user_id
        orders = providers.get_order_repository().search(
            user_id=user_filter or None, status=status_filter, payment_status=payment_filter
        )
        return Response(_page(request, orders), status=200)

    def post(self, request):
        """Create a new order.

        Returns:
            Response: 201 with the order, or the stored response on a replay;
            400/404/409/422 for domain errors; 503 when a downstream is
            unavailable.
        """
        caller = self.require_caller()
        idem_key = request.headers.get("Idempotency-Key")

        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return invalid_payload(e)

        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, {"user": caller.user_id, "body": request.data})
            except IdempotencyConflict:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        service = providers.get_order_service()
        try:
            order = service.create_order(
                user_id=caller.user_id,
                lines=[i.to_domain() for i in dto.items],
                delivery=dto.delivery.to_domain(),
                payment=dto.payment.to_domain(),
                notes=dto.notes,
                is_urgent=dto.is_urgent,
            )
        except OrderError as e:
            resp = domain_error_response(e)
            if rec:
                finalize(rec, resp.status_code, resp.data)
            return resp
        except UPSTREAM_ERRORS as e:
            # transient: let the client retry with the same key
            if rec:
                discard(rec)
            return upstream_unavailable(e)

        body = render_order(order)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(CallerAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        self.require_caller()
        service = providers.get_order_service()
        try:
            order = self.load_visible_order(service, oid)
        except OrderError as e:
            return domain_error_response(e)
        return Response(render_order(order), status=200)


class CancelOrderView(CallerAPIView):
    throttle_scope = "orders_write"

    def post(self, request, oid):
        caller = self.require_caller()
        try:
            dto = CancelOrderDTO.model_validate(request.data or {})
        except ValidationError as e:
            return invalid_payload(e)

        service = providers.get_order_service()
        try:
            self.load_visible_order(service, oid)
            by = "restaurant" if caller.is_admin else "user"
            order = service.cancel_order(oid, dto.reason, by)
        except OrderError as e:
            return domain_error_response(e)
        return Response(render_order(order), status=200)


class UpdateStatusView(CallerAPIView):
    throttle_scope = "orders_write"
    admin_only = True

    def post(self, request, oid):
        self.require_caller()
        try:
            dto = UpdateStatusDTO.model_validate(request.data)
        except ValidationError as e:
            return invalid_payload(e)

        service = providers.get_order_service()
        try:
            order = service.update_status(oid, dto.status, dto.notes)
        except OrderError as e:
            return domain_error_response(e)
        return Response(render_order(order), status=200)


class ProcessRefundView(CallerAPIView):
    throttle_scope = "orders_write"
    admin_only = True

    def post(self, request, oid):
        self.require_caller()
        try:
            dto = RefundOutcomeDTO.model_validate(request.data)
        except ValidationError as e:
            return invalid_payload(e)

        service = providers.get_order_service()
        try:
            order = service.process_refund(oid, dto.outcome, dto.reason)
        except OrderError as e:
            return domain_error_response(e)
        return Response(render_order(order), status=200)


class SubmitRefundView(CallerAPIView):
    throttle_scope = "orders_write"
    admin_only = True

    def post(self, request, oid):
        self.require_caller()
        try:
            dto = SubmitRefundDTO.model_validate(request.data or {})
        except ValidationError as e:
            return invalid_payload(e)

        service = providers.get_order_service()
        try:
            order = service.submit_refund(oid, dto.speed)
        except OrderError as e:
            return domain_error_response(e)
        except UPSTREAM_ERRORS as e:
            return upstream_unavailable(e)
        return Response(render_order(order), status=200)


class PendingPaymentsView(CallerAPIView):
    throttle_scope = "orders_list"
    admin_only = True

    def get(self, request):
        self.require_caller()
        orders = providers.get_order_repository().find_by_payment_status(PaymentStatus.PENDING)
        return Response(_page(request, orders), status=200)


class DelayedOrdersView(CallerAPIView):
    """Orders past their estimated delivery time and not yet finished."""

    throttle_scope = "orders_list"
    admin_only = True

    def get(self, request):
        self.require_caller()
        orders = providers.get_order_repository().find_with_estimated_delivery_before(
            timezone.now(), excluding=(OrderStatus.DELIVERED, OrderStatus.CANCELLED)
        )
        return Response(_page(request, orders), status=200)


class OrderStatsView(CallerAPIView):
    throttle_scope = "orders_list"
    admin_only = True

    def get(self, request):
        self.require_caller()
        by_status = dict(OrderModel.objects.order_by().values_list("status").annotate(n=Count("id")))
        by_payment = dict(OrderModel.objects.order_by().values_list("payment_status").annotate(n=Count("id")))
        revenue = OrderModel.objects.filter(payment_status=PaymentStatus.COMPLETED.value).aggregate(
            total_revenue=Sum("total"), avg_order_value=Avg("total"), paid_orders=Count("id")
        )
        recent = OrderModel.objects.filter(created_at__gte=timezone.now() - timedelta(days=7)).count()
        return Response(
            {
                "orders": {
                    "total": sum(by_status.values()),
                    **{s.value: by_status.get(s.value, 0) for s in OrderStatus},
                },
                "payments": {s.value: by_payment.get(s.value, 0) for s in PaymentStatus},
                "revenue": {
                    "total_revenue": revenue["total_revenue"] or 0,
                    "avg_order_value": round(revenue["avg_order_value"] or 0, 2),
                    "paid_orders": revenue["paid_orders"],
                },
                "recent_orders": recent,
            },
            status=200,
        )
