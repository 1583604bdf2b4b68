"""Repository layer for persisting orders with the Django ORM.

``DjangoOrderRepository`` implements ``OrderRepositoryPort``. It maps the
order aggregate to one ``OrderModel`` row plus its ``OrderLineModel``
rows and back, so the domain layer never sees ORM types.

Per-order mutual exclusion is a database row lock: ``locked`` opens a
transaction and selects the order ``FOR UPDATE``. Everything done inside
the block (the order update, processed-event claims) commits or rolls
back together.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction

from .domain import (
    CancelledBy,
    DeliveryDetails,
    Order,
    OrderLine,
    OrderRepositoryPort,
    OrderStatus,
    PaymentState,
    PaymentStatus,
    PriceBreakdown,
    RefundState,
    RefundStatus,
    payment_details_for,
)
from .errors import DuplicateOrderNumber, OrderNotFound
from .models import OrderLineModel, OrderModel

# Columns rewritten by ``save``; lines and pricing are fixed at creation.
_MUTABLE_FIELDS = (
    "status",
    "payment_status",
    "transaction_id",
    "payment_id",
    "gateway_order_id",
    "unreconciled_payment_ids",
    "refund_status",
    "refund_amount",
    "refund_reason",
    "refund_id",
    "preparing_started_at",
    "out_for_delivery_at",
    "delivered_at",
    "cancelled_at",
    "cancellation_reason",
    "cancelled_by",
    "notes",
)


def _row_values(order: Order) -> dict:
    d = order.delivery
    return {
        "order_number": order.order_number,
        "user_id": order.user_id,
        "status": order.status.value,
        "currency": order.currency,
        "subtotal": order.pricing.subtotal,
        "delivery_fee": order.pricing.delivery_fee,
        "tax": order.pricing.tax,
        "discount": order.pricing.discount,
        "total": order.total,
        "full_name": d.full_name,
        "phone": d.phone,
        "street": d.street,
        "city": d.city,
        "state": d.state,
        "zip_code": d.zip_code,
        "country": d.country,
        "instructions": d.instructions,
        "payment_method": order.payment.method.value,
        "payment_metadata": order.payment.details.metadata(),
        "payment_status": order.payment.status.value,
        "transaction_id": order.payment.transaction_id,
        "payment_id": order.payment.payment_id,
        "gateway_order_id": order.payment.gateway_order_id,
        "unreconciled_payment_ids": list(order.payment.unreconciled_payment_ids),
        "refund_status": order.refund.status.value,
        "refund_amount": order.refund.amount,
        "refund_reason": order.refund.reason,
        "refund_id": order.refund.refund_id,
        "created_at": order.created_at,
        "estimated_delivery_at": order.estimated_delivery_at,
        "preparing_started_at": order.preparing_started_at,
        "out_for_delivery_at": order.out_for_delivery_at,
        "delivered_at": order.delivered_at,
        "cancelled_at": order.cancelled_at,
        "cancellation_reason": order.cancellation_reason,
        "cancelled_by": order.cancelled_by.value if order.cancelled_by else None,
        "is_urgent": order.is_urgent,
        "notes": order.notes,
    }


def to_domain(obj: OrderModel) -> Order:
    """Rebuild the aggregate from a row (lines must be loadable)."""
    lines = [
        OrderLine(food_id=ln.food_id, name=ln.name, unit_price=ln.unit_price, quantity=ln.quantity)
        for ln in obj.lines.all()
    ]
    return Order(
        id=obj.id,
        order_number=obj.order_number,
        user_id=obj.user_id,
        lines=lines,
        delivery=DeliveryDetails(
            full_name=obj.full_name,
            phone=obj.phone,
            street=obj.street,
            city=obj.city,
            state=obj.state,
            zip_code=obj.zip_code,
            country=obj.country,
            instructions=obj.instructions,
        ),
        payment=PaymentState(
            details=payment_details_for(obj.payment_method, **(obj.payment_metadata or {})),
            status=PaymentStatus(obj.payment_status),
            transaction_id=obj.transaction_id,
            payment_id=obj.payment_id,
            gateway_order_id=obj.gateway_order_id,
            unreconciled_payment_ids=list(obj.unreconciled_payment_ids or []),
        ),
        pricing=PriceBreakdown.restore(obj.subtotal, obj.delivery_fee, obj.tax, obj.discount, obj.total),
        refund=RefundState(
            status=RefundStatus(obj.refund_status),
            amount=obj.refund_amount,
            reason=obj.refund_reason,
            refund_id=obj.refund_id,
        ),
        status=OrderStatus(obj.status),
        currency=obj.currency,
        created_at=obj.created_at,
        estimated_delivery_at=obj.estimated_delivery_at,
        preparing_started_at=obj.preparing_started_at,
        out_for_delivery_at=obj.out_for_delivery_at,
        delivered_at=obj.delivered_at,
        cancelled_at=obj.cancelled_at,
        cancellation_reason=obj.cancellation_reason,
        cancelled_by=CancelledBy(obj.cancelled_by) if obj.cancelled_by else None,
        is_urgent=obj.is_urgent,
        notes=obj.notes,
    )


class DjangoOrderRepository(OrderRepositoryPort):
    """Persists the order aggregate in ``orders`` / ``order_lines``."""

    def _qs(self):
        return OrderModel.objects.prefetch_related("lines")

    def add(self, order: Order) -> Order:
        try:
            with transaction.atomic():
                obj = OrderModel.objects.create(id=order.id, **_row_values(order))
                OrderLineModel.objects.bulk_create([
                    OrderLineModel(
                        order=obj,
                        position=i,
                        food_id=ln.food_id,
                        name=ln.name,
                        unit_price=ln.unit_price,
                        quantity=ln.quantity,
                    )
                    for i, ln in enumerate(order.lines)
                ])
        except IntegrityError:
            raise DuplicateOrderNumber(order.order_number)
        return order

    def get(self, order_id) -> Order:
        try:
            return to_domain(self._qs().get(pk=order_id))
        except (OrderModel.DoesNotExist, ValidationError, ValueError):
            raise OrderNotFound(f"order {order_id} not found")

    @contextmanager
    def locked(self, order_id):
        with transaction.atomic():
            try:
                obj = OrderModel.objects.select_for_update().get(pk=order_id)
            except (OrderModel.DoesNotExist, ValidationError, ValueError):
                raise OrderNotFound(f"order {order_id} not found")
            yield to_domain(obj)

    def save(self, order: Order) -> None:
        values = _row_values(order)
        updated = OrderModel.objects.filter(pk=order.id).update(**{f: values[f] for f in _MUTABLE_FIELDS})
        if not updated:
            raise OrderNotFound(f"order {order.id} not found")

    def _many(self, **filters) -> List[Order]:
        return [to_domain(o) for o in self._qs().filter(**filters).order_by("-created_at")]

    def _one(self, **filters) -> Optional[Order]:
        obj = self._qs().filter(**filters).order_by("-created_at").first()
        return to_domain(obj) if obj else None

    def find_by_order_number(self, order_number: str) -> Optional[Order]:
        return self._one(order_number=order_number)

    def find_by_user(self, user_id: str) -> List[Order]:
        return self._many(user_id=str(user_id))

    def find_by_status(self, status: OrderStatus) -> List[Order]:
        return self._many(status=OrderStatus(status).value)

    def find_by_payment_status(self, status: PaymentStatus) -> List[Order]:
        return self._many(payment_status=PaymentStatus(status).value)

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        return self._one(gateway_order_id=gateway_order_id)

    def find_by_payment_id(self, payment_id: str) -> Optional[Order]:
        return self._one(payment_id=payment_id)

    def find_with_estimated_delivery_before(self, when: datetime, excluding: Iterable[OrderStatus]) -> List[Order]:
        qs = (
            self._qs()
            .filter(estimated_delivery_at__lt=when)
            .exclude(status__in=[OrderStatus(s).value for s in excluding])
            .order_by("estimated_delivery_at")
        )
        return [to_domain(o) for o in qs]

    def search(self, user_id=None, status=None, payment_status=None) -> List[Order]:
        filters = {}
        if user_id is not None:
            filters["user_id"] = str(user_id)
        if status is not None:
            filters["status"] = OrderStatus(status).value
        if payment_status is not None:
            filters["payment_status"] = PaymentStatus(payment_status).value
        return self._many(**filters)
