"""Customer-facing progress projection of an order.

The persisted ``Order.status`` is the only authoritative status. This
module derives what a tracking screen shows from it: a stage, a label and,
while the order is in flight, the minutes left until the estimated
delivery time. Time never moves an order to another stage; it only feeds
the countdown and the delay flag.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .domain import Order, OrderStatus

STATUS_LABELS = {
    OrderStatus.PENDING: "Payment Pending",
    OrderStatus.CONFIRMED: "Order Confirmed",
    OrderStatus.PREPARING: "Preparing Your Food",
    OrderStatus.READY: "Ready for Pickup",
    OrderStatus.OUT_FOR_DELIVERY: "Out for Delivery",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}


@dataclass(frozen=True)
class OrderProgress:
    stage: str
    label: str
    minutes_remaining: Optional[int] = None
    is_delayed: bool = False


def project_progress(order: Order, now: datetime) -> OrderProgress:
    """Project ``order`` onto a display stage at time ``now``.

    Stages are ``cancelled``, ``payment_pending``, ``delivered``,
    ``on_the_way`` and ``preparing``.
    """
    label = STATUS_LABELS[order.status]
    if order.status == OrderStatus.CANCELLED:
        return OrderProgress(stage="cancelled", label=label)
    if order.status == OrderStatus.DELIVERED:
        return OrderProgress(stage="delivered", label=label)
    if order.status == OrderStatus.PENDING and order.awaiting_payment:
        return OrderProgress(stage="payment_pending", label=label)

    stage = "on_the_way" if order.status == OrderStatus.OUT_FOR_DELIVERY else "preparing"

    minutes = None
    delayed = False
    eta = order.estimated_delivery_at
    if eta is not None:
        remaining = (eta - now).total_seconds()
        minutes = max(0, int(round(remaining / 60)))
        delayed = remaining < 0
    return OrderProgress(stage=stage, label=label, minutes_remaining=minutes, is_delayed=delayed)


def format_eta(minutes: Optional[int]) -> str:
    """Render a countdown the way the order history screen does."""
    if minutes is None:
        return ""
    if minutes <= 0:
        return "Any moment now"
    if minutes < 60:
        return f"{minutes} minutes"
    return f"{minutes // 60}h {minutes % 60}m"
