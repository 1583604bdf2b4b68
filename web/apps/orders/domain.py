"""Domain model and ports for the order lifecycle.

This module holds the Order aggregate and its value objects (lines,
delivery details, payment and refund sub-states, price breakdown), the
payment events fed into the lifecycle, and the protocol definitions
(ports) for the collaborators the lifecycle depends on: the catalog, the
order repository, the processed-event store and the payment gateway.

Nothing here performs I/O; concrete adapters live in ``adapters``,
``http_adapters``, ``repository`` and ``idempotency``.
"""

import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import ClassVar, Iterable, List, Optional, Protocol, Union

from .errors import InvalidPricing, MissingDeliveryField


# ---- Enums ----
class OrderStatus(str, Enum):
    """Authoritative order status, driven only by the lifecycle manager."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "card"
    UPI = "upi"
    CASH = "cash"


class CancelledBy(str, Enum):
    USER = "user"
    RESTAURANT = "restaurant"
    SYSTEM = "system"


# Forward chain; cancelled is reachable from any non-terminal status.
STATUS_FLOW = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PROCESSING, PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


def next_status(status: OrderStatus) -> Optional[OrderStatus]:
    """Return the immediate successor of ``status`` on the forward chain."""
    if status not in STATUS_FLOW:
        return None
    idx = STATUS_FLOW.index(status)
    return STATUS_FLOW[idx + 1] if idx + 1 < len(STATUS_FLOW) else None


# ---- Payment method variants ----
@dataclass(frozen=True)
class CardDetails:
    """Card payment; only the last four digits and brand are kept."""

    method: ClassVar[PaymentMethod] = PaymentMethod.CARD
    requires_prepayment: ClassVar[bool] = True

    last4: Optional[str] = None
    brand: Optional[str] = None

    def metadata(self) -> dict:
        return {"last4": self.last4, "brand": self.brand}


@dataclass(frozen=True)
class UpiDetails:
    """UPI payment identified by the payer's virtual payment address."""

    method: ClassVar[PaymentMethod] = PaymentMethod.UPI
    requires_prepayment: ClassVar[bool] = True

    upi_id: Optional[str] = None

    def metadata(self) -> dict:
        return {"upi_id": self.upi_id}


@dataclass(frozen=True)
class CashDetails:
    """Cash collected by the rider on delivery."""

    method: ClassVar[PaymentMethod] = PaymentMethod.CASH
    requires_prepayment: ClassVar[bool] = False

    def metadata(self) -> dict:
        return {}


PaymentDetails = Union[CardDetails, UpiDetails, CashDetails]

_DETAILS_BY_METHOD = {cls.method: cls for cls in (CardDetails, UpiDetails, CashDetails)}


def payment_details_for(method, **metadata) -> PaymentDetails:
    """Build the payment variant for ``method`` from stored metadata.

    Unknown metadata keys are ignored so older rows keep loading.

    Raises:
        ValueError: If ``method`` is not a known payment method.
    """
    cls = _DETAILS_BY_METHOD[PaymentMethod(method)]
    names = {f.name for f in fields(cls)}
    known = {k: v for k, v in metadata.items() if k in names}
    return cls(**known)


# ---- Value objects ----
@dataclass(frozen=True)
class OrderLine:
    """A line of an order with the unit price snapshotted at creation.

    ``food_id`` is a plain reference into the catalog; deleting the food
    item never touches historical orders.
    """

    food_id: str
    name: str
    unit_price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class LineRequest:
    """A requested line before catalog lookup (food id and quantity only)."""

    food_id: str
    quantity: int


@dataclass(frozen=True)
class PriceBreakdown:
    """Decomposed order price; ``total`` is always derived from components."""

    subtotal: int
    delivery_fee: int
    tax: int
    discount: int = 0

    @property
    def total(self) -> int:
        return self.subtotal + self.delivery_fee + self.tax - self.discount

    @classmethod
    def restore(cls, subtotal: int, delivery_fee: int, tax: int, discount: int, total: int) -> "PriceBreakdown":
        """Rebuild a stored breakdown and check the stored total against it.

        Raises:
            InvalidPricing: If ``total`` disagrees with the components.
        """
        breakdown = cls(subtotal=subtotal, delivery_fee=delivery_fee, tax=tax, discount=discount)
        if breakdown.total != total:
            raise InvalidPricing(f"stored total {total} != recomputed {breakdown.total}")
        return breakdown


@dataclass(frozen=True)
class DeliveryDetails:
    full_name: str
    phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    instructions: str = ""

    REQUIRED_FIELDS: ClassVar[tuple] = ("full_name", "phone", "street", "city", "state", "zip_code", "country")

    def validate(self) -> None:
        """Raise ``MissingDeliveryField`` for the first blank required field."""
        for name in self.REQUIRED_FIELDS:
            value = getattr(self, name)
            if value is None or not str(value).strip():
                raise MissingDeliveryField(name)

    @property
    def address(self) -> str:
        return f"{self.street}, {self.city}, {self.state} {self.zip_code}"


@dataclass
class PaymentState:
    details: PaymentDetails
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    # Other captures seen after the order was already paid; refunded by hand.
    unreconciled_payment_ids: List[str] = field(default_factory=list)

    @property
    def method(self) -> PaymentMethod:
        return self.details.method

    def can_move_to(self, status: PaymentStatus) -> bool:
        return status in PAYMENT_TRANSITIONS[self.status]


@dataclass
class RefundState:
    status: RefundStatus = RefundStatus.NONE
    amount: int = 0
    reason: str = ""
    refund_id: Optional[str] = None


@dataclass
class Order:
    """The order aggregate.

    The order exclusively owns its lines, delivery details, payment and
    refund state and price breakdown. ``user_id`` is a reference used by
    the HTTP layer for ownership checks.
    """

    id: uuid.UUID
    order_number: str
    user_id: str
    lines: List[OrderLine]
    delivery: DeliveryDetails
    payment: PaymentState
    pricing: PriceBreakdown
    refund: RefundState = field(default_factory=RefundState)
    status: OrderStatus = OrderStatus.PENDING
    currency: str = "INR"
    created_at: Optional[datetime] = None
    estimated_delivery_at: Optional[datetime] = None
    preparing_started_at: Optional[datetime] = None
    out_for_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: str = ""
    cancelled_by: Optional[CancelledBy] = None
    is_urgent: bool = False
    notes: str = ""

    @property
    def total(self) -> int:
        return self.pricing.total

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_payment(self) -> bool:
        return (
            self.payment.details.requires_prepayment
            and self.payment.status not in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
        )

    def reserved_quantities(self) -> dict:
        """Quantities per food id held by this order's stock reservation."""
        return aggregate_quantities(self.lines)


def aggregate_quantities(lines: Iterable) -> dict:
    """Sum ``quantity`` per ``food_id`` preserving first-seen order."""
    totals: dict[str, int] = {}
    for line in lines:
        totals[line.food_id] = totals.get(line.food_id, 0) + line.quantity
    return totals


@dataclass(frozen=True)
class CatalogItem:
    """Read model of a catalog food item as seen by the lifecycle."""

    food_id: str
    name: str
    price: int
    stock_quantity: int
    is_available: bool = True


# ---- Payment events ----
@dataclass(frozen=True)
class PaymentEvent:
    """A payment outcome to apply to an order.

    ``event_id`` is the provider's delivery id when known; otherwise the
    idempotency key falls back to the payment id so retried deliveries of
    the same outcome collapse onto one key.
    """

    payment_id: Optional[str] = None
    transaction_id: Optional[str] = None
    reason: str = ""
    event_id: Optional[str] = None

    succeeded: ClassVar[bool] = True
    source: ClassVar[str] = "event"

    @property
    def idempotency_key(self) -> Optional[str]:
        if self.event_id:
            return f"{self.source}:{self.event_id}"
        if self.payment_id:
            outcome = "ok" if self.succeeded else "fail"
            return f"{self.source}:{outcome}:{self.payment_id}"
        return None


@dataclass(frozen=True)
class PaymentVerified(PaymentEvent):
    """A checkout success echoed by the client.

    Only trusted for the provider order the order was started with.
    """

    gateway_order_id: Optional[str] = None

    succeeded: ClassVar[bool] = True
    source: ClassVar[str] = "verify"


@dataclass(frozen=True)
class PaymentFailed(PaymentEvent):
    succeeded: ClassVar[bool] = False
    source: ClassVar[str] = "verify"


@dataclass(frozen=True)
class PaymentCaptured(PaymentEvent):
    succeeded: ClassVar[bool] = True
    source: ClassVar[str] = "webhook"


@dataclass(frozen=True)
class PaymentCaptureFailed(PaymentEvent):
    succeeded: ClassVar[bool] = False
    source: ClassVar[str] = "webhook"


# ---- Gateway results ----
@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    provider_order_id: str


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Port describing the catalog operations used by the lifecycle."""

    def get(self, food_id: str) -> Optional[CatalogItem]:
        """Return the catalog item or None when it does not exist."""
        raise NotImplementedError()

    def adjust_stock(self, food_id: str, delta: int) -> None:
        """Add ``delta`` to the stock of ``food_id``.

        Negative deltas reserve stock, positive deltas release it.

        Raises:
            FoodNotFound: If the item does not exist.
            InsufficientStock: If the decrement would make stock negative.
        """
        raise NotImplementedError()


class OrderRepositoryPort(Protocol):
    """Port describing durable storage of orders."""

    def add(self, order: Order) -> Order:
        """Insert a new order.

        Raises:
            DuplicateOrderNumber: If ``order.order_number`` is taken.
        """
        raise NotImplementedError()

    def get(self, order_id) -> Order:
        """Load an order. Raises ``OrderNotFound``."""
        raise NotImplementedError()

    def locked(self, order_id) -> AbstractContextManager:
        """Yield the order under a per-order exclusive lock.

        Changes are persisted by calling ``save`` inside the block.
        Raises ``OrderNotFound`` on entry when the order is absent.
        """
        raise NotImplementedError()

    def save(self, order: Order) -> None:
        raise NotImplementedError()

    def find_by_order_number(self, order_number: str) -> Optional[Order]:
        raise NotImplementedError()

    def find_by_user(self, user_id: str) -> List[Order]:
        raise NotImplementedError()

    def find_by_status(self, status: OrderStatus) -> List[Order]:
        raise NotImplementedError()

    def find_by_payment_status(self, status: PaymentStatus) -> List[Order]:
        raise NotImplementedError()

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        raise NotImplementedError()

    def find_by_payment_id(self, payment_id: str) -> Optional[Order]:
        raise NotImplementedError()

    def find_with_estimated_delivery_before(self, when: datetime, excluding: Iterable[OrderStatus]) -> List[Order]:
        raise NotImplementedError()

    def search(self, user_id: Optional[str] = None, status: Optional[OrderStatus] = None,
               payment_status: Optional[PaymentStatus] = None) -> List[Order]:
        """Newest-first listing filtered by any combination of fields."""
        raise NotImplementedError()


class ProcessedEventsPort(Protocol):
    """Port describing the store of already applied payment events."""

    def claim(self, key: str, order_id) -> bool:
        """Record ``key`` as processed.

        Returns:
            True if this call claimed the key, False if it was already
            claimed by an earlier delivery.
        """
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing the third-party payment processor."""

    def create_intent(self, amount: int, currency: str, receipt: str, metadata: dict,
                      idempotency_key: Optional[str] = None) -> PaymentIntent:
        raise NotImplementedError()

    def verify_signature(self, order_ref: str, payment_id: str, signature: str) -> bool:
        """Return True when ``signature`` authenticates ``order_ref|payment_id``.

        Must never raise; malformed input yields False.
        """
        raise NotImplementedError()

    def refund(self, payment_id: str, amount: int, speed: str = "normal",
               idempotency_key: Optional[str] = None) -> RefundResult:
        raise NotImplementedError()
