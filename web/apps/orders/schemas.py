"""Pydantic schemas for the orders API.

Request DTOs validate shape and types; business rules (empty orders,
quantities, blank delivery fields) stay in the lifecycle manager so the
same error codes come back whichever entry point is used. Response DTOs
flatten the order aggregate into JSON.
"""

import re
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .display import project_progress
from .domain import (
    CardDetails,
    CashDetails,
    DeliveryDetails,
    LineRequest,
    Order,
    UpiDetails,
)

LAST4_RE = re.compile(r"^[0-9]{4}$")
UPI_RE = re.compile(r"^[\w.\-]{2,256}@[A-Za-z]{2,64}$")


# ---- requests ----
class OrderLineIn(BaseModel):
    food_id: str = Field(min_length=1, max_length=64)
    quantity: int

    def to_domain(self) -> LineRequest:
        return LineRequest(food_id=self.food_id, quantity=self.quantity)


class DeliveryIn(BaseModel):
    """Delivery address; blanks are reported by the lifecycle manager."""

    full_name: str = ""
    phone: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "India"
    instructions: str = Field(default="", max_length=500)

    def to_domain(self) -> DeliveryDetails:
        return DeliveryDetails(**self.model_dump())


class CardPaymentIn(BaseModel):
    method: Literal["card"]
    last4: Optional[str] = None
    brand: Optional[str] = Field(default=None, max_length=32)

    @field_validator("last4")
    @classmethod
    def validate_last4(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not LAST4_RE.match(v):
            raise ValueError("last4 must be four digits")
        return v

    def to_domain(self) -> CardDetails:
        return CardDetails(last4=self.last4, brand=self.brand)


class UpiPaymentIn(BaseModel):
    method: Literal["upi"]
    upi_id: Optional[str] = None

    @field_validator("upi_id")
    @classmethod
    def validate_upi_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not UPI_RE.match(v):
            raise ValueError("Invalid UPI ID format")
        return v

    def to_domain(self) -> UpiDetails:
        return UpiDetails(upi_id=self.upi_id)


class CashPaymentIn(BaseModel):
    method: Literal["cash"]

    def to_domain(self) -> CashDetails:
        return CashDetails()


PaymentIn = Annotated[Union[CardPaymentIn, UpiPaymentIn, CashPaymentIn], Field(discriminator="method")]


class CreateOrderDTO(BaseModel):
    items: List[OrderLineIn]
    delivery: DeliveryIn
    payment: PaymentIn
    notes: str = Field(default="", max_length=1000)
    is_urgent: bool = False


class UpdateStatusDTO(BaseModel):
    status: str
    notes: str = Field(default="", max_length=1000)


class CancelOrderDTO(BaseModel):
    reason: str = Field(default="", max_length=255)


class RefundOutcomeDTO(BaseModel):
    outcome: Literal["processed", "failed"]
    reason: str = Field(default="", max_length=255)


class SubmitRefundDTO(BaseModel):
    speed: Literal["normal", "optimum"] = "normal"


# ---- responses ----
class OrderLineOut(BaseModel):
    food_id: str
    name: str
    unit_price: int
    quantity: int
    line_total: int


class PricingOut(BaseModel):
    subtotal: int
    delivery_fee: int
    tax: int
    discount: int
    total: int


class DeliveryOut(BaseModel):
    full_name: str
    phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str
    instructions: str = ""


class PaymentOut(BaseModel):
    method: str
    status: str
    last4: Optional[str] = None
    brand: Optional[str] = None
    upi_id: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    unreconciled_payment_ids: List[str] = []


class RefundOut(BaseModel):
    status: str
    amount: int
    reason: str = ""
    refund_id: Optional[str] = None


class ProgressOut(BaseModel):
    stage: str
    label: str
    minutes_remaining: Optional[int] = None
    is_delayed: bool = False


class OrderReadDTO(BaseModel):
    id: str
    order_number: str
    user_id: str
    status: str
    currency: str
    items: List[OrderLineOut]
    pricing: PricingOut
    delivery: DeliveryOut
    payment: PaymentOut
    refund: RefundOut
    progress: ProgressOut
    created_at: Optional[datetime] = None
    estimated_delivery_at: Optional[datetime] = None
    preparing_started_at: Optional[datetime] = None
    out_for_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    is_urgent: bool = False
    notes: str = ""

    @classmethod
    def from_domain(cls, order: Order, now: datetime) -> "OrderReadDTO":
        progress = project_progress(order, now)
        pricing = order.pricing
        return cls(
            id=str(order.id),
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status.value,
            currency=order.currency,
            items=[
                OrderLineOut(
                    food_id=ln.food_id,
                    name=ln.name,
                    unit_price=ln.unit_price,
                    quantity=ln.quantity,
                    line_total=ln.line_total,
                )
                for ln in order.lines
            ],
            pricing=PricingOut(
                subtotal=pricing.subtotal,
                delivery_fee=pricing.delivery_fee,
                tax=pricing.tax,
                discount=pricing.discount,
                total=pricing.total,
            ),
            delivery=DeliveryOut(
                full_name=order.delivery.full_name,
                phone=order.delivery.phone,
                street=order.delivery.street,
                city=order.delivery.city,
                state=order.delivery.state,
                zip_code=order.delivery.zip_code,
                country=order.delivery.country,
                instructions=order.delivery.instructions,
            ),
            payment=PaymentOut(
                method=order.payment.method.value,
                status=order.payment.status.value,
                transaction_id=order.payment.transaction_id,
                payment_id=order.payment.payment_id,
                gateway_order_id=order.payment.gateway_order_id,
                unreconciled_payment_ids=list(order.payment.unreconciled_payment_ids),
                **order.payment.details.metadata(),
            ),
            refund=RefundOut(
                status=order.refund.status.value,
                amount=order.refund.amount,
                reason=order.refund.reason,
                refund_id=order.refund.refund_id,
            ),
            progress=ProgressOut(
                stage=progress.stage,
                label=progress.label,
                minutes_remaining=progress.minutes_remaining,
                is_delayed=progress.is_delayed,
            ),
            created_at=order.created_at,
            estimated_delivery_at=order.estimated_delivery_at,
            preparing_started_at=order.preparing_started_at,
            out_for_delivery_at=order.out_for_delivery_at,
            delivered_at=order.delivered_at,
            cancelled_at=order.cancelled_at,
            cancellation_reason=order.cancellation_reason or None,
            cancelled_by=order.cancelled_by.value if order.cancelled_by else None,
            is_urgent=order.is_urgent,
            notes=order.notes,
        )
