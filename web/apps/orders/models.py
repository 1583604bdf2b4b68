import uuid
from django.db import models


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=40, unique=True)
    user_id = models.CharField(max_length=64, db_index=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PREPARING = "preparing"
        READY = "ready"
        OUT_FOR_DELIVERY = "out_for_delivery"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"
        REFUNDED = "refunded"

    class RefundStatus(models.TextChoices):
        NONE = "none"
        PENDING = "pending"
        PROCESSED = "processed"
        FAILED = "failed"

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING, db_index=True)
    currency = models.CharField(max_length=3, default="INR")

    # Price breakdown in whole currency units; total is checked on load
    subtotal = models.PositiveIntegerField(default=0)
    delivery_fee = models.PositiveIntegerField(default=0)
    tax = models.PositiveIntegerField(default=0)
    discount = models.PositiveIntegerField(default=0)
    total = models.PositiveIntegerField(default=0)

    # Delivery details
    full_name = models.CharField(max_length=120)
    phone = models.CharField(max_length=32)
    street = models.CharField(max_length=255)
    city = models.CharField(max_length=80)
    state = models.CharField(max_length=80)
    zip_code = models.CharField(max_length=16)
    country = models.CharField(max_length=80, default="India")
    instructions = models.TextField(blank=True, default="")

    # Payment
    payment_method = models.CharField(max_length=8)
    payment_metadata = models.JSONField(default=dict, blank=True)
    payment_status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True
    )
    transaction_id = models.CharField(max_length=64, null=True, blank=True)
    payment_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    gateway_order_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    unreconciled_payment_ids = models.JSONField(default=list, blank=True)

    # Refund
    refund_status = models.CharField(max_length=16, choices=RefundStatus.choices, default=RefundStatus.NONE)
    refund_amount = models.PositiveIntegerField(default=0)
    refund_reason = models.CharField(max_length=255, blank=True, default="")
    refund_id = models.CharField(max_length=64, null=True, blank=True)

    created_at = models.DateTimeField(db_index=True)
    estimated_delivery_at = models.DateTimeField(null=True, blank=True)
    preparing_started_at = models.DateTimeField(null=True, blank=True)
    out_for_delivery_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True, default="")
    cancelled_by = models.CharField(max_length=16, null=True, blank=True)
    is_urgent = models.BooleanField(default=False)
    notes = models.TextField(blank=True, default="")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]


class OrderLineModel(models.Model):
    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.CASCADE)
    position = models.PositiveSmallIntegerField()
    # Plain reference: deleting a food item never touches past orders
    food_id = models.CharField(max_length=64)
    name = models.CharField(max_length=200)
    unit_price = models.PositiveIntegerField()
    quantity = models.PositiveIntegerField()

    class Meta:
        db_table = "order_lines"
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["order", "position"], name="uniq_order_line_position"),
        ]


class IdempotencyKey(models.Model):
    """Stored response of a create-order request, keyed by ``Idempotency-Key``."""

    key = models.CharField(max_length=128, unique=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict, blank=True)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"


class ProcessedEvent(models.Model):
    """A payment event already applied to an order (webhook or verify)."""

    key = models.CharField(max_length=200, unique=True)
    order_id = models.UUIDField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "processed_payment_events"
