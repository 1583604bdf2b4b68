"""Order lifecycle manager: the state machine behind orders and payments.

``OrderLifecycleManager`` is the only component allowed to change an
order's status, payment state or refund state. It orchestrates the
catalog (stock reservation and release), the order repository (durable
state and per-order locking), the processed-event store (payment event
de-duplication) and the payment gateway (intents and refunds).

Every read-modify-write on an existing order runs inside
``orders.locked(order_id)`` so concurrent payment callbacks, cancellations
and status updates on the same order serialize, while operations on
different orders never wait for each other.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from .domain import (
    CancelledBy,
    CatalogPort,
    DeliveryDetails,
    LineRequest,
    Order,
    OrderLine,
    OrderRepositoryPort,
    OrderStatus,
    PaymentDetails,
    PaymentEvent,
    PaymentGatewayPort,
    PaymentState,
    PaymentStatus,
    PaymentVerified,
    ProcessedEventsPort,
    RefundState,
    RefundStatus,
    aggregate_quantities,
    next_status,
)
from .errors import (
    AlreadyTerminal,
    DuplicateOrderNumber,
    EmptyOrder,
    FoodNotFound,
    FoodUnavailable,
    InsufficientStock,
    InvalidQuantity,
    InvalidRefundState,
    InvalidSignature,
    InvalidTransition,
    StateError,
)
from .pricing import PricingPolicy, price_with_policy

logger = logging.getLogger(__name__)

BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
ORDER_NUMBER_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_number(prefix: str, now: datetime) -> str:
    """Build ``PREFIX-<epoch millis>-<9 random base36 chars>``."""
    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(BASE36) for _ in range(9))
    return f"{prefix}-{millis}-{suffix}"


class OrderLifecycleManager:
    """Validates and applies every transition of the order aggregate."""

    def __init__(
        self,
        catalog: CatalogPort,
        orders: OrderRepositoryPort,
        events: ProcessedEventsPort,
        gateway: PaymentGatewayPort,
        pricing: Optional[PricingPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
        order_number_prefix: str = "ORD",
        eta_minutes: int = 45,
        currency: str = "INR",
    ):
        self.catalog = catalog
        self.orders = orders
        self.events = events
        self.gateway = gateway
        self.pricing = pricing or PricingPolicy()
        self.clock = clock
        self.order_number_prefix = order_number_prefix
        self.eta_minutes = eta_minutes
        self.currency = currency

    # ---- creation ----
    def create_order(
        self,
        user_id: str,
        lines: Sequence[LineRequest],
        delivery: DeliveryDetails,
        payment: PaymentDetails,
        notes: str = "",
        is_urgent: bool = False,
        discount: int = 0,
    ) -> Order:
        """Price, reserve stock for and persist a new order.

        Steps: validate input, snapshot catalog prices, compute the
        breakdown, reserve stock for every food item (all or nothing),
        then persist with a freshly generated order number. A failure
        after the reservation releases it before the error propagates.

        Returns:
            The persisted order, ``pending`` for prepaid methods and
            ``confirmed`` for cash.

        Raises:
            EmptyOrder, InvalidQuantity, MissingDeliveryField,
            InvalidPricing: On invalid input, before any side effect.
            FoodNotFound, FoodUnavailable, InsufficientStock: On catalog
                checks; no stock is left reserved.
        """
        if not lines:
            raise EmptyOrder("an order needs at least one line")
        for req in lines:
            if not isinstance(req.quantity, int) or req.quantity < 1:
                raise InvalidQuantity(f"quantity for {req.food_id} must be at least 1")
        delivery.validate()

        order_lines = self._snapshot_lines(lines)
        breakdown = price_with_policy(order_lines, self.pricing, discount=discount)

        demand = aggregate_quantities(order_lines)
        self._reserve(demand)

        now = self.clock()
        order = Order(
            id=uuid.uuid4(),
            order_number="",
            user_id=str(user_id),
            lines=order_lines,
            delivery=delivery,
            payment=PaymentState(details=payment),
            pricing=breakdown,
            status=OrderStatus.PENDING if payment.requires_prepayment else OrderStatus.CONFIRMED,
            currency=self.currency,
            created_at=now,
            estimated_delivery_at=now + timedelta(minutes=self.eta_minutes),
            is_urgent=is_urgent,
            notes=notes or "",
        )

        try:
            saved = self._persist_new(order, now)
        except Exception:
            logger.warning("order persistence failed, releasing reservation", extra={"user_id": order.user_id})
            self._release(demand, reference="create-rollback")
            raise

        logger.info(
            "order created",
            extra={
                "order_id": str(saved.id),
                "order_number": saved.order_number,
                "status": saved.status.value,
                "total": saved.total,
            },
        )
        return saved

    def _snapshot_lines(self, lines: Sequence[LineRequest]) -> List[OrderLine]:
        snapshot: List[OrderLine] = []
        wanted = aggregate_quantities(lines)
        items = {}
        for food_id, qty in wanted.items():
            item = self.catalog.get(food_id)
            if item is None:
                raise FoodNotFound(f"food item {food_id} not found")
            if not item.is_available:
                raise FoodUnavailable(f"food item {item.name} is not available")
            if item.stock_quantity < qty:
                raise InsufficientStock(f"insufficient stock for {item.name}")
            items[food_id] = item
        for req in lines:
            item = items[req.food_id]
            snapshot.append(
                OrderLine(food_id=req.food_id, name=item.name, unit_price=item.price, quantity=req.quantity)
            )
        return snapshot

    def _reserve(self, demand: dict) -> None:
        reserved = {}
        try:
            for food_id, qty in demand.items():
                self.catalog.adjust_stock(food_id, -qty)
                reserved[food_id] = qty
        except Exception:
            if reserved:
                self._release(reserved, reference="reserve-compensation")
            raise

    def _release(self, quantities: dict, reference: str) -> None:
        """Give stock back; failures are logged for reconciliation only."""
        for food_id, qty in quantities.items():
            try:
                self.catalog.adjust_stock(food_id, qty)
            except FoodNotFound:
                logger.warning(
                    "stock release skipped, food item no longer exists",
                    extra={"food_id": food_id, "quantity": qty, "reference": reference},
                )
            except Exception:
                logger.exception(
                    "stock release failed, needs reconciliation",
                    extra={"food_id": food_id, "quantity": qty, "reference": reference},
                )

    def _persist_new(self, order: Order, now: datetime) -> Order:
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order.order_number = generate_order_number(self.order_number_prefix, now)
            try:
                return self.orders.add(order)
            except DuplicateOrderNumber:
                logger.warning("order number collision, regenerating", extra={"attempt": attempt})
        raise DuplicateOrderNumber(f"no unique order number after {ORDER_NUMBER_ATTEMPTS} attempts")

    # ---- payments ----
    def start_payment(self, order_id) -> Order:
        """Create (or reuse) the gateway intent and mark the payment processing.

        Raises:
            OrderNotFound: If the order does not exist.
            AlreadyTerminal: If the order is delivered or cancelled.
            InvalidTransition: For cash orders or already paid orders.
        """
        order = self.orders.get(order_id)
        self._check_payable(order)

        if order.payment.gateway_order_id is None:
            intent = self.gateway.create_intent(
                amount=order.total,
                currency=order.currency,
                receipt=order.order_number,
                metadata={"order_id": str(order.id), "order_number": order.order_number},
                idempotency_key=order.order_number,
            )
            gateway_order_id = intent.provider_order_id
        else:
            gateway_order_id = order.payment.gateway_order_id

        with self.orders.locked(order_id) as order:
            self._check_payable(order)
            if order.payment.gateway_order_id is None:
                order.payment.gateway_order_id = gateway_order_id
            if order.payment.can_move_to(PaymentStatus.PROCESSING):
                order.payment.status = PaymentStatus.PROCESSING
            self.orders.save(order)

        logger.info(
            "payment started",
            extra={"order_id": str(order.id), "gateway_order_id": order.payment.gateway_order_id},
        )
        return order

    def _check_payable(self, order: Order) -> None:
        if order.is_terminal:
            raise AlreadyTerminal(f"order {order.order_number} is {order.status.value}")
        if not order.payment.details.requires_prepayment:
            raise InvalidTransition("cash orders are paid on delivery")
        if order.payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise InvalidTransition(f"payment already {order.payment.status.value}")

    def apply_payment_event(self, order_id, event: PaymentEvent) -> Order:
        """Apply a verified payment outcome to an order, idempotently.

        The caller is responsible for authenticity (signature checks). A
        replayed event, identified by its idempotency key, or a repeated
        capture of the same payment id returns the order unchanged.

        Raises:
            OrderNotFound: If the order does not exist.
            InvalidSignature: If a checkout verification names a provider
                order other than the one this order was started with.
        """
        with self.orders.locked(order_id) as order:
            if isinstance(event, PaymentVerified):
                self._check_provider_order(order, event.gateway_order_id)

            key = event.idempotency_key
            if key and not self.events.claim(key, order.id):
                logger.info("duplicate payment event ignored", extra={"order_id": str(order.id), "event_key": key})
                return order

            if event.succeeded:
                changed = self._record_capture(order, event)
            else:
                changed = self._record_failure(order, event)
            if changed:
                self.orders.save(order)
            return order

    def _check_provider_order(self, order: Order, gateway_order_id: Optional[str]) -> None:
        expected = order.payment.gateway_order_id
        if expected is None or gateway_order_id != expected:
            logger.warning(
                "payment verified against another provider order",
                extra={"order_id": str(order.id), "gateway_order_id": gateway_order_id, "expected": expected},
            )
            raise InvalidSignature("provider order mismatch")

    def _record_capture(self, order: Order, event: PaymentEvent) -> bool:
        payment = order.payment
        if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            other = event.payment_id
            if not other or other == payment.payment_id or other in payment.unreconciled_payment_ids:
                return False
            payment.unreconciled_payment_ids.append(other)
            logger.error(
                "second capture for an already paid order, needs manual refund",
                extra={"order_id": str(order.id), "payment_id": payment.payment_id, "other_payment_id": other},
            )
            return True

        payment.status = PaymentStatus.COMPLETED
        payment.payment_id = event.payment_id
        if event.transaction_id:
            payment.transaction_id = event.transaction_id

        if order.status == OrderStatus.PENDING:
            order.status = OrderStatus.CONFIRMED
        elif order.status == OrderStatus.CANCELLED:
            # Money arrived for an order that no longer exists: hand it back.
            self._queue_refund(order, "Payment captured after cancellation")
        logger.info(
            "payment completed",
            extra={"order_id": str(order.id), "payment_id": event.payment_id, "status": order.status.value},
        )
        return True

    def _record_failure(self, order: Order, event: PaymentEvent) -> bool:
        payment = order.payment
        if not payment.can_move_to(PaymentStatus.FAILED):
            logger.info(
                "payment failure ignored",
                extra={"order_id": str(order.id), "payment_status": payment.status.value},
            )
            return False
        payment.status = PaymentStatus.FAILED
        logger.info(
            "payment failed",
            extra={"order_id": str(order.id), "payment_id": event.payment_id, "reason": event.reason},
        )
        return True

    # ---- fulfilment ----
    def update_status(self, order_id, new_status, notes: str = "") -> Order:
        """Advance an order one step along the fulfilment chain.

        ``cancelled`` is accepted from any non-terminal status and is
        handled as a restaurant cancellation.

        Raises:
            OrderNotFound: If the order does not exist.
            AlreadyTerminal: If the order is delivered or cancelled.
            InvalidTransition: If ``new_status`` is unknown, skips a step,
                or confirms a prepaid order whose payment is not complete.
        """
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise InvalidTransition(f"unknown status {new_status!r}")

        if target == OrderStatus.CANCELLED:
            return self.cancel_order(order_id, notes, CancelledBy.RESTAURANT)

        with self.orders.locked(order_id) as order:
            if order.is_terminal:
                raise AlreadyTerminal(f"order {order.order_number} is {order.status.value}")
            if target != next_status(order.status):
                raise InvalidTransition(f"cannot move from {order.status.value} to {target.value}")
            if order.status == OrderStatus.PENDING and order.awaiting_payment:
                raise InvalidTransition("order is awaiting payment")

            now = self.clock()
            order.status = target
            if target == OrderStatus.PREPARING:
                order.preparing_started_at = now
            elif target == OrderStatus.OUT_FOR_DELIVERY:
                order.out_for_delivery_at = now
            elif target == OrderStatus.DELIVERED:
                order.delivered_at = now
                if not order.payment.details.requires_prepayment and order.payment.can_move_to(PaymentStatus.COMPLETED):
                    order.payment.status = PaymentStatus.COMPLETED
            if notes:
                order.notes = notes
            self.orders.save(order)

        logger.info("order status updated", extra={"order_id": str(order.id), "status": target.value})
        return order

    def cancel_order(self, order_id, reason: str = "", cancelled_by=CancelledBy.USER) -> Order:
        """Cancel an order, release its stock and queue a refund if paid.

        The cancellation is committed before stock is released; release
        problems are logged and never undo the cancellation.

        Raises:
            OrderNotFound: If the order does not exist.
            AlreadyTerminal: If the order is delivered or cancelled.
        """
        by = CancelledBy(cancelled_by)
        with self.orders.locked(order_id) as order:
            if order.is_terminal:
                raise AlreadyTerminal(f"order {order.order_number} is {order.status.value}")
            order.status = OrderStatus.CANCELLED
            order.cancellation_reason = reason or ""
            order.cancelled_by = by
            order.cancelled_at = self.clock()
            if order.payment.status == PaymentStatus.COMPLETED:
                self._queue_refund(order, "Order cancelled")
            self.orders.save(order)

        logger.info(
            "order cancelled",
            extra={"order_id": str(order.id), "cancelled_by": by.value, "refund_status": order.refund.status.value},
        )
        self._release(order.reserved_quantities(), reference=f"cancel-{order.order_number}")
        return order

    def _queue_refund(self, order: Order, reason: str) -> None:
        order.refund = RefundState(status=RefundStatus.PENDING, amount=order.total, reason=reason)

    # ---- refunds ----
    def process_refund(self, order_id, outcome, reason: str = "") -> Order:
        """Settle a pending refund as ``processed`` or ``failed``.

        Raises:
            OrderNotFound: If the order does not exist.
            InvalidRefundState: If no refund is pending or ``outcome`` is
                not a settlement outcome.
        """
        try:
            result = RefundStatus(outcome)
        except ValueError:
            raise InvalidRefundState(f"unknown refund outcome {outcome!r}")
        if result not in (RefundStatus.PROCESSED, RefundStatus.FAILED):
            raise InvalidRefundState(f"refund outcome must be processed or failed, got {result.value}")

        with self.orders.locked(order_id) as order:
            if order.refund.status != RefundStatus.PENDING:
                raise InvalidRefundState(f"refund is {order.refund.status.value}")
            order.refund.status = result
            if reason:
                order.refund.reason = reason
            if result == RefundStatus.PROCESSED:
                order.payment.status = PaymentStatus.REFUNDED
            self.orders.save(order)

        logger.info("refund settled", extra={"order_id": str(order.id), "refund_status": result.value})
        return order

    def submit_refund(self, order_id, speed: str = "normal") -> Order:
        """Send a pending refund to the gateway.

        If the gateway settles it synchronously the outcome is applied at
        once; otherwise the refund stays pending until its webhook.

        Raises:
            OrderNotFound: If the order does not exist.
            InvalidRefundState: If no refund is pending.
        """
        order = self.orders.get(order_id)
        if order.refund.status != RefundStatus.PENDING:
            raise InvalidRefundState(f"refund is {order.refund.status.value}")
        if order.refund.refund_id:
            return order
        if not order.payment.payment_id:
            raise InvalidRefundState("no captured payment to refund")

        result = self.gateway.refund(
            payment_id=order.payment.payment_id,
            amount=order.refund.amount,
            speed=speed,
            idempotency_key=f"refund-{order.order_number}",
        )
        with self.orders.locked(order_id) as order:
            if order.refund.status != RefundStatus.PENDING:
                raise InvalidRefundState(f"refund is {order.refund.status.value}")
            order.refund.refund_id = result.refund_id
            self.orders.save(order)

        logger.info(
            "refund submitted",
            extra={"order_id": str(order.id), "refund_id": result.refund_id, "gateway_status": result.status},
        )
        if result.status == RefundStatus.PROCESSED.value:
            return self.process_refund(order_id, RefundStatus.PROCESSED)
        if result.status == RefundStatus.FAILED.value:
            return self.process_refund(order_id, RefundStatus.FAILED, "Gateway rejected the refund")
        return order

    # ---- reservation timeout ----
    def expire_unpaid_orders(self, older_than: timedelta) -> List[Order]:
        """Cancel pending orders whose payment never completed in time.

        Meant to be run by an external scheduler. Orders that change
        state concurrently are skipped.
        """
        cutoff = self.clock() - older_than
        expired = []
        for candidate in self.orders.find_by_status(OrderStatus.PENDING):
            if candidate.created_at is None or candidate.created_at >= cutoff:
                continue
            if not candidate.awaiting_payment:
                continue
            try:
                expired.append(self.cancel_order(candidate.id, "Payment timeout", CancelledBy.SYSTEM))
            except StateError as exc:
                logger.info("expiry skipped", extra={"order_id": str(candidate.id), "reason": str(exc)})
        return expired
