"""In-process adapters for the order lifecycle ports.

These implementations keep everything in memory and never touch the
network. They back unit tests and local development where deterministic
behavior matters more than durability:

- ``InMemoryCatalog``: food items with stock guarded by a single lock.
- ``InMemoryOrderRepository``: orders stored as deep copies with one lock
  per order id, so callers cannot mutate stored state by accident.
- ``InMemoryProcessedEvents``: a set of claimed event keys.
- ``FakePaymentGateway``: deterministic intents and refunds, plus real
  HMAC signature checks so verify flows can be exercised end to end.
"""

import copy
import hashlib
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from apps.payments.signatures import sign_payment, verify_payment_signature

from .domain import (
    CatalogItem,
    CatalogPort,
    Order,
    OrderRepositoryPort,
    OrderStatus,
    PaymentGatewayPort,
    PaymentIntent,
    PaymentStatus,
    ProcessedEventsPort,
    RefundResult,
)
from .errors import DuplicateOrderNumber, FoodNotFound, InsufficientStock, OrderNotFound


class InMemoryCatalog(CatalogPort):
    """Catalog stub holding items in a dict keyed by food id."""

    def __init__(self, items: Optional[Iterable[CatalogItem]] = None):
        self._lock = threading.Lock()
        self._items: Dict[str, CatalogItem] = {}
        for item in items or ():
            self._items[item.food_id] = item

    def put(self, item: CatalogItem) -> None:
        with self._lock:
            self._items[item.food_id] = item

    def remove(self, food_id: str) -> None:
        with self._lock:
            self._items.pop(food_id, None)

    def get(self, food_id: str) -> Optional[CatalogItem]:
        with self._lock:
            return self._items.get(food_id)

    def adjust_stock(self, food_id: str, delta: int) -> None:
        with self._lock:
            item = self._items.get(food_id)
            if item is None:
                raise FoodNotFound(f"food item {food_id} not found")
            new_qty = item.stock_quantity + delta
            if new_qty < 0:
                raise InsufficientStock(f"insufficient stock for {item.name}")
            self._items[food_id] = CatalogItem(
                food_id=item.food_id,
                name=item.name,
                price=item.price,
                stock_quantity=new_qty,
                is_available=item.is_available,
            )


class InMemoryOrderRepository(OrderRepositoryPort):
    """Order repository stub with a lock per order id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._orders: Dict[str, Order] = {}
        self._locks: Dict[str, threading.Lock] = {}

    def _key(self, order_id) -> str:
        return str(order_id)

    def _lock_for(self, order_id) -> threading.Lock:
        with self._guard:
            key = self._key(order_id)
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def add(self, order: Order) -> Order:
        with self._guard:
            if any(o.order_number == order.order_number for o in self._orders.values()):
                raise DuplicateOrderNumber(order.order_number)
            self._orders[self._key(order.id)] = copy.deepcopy(order)
        return copy.deepcopy(order)

    def get(self, order_id) -> Order:
        with self._guard:
            stored = self._orders.get(self._key(order_id))
            if stored is None:
                raise OrderNotFound(f"order {order_id} not found")
            return copy.deepcopy(stored)

    @contextmanager
    def locked(self, order_id):
        lock = self._lock_for(order_id)
        with lock:
            yield self.get(order_id)

    def save(self, order: Order) -> None:
        with self._guard:
            self._orders[self._key(order.id)] = copy.deepcopy(order)

    def _all(self) -> List[Order]:
        with self._guard:
            snapshot = [copy.deepcopy(o) for o in self._orders.values()]
        return sorted(snapshot, key=lambda o: (o.created_at is not None, o.created_at or 0), reverse=True)

    def find_by_order_number(self, order_number: str) -> Optional[Order]:
        return next((o for o in self._all() if o.order_number == order_number), None)

    def find_by_user(self, user_id: str) -> List[Order]:
        return [o for o in self._all() if o.user_id == str(user_id)]

    def find_by_status(self, status: OrderStatus) -> List[Order]:
        return [o for o in self._all() if o.status == status]

    def find_by_payment_status(self, status: PaymentStatus) -> List[Order]:
        return [o for o in self._all() if o.payment.status == status]

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        return next((o for o in self._all() if o.payment.gateway_order_id == gateway_order_id), None)

    def find_by_payment_id(self, payment_id: str) -> Optional[Order]:
        return next((o for o in self._all() if o.payment.payment_id == payment_id), None)

    def find_with_estimated_delivery_before(self, when: datetime, excluding: Iterable[OrderStatus]) -> List[Order]:
        skip = set(excluding)
        late = [
            o for o in self._all()
            if o.estimated_delivery_at is not None and o.estimated_delivery_at < when and o.status not in skip
        ]
        return sorted(late, key=lambda o: o.estimated_delivery_at)

    def search(self, user_id=None, status=None, payment_status=None) -> List[Order]:
        found = self._all()
        if user_id is not None:
            found = [o for o in found if o.user_id == str(user_id)]
        if status is not None:
            found = [o for o in found if o.status == status]
        if payment_status is not None:
            found = [o for o in found if o.payment.status == payment_status]
        return found


class InMemoryProcessedEvents(ProcessedEventsPort):
    def __init__(self):
        self._lock = threading.Lock()
        self._keys: Dict[str, str] = {}

    def claim(self, key: str, order_id) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys[key] = str(order_id)
            return True

    def __contains__(self, key: str) -> bool:
        return key in self._keys


class FakePaymentGateway(PaymentGatewayPort):
    """Deterministic gateway stub.

    Intents and refunds are keyed by their idempotency key, so repeated
    calls with the same key return the same ids. ``refund_status`` controls
    what a refund reports back (``pending`` by default, as real providers
    settle asynchronously).
    """

    def __init__(self, key_secret: str = "test_key_secret", refund_status: str = "pending"):
        self.key_secret = key_secret
        self.refund_status = refund_status
        self.intents: Dict[str, PaymentIntent] = {}
        self.refunds: Dict[str, RefundResult] = {}
        self.calls: List[tuple] = []

    def sign(self, order_ref: str, payment_id: str) -> str:
        """Produce the signature a real checkout would hand to the client."""
        return sign_payment(self.key_secret, order_ref, payment_id)

    def create_intent(self, amount, currency, receipt, metadata, idempotency_key=None) -> PaymentIntent:
        self.calls.append(("create_intent", amount, currency, receipt))
        key = idempotency_key or uuid.uuid4().hex
        if key not in self.intents:
            suffix = hashlib.sha256(key.encode()).hexdigest()[:14]
            self.intents[key] = PaymentIntent(intent_id=f"pi_{suffix}", provider_order_id=f"order_{suffix}")
        return self.intents[key]

    def verify_signature(self, order_ref, payment_id, signature) -> bool:
        return verify_payment_signature(self.key_secret, order_ref, payment_id, signature)

    def refund(self, payment_id, amount, speed="normal", idempotency_key=None) -> RefundResult:
        self.calls.append(("refund", payment_id, amount, speed))
        key = idempotency_key or uuid.uuid4().hex
        if key not in self.refunds:
            suffix = hashlib.sha256(key.encode()).hexdigest()[:14]
            self.refunds[key] = RefundResult(refund_id=f"rfnd_{suffix}", status=self.refund_status)
        return self.refunds[key]
