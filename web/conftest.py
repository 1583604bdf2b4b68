"""Shared fixtures.

Two wirings are available: the lifecycle manager on pure in-memory
adapters with a frozen clock (``service`` and friends), and the Django
stack behind the test client with the process-wide in-memory catalog and
gateway (``local_catalog``, ``create_order``).
"""

from datetime import datetime, timedelta, timezone

import pytest
from django.core.cache import cache

from apps.orders import providers
from apps.orders.adapters import (
    FakePaymentGateway,
    InMemoryCatalog,
    InMemoryOrderRepository,
    InMemoryProcessedEvents,
)
from apps.orders.domain import CardDetails, CatalogItem, DeliveryDetails, LineRequest
from apps.orders.http_adapters import reset_breakers
from apps.orders.lifecycle import OrderLifecycleManager

MENU = (
    CatalogItem(food_id="pizza", name="Margherita Pizza", price=299, stock_quantity=10),
    CatalogItem(food_id="burger", name="Veg Burger", price=199, stock_quantity=5),
    CatalogItem(food_id="salad", name="Greek Salad", price=750, stock_quantity=3),
    CatalogItem(food_id="sold-out", name="Truffle Fries", price=150, stock_quantity=0),
    CatalogItem(food_id="seasonal", name="Mango Lassi", price=120, stock_quantity=8, is_available=False),
)


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    """Run every test against the in-process catalog and gateway."""
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    providers.reset_local_adapters()
    reset_breakers()
    cache.clear()  # throttle counters
    yield
    providers.reset_local_adapters()
    reset_breakers()


# ---------------- in-memory lifecycle ---------------- #

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def catalog():
    return InMemoryCatalog(MENU)


@pytest.fixture
def repo():
    return InMemoryOrderRepository()


@pytest.fixture
def events():
    return InMemoryProcessedEvents()


@pytest.fixture
def gateway():
    return FakePaymentGateway(key_secret="test_key_secret")


@pytest.fixture
def service(catalog, repo, events, gateway, clock):
    return OrderLifecycleManager(catalog=catalog, orders=repo, events=events, gateway=gateway, clock=clock)


@pytest.fixture
def delivery():
    return DeliveryDetails(
        full_name="Asha Rao",
        phone="9876543210",
        street="12 MG Road",
        city="Bengaluru",
        state="KA",
        zip_code="560001",
    )


@pytest.fixture
def place_card_order(service, delivery):
    """Create a prepaid card order for 2 pizzas (subtotal 598, total 727)."""

    def _place(lines=None, user_id="u1"):
        return service.create_order(
            user_id=user_id,
            lines=lines or [LineRequest("pizza", 2)],
            delivery=delivery,
            payment=CardDetails(last4="4242", brand="visa"),
        )

    return _place


# ---------------- Django stack ---------------- #

@pytest.fixture
def local_catalog():
    """The shared in-memory catalog seeded with the test menu."""
    catalog = providers.get_local_catalog()
    for item in MENU:
        catalog.put(item)
    return catalog


@pytest.fixture
def local_gateway():
    return providers.get_local_gateway()


@pytest.fixture
def customer():
    """Headers the API gateway sets for an authenticated customer."""
    return {"HTTP_X_USER_ID": "u1", "HTTP_X_USER_ROLE": "customer"}


@pytest.fixture
def other_customer():
    return {"HTTP_X_USER_ID": "u2"}


@pytest.fixture
def admin():
    return {"HTTP_X_USER_ID": "ops-1", "HTTP_X_USER_ROLE": "admin"}


def _order_payload(items=None, method="card", **extra):
    payment = {"method": method}
    if method == "card":
        payment.update(last4="4242", brand="visa")
    elif method == "upi":
        payment["upi_id"] = "asha@okbank"
    payload = {
        "items": items or [{"food_id": "pizza", "quantity": 2}],
        "delivery": {
            "full_name": "Asha Rao",
            "phone": "9876543210",
            "street": "12 MG Road",
            "city": "Bengaluru",
            "state": "KA",
            "zip_code": "560001",
        },
        "payment": payment,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def order_payload():
    return _order_payload


@pytest.fixture
def create_order(client, local_catalog, customer):
    """POST an order through the API and return the JSON body."""

    def _create(items=None, method="card", headers=None):
        r = client.post(
            "/api/orders/", data=_order_payload(items, method),
            content_type="application/json", **(headers or customer),
        )
        assert r.status_code == 201, r.content
        return r.json()

    return _create
