"""API tests for ``POST /api/orders/``.

They go through the Django test client with the in-process catalog and
gateway, asserting status codes, error codes and the side effects on stock
and on the ``orders`` table.
"""

from uuid import UUID

import pytest
from django.db import connection

from apps.orders.http_adapters import CircuitOpenError

CREATE_URL = "/api/orders/"


def post(client, payload, headers):
    return client.post(CREATE_URL, data=payload, content_type="application/json", **headers)


@pytest.mark.django_db
def test_create_card_order(client, local_catalog, customer, order_payload):
    r = post(client, order_payload(), customer)
    assert r.status_code == 201
    body = r.json()
    UUID(body["id"])
    assert body["status"] == "pending"
    assert body["user_id"] == "u1"
    assert body["pricing"] == {"subtotal": 598, "delivery_fee": 99, "tax": 30, "discount": 0, "total": 727}
    assert body["payment"]["method"] == "card"
    assert body["payment"]["last4"] == "4242"
    assert body["payment"]["status"] == "pending"
    assert body["progress"]["stage"] == "payment_pending"
    assert body["items"][0]["line_total"] == 598
    assert body["order_number"].startswith("ORD-")
    assert local_catalog.get("pizza").stock_quantity == 8

    with connection.cursor() as cur:
        cur.execute("select status, total, currency from orders where id = %s", [UUID(body["id"]).hex])
        row = cur.fetchone()
    assert row == ("pending", 727, "INR")


@pytest.mark.django_db
def test_cash_order_is_confirmed_immediately(client, local_catalog, customer, order_payload):
    r = post(client, order_payload(method="cash"), customer)
    assert r.status_code == 201
    assert r.json()["status"] == "confirmed"
    assert r.json()["progress"]["stage"] == "preparing"


@pytest.mark.django_db
def test_free_delivery_for_large_orders(client, local_catalog, customer, order_payload):
    r = post(client, order_payload(items=[{"food_id": "salad", "quantity": 2}], method="upi"), customer)
    assert r.status_code == 201
    pricing = r.json()["pricing"]
    assert (pricing["subtotal"], pricing["delivery_fee"], pricing["total"]) == (1500, 0, 1575)


@pytest.mark.django_db
def test_anonymous_caller_is_rejected(client, local_catalog, order_payload):
    r = client.post(CREATE_URL, data=order_payload(), content_type="application/json")
    assert r.status_code == 401
    assert r.json()["detail"] == "AUTHENTICATION_REQUIRED"


@pytest.mark.django_db
def test_malformed_payload(client, local_catalog, customer):
    r = post(client, {"items": "pizza"}, customer)
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"
    assert r.json()["errors"]


@pytest.mark.django_db
def test_unknown_payment_method(client, local_catalog, customer, order_payload):
    payload = order_payload()
    payload["payment"] = {"method": "crypto"}
    r = post(client, payload, customer)
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"


@pytest.mark.django_db
def test_invalid_upi_id(client, local_catalog, customer, order_payload):
    payload = order_payload(method="upi")
    payload["payment"]["upi_id"] = "not-an-upi"
    r = post(client, payload, customer)
    assert r.status_code == 400


@pytest.mark.django_db
@pytest.mark.parametrize(
    "items,code",
    [
        ([], "EMPTY_ORDER"),
        ([{"food_id": "pizza", "quantity": 0}], "INVALID_QUANTITY"),
    ],
)
def test_validation_errors(client, local_catalog, customer, order_payload, items, code):
    payload = order_payload()
    payload["items"] = items
    r = post(client, payload, customer)
    assert r.status_code == 400
    assert r.json()["detail"] == code


@pytest.mark.django_db
def test_missing_delivery_field(client, local_catalog, customer, order_payload):
    payload = order_payload()
    payload["delivery"]["city"] = "   "
    r = post(client, payload, customer)
    assert r.status_code == 400
    assert r.json() == {"detail": "MISSING_DELIVERY_FIELD", "field": "city"}
    assert local_catalog.get("pizza").stock_quantity == 10


@pytest.mark.django_db
@pytest.mark.parametrize(
    "items,status,code",
    [
        ([{"food_id": "ghost", "quantity": 1}], 404, "FOOD_NOT_FOUND"),
        ([{"food_id": "seasonal", "quantity": 1}], 422, "FOOD_UNAVAILABLE"),
        ([{"food_id": "salad", "quantity": 5}], 422, "INSUFFICIENT_STOCK"),
    ],
)
def test_catalog_rejections(client, local_catalog, customer, order_payload, items, status, code):
    r = post(client, order_payload(items=items), customer)
    assert r.status_code == status
    assert r.json()["detail"] == code
    assert local_catalog.get("salad").stock_quantity == 3


@pytest.mark.django_db
def test_partial_shortage_reserves_nothing(client, local_catalog, customer, order_payload):
    items = [{"food_id": "pizza", "quantity": 2}, {"food_id": "salad", "quantity": 4}]
    r = post(client, order_payload(items=items), customer)
    assert r.status_code == 422
    assert local_catalog.get("pizza").stock_quantity == 10
    with connection.cursor() as cur:
        cur.execute("select count(*) from orders")
        assert cur.fetchone()[0] == 0


@pytest.mark.django_db
def test_catalog_outage_is_503(client, local_catalog, customer, order_payload, monkeypatch):
    def unavailable(food_id):
        raise CircuitOpenError("catalog: CIRCUIT_OPEN")

    monkeypatch.setattr(local_catalog, "get", unavailable)
    r = post(client, order_payload(), customer)
    assert r.status_code == 503
    assert r.json()["detail"] == "UPSTREAM_UNAVAILABLE"


@pytest.mark.django_db
def test_request_id_is_echoed(client, local_catalog, customer, order_payload):
    r = post(client, order_payload(), {**customer, "HTTP_X_REQUEST_ID": "req-42"})
    assert r.status_code == 201
    assert r["X-Request-ID"] == "req-42"
