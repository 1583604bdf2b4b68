from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone

from apps.orders.models import OrderModel

DETAIL_URL = "/api/orders/{oid}/"
LIST_URL = "/api/orders/"


@pytest.mark.django_db
def test_owner_reads_order(client, create_order, customer):
    created = create_order()
    r = client.get(DETAIL_URL.format(oid=created["id"]), **customer)
    assert r.status_code == 200
    body = r.json()
    assert body["id"] == created["id"]
    assert body["order_number"] == created["order_number"]
    assert body["delivery"]["city"] == "Bengaluru"
    assert body["refund"] == {"status": "none", "amount": 0, "reason": "", "refund_id": None}


@pytest.mark.django_db
def test_other_customers_order_looks_absent(client, create_order, other_customer, admin):
    created = create_order()
    r = client.get(DETAIL_URL.format(oid=created["id"]), **other_customer)
    assert r.status_code == 404
    assert r.json()["detail"] == "ORDER_NOT_FOUND"

    assert client.get(DETAIL_URL.format(oid=created["id"]), **admin).status_code == 200


@pytest.mark.django_db
def test_unknown_order_returns_404(client, customer):
    r = client.get(DETAIL_URL.format(oid=str(uuid4())), **customer)
    assert r.status_code == 404
    assert r.json()["detail"] == "ORDER_NOT_FOUND"


@pytest.mark.django_db
def test_read_requires_caller(client, create_order):
    created = create_order()
    assert client.get(DETAIL_URL.format(oid=created["id"])).status_code == 401


@pytest.mark.django_db
def test_customers_list_only_their_orders(client, create_order, customer, other_customer):
    mine = create_order()
    create_order(headers=other_customer)

    r = client.get(LIST_URL, **customer)
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 1
    assert [o["id"] for o in body["results"]] == [mine["id"]]

    # customers cannot widen the filter
    r = client.get(LIST_URL, {"user_id": "u2"}, **customer)
    assert r.json()["count"] == 1


@pytest.mark.django_db
def test_admin_lists_with_filters(client, create_order, admin, other_customer):
    create_order()
    create_order(method="cash", headers=other_customer)

    assert client.get(LIST_URL, **admin).json()["count"] == 2

    confirmed = client.get(LIST_URL, {"status": "confirmed"}, **admin).json()
    assert [o["user_id"] for o in confirmed["results"]] == ["u2"]

    pending_pay = client.get(LIST_URL, {"payment_status": "pending", "user_id": "u1"}, **admin).json()
    assert pending_pay["count"] == 1


@pytest.mark.django_db
def test_invalid_filter(client, customer):
    r = client.get(LIST_URL, {"status": "lost"}, **customer)
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_FILTER"


@pytest.mark.django_db
def test_pagination(client, create_order, customer):
    for _ in range(3):
        create_order(items=[{"food_id": "burger", "quantity": 1}])
    body = client.get(LIST_URL, {"page": 2, "page_size": 2}, **customer).json()
    assert body["count"] == 3
    assert body["page"] == 2
    assert len(body["results"]) == 1


@pytest.mark.django_db
def test_admin_views_reject_customers(client, customer):
    for url in ("/api/orders/pending-payments/", "/api/orders/delayed/", "/api/orders/stats/"):
        r = client.get(url, **customer)
        assert r.status_code == 403
        assert r.json()["detail"] == "FORBIDDEN"


@pytest.mark.django_db
def test_pending_payments(client, create_order, admin):
    card = create_order()
    create_order(method="cash")
    body = client.get("/api/orders/pending-payments/", **admin).json()
    # cash stays pending until delivery, so both show up
    assert body["count"] == 2
    assert card["id"] in {o["id"] for o in body["results"]}


@pytest.mark.django_db
def test_delayed_orders(client, create_order, admin):
    late = create_order(method="cash")
    on_time = create_order(method="cash")
    OrderModel.objects.filter(pk=late["id"]).update(estimated_delivery_at=timezone.now() - timedelta(minutes=5))

    body = client.get("/api/orders/delayed/", **admin).json()
    ids = [o["id"] for o in body["results"]]
    assert ids == [late["id"]]
    assert on_time["id"] not in ids
    assert body["results"][0]["progress"]["is_delayed"] is True


@pytest.mark.django_db
def test_stats(client, create_order, admin):
    paid = create_order()
    create_order(method="cash")
    OrderModel.objects.filter(pk=paid["id"]).update(payment_status="completed", status="confirmed")

    body = client.get("/api/orders/stats/", **admin).json()
    assert body["orders"]["total"] == 2
    assert body["orders"]["confirmed"] == 2
    assert body["orders"]["pending"] == 0
    assert body["payments"]["completed"] == 1
    assert body["revenue"] == {"total_revenue": 727, "avg_order_value": 727, "paid_orders": 1}
    assert body["recent_orders"] == 2
