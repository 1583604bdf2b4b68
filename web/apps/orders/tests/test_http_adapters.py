"""Unit tests for the HTTP adapters to the catalog service and payment provider.

These tests verify that the HTTP clients map responses to domain values and
errors by monkeypatching ``httpx.Client.request`` and asserting the adapter
behavior.
"""

import httpx
import pytest

from apps.orders.domain import CatalogItem
from apps.orders.errors import FoodNotFound, InsufficientStock
from apps.orders.http_adapters import HttpCatalogClient, RazorpayGateway
from apps.payments.signatures import sign_payment
from gateway.middleware import REQUEST_ID_CTX


class DummyResp:
    """Minimal httpx-like response stub for adapter tests.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict | None): JSON body to return from ``json()``.
    """

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._json


def patch_request(monkeypatch, responder):
    """Route every ``httpx.Client.request`` through ``responder`` and record calls."""
    seen = []

    def fake_request(self, method, url, json=None, headers=None, **kw):
        seen.append({"method": method, "url": url, "json": json, "headers": dict(headers or {})})
        return responder(method, url, json)

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    return seen


def test_catalog_get_maps_item(monkeypatch):
    seen = patch_request(monkeypatch, lambda m, u, j: DummyResp(200, {
        "food_id": "pizza", "name": "Margherita Pizza", "price": 299,
        "stock_quantity": 10, "is_available": True,
    }))
    item = HttpCatalogClient(base_url="http://catalog:9001/").get("pizza")
    assert item == CatalogItem(food_id="pizza", name="Margherita Pizza", price=299, stock_quantity=10)
    assert seen[0]["method"] == "GET"
    assert seen[0]["url"] == "http://catalog:9001/foods/pizza"


def test_catalog_get_404_is_none(monkeypatch):
    patch_request(monkeypatch, lambda m, u, j: DummyResp(404, {"detail": "FOOD_NOT_FOUND"}))
    assert HttpCatalogClient(base_url="http://catalog").get("ghost") is None


def test_catalog_adjust_sends_delta(monkeypatch):
    seen = patch_request(monkeypatch, lambda m, u, j: DummyResp(200, {"food_id": "pizza", "stock_quantity": 8}))
    HttpCatalogClient(base_url="http://catalog").adjust_stock("pizza", -2)
    assert seen[0]["method"] == "POST"
    assert seen[0]["url"].endswith("/foods/pizza/stock")
    assert seen[0]["json"] == {"delta": -2}


@pytest.mark.parametrize("status,error", [(404, FoodNotFound), (422, InsufficientStock)])
def test_catalog_adjust_business_errors(monkeypatch, status, error):
    patch_request(monkeypatch, lambda m, u, j: DummyResp(status))
    client = HttpCatalogClient(base_url="http://catalog")
    with pytest.raises(error):
        client.adjust_stock("pizza", -50)
    assert client.breaker.state == "CLOSED"


def test_request_id_is_propagated(monkeypatch):
    seen = patch_request(monkeypatch, lambda m, u, j: DummyResp(404))
    token = REQUEST_ID_CTX.set("req-123")
    try:
        HttpCatalogClient(base_url="http://catalog").get("pizza")
    finally:
        REQUEST_ID_CTX.reset(token)
    assert seen[0]["headers"]["X-Request-ID"] == "req-123"
    assert seen[0]["headers"]["X-Circuit-State"] == "CLOSED"


def test_gateway_create_intent_uses_minor_units(monkeypatch):
    seen = patch_request(monkeypatch, lambda m, u, j: DummyResp(200, {"id": "order_Abc123", "status": "created"}))
    gw = RazorpayGateway(key_id="rzp_test_id", key_secret="s3cret", base_url="https://api.example.test")
    intent = gw.create_intent(727, "INR", "ORD-1", {"order_id": "42"}, idempotency_key="ORD-1")

    assert intent.provider_order_id == "order_Abc123"
    call = seen[0]
    assert call["url"] == "https://api.example.test/v1/orders"
    assert call["json"] == {"amount": 72700, "currency": "INR", "receipt": "ORD-1", "notes": {"order_id": "42"}}
    assert call["headers"]["Idempotency-Key"] == "ORD-1"


def test_gateway_refund(monkeypatch):
    seen = patch_request(monkeypatch, lambda m, u, j: DummyResp(200, {"id": "rfnd_1", "status": "processed"}))
    gw = RazorpayGateway(key_id="k", key_secret="s", base_url="https://api.example.test")
    result = gw.refund("pay_1", 727, speed="optimum", idempotency_key="refund-ORD-1")
    assert (result.refund_id, result.status) == ("rfnd_1", "processed")
    assert seen[0]["url"].endswith("/v1/payments/pay_1/refund")
    assert seen[0]["json"] == {"amount": 72700, "speed": "optimum"}


def test_gateway_client_error_raises(monkeypatch):
    patch_request(monkeypatch, lambda m, u, j: DummyResp(400, {"error": {"code": "BAD_REQUEST_ERROR"}}))
    gw = RazorpayGateway(key_id="k", key_secret="s", base_url="https://api.example.test")
    with pytest.raises(httpx.HTTPStatusError):
        gw.create_intent(100, "INR", "ORD-2", {})


def test_gateway_network_error_propagates(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 0

    def fake_request(self, method, url, **kw):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    gw = RazorpayGateway(key_id="k", key_secret="s", base_url="https://api.example.test")
    with pytest.raises(httpx.ConnectError):
        gw.create_intent(100, "INR", "ORD-3", {})


def test_gateway_verifies_checkout_signature():
    gw = RazorpayGateway(key_id="k", key_secret="s3cret", base_url="https://api.example.test")
    sig = sign_payment("s3cret", "order_1", "pay_1")
    assert gw.verify_signature("order_1", "pay_1", sig) is True
    assert gw.verify_signature("order_1", "pay_2", sig) is False
