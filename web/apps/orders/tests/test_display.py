"""Tests for the customer-facing progress projection."""

from datetime import timedelta

import pytest

from apps.orders.display import format_eta, project_progress
from apps.orders.domain import CashDetails, LineRequest


def test_unpaid_card_order_shows_payment_pending(place_card_order, clock):
    order = place_card_order()
    progress = project_progress(order, clock())
    assert progress.stage == "payment_pending"
    assert progress.label == "Payment Pending"
    assert progress.minutes_remaining is None


def test_confirmed_order_counts_down_without_changing_status(service, delivery, clock):
    order = service.create_order("u1", [LineRequest("pizza", 1)], delivery, CashDetails())
    later = clock() + timedelta(minutes=30)
    progress = project_progress(order, later)
    assert progress.stage == "preparing"
    assert progress.label == "Order Confirmed"
    assert progress.minutes_remaining == 15
    assert progress.is_delayed is False
    assert order.status.value == "confirmed"


def test_past_eta_is_flagged_as_delayed(service, delivery, clock):
    order = service.create_order("u1", [LineRequest("pizza", 1)], delivery, CashDetails())
    for s in ("preparing", "ready", "out_for_delivery"):
        order = service.update_status(order.id, s)
    progress = project_progress(order, clock() + timedelta(minutes=60))
    assert progress.stage == "on_the_way"
    assert progress.minutes_remaining == 0
    assert progress.is_delayed is True


def test_terminal_orders(service, delivery, clock):
    order = service.create_order("u1", [LineRequest("pizza", 1)], delivery, CashDetails())
    cancelled = service.cancel_order(order.id, "changed my mind")
    assert project_progress(cancelled, clock()).stage == "cancelled"


@pytest.mark.parametrize(
    "minutes,text",
    [(None, ""), (0, "Any moment now"), (25, "25 minutes"), (75, "1h 15m")],
)
def test_format_eta(minutes, text):
    assert format_eta(minutes) == text
