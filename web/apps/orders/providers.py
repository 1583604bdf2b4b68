"""Wiring of the order lifecycle to its collaborators.

``get_order_service`` returns an ``OrderLifecycleManager`` configured from
Django settings:

- the order repository and processed-event store are always the Django
  ORM implementations;
- the catalog and the payment gateway are the HTTP adapters when
  ``settings.USE_HTTP_ADAPTERS`` is truthy, otherwise process-wide
  in-memory stubs suitable for tests and local development.

Views import these factories through this module so tests can patch
``apps.orders.providers.get_order_service``.
"""

from decimal import Decimal

from django.conf import settings
from django.utils import timezone

from apps.payments.ingestion import PaymentIngestion

from .adapters import FakePaymentGateway, InMemoryCatalog
from .http_adapters import HttpCatalogClient, RazorpayGateway
from .idempotency import DjangoProcessedEvents
from .lifecycle import OrderLifecycleManager
from .pricing import PricingPolicy
from .repository import DjangoOrderRepository

_local_catalog = None
_local_gateway = None


def get_local_catalog() -> InMemoryCatalog:
    global _local_catalog
    if _local_catalog is None:
        _local_catalog = InMemoryCatalog()
    return _local_catalog


def get_local_gateway() -> FakePaymentGateway:
    global _local_gateway
    if _local_gateway is None:
        _local_gateway = FakePaymentGateway(key_secret=settings.RAZORPAY_KEY_SECRET)
    return _local_gateway


def reset_local_adapters() -> None:
    """Drop the in-memory catalog and gateway (used between tests)."""
    global _local_catalog, _local_gateway
    _local_catalog = None
    _local_gateway = None


def get_catalog():
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpCatalogClient()
    return get_local_catalog()


def get_payment_gateway():
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return RazorpayGateway()
    return get_local_gateway()


def get_order_repository() -> DjangoOrderRepository:
    return DjangoOrderRepository()


def get_pricing_policy() -> PricingPolicy:
    return PricingPolicy(
        free_delivery_threshold=settings.FREE_DELIVERY_THRESHOLD,
        delivery_fee=settings.DELIVERY_FEE,
        tax_rate=Decimal(str(settings.TAX_RATE)),
    )


def get_order_service() -> OrderLifecycleManager:
    """Return a lifecycle manager wired for the current settings."""
    return OrderLifecycleManager(
        catalog=get_catalog(),
        orders=get_order_repository(),
        events=DjangoProcessedEvents(),
        gateway=get_payment_gateway(),
        pricing=get_pricing_policy(),
        clock=timezone.now,
        order_number_prefix=settings.ORDER_NUMBER_PREFIX,
        eta_minutes=settings.ORDER_ETA_MINUTES,
        currency=settings.CURRENCY,
    )


def get_ingestion() -> PaymentIngestion:
    """Return the payment ingestion facade bound to a fresh service."""
    service = get_order_service()
    return PaymentIngestion(
        service=service,
        orders=service.orders,
        gateway=service.gateway,
        webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
    )
