"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements the network-backed ports of the order lifecycle
using ``httpx``:

- ``HttpCatalogClient``: the catalog service (food lookup, stock adjust).
- ``RazorpayGateway``: the payment provider REST API (orders, refunds) and
  checkout signature verification.

Every call goes through ``_send`` which adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- A circuit breaker per downstream service to avoid hammering unhealthy
    dependencies, with HALF_OPEN probing after a timeout.
- Retries with exponential backoff for transport errors and 5xx. Calls that
    are not safe to repeat are only retried when the request never left.
- Business 4xx responses (not found, insufficient stock) are returned to
    the caller and never count as circuit failures.
"""

import logging
import threading
import time
from typing import Dict, Iterable, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from apps.payments.signatures import verify_payment_signature

from .domain import CatalogItem, CatalogPort, PaymentGatewayPort, PaymentIntent, RefundResult
from .errors import FoodNotFound, InsufficientStock

logger = logging.getLogger(__name__)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

# Requests that certainly never reached the server.
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a downstream whose circuit is open."""


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the circuit again.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check the breaker before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe
                is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"{self.name}: CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise CircuitOpenError(f"{self.name}: CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._probe_in_flight = False
                logger.warning("circuit opened", extra={"service": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_breaker(name: str) -> CircuitBreaker:
    """Return the process-wide breaker for downstream ``name``."""
    with _breakers_lock:
        if name not in _breakers:
            _breakers[name] = CircuitBreaker(
                name,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
        return _breakers[name]


def circuit_states() -> Dict[str, str]:
    with _breakers_lock:
        breakers = list(_breakers.values())
    return {b.name: b.state for b in breakers}


def reset_breakers() -> None:
    with _breakers_lock:
        _breakers.clear()


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: Dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return ``(max_retries, backoff_base_seconds, max_sleep_seconds)``."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception], idempotent: bool) -> bool:
    if exc is not None:
        return idempotent or isinstance(exc, _NOT_SENT)
    if resp is not None and 500 <= resp.status_code < 600:
        return idempotent
    return False


def _send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    *,
    timeout: float,
    json: Optional[dict] = None,
    extra_headers: Optional[dict] = None,
    auth: Optional[tuple] = None,
    business_statuses: Iterable[int] = (),
    idempotent: bool = True,
) -> httpx.Response:
    """Perform one logical call with breaker precheck and retries.

    Returns:
        httpx.Response: A 2xx response or one whose status is listed in
            ``business_statuses``.

    Raises:
        CircuitOpenError: If the breaker refuses the call.
        httpx.RequestError: For transport errors after retries.
        httpx.HTTPStatusError: For other non-2xx responses.
    """
    max_retries, backoff, cap = _retry_policy()
    business = set(business_statuses)
    tries = 0

    state = breaker.before_call()
    headers = _request_headers(extra_headers)
    headers["X-Circuit-State"] = state
    headers["X-Retry-Count"] = "0"

    try:
        with httpx.Client(timeout=timeout, auth=auth) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=json, headers=headers)
                    if 200 <= resp.status_code < 300 or resp.status_code in business:
                        breaker.on_success()
                        return resp
                    if not _should_retry(resp, None, idempotent) and resp.status_code < 500:
                        # 4xx outside the business contract: caller error, not an outage
                        breaker.on_success()
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                if tries > max_retries or not _should_retry(resp, exc, idempotent):
                    breaker.on_failure()
                    logger.warning(
                        "downstream call failed",
                        extra={"service": breaker.name, "url": url, "attempts": tries},
                    )
                    if exc is not None:
                        raise exc
                    resp.raise_for_status()

                headers["X-Retry-Count"] = str(tries)
                sleep_s = backoff * (2 ** (tries - 1))
                if sleep_s > 0:
                    time.sleep(min(sleep_s, cap))
    finally:
        breaker.on_finish()


# ---------------- Catalog Adapter ---------------- #

class HttpCatalogClient(CatalogPort):
    """HTTP client for the catalog service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.CATALOG_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = get_breaker("catalog")

    def get(self, food_id: str) -> Optional[CatalogItem]:
        """Fetch a food item; 404 maps to None."""
        resp = _send(
            self.breaker, "GET", f"{self.base_url}/foods/{food_id}",
            timeout=self.timeout, business_statuses=(404,),
        )
        if resp.status_code == 404:
            return None
        data = resp.json()
        return CatalogItem(
            food_id=str(data["food_id"]),
            name=data["name"],
            price=int(data["price"]),
            stock_quantity=int(data["stock_quantity"]),
            is_available=bool(data.get("is_available", True)),
        )

    def adjust_stock(self, food_id: str, delta: int) -> None:
        """Apply a stock delta. 404 and 422 map to domain errors.

        Stock adjustments are not idempotent, so they are only retried when
        the request never reached the service.
        """
        resp = _send(
            self.breaker, "POST", f"{self.base_url}/foods/{food_id}/stock",
            timeout=self.timeout, json={"delta": delta},
            business_statuses=(404, 422), idempotent=False,
        )
        if resp.status_code == 404:
            raise FoodNotFound(f"food item {food_id} not found")
        if resp.status_code == 422:
            raise InsufficientStock(f"insufficient stock for {food_id}")


# ---------------- Payment gateway Adapter ---------------- #

class RazorpayGateway(PaymentGatewayPort):
    """Payment provider client for the Razorpay REST API.

    Amounts cross the wire in paise (minor units). ``Idempotency-Key`` is
    forwarded so a retried create or refund never doubles up on the
    provider side.
    """

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        self.base_url = (base_url or settings.RAZORPAY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = get_breaker("payments")

    def _headers(self, idempotency_key: Optional[str]) -> dict:
        return {"Idempotency-Key": idempotency_key} if idempotency_key else {}

    def create_intent(self, amount, currency, receipt, metadata, idempotency_key=None) -> PaymentIntent:
        payload = {
            "amount": int(amount) * 100,
            "currency": currency,
            "receipt": receipt,
            "notes": {k: str(v) for k, v in (metadata or {}).items()},
        }
        resp = _send(
            self.breaker, "POST", f"{self.base_url}/v1/orders",
            timeout=self.timeout, json=payload, auth=(self.key_id, self.key_secret),
            extra_headers=self._headers(idempotency_key),
        )
        data = resp.json()
        return PaymentIntent(intent_id=data["id"], provider_order_id=data["id"])

    def verify_signature(self, order_ref, payment_id, signature) -> bool:
        return verify_payment_signature(self.key_secret, order_ref, payment_id, signature)

    def refund(self, payment_id, amount, speed="normal", idempotency_key=None) -> RefundResult:
        payload = {"amount": int(amount) * 100, "speed": speed}
        resp = _send(
            self.breaker, "POST", f"{self.base_url}/v1/payments/{payment_id}/refund",
            timeout=self.timeout, json=payload, auth=(self.key_id, self.key_secret),
            extra_headers=self._headers(idempotency_key),
        )
        data = resp.json()
        return RefundResult(refund_id=data["id"], status=data.get("status", "pending"))
