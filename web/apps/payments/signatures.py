"""HMAC-SHA256 signature primitives for the payment provider.

Two contracts exist:

- Checkout signature: ``hex(HMAC(key_secret, "<order_ref>|<payment_id>"))``,
  handed to the client after a successful checkout and echoed back to us.
- Webhook signature: ``hex(HMAC(webhook_secret, raw_body))`` sent in the
  ``X-Razorpay-Signature`` header.

Both verifiers compare in constant time and return False instead of
raising on malformed input.
"""

import hashlib
import hmac
from typing import Optional, Union


def _digest(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_payment(secret: str, order_ref: str, payment_id: str) -> str:
    return _digest(secret, f"{order_ref}|{payment_id}".encode("utf-8"))


def sign_webhook(secret: str, body: Union[bytes, str]) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return _digest(secret, body)


def verify_payment_signature(secret: str, order_ref, payment_id, signature) -> bool:
    """Check a checkout signature for ``order_ref|payment_id``."""
    if not secret:
        return False
    if not all(isinstance(v, str) and v for v in (order_ref, payment_id, signature)):
        return False
    return hmac.compare_digest(sign_payment(secret, order_ref, payment_id).encode(), signature.encode("utf-8"))


def verify_webhook_signature(secret: str, body: Union[bytes, str], signature: Optional[str]) -> bool:
    """Check the webhook signature header against the raw request body."""
    if not secret or not signature or not isinstance(signature, str):
        return False
    if not isinstance(body, (bytes, str)):
        return False
    return hmac.compare_digest(sign_webhook(secret, body).encode(), signature.encode("utf-8"))
