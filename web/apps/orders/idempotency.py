"""Idempotency stores for requests and payment events.

Two kinds of duplicate suppression live here, both built on a unique
insert inside a savepoint (``IntegrityError`` means "already there"):

- Create-order requests keyed by the client ``Idempotency-Key`` header.
  The stored response is replayed for retries with the same payload, and a
  different payload under the same key is a conflict.
- Payment events (webhook deliveries and verify calls) keyed by the event
  idempotency key. ``DjangoProcessedEvents.claim`` runs inside the order
  lock transaction, so a claim commits only with the order change it
  guards.
"""

import hashlib
import json
import logging

from django.db import IntegrityError, transaction

from .domain import ProcessedEventsPort
from .models import IdempotencyKey, ProcessedEvent

logger = logging.getLogger(__name__)


class IdempotencyConflict(ValueError):
    """The key was already used with a different payload."""

    def __init__(self):
        super().__init__("IDEMPOTENCY_CONFLICT")


def _hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create the idempotency record for ``key``.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``. ``existing`` is
        False when this call created the record and the caller must run
        the request and ``finalize`` it.

    Raises:
        IdempotencyConflict: If the key exists with a different payload.
    """
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict()
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the final response so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def discard(rec: IdempotencyKey) -> None:
    """Forget a key whose request failed transiently so it can be retried."""
    IdempotencyKey.objects.filter(pk=rec.pk).delete()


class DjangoProcessedEvents(ProcessedEventsPort):
    """Processed payment events stored in ``processed_payment_events``."""

    def claim(self, key: str, order_id) -> bool:
        try:
            with transaction.atomic():
                ProcessedEvent.objects.create(key=key, order_id=order_id)
        except IntegrityError:
            logger.info("payment event already processed", extra={"event_key": key})
            return False
        return True
