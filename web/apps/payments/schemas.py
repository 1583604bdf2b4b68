"""Pydantic schemas for the payments API and provider webhooks."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class StartPaymentDTO(BaseModel):
    order_id: str = Field(min_length=1)


class VerifyPaymentDTO(BaseModel):
    """Checkout result echoed back by the client after paying."""

    order_id: str = Field(min_length=1)
    gateway_order_id: str = Field(min_length=1)
    payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)


class PaymentFailureDTO(BaseModel):
    order_id: str = Field(min_length=1)
    payment_id: Optional[str] = None
    reason: str = Field(default="", max_length=255)


class WebhookEnvelope(BaseModel):
    """Outer shape of a provider webhook.

    Only the parts the ingestion reads are declared; unknown fields are
    kept out of the way by pydantic's default ``ignore`` behavior.
    """

    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    def entity(self, name: str) -> Dict[str, Any]:
        """Return ``payload.<name>.entity`` or an empty dict."""
        wrapper = self.payload.get(name) or {}
        if not isinstance(wrapper, dict):
            return {}
        entity = wrapper.get("entity") or {}
        return entity if isinstance(entity, dict) else {}
