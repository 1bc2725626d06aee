from typing import Optional

from pydantic import BaseModel, Field


class GatewayWebhookIn(BaseModel):
    """Normalized gateway notification.

    ``eventId`` is the gateway's delivery id and the dedup key;
    ``intentId`` is the authorization the event refers to.
    """

    eventId: str
    eventType: str  # payment.authorized, payment.captured, payment.capture_failed, payment.voided, payment.refunded
    intentId: str
    refundId: Optional[str] = None
    amountCents: Optional[int] = None
    data: dict = Field(default_factory=dict)


class WebhookAckOut(BaseModel):
    ok: bool = True
    duplicate: bool = False
    applied: bool = False
