import base64
import hashlib
import hmac
import json
import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from wayfare.api.deps import get_coordinator
from wayfare.core.config import settings
from wayfare.core.errors import DuplicateEventError
from wayfare.core.logging import update_log_context
from wayfare.db.session import get_db
from wayfare.models.enums import PaymentStatus
from wayfare.schemas.payments import GatewayWebhookIn, WebhookAckOut
from wayfare.services.booking_coordinator import BookingCoordinator
from wayfare.services.webhook_ledger import WebhookLedger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def verify_gateway_signature(headers: dict, body: bytes, method: str, path: str) -> bool:
    """Verify the gateway's HTTP Signature.

    Checks Digest (SHA-256 of the body) and Signature (HMAC-SHA256 over the
    signed headers, keyed with CYBS_SECRET_KEY_B64). Any missing piece fails.
    """
    signature_header = headers.get("signature")
    digest_header = headers.get("digest")
    if not signature_header or not digest_header:
        return False

    m = re.match(r"SHA-256=(.+)", digest_header.strip())
    if not m:
        return False
    try:
        expected_digest = base64.b64decode(m.group(1))
    except ValueError:
        return False
    if not hmac.compare_digest(hashlib.sha256(body).digest(), expected_digest):
        return False

    parts = {}
    for chunk in signature_header.split(","):
        if "=" in chunk:
            k, v = chunk.strip().split("=", 1)
            parts[k] = v.strip().strip('"')
    signed_headers = (parts.get("headers") or "").split()
    received = parts.get("signature")
    if not signed_headers or not received:
        return False

    lines = []
    for name in signed_headers:
        name = name.lower()
        if name == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {path}")
            continue
        value = headers.get(name)
        if value is None:
            return False
        lines.append(f"{name}: {str(value).strip()}")

    if not settings.CYBS_SECRET_KEY_B64:
        return False
    secret = base64.b64decode(settings.CYBS_SECRET_KEY_B64)
    computed = hmac.new(secret, "\n".join(lines).encode("utf-8"), hashlib.sha256).digest()
    return hmac.compare_digest(base64.b64encode(computed).decode("ascii"), received)


@router.post("/webhooks/payments", response_model=WebhookAckOut)
async def payment_webhook(
    req: Request,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    body = await req.body()
    if settings.CYBS_WEBHOOK_VERIFY:
        path = (settings.CYBS_WEBHOOK_PATH or req.url.path).strip() or req.url.path
        if not verify_gateway_signature({k.lower(): v for k, v in req.headers.items()}, body, req.method, path):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        raw = json.loads(body.decode("utf-8") or "{}")
        event = GatewayWebhookIn.model_validate(raw)
    except (ValueError, PydanticValidationError):
        raise HTTPException(status_code=400, detail="Malformed webhook payload")
    update_log_context(webhook_event_id=event.eventId)

    payments = coordinator.payments
    data = dict(event.data)
    if event.refundId:
        data["refund_id"] = event.refundId
    if event.amountCents is not None:
        data["amount_cents"] = event.amountCents

    def handle(_record):
        txn = payments.apply_gateway_event(event.eventType, event.intentId, data)
        if txn is not None and txn.status == PaymentStatus.CAPTURED:
            coordinator.settle_captured(txn, commit=False)
        return txn is not None

    ledger = WebhookLedger(db)
    try:
        applied = ledger.process(event.eventId, event.eventType, raw, handle)
    except DuplicateEventError:
        return WebhookAckOut(ok=True, duplicate=True)
    return WebhookAckOut(ok=True, applied=bool(applied))
