"""Customer notifications.

Senders are fire-and-forget: a notification problem never changes the outcome
of a booking operation. The default sender writes an outbox row in the
caller's transaction; ``deliver_pending_notifications`` hands queued rows to
the delivery service from a worker.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Protocol

import requests
from sqlalchemy.orm import Session

from wayfare.core.config import settings
from wayfare.models.notification_log import NotificationLog

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 5


class NotificationSender(Protocol):
    def send(self, user_id: str, template_id: str, data: dict) -> None: ...


class OutboxNotificationSender:
    def __init__(self, db: Session):
        self.db = db

    def send(self, user_id: str, template_id: str, data: dict) -> None:
        try:
            self.db.add(NotificationLog(
                id=str(uuid.uuid4()),
                user_id=user_id,
                template_id=template_id,
                data=data,
                status="queued",
            ))
        except Exception:
            logger.exception("notification_enqueue_failed", extra={"template_id": template_id})


def _post_notification(log: NotificationLog) -> None:
    headers = {}
    if settings.NOTIFICATIONS_API_KEY:
        headers["Authorization"] = f"Bearer {settings.NOTIFICATIONS_API_KEY}"
    r = requests.post(
        settings.NOTIFICATIONS_WEBHOOK_URL,
        json={"id": log.id, "user_id": log.user_id, "template_id": log.template_id, "data": log.data},
        headers=headers,
        timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"Notification service error {r.status_code}: {r.text}")


def deliver_pending_notifications(db: Session, limit: int = 50) -> dict:
    """Post up to `limit` queued notifications; rows that keep failing are parked as failed."""
    if not settings.NOTIFICATIONS_WEBHOOK_URL:
        return {"skipped": True, "reason": "NOTIFICATIONS_WEBHOOK_URL not set"}
    pending = (
        db.query(NotificationLog)
        .filter(NotificationLog.status == "queued")
        .order_by(NotificationLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent, failed = 0, 0
    for log in pending:
        log.attempts = (log.attempts or 0) + 1
        try:
            _post_notification(log)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            sent += 1
        except (requests.RequestException, RuntimeError) as e:
            logger.warning("notification_delivery_failed", extra={"notification_id": log.id, "attempts": log.attempts, "error": str(e)})
            if log.attempts >= MAX_DELIVERY_ATTEMPTS:
                log.status = "failed"
            failed += 1
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": failed}
