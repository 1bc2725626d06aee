"""Exactly-once processing of gateway callbacks.

Gateways deliver at least once. Each delivery is recorded by its external
event id (unique); a processed event is rejected as a duplicate, an
unprocessed one (an earlier attempt crashed) is handed out again with its
retry count bumped.
"""
import logging
import uuid
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.core.errors import DuplicateEventError, NotFoundError
from wayfare.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


class WebhookLedger:
    def __init__(self, db: Session, source: str = "payment_gateway"):
        self.db = db
        self.source = source

    def get(self, external_event_id: str) -> WebhookEvent | None:
        return self.db.query(WebhookEvent).filter(WebhookEvent.external_event_id == external_event_id).first()

    def record_event(self, external_event_id: str, event_type: str, payload: dict) -> WebhookEvent:
        event = self.get(external_event_id)
        if event is None:
            event = WebhookEvent(
                id=str(uuid.uuid4()),
                external_event_id=external_event_id,
                source=self.source,
                event_type=event_type,
                payload=payload,
                processed=False,
                retry_count=0,
                received_at=clock.now(),
            )
            self.db.add(event)
            try:
                self.db.commit()
                return event
            except IntegrityError:
                # concurrent delivery inserted it first
                self.db.rollback()
                event = self.get(external_event_id)
                if event is None:
                    raise
        if event.processed:
            logger.info("webhook_duplicate", extra={"external_event_id": external_event_id, "event_type": event_type})
            raise DuplicateEventError(external_event_id)
        event.retry_count = int(event.retry_count or 0) + 1
        self.db.commit()
        logger.info("webhook_redelivered", extra={"external_event_id": external_event_id, "retry_count": event.retry_count})
        return event

    def mark_processed(self, external_event_id: str, commit: bool = True) -> WebhookEvent:
        event = self.get(external_event_id)
        if event is None:
            raise NotFoundError("Webhook event not found", external_event_id=external_event_id)
        if not event.processed:
            event.processed = True
            event.processed_at = clock.now()
        if commit:
            self.db.commit()
        return event

    def process(self, external_event_id: str, event_type: str, payload: dict, handler: Callable[[WebhookEvent], object]):
        """Record, handle and mark processed; the handler's writes and the mark share one commit.

        Handlers must flush rather than commit. A handler exception rolls
        back its writes and leaves the event unprocessed for the next
        delivery.
        """
        event = self.record_event(external_event_id, event_type, payload)
        try:
            result = handler(event)
            self.mark_processed(external_event_id, commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("webhook_handler_failed", extra={"external_event_id": external_event_id, "event_type": event_type})
            raise
        return result
