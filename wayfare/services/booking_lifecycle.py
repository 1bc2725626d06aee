"""Post-checkout booking lifecycle: reconciliation, provider sync, completion.

Runs from Celery beat (see ``wayfare.tasks.worker_jobs``); every method is
safe to run repeatedly.
"""
import logging
import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.core.config import settings
from wayfare.core.errors import NotFoundError
from wayfare.models.booking import Booking, BookingItem, ScheduleChange
from wayfare.models.enums import BookingItemStatus, BookingStatus, ChangeSignificance
from wayfare.services.audit_service import log_audit
from wayfare.services.notifications import NotificationSender
from wayfare.services.providers import (
    PROVIDER_CANCELED,
    PROVIDER_CONFIRMED,
    PROVIDER_FAILED,
    ProviderError,
    ProviderRegistry,
)
from wayfare.services.state_machine import refresh_booking_status, transition

logger = logging.getLogger(__name__)

ROUTE_FIELDS = ("origin", "destination")
TIME_FIELDS = ("departure_at", "arrival_at", "check_in", "check_out", "pickup_at", "dropoff_at", "start_at", "end_at")
MAJOR_FIELDS = ("room_type", "cabin_class", "vehicle_class")
END_TIME_FIELDS = ("end_at", "arrival_at", "check_out", "dropoff_at", "departure_at", "start_at")

_RANK = {ChangeSignificance.MINOR: 0, ChangeSignificance.MAJOR: 1, ChangeSignificance.CRITICAL: 2}


def _hours_between(a, b) -> float | None:
    try:
        first, second = clock.parse_iso(a), clock.parse_iso(b)
    except ValueError:
        return None
    if first is None or second is None:
        return None
    return abs((first - second).total_seconds()) / 3600.0


def diff_schedule(previous: dict, current: dict) -> tuple[list[str], ChangeSignificance]:
    """Changed keys and how much the traveler should care.

    A route change or a shift of more than 4h is critical, more than 2h (or a
    different room/cabin/vehicle class) is major, anything else is minor.
    """
    changed = sorted(k for k in set(previous) | set(current) if previous.get(k) != current.get(k))
    significance = ChangeSignificance.MINOR
    for key in changed:
        level = ChangeSignificance.MINOR
        if key in ROUTE_FIELDS:
            level = ChangeSignificance.CRITICAL
        elif key in TIME_FIELDS:
            shift = _hours_between(previous.get(key), current.get(key))
            if shift is None or shift > 4:
                level = ChangeSignificance.CRITICAL
            elif shift > 2:
                level = ChangeSignificance.MAJOR
        elif key in MAJOR_FIELDS:
            level = ChangeSignificance.MAJOR
        if _RANK[level] > _RANK[significance]:
            significance = level
    return changed, significance


def item_end_time(item: BookingItem) -> datetime | None:
    schedule = item.schedule_snapshot or {}
    for key in END_TIME_FIELDS:
        if schedule.get(key):
            return clock.parse_iso(schedule[key])
    return None


class BookingLifecycleService:
    def __init__(self, db: Session, providers: ProviderRegistry, notifier: NotificationSender, coordinator=None):
        self.db = db
        self.providers = providers
        self.notifier = notifier
        self.coordinator = coordinator

    def recompute_booking_status(self, booking: Booking) -> BookingStatus:
        return refresh_booking_status(booking)

    def reconcile_pending_items(self, limit: int | None = None) -> dict:
        items = (
            self.db.query(BookingItem)
            .filter(BookingItem.status == BookingItemStatus.PENDING_RECONCILIATION)
            .order_by(BookingItem.updated_at.asc())
            .limit(limit or settings.RECONCILIATION_BATCH_SIZE)
            .all()
        )
        confirmed, failed = 0, 0
        touched: set[str] = set()
        for item in items:
            item.reconciliation_attempts = int(item.reconciliation_attempts or 0) + 1
            try:
                found = self.providers.get(item.provider_id).lookup(item.provider_idempotency_key)
            except ProviderError as e:
                logger.warning("reconcile_lookup_failed", extra={"booking_item_id": item.id, "error": str(e)})
                found = None
                outcome = "error"
            else:
                outcome = found.status if found is not None else "not_found"

            if outcome == PROVIDER_CONFIRMED:
                item.provider_confirmation_ref = found.confirmation_ref
                item.failure_reason = None
                transition(item, BookingItemStatus.CONFIRMED)
                confirmed += 1
                touched.add(item.booking_id)
            elif outcome in (PROVIDER_FAILED, PROVIDER_CANCELED) or (
                outcome in ("not_found", "error") and item.reconciliation_attempts >= settings.RECONCILIATION_MAX_ATTEMPTS
            ):
                transition(item, BookingItemStatus.BOOKING_FAILED)
                item.failure_reason = f"reconciliation: {outcome} after {item.reconciliation_attempts} attempt(s)"
                failed += 1
                touched.add(item.booking_id)
            log_audit(self.db, "system", "reconcile.checked", "booking_item", item.id, {"outcome": outcome, "attempt": item.reconciliation_attempts})
        if items:
            self.db.commit()

        resumed = 0
        if self.coordinator is not None:
            for booking_id in touched:
                booking = self.db.get(Booking, booking_id)
                if booking is None:
                    continue
                self.coordinator.resume(booking.checkout_session_id)
                resumed += 1
        if items:
            logger.info("reconcile_done", extra={"checked": len(items), "confirmed": confirmed, "failed": failed})
        return {"checked": len(items), "confirmed": confirmed, "failed": failed, "resumed": resumed}

    def _last_seen_schedule(self, item: BookingItem) -> dict:
        latest = (
            self.db.query(ScheduleChange)
            .filter(ScheduleChange.booking_item_id == item.id)
            .order_by(ScheduleChange.detected_at.desc())
            .first()
        )
        return dict(latest.current) if latest is not None else dict(item.schedule_snapshot or {})

    def sync_confirmed_items(self, limit: int | None = None) -> dict:
        items = (
            self.db.query(BookingItem)
            .join(Booking, Booking.id == BookingItem.booking_id)
            .filter(
                BookingItem.status == BookingItemStatus.CONFIRMED,
                BookingItem.provider_confirmation_ref.isnot(None),
                Booking.status.in_([BookingStatus.CONFIRMED, BookingStatus.PARTIALLY_CONFIRMED]),
            )
            .order_by(BookingItem.last_synced_at.asc().nullsfirst())
            .limit(limit or settings.RECONCILIATION_BATCH_SIZE)
            .all()
        )
        canceled, changes = 0, 0
        for item in items:
            try:
                remote = self.providers.get(item.provider_id).get_status(item.provider_confirmation_ref)
            except ProviderError as e:
                logger.warning("provider_sync_failed", extra={"booking_item_id": item.id, "error": str(e)})
                continue
            item.last_synced_at = clock.now()
            booking = item.booking

            if remote.status == PROVIDER_CANCELED:
                transition(item, BookingItemStatus.CANCELED)
                item.canceled_at = clock.now()
                refresh_booking_status(booking)
                log_audit(self.db, "system", "sync.provider_canceled", "booking_item", item.id, {"needs_attention": True})
                self.notifier.send(booking.user_id, "booking_item_canceled", {
                    "booking_ref": booking.booking_ref,
                    "booking_item_id": item.id,
                    "title": item.title,
                })
                canceled += 1
                continue

            if remote.schedule:
                previous = self._last_seen_schedule(item)
                changed, significance = diff_schedule(previous, remote.schedule)
                if changed:
                    change = ScheduleChange(
                        id=str(uuid.uuid4()),
                        booking_id=booking.id,
                        booking_item_id=item.id,
                        previous=previous,
                        current=dict(remote.schedule),
                        changed_fields=changed,
                        significance=significance,
                        acknowledged=False,
                        detected_at=clock.now(),
                    )
                    self.db.add(change)
                    self.notifier.send(booking.user_id, "schedule_change", {
                        "booking_ref": booking.booking_ref,
                        "booking_item_id": item.id,
                        "schedule_change_id": change.id,
                        "changed_fields": changed,
                        "significance": significance.value,
                    })
                    changes += 1
        if items:
            self.db.commit()
        return {"checked": len(items), "canceled": canceled, "schedule_changes": changes}

    def complete_finished_bookings(self, limit: int = 200) -> int:
        now = clock.now()
        bookings = (
            self.db.query(Booking)
            .filter(Booking.status.in_([BookingStatus.CONFIRMED, BookingStatus.PARTIALLY_CONFIRMED]))
            .order_by(Booking.created_at.asc())
            .limit(limit)
            .all()
        )
        completed = 0
        for booking in bookings:
            for item in booking.items:
                end = item_end_time(item)
                if item.status == BookingItemStatus.CONFIRMED and end is not None and end <= now:
                    transition(item, BookingItemStatus.COMPLETED)
            if refresh_booking_status(booking) == BookingStatus.COMPLETED:
                completed += 1
        if bookings:
            self.db.commit()
        return completed

    def acknowledge_schedule_change(self, change_id: str, user_id: str) -> ScheduleChange:
        change = self.db.get(ScheduleChange, change_id)
        booking = self.db.get(Booking, change.booking_id) if change else None
        if change is None or booking is None or booking.user_id != user_id:
            raise NotFoundError("Schedule change not found", schedule_change_id=change_id)
        if not change.acknowledged:
            change.acknowledged = True
            change.acknowledged_at = clock.now()
            log_audit(self.db, user_id, "schedule_change.acknowledged", "booking_item", change.booking_item_id, {"schedule_change_id": change.id})
            self.db.commit()
        return change
