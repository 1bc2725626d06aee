"""Bodies of the periodic jobs; each opens its own session and closes it."""

from sqlalchemy.orm import Session
from sqlalchemy.exc import ProgrammingError
from wayfare.db.session import SessionLocal
from wayfare.services import cart_service
from wayfare.services.booking_coordinator import BookingCoordinator
from wayfare.services.booking_lifecycle import BookingLifecycleService
from wayfare.services.checkout_service import CheckoutService
from wayfare.services.notifications import OutboxNotificationSender, deliver_pending_notifications
from wayfare.services.payment_gateway import build_gateway
from wayfare.services.payment_service import PaymentService
from wayfare.services.providers import build_catalog, build_provider_registry


SKIPPED = {"skipped": True, "reason": "missing_tables"}


def _coordinator(db: Session) -> BookingCoordinator:
    payments = PaymentService(db, build_gateway())
    checkout = CheckoutService(db, build_catalog(), payments)
    return BookingCoordinator(db, checkout, payments, build_provider_registry(), OutboxNotificationSender(db))


def _lifecycle(db: Session) -> BookingLifecycleService:
    return BookingLifecycleService(db, build_provider_registry(), OutboxNotificationSender(db), coordinator=_coordinator(db))


def reconcile_pending_items():
    db: Session = SessionLocal()
    try:
        try:
            return _lifecycle(db).reconcile_pending_items()
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return SKIPPED
    finally:
        db.close()


def sync_confirmed_items():
    db: Session = SessionLocal()
    try:
        try:
            return _lifecycle(db).sync_confirmed_items()
        except ProgrammingError:
            db.rollback()
            return SKIPPED
    finally:
        db.close()


def retry_failed_captures(limit: int = 50):
    db: Session = SessionLocal()
    try:
        try:
            return _coordinator(db).retry_failed_captures(limit=limit)
        except ProgrammingError:
            db.rollback()
            return SKIPPED
    finally:
        db.close()


def expire_checkout_sessions():
    db: Session = SessionLocal()
    try:
        try:
            payments = PaymentService(db, build_gateway())
            expired = CheckoutService(db, build_catalog(), payments).expire_stale_sessions()
        except ProgrammingError:
            db.rollback()
            return SKIPPED
        return {"expired": expired}
    finally:
        db.close()


def abandon_expired_carts():
    db: Session = SessionLocal()
    try:
        try:
            abandoned = cart_service.abandon_expired_carts(db)
        except ProgrammingError:
            db.rollback()
            return SKIPPED
        return {"abandoned": abandoned}
    finally:
        db.close()


def complete_finished_bookings():
    db: Session = SessionLocal()
    try:
        try:
            completed = BookingLifecycleService(db, build_provider_registry(), OutboxNotificationSender(db)).complete_finished_bookings()
        except ProgrammingError:
            db.rollback()
            return SKIPPED
        return {"completed": completed}
    finally:
        db.close()


def deliver_notifications(limit: int = 50):
    db: Session = SessionLocal()
    try:
        try:
            return deliver_pending_notifications(db, limit=limit)
        except ProgrammingError:
            db.rollback()
            return SKIPPED
    finally:
        db.close()
