import pytest

from factories import USER_ID, flight, hotel_room
from wayfare.core.config import settings
from wayfare.core.errors import NotFoundError
from wayfare.models.audit_log import AuditLog
from wayfare.models.booking import ScheduleChange
from wayfare.models.enums import BookingItemStatus, BookingStatus, ChangeSignificance, CheckoutStatus, PaymentStatus
from wayfare.services.booking_lifecycle import diff_schedule
from wayfare.services.providers import (
    PROVIDER_CANCELED,
    PROVIDER_CONFIRMED,
    PROVIDER_FAILED,
    ProviderBooking,
    ProviderTimeout,
    ProviderUnavailable,
)

FLIGHT_SCHEDULE = flight()["schedule"]


@pytest.fixture()
def halted(coordinator, ready_session, hotel):
    """A saga halted on a hotel booking timeout."""
    session = ready_session(flight(), hotel_room())
    hotel.book_errors = [ProviderTimeout("read timeout")]
    booking = coordinator.run(session.id, USER_ID, "tok")
    return session, booking


@pytest.fixture()
def confirmed(coordinator, ready_session):
    session = ready_session(flight(), hotel_room())
    return coordinator.run(session.id, USER_ID, "tok")


def test_reconcile_confirms_and_resumes_saga(db, lifecycle, halted, hotel, gateway):
    session, booking = halted
    key = booking.items[1].provider_idempotency_key
    hotel.bookings[key] = ProviderBooking(PROVIDER_CONFIRMED, "HOTEL-77")

    result = lifecycle.reconcile_pending_items()

    assert result == {"checked": 1, "confirmed": 1, "failed": 0, "resumed": 1}
    db.refresh(booking)
    assert booking.items[1].provider_confirmation_ref == "HOTEL-77"
    assert booking.status == BookingStatus.CONFIRMED
    db.refresh(session)
    assert session.status == CheckoutStatus.COMPLETED
    assert len(gateway.ops("capture")) == 1


def test_reconcile_gives_up_after_max_attempts(db, lifecycle, halted, air, monkeypatch):
    monkeypatch.setattr(settings, "RECONCILIATION_MAX_ATTEMPTS", 2)
    session, booking = halted

    assert lifecycle.reconcile_pending_items()["failed"] == 0
    assert booking.items[1].status == BookingItemStatus.PENDING_RECONCILIATION

    assert lifecycle.reconcile_pending_items()["failed"] == 1
    db.refresh(booking)
    assert booking.items[1].status == BookingItemStatus.BOOKING_FAILED
    assert booking.items[1].reconciliation_attempts == 2
    # the saga unwinds what it already booked
    assert air.cancel_calls == ["AIR-1"]
    assert booking.status == BookingStatus.FAILED
    assert lifecycle.coordinator.payments.get_for_session(session.id).status == PaymentStatus.CANCELED


def test_reconcile_provider_failure_fails_item_at_once(db, lifecycle, halted, hotel):
    _, booking = halted
    hotel.bookings[booking.items[1].provider_idempotency_key] = ProviderBooking(PROVIDER_FAILED)
    assert lifecycle.reconcile_pending_items()["failed"] == 1


def test_reconcile_lookup_errors_count_as_attempts(db, lifecycle, halted, hotel):
    _, booking = halted
    hotel.lookup_errors = [ProviderUnavailable("502")]
    assert lifecycle.reconcile_pending_items() == {"checked": 1, "confirmed": 0, "failed": 0, "resumed": 0}
    assert booking.items[1].reconciliation_attempts == 1
    assert db.query(AuditLog).filter(AuditLog.action == "reconcile.checked").one().details["outcome"] == "error"


def test_sync_detects_provider_side_cancellation(db, lifecycle, confirmed, hotel, notifier):
    hotel.remote["HOTEL-1"] = ProviderBooking(PROVIDER_CANCELED, "HOTEL-1")

    assert lifecycle.sync_confirmed_items()["canceled"] == 1

    db.refresh(confirmed)
    assert confirmed.items[1].status == BookingItemStatus.CANCELED
    assert confirmed.status == BookingStatus.PARTIALLY_CONFIRMED
    assert "booking_item_canceled" in notifier.templates()
    audit = db.query(AuditLog).filter(AuditLog.action == "sync.provider_canceled").one()
    assert audit.details["needs_attention"] is True


def test_sync_records_schedule_change_once(db, lifecycle, confirmed, air, notifier):
    moved = dict(FLIGHT_SCHEDULE, departure_at="2026-04-10T12:00:00+00:00", arrival_at="2026-04-10T12:30:00+00:00")
    air.remote["AIR-1"] = ProviderBooking(PROVIDER_CONFIRMED, "AIR-1", moved)

    assert lifecycle.sync_confirmed_items()["schedule_changes"] == 1
    assert lifecycle.sync_confirmed_items()["schedule_changes"] == 0

    change = db.query(ScheduleChange).one()
    assert change.booking_item_id == confirmed.items[0].id
    assert change.changed_fields == ["arrival_at", "departure_at"]
    assert change.significance == ChangeSignificance.MAJOR
    assert change.acknowledged is False
    assert notifier.templates().count("schedule_change") == 1


def test_acknowledge_schedule_change(db, lifecycle, confirmed, air):
    moved = dict(FLIGHT_SCHEDULE, destination="JRO")
    air.remote["AIR-1"] = ProviderBooking(PROVIDER_CONFIRMED, "AIR-1", moved)
    lifecycle.sync_confirmed_items()
    change = db.query(ScheduleChange).one()
    assert change.significance == ChangeSignificance.CRITICAL

    with pytest.raises(NotFoundError):
        lifecycle.acknowledge_schedule_change(change.id, "someone-else")
    assert lifecycle.acknowledge_schedule_change(change.id, USER_ID).acknowledged is True


def test_complete_finished_bookings(db, lifecycle, confirmed, frozen_clock):
    assert lifecycle.complete_finished_bookings() == 0

    frozen_clock.advance(days=60)
    assert lifecycle.complete_finished_bookings() == 1
    db.refresh(confirmed)
    assert confirmed.status == BookingStatus.COMPLETED
    assert all(i.status == BookingItemStatus.COMPLETED for i in confirmed.items)


@pytest.mark.parametrize(
    "changes, significance",
    [
        ({"departure_at": "2026-04-10T10:00:00+00:00"}, ChangeSignificance.MINOR),
        ({"departure_at": "2026-04-10T12:00:00+00:00"}, ChangeSignificance.MAJOR),
        ({"departure_at": "2026-04-10T14:00:00+00:00"}, ChangeSignificance.CRITICAL),
        ({"origin": "JNB"}, ChangeSignificance.CRITICAL),
        ({"cabin_class": "business"}, ChangeSignificance.MAJOR),
        ({"gate": "B4"}, ChangeSignificance.MINOR),
    ],
)
def test_diff_schedule_significance(changes, significance):
    changed, level = diff_schedule(FLIGHT_SCHEDULE, dict(FLIGHT_SCHEDULE, **changes))
    assert changed == sorted(changes)
    assert level == significance


def test_diff_schedule_without_changes():
    assert diff_schedule(FLIGHT_SCHEDULE, dict(FLIGHT_SCHEDULE)) == ([], ChangeSignificance.MINOR)
