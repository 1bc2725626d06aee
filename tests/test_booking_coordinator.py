import pytest

from factories import USER_ID, adult, car_rental, contact, flight, hotel_room
from wayfare.core.errors import (
    BookingUnavailableError,
    CaptureFailedError,
    PaymentDeclinedError,
    PriceChangedError,
    ProviderTemporarilyUnavailableError,
    SessionExpiredError,
    ValidationError,
)
from wayfare.models.audit_log import AuditLog
from wayfare.models.cart import Cart
from wayfare.models.enums import BookingItemStatus, BookingStatus, CartStatus, CheckoutStatus, PaymentStatus
from wayfare.services.payment_gateway import GatewayDeclined
from wayfare.services.providers import ProviderRejected, ProviderTimeout, ProviderUnavailable


def _statuses(booking):
    return [i.status for i in booking.items]


def test_happy_path_books_everything_then_captures(db, coordinator, ready_session, air, hotel, gateway, notifier):
    session = ready_session(flight(), hotel_room())
    booking = coordinator.run(session.id, USER_ID, "tok")

    assert booking.status == BookingStatus.CONFIRMED
    assert _statuses(booking) == [BookingItemStatus.CONFIRMED, BookingItemStatus.CONFIRMED]
    assert booking.items[0].provider_confirmation_ref == "AIR-1"
    assert booking.booking_ref.startswith("WF-")
    assert [k for _, k in air.book_calls] == [f"checkout:{session.id}:book:0"]
    assert [k for _, k in hotel.book_calls] == [f"checkout:{session.id}:book:1"]

    db.refresh(session)
    assert session.status == CheckoutStatus.COMPLETED
    assert db.get(Cart, session.cart_id).status == CartStatus.CONVERTED
    txn = coordinator.payments.get_for_session(session.id)
    assert txn.status == PaymentStatus.CAPTURED
    assert [c[0] for c in gateway.calls] == ["authorize", "capture"]
    assert notifier.templates() == ["booking_confirmed"]


def test_replay_returns_existing_booking(coordinator, ready_session, air, gateway):
    session = ready_session(flight())
    first = coordinator.run(session.id, USER_ID, "tok")
    second = coordinator.run(session.id, USER_ID, "tok")
    assert first.id == second.id
    assert len(air.book_calls) == 1
    assert len(gateway.ops("authorize")) == 1


def test_declined_payment_books_nothing(db, coordinator, ready_session, air, gateway):
    session = ready_session(flight())
    gateway.fail_next("authorize", GatewayDeclined("do not honor"))

    with pytest.raises(PaymentDeclinedError):
        coordinator.run(session.id, USER_ID, "tok")

    assert air.book_calls == []
    assert coordinator.booking_for_session(session.id) is None
    db.refresh(session)
    assert session.status == CheckoutStatus.FAILED
    assert session.error_code == "payment_declined"
    assert db.get(Cart, session.cart_id).status == CartStatus.OPEN


def test_rejection_rolls_back_in_reverse_order(db, coordinator, ready_session, air, gateway, notifier):
    session = ready_session(flight("fl-1"), flight("fl-2"), flight("fl-3"))
    air.errors_for_key[f"checkout:{session.id}:book:2"] = ProviderRejected("sold out")

    with pytest.raises(BookingUnavailableError):
        coordinator.run(session.id, USER_ID, "tok")

    booking = coordinator.booking_for_session(session.id)
    assert air.cancel_calls == ["AIR-2", "AIR-1"]
    assert _statuses(booking) == [BookingItemStatus.CANCELED, BookingItemStatus.CANCELED, BookingItemStatus.BOOKING_FAILED]
    assert booking.status == BookingStatus.FAILED
    assert coordinator.payments.get_for_session(session.id).status == PaymentStatus.CANCELED
    assert gateway.ops("capture") == []
    db.refresh(session)
    assert session.status == CheckoutStatus.FAILED
    assert session.error_code == "booking_unavailable"
    assert notifier.templates() == ["booking_failed"]


def test_items_after_the_failure_are_never_attempted(coordinator, ready_session, air, hotel, cars):
    session = ready_session(flight(), hotel_room(), car_rental())
    hotel.book_errors = [ProviderRejected("no rooms")]

    with pytest.raises(BookingUnavailableError):
        coordinator.run(session.id, USER_ID, "tok")

    assert cars.book_calls == []
    booking = coordinator.booking_for_session(session.id)
    assert _statuses(booking) == [BookingItemStatus.CANCELED, BookingItemStatus.BOOKING_FAILED, BookingItemStatus.BOOKING_FAILED]
    assert air.cancel_calls == ["AIR-1"]


def test_failed_compensation_needs_attention(db, coordinator, ready_session, air, hotel, gateway):
    session = ready_session(flight(), hotel_room())
    hotel.book_errors = [ProviderRejected("no rooms")]
    air.cancel_errors = [ProviderRejected("cannot cancel")]

    with pytest.raises(BookingUnavailableError):
        coordinator.run(session.id, USER_ID, "tok")

    booking = coordinator.booking_for_session(session.id)
    assert booking.items[0].status == BookingItemStatus.CONFIRMED
    assert booking.status == BookingStatus.PARTIALLY_CONFIRMED
    audit = db.query(AuditLog).filter(AuditLog.action == "saga.compensation_failed").one()
    assert audit.entity_id == booking.items[0].id
    assert audit.details["needs_attention"] is True
    assert audit.details["payment_hold_kept"] is True
    assert coordinator.payments.get_for_session(session.id).status == PaymentStatus.AUTHORIZED
    assert gateway.ops("void") == []


def test_provider_outage_after_retries_rolls_back(db, coordinator, ready_session, air):
    session = ready_session(flight())
    air.book_errors = [ProviderUnavailable("502")] * 3

    with pytest.raises(ProviderTemporarilyUnavailableError):
        coordinator.run(session.id, USER_ID, "tok")

    assert len(air.book_calls) == 3
    assert coordinator.payments.get_for_session(session.id).status == PaymentStatus.CANCELED


def test_provider_blip_is_retried_with_same_key(coordinator, ready_session, air):
    session = ready_session(flight())
    air.book_errors = [ProviderUnavailable("502")]
    booking = coordinator.run(session.id, USER_ID, "tok")
    assert booking.status == BookingStatus.CONFIRMED
    assert len({k for _, k in air.book_calls}) == 1


def test_timeout_parks_item_and_halts_saga(db, coordinator, ready_session, air, hotel, gateway):
    session = ready_session(flight(), hotel_room())
    hotel.book_errors = [ProviderTimeout("read timeout")]

    booking = coordinator.run(session.id, USER_ID, "tok")

    assert booking.status == BookingStatus.PENDING
    assert _statuses(booking) == [BookingItemStatus.CONFIRMED, BookingItemStatus.PENDING_RECONCILIATION]
    assert len(hotel.book_calls) == 1
    assert gateway.ops("capture") == []
    db.refresh(session)
    assert session.status == CheckoutStatus.BOOKING

    # paying again while halted changes nothing
    assert coordinator.run(session.id, USER_ID, "tok").id == booking.id
    assert len(hotel.book_calls) == 1


def test_resume_finishes_after_reconciliation(db, coordinator, ready_session, hotel):
    session = ready_session(flight(), hotel_room())
    hotel.book_errors = [ProviderTimeout("read timeout")]
    booking = coordinator.run(session.id, USER_ID, "tok")

    booking.items[1].status = BookingItemStatus.CONFIRMED
    booking.items[1].provider_confirmation_ref = "HOTEL-9"
    db.commit()

    booking = coordinator.resume(session.id)
    assert booking.status == BookingStatus.CONFIRMED
    db.refresh(session)
    assert session.status == CheckoutStatus.COMPLETED


def test_resume_rolls_back_when_reconciliation_failed(db, coordinator, ready_session, air, hotel):
    session = ready_session(flight(), hotel_room())
    hotel.book_errors = [ProviderTimeout("read timeout")]
    booking = coordinator.run(session.id, USER_ID, "tok")

    booking.items[1].status = BookingItemStatus.BOOKING_FAILED
    db.commit()

    booking = coordinator.resume(session.id)
    assert air.cancel_calls == ["AIR-1"]
    assert booking.status == BookingStatus.FAILED
    assert coordinator.payments.get_for_session(session.id).status == PaymentStatus.CANCELED


def test_capture_failure_keeps_confirmed_booking(db, coordinator, ready_session, air, gateway, notifier):
    session = ready_session(flight())
    gateway.fail_next("capture", GatewayDeclined("authorization expired"))

    with pytest.raises(CaptureFailedError) as exc:
        coordinator.run(session.id, USER_ID, "tok")

    booking = coordinator.booking_for_session(session.id)
    assert exc.value.booking_id == booking.id
    assert booking.status == BookingStatus.CONFIRMED
    assert air.cancel_calls == []
    txn = coordinator.payments.get_for_session(session.id)
    assert txn.status == PaymentStatus.CAPTURE_FAILED
    db.refresh(session)
    assert session.status == CheckoutStatus.BOOKING
    assert session.error_code == "capture_failed"
    assert notifier.templates() == ["booking_confirmed"]

    assert coordinator.retry_failed_captures() == {"processed": 1, "recovered": 1}
    db.refresh(session)
    assert session.status == CheckoutStatus.COMPLETED
    assert txn.status == PaymentStatus.CAPTURED


def test_settle_captured_without_commit_rolls_back_with_caller(db, coordinator, ready_session, gateway):
    session = ready_session(flight())
    gateway.fail_next("capture", GatewayDeclined("authorization expired"))
    with pytest.raises(CaptureFailedError):
        coordinator.run(session.id, USER_ID, "tok")

    txn = coordinator.payments.get_for_session(session.id)
    txn.status = PaymentStatus.CAPTURED
    assert coordinator.settle_captured(txn, commit=False) is True
    assert session.status == CheckoutStatus.COMPLETED

    db.rollback()
    db.refresh(session)
    assert session.status == CheckoutStatus.BOOKING
    assert db.query(AuditLog).filter_by(action="saga.capture_settled").count() == 0


def test_price_change_at_payment_blocks_authorization(db, coordinator, ready_session, catalog, gateway):
    session = ready_session(flight())
    catalog.prices["fl-1"] = 35000

    with pytest.raises(PriceChangedError):
        coordinator.run(session.id, USER_ID, "tok")

    assert gateway.calls == []
    db.refresh(session)
    assert session.status == CheckoutStatus.PRICE_CHANGED


def test_travelers_required_before_payment(coordinator, checkout, fill_cart):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    checkout.verify_prices(session.id, USER_ID)
    with pytest.raises(ValidationError):
        coordinator.run(session.id, USER_ID, "tok")


def test_expired_session_cannot_pay(coordinator, ready_session, frozen_clock, gateway):
    session = ready_session(flight())
    frozen_clock.advance(hours=3)
    with pytest.raises(SessionExpiredError):
        coordinator.run(session.id, USER_ID, "tok")
    assert gateway.calls == []


def test_travelers_are_assigned_per_item(coordinator, ready_session, air, cars):
    travelers = [adult(), adult("Baraka", "Mushi")]
    session = ready_session(flight(quantity=2), car_rental(), travelers=travelers)
    booking = coordinator.run(session.id, USER_ID, "tok")

    assert booking.items[0].traveler_assignments == [0, 1]
    assert booking.items[1].traveler_assignments == [0]
    [(payload, _)] = cars.book_calls
    assert [t["firstName"] for t in payload["travelers"]] == ["Amina"]
    assert payload["contact"]["email"] == contact().email
    assert booking.items[0].amount_cents == 60000
