from datetime import timedelta

import pytest

from factories import NOW, USER_ID, adult, car_rental, contact, flight, hotel_room
from wayfare.core import clock
from wayfare.core.config import settings
from wayfare.core.errors import (
    CartEmptyError,
    CartLockedError,
    InvalidTransitionError,
    OfferExpiredError,
    OfferUnavailableError,
    PriceChangedTwiceError,
    ProviderTemporarilyUnavailableError,
    SessionExpiredError,
    ValidationError,
)
from wayfare.models.cart import CartItem
from wayfare.models.enums import CartStatus, CheckoutStatus, PaymentStatus
from wayfare.services import cart_service


def test_initialize_snapshots_and_locks_cart(db, checkout, fill_cart):
    cart = fill_cart(flight(quantity=2), hotel_room())
    session = checkout.initialize(cart.id, USER_ID)

    assert session.status == CheckoutStatus.INITIALIZED
    assert session.total_cents == 2 * 30000 + 20000
    assert [e["offer_id"] for e in session.price_snapshot] == ["fl-1", "ht-1"]
    db.refresh(cart)
    assert cart.status == CartStatus.LOCKED


def test_session_expiry_is_capped_by_first_offer_expiry(checkout, fill_cart, monkeypatch):
    monkeypatch.setattr(settings, "CHECKOUT_SESSION_TTL_MINUTES", 30)
    cart = fill_cart(flight(offer_expires_at=NOW + timedelta(minutes=10)), hotel_room())
    session = checkout.initialize(cart.id, USER_ID)
    assert clock.as_utc(session.expires_at) == NOW + timedelta(minutes=10)


def test_second_checkout_for_same_cart_is_rejected(checkout, fill_cart):
    cart = fill_cart(flight())
    checkout.initialize(cart.id, USER_ID)
    with pytest.raises(CartLockedError):
        checkout.initialize(cart.id, USER_ID)


def test_empty_cart_cannot_check_out(db, checkout):
    cart = cart_service.get_or_create_cart(db, USER_ID)
    db.commit()
    with pytest.raises(CartEmptyError):
        checkout.initialize(cart.id, USER_ID)


def test_stale_offer_blocks_initialize(checkout, fill_cart, frozen_clock):
    cart = fill_cart(flight(offer_expires_at=NOW + timedelta(minutes=5)), hotel_room())
    frozen_clock.advance(minutes=6)
    with pytest.raises(OfferExpiredError):
        checkout.initialize(cart.id, USER_ID)


def test_verify_prices_unchanged_is_ready(checkout, fill_cart):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    session = checkout.verify_prices(session.id, USER_ID)
    assert session.status == CheckoutStatus.READY_FOR_PAYMENT
    assert session.pending_price_deltas == []


def test_price_within_tolerance_is_ignored(checkout, catalog, fill_cart, monkeypatch):
    monkeypatch.setattr(settings, "PRICE_TOLERANCE_CENTS", 100)
    cart = fill_cart(flight())
    catalog.prices["fl-1"] = 30050
    session = checkout.initialize(cart.id, USER_ID)
    assert checkout.verify_prices(session.id, USER_ID).status == CheckoutStatus.READY_FOR_PAYMENT


def test_price_change_then_acknowledge(db, checkout, catalog, fill_cart):
    cart = fill_cart(flight(quantity=2), hotel_room())
    catalog.prices["fl-1"] = 32500
    session = checkout.initialize(cart.id, USER_ID)

    session = checkout.verify_prices(session.id, USER_ID)
    assert session.status == CheckoutStatus.PRICE_CHANGED
    assert session.price_change_count == 1
    [delta] = session.pending_price_deltas
    assert delta["original_cents"] == 30000
    assert delta["current_cents"] == 32500
    assert delta["difference_cents"] == 2500

    session = checkout.acknowledge_price_change(session.id, USER_ID)
    assert session.status == CheckoutStatus.AWAITING_TRAVELER_DETAILS
    assert session.total_cents == 2 * 32500 + 20000
    assert db.get(CartItem, delta["cart_item_id"]).price_cents == 32500

    session = checkout.submit_traveler_details(session.id, [adult(), adult("Baraka", "Mushi")], contact(), USER_ID)
    assert session.status == CheckoutStatus.READY_FOR_PAYMENT


def test_second_price_change_fails_session(db, checkout, catalog, fill_cart):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    catalog.prices["fl-1"] = 31000
    checkout.verify_prices(session.id, USER_ID)
    checkout.acknowledge_price_change(session.id, USER_ID)

    catalog.prices["fl-1"] = 33000
    with pytest.raises(PriceChangedTwiceError):
        checkout.verify_prices(session.id, USER_ID)
    db.refresh(session)
    assert session.status == CheckoutStatus.FAILED
    assert session.error_code == "price_changed_twice"
    db.refresh(cart)
    assert cart.status == CartStatus.OPEN


def test_unavailable_offer_fails_session(db, checkout, catalog, fill_cart):
    cart = fill_cart(flight(), hotel_room())
    del catalog.prices["ht-1"]
    session = checkout.initialize(cart.id, USER_ID)
    with pytest.raises(OfferUnavailableError) as exc:
        checkout.verify_prices(session.id, USER_ID)
    assert len(exc.value.item_ids) == 1
    db.refresh(session)
    assert session.status == CheckoutStatus.FAILED


def test_catalog_outage_leaves_session_untouched(db, checkout, catalog, fill_cart):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    catalog.outages = settings.EXTERNAL_CALL_MAX_ATTEMPTS
    with pytest.raises(ProviderTemporarilyUnavailableError):
        checkout.verify_prices(session.id, USER_ID)
    assert session.status == CheckoutStatus.INITIALIZED


def test_catalog_blip_is_retried(checkout, catalog, fill_cart):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    catalog.outages = 1
    assert checkout.verify_prices(session.id, USER_ID).status == CheckoutStatus.READY_FOR_PAYMENT


def test_traveler_errors_are_collected(checkout, fill_cart):
    cart = fill_cart(flight(quantity=2))
    session = checkout.initialize(cart.id, USER_ID)
    checkout.verify_prices(session.id, USER_ID)

    with pytest.raises(ValidationError) as exc:
        checkout.submit_traveler_details(session.id, [adult(first="")], contact(email="nope"), USER_ID)
    fields = {e.field for e in exc.value.errors}
    assert {"travelers", "travelers[0].firstName", "contact.email"} <= fields


def test_traveler_details_rejected_before_price_check(checkout, fill_cart):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    with pytest.raises(InvalidTransitionError):
        checkout.submit_traveler_details(session.id, [adult()], contact(), USER_ID)


def test_travelers_can_be_replaced_while_ready(checkout, ready_session):
    session = ready_session(car_rental())
    session = checkout.submit_traveler_details(session.id, [adult("Neema", "Kisanga")], contact(), USER_ID)
    assert session.status == CheckoutStatus.READY_FOR_PAYMENT
    assert session.travelers[0]["firstName"] == "Neema"


def test_past_expiry_is_expired_on_access(db, checkout, fill_cart, frozen_clock):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    frozen_clock.advance(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES + 1)

    with pytest.raises(SessionExpiredError):
        checkout.verify_prices(session.id, USER_ID)
    db.refresh(session)
    assert session.status == CheckoutStatus.EXPIRED
    db.refresh(cart)
    assert cart.status == CartStatus.OPEN


def test_expire_is_idempotent_and_refuses_in_flight(db, checkout, fill_cart):
    cart = fill_cart(flight())
    session = checkout.initialize(cart.id, USER_ID)
    assert checkout.expire(session.id).status == CheckoutStatus.EXPIRED
    assert checkout.expire(session.id).status == CheckoutStatus.EXPIRED

    other = fill_cart(hotel_room(), user_id="user-2")
    in_flight = checkout.initialize(other.id, "user-2")
    in_flight.status = CheckoutStatus.AUTHORIZING
    db.commit()
    with pytest.raises(InvalidTransitionError):
        checkout.expire(in_flight.id)


def test_expire_leaves_finished_sessions_alone(db, checkout, coordinator, ready_session, fill_cart):
    done = ready_session(flight())
    coordinator.run(done.id, USER_ID, "tok")
    assert checkout.expire(done.id).status == CheckoutStatus.COMPLETED

    cart = fill_cart(hotel_room(), user_id="user-2")
    failed = checkout.initialize(cart.id, "user-2")
    checkout.fail(failed, "test", "gave up")
    db.commit()
    assert checkout.expire(failed.id).status == CheckoutStatus.FAILED


def test_expire_stale_sessions_voids_authorized_hold(db, checkout, payments, gateway, ready_session, frozen_clock):
    session = ready_session(flight())
    session.status = CheckoutStatus.AUTHORIZING
    txn = payments.authorize(session, "tok")
    session.status = CheckoutStatus.AUTHORIZED
    db.commit()

    frozen_clock.advance(hours=3)
    assert checkout.expire_stale_sessions() == 1
    db.refresh(txn)
    assert txn.status == PaymentStatus.CANCELED
    assert len(gateway.ops("void")) == 1
