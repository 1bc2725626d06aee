from datetime import timedelta

import pytest

from factories import NOW, USER_ID, car_rental, flight, hotel_room
from wayfare.core.config import settings
from wayfare.core.errors import (
    CartExpiredError,
    CartFullError,
    CartNotOpenError,
    InvalidCartItemError,
    NotFoundError,
    OfferExpiredError,
)
from wayfare.models.enums import CartItemStatus, CartStatus
from wayfare.services import cart_service


def test_add_item_creates_cart_and_totals(db):
    cart_service.add_item(db, USER_ID, **flight(quantity=2))
    item = cart_service.add_item(db, USER_ID, **hotel_room())
    db.commit()

    cart = item.cart
    assert cart.status == CartStatus.OPEN
    assert cart_service.cart_totals(cart) == {"item_count": 2, "subtotal_cents": 80000, "currency": "USD"}


def test_same_offer_merges_quantity(db):
    cart_service.add_item(db, USER_ID, **flight())
    item = cart_service.add_item(db, USER_ID, **flight(quantity=2))
    assert item.quantity == 3
    assert len(item.cart.active_items) == 1


def test_adding_refreshes_cart_ttl(db, frozen_clock):
    first = cart_service.add_item(db, USER_ID, **flight(offer_expires_at=NOW + timedelta(days=2)))
    frozen_clock.advance(hours=5)
    cart_service.add_item(db, USER_ID, **hotel_room(offer_expires_at=NOW + timedelta(days=2)))
    assert first.cart.expires_at == frozen_clock.current + timedelta(hours=settings.CART_TTL_HOURS)


@pytest.mark.parametrize(
    "overrides",
    [{"quantity": 0}, {"price_cents": 0}, {"currency": "EUR"}],
)
def test_invalid_items_are_rejected(db, overrides):
    cart_service.add_item(db, USER_ID, **car_rental())
    with pytest.raises(InvalidCartItemError):
        cart_service.add_item(db, USER_ID, **flight(**overrides))


def test_expired_offer_is_rejected(db):
    with pytest.raises(OfferExpiredError):
        cart_service.add_item(db, USER_ID, **flight(offer_expires_at=NOW - timedelta(minutes=1)))


def test_cart_capacity(db, monkeypatch):
    monkeypatch.setattr(settings, "CART_MAX_ITEMS", 2)
    cart_service.add_item(db, USER_ID, **flight("a"))
    cart_service.add_item(db, USER_ID, **flight("b"))
    with pytest.raises(CartFullError):
        cart_service.add_item(db, USER_ID, **flight("c"))


def test_remove_item(db):
    item = cart_service.add_item(db, USER_ID, **flight())
    cart = cart_service.remove_item(db, item.cart_id, item.id, USER_ID)
    assert item.status == CartItemStatus.REMOVED
    assert cart.active_items == []
    with pytest.raises(NotFoundError):
        cart_service.remove_item(db, item.cart_id, item.id, USER_ID)


def test_update_item_quantity(db, frozen_clock):
    item = cart_service.add_item(db, USER_ID, **flight(quantity=2))
    frozen_clock.advance(hours=1)
    cart = cart_service.update_item_quantity(db, item.cart_id, item.id, USER_ID, 3)

    assert item.quantity == 3
    assert cart_service.cart_totals(cart)["subtotal_cents"] == 90000
    assert cart.expires_at == frozen_clock.current + timedelta(hours=settings.CART_TTL_HOURS)

    with pytest.raises(InvalidCartItemError):
        cart_service.update_item_quantity(db, item.cart_id, item.id, USER_ID, 0)
    with pytest.raises(NotFoundError):
        cart_service.update_item_quantity(db, item.cart_id, "missing", USER_ID, 1)


def test_clear_cart_keeps_cart_open(db):
    cart_service.add_item(db, USER_ID, **flight())
    item = cart_service.add_item(db, USER_ID, **hotel_room())
    cart = cart_service.clear_cart(db, item.cart_id, USER_ID)

    assert cart.status == CartStatus.OPEN
    assert cart.active_items == []
    assert {i.status for i in cart.items} == {CartItemStatus.REMOVED}
    assert cart_service.cart_totals(cart)["item_count"] == 0


def test_locked_cart_cannot_be_cleared_or_updated(db):
    item = cart_service.add_item(db, USER_ID, **flight())
    cart_service.lock(item.cart)
    with pytest.raises(CartNotOpenError):
        cart_service.clear_cart(db, item.cart_id, USER_ID)
    with pytest.raises(CartNotOpenError):
        cart_service.update_item_quantity(db, item.cart_id, item.id, USER_ID, 2)


def test_other_users_cart_is_not_found(db):
    item = cart_service.add_item(db, USER_ID, **flight())
    with pytest.raises(NotFoundError):
        cart_service.get_cart(db, item.cart_id, "someone-else")


def test_locked_cart_rejects_changes(db):
    item = cart_service.add_item(db, USER_ID, **flight())
    cart_service.lock(item.cart)
    with pytest.raises(CartNotOpenError):
        cart_service.remove_item(db, item.cart_id, item.id, USER_ID)


def test_expired_cart_is_replaced_on_next_add(db, frozen_clock):
    first = cart_service.add_item(db, USER_ID, **flight(offer_expires_at=NOW + timedelta(days=3)))
    db.commit()
    frozen_clock.advance(hours=settings.CART_TTL_HOURS + 1)

    with pytest.raises(CartExpiredError):
        cart_service.remove_item(db, first.cart_id, first.id, USER_ID)

    second = cart_service.add_item(db, USER_ID, **hotel_room(offer_expires_at=NOW + timedelta(days=3)))
    assert second.cart_id != first.cart_id


def test_abandon_expired_carts(db, frozen_clock):
    item = cart_service.add_item(db, USER_ID, **flight())
    db.commit()
    assert cart_service.abandon_expired_carts(db) == 0

    frozen_clock.advance(hours=settings.CART_TTL_HOURS + 1)
    assert cart_service.abandon_expired_carts(db) == 1
    db.refresh(item.cart)
    assert item.cart.status == CartStatus.ABANDONED


def test_unlock_extends_expiry(db, frozen_clock):
    cart = cart_service.add_item(db, USER_ID, **flight()).cart
    cart_service.lock(cart)
    frozen_clock.advance(hours=10)
    cart_service.unlock(cart)
    assert cart.status == CartStatus.OPEN
    assert cart.expires_at == frozen_clock.current + timedelta(hours=settings.CART_TTL_HOURS)
