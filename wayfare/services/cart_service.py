import logging
import uuid
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.core.config import settings
from wayfare.core.errors import (
    CartExpiredError,
    CartFullError,
    CartNotOpenError,
    InvalidCartItemError,
    NotFoundError,
    OfferExpiredError,
)
from wayfare.models.cart import Cart, CartItem
from wayfare.models.enums import CartItemStatus, CartStatus, ItemType
from wayfare.services.state_machine import transition

logger = logging.getLogger(__name__)


def _new_expiry():
    return clock.now() + timedelta(hours=settings.CART_TTL_HOURS)


def is_expired(cart: Cart) -> bool:
    return clock.as_utc(cart.expires_at) <= clock.now()


def get_cart(db: Session, cart_id: str, user_id: str, for_update: bool = False) -> Cart:
    stmt = select(Cart).where(Cart.id == cart_id, Cart.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    cart = db.execute(stmt).scalar_one_or_none()
    if not cart:
        raise NotFoundError("Cart not found", cart_id=cart_id)
    return cart


def get_or_create_cart(db: Session, user_id: str, currency: str | None = None) -> Cart:
    """Return the user's open, unexpired cart, creating one on first use."""
    carts = (
        db.query(Cart)
        .filter(Cart.user_id == user_id, Cart.status == CartStatus.OPEN)
        .order_by(Cart.created_at.desc())
        .all()
    )
    for cart in carts:
        if not is_expired(cart):
            return cart
    cart = Cart(
        id=str(uuid.uuid4()),
        user_id=user_id,
        status=CartStatus.OPEN,
        currency=(currency or settings.DEFAULT_CURRENCY).upper(),
        expires_at=_new_expiry(),
    )
    db.add(cart)
    db.flush()
    logger.info("cart_created", extra={"cart_id": cart.id})
    return cart


def _ensure_open(cart: Cart) -> None:
    if cart.status != CartStatus.OPEN:
        raise CartNotOpenError(f"Cart is {cart.status.value}", cart_id=cart.id, status=cart.status.value)
    if is_expired(cart):
        raise CartExpiredError("Cart has expired", cart_id=cart.id)


def add_item(
    db: Session,
    user_id: str,
    *,
    item_type: ItemType,
    provider_id: str,
    offer_id: str,
    price_cents: int,
    currency: str,
    offer_expires_at,
    quantity: int = 1,
    occupants: int = 1,
    title: str = "",
    requires_document: bool = False,
    schedule: dict | None = None,
    cancellation_policy: dict | None = None,
) -> CartItem:
    cart = get_or_create_cart(db, user_id, currency)
    _ensure_open(cart)
    if quantity < 1:
        raise InvalidCartItemError("quantity must be >= 1", field="quantity")
    if price_cents <= 0:
        raise InvalidCartItemError("price must be positive", field="price_cents")
    if currency.upper() != cart.currency:
        raise InvalidCartItemError(f"cart currency is {cart.currency}, item is {currency.upper()}", field="currency")
    offer_expires_at = clock.parse_iso(offer_expires_at)
    if offer_expires_at is None or offer_expires_at <= clock.now():
        raise OfferExpiredError("Offer has already expired", offer_id=offer_id)

    # same offer again: bump quantity
    for existing in cart.active_items:
        if existing.provider_id == provider_id and existing.offer_id == offer_id:
            existing.quantity = int(existing.quantity) + quantity
            existing.price_cents = price_cents
            existing.offer_expires_at = offer_expires_at
            cart.expires_at = _new_expiry()
            db.flush()
            return existing

    if len(cart.active_items) >= settings.CART_MAX_ITEMS:
        raise CartFullError(f"Cart can hold at most {settings.CART_MAX_ITEMS} items", cart_id=cart.id)

    item = CartItem(
        id=str(uuid.uuid4()),
        item_type=ItemType(item_type),
        provider_id=provider_id,
        offer_id=offer_id,
        title=title,
        price_cents=price_cents,
        currency=currency.upper(),
        quantity=quantity,
        occupants=max(1, occupants),
        requires_document=requires_document,
        offer_expires_at=offer_expires_at,
        schedule=schedule or {},
        cancellation_policy=cancellation_policy or {},
        status=CartItemStatus.ACTIVE,
        created_at=clock.now(),
    )
    cart.items.append(item)
    cart.expires_at = _new_expiry()
    db.flush()
    logger.info("cart_item_added", extra={"cart_id": cart.id, "cart_item_id": item.id, "item_type": item.item_type.value})
    return item


def remove_item(db: Session, cart_id: str, item_id: str, user_id: str) -> Cart:
    cart = get_cart(db, cart_id, user_id)
    _ensure_open(cart)
    item = next((i for i in cart.active_items if i.id == item_id), None)
    if not item:
        raise NotFoundError("Cart item not found", item_id=item_id)
    item.status = CartItemStatus.REMOVED
    db.flush()
    return cart


def update_item_quantity(db: Session, cart_id: str, item_id: str, user_id: str, quantity: int) -> Cart:
    cart = get_cart(db, cart_id, user_id)
    _ensure_open(cart)
    if quantity < 1:
        raise InvalidCartItemError("quantity must be >= 1", field="quantity")
    item = next((i for i in cart.active_items if i.id == item_id), None)
    if not item:
        raise NotFoundError("Cart item not found", item_id=item_id)
    item.quantity = quantity
    cart.expires_at = _new_expiry()
    db.flush()
    return cart


def clear_cart(db: Session, cart_id: str, user_id: str) -> Cart:
    """Remove every active item; the cart itself stays open."""
    cart = get_cart(db, cart_id, user_id)
    _ensure_open(cart)
    for item in cart.active_items:
        item.status = CartItemStatus.REMOVED
    db.flush()
    logger.info("cart_cleared", extra={"cart_id": cart.id})
    return cart


def cart_totals(cart: Cart) -> dict:
    items = cart.active_items
    return {
        "item_count": len(items),
        "subtotal_cents": sum(i.line_total_cents for i in items),
        "currency": cart.currency,
    }


def lock(cart: Cart) -> None:
    transition(cart, CartStatus.LOCKED)


def unlock(cart: Cart) -> None:
    if cart.status == CartStatus.LOCKED:
        transition(cart, CartStatus.OPEN)
        cart.expires_at = max(clock.as_utc(cart.expires_at), _new_expiry())


def convert(cart: Cart) -> None:
    transition(cart, CartStatus.CONVERTED)


def abandon_expired_carts(db: Session, limit: int = 500) -> int:
    carts = (
        db.query(Cart)
        .filter(Cart.status == CartStatus.OPEN, Cart.expires_at <= clock.now())
        .limit(limit)
        .all()
    )
    for cart in carts:
        transition(cart, CartStatus.ABANDONED)
    if carts:
        db.commit()
        logger.info("carts_abandoned", extra={"count": len(carts)})
    return len(carts)
