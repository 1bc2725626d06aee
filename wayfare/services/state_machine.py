"""Closed status enumerations and their allowed transitions.

Services never assign ``status`` directly; they call :func:`transition`,
which rejects any edge missing from the adjacency tables below.
"""
import logging
from collections.abc import Iterable

from wayfare.core import clock
from wayfare.core.errors import InvalidTransitionError
from wayfare.models.enums import (
    BookingItemStatus,
    BookingStatus,
    CartStatus,
    CheckoutStatus,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

CART_TRANSITIONS = {
    CartStatus.OPEN: {CartStatus.LOCKED, CartStatus.ABANDONED},
    CartStatus.LOCKED: {CartStatus.OPEN, CartStatus.CONVERTED},
    CartStatus.CONVERTED: set(),
    CartStatus.ABANDONED: set(),
}

CHECKOUT_TRANSITIONS = {
    CheckoutStatus.INITIALIZED: {CheckoutStatus.PRICE_VERIFYING, CheckoutStatus.FAILED, CheckoutStatus.EXPIRED},
    CheckoutStatus.PRICE_VERIFYING: {
        CheckoutStatus.READY_FOR_PAYMENT,
        CheckoutStatus.PRICE_CHANGED,
        CheckoutStatus.FAILED,
        CheckoutStatus.EXPIRED,
    },
    CheckoutStatus.PRICE_CHANGED: {CheckoutStatus.AWAITING_TRAVELER_DETAILS, CheckoutStatus.FAILED, CheckoutStatus.EXPIRED},
    CheckoutStatus.AWAITING_TRAVELER_DETAILS: {
        CheckoutStatus.READY_FOR_PAYMENT,
        CheckoutStatus.PRICE_CHANGED,
        CheckoutStatus.FAILED,
        CheckoutStatus.EXPIRED,
    },
    CheckoutStatus.READY_FOR_PAYMENT: {
        CheckoutStatus.AUTHORIZING,
        CheckoutStatus.PRICE_CHANGED,
        CheckoutStatus.FAILED,
        CheckoutStatus.EXPIRED,
    },
    CheckoutStatus.AUTHORIZING: {CheckoutStatus.AUTHORIZED, CheckoutStatus.FAILED},
    CheckoutStatus.AUTHORIZED: {CheckoutStatus.BOOKING, CheckoutStatus.FAILED, CheckoutStatus.EXPIRED},
    CheckoutStatus.BOOKING: {CheckoutStatus.COMPLETED, CheckoutStatus.FAILED},
    CheckoutStatus.COMPLETED: set(),
    CheckoutStatus.FAILED: set(),
    CheckoutStatus.EXPIRED: set(),
}

CHECKOUT_TERMINAL = frozenset({CheckoutStatus.COMPLETED, CheckoutStatus.FAILED, CheckoutStatus.EXPIRED})
# An external call may be in flight; expiry must not race it.
CHECKOUT_IN_FLIGHT = frozenset({CheckoutStatus.AUTHORIZING, CheckoutStatus.BOOKING})

PAYMENT_TRANSITIONS = {
    PaymentStatus.CREATED: {PaymentStatus.AUTHORIZED, PaymentStatus.CANCELED},
    PaymentStatus.AUTHORIZED: {PaymentStatus.CAPTURED, PaymentStatus.CAPTURE_FAILED, PaymentStatus.CANCELED},
    PaymentStatus.CAPTURE_FAILED: {PaymentStatus.CAPTURED, PaymentStatus.CANCELED},
    PaymentStatus.CAPTURED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.CANCELED: set(),
    PaymentStatus.REFUNDED: set(),
}

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.PARTIALLY_CONFIRMED,
        BookingStatus.FAILED,
        BookingStatus.CANCELED,
    },
    BookingStatus.CONFIRMED: {BookingStatus.PARTIALLY_CONFIRMED, BookingStatus.CANCELED, BookingStatus.COMPLETED},
    BookingStatus.PARTIALLY_CONFIRMED: {BookingStatus.CANCELED, BookingStatus.COMPLETED},
    BookingStatus.FAILED: set(),
    BookingStatus.CANCELED: set(),
    BookingStatus.COMPLETED: set(),
}

BOOKING_ITEM_TRANSITIONS = {
    BookingItemStatus.PENDING: {
        BookingItemStatus.CONFIRMED,
        BookingItemStatus.BOOKING_FAILED,
        BookingItemStatus.PENDING_RECONCILIATION,
    },
    BookingItemStatus.PENDING_RECONCILIATION: {BookingItemStatus.CONFIRMED, BookingItemStatus.BOOKING_FAILED},
    BookingItemStatus.CONFIRMED: {BookingItemStatus.CANCELED, BookingItemStatus.COMPLETED},
    BookingItemStatus.BOOKING_FAILED: set(),
    BookingItemStatus.CANCELED: set(),
    BookingItemStatus.COMPLETED: set(),
}

_TABLES = {
    CartStatus: ("cart", CART_TRANSITIONS),
    CheckoutStatus: ("checkout_session", CHECKOUT_TRANSITIONS),
    PaymentStatus: ("payment_transaction", PAYMENT_TRANSITIONS),
    BookingStatus: ("booking", BOOKING_TRANSITIONS),
    BookingItemStatus: ("booking_item", BOOKING_ITEM_TRANSITIONS),
}


def can_transition(current, target) -> bool:
    _, table = _TABLES[type(target)]
    return target in table.get(current, set())


def assert_transition(current, target) -> None:
    entity, table = _TABLES[type(target)]
    if target not in table.get(current, set()):
        raise InvalidTransitionError(entity, current.value, target.value)


def transition(obj, target) -> None:
    """Move ``obj.status`` to ``target`` or raise InvalidTransitionError."""
    current = obj.status
    assert_transition(current, target)
    obj.status = target
    logger.debug(
        "status_transition",
        extra={"entity": _TABLES[type(target)][0], "entity_id": getattr(obj, "id", None), "from": current.value, "to": target.value},
    )


def refresh_booking_status(booking) -> BookingStatus:
    """Move ``booking.status`` to the aggregate of its items when that edge is allowed."""
    target = aggregate_booking_status(i.status for i in booking.items)
    if target == booking.status:
        return target
    if not can_transition(booking.status, target):
        logger.warning(
            "booking_status_refresh_skipped",
            extra={"booking_id": booking.id, "from": booking.status.value, "to": target.value},
        )
        return booking.status
    transition(booking, target)
    now = clock.now()
    if target in (BookingStatus.CONFIRMED, BookingStatus.PARTIALLY_CONFIRMED) and booking.confirmed_at is None:
        booking.confirmed_at = now
    elif target == BookingStatus.CANCELED:
        booking.canceled_at = now
    elif target == BookingStatus.COMPLETED:
        booking.completed_at = now
    return target


def aggregate_booking_status(item_statuses: Iterable[BookingItemStatus]) -> BookingStatus:
    statuses = list(item_statuses)
    if not statuses:
        return BookingStatus.PENDING
    if any(s in (BookingItemStatus.PENDING, BookingItemStatus.PENDING_RECONCILIATION) for s in statuses):
        return BookingStatus.PENDING
    if all(s == BookingItemStatus.COMPLETED for s in statuses):
        return BookingStatus.COMPLETED
    live = [s for s in statuses if s in (BookingItemStatus.CONFIRMED, BookingItemStatus.COMPLETED)]
    if live and BookingItemStatus.CONFIRMED not in live and BookingItemStatus.BOOKING_FAILED not in statuses:
        # travelled what was kept; canceled parts don't hold the booking open
        return BookingStatus.COMPLETED
    if len(live) == len(statuses):
        return BookingStatus.CONFIRMED
    if live:
        return BookingStatus.PARTIALLY_CONFIRMED
    if any(s == BookingItemStatus.BOOKING_FAILED for s in statuses):
        return BookingStatus.FAILED
    return BookingStatus.CANCELED
