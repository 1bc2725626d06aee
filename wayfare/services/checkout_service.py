"""Checkout session: from a locked cart to a payable, price-confirmed order.

Flow::

    initialize -> verify_prices -> ready_for_payment
                       |
                       +-> price_changed -> acknowledge -> awaiting_traveler_details
                                                               |
    submit_traveler_details  <---------------------------------+

A session expires at the earlier of its own TTL and the first offer expiry,
so it can never be paid for with a stale offer.
"""
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.core.config import settings
from wayfare.core.errors import (
    CartEmptyError,
    CartExpiredError,
    CartLockedError,
    CartNotOpenError,
    InvalidTransitionError,
    NotFoundError,
    OfferExpiredError,
    OfferUnavailableError,
    PriceChangedTwiceError,
    ProviderTemporarilyUnavailableError,
    SessionExpiredError,
    ValidationError,
)
from wayfare.core.logging import update_log_context
from wayfare.models.cart import Cart, CartItem
from wayfare.models.checkout_session import CheckoutSession
from wayfare.models.enums import CartItemStatus, CartStatus, CheckoutStatus
from wayfare.schemas.checkout import ContactIn, TravelerIn
from wayfare.services import cart_service
from wayfare.services.audit_service import log_audit
from wayfare.services.payment_service import PaymentService
from wayfare.services.providers import ProviderCatalog, ProviderUnavailable
from wayfare.services.retry import call_with_retries
from wayfare.services.state_machine import (
    CHECKOUT_IN_FLIGHT,
    CHECKOUT_TERMINAL,
    assert_transition,
    transition,
)
from wayfare.services.traveler_validation import validate_travelers

logger = logging.getLogger(__name__)

TRAVELER_STATES = (CheckoutStatus.AWAITING_TRAVELER_DETAILS, CheckoutStatus.READY_FOR_PAYMENT)
PRICE_CHECK_STATES = (
    CheckoutStatus.INITIALIZED,
    CheckoutStatus.AWAITING_TRAVELER_DETAILS,
    CheckoutStatus.READY_FOR_PAYMENT,
)


@dataclass
class PriceDelta:
    cart_item_id: str
    offer_id: str
    original_cents: int
    current_cents: int | None
    difference_cents: int

    def to_dict(self) -> dict:
        return asdict(self)


def snapshot_entry(item: CartItem) -> dict:
    return {
        "cart_item_id": item.id,
        "item_type": item.item_type.value,
        "provider_id": item.provider_id,
        "offer_id": item.offer_id,
        "title": item.title,
        "price_cents": int(item.price_cents),
        "currency": item.currency,
        "quantity": int(item.quantity),
        "occupants": int(item.occupants or 1),
        "requires_document": bool(item.requires_document),
        "offer_expires_at": clock.as_utc(item.offer_expires_at).isoformat(),
        "schedule": dict(item.schedule or {}),
        "cancellation_policy": dict(item.cancellation_policy or {}),
    }


def snapshot_total(entries: list[dict]) -> int:
    return sum(int(e["price_cents"]) * int(e["quantity"]) for e in entries)


def price_tolerance_cents(original_cents: int) -> float:
    return max(float(settings.PRICE_TOLERANCE_CENTS), settings.PRICE_TOLERANCE_PERCENT * original_cents / 100.0)


def earliest_offer_expiry(entries: list[dict]):
    expiries = [clock.parse_iso(e.get("offer_expires_at")) for e in entries]
    expiries = [e for e in expiries if e is not None]
    return min(expiries) if expiries else None


class CheckoutService:
    def __init__(self, db: Session, catalog: ProviderCatalog, payments: PaymentService | None = None):
        self.db = db
        self.catalog = catalog
        self.payments = payments

    # lookup

    def get_session(self, session_id: str, user_id: str | None = None, for_update: bool = False) -> CheckoutSession:
        stmt = select(CheckoutSession).where(CheckoutSession.id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        session = self.db.execute(stmt).scalar_one_or_none()
        if not session or (user_id is not None and session.user_id != user_id):
            raise NotFoundError("Checkout session not found", session_id=session_id)
        update_log_context(checkout_session_id=session.id)
        return session

    def _cart(self, session: CheckoutSession) -> Cart | None:
        return self.db.get(Cart, session.cart_id)

    def active_session_for_cart(self, cart_id: str) -> CheckoutSession | None:
        return (
            self.db.query(CheckoutSession)
            .filter(
                CheckoutSession.cart_id == cart_id,
                CheckoutSession.status.notin_(list(CHECKOUT_TERMINAL)),
            )
            .first()
        )

    # operations

    def initialize(self, cart_id: str, user_id: str) -> CheckoutSession:
        cart = cart_service.get_cart(self.db, cart_id, user_id, for_update=True)
        if cart.status == CartStatus.LOCKED or self.active_session_for_cart(cart.id) is not None:
            raise CartLockedError("A checkout is already in progress for this cart", cart_id=cart.id)
        if cart.status != CartStatus.OPEN:
            raise CartNotOpenError(f"Cart is {cart.status.value}", cart_id=cart.id, status=cart.status.value)
        if cart_service.is_expired(cart):
            raise CartExpiredError("Cart has expired", cart_id=cart.id)
        items = cart.active_items
        if not items:
            raise CartEmptyError("Cart has no items", cart_id=cart.id)

        now = clock.now()
        stale = [i.id for i in items if clock.as_utc(i.offer_expires_at) <= now]
        if stale:
            raise OfferExpiredError("One or more offers have expired", item_ids=stale)

        entries = [snapshot_entry(i) for i in items]
        expires_at = min(now + timedelta(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES), earliest_offer_expiry(entries))
        session = CheckoutSession(
            id=str(uuid.uuid4()),
            cart_id=cart.id,
            user_id=user_id,
            status=CheckoutStatus.INITIALIZED,
            price_snapshot=entries,
            total_cents=snapshot_total(entries),
            currency=cart.currency,
            price_change_count=0,
            pending_price_deltas=[],
            travelers=[],
            contact={},
            expires_at=expires_at,
            created_at=now,
        )
        self.db.add(session)
        cart_service.lock(cart)
        log_audit(self.db, user_id, "checkout.initialized", "checkout_session", session.id, {"cart_id": cart.id, "total_cents": session.total_cents})
        self.db.commit()
        update_log_context(checkout_session_id=session.id)
        logger.info("checkout_initialized", extra={"cart_id": cart.id, "total_cents": session.total_cents, "item_count": len(entries)})
        return session

    def compare_prices(self, session: CheckoutSession) -> tuple[list[PriceDelta], list[str]]:
        """Return (price deltas beyond tolerance, unavailable cart item ids)."""
        deltas: list[PriceDelta] = []
        unavailable: list[str] = []
        for entry in session.price_snapshot:
            try:
                current = call_with_retries(
                    lambda: self.catalog.get_current_price(entry["offer_id"]),
                    retry_on=(ProviderUnavailable,),
                    operation="catalog.get_current_price",
                )
            except ProviderUnavailable as e:
                raise ProviderTemporarilyUnavailableError("Price check is temporarily unavailable") from e
            if current is None:
                unavailable.append(entry["cart_item_id"])
                continue
            original = int(entry["price_cents"])
            diff = int(current) - original
            if abs(diff) > price_tolerance_cents(original):
                deltas.append(PriceDelta(entry["cart_item_id"], entry["offer_id"], original, int(current), diff))
        return deltas, unavailable

    def verify_prices(self, session_id: str, user_id: str | None = None) -> CheckoutSession:
        session = self.get_session(session_id, user_id, for_update=True)
        self._ensure_live(session)
        if session.status not in PRICE_CHECK_STATES:
            raise InvalidTransitionError("checkout_session", session.status.value, CheckoutStatus.PRICE_VERIFYING.value)
        self.apply_price_check(session)
        self.db.commit()
        return session

    def apply_price_check(self, session: CheckoutSession) -> list[PriceDelta]:
        """Run the catalog comparison and move the session accordingly.

        Fails the session and commits before raising OfferUnavailableError or
        PriceChangedTwiceError; otherwise the caller commits.
        """
        deltas, unavailable = self.compare_prices(session)
        if session.status == CheckoutStatus.INITIALIZED:
            transition(session, CheckoutStatus.PRICE_VERIFYING)

        if unavailable:
            self.fail(session, OfferUnavailableError.code, "One or more offers are no longer available")
            self.db.commit()
            raise OfferUnavailableError(unavailable)

        if deltas:
            if session.price_change_count >= settings.PRICE_CHANGE_MAX_RETRIES:
                self.fail(session, PriceChangedTwiceError.code, "Prices changed again after reconfirmation")
                self.db.commit()
                raise PriceChangedTwiceError(deltas)
            session.price_change_count = int(session.price_change_count or 0) + 1
            session.pending_price_deltas = [d.to_dict() for d in deltas]
            transition(session, CheckoutStatus.PRICE_CHANGED)
            logger.info("checkout_price_changed", extra={"changes": len(deltas), "price_change_count": session.price_change_count})
            return deltas

        session.pending_price_deltas = []
        if session.status == CheckoutStatus.PRICE_VERIFYING:
            transition(session, CheckoutStatus.READY_FOR_PAYMENT)
        return []

    def acknowledge_price_change(self, session_id: str, user_id: str | None = None) -> CheckoutSession:
        session = self.get_session(session_id, user_id, for_update=True)
        self._ensure_live(session)
        assert_transition(session.status, CheckoutStatus.AWAITING_TRAVELER_DETAILS)

        new_prices = {d["cart_item_id"]: int(d["current_cents"]) for d in session.pending_price_deltas or []}
        entries = []
        for entry in session.price_snapshot:
            entry = dict(entry)
            if entry["cart_item_id"] in new_prices:
                entry["price_cents"] = new_prices[entry["cart_item_id"]]
            entries.append(entry)
        session.price_snapshot = entries
        session.total_cents = snapshot_total(entries)
        session.pending_price_deltas = []

        for item_id, cents in new_prices.items():
            item = self.db.get(CartItem, item_id)
            if item is not None:
                item.price_cents = cents
                item.status = CartItemStatus.ACTIVE

        transition(session, CheckoutStatus.AWAITING_TRAVELER_DETAILS)
        log_audit(self.db, session.user_id, "checkout.price_acknowledged", "checkout_session", session.id, {"total_cents": session.total_cents})
        self.db.commit()
        return session

    def submit_traveler_details(self, session_id: str, travelers: list[TravelerIn], contact: ContactIn, user_id: str | None = None) -> CheckoutSession:
        session = self.get_session(session_id, user_id, for_update=True)
        self._ensure_live(session)
        if session.status not in TRAVELER_STATES:
            raise InvalidTransitionError("checkout_session", session.status.value, CheckoutStatus.READY_FOR_PAYMENT.value)

        errors = validate_travelers(session.price_snapshot, travelers, contact, today=clock.now().date())
        if errors:
            raise ValidationError(errors)

        session.travelers = [t.model_dump(mode="json") for t in travelers]
        session.contact = contact.model_dump(mode="json")
        if session.status == CheckoutStatus.AWAITING_TRAVELER_DETAILS:
            transition(session, CheckoutStatus.READY_FOR_PAYMENT)
        self.db.commit()
        logger.info("checkout_travelers_submitted", extra={"traveler_count": len(travelers)})
        return session

    def expire(self, session_id: str) -> CheckoutSession:
        session = self.get_session(session_id, for_update=True)
        if session.status in CHECKOUT_TERMINAL:
            return session
        if session.status in CHECKOUT_IN_FLIGHT:
            raise InvalidTransitionError("checkout_session", session.status.value, CheckoutStatus.EXPIRED.value)
        self._expire(session)
        self.db.commit()
        return session

    def expire_stale_sessions(self, limit: int = 200) -> int:
        candidates = (
            self.db.query(CheckoutSession)
            .filter(
                CheckoutSession.status.notin_(list(CHECKOUT_TERMINAL | CHECKOUT_IN_FLIGHT)),
                CheckoutSession.expires_at <= clock.now(),
            )
            .order_by(CheckoutSession.expires_at.asc())
            .limit(limit)
            .all()
        )
        for session in candidates:
            self._expire(session)
        if candidates:
            self.db.commit()
            logger.info("checkout_sessions_expired", extra={"count": len(candidates)})
        return len(candidates)

    # helpers shared with the booking coordinator

    def is_past_expiry(self, session: CheckoutSession) -> bool:
        if clock.as_utc(session.expires_at) <= clock.now():
            return True
        first_offer_expiry = earliest_offer_expiry(session.price_snapshot)
        return first_offer_expiry is not None and first_offer_expiry <= clock.now()

    def _ensure_live(self, session: CheckoutSession) -> None:
        if session.status == CheckoutStatus.EXPIRED:
            raise SessionExpiredError("Checkout session has expired", session_id=session.id)
        if session.status not in CHECKOUT_TERMINAL and session.status not in CHECKOUT_IN_FLIGHT and self.is_past_expiry(session):
            self._expire(session)
            self.db.commit()
            raise SessionExpiredError("Checkout session has expired", session_id=session.id)

    def _expire(self, session: CheckoutSession) -> None:
        if session.status == CheckoutStatus.AUTHORIZED and self.payments is not None:
            self.payments.void(self.payments.get_for_session(session.id), reason="session_expired")
        transition(session, CheckoutStatus.EXPIRED)
        session.error_code = "expired"
        session.error_message = "Checkout session expired"
        cart = self._cart(session)
        if cart is not None:
            cart_service.unlock(cart)
        log_audit(self.db, "system", "checkout.expired", "checkout_session", session.id, {})
        logger.info("checkout_expired", extra={"checkout_session_id": session.id})

    def fail(self, session: CheckoutSession, code: str, message: str) -> None:
        transition(session, CheckoutStatus.FAILED)
        session.error_code = code
        session.error_message = message
        cart = self._cart(session)
        if cart is not None:
            cart_service.unlock(cart)
        log_audit(self.db, "system", "checkout.failed", "checkout_session", session.id, {"error_code": code})
        logger.info("checkout_failed", extra={"error_code": code})

    def complete(self, session: CheckoutSession) -> None:
        transition(session, CheckoutStatus.COMPLETED)
        session.completed_at = clock.now()
        session.error_code = None
        session.error_message = None
        cart = self._cart(session)
        if cart is not None:
            cart_service.convert(cart)
