"""Authorize -> book -> capture saga for one checkout session.

The customer is never charged for a booking that failed and never left with
a confirmed booking that was not paid for:

1. authorize the full amount (a hold, no money moves)
2. book each item with its provider, in order
3. capture only once every item is confirmed

A provider decline rolls back the items already booked in this saga (in
reverse order) and voids the hold. A provider timeout is not a failure: the
item is parked for reconciliation and the saga halts until
``BookingLifecycleService.reconcile_pending_items`` calls :meth:`resume`.
Every state change is committed before the next external call so a crash
can always be resumed with the same idempotency keys.
"""
import logging
import random
import string
import uuid

from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.core.errors import (
    BookingUnavailableError,
    CaptureFailedError,
    FieldError,
    IdempotencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentUnavailableError,
    PriceChangedError,
    ProviderTemporarilyUnavailableError,
    ValidationError,
)
from wayfare.core.logging import update_log_context
from wayfare.models.booking import Booking, BookingItem
from wayfare.models.checkout_session import CheckoutSession
from wayfare.models.enums import (
    BookingItemStatus,
    BookingStatus,
    CheckoutStatus,
    ItemType,
    PaymentStatus,
)
from wayfare.models.payment import PaymentTransaction
from wayfare.services.audit_service import log_audit
from wayfare.services.checkout_service import CheckoutService
from wayfare.services.idempotency import provider_booking_key
from wayfare.services.notifications import NotificationSender
from wayfare.services.payment_gateway import GatewayError
from wayfare.services.payment_service import PaymentService
from wayfare.services.providers import (
    ProviderError,
    ProviderRegistry,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
)
from wayfare.services.retry import call_with_retries
from wayfare.services.state_machine import refresh_booking_status, transition
from wayfare.services.traveler_validation import assign_travelers

logger = logging.getLogger(__name__)


def make_booking_ref() -> str:
    return "WF-" + "".join(random.choices(string.ascii_uppercase + string.digits, k=6))


class BookingCoordinator:
    def __init__(
        self,
        db: Session,
        checkout: CheckoutService,
        payments: PaymentService,
        providers: ProviderRegistry,
        notifier: NotificationSender,
    ):
        self.db = db
        self.checkout = checkout
        self.payments = payments
        self.providers = providers
        self.notifier = notifier

    def booking_for_session(self, session_id: str) -> Booking | None:
        return self.db.query(Booking).filter(Booking.checkout_session_id == session_id).first()

    def run(self, session_id: str, user_id: str | None = None, payment_token: str | None = None) -> Booking:
        session = self.checkout.get_session(session_id, user_id, for_update=True)

        # Replays of a finished or halted saga return what exists.
        if session.status in (CheckoutStatus.COMPLETED, CheckoutStatus.BOOKING):
            booking = self.booking_for_session(session.id)
            if booking is not None:
                return booking

        self.checkout._ensure_live(session)
        if session.status != CheckoutStatus.READY_FOR_PAYMENT:
            raise InvalidTransitionError("checkout_session", session.status.value, CheckoutStatus.AUTHORIZING.value)
        if not session.travelers:
            raise ValidationError([FieldError("travelers", "Traveler details are required", "required")])

        deltas = self.checkout.apply_price_check(session)
        if deltas:
            self.db.commit()
            raise PriceChangedError(deltas)

        transition(session, CheckoutStatus.AUTHORIZING)
        self.db.commit()

        try:
            txn = self.payments.authorize(session, payment_token)
        except (PaymentDeclinedError, PaymentUnavailableError, IdempotencyConflictError) as e:
            self.checkout.fail(session, e.code, e.message)
            self.db.commit()
            raise

        transition(session, CheckoutStatus.AUTHORIZED)
        booking = self._create_booking(session, txn)
        transition(session, CheckoutStatus.BOOKING)
        self.db.commit()
        logger.info("saga_booking_started", extra={"booking_id": booking.id, "item_count": len(booking.items)})
        return self._book_items(session, booking, txn)

    def _create_booking(self, session: CheckoutSession, txn: PaymentTransaction) -> Booking:
        for _ in range(10):
            ref = make_booking_ref()
            if not self.db.query(Booking).filter(Booking.booking_ref == ref).first():
                break
        else:
            raise RuntimeError("could not allocate booking reference")

        booking = Booking(
            id=str(uuid.uuid4()),
            booking_ref=ref,
            checkout_session_id=session.id,
            user_id=session.user_id,
            status=BookingStatus.PENDING,
            payment_transaction_id=txn.id,
            total_cents=session.total_cents,
            currency=session.currency,
            travelers=list(session.travelers or []),
            contact=dict(session.contact or {}),
        )
        for index, entry in enumerate(session.price_snapshot):
            booking.items.append(BookingItem(
                id=str(uuid.uuid4()),
                position=index,
                cart_item_id=entry.get("cart_item_id"),
                item_type=ItemType(entry["item_type"]),
                provider_id=entry["provider_id"],
                offer_id=entry["offer_id"],
                title=entry.get("title") or "",
                quantity=int(entry["quantity"]),
                amount_cents=int(entry["price_cents"]) * int(entry["quantity"]),
                currency=session.currency,
                status=BookingItemStatus.PENDING,
                provider_idempotency_key=provider_booking_key(session.id, index),
                traveler_assignments=assign_travelers(entry, len(booking.travelers)),
                schedule_snapshot=dict(entry.get("schedule") or {}),
                cancellation_policy=dict(entry.get("cancellation_policy") or {}),
                reconciliation_attempts=0,
                refunded_cents=0,
            ))
        self.db.add(booking)
        update_log_context(booking_id=booking.id)
        log_audit(self.db, "saga", "booking.created", "booking", booking.id, {"booking_ref": ref, "checkout_session_id": session.id})
        return booking

    def _provider_payload(self, booking: Booking, item: BookingItem) -> dict:
        travelers = booking.travelers or []
        return {
            "reference": booking.booking_ref,
            "offer_id": item.offer_id,
            "item_type": item.item_type.value,
            "quantity": item.quantity,
            "amount_cents": item.amount_cents,
            "currency": item.currency,
            "travelers": [travelers[i] for i in item.traveler_assignments or [] if i < len(travelers)],
            "contact": booking.contact or {},
        }

    def _book_items(self, session: CheckoutSession, booking: Booking, txn: PaymentTransaction) -> Booking:
        for item in booking.items:
            if item.status == BookingItemStatus.CONFIRMED:
                continue
            if item.status == BookingItemStatus.PENDING_RECONCILIATION:
                return booking
            if item.status != BookingItemStatus.PENDING:
                continue
            try:
                adapter = self.providers.get(item.provider_id)
                ref = call_with_retries(
                    lambda: adapter.book(self._provider_payload(booking, item), item.provider_idempotency_key),
                    retry_on=(ProviderUnavailable,),
                    operation="provider.book",
                )
            except ProviderTimeout as e:
                transition(item, BookingItemStatus.PENDING_RECONCILIATION)
                item.failure_reason = f"timeout: {e}"
                log_audit(self.db, "saga", "saga.item_pending_reconciliation", "booking_item", item.id, {"position": item.position})
                self.db.commit()
                logger.warning("saga_item_timeout", extra={"booking_item_id": item.id, "provider_id": item.provider_id})
                return booking
            except ProviderRejected as e:
                self._rollback(session, booking, txn, failed_item=item, reason=str(e), code=BookingUnavailableError.code)
                raise BookingUnavailableError(f"{item.title or item.item_type.value} could not be booked", booking_item_id=item.id) from e
            except ProviderUnavailable as e:
                self._rollback(session, booking, txn, failed_item=item, reason=str(e), code=ProviderTemporarilyUnavailableError.code)
                raise ProviderTemporarilyUnavailableError("Provider is temporarily unavailable", booking_item_id=item.id) from e

            item.provider_confirmation_ref = ref
            item.failure_reason = None
            transition(item, BookingItemStatus.CONFIRMED)
            log_audit(self.db, "saga", "saga.item_booked", "booking_item", item.id, {"position": item.position, "confirmation_ref": ref})
            self.db.commit()
            logger.info("saga_item_booked", extra={"booking_item_id": item.id, "position": item.position})
        return self._finalize(session, booking, txn)

    def _rollback(
        self,
        session: CheckoutSession,
        booking: Booking,
        txn: PaymentTransaction,
        failed_item: BookingItem | None,
        reason: str,
        code: str,
    ) -> None:
        """Undo this saga: cancel its confirmed items newest first, release the hold, fail everything.

        A failed compensation leaves its item confirmed and the hold in place.
        """
        logger.warning("saga_rollback_started", extra={"booking_id": booking.id, "reason": reason})
        if failed_item is not None:
            transition(failed_item, BookingItemStatus.BOOKING_FAILED)
            failed_item.failure_reason = reason[:2000]

        booked = [i for i in booking.items if i.status == BookingItemStatus.CONFIRMED]
        stranded = []
        for item in reversed(booked):
            try:
                adapter = self.providers.get(item.provider_id)
                call_with_retries(
                    lambda: adapter.cancel(item.provider_confirmation_ref),
                    retry_on=(ProviderUnavailable,),
                    operation="provider.cancel",
                )
            except ProviderError as e:
                logger.error("saga_compensation_failed", extra={"booking_item_id": item.id, "error": str(e)})
                item.failure_reason = f"compensation failed: {e}"[:2000]
                stranded.append(item)
                # hold stays until someone resolves the live provider booking
                log_audit(self.db, "saga", "saga.compensation_failed", "booking_item", item.id, {
                    "error": str(e),
                    "needs_attention": True,
                    "payment_hold_kept": True,
                    "payment_id": txn.id,
                })
                continue
            transition(item, BookingItemStatus.CANCELED)
            item.canceled_at = clock.now()
            log_audit(self.db, "saga", "saga.compensated", "booking_item", item.id, {"confirmation_ref": item.provider_confirmation_ref})

        for item in booking.items:
            if item.status == BookingItemStatus.PENDING:
                transition(item, BookingItemStatus.BOOKING_FAILED)
                item.failure_reason = "not attempted: booking rolled back"

        if stranded:
            logger.error("saga_rollback_hold_kept", extra={"booking_id": booking.id, "payment_id": txn.id, "stranded": len(stranded)})
        else:
            self.payments.void(txn, reason=code)
        refresh_booking_status(booking)
        self.checkout.fail(session, code, reason[:2000] or code)
        self.notifier.send(session.user_id, "booking_failed", {"booking_ref": booking.booking_ref, "reason": code})
        self.db.commit()

    def _finalize(self, session: CheckoutSession, booking: Booking, txn: PaymentTransaction) -> Booking:
        try:
            self.payments.capture(txn)
        except GatewayError as e:
            # Travel is booked; billing recovery takes over, nothing is rolled back.
            refresh_booking_status(booking)
            session.error_code = CaptureFailedError.code
            session.error_message = str(e)[:2000]
            self._notify_confirmed(booking)
            self.db.commit()
            logger.error("saga_capture_failed", extra={"booking_id": booking.id, "payment_id": txn.id})
            raise CaptureFailedError(booking.id, txn.id, str(e)) from e

        refresh_booking_status(booking)
        self.checkout.complete(session)
        self._notify_confirmed(booking)
        log_audit(self.db, "saga", "saga.completed", "booking", booking.id, {"booking_ref": booking.booking_ref})
        self.db.commit()
        logger.info("saga_completed", extra={"booking_id": booking.id})
        return booking

    def _notify_confirmed(self, booking: Booking) -> None:
        self.notifier.send(booking.user_id, "booking_confirmed", {
            "booking_id": booking.id,
            "booking_ref": booking.booking_ref,
            "total_cents": booking.total_cents,
            "currency": booking.currency,
        })

    def _load_saga(self, session_id: str) -> tuple[CheckoutSession, Booking, PaymentTransaction]:
        session = self.checkout.get_session(session_id, for_update=True)
        booking = self.booking_for_session(session.id)
        txn = self.payments.get_for_session(session.id)
        if booking is None or txn is None:
            raise NotFoundError("No booking saga for this session", session_id=session_id)
        update_log_context(booking_id=booking.id)
        return session, booking, txn

    def resume(self, session_id: str) -> Booking:
        """Continue a halted saga once its pending item has been reconciled."""
        session, booking, txn = self._load_saga(session_id)
        if session.status != CheckoutStatus.BOOKING:
            return booking
        statuses = [i.status for i in booking.items]
        if BookingItemStatus.PENDING_RECONCILIATION in statuses:
            return booking
        try:
            if BookingItemStatus.BOOKING_FAILED in statuses:
                self._rollback(session, booking, txn, failed_item=None, reason="provider booking could not be confirmed", code=BookingUnavailableError.code)
                return booking
            if booking.status != BookingStatus.PENDING:
                # already confirmed, capture pending
                return booking
            return self._book_items(session, booking, txn)
        except (BookingUnavailableError, ProviderTemporarilyUnavailableError, CaptureFailedError) as e:
            logger.warning("saga_resume_ended", extra={"booking_id": booking.id, "error_code": e.code})
            return booking

    def retry_capture(self, session_id: str) -> bool:
        session, booking, txn = self._load_saga(session_id)
        if session.status != CheckoutStatus.BOOKING or booking.status != BookingStatus.CONFIRMED:
            return False
        if txn.status != PaymentStatus.CAPTURE_FAILED:
            return False
        try:
            self.payments.capture(txn)
        except GatewayError:
            self.db.commit()
            return False
        self.checkout.complete(session)
        log_audit(self.db, "system", "saga.capture_recovered", "booking", booking.id, {})
        self.db.commit()
        return True

    def settle_captured(self, txn: PaymentTransaction, commit: bool = True) -> bool:
        """Complete a session whose capture was confirmed out of band (webhook).

        With ``commit=False`` the caller owns the transaction.
        """
        if txn.status != PaymentStatus.CAPTURED:
            return False
        session = self.db.get(CheckoutSession, txn.checkout_session_id)
        booking = self.booking_for_session(txn.checkout_session_id)
        if session is None or booking is None:
            return False
        if session.status != CheckoutStatus.BOOKING or booking.status != BookingStatus.CONFIRMED:
            return False
        self.checkout.complete(session)
        log_audit(self.db, "gateway", "saga.capture_settled", "booking", booking.id, {})
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        return True

    def retry_failed_captures(self, limit: int = 50) -> dict:
        txns = (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.status == PaymentStatus.CAPTURE_FAILED)
            .order_by(PaymentTransaction.updated_at.asc())
            .limit(limit)
            .all()
        )
        recovered = 0
        for txn in txns:
            if self.retry_capture(txn.checkout_session_id):
                recovered += 1
        return {"processed": len(txns), "recovered": recovered}
