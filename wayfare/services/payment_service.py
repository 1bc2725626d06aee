"""Owns every PaymentTransaction change.

Authorize and capture of one checkout share a single idempotency key, so a
retried checkout can never place a second hold or charge twice. Methods flush
but never commit; the caller decides the transaction boundary.
"""
import logging
import uuid

from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.core.errors import (
    IdempotencyConflictError,
    PaymentDeclinedError,
    PaymentUnavailableError,
    RefundExceedsCaptureError,
)
from wayfare.models.checkout_session import CheckoutSession
from wayfare.models.enums import PaymentStatus
from wayfare.models.payment import PaymentRefund, PaymentTransaction
from wayfare.services.audit_service import log_audit
from wayfare.services.idempotency import payment_key
from wayfare.services.payment_gateway import (
    GatewayDeclined,
    GatewayError,
    GatewayTimeout,
    GatewayUnavailable,
    PaymentGateway,
)
from wayfare.services.retry import call_with_retries
from wayfare.services.state_machine import assert_transition, transition

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED)

# event type -> (allowed prior states, target)
GATEWAY_EVENT_TRANSITIONS = {
    "payment.authorized": ((PaymentStatus.CREATED,), PaymentStatus.AUTHORIZED),
    "payment.captured": ((PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURE_FAILED), PaymentStatus.CAPTURED),
    "payment.capture_failed": ((PaymentStatus.AUTHORIZED,), PaymentStatus.CAPTURE_FAILED),
    "payment.voided": ((PaymentStatus.CREATED, PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURE_FAILED), PaymentStatus.CANCELED),
    "payment.refunded": (REFUNDABLE_STATUSES, None),
}


class PaymentService:
    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway

    def get_by_key(self, key: str) -> PaymentTransaction | None:
        return self.db.query(PaymentTransaction).filter(PaymentTransaction.idempotency_key == key).first()

    def get_for_session(self, session_id: str) -> PaymentTransaction | None:
        return self.get_by_key(payment_key(session_id))

    def get_by_intent(self, intent_id: str) -> PaymentTransaction | None:
        return self.db.query(PaymentTransaction).filter(PaymentTransaction.gateway_intent_id == intent_id).first()

    def authorize(self, session: CheckoutSession, payment_token: str | None = None) -> PaymentTransaction:
        key = payment_key(session.id)
        txn = self.get_by_key(key)
        if txn is not None:
            if txn.amount_cents != session.total_cents or txn.currency != session.currency:
                raise IdempotencyConflictError(
                    "Payment key reused with a different amount",
                    idempotency_key=key,
                )
            if txn.status != PaymentStatus.CREATED:
                logger.info("payment_authorize_replayed", extra={"payment_id": txn.id, "status": txn.status.value})
                return txn
        else:
            txn = PaymentTransaction(
                id=str(uuid.uuid4()),
                checkout_session_id=session.id,
                amount_cents=session.total_cents,
                currency=session.currency,
                status=PaymentStatus.CREATED,
                idempotency_key=key,
                refunded_cents=0,
            )
            self.db.add(txn)
            self.db.flush()
        session.payment_transaction_id = txn.id

        try:
            auth = call_with_retries(
                lambda: self.gateway.authorize(txn.amount_cents, txn.currency, key, payment_token),
                retry_on=(GatewayUnavailable,),
                operation="payment.authorize",
            )
        except GatewayDeclined as e:
            self._record_failure(txn, "declined", str(e))
            transition(txn, PaymentStatus.CANCELED)
            raise PaymentDeclinedError(str(e) or "Payment was declined") from e
        except GatewayUnavailable as e:
            self._record_failure(txn, "unavailable", str(e))
            transition(txn, PaymentStatus.CANCELED)
            raise PaymentUnavailableError("Payment service is temporarily unavailable") from e
        except GatewayTimeout as e:
            # Hold state unknown; left in created and expires at the gateway.
            self._record_failure(txn, "timeout", str(e))
            raise PaymentUnavailableError("Payment authorization timed out") from e

        txn.gateway_intent_id = auth.intent_id
        txn.error_code = None
        txn.error_message = None
        txn.authorized_at = clock.now()
        transition(txn, PaymentStatus.AUTHORIZED)
        log_audit(self.db, "saga", "payment.authorized", "payment", txn.id, {"amount_cents": txn.amount_cents, "intent_id": auth.intent_id})
        self.db.flush()
        return txn

    def capture(self, txn: PaymentTransaction) -> PaymentTransaction:
        """Capture the full held amount. Gateway errors propagate after recording capture_failed."""
        if txn.status in (PaymentStatus.CAPTURED, *REFUNDABLE_STATUSES, PaymentStatus.REFUNDED):
            return txn
        assert_transition(txn.status, PaymentStatus.CAPTURED)
        try:
            call_with_retries(
                lambda: self.gateway.capture(txn.gateway_intent_id, txn.amount_cents, txn.currency, txn.idempotency_key),
                retry_on=(GatewayUnavailable,),
                operation="payment.capture",
            )
        except GatewayError as e:
            self._record_failure(txn, "capture_failed", str(e))
            if txn.status != PaymentStatus.CAPTURE_FAILED:
                transition(txn, PaymentStatus.CAPTURE_FAILED)
            log_audit(self.db, "saga", "payment.capture_failed", "payment", txn.id, {"error": str(e)})
            self.db.flush()
            raise
        self.mark_captured(txn)
        return txn

    def mark_captured(self, txn: PaymentTransaction) -> None:
        transition(txn, PaymentStatus.CAPTURED)
        txn.captured_at = clock.now()
        txn.error_code = None
        txn.error_message = None
        log_audit(self.db, "saga", "payment.captured", "payment", txn.id, {"amount_cents": txn.amount_cents})
        self.db.flush()

    def void(self, txn: PaymentTransaction | None, reason: str) -> bool:
        """Release the hold. Best effort: a failed void is logged and audited, never raised."""
        if txn is None or txn.status == PaymentStatus.CANCELED:
            return True
        if txn.status == PaymentStatus.CREATED and not txn.gateway_intent_id:
            if txn.error_code == "timeout":
                # Nothing to reverse against; the hold lapses at the gateway.
                return False
            transition(txn, PaymentStatus.CANCELED)
            return True
        assert_transition(txn.status, PaymentStatus.CANCELED)
        try:
            call_with_retries(
                lambda: self.gateway.void(txn.gateway_intent_id, txn.amount_cents, txn.currency),
                retry_on=(GatewayUnavailable,),
                operation="payment.void",
            )
        except GatewayError as e:
            logger.error("payment_void_failed", extra={"payment_id": txn.id, "reason": reason, "error": str(e)})
            self._record_failure(txn, "void_failed", str(e))
            log_audit(self.db, "saga", "payment.void_failed", "payment", txn.id, {"reason": reason, "error": str(e)})
            self.db.flush()
            return False
        transition(txn, PaymentStatus.CANCELED)
        log_audit(self.db, "saga", "payment.voided", "payment", txn.id, {"reason": reason})
        self.db.flush()
        return True

    def refund(self, txn: PaymentTransaction, amount_cents: int, key: str, booking_item_id: str | None = None) -> PaymentRefund:
        existing = self.db.query(PaymentRefund).filter(PaymentRefund.idempotency_key == key).first()
        if existing is not None:
            return existing
        if amount_cents <= 0:
            raise ValueError("refund amount must be positive")
        target = PaymentStatus.REFUNDED if amount_cents >= self.refundable_balance(txn) else PaymentStatus.PARTIALLY_REFUNDED
        assert_transition(txn.status, target)
        if amount_cents > self.refundable_balance(txn):
            raise RefundExceedsCaptureError(
                "Refund exceeds the captured balance",
                requested_cents=amount_cents,
                available_cents=self.refundable_balance(txn),
            )

        refund_id = call_with_retries(
            lambda: self.gateway.refund(txn.gateway_intent_id, amount_cents, txn.currency, key),
            retry_on=(GatewayUnavailable,),
            operation="payment.refund",
        )
        refund = PaymentRefund(
            id=str(uuid.uuid4()),
            payment_transaction_id=txn.id,
            booking_item_id=booking_item_id,
            idempotency_key=key,
            gateway_refund_id=refund_id or "",
            amount_cents=amount_cents,
            currency=txn.currency,
        )
        self.db.add(refund)
        self._apply_refund(txn, amount_cents)
        log_audit(self.db, "system", "payment.refunded", "payment", txn.id, {"amount_cents": amount_cents, "idempotency_key": key})
        self.db.flush()
        return refund

    def refundable_balance(self, txn: PaymentTransaction) -> int:
        return int(txn.amount_cents) - int(txn.refunded_cents or 0)

    def _apply_refund(self, txn: PaymentTransaction, amount_cents: int) -> None:
        txn.refunded_cents = int(txn.refunded_cents or 0) + amount_cents
        if txn.refunded_cents >= txn.amount_cents:
            transition(txn, PaymentStatus.REFUNDED)
        else:
            transition(txn, PaymentStatus.PARTIALLY_REFUNDED)

    def apply_gateway_event(self, event_type: str, intent_id: str, data: dict | None = None) -> PaymentTransaction | None:
        """Apply an asynchronous gateway notification.

        Only moves the transaction forward from the state the event expects;
        anything else (late, out of order, unknown) is logged and ignored.
        Returns the transaction when it changed.
        """
        data = data or {}
        rule = GATEWAY_EVENT_TRANSITIONS.get(event_type)
        if rule is None:
            logger.info("gateway_event_ignored", extra={"event_type": event_type, "reason": "unknown_type"})
            return None
        txn = self.get_by_intent(intent_id)
        if txn is None:
            logger.warning("gateway_event_ignored", extra={"event_type": event_type, "intent_id": intent_id, "reason": "unknown_intent"})
            return None
        expected, target = rule
        if txn.status not in expected:
            logger.info(
                "gateway_event_ignored",
                extra={"event_type": event_type, "payment_id": txn.id, "status": txn.status.value, "reason": "unexpected_state"},
            )
            return None

        if event_type == "payment.refunded":
            refund_id = str(data.get("refund_id") or "")
            amount = int(data.get("amount_cents") or 0)
            if not refund_id or amount <= 0:
                return None
            known = self.db.query(PaymentRefund).filter(PaymentRefund.gateway_refund_id == refund_id).first()
            if known is not None:
                return None
            amount = min(amount, self.refundable_balance(txn))
            self.db.add(PaymentRefund(
                id=str(uuid.uuid4()),
                payment_transaction_id=txn.id,
                idempotency_key=f"gateway:{refund_id}",
                gateway_refund_id=refund_id,
                amount_cents=amount,
                currency=txn.currency,
            ))
            self._apply_refund(txn, amount)
        elif target == PaymentStatus.CAPTURED:
            self.mark_captured(txn)
        else:
            transition(txn, target)
            if target == PaymentStatus.AUTHORIZED:
                txn.authorized_at = clock.now()
                txn.error_code = None
            elif target == PaymentStatus.CAPTURE_FAILED:
                txn.error_code = "capture_failed"
        log_audit(self.db, "gateway", f"webhook.{event_type}", "payment", txn.id, {"intent_id": intent_id})
        self.db.flush()
        return txn

    def _record_failure(self, txn: PaymentTransaction, code: str, message: str) -> None:
        txn.error_code = code
        txn.error_message = message[:2000]
        logger.warning("payment_operation_failed", extra={"payment_id": txn.id, "error_code": code})
