"""Error taxonomy for the checkout engine.

Every error carries a machine ``code`` and the user-facing ``outcome`` the
API reports. Outcomes are the small closed set a client knows how to recover
from: reconfirm a price, fix traveler fields, retry the payment, pick another
item, or retry later.
"""
from __future__ import annotations

from dataclasses import dataclass

OUTCOME_PRICE_CHANGED = "price_changed"
OUTCOME_TRAVELER_DETAILS_INVALID = "traveler_details_invalid"
OUTCOME_PAYMENT_DECLINED = "payment_declined"
OUTCOME_BOOKING_UNAVAILABLE = "booking_unavailable"
OUTCOME_TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_CONFLICT = "conflict"


class WayfareError(Exception):
    code = "error"
    outcome = OUTCOME_CONFLICT
    http_status = 409

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "outcome": self.outcome, "message": self.message, **self.details}


class NotFoundError(WayfareError):
    code = "not_found"
    outcome = OUTCOME_NOT_FOUND
    http_status = 404


class InvalidTransitionError(WayfareError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Invalid {entity} transition: {current} -> {target}", entity=entity, current=current, target=target)
        self.current = current
        self.target = target


# Cart

class CartError(WayfareError):
    code = "cart_error"


class CartNotOpenError(CartError):
    code = "cart_not_open"


class CartExpiredError(CartError):
    code = "cart_expired"


class CartFullError(CartError):
    code = "cart_full"


class CartEmptyError(CartError):
    code = "cart_empty"


class CartLockedError(CartError):
    code = "cart_locked"


class InvalidCartItemError(CartError):
    code = "invalid_cart_item"
    http_status = 422


class OfferExpiredError(CartError):
    code = "offer_expired"
    outcome = OUTCOME_BOOKING_UNAVAILABLE


# Checkout

@dataclass
class FieldError:
    field: str
    message: str
    code: str = "invalid"

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message, "code": self.code}


class ValidationError(WayfareError):
    code = "validation_error"
    outcome = OUTCOME_TRAVELER_DETAILS_INVALID
    http_status = 422

    def __init__(self, errors: list[FieldError], message: str = "Traveler details are invalid"):
        super().__init__(message)
        self.errors = errors

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = [e.to_dict() for e in self.errors]
        return data


class SessionExpiredError(WayfareError):
    code = "session_expired"
    outcome = OUTCOME_PRICE_CHANGED
    http_status = 410


class PriceChangedError(WayfareError):
    code = "price_changed"
    outcome = OUTCOME_PRICE_CHANGED

    def __init__(self, deltas: list, message: str = "Prices changed, please reconfirm"):
        super().__init__(message)
        self.deltas = deltas

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["deltas"] = [d.to_dict() for d in self.deltas]
        return data


class PriceChangedTwiceError(PriceChangedError):
    code = "price_changed_twice"
    outcome = OUTCOME_BOOKING_UNAVAILABLE

    def __init__(self, deltas: list):
        super().__init__(deltas, "Prices changed again after reconfirmation")


class OfferUnavailableError(WayfareError):
    code = "offer_unavailable"
    outcome = OUTCOME_BOOKING_UNAVAILABLE

    def __init__(self, item_ids: list[str]):
        super().__init__("One or more offers are no longer available", item_ids=item_ids)
        self.item_ids = item_ids


# Payment / booking saga

class PaymentDeclinedError(WayfareError):
    code = "payment_declined"
    outcome = OUTCOME_PAYMENT_DECLINED
    http_status = 402


class PaymentUnavailableError(WayfareError):
    code = "payment_unavailable"
    outcome = OUTCOME_TEMPORARILY_UNAVAILABLE
    http_status = 503


class IdempotencyConflictError(WayfareError):
    code = "idempotency_conflict"


class RefundExceedsCaptureError(WayfareError):
    code = "refund_exceeds_capture"


class BookingUnavailableError(WayfareError):
    code = "booking_unavailable"
    outcome = OUTCOME_BOOKING_UNAVAILABLE


class ProviderTemporarilyUnavailableError(WayfareError):
    code = "provider_unavailable"
    outcome = OUTCOME_TEMPORARILY_UNAVAILABLE
    http_status = 503


class CaptureFailedError(WayfareError):
    """Capture failed after every item confirmed; needs billing recovery.

    The travel booking stands. Callers report the confirmed booking to the
    customer and leave the payment to the recovery job.
    """

    code = "capture_failed"
    outcome = OUTCOME_TEMPORARILY_UNAVAILABLE

    def __init__(self, booking_id: str, transaction_id: str, reason: str = ""):
        super().__init__(f"Capture failed for booking {booking_id}: {reason}", booking_id=booking_id)
        self.booking_id = booking_id
        self.transaction_id = transaction_id
        self.reason = reason


# Webhooks

class DuplicateEventError(WayfareError):
    """Event was already processed; callers should skip it."""

    code = "duplicate_event"
    http_status = 200

    def __init__(self, external_event_id: str):
        super().__init__(f"Event {external_event_id} already processed")
        self.external_event_id = external_event_id
