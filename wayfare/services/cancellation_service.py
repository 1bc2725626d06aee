"""Cancellation and refund.

``calculate_refund`` is pure and works in integer cents: for every item
``refundable + penalty + non_refundable == amount`` exactly, with the penalty
rounded half-up. ``cancel_booking`` cancels item by item; each item is either
fully canceled (provider cancel, refund issued, status canceled) or left
untouched when its provider refuses or it has already started. An item
with no cancellation policy refunds nothing.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Literal

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from wayfare.core import clock
from wayfare.core.errors import InvalidTransitionError, NotFoundError, WayfareError
from wayfare.models.booking import Booking, BookingItem
from wayfare.models.enums import BookingItemStatus, BookingStatus
from wayfare.models.payment import PaymentTransaction
from wayfare.services.audit_service import log_audit
from wayfare.services.idempotency import refund_key
from wayfare.services.notifications import NotificationSender
from wayfare.services.payment_gateway import GatewayError
from wayfare.services.payment_service import REFUNDABLE_STATUSES, PaymentService
from wayfare.services.providers import ProviderError, ProviderRegistry, ProviderUnavailable
from wayfare.services.retry import call_with_retries
from wayfare.services.state_machine import refresh_booking_status, transition

logger = logging.getLogger(__name__)

START_TIME_FIELDS = ("departure_at", "check_in", "pickup_at", "start_at")


class PenaltyTier(BaseModel):
    """Penalty applied when canceling at least ``hours_before`` ahead.

    ``penalty_value`` is read per ``penalty_type``: a percent of the
    refundable base, a fixed amount in cents, or a number of nights.
    ``full`` ignores it.
    """

    hours_before: float
    penalty_type: Literal["percentage", "fixed", "nights", "full"] = "percentage"
    penalty_value: float = Field(default=0, ge=0)
    penalty_percent: float | None = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _percent_shorthand(self):
        if self.penalty_percent is not None and self.penalty_type == "percentage" and not self.penalty_value:
            self.penalty_value = self.penalty_percent
        if self.penalty_type == "percentage" and self.penalty_value > 100:
            raise ValueError("percentage penalty cannot exceed 100")
        return self


class CancellationPolicy(BaseModel):
    refundable: bool = True
    free_cancellation_hours: float = 0
    tiers: List[PenaltyTier] = Field(default_factory=list)
    non_refundable_fee_cents: int = Field(default=0, ge=0)

    @property
    def has_time_rules(self) -> bool:
        return bool(self.tiers) or self.free_cancellation_hours > 0


@dataclass
class ItemRefund:
    booking_item_id: str
    amount_cents: int
    refundable_cents: int
    penalty_cents: int
    non_refundable_cents: int
    policy_applied: str
    hours_before_departure: float | None = None


@dataclass
class RefundCalculation:
    booking_id: str
    currency: str
    calculated_at: datetime
    items: list[ItemRefund] = field(default_factory=list)

    @property
    def refundable_cents(self) -> int:
        return sum(i.refundable_cents for i in self.items)

    @property
    def penalty_cents(self) -> int:
        return sum(i.penalty_cents for i in self.items)

    @property
    def non_refundable_cents(self) -> int:
        return sum(i.non_refundable_cents for i in self.items)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["calculated_at"] = self.calculated_at.isoformat()
        data["refundable_cents"] = self.refundable_cents
        data["penalty_cents"] = self.penalty_cents
        data["non_refundable_cents"] = self.non_refundable_cents
        return data


@dataclass
class ItemCancellation:
    booking_item_id: str
    outcome: str  # canceled, already_canceled, not_cancelable, provider_failed
    refund_cents: int = 0
    refund_status: str = "none"  # none, refunded, failed, not_captured
    error: str | None = None


@dataclass
class CancellationResult:
    booking_id: str
    booking_status: str
    items: list[ItemCancellation] = field(default_factory=list)

    @property
    def refunded_cents(self) -> int:
        return sum(i.refund_cents for i in self.items if i.refund_status == "refunded")


def percent_of(amount_cents: int, percent: float) -> int:
    value = Decimal(amount_cents) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def departure_time(item: BookingItem) -> datetime | None:
    schedule = item.schedule_snapshot or {}
    for key in START_TIME_FIELDS:
        if schedule.get(key):
            return clock.parse_iso(schedule[key])
    return None


def stay_nights(item: BookingItem) -> int:
    schedule = item.schedule_snapshot or {}
    if schedule.get("nights"):
        return max(1, int(schedule["nights"]))
    check_in, check_out = clock.parse_iso(schedule.get("check_in")), clock.parse_iso(schedule.get("check_out"))
    if check_in is not None and check_out is not None:
        return max(1, (check_out.date() - check_in.date()).days)
    return 1


def tier_penalty(tier: PenaltyTier, item: BookingItem, base: int) -> int:
    """Penalty in cents for one tier, never more than ``base``."""
    if tier.penalty_type == "full":
        return base
    if tier.penalty_type == "percentage":
        penalty = percent_of(base, tier.penalty_value)
    elif tier.penalty_type == "fixed":
        penalty = int(Decimal(str(tier.penalty_value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    else:
        per_night = Decimal(int(item.amount_cents)) / Decimal(stay_nights(item))
        penalty = int((per_night * Decimal(str(tier.penalty_value))).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return min(penalty, base)


def calculate_item_refund(item: BookingItem, cancellation_time: datetime) -> ItemRefund:
    amount = int(item.amount_cents)
    departure = departure_time(item)
    hours = None
    if departure is not None:
        hours = (departure - clock.as_utc(cancellation_time)).total_seconds() / 3600.0

    if not item.cancellation_policy:
        return ItemRefund(item.id, amount, 0, 0, amount, "no_policy", hours)
    policy = CancellationPolicy.model_validate(item.cancellation_policy)
    if not policy.refundable:
        return ItemRefund(item.id, amount, 0, 0, amount, "non_refundable", hours)

    non_refundable = min(policy.non_refundable_fee_cents, amount)
    base = amount - non_refundable

    if not policy.has_time_rules:
        penalty, applied = 0, "full_refund"
    elif hours is None:
        penalty, applied = base, "no_departure_time"
    elif policy.free_cancellation_hours > 0 and hours >= policy.free_cancellation_hours:
        penalty, applied = 0, "free_cancellation"
    else:
        penalty, applied = base, "after_last_tier"
        for tier in sorted(policy.tiers, key=lambda t: t.hours_before, reverse=True):
            if hours >= tier.hours_before:
                penalty, applied = tier_penalty(tier, item, base), f"tier_{tier.hours_before:g}h"
                break

    return ItemRefund(item.id, amount, base - penalty, penalty, non_refundable, applied, hours)


def calculate_refund(booking: Booking, cancellation_time: datetime, item_ids: list[str] | None = None) -> RefundCalculation:
    calc = RefundCalculation(booking_id=booking.id, currency=booking.currency, calculated_at=clock.as_utc(cancellation_time))
    for item in booking.items:
        if item.status != BookingItemStatus.CONFIRMED:
            continue
        if item_ids is not None and item.id not in item_ids:
            continue
        calc.items.append(calculate_item_refund(item, cancellation_time))
    return calc


class CancellationService:
    def __init__(self, db: Session, providers: ProviderRegistry, payments: PaymentService, notifier: NotificationSender):
        self.db = db
        self.providers = providers
        self.payments = payments
        self.notifier = notifier

    def get_booking(self, booking_id: str, user_id: str | None = None) -> Booking:
        booking = self.db.get(Booking, booking_id)
        if booking is None or (user_id is not None and booking.user_id != user_id):
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return booking

    def quote(self, booking_id: str, user_id: str, item_ids: list[str] | None = None, now: datetime | None = None) -> RefundCalculation:
        booking = self.get_booking(booking_id, user_id)
        return calculate_refund(booking, now or clock.now(), item_ids)

    def cancel_booking(self, booking_id: str, user_id: str, item_ids: list[str] | None = None, now: datetime | None = None) -> CancellationResult:
        booking = self.get_booking(booking_id, user_id)
        now = now or clock.now()
        if booking.status in (BookingStatus.PENDING, BookingStatus.FAILED):
            raise InvalidTransitionError("booking", booking.status.value, BookingStatus.CANCELED.value)

        known = {i.id for i in booking.items}
        targets = list(item_ids) if item_ids else [i.id for i in booking.items]
        missing = [i for i in targets if i not in known]
        if missing:
            raise NotFoundError("Booking item not found", item_ids=missing)

        result = CancellationResult(booking_id=booking.id, booking_status=booking.status.value)
        txn = self.db.get(PaymentTransaction, booking.payment_transaction_id) if booking.payment_transaction_id else None
        for item_id in targets:
            result.items.append(self._cancel_item(booking, item_id, txn, user_id, now))

        refresh_booking_status(booking)
        result.booking_status = booking.status.value
        canceled = [i for i in result.items if i.outcome == "canceled"]
        if canceled:
            self.notifier.send(booking.user_id, "booking_canceled", {
                "booking_ref": booking.booking_ref,
                "items": [i.booking_item_id for i in canceled],
                "refund_cents": result.refunded_cents,
                "currency": booking.currency,
            })
        self.db.commit()
        return result

    def _cancel_item(self, booking: Booking, item_id: str, txn: PaymentTransaction | None, user_id: str, now: datetime) -> ItemCancellation:
        # Row lock serializes concurrent cancels of the same item.
        item = self.db.execute(
            select(BookingItem).where(BookingItem.id == item_id).with_for_update()
        ).scalar_one()
        if item.status == BookingItemStatus.CANCELED:
            return ItemCancellation(item.id, "already_canceled")
        if item.status != BookingItemStatus.CONFIRMED:
            return ItemCancellation(item.id, "not_cancelable", error=f"item is {item.status.value}")
        departure = departure_time(item)
        if departure is not None and departure <= clock.as_utc(now):
            return ItemCancellation(item.id, "not_cancelable", error="Cannot cancel past bookings")

        calc = calculate_item_refund(item, now)
        try:
            adapter = self.providers.get(item.provider_id)
            call_with_retries(
                lambda: adapter.cancel(item.provider_confirmation_ref),
                retry_on=(ProviderUnavailable,),
                operation="provider.cancel",
            )
        except ProviderError as e:
            logger.warning("cancellation_provider_failed", extra={"booking_item_id": item.id, "error": str(e)})
            log_audit(self.db, user_id, "cancellation.provider_failed", "booking_item", item.id, {"error": str(e)})
            self.db.commit()
            return ItemCancellation(item.id, "provider_failed", error=str(e))

        transition(item, BookingItemStatus.CANCELED)
        item.canceled_at = now
        outcome = ItemCancellation(item.id, "canceled", refund_cents=calc.refundable_cents)

        if calc.refundable_cents > 0:
            if txn is not None and txn.status in REFUNDABLE_STATUSES:
                try:
                    self.payments.refund(txn, calc.refundable_cents, refund_key(booking.id, item.id), booking_item_id=item.id)
                    item.refunded_cents = int(item.refunded_cents or 0) + calc.refundable_cents
                    outcome.refund_status = "refunded"
                except (GatewayError, WayfareError) as e:
                    logger.error("cancellation_refund_failed", extra={"booking_item_id": item.id, "error": str(e)})
                    log_audit(self.db, user_id, "cancellation.refund_failed", "booking_item", item.id, {"error": str(e), "needs_attention": True})
                    outcome.refund_status = "failed"
                    outcome.error = str(e)
            else:
                outcome.refund_status = "not_captured"

        log_audit(self.db, user_id, "cancellation.item_canceled", "booking_item", item.id, {
            "refund": asdict(calc),
            "refund_status": outcome.refund_status,
        })
        self.db.commit()
        logger.info("cancellation_item_canceled", extra={"booking_item_id": item.id, "refund_cents": calc.refundable_cents})
        return outcome
