from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from wayfare.api.deps import get_cancellation_service, get_current_user_id, get_lifecycle_service
from wayfare.db.session import get_db
from wayfare.models.booking import Booking, ScheduleChange
from wayfare.models.payment import PaymentTransaction
from wayfare.schemas.booking import (
    BookingItemOut,
    BookingOut,
    CancellationOut,
    CancelRequest,
    ItemCancellationOut,
    ItemRefundOut,
    RefundQuoteOut,
    ScheduleChangeOut,
)
from wayfare.services.booking_lifecycle import BookingLifecycleService
from wayfare.services.cancellation_service import CancellationService

router = APIRouter(tags=["bookings"])


def booking_out(db: Session, b: Booking) -> BookingOut:
    txn = db.get(PaymentTransaction, b.payment_transaction_id) if b.payment_transaction_id else None
    return BookingOut(
        id=b.id,
        bookingRef=b.booking_ref,
        status=b.status.value,
        paymentStatus=txn.status.value if txn else None,
        totalCents=b.total_cents,
        currency=b.currency,
        items=[
            BookingItemOut(
                id=i.id,
                position=i.position,
                itemType=i.item_type.value,
                providerId=i.provider_id,
                title=i.title or "",
                quantity=i.quantity,
                amountCents=i.amount_cents,
                currency=i.currency,
                status=i.status.value,
                confirmationRef=i.provider_confirmation_ref,
                refundedCents=i.refunded_cents or 0,
                schedule=i.schedule_snapshot or {},
            )
            for i in b.items
        ],
        createdAt=b.created_at,
        confirmedAt=b.confirmed_at,
    )


@router.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    cancellations: CancellationService = Depends(get_cancellation_service),
):
    return booking_out(db, cancellations.get_booking(booking_id, user_id))


@router.get("/bookings/{booking_id}/refund-quote", response_model=RefundQuoteOut)
def refund_quote(
    booking_id: str,
    itemIds: Optional[List[str]] = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    cancellations: CancellationService = Depends(get_cancellation_service),
):
    calc = cancellations.quote(booking_id, user_id, itemIds)
    return RefundQuoteOut(
        bookingId=calc.booking_id,
        currency=calc.currency,
        refundableCents=calc.refundable_cents,
        penaltyCents=calc.penalty_cents,
        nonRefundableCents=calc.non_refundable_cents,
        items=[
            ItemRefundOut(
                bookingItemId=i.booking_item_id,
                amountCents=i.amount_cents,
                refundableCents=i.refundable_cents,
                penaltyCents=i.penalty_cents,
                nonRefundableCents=i.non_refundable_cents,
                policyApplied=i.policy_applied,
            )
            for i in calc.items
        ],
    )


@router.post("/bookings/{booking_id}/cancel", response_model=CancellationOut)
def cancel_booking(
    booking_id: str,
    body: CancelRequest,
    user_id: str = Depends(get_current_user_id),
    cancellations: CancellationService = Depends(get_cancellation_service),
):
    result = cancellations.cancel_booking(booking_id, user_id, body.itemIds)
    return CancellationOut(
        bookingId=result.booking_id,
        bookingStatus=result.booking_status,
        refundedCents=result.refunded_cents,
        items=[
            ItemCancellationOut(
                bookingItemId=i.booking_item_id,
                outcome=i.outcome,
                refundCents=i.refund_cents,
                refundStatus=i.refund_status,
                error=i.error,
            )
            for i in result.items
        ],
    )


def _change_out(c: ScheduleChange) -> ScheduleChangeOut:
    return ScheduleChangeOut(
        id=c.id,
        bookingItemId=c.booking_item_id,
        changedFields=c.changed_fields or [],
        significance=c.significance.value,
        previous=c.previous or {},
        current=c.current or {},
        acknowledged=bool(c.acknowledged),
        detectedAt=c.detected_at,
    )


@router.get("/bookings/{booking_id}/schedule-changes", response_model=list[ScheduleChangeOut])
def list_schedule_changes(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    cancellations: CancellationService = Depends(get_cancellation_service),
):
    booking = cancellations.get_booking(booking_id, user_id)
    changes = (
        db.query(ScheduleChange)
        .filter(ScheduleChange.booking_id == booking.id)
        .order_by(ScheduleChange.detected_at.desc())
        .all()
    )
    return [_change_out(c) for c in changes]


@router.post("/bookings/{booking_id}/schedule-changes/{change_id}/acknowledge", response_model=ScheduleChangeOut)
def acknowledge_schedule_change(
    booking_id: str,
    change_id: str,
    user_id: str = Depends(get_current_user_id),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
):
    return _change_out(lifecycle.acknowledge_schedule_change(change_id, user_id))
