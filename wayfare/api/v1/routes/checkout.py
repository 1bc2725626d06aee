from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from wayfare.api.deps import get_checkout_service, get_coordinator, get_current_user_id
from wayfare.api.v1.routes.bookings import booking_out
from wayfare.core.errors import CaptureFailedError
from wayfare.core.logging import update_log_context
from wayfare.db.session import get_db
from wayfare.models.booking import Booking
from wayfare.models.checkout_session import CheckoutSession
from wayfare.models.enums import BookingStatus
from wayfare.schemas.booking import BookingOut
from wayfare.schemas.checkout import (
    CheckoutInitRequest,
    CheckoutSessionOut,
    PayRequest,
    PriceDeltaOut,
    SnapshotItemOut,
    TravelerDetailsRequest,
)
from wayfare.services.booking_coordinator import BookingCoordinator
from wayfare.services.checkout_service import CheckoutService

router = APIRouter(tags=["checkout"])


def session_out(db: Session, s: CheckoutSession) -> CheckoutSessionOut:
    booking = db.query(Booking).filter(Booking.checkout_session_id == s.id).first()
    return CheckoutSessionOut(
        id=s.id,
        cartId=s.cart_id,
        status=s.status.value,
        totalCents=s.total_cents,
        currency=s.currency,
        items=[
            SnapshotItemOut(
                cartItemId=e["cart_item_id"],
                itemType=e["item_type"],
                providerId=e["provider_id"],
                offerId=e["offer_id"],
                title=e.get("title") or "",
                priceCents=e["price_cents"],
                quantity=e["quantity"],
                lineTotalCents=int(e["price_cents"]) * int(e["quantity"]),
            )
            for e in s.price_snapshot or []
        ],
        priceChanges=[
            PriceDeltaOut(
                cartItemId=d["cart_item_id"],
                offerId=d["offer_id"],
                originalCents=d["original_cents"],
                currentCents=d.get("current_cents"),
                differenceCents=d.get("difference_cents") or 0,
            )
            for d in s.pending_price_deltas or []
        ],
        priceChangeCount=s.price_change_count or 0,
        travelerCount=len(s.travelers or []),
        expiresAt=s.expires_at,
        errorCode=s.error_code,
        errorMessage=s.error_message,
        bookingId=booking.id if booking else None,
    )


@router.post("/checkout/sessions", response_model=CheckoutSessionOut, status_code=201)
def start_checkout(
    body: CheckoutInitRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return session_out(db, checkout.initialize(body.cartId, user_id))


@router.get("/checkout/sessions/{session_id}", response_model=CheckoutSessionOut)
def get_checkout(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    return session_out(db, checkout.get_session(session_id, user_id))


@router.post("/checkout/sessions/{session_id}/verify-prices", response_model=CheckoutSessionOut)
def verify_prices(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    update_log_context(session_id=session_id)
    return session_out(db, checkout.verify_prices(session_id, user_id))


@router.post("/checkout/sessions/{session_id}/acknowledge-price", response_model=CheckoutSessionOut)
def acknowledge_price(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    update_log_context(session_id=session_id)
    return session_out(db, checkout.acknowledge_price_change(session_id, user_id))


@router.put("/checkout/sessions/{session_id}/travelers", response_model=CheckoutSessionOut)
def submit_travelers(
    session_id: str,
    body: TravelerDetailsRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout_service),
):
    update_log_context(session_id=session_id)
    return session_out(db, checkout.submit_traveler_details(session_id, body.travelers, body.contact, user_id))


@router.post("/checkout/sessions/{session_id}/pay", response_model=BookingOut)
def pay(
    session_id: str,
    body: PayRequest,
    response: Response,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    """Authorize, book every item and capture.

    202 while an item awaits provider reconciliation. A capture failure after
    every item confirmed still returns the confirmed booking; billing is
    retried in the background.
    """
    update_log_context(session_id=session_id)
    try:
        booking = coordinator.run(session_id, user_id, body.transientTokenJwt)
    except CaptureFailedError as e:
        booking = db.get(Booking, e.booking_id)
    if booking.status == BookingStatus.PENDING:
        response.status_code = 202
    return booking_out(db, booking)
