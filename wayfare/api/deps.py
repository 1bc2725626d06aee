from functools import lru_cache

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from wayfare.core.logging import update_log_context
from wayfare.core.security import decode_token
from wayfare.db.session import get_db
from wayfare.services.booking_coordinator import BookingCoordinator
from wayfare.services.booking_lifecycle import BookingLifecycleService
from wayfare.services.cancellation_service import CancellationService
from wayfare.services.checkout_service import CheckoutService
from wayfare.services.notifications import OutboxNotificationSender
from wayfare.services.payment_gateway import build_gateway
from wayfare.services.payment_service import PaymentService
from wayfare.services.providers import build_catalog, build_provider_registry

bearer = HTTPBearer(auto_error=False)


def get_current_user_id(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> str:
    """Users live in the identity service; the token's subject is all we need."""
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    update_log_context(user_id=user_id)
    return str(user_id)


# External collaborators are process-wide; tests replace them via dependency_overrides.

@lru_cache
def get_gateway():
    return build_gateway()


@lru_cache
def get_catalog():
    return build_catalog()


@lru_cache
def get_providers():
    return build_provider_registry()


def get_notifier(db: Session = Depends(get_db)):
    return OutboxNotificationSender(db)


def get_payment_service(db: Session = Depends(get_db), gateway=Depends(get_gateway)) -> PaymentService:
    return PaymentService(db, gateway)


def get_checkout_service(
    db: Session = Depends(get_db),
    catalog=Depends(get_catalog),
    payments: PaymentService = Depends(get_payment_service),
) -> CheckoutService:
    return CheckoutService(db, catalog, payments)


def get_coordinator(
    db: Session = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout_service),
    payments: PaymentService = Depends(get_payment_service),
    providers=Depends(get_providers),
    notifier=Depends(get_notifier),
) -> BookingCoordinator:
    return BookingCoordinator(db, checkout, payments, providers, notifier)


def get_cancellation_service(
    db: Session = Depends(get_db),
    providers=Depends(get_providers),
    payments: PaymentService = Depends(get_payment_service),
    notifier=Depends(get_notifier),
) -> CancellationService:
    return CancellationService(db, providers, payments, notifier)


def get_lifecycle_service(
    db: Session = Depends(get_db),
    providers=Depends(get_providers),
    notifier=Depends(get_notifier),
) -> BookingLifecycleService:
    return BookingLifecycleService(db, providers, notifier)
