import enum

from sqlalchemy import Enum as SAEnum


class ItemType(str, enum.Enum):
    FLIGHT = "flight"
    HOTEL = "hotel"
    CAR = "car"
    EXPERIENCE = "experience"


class CartStatus(str, enum.Enum):
    OPEN = "open"
    LOCKED = "locked"
    CONVERTED = "converted"
    ABANDONED = "abandoned"


class CartItemStatus(str, enum.Enum):
    ACTIVE = "active"
    REMOVED = "removed"
    PRICE_CHANGED = "price_changed"


class CheckoutStatus(str, enum.Enum):
    INITIALIZED = "initialized"
    PRICE_VERIFYING = "price_verifying"
    PRICE_CHANGED = "price_changed"
    AWAITING_TRAVELER_DETAILS = "awaiting_traveler_details"
    READY_FOR_PAYMENT = "ready_for_payment"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    BOOKING = "booking"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class PaymentStatus(str, enum.Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURE_FAILED = "capture_failed"
    CAPTURED = "captured"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PARTIALLY_CONFIRMED = "partially_confirmed"
    FAILED = "failed"
    CANCELED = "canceled"
    COMPLETED = "completed"


class BookingItemStatus(str, enum.Enum):
    PENDING = "pending"
    PENDING_RECONCILIATION = "pending_reconciliation"
    CONFIRMED = "confirmed"
    BOOKING_FAILED = "booking_failed"
    CANCELED = "canceled"
    COMPLETED = "completed"


class ChangeSignificance(str, enum.Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


def status_column_type(enum_cls: type[enum.Enum]) -> SAEnum:
    """Persist the enum's values (not names) as a plain VARCHAR with a CHECK-free closed set."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=30,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )
