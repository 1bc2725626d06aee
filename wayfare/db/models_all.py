# Import all models so Base.metadata sees every table (Alembic, tests).
from wayfare.db.session import Base  # noqa: F401
from wayfare.models.audit_log import AuditLog  # noqa: F401
from wayfare.models.booking import Booking, BookingItem, ScheduleChange  # noqa: F401
from wayfare.models.cart import Cart, CartItem  # noqa: F401
from wayfare.models.checkout_session import CheckoutSession  # noqa: F401
from wayfare.models.notification_log import NotificationLog  # noqa: F401
from wayfare.models.payment import PaymentRefund, PaymentTransaction  # noqa: F401
from wayfare.models.webhook_event import WebhookEvent  # noqa: F401
