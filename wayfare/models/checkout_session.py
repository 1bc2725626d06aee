from sqlalchemy import String, Integer, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from wayfare.db.session import Base
from wayfare.models.enums import CheckoutStatus, status_column_type

class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    cart_id: Mapped[str] = mapped_column(String(36), ForeignKey("carts.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)

    status: Mapped[CheckoutStatus] = mapped_column(status_column_type(CheckoutStatus), default=CheckoutStatus.INITIALIZED, index=True)

    # [{cart_item_id, item_type, provider_id, offer_id, price_cents, quantity, ...}] at session start
    price_snapshot: Mapped[list] = mapped_column(JSON, default=list)
    total_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    price_change_count: Mapped[int] = mapped_column(Integer, default=0)
    pending_price_deltas: Mapped[list] = mapped_column(JSON, default=list)

    travelers: Mapped[list] = mapped_column(JSON, default=list)
    contact: Mapped[dict] = mapped_column(JSON, default=dict)

    payment_transaction_id: Mapped[str] = mapped_column(String(36), nullable=True)  # reference only

    error_code: Mapped[str] = mapped_column(String(60), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
