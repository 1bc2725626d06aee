from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from wayfare.db.session import Base
from wayfare.models.enums import PaymentStatus, status_column_type

class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    checkout_session_id: Mapped[str] = mapped_column(String(36), index=True)
    provider: Mapped[str] = mapped_column(String(40), default="cybersource")
    gateway_intent_id: Mapped[str] = mapped_column(String(120), nullable=True, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[PaymentStatus] = mapped_column(status_column_type(PaymentStatus), default=PaymentStatus.CREATED, index=True)
    # Shared by authorize and capture so a retried call never double-charges
    idempotency_key: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    refunded_cents: Mapped[int] = mapped_column(Integer, default=0)

    error_code: Mapped[str] = mapped_column(String(60), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)

    authorized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    payment_transaction_id: Mapped[str] = mapped_column(String(36), index=True)
    booking_item_id: Mapped[str] = mapped_column(String(36), nullable=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    gateway_refund_id: Mapped[str] = mapped_column(String(120), default="")
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
