from sqlalchemy import String, Integer, DateTime, ForeignKey, JSON, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from wayfare.db.session import Base
from wayfare.models.enums import (
    BookingStatus, BookingItemStatus, ChangeSignificance, ItemType, status_column_type,
)

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_ref: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    checkout_session_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)

    status: Mapped[BookingStatus] = mapped_column(status_column_type(BookingStatus), default=BookingStatus.PENDING, index=True)
    payment_transaction_id: Mapped[str] = mapped_column(String(36), index=True)  # reference only

    total_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    travelers: Mapped[list] = mapped_column(JSON, default=list)
    contact: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    confirmed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["BookingItem"]] = relationship(back_populates="booking", order_by="BookingItem.position", cascade="all, delete-orphan")


class BookingItem(Base):
    __tablename__ = "booking_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer)  # item index within the checkout
    cart_item_id: Mapped[str] = mapped_column(String(36), nullable=True)

    item_type: Mapped[ItemType] = mapped_column(status_column_type(ItemType))
    provider_id: Mapped[str] = mapped_column(String(60), index=True)
    offer_id: Mapped[str] = mapped_column(String(120))
    title: Mapped[str] = mapped_column(String(200), default="")
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    amount_cents: Mapped[int] = mapped_column(Integer)  # share of the captured amount
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    status: Mapped[BookingItemStatus] = mapped_column(status_column_type(BookingItemStatus), default=BookingItemStatus.PENDING, index=True)
    provider_confirmation_ref: Mapped[str] = mapped_column(String(120), nullable=True)
    provider_idempotency_key: Mapped[str] = mapped_column(String(200), index=True)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=True)

    traveler_assignments: Mapped[list] = mapped_column(JSON, default=list)  # indices into Booking.travelers
    schedule_snapshot: Mapped[dict] = mapped_column(JSON, default=dict)
    cancellation_policy: Mapped[dict] = mapped_column(JSON, default=dict)

    reconciliation_attempts: Mapped[int] = mapped_column(Integer, default=0)
    refunded_cents: Mapped[int] = mapped_column(Integer, default=0)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    booking: Mapped[Booking] = relationship(back_populates="items")


class ScheduleChange(Base):
    __tablename__ = "schedule_changes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(36), index=True)
    booking_item_id: Mapped[str] = mapped_column(String(36), ForeignKey("booking_items.id", ondelete="CASCADE"), index=True)
    previous: Mapped[dict] = mapped_column(JSON, default=dict)
    current: Mapped[dict] = mapped_column(JSON, default=dict)
    changed_fields: Mapped[list] = mapped_column(JSON, default=list)
    significance: Mapped[ChangeSignificance] = mapped_column(status_column_type(ChangeSignificance), default=ChangeSignificance.MINOR)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    acknowledged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
