from sqlalchemy import String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from wayfare.db.session import Base

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    actor: Mapped[str] = mapped_column(String(60), index=True)  # user id, "system", "saga", "gateway"
    action: Mapped[str] = mapped_column(String(80), index=True)  # e.g. saga.item_booked
    entity_type: Mapped[str] = mapped_column(String(40), index=True)  # checkout_session, booking, booking_item, payment
    entity_id: Mapped[str] = mapped_column(String(36), index=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
