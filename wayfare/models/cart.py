from sqlalchemy import String, Integer, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from wayfare.db.session import Base
from wayfare.models.enums import CartStatus, CartItemStatus, ItemType, status_column_type

class Cart(Base):
    __tablename__ = "carts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    status: Mapped[CartStatus] = mapped_column(status_column_type(CartStatus), default=CartStatus.OPEN, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    items: Mapped[list["CartItem"]] = relationship(back_populates="cart", order_by="CartItem.created_at", cascade="all, delete-orphan")

    @property
    def active_items(self) -> list["CartItem"]:
        return [i for i in self.items if i.status != CartItemStatus.REMOVED]


class CartItem(Base):
    __tablename__ = "cart_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    cart_id: Mapped[str] = mapped_column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), index=True)

    # Offer snapshot
    item_type: Mapped[ItemType] = mapped_column(status_column_type(ItemType))
    provider_id: Mapped[str] = mapped_column(String(60), index=True)
    offer_id: Mapped[str] = mapped_column(String(120))
    title: Mapped[str] = mapped_column(String(200), default="")
    price_cents: Mapped[int] = mapped_column(Integer)  # unit price
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    occupants: Mapped[int] = mapped_column(Integer, default=1)  # travelers per unit (seat=1, room=guests)
    requires_document: Mapped[bool] = mapped_column(Boolean, default=False)
    offer_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    schedule: Mapped[dict] = mapped_column(JSON, default=dict)  # departure_at, arrival_at, origin, ...
    cancellation_policy: Mapped[dict] = mapped_column(JSON, default=dict)

    status: Mapped[CartItemStatus] = mapped_column(status_column_type(CartItemStatus), default=CartItemStatus.ACTIVE)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    cart: Mapped[Cart] = relationship(back_populates="items")

    @property
    def line_total_cents(self) -> int:
        return int(self.price_cents) * int(self.quantity)

    @property
    def travelers_required(self) -> int:
        if self.item_type == ItemType.CAR:
            return 1  # the driver
        return int(self.quantity) * int(self.occupants or 1)
