from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class CartItemIn(BaseModel):
    itemType: Literal["flight", "hotel", "car", "experience"]
    providerId: str
    offerId: str
    title: str = ""
    priceCents: int
    currency: str = "USD"
    quantity: int = 1
    occupants: int = 1  # travelers per unit: 1 per seat, guests per room
    requiresDocument: bool = False
    offerExpiresAt: datetime
    schedule: dict = Field(default_factory=dict)
    cancellationPolicy: dict = Field(default_factory=dict)


class CartItemUpdateIn(BaseModel):
    quantity: int


class CartItemOut(BaseModel):
    id: str
    itemType: str
    providerId: str
    offerId: str
    title: str = ""
    priceCents: int
    currency: str
    quantity: int
    lineTotalCents: int
    status: str
    offerExpiresAt: Optional[datetime] = None


class CartOut(BaseModel):
    id: str
    status: str
    currency: str
    expiresAt: Optional[datetime] = None
    items: List[CartItemOut] = Field(default_factory=list)
    itemCount: int = 0
    subtotalCents: int = 0
