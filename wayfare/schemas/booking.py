from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class BookingItemOut(BaseModel):
    id: str
    position: int
    itemType: str
    providerId: str
    title: str = ""
    quantity: int
    amountCents: int
    currency: str
    status: str
    confirmationRef: Optional[str] = None
    refundedCents: int = 0
    schedule: dict = Field(default_factory=dict)


class BookingOut(BaseModel):
    id: str
    bookingRef: str
    status: str
    paymentStatus: Optional[str] = None
    totalCents: int
    currency: str
    items: List[BookingItemOut] = Field(default_factory=list)
    createdAt: Optional[datetime] = None
    confirmedAt: Optional[datetime] = None


class CancelRequest(BaseModel):
    itemIds: Optional[List[str]] = None  # None = the whole booking


class ItemRefundOut(BaseModel):
    bookingItemId: str
    amountCents: int
    refundableCents: int
    penaltyCents: int
    nonRefundableCents: int
    policyApplied: str


class RefundQuoteOut(BaseModel):
    bookingId: str
    currency: str
    refundableCents: int
    penaltyCents: int
    nonRefundableCents: int
    items: List[ItemRefundOut] = Field(default_factory=list)


class ItemCancellationOut(BaseModel):
    bookingItemId: str
    outcome: str
    refundCents: int = 0
    refundStatus: str = "none"
    error: Optional[str] = None


class CancellationOut(BaseModel):
    bookingId: str
    bookingStatus: str
    refundedCents: int = 0
    items: List[ItemCancellationOut] = Field(default_factory=list)


class ScheduleChangeOut(BaseModel):
    id: str
    bookingItemId: str
    changedFields: List[str] = Field(default_factory=list)
    significance: str
    previous: dict = Field(default_factory=dict)
    current: dict = Field(default_factory=dict)
    acknowledged: bool = False
    detectedAt: Optional[datetime] = None
