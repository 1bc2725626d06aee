from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class DocumentIn(BaseModel):
    type: str = "passport"
    number: str = ""
    issuingCountry: str = ""
    expiryDate: Optional[date] = None


class TravelerIn(BaseModel):
    type: Literal["adult", "child", "infant"] = "adult"
    firstName: str = ""
    lastName: str = ""
    dateOfBirth: Optional[date] = None
    gender: Optional[str] = ""
    nationality: Optional[str] = ""
    document: Optional[DocumentIn] = None


class ContactIn(BaseModel):
    firstName: str = ""
    lastName: str = ""
    email: str = ""  # plain str; format is checked with the other traveler fields
    phone: str = ""


class CheckoutInitRequest(BaseModel):
    cartId: str


class TravelerDetailsRequest(BaseModel):
    travelers: List[TravelerIn]
    contact: ContactIn


class PayRequest(BaseModel):
    # Flex/Microform transient token; card data never reaches this service
    transientTokenJwt: Optional[str] = None


class PriceDeltaOut(BaseModel):
    cartItemId: str
    offerId: str
    originalCents: int
    currentCents: Optional[int] = None
    differenceCents: int = 0


class SnapshotItemOut(BaseModel):
    cartItemId: str
    itemType: str
    providerId: str
    offerId: str
    title: str = ""
    priceCents: int
    quantity: int
    lineTotalCents: int


class CheckoutSessionOut(BaseModel):
    id: str
    cartId: str
    status: str
    totalCents: int
    currency: str
    items: List[SnapshotItemOut] = Field(default_factory=list)
    priceChanges: List[PriceDeltaOut] = Field(default_factory=list)
    priceChangeCount: int = 0
    travelerCount: int = 0
    expiresAt: Optional[datetime] = None
    errorCode: Optional[str] = None
    errorMessage: Optional[str] = None
    bookingId: Optional[str] = None
