"""Booking domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..sessions.schemas import SessionResponse, SlotRequestMixin


class ReserveSlotRequest(SlotRequestMixin):
    """Schema for reserving a slot ahead of payment"""

    psychologistId: int
    packageId: Optional[int] = None


class ReserveSlotResponse(BaseModel):
    quoteId: str
    price: float
    sessionType: str
    psychologistId: int
    packageId: Optional[int] = None
    date: str
    time: str
    expiresAt: datetime


class CreditInfo(BaseModel):
    transactionId: str
    amount: float
    creditStatus: str
    psychologistId: int


class BookingStatusResponse(BaseModel):
    """Client-facing view of a reservation's progress"""

    orderId: str
    status: str  # SLOT_HELD, PAYMENT_PENDING, PAYMENT_SUCCESS, COMPLETED, FAILED, EXPIRED
    message: str
    lockStatus: Optional[str] = None
    paymentStatus: Optional[str] = None
    expiresAt: Optional[datetime] = None
    session: Optional[SessionResponse] = None
    fallbackSession: Optional[dict] = None
    credit: Optional[CreditInfo] = None
