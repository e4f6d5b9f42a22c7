"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    event_id: int = Field(gt=0)
    seats_booked: int = Field(default=1, gt=0)


class BookingCreatedResponse(BaseModel):
    message: str
    booking_id: int
    amount: float
    currency: str
    lock_expires_at: Optional[datetime] = None
    existing_lock: bool = False


class EventSummary(BaseModel):
    id: int
    title: str
    location: Optional[str] = None
    date: Optional[datetime] = None
    price: float

    model_config = {"from_attributes": True}


class PaymentSnapshot(BaseModel):
    provider: str
    status: str
    refund_status: str
    failure_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BookingListItem(BaseModel):
    id: int
    event_id: int
    seats_booked: int
    payment_status: str
    payment_id: Optional[str] = None
    booked_at: datetime
    lock_expires_at: Optional[datetime] = None
    lock_expired: bool = False
    event: Optional[EventSummary] = None
    payment: Optional[PaymentSnapshot] = None


class BookingListResponse(BaseModel):
    bookings: List[BookingListItem]
    total: int


class RefundOutcome(BaseModel):
    provider: str
    refund_status: str
    refund_id: Optional[str] = None
    message: Optional[str] = None


class BookingCancelResponse(BaseModel):
    message: str
    booking_id: int
    refund: Optional[RefundOutcome] = None
