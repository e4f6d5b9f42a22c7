"""
Pydantic schemas for payment, webhook and refund endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from booking_engine.schemas.booking import RefundOutcome


class PayRequest(BaseModel):
    booking_id: int = Field(gt=0)


class PaidBookingSummary(BaseModel):
    id: int
    event_title: str
    status: str


class PaymentResponse(BaseModel):
    message: str
    payment_id: str
    booking: PaidBookingSummary
    pdf_generated: bool = True
    email_error: Optional[str] = None


class IntentResponse(BaseModel):
    booking_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    status: str
    amount: float
    amount_minor: int
    currency: str


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundResponse(RefundOutcome):
    booking_id: int


class PaymentStatusResponse(BaseModel):
    booking_id: int
    payment_status: str
    provider: str
    provider_payment_id: Optional[str] = None
    provider_refund_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    refund_status: str
    failure_reason: Optional[str] = None
    updated_at: Optional[datetime] = None


class WebhookAck(BaseModel):
    received: bool = True


class SweepResponse(BaseModel):
    released_bookings: int
    released_seats: int
