from booking_engine.schemas.booking import (
    BookingCancelResponse,
    BookingCreate,
    BookingCreatedResponse,
    BookingListItem,
    BookingListResponse,
    RefundOutcome,
)
from booking_engine.schemas.payment import (
    IntentResponse,
    PaymentResponse,
    PaymentStatusResponse,
    PayRequest,
    RefundRequest,
    RefundResponse,
    SweepResponse,
    WebhookAck,
)

__all__ = [
    "BookingCreate", "BookingCreatedResponse", "BookingListItem", "BookingListResponse",
    "BookingCancelResponse", "RefundOutcome",
    "PayRequest", "PaymentResponse", "IntentResponse", "RefundRequest", "RefundResponse",
    "PaymentStatusResponse", "WebhookAck", "SweepResponse",
]
