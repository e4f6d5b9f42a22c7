"""
Domain errors for the booking and payment engine.

Every error is an HTTPException so services can raise them directly (routes
stay thin), while still carrying a stable machine-readable `code`.
"""

from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class BookingEngineError(HTTPException):
    """Base class for all booking/payment domain errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "booking_error"
    default_detail = "Booking request failed"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class NotFound(BookingEngineError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_detail = "Not found"


class Forbidden(BookingEngineError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_detail = "Forbidden"


class InvalidInput(BookingEngineError):
    code = "invalid_input"
    default_detail = "Invalid payload"


class InsufficientSeats(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_seats"
    default_detail = "Not enough seats available"


class LockExpired(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT
    code = "lock_expired"
    default_detail = "Seat lock expired. Please book again."


class AlreadyPaid(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_paid"
    default_detail = "Booking already paid"


class AlreadyCancelled(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_cancelled"
    default_detail = "Booking already cancelled"


class NotPayable(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT
    code = "not_payable"
    default_detail = "Booking is no longer payable"


class InvalidTransition(BookingEngineError):
    """Raised when an illegal payment_status transition is attempted."""

    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Illegal state transition attempted: {from_state} -> {to_state}")


class InvalidSignature(BookingEngineError):
    code = "invalid_signature"
    default_detail = "Invalid webhook signature"


class ProviderNotConfigured(BookingEngineError):
    code = "provider_not_configured"
    default_detail = "Payment provider is not configured"


class WebhookNotConfigured(ProviderNotConfigured):
    default_detail = "Payment webhook is not configured"


class ProviderError(BookingEngineError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "provider_error"
    default_detail = "Payment provider request failed"


class RefundInProgress(BookingEngineError):
    status_code = status.HTTP_409_CONFLICT
    code = "refund_in_progress"
    default_detail = "A refund has already been requested for this booking"


class NoRefundableTransaction(BookingEngineError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "no_transaction"
    default_detail = "No payment transaction found for this booking"


async def booking_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )
