"""
Booking endpoints: reserve, list, cancel.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.core.security import CurrentUser, get_current_user
from booking_engine.db.session import get_db
from booking_engine.schemas.booking import (
    BookingCancelResponse,
    BookingCreate,
    BookingCreatedResponse,
    BookingListResponse,
)
from booking_engine.services import booking_service
from booking_engine.services.interfaces import Notifier, PaymentProvider
from booking_engine.services.strategy_factory import get_notifier, get_payment_provider

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Reserve seats for an event and open a payment lock.

    Calling again while the lock is live returns the same booking (200)
    instead of reserving twice.
    """
    result = await booking_service.create_booking(
        db, user.id, booking_data.event_id, booking_data.seats_booked
    )
    if result.existing_lock:
        response.status_code = status.HTTP_200_OK
    return result


@router.get("/", response_model=BookingListResponse)
async def list_user_bookings(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings of the authenticated user, with lock and payment state."""
    bookings = await booking_service.list_user_bookings(db, user.id)
    return BookingListResponse(bookings=bookings, total=len(bookings))


@router.delete("/{booking_id}", response_model=BookingCancelResponse)
async def cancel_booking(
    booking_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
    notifier: Notifier = Depends(get_notifier),
):
    """Cancel a booking, release its seats and refund it if it was paid."""
    return await booking_service.cancel_booking(db, booking_id, user, provider, notifier)
