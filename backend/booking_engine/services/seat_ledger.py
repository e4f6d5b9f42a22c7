"""
Seat ledger: the only code that mutates Event.available_seats.

LOCKING STRATEGY: Pessimistic row locks
=======================================

Every read-modify-write of the ledger happens on an event row loaded with
SELECT ... FOR UPDATE inside the caller's transaction. Two reservations for the
same event queue on that row lock; the loser re-reads the committed count.

Lock order is global: events (ascending id) first, then bookings. Every
operation that needs both takes them in that order, so two transactions can
never wait on each other in a cycle.

Releases are clamped to total_seats so a double release can never push the
ledger above capacity. The CHECK constraints on the events table remain the
last line of defense.
"""

from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.core.exceptions import InsufficientSeats
from booking_engine.core.logging import get_logger
from booking_engine.models.booking import Booking
from booking_engine.models.event import Event

logger = get_logger(__name__)


async def lock_event(db: AsyncSession, event_id: int) -> Optional[Event]:
    """Load one event row under a write lock, refreshing any stale identity-map copy."""
    result = await db.execute(
        select(Event)
        .where(Event.id == event_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def lock_events(db: AsyncSession, event_ids: Iterable[int]) -> Dict[int, Event]:
    """Lock several events in ascending id order."""
    ids = sorted(set(event_ids))
    if not ids:
        return {}
    result = await db.execute(
        select(Event)
        .where(Event.id.in_(ids))
        .order_by(Event.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {event.id: event for event in result.scalars().all()}


async def lock_booking(db: AsyncSession, booking_id: int) -> Optional[Booking]:
    """Lock a booking row. Callers must already hold its event lock."""
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def ensure_available(event: Event, seats: int) -> None:
    if event.available_seats < seats:
        logger.warning(
            "booking_failed_no_seats",
            event_id=event.id,
            requested=seats,
            available=event.available_seats,
        )
        raise InsufficientSeats(
            f"Not enough seats. Requested: {seats}, Available: {event.available_seats}"
        )


def reserve_seats(event: Event, seats: int) -> None:
    if seats <= 0:
        raise ValueError("seats must be positive")
    ensure_available(event, seats)
    event.available_seats = event.available_seats - seats


def release_seats(event: Event, seats: int) -> int:
    """
    Return seats to the ledger, clamped to total_seats.

    Returns the number of seats actually credited back.
    """
    if seats <= 0:
        return 0
    before = event.available_seats or 0
    after = min(before + seats, event.total_seats)
    if after < before + seats:
        logger.warning(
            "seat_release_clamped",
            event_id=event.id,
            requested=seats,
            credited=after - before,
            total_seats=event.total_seats,
        )
    event.available_seats = after
    return after - before
