"""
Booking lifecycle: reserve seats, list bookings, cancel.

CONCURRENCY STRATEGY: Pessimistic row lock on the event
========================================================

Problem:
  Two users try to book the last seat simultaneously.
  Both read available_seats=1, both decrement to 0, both succeed.
  Result: Overbooking.

Solution:
  Every reservation runs in one transaction that
    1. sweeps expired locks for the event (reclaims stale seats first)
    2. loads the event with SELECT ... FOR UPDATE
    3. checks availability and the caller's existing pending lock
    4. decrements available_seats and inserts the pending booking
  The competing transaction blocks on step 2 until the winner commits, then
  re-reads the committed count. The CHECK constraint on available_seats is
  the final safety net.

  A pending booking holds its seats only while its lock window is open
  (services.seat_lock). After that the sweep gives the seats back and the
  booking becomes failed.

Post-commit side effects (audit log, analytics, refund, email) never run
inside the locked transaction and never undo it.
"""

import time
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.core.config import get_settings
from booking_engine.core.exceptions import (
    AlreadyCancelled,
    BookingEngineError,
    Forbidden,
    InvalidInput,
    NotFound,
)
from booking_engine.core.logging import get_logger
from booking_engine.core.metrics import (
    booking_cancellations,
    booking_latency,
    record_booking_attempt,
    record_side_effect_failure,
)
from booking_engine.core.security import CurrentUser
from booking_engine.models.booking import Booking, PaymentStatus
from booking_engine.models.payment_transaction import PaymentTransaction
from booking_engine.schemas.booking import (
    BookingCancelResponse,
    BookingCreatedResponse,
    BookingListItem,
    EventSummary,
    PaymentSnapshot,
    RefundOutcome,
)
from booking_engine.services import audit_service, fulfillment, refund_service, seat_ledger
from booking_engine.services.interfaces import Notifier, PaymentProvider
from booking_engine.services.seat_lock import SeatLockPolicy, release_expired_locks

logger = get_logger(__name__)

EXISTING_LOCK_MESSAGE = (
    "You already have a pending booking lock for this event. "
    "Complete payment before it expires."
)
CREATED_MESSAGE = "Booking created. Complete payment before seat lock expires."


def booking_amount(price, seats: int) -> Decimal:
    return Decimal(str(price or 0)) * seats


async def create_booking(
    db: AsyncSession,
    user_id: int,
    event_id: int,
    seats_booked: int,
    policy: Optional[SeatLockPolicy] = None,
) -> BookingCreatedResponse:
    """
    Reserve seats for an event, or return the caller's live pending lock.

    Raises:
        NotFound: event does not exist
        InsufficientSeats: fewer seats left than requested
    """
    if not isinstance(seats_booked, int) or seats_booked <= 0:
        raise InvalidInput("seats_booked must be a positive integer")

    policy = policy or SeatLockPolicy.from_settings()
    currency = get_settings().DEFAULT_CURRENCY
    start = time.perf_counter()

    try:
        await release_expired_locks(db, event_id=event_id, policy=policy)

        event = await seat_ledger.lock_event(db, event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")

        seat_ledger.ensure_available(event, seats_booked)

        existing = await db.execute(
            select(Booking)
            .where(
                Booking.user_id == user_id,
                Booking.event_id == event_id,
                Booking.payment_status == PaymentStatus.PENDING.value,
            )
            .order_by(Booking.booked_at.desc())
            .limit(1)
            .with_for_update()
        )
        existing_booking = existing.scalar_one_or_none()

        if existing_booking is not None and not policy.is_expired(existing_booking):
            amount = booking_amount(event.price, existing_booking.seats_booked)
            response = BookingCreatedResponse(
                message=EXISTING_LOCK_MESSAGE,
                booking_id=existing_booking.id,
                amount=float(amount),
                currency=currency,
                lock_expires_at=policy.expires_at(existing_booking.booked_at),
                existing_lock=True,
            )
            await db.commit()
            record_booking_attempt("existing")
            logger.info(
                "booking_lock_reused",
                booking_id=existing_booking.id,
                user_id=user_id,
                event_id=event_id,
            )
            return response

        seat_ledger.reserve_seats(event, seats_booked)
        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            seats_booked=seats_booked,
            payment_status=PaymentStatus.PENDING.value,
        )
        db.add(booking)
        await db.flush()

        amount = booking_amount(event.price, seats_booked)
        response = BookingCreatedResponse(
            message=CREATED_MESSAGE,
            booking_id=booking.id,
            amount=float(amount),
            currency=currency,
            lock_expires_at=policy.expires_at(booking.booked_at),
        )
        await db.commit()
    except BookingEngineError as e:
        await db.rollback()
        record_booking_attempt("insufficient" if e.code == "insufficient_seats" else "rejected")
        raise
    except Exception:
        await db.rollback()
        record_booking_attempt("error")
        raise
    finally:
        booking_latency.observe(time.perf_counter() - start)

    record_booking_attempt("created")
    logger.info(
        "booking_created",
        booking_id=response.booking_id,
        user_id=user_id,
        event_id=event_id,
        seats=seats_booked,
    )

    await audit_service.log_action(
        "BOOK_EVENT", user_id, f"User booked {seats_booked} seats for event {event_id}"
    )
    await audit_service.record_booking_analytics(seats_booked, amount)
    return response


async def list_user_bookings(
    db: AsyncSession,
    user_id: int,
    policy: Optional[SeatLockPolicy] = None,
) -> List[BookingListItem]:
    """User's bookings with derived lock state and their latest payment snapshot."""
    policy = policy or SeatLockPolicy.from_settings()

    await release_expired_locks(db, policy=policy)
    await db.commit()

    result = await db.execute(
        select(Booking)
        .where(Booking.user_id == user_id)
        .order_by(Booking.booked_at.desc(), Booking.id.desc())
    )
    bookings = list(result.scalars().all())
    if not bookings:
        return []

    tx_rows = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.booking_id.in_([b.id for b in bookings]))
        .order_by(PaymentTransaction.id.desc())
    )
    latest_tx = {}
    for tx in tx_rows.scalars().all():
        latest_tx.setdefault(tx.booking_id, tx)

    items = []
    for booking in bookings:
        item = BookingListItem(
            id=booking.id,
            event_id=booking.event_id,
            seats_booked=booking.seats_booked,
            payment_status=booking.payment_status,
            payment_id=booking.payment_id,
            booked_at=booking.booked_at,
        )
        if booking.event is not None:
            item.event = EventSummary(
                id=booking.event.id,
                title=booking.event.title,
                location=booking.event.location,
                date=booking.event.date,
                price=float(booking.event.price or 0),
            )
        if booking.payment_status == PaymentStatus.PENDING.value:
            item.lock_expires_at = policy.expires_at(booking.booked_at)
            item.lock_expired = policy.is_expired(booking)
        tx = latest_tx.get(booking.id)
        if tx is not None:
            item.payment = PaymentSnapshot.model_validate(tx)
        items.append(item)
    return items


async def cancel_booking(
    db: AsyncSession,
    booking_id: int,
    caller: CurrentUser,
    provider: Optional[PaymentProvider],
    notifier: Notifier,
) -> BookingCancelResponse:
    """
    Cancel a booking and give its seats back.

    Bookings with any payment history (a payment id or a transaction) are kept
    as failed rows so the refund has an audit trail; anything else is deleted.
    Cancelling such a row twice raises AlreadyCancelled. Seats go back to the
    ledger immediately, before the refund is confirmed.
    """
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if not caller.can_access(booking.user_id):
        raise Forbidden()

    # Events before bookings.
    event = await seat_ledger.lock_event(db, booking.event_id)
    booking = await seat_ledger.lock_booking(db, booking_id)
    if booking is None:
        await db.rollback()
        raise NotFound("Booking not found")

    was_paid = booking.payment_status == PaymentStatus.PAID.value
    has_payment_history = bool(booking.payment_id) or (
        await refund_service.get_latest_transaction(db, booking.id)
    ) is not None

    if booking.payment_status == PaymentStatus.FAILED.value and has_payment_history:
        await db.rollback()
        raise AlreadyCancelled()

    user = booking.user
    event_title = event.title if event is not None else None

    if booking.payment_status != PaymentStatus.FAILED.value and event is not None:
        seat_ledger.release_seats(event, booking.seats_booked)

    # Rows with transactions stay; deleting them would cascade the payment trail.
    if has_payment_history:
        booking.transition_to(PaymentStatus.FAILED)
    else:
        await db.delete(booking)
    await db.commit()

    booking_cancellations.labels(was_paid=str(was_paid).lower()).inc()
    logger.info(
        "booking_cancelled",
        booking_id=booking_id,
        user_id=booking.user_id,
        event_id=booking.event_id,
        seats_restored=booking.seats_booked,
        was_paid=was_paid,
        cancelled_by=caller.id,
    )

    refund: Optional[RefundOutcome] = None
    if was_paid:
        try:
            refund = await refund_service.initiate_refund_for_booking(
                db, booking, provider, reason=refund_service.DEFAULT_REFUND_REASON
            )
        except Exception as e:
            await db.rollback()
            record_side_effect_failure("refund")
            logger.error("refund_initiation_failed", booking_id=booking_id, error=str(e))
            refund = RefundOutcome(
                provider=provider.name if provider else "none",
                refund_status="failed",
                message="Refund initiation failed",
            )
        await fulfillment.send_cancellation_notice(notifier, user, event_title, refund)

    await audit_service.log_action("CANCEL_BOOKING", caller.id, f"Booking {booking_id} cancelled")

    return BookingCancelResponse(
        message="Booking cancelled and seats released",
        booking_id=booking_id,
        refund=refund,
    )
