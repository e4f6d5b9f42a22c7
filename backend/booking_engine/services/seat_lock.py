"""
Seat locks: the lock-window policy and the expiry sweep.

A pending booking holds its seats for `BOOKING_LOCK_MINUTES` after
`booked_at`. Nothing stores the expiry; every caller derives it from the same
SeatLockPolicy, and the sweep query uses `policy.cutoff(now)` so SQL and Python
agree on the boundary.

Sweeps run in three places:
  - inline, scoped to one event, at the start of booking and payment calls
  - unscoped, on a timer (SeatLockSweeper, started from the app lifespan)
  - unscoped, on demand through the admin endpoint
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.core.config import get_settings
from booking_engine.core.logging import get_logger
from booking_engine.core.metrics import record_sweep
from booking_engine.db.base import utcnow
from booking_engine.models.booking import Booking, PaymentStatus
from booking_engine.services import seat_ledger

logger = get_logger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class SeatLockPolicy:
    minutes: float

    def __post_init__(self):
        if self.minutes < 0:
            raise ValueError("lock duration cannot be negative")

    @classmethod
    def from_settings(cls) -> "SeatLockPolicy":
        return cls(minutes=get_settings().BOOKING_LOCK_MINUTES)

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.minutes)

    def expires_at(self, booked_at: Optional[datetime]) -> Optional[datetime]:
        if booked_at is None:
            return None
        return as_utc(booked_at) + self.duration

    def is_expired(self, booking: Booking, now: Optional[datetime] = None) -> bool:
        if booking is None or booking.payment_status != PaymentStatus.PENDING.value:
            return False
        expires_at = self.expires_at(booking.booked_at)
        if expires_at is None:
            return False
        return expires_at <= (now or utcnow())

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - self.duration


@dataclass
class SweepResult:
    released_bookings: int = 0
    released_seats: int = 0


async def release_expired_locks(
    db: AsyncSession,
    event_id: Optional[int] = None,
    policy: Optional[SeatLockPolicy] = None,
    now: Optional[datetime] = None,
    trigger: str = "inline",
) -> SweepResult:
    """
    Fail every pending booking whose lock window has elapsed and give its
    seats back to the ledger.

    Runs inside the caller's transaction and does not commit. Re-running it
    finds nothing, because released bookings are no longer pending.
    """
    policy = policy or SeatLockPolicy.from_settings()
    cutoff = policy.cutoff(now)

    candidates = select(Booking.id, Booking.event_id).where(
        Booking.payment_status == PaymentStatus.PENDING.value,
        Booking.booked_at <= cutoff,
    )
    if event_id is not None:
        candidates = candidates.where(Booking.event_id == event_id)
    rows = (await db.execute(candidates)).all()
    if not rows:
        record_sweep(trigger, 0, 0)
        return SweepResult()

    # Events before bookings, same as every other writer.
    events = await seat_ledger.lock_events(db, [row.event_id for row in rows])

    # Re-check under the lock: a payment may have landed in between.
    locked = await db.execute(
        select(Booking)
        .where(
            Booking.id.in_([row.id for row in rows]),
            Booking.payment_status == PaymentStatus.PENDING.value,
            Booking.booked_at <= cutoff,
        )
        .order_by(Booking.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    expired = list(locked.scalars().all())
    if not expired:
        record_sweep(trigger, 0, 0)
        return SweepResult()

    seats_by_event = defaultdict(int)
    for booking in expired:
        seats_by_event[booking.event_id] += booking.seats_booked

    for expired_event_id, seats in seats_by_event.items():
        event = events.get(expired_event_id)
        if event is None:
            continue
        seat_ledger.release_seats(event, seats)

    await db.execute(
        update(Booking)
        .where(Booking.id.in_([booking.id for booking in expired]))
        .values(payment_status=PaymentStatus.FAILED.value)
    )

    result = SweepResult(
        released_bookings=len(expired),
        released_seats=sum(seats_by_event.values()),
    )
    record_sweep(trigger, result.released_bookings, result.released_seats)
    logger.info(
        "seat_locks_released",
        trigger=trigger,
        event_id=event_id,
        released_bookings=result.released_bookings,
        released_seats=result.released_seats,
    )
    return result


class SeatLockSweeper:
    """
    Periodic unscoped sweep for locks nobody revisits.

    One run at start, then one every `interval_minutes`. The `running` flag
    keeps a slow run from overlapping the next tick.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        interval_minutes: Optional[float] = None,
        policy: Optional[SeatLockPolicy] = None,
    ):
        self.session_factory = session_factory
        self.interval_minutes = interval_minutes or get_settings().SEAT_LOCK_CLEANUP_MINUTES
        self.policy = policy
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> SweepResult:
        if self.running:
            logger.debug("seat_lock_sweep_skipped", reason="previous_run_active")
            return SweepResult()

        self.running = True
        try:
            async with self.session_factory() as db:
                try:
                    result = await release_expired_locks(db, policy=self.policy, trigger="background")
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
            return result
        except Exception as e:
            logger.error("seat_lock_sweep_failed", error=str(e))
            return SweepResult()
        finally:
            self.running = False

    async def _loop(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_minutes * 60)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("seat_lock_sweeper_started", interval_minutes=self.interval_minutes)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("seat_lock_sweeper_stopped")
