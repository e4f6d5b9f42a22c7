"""
Booking model representing a user's seat lock on an event.

Key design decisions:
- No stored expiry: the lock window is always derived from `booked_at`
  (see services.seat_lock.SeatLockPolicy)
- `payment_status` moves through a small state machine; `transition_to`
  rejects anything outside ALLOWED_TRANSITIONS
- Paid bookings are never hard-deleted so refunds keep their audit trail
- Composite index on (payment_status, booked_at) serves the expiry sweep
"""

from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from booking_engine.core.exceptions import InvalidTransition
from booking_engine.db.base import Base, TimestampMixin, utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    # cancellation of a paid booking
    PaymentStatus.PAID: {PaymentStatus.FAILED},
    PaymentStatus.FAILED: set(),
}


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    seats_booked = Column(Integer, nullable=False, default=1)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_id = Column(String(255), nullable=True)
    booked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    user = relationship("User", lazy="selectin")
    event = relationship("Event", lazy="selectin")

    __table_args__ = (
        CheckConstraint("seats_booked > 0", name="check_booking_seats_positive"),
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'failed')",
            name="check_booking_payment_status",
        ),
        Index("ix_bookings_status_booked_at", "payment_status", "booked_at"),
    )

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus(self.payment_status)

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, target: PaymentStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidTransition(self.payment_status, target.value)
        self.payment_status = target.value

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, user={self.user_id}, event={self.event_id}, "
            f"seats={self.seats_booked}, status={self.payment_status})>"
        )
