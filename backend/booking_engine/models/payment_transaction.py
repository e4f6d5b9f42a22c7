"""
Payment transaction rows: one per payment attempt or refund update.

Append-mostly. The row with the highest id for a booking is its current
payment state.
"""

from enum import Enum

from sqlalchemy import JSON, CheckConstraint, Column, ForeignKey, Index, Integer, Numeric, String, Text

from booking_engine.db.base import Base, TimestampMixin


class RefundStatus(str, Enum):
    NONE = "none"
    INITIATED = "initiated"
    PROCESSING = "processing"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentTransaction(Base, TimestampMixin):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(
        Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True)
    provider = Column(String(50), nullable=False)
    provider_payment_id = Column(String(255), nullable=True)
    provider_refund_id = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(10), nullable=False)
    status = Column(String(50), nullable=False)  # created, succeeded, failed, refund_processing, ...
    refund_status = Column(String(20), nullable=False, default=RefundStatus.NONE.value)
    failure_reason = Column(Text, nullable=True)
    raw_payload = Column(JSON, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "refund_status IN ('none', 'initiated', 'processing', 'refunded', 'failed')",
            name="check_transaction_refund_status",
        ),
        Index("ix_payment_transactions_provider_payment_id", "provider_payment_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(id={self.id}, booking={self.booking_id}, "
            f"provider={self.provider}, status={self.status}, refund={self.refund_status})>"
        )
