"""
Refund initiation for paid bookings.

The latest PaymentTransaction of a booking is the one refunded. When no real
provider owns that transaction (no gateway configured, a mock payment, or no
provider payment id) the refund is recorded as a mock: the row moves to
refund_processing and nothing leaves the process.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.core.exceptions import NoRefundableTransaction
from booking_engine.core.logging import get_logger
from booking_engine.core.metrics import record_refund
from booking_engine.models.booking import Booking
from booking_engine.models.payment_transaction import PaymentTransaction, RefundStatus
from booking_engine.schemas.booking import RefundOutcome
from booking_engine.services.interfaces.payment_provider import PaymentProvider

logger = get_logger(__name__)

DEFAULT_REFUND_REASON = "requested_by_customer"
MOCK_PROVIDER = "mock"


def amount_to_minor_units(amount) -> int:
    return int((Decimal(str(amount or 0)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_provider_refund_status(provider_status: Optional[str]) -> RefundStatus:
    if provider_status in ("pending", "requires_action"):
        return RefundStatus.PROCESSING
    if provider_status == "succeeded":
        return RefundStatus.REFUNDED
    return RefundStatus.INITIATED


async def get_latest_transaction(db: AsyncSession, booking_id: int) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.booking_id == booking_id)
        .order_by(PaymentTransaction.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def initiate_refund_for_booking(
    db: AsyncSession,
    booking: Booking,
    provider: Optional[PaymentProvider],
    reason: Optional[str] = None,
) -> RefundOutcome:
    """
    Start a refund for the booking's latest transaction and commit its new state.

    Raises:
        NoRefundableTransaction: the booking has no transaction at all
        ProviderError: the gateway refused the refund
    """
    tx = await get_latest_transaction(db, booking.id)
    if tx is None:
        raise NoRefundableTransaction()

    reason = reason or DEFAULT_REFUND_REASON

    if provider is None or tx.provider != provider.name or not tx.provider_payment_id:
        tx.refund_status = RefundStatus.INITIATED.value
        tx.status = "refund_processing"
        tx.failure_reason = None
        tx.raw_payload = {"mode": "mock_refund", "reason": reason}
        await db.commit()

        record_refund(MOCK_PROVIDER, RefundStatus.INITIATED.value)
        logger.info("refund_initiated", booking_id=booking.id, provider=MOCK_PROVIDER, transaction_id=tx.id)
        return RefundOutcome(
            provider=MOCK_PROVIDER,
            refund_status=RefundStatus.INITIATED.value,
            message="Refund initiated (mock mode).",
        )

    tx_id = tx.id
    provider_payment_id = tx.provider_payment_id
    # Nothing is held while the gateway is called.
    await db.commit()

    refund = await provider.create_refund(
        provider_payment_id,
        metadata={
            "booking_id": str(booking.id),
            "event_id": str(booking.event_id),
            "user_id": str(booking.user_id),
        },
        reason=reason,
    )

    tx = await db.get(PaymentTransaction, tx_id)
    refund_status = map_provider_refund_status(refund.status)
    tx.provider_refund_id = refund.id
    tx.refund_status = refund_status.value
    tx.status = "refunded" if refund_status == RefundStatus.REFUNDED else "refund_processing"
    tx.failure_reason = None
    tx.raw_payload = refund.raw or {"id": refund.id, "status": refund.status}
    await db.commit()

    record_refund(provider.name, refund_status.value)
    logger.info(
        "refund_initiated",
        booking_id=booking.id,
        provider=provider.name,
        refund_id=refund.id,
        refund_status=refund_status.value,
    )
    return RefundOutcome(
        provider=provider.name,
        refund_status=refund_status.value,
        refund_id=refund.id,
        message="Refund request accepted.",
    )
