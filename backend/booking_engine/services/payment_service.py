"""
Payment reconciliation: mock pay, provider intents, webhooks, refunds.

Every path that honours a payment converges on the same rules:
  - only a pending booking whose lock window is still open can become paid
  - an expired lock is released (seats back, booking failed) and committed
    before the caller gets LockExpired, so the next request sees the seats
  - the provider, the PDF renderer and the mailer are only called after commit

Lock order matches the rest of the engine: scoped sweep, event row, booking row.
"""

import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.core.config import get_settings
from booking_engine.core.exceptions import (
    AlreadyPaid,
    BookingEngineError,
    Forbidden,
    LockExpired,
    NotFound,
    NotPayable,
    ProviderNotConfigured,
    RefundInProgress,
    WebhookNotConfigured,
)
from booking_engine.core.logging import get_logger
from booking_engine.core.metrics import record_payment, record_side_effect_failure, record_webhook
from booking_engine.core.security import CurrentUser
from booking_engine.db.base import utcnow
from booking_engine.models.booking import Booking, PaymentStatus
from booking_engine.models.event import Event
from booking_engine.models.payment_transaction import PaymentTransaction, RefundStatus
from booking_engine.schemas.payment import (
    IntentResponse,
    PaidBookingSummary,
    PaymentResponse,
    PaymentStatusResponse,
    RefundResponse,
)
from booking_engine.services import fulfillment, refund_service, seat_ledger
from booking_engine.services.booking_service import booking_amount
from booking_engine.services.interfaces import Notifier, PaymentProvider, TicketRenderer
from booking_engine.services.refund_service import amount_to_minor_units, get_latest_transaction
from booking_engine.services.seat_lock import SeatLockPolicy, release_expired_locks

logger = get_logger(__name__)

MOCK_PROVIDER = "mock"

INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = "payment_intent.payment_failed"
REFUND_EVENTS = ("charge.refunded", "refund.updated")
OPEN_REFUND_STATUSES = (
    RefundStatus.INITIATED.value,
    RefundStatus.PROCESSING.value,
    RefundStatus.REFUNDED.value,
)


def _owned_booking_check(booking: Optional[Booking], caller: Optional[CurrentUser]) -> Booking:
    if booking is None:
        raise NotFound("Booking not found")
    if caller is not None and not caller.can_access(booking.user_id):
        raise Forbidden()
    return booking


async def _lock_payable_booking(
    db: AsyncSession,
    booking_id: int,
    caller: Optional[CurrentUser],
    policy: SeatLockPolicy,
) -> Tuple[Booking, Event]:
    """
    Sweep, lock event and booking, and check the booking can still be paid.

    Returns with both rows locked and the transaction open. Raises with the
    transaction rolled back, except for LockExpired which commits the release
    first.
    """
    booking = _owned_booking_check(await db.get(Booking, booking_id), caller)

    await release_expired_locks(db, event_id=booking.event_id, policy=policy)
    event = await seat_ledger.lock_event(db, booking.event_id)
    booking = await seat_ledger.lock_booking(db, booking_id)

    if booking is None or event is None:
        await db.rollback()
        raise NotFound("Booking not found")

    if booking.payment_status == PaymentStatus.PAID.value:
        await db.rollback()
        raise AlreadyPaid()

    if booking.payment_status == PaymentStatus.FAILED.value:
        lock_elapsed = (
            not booking.payment_id
            and policy.expires_at(booking.booked_at) is not None
            and policy.expires_at(booking.booked_at) <= utcnow()
        )
        # Keep whatever the sweep just released.
        await db.commit()
        if lock_elapsed:
            raise LockExpired()
        raise NotPayable()

    if policy.is_expired(booking):
        seat_ledger.release_seats(event, booking.seats_booked)
        booking.transition_to(PaymentStatus.FAILED)
        await db.commit()
        logger.info(
            "seat_lock_expired_on_payment",
            booking_id=booking.id,
            event_id=event.id,
            seats_released=booking.seats_booked,
        )
        raise LockExpired()

    return booking, event


async def make_payment(
    db: AsyncSession,
    booking_id: int,
    caller: CurrentUser,
    notifier: Notifier,
    renderer: TicketRenderer,
    policy: Optional[SeatLockPolicy] = None,
) -> PaymentResponse:
    """
    Direct (mock) payment: mark the booking paid, then send the ticket.
    """
    policy = policy or SeatLockPolicy.from_settings()

    try:
        booking, event = await _lock_payable_booking(db, booking_id, caller, policy)
    except LockExpired:
        record_payment(MOCK_PROVIDER, "lock_expired")
        raise

    booking.transition_to(PaymentStatus.PAID)
    booking.payment_id = str(uuid.uuid4())
    db.add(
        PaymentTransaction(
            booking_id=booking.id,
            user_id=booking.user_id,
            event_id=booking.event_id,
            provider=MOCK_PROVIDER,
            provider_payment_id=booking.payment_id,
            amount=booking_amount(event.price, booking.seats_booked),
            currency=get_settings().DEFAULT_CURRENCY,
            status="succeeded",
            refund_status=RefundStatus.NONE.value,
        )
    )
    await db.commit()

    record_payment(MOCK_PROVIDER, "succeeded")
    logger.info(
        "payment_succeeded",
        booking_id=booking.id,
        provider=MOCK_PROVIDER,
        payment_id=booking.payment_id,
    )

    delivery = await fulfillment.send_ticket(renderer, notifier, booking, event, booking.user)

    summary = PaidBookingSummary(
        id=booking.id,
        event_title=event.title or "N/A",
        status=booking.payment_status,
    )
    if delivery.email_error:
        return PaymentResponse(
            message="Payment successful but ticket email failed to send",
            payment_id=booking.payment_id,
            booking=summary,
            email_error=delivery.email_error,
            pdf_generated=delivery.pdf_generated,
        )
    return PaymentResponse(
        message="Payment successful, ticket sent to email",
        payment_id=booking.payment_id,
        booking=summary,
        pdf_generated=delivery.pdf_generated,
    )


async def create_payment_intent(
    db: AsyncSession,
    booking_id: int,
    caller: CurrentUser,
    provider: Optional[PaymentProvider],
    policy: Optional[SeatLockPolicy] = None,
) -> IntentResponse:
    """
    Stage a provider payment for a pending booking.

    The booking stays pending; the webhook decides the outcome.
    """
    if provider is None:
        raise ProviderNotConfigured("Payment provider is not configured. Set STRIPE_SECRET_KEY.")

    policy = policy or SeatLockPolicy.from_settings()
    settings = get_settings()

    try:
        booking, event = await _lock_payable_booking(db, booking_id, caller, policy)
    except LockExpired:
        record_payment(provider.name, "lock_expired")
        raise

    amount = booking_amount(event.price, booking.seats_booked)
    metadata = {
        "booking_id": str(booking.id),
        "user_id": str(booking.user_id),
        "event_id": str(booking.event_id),
    }
    # Release the row locks before talking to the provider.
    await db.commit()

    intent = await provider.create_intent(
        amount_to_minor_units(amount), settings.DEFAULT_CURRENCY, metadata
    )

    db.add(
        PaymentTransaction(
            booking_id=booking.id,
            user_id=booking.user_id,
            event_id=booking.event_id,
            provider=provider.name,
            provider_payment_id=intent.id,
            amount=amount,
            currency=settings.DEFAULT_CURRENCY,
            status=intent.status,
            refund_status=RefundStatus.NONE.value,
            raw_payload=intent.raw or None,
        )
    )
    await db.commit()

    record_payment(provider.name, "intent_created")
    logger.info(
        "payment_intent_created",
        booking_id=booking.id,
        provider=provider.name,
        payment_intent_id=intent.id,
    )
    return IntentResponse(
        booking_id=booking.id,
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        status=intent.status,
        amount=float(amount),
        amount_minor=amount_to_minor_units(amount),
        currency=settings.DEFAULT_CURRENCY,
    )


def _metadata_booking_id(obj: Dict[str, Any]) -> Optional[int]:
    metadata = obj.get("metadata") or {}
    try:
        booking_id = int(metadata.get("booking_id") or 0)
    except (TypeError, ValueError):
        return None
    return booking_id or None


async def _lock_booking_for_webhook(
    db: AsyncSession, booking_id: int
) -> Tuple[Optional[Booking], Optional[Event]]:
    """
    Sweep the booking's event, then lock event and booking.

    An expired lock is failed here, before the caller looks at the status, so
    a payment landing on it takes the same path whether or not the background
    sweep got there first.
    """
    booking = await db.get(Booking, booking_id)
    if booking is None:
        return None, None
    await release_expired_locks(db, event_id=booking.event_id, trigger="webhook")
    event = await seat_ledger.lock_event(db, booking.event_id)
    booking = await seat_ledger.lock_booking(db, booking_id)
    return booking, event


async def _mark_payment_succeeded(
    db: AsyncSession,
    booking_id: int,
    intent: Dict[str, Any],
    provider: PaymentProvider,
    notifier: Notifier,
    renderer: TicketRenderer,
) -> str:
    intent_id = intent.get("id")
    booking, event = await _lock_booking_for_webhook(db, booking_id)
    if booking is None:
        await db.rollback()
        logger.warning("webhook_booking_not_found", booking_id=booking_id, payment_intent_id=intent_id)
        return "unknown_booking"

    if booking.payment_status == PaymentStatus.PAID.value and booking.payment_id == intent_id:
        await db.rollback()
        logger.info("webhook_duplicate_ignored", booking_id=booking_id, payment_intent_id=intent_id)
        return "duplicate"

    late_payment = booking.payment_status != PaymentStatus.PENDING.value
    if not late_payment:
        booking.transition_to(PaymentStatus.PAID)
        booking.payment_id = intent_id or booking.payment_id or str(uuid.uuid4())

    db.add(
        PaymentTransaction(
            booking_id=booking.id,
            user_id=booking.user_id,
            event_id=booking.event_id,
            provider=provider.name,
            provider_payment_id=intent_id or booking.payment_id,
            amount=booking_amount(event.price if event else 0, booking.seats_booked),
            currency=get_settings().DEFAULT_CURRENCY,
            status="succeeded",
            refund_status=RefundStatus.NONE.value,
            raw_payload=intent,
        )
    )
    await db.commit()

    if late_payment:
        # The lock was already released (and the seats possibly resold), so
        # the money goes back instead of the booking coming back.
        record_payment(provider.name, "late_refunded")
        logger.warning(
            "payment_for_inactive_booking",
            booking_id=booking.id,
            booking_status=booking.payment_status,
            payment_intent_id=intent_id,
        )
        try:
            await refund_service.initiate_refund_for_booking(
                db, booking, provider, reason="lock_expired_before_payment"
            )
        except Exception as e:
            await db.rollback()
            record_side_effect_failure("refund")
            logger.error("late_payment_refund_failed", booking_id=booking.id, error=str(e))
        return "late_payment"

    record_payment(provider.name, "succeeded")
    logger.info("payment_succeeded", booking_id=booking.id, provider=provider.name, payment_id=intent_id)
    await fulfillment.send_ticket(renderer, notifier, booking, event, booking.user)
    return "processed"


async def _mark_payment_failed(
    db: AsyncSession,
    booking_id: int,
    intent: Dict[str, Any],
    provider: PaymentProvider,
) -> str:
    reason = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
    booking, event = await _lock_booking_for_webhook(db, booking_id)
    if booking is None:
        await db.rollback()
        logger.warning("webhook_booking_not_found", booking_id=booking_id, payment_intent_id=intent.get("id"))
        return "unknown_booking"

    if booking.payment_status == PaymentStatus.PENDING.value:
        if event is not None:
            seat_ledger.release_seats(event, booking.seats_booked)
        booking.transition_to(PaymentStatus.FAILED)

    db.add(
        PaymentTransaction(
            booking_id=booking.id,
            user_id=booking.user_id,
            event_id=booking.event_id,
            provider=provider.name,
            provider_payment_id=intent.get("id"),
            amount=booking_amount(event.price if event else 0, booking.seats_booked),
            currency=get_settings().DEFAULT_CURRENCY,
            status="failed",
            refund_status=RefundStatus.NONE.value,
            failure_reason=reason,
            raw_payload=intent,
        )
    )
    await db.commit()

    record_payment(provider.name, "failed")
    logger.info("payment_failed", booking_id=booking.id, provider=provider.name, reason=reason)
    return "processed"


def _map_refund_update(provider_status: Optional[str]) -> Tuple[RefundStatus, str]:
    if provider_status == "succeeded":
        return RefundStatus.REFUNDED, "refunded"
    if provider_status == "failed":
        return RefundStatus.FAILED, "refund_failed"
    return RefundStatus.PROCESSING, "refund_processing"


async def _apply_refund_update(db: AsyncSession, obj: Dict[str, Any]) -> str:
    payment_intent_id = obj.get("payment_intent") or obj.get("payment_intent_id")
    if not payment_intent_id:
        return "ignored"

    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.provider_payment_id == payment_intent_id)
        .order_by(PaymentTransaction.id.desc())
        .limit(1)
    )
    tx = result.scalar_one_or_none()
    if tx is None:
        logger.warning(
            "refund_update_unmatched",
            payment_intent_id=payment_intent_id,
            object_id=obj.get("id"),
        )
        return "unmatched"

    refund_status, tx_status = _map_refund_update(obj.get("status"))
    if obj.get("object") == "refund" and obj.get("id"):
        tx.provider_refund_id = obj["id"]
    tx.refund_status = refund_status.value
    tx.status = tx_status
    tx.failure_reason = obj.get("failure_reason") or tx.failure_reason
    tx.raw_payload = obj
    await db.commit()

    logger.info(
        "refund_status_updated",
        transaction_id=tx.id,
        booking_id=tx.booking_id,
        refund_status=refund_status.value,
    )
    return "processed"


async def handle_webhook(
    db: AsyncSession,
    payload: bytes,
    signature: Optional[str],
    provider: Optional[PaymentProvider],
    notifier: Notifier,
    renderer: TicketRenderer,
) -> None:
    """
    Verify and apply one provider webhook delivery.

    Safe to replay: every branch re-checks booking state under lock.

    Raises:
        WebhookNotConfigured / InvalidSignature: 400, the provider should not retry
        HTTPException(500): unexpected failure, the provider retries
    """
    if provider is None:
        raise WebhookNotConfigured()

    try:
        event = provider.construct_event(payload, signature)
    except BookingEngineError:
        record_webhook("unverified", "invalid_signature")
        raise

    event_type = event.get("type") or "unknown"
    obj = (event.get("data") or {}).get("object") or {}

    try:
        if event_type == INTENT_SUCCEEDED:
            booking_id = _metadata_booking_id(obj)
            result = (
                await _mark_payment_succeeded(db, booking_id, obj, provider, notifier, renderer)
                if booking_id
                else "ignored"
            )
        elif event_type == INTENT_FAILED:
            booking_id = _metadata_booking_id(obj)
            result = await _mark_payment_failed(db, booking_id, obj, provider) if booking_id else "ignored"
        elif event_type in REFUND_EVENTS:
            result = await _apply_refund_update(db, obj)
        else:
            result = "ignored"
    except Exception as e:
        await db.rollback()
        record_webhook(event_type, "error")
        logger.exception("webhook_processing_failed", event_type=event_type, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    record_webhook(event_type, result)
    logger.info("webhook_processed", event_type=event_type, event_id=event.get("id"), result=result)


async def request_refund(
    db: AsyncSession,
    booking_id: int,
    caller: CurrentUser,
    provider: Optional[PaymentProvider],
    reason: Optional[str] = None,
) -> RefundResponse:
    booking = _owned_booking_check(await db.get(Booking, booking_id), caller)
    if booking.payment_status != PaymentStatus.PAID.value:
        raise NotPayable("Only paid bookings can be refunded")

    # A failed refund may be retried; anything else is already on its way.
    tx = await get_latest_transaction(db, booking.id)
    if tx is not None and tx.refund_status in OPEN_REFUND_STATUSES:
        raise RefundInProgress()

    outcome = await refund_service.initiate_refund_for_booking(db, booking, provider, reason)
    return RefundResponse(booking_id=booking.id, **outcome.model_dump())


async def get_payment_status(
    db: AsyncSession,
    booking_id: int,
    caller: CurrentUser,
) -> PaymentStatusResponse:
    booking = _owned_booking_check(await db.get(Booking, booking_id), caller)

    tx = await get_latest_transaction(db, booking.id)
    if tx is None:
        raise NotFound("No transaction found for this booking")

    return PaymentStatusResponse(
        booking_id=booking.id,
        payment_status=booking.payment_status,
        provider=tx.provider,
        provider_payment_id=tx.provider_payment_id,
        provider_refund_id=tx.provider_refund_id,
        amount=float(Decimal(str(tx.amount))),
        currency=tx.currency,
        status=tx.status,
        refund_status=tx.refund_status,
        failure_reason=tx.failure_reason,
        updated_at=tx.updated_at,
    )
