"""
Tests for provider webhook reconciliation.
"""

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from booking_engine.core.exceptions import InvalidSignature, WebhookNotConfigured
from booking_engine.models.payment_transaction import PaymentTransaction
from booking_engine.services import booking_service, payment_service

from conftest import VALID_SIGNATURE, backdate_booking, get_booking, get_event, stripe_event


async def _pending_with_intent(session_factory, user, event, caller, provider, seats=2):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, user.id, event.id, seats)
    async with session_factory() as db:
        intent = await payment_service.create_payment_intent(db, created.booking_id, caller, provider)
    return created.booking_id, intent.payment_intent_id


async def _deliver(session_factory, provider, notifier, renderer, payload, signature=VALID_SIGNATURE):
    async with session_factory() as db:
        await payment_service.handle_webhook(db, payload, signature, provider, notifier, renderer)


async def _transactions(session_factory, booking_id):
    async with session_factory() as db:
        result = await db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.booking_id == booking_id)
            .order_by(PaymentTransaction.id)
        )
        return list(result.scalars().all())


def _intent(intent_id, booking_id, **extra):
    return {"id": intent_id, "object": "payment_intent", "metadata": {"booking_id": str(booking_id)}, **extra}


@pytest.mark.asyncio
async def test_invalid_signature_rejected(session_factory, provider, notifier, renderer):
    payload = stripe_event("payment_intent.succeeded", _intent("pi_x", 1))
    with pytest.raises(InvalidSignature):
        await _deliver(session_factory, provider, notifier, renderer, payload, signature="t=1,v1=forged")


@pytest.mark.asyncio
async def test_webhook_without_provider_rejected(session_factory, notifier, renderer):
    payload = stripe_event("payment_intent.succeeded", _intent("pi_x", 1))
    with pytest.raises(WebhookNotConfigured):
        await _deliver(session_factory, None, notifier, renderer, payload)


@pytest.mark.asyncio
async def test_success_marks_paid_and_sends_ticket(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)

    await _deliver(
        session_factory, provider, notifier, renderer,
        stripe_event("payment_intent.succeeded", _intent(intent_id, booking_id, status="succeeded")),
    )

    booking = await get_booking(session_factory, booking_id)
    assert booking.payment_status == "paid"
    assert booking.payment_id == intent_id
    txs = await _transactions(session_factory, booking_id)
    assert [tx.status for tx in txs] == ["requires_payment_method", "succeeded"]
    assert txs[-1].provider == "fakepay"
    assert renderer.rendered == [booking_id]
    assert notifier.sent[0]["subject"] == "Your Event Ticket"
    assert (await get_event(session_factory, test_event.id)).available_seats == 8


@pytest.mark.asyncio
async def test_duplicate_success_delivery_is_ignored(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)
    payload = stripe_event("payment_intent.succeeded", _intent(intent_id, booking_id))

    await _deliver(session_factory, provider, notifier, renderer, payload)
    await _deliver(session_factory, provider, notifier, renderer, payload)

    assert len(await _transactions(session_factory, booking_id)) == 2
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_success_for_unknown_booking_is_acknowledged(session_factory, provider, notifier, renderer):
    await _deliver(
        session_factory, provider, notifier, renderer,
        stripe_event("payment_intent.succeeded", _intent("pi_ghost", 9999)),
    )
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_success_without_booking_metadata_is_ignored(session_factory, provider, notifier, renderer):
    await _deliver(
        session_factory, provider, notifier, renderer,
        stripe_event("payment_intent.succeeded", {"id": "pi_other", "metadata": {}}),
    )
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_late_success_after_lock_release_is_refunded(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)
    await backdate_booking(session_factory, booking_id, minutes=15)
    async with session_factory() as db:
        await booking_service.list_user_bookings(db, test_user.id)  # sweeps
    assert (await get_event(session_factory, test_event.id)).available_seats == 10

    await _deliver(
        session_factory, provider, notifier, renderer,
        stripe_event("payment_intent.succeeded", _intent(intent_id, booking_id)),
    )

    # The booking stays released; the money goes back.
    assert (await get_booking(session_factory, booking_id)).payment_status == "failed"
    assert (await get_event(session_factory, test_event.id)).available_seats == 10
    assert provider.refunds[0]["payment_intent"] == intent_id
    tx = (await _transactions(session_factory, booking_id))[-1]
    assert tx.provider_refund_id == "re_test_1"
    assert tx.refund_status == "processing"
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_success_on_expired_unswept_lock_is_refunded(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)
    await backdate_booking(session_factory, booking_id, minutes=30)
    # Still pending: nothing has swept it yet.
    assert (await get_booking(session_factory, booking_id)).payment_status == "pending"

    await _deliver(
        session_factory, provider, notifier, renderer,
        stripe_event("payment_intent.succeeded", _intent(intent_id, booking_id)),
    )

    booking = await get_booking(session_factory, booking_id)
    assert booking.payment_status == "failed"
    assert booking.payment_id is None
    assert (await get_event(session_factory, test_event.id)).available_seats == 10
    assert provider.refunds[0]["payment_intent"] == intent_id
    assert renderer.rendered == []
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_failure_releases_seats_once(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    booking_id, intent_id = await _pending_with_intent(
        session_factory, test_user, test_event, caller, provider, seats=3
    )
    assert (await get_event(session_factory, test_event.id)).available_seats == 7

    payload = stripe_event(
        "payment_intent.payment_failed",
        _intent(intent_id, booking_id, last_payment_error={"message": "Insufficient funds"}),
    )
    await _deliver(session_factory, provider, notifier, renderer, payload)

    assert (await get_booking(session_factory, booking_id)).payment_status == "failed"
    assert (await get_event(session_factory, test_event.id)).available_seats == 10
    tx = (await _transactions(session_factory, booking_id))[-1]
    assert tx.status == "failed"
    assert tx.failure_reason == "Insufficient funds"

    # Redelivery: no second release
    await _deliver(session_factory, provider, notifier, renderer, payload)
    assert (await get_event(session_factory, test_event.id)).available_seats == 10


@pytest.mark.asyncio
async def test_failure_without_reason_uses_default(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)
    await _deliver(
        session_factory, provider, notifier, renderer,
        stripe_event("payment_intent.payment_failed", _intent(intent_id, booking_id)),
    )
    tx = (await _transactions(session_factory, booking_id))[-1]
    assert tx.failure_reason == "Payment failed"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "refund_state, refund_status, tx_status",
    [
        ("succeeded", "refunded", "refunded"),
        ("failed", "failed", "refund_failed"),
        ("pending", "processing", "refund_processing"),
    ],
)
async def test_refund_update_maps_states(
    session_factory, test_user, test_event, caller, provider, notifier, renderer,
    refund_state, refund_status, tx_status,
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)
    await _deliver(
        session_factory, provider, notifier, renderer,
        stripe_event("payment_intent.succeeded", _intent(intent_id, booking_id)),
    )

    refund = {
        "id": "re_123",
        "object": "refund",
        "payment_intent": intent_id,
        "status": refund_state,
        "failure_reason": "expired_or_canceled_card" if refund_state == "failed" else None,
    }
    await _deliver(session_factory, provider, notifier, renderer, stripe_event("refund.updated", refund))

    tx = (await _transactions(session_factory, booking_id))[-1]
    assert tx.refund_status == refund_status
    assert tx.status == tx_status
    assert tx.provider_refund_id == "re_123"
    assert tx.raw_payload["id"] == "re_123"
    if refund_state == "failed":
        assert tx.failure_reason == "expired_or_canceled_card"


@pytest.mark.asyncio
async def test_charge_refunded_keeps_refund_id(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)
    charge = {"id": "ch_1", "object": "charge", "payment_intent": intent_id, "status": "succeeded"}
    await _deliver(session_factory, provider, notifier, renderer, stripe_event("charge.refunded", charge))

    tx = (await _transactions(session_factory, booking_id))[-1]
    assert tx.refund_status == "refunded"
    assert tx.provider_refund_id is None


@pytest.mark.asyncio
async def test_unmatched_refund_update_is_acknowledged(session_factory, provider, notifier, renderer):
    refund = {"id": "re_x", "object": "refund", "payment_intent": "pi_unknown", "status": "succeeded"}
    await _deliver(session_factory, provider, notifier, renderer, stripe_event("refund.updated", refund))


@pytest.mark.asyncio
async def test_unexpected_error_returns_500(
    session_factory, test_user, test_event, caller, provider, notifier, renderer, monkeypatch
):
    booking_id, intent_id = await _pending_with_intent(session_factory, test_user, test_event, caller, provider)

    async def explode(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(payment_service, "_mark_payment_succeeded", explode)
    with pytest.raises(HTTPException) as exc_info:
        await _deliver(
            session_factory, provider, notifier, renderer,
            stripe_event("payment_intent.succeeded", _intent(intent_id, booking_id)),
        )
    assert exc_info.value.status_code == 500
    assert (await get_booking(session_factory, booking_id)).payment_status == "pending"
