"""
Tests for the booking lifecycle: reserve, re-request, list, cancel.
"""

import pytest
from sqlalchemy import select

from booking_engine.core.exceptions import AlreadyCancelled, Forbidden, InsufficientSeats, InvalidInput, NotFound
from booking_engine.core.security import ROLE_ADMIN, CurrentUser
from booking_engine.models.booking import Booking, PaymentStatus
from booking_engine.models.payment_transaction import PaymentTransaction
from booking_engine.services import booking_service, payment_service

from conftest import backdate_booking, get_booking, get_event, make_event


@pytest.mark.asyncio
async def test_create_booking_decrements_ledger(session_factory, test_user, test_event):
    async with session_factory() as db:
        result = await booking_service.create_booking(db, test_user.id, test_event.id, 3)

    assert result.amount == 750.0
    assert result.currency == "INR"
    assert result.lock_expires_at is not None
    assert result.existing_lock is False

    event = await get_event(session_factory, test_event.id)
    assert event.available_seats == 7
    booking = await get_booking(session_factory, result.booking_id)
    assert booking.payment_status == PaymentStatus.PENDING.value
    assert booking.seats_booked == 3
    assert booking.booked_at is not None


@pytest.mark.asyncio
async def test_create_booking_unknown_event(session_factory, test_user):
    async with session_factory() as db:
        with pytest.raises(NotFound):
            await booking_service.create_booking(db, test_user.id, 999, 1)


@pytest.mark.asyncio
async def test_create_booking_insufficient_seats(session_factory, test_user):
    event = await make_event(session_factory, total_seats=2)
    async with session_factory() as db:
        with pytest.raises(InsufficientSeats):
            await booking_service.create_booking(db, test_user.id, event.id, 3)

    # Nothing was reserved
    assert (await get_event(session_factory, event.id)).available_seats == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("seats", [0, -2])
async def test_create_booking_rejects_non_positive_seats(session_factory, test_user, test_event, seats):
    async with session_factory() as db:
        with pytest.raises(InvalidInput):
            await booking_service.create_booking(db, test_user.id, test_event.id, seats)


@pytest.mark.asyncio
async def test_re_request_returns_same_lock(session_factory, test_user, test_event):
    async with session_factory() as db:
        first = await booking_service.create_booking(db, test_user.id, test_event.id, 2)
    async with session_factory() as db:
        second = await booking_service.create_booking(db, test_user.id, test_event.id, 2)

    assert second.booking_id == first.booking_id
    assert second.existing_lock is True
    assert second.amount == first.amount
    assert (await get_event(session_factory, test_event.id)).available_seats == 8


@pytest.mark.asyncio
async def test_re_request_after_expiry_creates_new_lock(session_factory, test_user, test_event):
    async with session_factory() as db:
        first = await booking_service.create_booking(db, test_user.id, test_event.id, 2)
    await backdate_booking(session_factory, first.booking_id, minutes=11)

    async with session_factory() as db:
        second = await booking_service.create_booking(db, test_user.id, test_event.id, 2)

    assert second.booking_id != first.booking_id
    assert (await get_booking(session_factory, first.booking_id)).payment_status == "failed"
    # Expired seats came back before the new reservation took its share
    assert (await get_event(session_factory, test_event.id)).available_seats == 8


@pytest.mark.asyncio
async def test_inline_sweep_reclaims_seats_for_next_buyer(session_factory, test_user, other_user):
    event = await make_event(session_factory, total_seats=3)
    async with session_factory() as db:
        stale = await booking_service.create_booking(db, test_user.id, event.id, 3)
    await backdate_booking(session_factory, stale.booking_id, minutes=12)

    async with session_factory() as db:
        fresh = await booking_service.create_booking(db, other_user.id, event.id, 3)

    assert fresh.existing_lock is False
    assert (await get_event(session_factory, event.id)).available_seats == 0


@pytest.mark.asyncio
async def test_list_bookings_with_lock_state_and_payment(
    session_factory, test_user, test_event, caller, notifier, renderer
):
    async with session_factory() as db:
        paid = await booking_service.create_booking(db, test_user.id, test_event.id, 1)
    async with session_factory() as db:
        await payment_service.make_payment(db, paid.booking_id, caller, notifier, renderer)
    second_event = await make_event(session_factory, title="Second Show")
    async with session_factory() as db:
        pending = await booking_service.create_booking(db, test_user.id, second_event.id, 2)

    async with session_factory() as db:
        items = await booking_service.list_user_bookings(db, test_user.id)

    by_id = {item.id: item for item in items}
    assert set(by_id) == {paid.booking_id, pending.booking_id}

    paid_item = by_id[paid.booking_id]
    assert paid_item.payment_status == "paid"
    assert paid_item.lock_expires_at is None
    assert paid_item.payment.provider == "mock"
    assert paid_item.payment.status == "succeeded"
    assert paid_item.event.title == "Test Concert"

    pending_item = by_id[pending.booking_id]
    assert pending_item.lock_expires_at is not None
    assert pending_item.lock_expired is False
    assert pending_item.payment is None


@pytest.mark.asyncio
async def test_list_bookings_sweeps_first(session_factory, test_user, test_event):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 2)
    await backdate_booking(session_factory, created.booking_id, minutes=11)

    async with session_factory() as db:
        items = await booking_service.list_user_bookings(db, test_user.id)

    assert items[0].payment_status == "failed"
    assert (await get_event(session_factory, test_event.id)).available_seats == 10


@pytest.mark.asyncio
async def test_cancel_pending_booking_deletes_row(session_factory, test_user, test_event, caller, provider, notifier):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 4)

    async with session_factory() as db:
        result = await booking_service.cancel_booking(db, created.booking_id, caller, provider, notifier)

    assert result.refund is None
    assert await get_booking(session_factory, created.booking_id) is None
    assert (await get_event(session_factory, test_event.id)).available_seats == 10
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_cancel_failed_booking_does_not_release_twice(
    session_factory, test_user, test_event, caller, provider, notifier
):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 4)
    await backdate_booking(session_factory, created.booking_id, minutes=11)
    async with session_factory() as db:
        await booking_service.list_user_bookings(db, test_user.id)  # sweeps
    assert (await get_event(session_factory, test_event.id)).available_seats == 10

    async with session_factory() as db:
        await booking_service.cancel_booking(db, created.booking_id, caller, provider, notifier)

    assert (await get_event(session_factory, test_event.id)).available_seats == 10


@pytest.mark.asyncio
async def test_cancel_by_stranger_is_forbidden(session_factory, test_user, other_user, test_event, provider, notifier):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 1)

    stranger = CurrentUser(id=other_user.id)
    async with session_factory() as db:
        with pytest.raises(Forbidden):
            await booking_service.cancel_booking(db, created.booking_id, stranger, provider, notifier)
    assert (await get_event(session_factory, test_event.id)).available_seats == 9


@pytest.mark.asyncio
async def test_admin_can_cancel_any_booking(session_factory, test_user, admin_user, test_event, provider, notifier):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 1)

    admin = CurrentUser(id=admin_user.id, role=ROLE_ADMIN)
    async with session_factory() as db:
        await booking_service.cancel_booking(db, created.booking_id, admin, provider, notifier)
    assert (await get_event(session_factory, test_event.id)).available_seats == 10


@pytest.mark.asyncio
async def test_cancel_unknown_booking(session_factory, caller, provider, notifier):
    async with session_factory() as db:
        with pytest.raises(NotFound):
            await booking_service.cancel_booking(db, 404, caller, provider, notifier)


@pytest.mark.asyncio
async def test_book_pay_cancel_scenario(session_factory, test_user, test_event, caller, provider, notifier, renderer):
    """10 seats; book 3, pay, cancel: seats come back, row kept as failed, refund started."""
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 3)
    assert created.amount == 750.0
    assert (await get_event(session_factory, test_event.id)).available_seats == 7

    async with session_factory() as db:
        paid = await payment_service.make_payment(db, created.booking_id, caller, notifier, renderer)
    assert paid.booking.status == "paid"
    assert (await get_event(session_factory, test_event.id)).available_seats == 7

    async with session_factory() as db:
        txs = (await db.execute(select(PaymentTransaction))).scalars().all()
    assert [tx.status for tx in txs] == ["succeeded"]

    async with session_factory() as db:
        cancelled = await booking_service.cancel_booking(db, created.booking_id, caller, provider, notifier)

    assert (await get_event(session_factory, test_event.id)).available_seats == 10
    booking = await get_booking(session_factory, created.booking_id)
    assert booking is not None
    assert booking.payment_status == "failed"

    # Mock payment -> mock refund, even with a gateway configured
    assert cancelled.refund.provider == "mock"
    assert cancelled.refund.refund_status == "initiated"
    assert provider.refunds == []

    async with session_factory() as db:
        tx = (await db.execute(select(PaymentTransaction))).scalars().one()
    assert tx.refund_status == "initiated"
    assert tx.status == "refund_processing"

    subjects = [mail["subject"] for mail in notifier.sent]
    assert subjects == ["Your Event Ticket", "Cancellation Confirmed - Refund Initiated"]
    assert "3-5 working days" in notifier.sent[-1]["body"]


@pytest.mark.asyncio
async def test_cancel_paid_booking_refund_failure_is_reported(
    session_factory, test_user, test_event, caller, provider, notifier
):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 1)
    async with session_factory() as db:
        intent = await payment_service.create_payment_intent(db, created.booking_id, caller, provider)
    # Paid through the gateway (webhook path simulated directly)
    async with session_factory() as db:
        booking = await db.get(Booking, created.booking_id)
        booking.transition_to(PaymentStatus.PAID)
        booking.payment_id = intent.payment_intent_id
        db.add(
            PaymentTransaction(
                booking_id=booking.id,
                provider=provider.name,
                provider_payment_id=intent.payment_intent_id,
                amount=250,
                currency="INR",
                status="succeeded",
            )
        )
        await db.commit()

    provider.fail_refund = True
    async with session_factory() as db:
        result = await booking_service.cancel_booking(db, created.booking_id, caller, provider, notifier)

    # Cancellation stands even though the refund could not be started
    assert result.refund.refund_status == "failed"
    assert (await get_booking(session_factory, created.booking_id)).payment_status == "failed"
    assert (await get_event(session_factory, test_event.id)).available_seats == 10
    assert "could not initiate your refund" in notifier.sent[-1]["body"]


@pytest.mark.asyncio
async def test_second_cancel_of_paid_booking_keeps_refund_trail(
    session_factory, test_user, test_event, caller, provider, notifier, renderer
):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 3)
    async with session_factory() as db:
        await payment_service.make_payment(db, created.booking_id, caller, notifier, renderer)
    async with session_factory() as db:
        await booking_service.cancel_booking(db, created.booking_id, caller, provider, notifier)

    async with session_factory() as db:
        with pytest.raises(AlreadyCancelled):
            await booking_service.cancel_booking(db, created.booking_id, caller, provider, notifier)

    booking = await get_booking(session_factory, created.booking_id)
    assert booking is not None
    assert booking.payment_status == "failed"
    assert (await get_event(session_factory, test_event.id)).available_seats == 10
    async with session_factory() as db:
        txs = (
            await db.execute(
                select(PaymentTransaction).where(PaymentTransaction.booking_id == created.booking_id)
            )
        ).scalars().all()
    assert [tx.refund_status for tx in txs] == ["initiated"]


@pytest.mark.asyncio
async def test_cancel_pending_booking_with_intent_keeps_row(
    session_factory, test_user, test_event, caller, provider, notifier
):
    async with session_factory() as db:
        created = await booking_service.create_booking(db, test_user.id, test_event.id, 2)
    async with session_factory() as db:
        await payment_service.create_payment_intent(db, created.booking_id, caller, provider)

    async with session_factory() as db:
        result = await booking_service.cancel_booking(db, created.booking_id, caller, provider, notifier)

    assert result.refund is None
    assert (await get_booking(session_factory, created.booking_id)).payment_status == "failed"
    assert (await get_event(session_factory, test_event.id)).available_seats == 10
