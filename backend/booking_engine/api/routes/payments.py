"""
Payment endpoints: mock pay, provider intent, webhook, refund, status.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.core.security import CurrentUser, get_current_user
from booking_engine.db.session import get_db
from booking_engine.schemas.payment import (
    IntentResponse,
    PaymentResponse,
    PaymentStatusResponse,
    PayRequest,
    RefundRequest,
    RefundResponse,
    WebhookAck,
)
from booking_engine.services import payment_service
from booking_engine.services.interfaces import Notifier, PaymentProvider, TicketRenderer
from booking_engine.services.strategy_factory import (
    get_notifier,
    get_payment_provider,
    get_ticket_renderer,
)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/pay", response_model=PaymentResponse)
async def pay(
    payload: PayRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    renderer: TicketRenderer = Depends(get_ticket_renderer),
):
    """Confirm a pending booking without a gateway and email the ticket."""
    return await payment_service.make_payment(db, payload.booking_id, user, notifier, renderer)


@router.post("/intent", response_model=IntentResponse)
async def create_intent(
    payload: PayRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
):
    """Create a provider payment intent; confirm it client-side with the secret."""
    return await payment_service.create_payment_intent(db, payload.booking_id, user, provider)


@router.post("/webhook", response_model=WebhookAck)
async def webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
    notifier: Notifier = Depends(get_notifier),
    renderer: TicketRenderer = Depends(get_ticket_renderer),
):
    """Provider callback. The raw body is needed for signature verification."""
    payload = await request.body()
    await payment_service.handle_webhook(db, payload, stripe_signature, provider, notifier, renderer)
    return WebhookAck()


@router.post("/refund/{booking_id}", response_model=RefundResponse)
async def request_refund(
    booking_id: int,
    payload: Optional[RefundRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
):
    reason = payload.reason if payload else None
    return await payment_service.request_refund(db, booking_id, user, provider, reason)


@router.get("/status/{booking_id}", response_model=PaymentStatusResponse)
async def payment_status(
    booking_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.get_payment_status(db, booking_id, user)
