"""
Post-commit delivery: ticket PDF + email after payment, notice after cancellation.

Everything here runs after the state change is committed. Failures are
reported back to the caller as soft warnings and never undo the payment or
the cancellation.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from booking_engine.core.logging import get_logger
from booking_engine.core.metrics import record_side_effect_failure
from booking_engine.models.booking import Booking
from booking_engine.models.event import Event
from booking_engine.models.user import User
from booking_engine.schemas.booking import RefundOutcome
from booking_engine.services.interfaces.notifier import Notifier
from booking_engine.services.interfaces.ticket_renderer import TicketRenderer

logger = get_logger(__name__)

REFUND_STARTED_LINE = (
    "Your refund has been initiated and the amount will be credited in 3-5 working days."
)
REFUND_FAILED_LINE = (
    "We could not initiate your refund automatically. "
    "Our support team will contact you shortly."
)


@dataclass
class TicketDelivery:
    pdf_path: Optional[str] = None
    email_error: Optional[str] = None

    @property
    def pdf_generated(self) -> bool:
        return self.pdf_path is not None


async def send_ticket(
    renderer: TicketRenderer,
    notifier: Notifier,
    booking: Booking,
    event: Event,
    user: Optional[User],
) -> TicketDelivery:
    delivery = TicketDelivery()

    try:
        delivery.pdf_path = await asyncio.to_thread(renderer.render, booking, event, user)
    except Exception as e:
        record_side_effect_failure("pdf")
        logger.error("ticket_render_failed", booking_id=booking.id, error=str(e))

    name = (user.name if user else None) or ""
    try:
        await notifier.send(
            user.email if user else None,
            "Your Event Ticket",
            f"Hello {name}! Your booking is confirmed. Booking ID: {booking.id}",
            delivery.pdf_path,
        )
    except Exception as e:
        record_side_effect_failure("email")
        delivery.email_error = str(e) or e.__class__.__name__
        logger.error("ticket_email_failed", booking_id=booking.id, error=delivery.email_error)

    return delivery


async def send_cancellation_notice(
    notifier: Notifier,
    user: Optional[User],
    event_title: Optional[str],
    refund: Optional[RefundOutcome],
) -> Optional[str]:
    """Tell the user their paid booking was cancelled. Returns the delivery error, if any."""
    if user is None or not user.email:
        return "Recipient email is missing"

    refund_line = (
        REFUND_FAILED_LINE
        if refund is None or refund.refund_status == "failed"
        else REFUND_STARTED_LINE
    )
    body = (
        f"Hello {user.name or 'Customer'}, we have received your cancellation request for "
        f"\"{event_title or 'the event'}\". As requested, your ticket is cancelled. {refund_line}"
    )
    try:
        await notifier.send(user.email, "Cancellation Confirmed - Refund Initiated", body)
    except Exception as e:
        record_side_effect_failure("email")
        logger.error("cancellation_email_failed", user_id=user.id, error=str(e))
        return str(e) or e.__class__.__name__
    return None
