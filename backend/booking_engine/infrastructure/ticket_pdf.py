"""
PDF tickets rendered with reportlab.
"""

from pathlib import Path
from typing import Optional

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from booking_engine.core.logging import get_logger
from booking_engine.services.interfaces.ticket_renderer import TicketRenderer

logger = get_logger(__name__)


def _or_na(value) -> str:
    return "N/A" if value in (None, "") else str(value)


class PdfTicketRenderer(TicketRenderer):
    def __init__(self, tickets_dir: str):
        self.tickets_dir = Path(tickets_dir)

    def ticket_path(self, booking_id: int) -> Path:
        return self.tickets_dir / f"ticket_{booking_id}.pdf"

    def render(self, booking, event, user=None) -> str:
        if booking is None or event is None:
            raise ValueError("Ticket needs both a booking and its event")

        self.tickets_dir.mkdir(parents=True, exist_ok=True)
        path = self.ticket_path(booking.id)

        event_date: Optional[str] = None
        if event.date is not None:
            event_date = event.date.strftime("%Y-%m-%d %H:%M")

        lines = [
            f"Booking ID: {booking.id}",
            f"Event: {_or_na(event.title)}",
            f"Seats Booked: {_or_na(booking.seats_booked)}",
            f"Date: {_or_na(event_date)}",
            f"Location: {_or_na(event.location)}",
            f"User Email: {_or_na(getattr(user, 'email', None))}",
            f"Payment ID: {_or_na(booking.payment_id)}",
            f"Payment Status: {_or_na(booking.payment_status)}",
        ]

        pdf = canvas.Canvas(str(path), pagesize=A4)
        width, height = A4
        pdf.setTitle(f"Ticket {booking.id}")
        pdf.setFont("Helvetica-Bold", 20)
        pdf.drawCentredString(width / 2, height - 30 * mm, "Event Ticket")

        pdf.setFont("Helvetica", 14)
        y = height - 50 * mm
        for line in lines:
            pdf.drawString(25 * mm, y, line)
            y -= 9 * mm

        pdf.showPage()
        pdf.save()

        logger.info("ticket_rendered", booking_id=booking.id, path=str(path))
        return str(path)
