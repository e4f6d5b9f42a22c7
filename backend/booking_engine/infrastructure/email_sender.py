"""
Notifier implementations.

SmtpNotifier talks to a real SMTP relay (blocking smtplib, run in a thread).
ConsoleNotifier only logs, and keeps what it sent for inspection.
"""

import asyncio
import smtplib
from collections import deque
from datetime import datetime, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import Deque, Optional

from booking_engine.core.logging import get_logger
from booking_engine.services.interfaces.notifier import Notifier

logger = get_logger(__name__)


class EmailDeliveryError(Exception):
    pass


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        sender: str,
        use_tls: bool = True,
        timeout: float = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    def _build_message(
        self, to: str, subject: str, body: str, attachment_path: Optional[str]
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        if attachment_path:
            data = Path(attachment_path).read_bytes()
            message.add_attachment(
                data, maintype="application", subtype="pdf", filename="ticket.pdf"
            )
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachment_path: Optional[str] = None,
    ) -> None:
        if not to:
            raise EmailDeliveryError("Recipient email is missing")

        message = self._build_message(to, subject, body, attachment_path)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(str(e)) from e

        logger.info("email_sent", to=to, subject=subject, attachment=bool(attachment_path))


class ConsoleNotifier(Notifier):
    """Logs emails instead of sending them. Only the latest `keep_last` are kept in `sent`."""

    def __init__(self, keep_last: int = 100):
        self.sent: Deque[dict] = deque(maxlen=keep_last)

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachment_path: Optional[str] = None,
    ) -> None:
        if not to:
            raise EmailDeliveryError("Recipient email is missing")

        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "body": body,
                "attachment_path": attachment_path,
                "sent_at": datetime.now(timezone.utc),
            }
        )
        logger.info(
            "email_logged",
            to=to,
            subject=subject,
            body=body,
            attachment=attachment_path,
        )
