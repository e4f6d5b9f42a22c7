"""
Outbound notification interface (ticket and cancellation emails).
"""

from abc import ABC, abstractmethod
from typing import Optional


class Notifier(ABC):
    """
    Implementations:
    - SmtpNotifier: real delivery over SMTP
    - ConsoleNotifier: logs the message, for development and tests
    """

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachment_path: Optional[str] = None,
    ) -> None:
        """Deliver one message. Raises on delivery failure."""
        pass
