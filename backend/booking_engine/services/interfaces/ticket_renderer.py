"""
Ticket artifact interface.
"""

from abc import ABC, abstractmethod


class TicketRenderer(ABC):

    @abstractmethod
    def render(self, booking, event, user) -> str:
        """
        Render a ticket for a paid booking and return the artifact path.

        Blocking; callers run it off the event loop. Raises ValueError when
        booking or event is missing.
        """
        pass
