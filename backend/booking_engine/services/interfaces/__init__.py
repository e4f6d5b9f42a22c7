"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .notifier import Notifier
from .payment_provider import PaymentProvider, ProviderIntent, ProviderRefund
from .ticket_renderer import TicketRenderer

__all__ = ['Notifier', 'PaymentProvider', 'ProviderIntent', 'ProviderRefund', 'TicketRenderer']
