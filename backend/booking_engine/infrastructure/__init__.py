"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .email_sender import ConsoleNotifier, EmailDeliveryError, SmtpNotifier
from .redis_client import close_redis, get_redis
from .stripe_gateway import StripeGateway
from .ticket_pdf import PdfTicketRenderer

__all__ = [
    'ConsoleNotifier', 'EmailDeliveryError', 'SmtpNotifier',
    'close_redis', 'get_redis',
    'StripeGateway',
    'PdfTicketRenderer',
]
