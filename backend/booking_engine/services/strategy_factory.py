"""
Collaborator factory.
Picks the payment gateway, notifier and ticket renderer from configuration.

Each getter is also a FastAPI dependency, so tests swap implementations with
app.dependency_overrides instead of patching modules.
"""

from typing import Optional

from booking_engine.core.config import get_settings
from booking_engine.core.logging import get_logger
from booking_engine.infrastructure.email_sender import ConsoleNotifier, SmtpNotifier
from booking_engine.infrastructure.stripe_gateway import StripeGateway
from booking_engine.infrastructure.ticket_pdf import PdfTicketRenderer
from booking_engine.services.interfaces import Notifier, PaymentProvider, TicketRenderer

logger = get_logger(__name__)


def build_payment_provider() -> Optional[PaymentProvider]:
    """
    Stripe when STRIPE_SECRET_KEY is set, otherwise None.

    None is meaningful: intents are refused, webhooks are refused, and refunds
    take the mock path.
    """
    settings = get_settings()
    if not settings.stripe_enabled:
        return None
    return StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)


def build_notifier() -> Notifier:
    settings = get_settings()
    if settings.smtp_enabled:
        return SmtpNotifier(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            sender=settings.EMAIL_FROM,
            use_tls=settings.SMTP_USE_TLS,
        )
    logger.info("smtp_not_configured", fallback="console")
    return ConsoleNotifier()


# Singleton instances
_provider: Optional[PaymentProvider] = None
_provider_built = False
_notifier: Optional[Notifier] = None
_renderer: Optional[TicketRenderer] = None


def get_payment_provider() -> Optional[PaymentProvider]:
    global _provider, _provider_built
    if not _provider_built:
        _provider = build_payment_provider()
        _provider_built = True
    return _provider


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = build_notifier()
    return _notifier


def get_ticket_renderer() -> TicketRenderer:
    global _renderer
    if _renderer is None:
        _renderer = PdfTicketRenderer(get_settings().TICKETS_DIR)
    return _renderer
