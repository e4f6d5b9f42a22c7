"""
Payment provider interface.
The engine only needs three things from a gateway: stage an intent, refund a
captured payment, and turn a signed webhook delivery into an event dict.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ProviderIntent:
    id: str
    status: str
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderRefund:
    id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """
    Interface for payment gateways.

    Implementations:
    - StripeGateway: Stripe PaymentIntents + signed webhooks
    """

    name: str = "provider"

    @abstractmethod
    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> ProviderIntent:
        """
        Stage a payment for client-side confirmation.

        Args:
            amount_minor: Amount in minor currency units (paise, cents)
            currency: ISO currency code
            metadata: Echoed back on webhook events; must carry booking_id

        Raises:
            ProviderError: the gateway rejected or failed the request
        """
        pass

    @abstractmethod
    async def create_refund(
        self,
        provider_payment_id: str,
        metadata: Dict[str, str],
        reason: Optional[str] = None,
    ) -> ProviderRefund:
        """
        Refund a captured payment in full.

        Raises:
            ProviderError: the gateway rejected or failed the request
        """
        pass

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and decode it.

        Raises:
            WebhookNotConfigured: no signing secret is configured
            InvalidSignature: the signature does not match the payload
        """
        pass
