"""
Stripe implementation of PaymentProvider.

The stripe SDK is synchronous, so every network call runs in a worker thread
to keep the event loop free. Responses are converted to plain dicts before
they leave this module; nothing above the gateway sees StripeObject.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import stripe

from booking_engine.core.exceptions import InvalidSignature, ProviderError, WebhookNotConfigured
from booking_engine.core.logging import get_logger
from booking_engine.services.interfaces.payment_provider import (
    PaymentProvider,
    ProviderIntent,
    ProviderRefund,
)

logger = get_logger(__name__)


def _to_dict(obj: Any) -> Dict[str, Any]:
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class StripeGateway(PaymentProvider):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None):
        if not secret_key:
            raise ValueError("Stripe secret key is required")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> ProviderIntent:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.secret_key,
                amount=amount_minor,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error(
                "stripe_intent_failed",
                booking_id=metadata.get("booking_id"),
                error=str(e),
            )
            raise ProviderError(f"Failed to create payment intent: {e.user_message or e}") from e

        payload = _to_dict(intent)
        return ProviderIntent(
            id=payload["id"],
            status=payload.get("status", "created"),
            client_secret=payload.get("client_secret"),
            raw=payload,
        )

    async def create_refund(
        self,
        provider_payment_id: str,
        metadata: Dict[str, str],
        reason: Optional[str] = None,
    ) -> ProviderRefund:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self.secret_key,
                payment_intent=provider_payment_id,
                metadata=metadata,
                reason="requested_by_customer",
            )
        except stripe.StripeError as e:
            logger.error(
                "stripe_refund_failed",
                payment_intent_id=provider_payment_id,
                reason=reason,
                error=str(e),
            )
            raise ProviderError(f"Failed to create refund: {e.user_message or e}") from e

        payload = _to_dict(refund)
        return ProviderRefund(id=payload["id"], status=payload.get("status", ""), raw=payload)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise WebhookNotConfigured()
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            logger.warning("webhook_payload_undecodable", error=str(e))
            raise InvalidSignature("Webhook payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignature(f"Webhook Error: {e}") from e

        try:
            return json.loads(body)
        except ValueError as e:
            raise InvalidSignature("Webhook payload is not valid JSON") from e
