"""
Stripe webhook adapter.

Verifies the Stripe-Signature header and maps checkout.session.completed
events onto the payment reconciliation contract. Transport concerns stay
here; shelfwise.core.payments never sees a Stripe object.
"""
from typing import Any, Dict, Optional

import stripe
import structlog

from shelfwise.core.payments import CheckoutSessionEvent

logger = structlog.get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class WebhookError(Exception):
    """Raised when webhook verification or parsing fails."""

    pass


class StripeWebhookAdapter:
    """
    Turns verified Stripe events into CheckoutSessionEvent payloads.

    Features:
    - Signature verification using the webhook signing secret
    - Event type filtering (only checkout.session.completed is reconciled)
    """

    def __init__(self, webhook_secret: Optional[str]):
        """
        Initialize adapter.

        Args:
            webhook_secret: Stripe webhook signing secret
        """
        self.webhook_secret = webhook_secret

    def verify_signature(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Verified event as a plain dict

        Raises:
            WebhookError: If signature verification fails
        """
        if not self.webhook_secret:
            raise WebhookError("Stripe webhook secret is not configured")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {str(e)}")
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError(f"Invalid webhook payload: {str(e)}")

        logger.info("webhook_signature_verified", event_id=event["id"], event_type=event["type"])
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)

    @staticmethod
    def to_checkout_event(event: Dict[str, Any]) -> Optional[CheckoutSessionEvent]:
        """
        Map a Stripe event to the reconciliation contract.

        Args:
            event: Verified Stripe event

        Returns:
            Optional[CheckoutSessionEvent]: None for event types that are not reconciled

        Raises:
            WebhookError: If a checkout event is malformed
        """
        if event.get("type") != CHECKOUT_COMPLETED:
            logger.info("webhook_event_ignored", event_type=event.get("type"))
            return None

        session = event.get("data", {}).get("object", {})
        try:
            return CheckoutSessionEvent.model_validate(
                {
                    "sessionId": session["id"],
                    "paymentIntentId": session.get("payment_intent"),
                    "amountPaidCents": session.get("amount_total") or 0,
                    "status": session.get("payment_status", ""),
                    "metadata": session.get("metadata") or None,
                }
            )
        except (KeyError, ValueError) as e:
            logger.error("webhook_checkout_session_invalid", error=str(e))
            raise WebhookError(f"Malformed checkout session: {str(e)}")
