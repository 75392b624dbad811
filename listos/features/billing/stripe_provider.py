"""
Stripe billing provider.

Verifies webhook signatures with the Stripe SDK and normalizes subscription
and invoice events into WebhookEvent. Both the legacy and the current Stripe
API payload layouts are understood (period end and subscription id moved
into nested objects in newer API versions).
"""
import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

import stripe

from listos.core.errors import classify_error
from listos.features.billing.provider import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    BillingProviderError,
    BillingWebhookError,
    WebhookEvent,
)
from listos.models.subscription import from_epoch

logger = logging.getLogger("listos.billing.stripe")

DEFAULT_TOLERANCE_SECONDS = 300
INVOICE_EVENTS = (PAYMENT_SUCCEEDED, PAYMENT_FAILED, "invoice.paid")


def _first_item(obj: Mapping[str, Any], key: str) -> Dict[str, Any]:
    items = (obj.get(key) or {}).get("data") or []
    return items[0] if items else {}


def _user_id_from(metadata: Mapping[str, Any]) -> Optional[str]:
    return metadata.get("userId") or metadata.get("user_id")


class StripeProvider:
    """Stripe implementation of the BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        """
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
            tolerance: Maximum signature age in seconds
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.tolerance = tolerance

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured", code="billing_not_configured")

        stripe.api_key = self.secret_key

    def handle_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """Verify the Stripe signature and normalize the event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured", code="billing_not_configured", status_code=503)

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance)
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}", code="invalid_signature")
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        return self._parse_event(event)

    def set_cancel_at_period_end(self, external_subscription_id: str, cancel_at_period_end: bool) -> None:
        try:
            stripe.Subscription.modify(external_subscription_id, cancel_at_period_end=cancel_at_period_end)
        except stripe.StripeError as e:
            raise BillingProviderError(
                f"Stripe subscription update failed: {e}",
                kind=classify_error(e),
                user_message=getattr(e, "user_message", None),
            ) from e
        logger.info(
            "stripe.cancel_flag_updated",
            extra={"subscription_id": external_subscription_id, "status": cancel_at_period_end},
        )

    def _parse_event(self, event: Mapping[str, Any]) -> WebhookEvent:
        """Translate a Stripe event dict into a WebhookEvent."""
        try:
            event_type = event["type"]
            data = event["data"]["object"]
        except (KeyError, TypeError) as e:
            raise BillingWebhookError(f"Malformed Stripe event: missing {e}")

        common = {
            "event_type": event_type,
            "event_id": event.get("id"),
            "created": from_epoch(event.get("created")),
            "customer_id": data.get("customer"),
        }

        if event_type.startswith("customer.subscription."):
            item = _first_item(data, "items")
            metadata = dict(data.get("metadata") or {})
            return WebhookEvent(
                external_subscription_id=data.get("id"),
                status=data.get("status"),
                current_period_end=from_epoch(data.get("current_period_end") or item.get("current_period_end")),
                cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
                price_id=(item.get("price") or {}).get("id"),
                user_id=_user_id_from(metadata),
                metadata=metadata,
                **common,
            )

        if event_type in INVOICE_EVENTS:
            details = ((data.get("parent") or {}).get("subscription_details")) or {}
            legacy = data.get("subscription_details") or {}
            metadata = dict(details.get("metadata") or legacy.get("metadata") or {})
            line = _first_item(data, "lines")
            return WebhookEvent(
                external_subscription_id=data.get("subscription") or details.get("subscription"),
                current_period_end=from_epoch((line.get("period") or {}).get("end")),
                user_id=_user_id_from(metadata),
                metadata=metadata,
                **{**common, "event_type": PAYMENT_SUCCEEDED if event_type == "invoice.paid" else event_type},
            )

        return WebhookEvent(metadata=dict(data.get("metadata") or {}), **common)
