"""
Billing provider protocol and the normalized webhook event.

Providers verify and translate their deliveries into WebhookEvent so the
reconciler never sees provider-specific payloads.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Protocol

from listos.core.errors import AppError, ErrorKind, ValidationError
from listos.models.subscription import from_epoch

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class WebhookEvent:
    """A payment-provider lifecycle event in provider-neutral form."""
    event_type: str
    external_subscription_id: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    user_id: Optional[str] = None
    event_id: Optional[str] = None
    created: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WebhookEvent":
        """Build from the normalized camelCase delivery shape.

        ``currentPeriodEnd`` and ``created`` are epoch seconds; the owning
        user id travels in ``metadata.userId``.
        """
        event_type = payload.get("eventType")
        if not event_type:
            raise ValidationError("Webhook payload is missing eventType", code="invalid_webhook")
        metadata = dict(payload.get("metadata") or {})
        try:
            period_end = from_epoch(payload.get("currentPeriodEnd"))
            created = from_epoch(payload.get("created"))
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError(f"Invalid webhook timestamp: {exc}", code="invalid_webhook")
        return cls(
            event_type=event_type,
            external_subscription_id=payload.get("externalSubscriptionId"),
            status=payload.get("status"),
            current_period_end=period_end,
            cancel_at_period_end=bool(payload.get("cancelAtPeriodEnd", False)),
            customer_id=payload.get("customerId"),
            price_id=payload.get("priceId"),
            user_id=metadata.get("userId") or metadata.get("user_id"),
            event_id=payload.get("eventId"),
            created=created,
            metadata=metadata,
        )


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification and normalization
    - Pushing cancel-at-period-end changes to the provider
    """

    def handle_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...

    def set_cancel_at_period_end(self, external_subscription_id: str, cancel_at_period_end: bool) -> None:
        """
        Raises:
            BillingProviderError: classified by the underlying failure
        """
        ...


class BillingProviderError(AppError):
    """Provider call failed; ``kind`` reflects the underlying failure."""
    code = "billing_provider_error"
    status_code = 502
    kind = ErrorKind.PAYMENT


class BillingWebhookError(AppError):
    """Webhook delivery could not be verified or parsed."""
    code = "invalid_webhook"
    status_code = 400
    kind = ErrorKind.VALIDATION
