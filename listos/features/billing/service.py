"""
Billing service orchestrator.

Coordinates provider verification with the webhook reconciler. All
Stripe-specific code is in stripe_provider.py.
"""
import hashlib
import logging
from typing import Mapping, Optional

from listos.core.config import settings
from listos.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
)
from listos.features.billing.reconciler import ReconcileResult, WebhookReconciler
from listos.features.billing.stripe_provider import StripeProvider

logger = logging.getLogger("listos.billing")


def billing_enabled(cfg=None) -> bool:
    """Billing is enabled when Stripe credentials are configured."""
    cfg = cfg or settings
    return bool(cfg.STRIPE_SECRET_KEY and cfg.STRIPE_WEBHOOK_SECRET)


def get_provider(cfg=None) -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    cfg = cfg or settings
    if not billing_enabled(cfg):
        return None
    try:
        return StripeProvider(
            secret_key=cfg.STRIPE_SECRET_KEY,
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
            tolerance=cfg.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except BillingProviderError:
        logger.warning("billing.provider_unavailable")
        return None


def process_webhook_event(
    headers: Mapping[str, str],
    body: bytes,
    provider: Optional[BillingProvider],
    reconciler: WebhookReconciler,
) -> ReconcileResult:
    """
    Verify, normalize and apply one webhook delivery.

    Raises:
        BillingWebhookError: billing disabled, bad signature or payload
        AppError: classified persistence failure after retries
    """
    if provider is None:
        raise BillingWebhookError("Billing not enabled", code="billing_disabled", status_code=503)

    event = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()
    return reconciler.apply(event, payload_hash=payload_hash)
