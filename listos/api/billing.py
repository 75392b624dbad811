"""
Billing webhook route.

- POST /api/billing/webhook: verify a Stripe delivery and reconcile it
"""
from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from listos.api.deps import get_reconciler
from listos.features.billing.reconciler import WebhookReconciler
from listos.features.billing.service import process_webhook_event

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true, "outcome": ..., "event_type": ...}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    # Store writes and retry backoff block; keep them off the event loop
    result = await run_in_threadpool(
        process_webhook_event, headers, body, request.app.state.billing_provider, reconciler
    )
    return {"received": True, **result.to_dict()}
