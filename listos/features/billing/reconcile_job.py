"""
Scheduled reconciliation job.

Repairs state that webhooks alone cannot: subscriptions whose scheduled
cancellation has passed without a deletion event, and denormalized usage
counters that drifted from the usage event history.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from listos.core.cache import EntitlementCache, invalidate_entitlements
from listos.core.retry import RetryPolicy
from listos.features.persistence.gateway import PersistenceGateway
from listos.models.subscription import SubscriptionPatch, SubscriptionStatus

logger = logging.getLogger("listos.billing.reconcile")


def run_reconcile_job(
    gateway: PersistenceGateway,
    cache: EntitlementCache,
    now: datetime,
    fix: bool = False,
    limit: int = 100,
    retry: Optional[RetryPolicy] = None,
) -> Dict[str, Any]:
    policy = retry or RetryPolicy()
    issues: List[Dict[str, Any]] = []
    corrections = 0
    touched: Set[str] = set()

    # Separate queries so reported-only renewals never use up the cancellation batch
    due = policy.run(
        lambda: gateway.list_lapsed_subscriptions(now, limit, cancel_pending=True), name="reconcile.cancellations"
    )
    for sub in due:
        issues.append({
            "type": "cancellation_due",
            "subscription_id": sub.external_subscription_id,
            "user_id": sub.user_id,
        })
        if fix:
            policy.run(
                lambda: gateway.update_subscription(
                    sub.external_subscription_id,
                    SubscriptionPatch(status=SubscriptionStatus.EXPIRED),
                ),
                name="reconcile.expire",
            )
            corrections += 1
            touched.add(sub.user_id)

    overdue = policy.run(
        lambda: gateway.list_lapsed_subscriptions(now, limit, cancel_pending=False), name="reconcile.renewals"
    )
    for sub in overdue:
        # Renewal is the provider's call; wait for its webhook
        issues.append({
            "type": "renewal_overdue",
            "subscription_id": sub.external_subscription_id,
            "user_id": sub.user_id,
            "current_period_end": sub.current_period_end.isoformat() if sub.current_period_end else None,
        })

    drifted = policy.run(lambda: gateway.list_counter_drift(limit), name="reconcile.drift")
    for drift in drifted:
        issues.append({
            "type": "counter_drift",
            "user_id": drift.user_id,
            "stored": drift.stored,
            "actual": drift.actual,
        })
        if fix:
            policy.run(lambda: gateway.rebuild_usage_counter(drift.user_id), name="reconcile.rebuild_counter")
            corrections += 1
            touched.add(drift.user_id)

    for user_id in sorted(touched):
        policy.run(lambda: invalidate_entitlements(cache, user_id), name="reconcile.invalidate")

    logger.info(
        "[reconcile] subscriptions and counters",
        extra={"status": "fixed" if fix else "dry_run", "outcome": f"{len(issues)} issues/{corrections} fixed"},
    )
    return {
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "issues": issues,
        "timestamp": now.isoformat(),
    }
