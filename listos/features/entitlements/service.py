"""
Entitlement service: subscription status, usage quota and generation gating.

Reads are read-through cached (``subscription_status`` and ``can_generate``
namespaces). Every write path deletes both entries for the user after the
durable write commits. Writes report expected business outcomes (quota
reached, nothing to cancel) as result values; reads raise an AppError
carrying the failure classification.

Quota enforcement is a soft limit: two concurrent requests from one user can
both pass the fresh re-check before either appends, overshooting by at most
the number of in-flight requests.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from listos.core.cache import (
    CAN_GENERATE,
    SUBSCRIPTION_STATUS,
    EntitlementCache,
    invalidate_entitlements,
)
from listos.core.errors import AppError, CorruptStateError, ErrorKind, ValidationError
from listos.core.logging import log_event
from listos.core.metrics import entitlement_decisions_total, usage_events_recorded_total
from listos.core.retry import RetryOptions, RetryPolicy
from listos.features.billing.provider import BillingProvider
from listos.features.persistence.gateway import PersistenceGateway
from listos.models.entitlement import (
    UNLIMITED,
    CancelResult,
    EntitlementStatus,
    GenerationDecision,
    ReactivateResult,
    SubscriptionSummary,
    UsageRecordResult,
    UsageSummary,
)
from listos.models.subscription import Subscription, SubscriptionPatch, utc_now
from listos.models.usage_event import DocumentType, NewUsageEvent, UsageMetadata

logger = logging.getLogger("listos.entitlements")

FREE_LIMIT = 2
STATUS_TTL_SECONDS = 120
DECISION_TTL_SECONDS = 60

NO_ACTIVE_SUBSCRIPTION = "No active subscription found"
NOT_PENDING_CANCELLATION = "Subscription is not scheduled for cancellation"


def quota_reached_message(limit: int) -> str:
    return f"You have reached the limit of {limit} free documents. Upgrade to Pro for unlimited access."


class EntitlementService:
    def __init__(
        self,
        gateway: PersistenceGateway,
        cache: EntitlementCache,
        *,
        retry: Optional[RetryPolicy] = None,
        provider: Optional[BillingProvider] = None,
        free_limit: int = FREE_LIMIT,
        status_ttl: float = STATUS_TTL_SECONDS,
        decision_ttl: float = DECISION_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.cache = cache
        self.retry = retry or RetryPolicy()
        self.provider = provider
        self.free_limit = free_limit
        self.status_ttl = status_ttl
        self.decision_ttl = decision_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, gateway, cache, cfg, *, retry: Optional[RetryPolicy] = None, provider=None) -> "EntitlementService":
        policy = retry or RetryPolicy(RetryOptions.from_settings(cfg, deadline=cfg.REQUEST_TIMEOUT_SECONDS))
        return cls(
            gateway,
            cache,
            retry=policy,
            provider=provider,
            free_limit=cfg.FREE_LIMIT,
            status_ttl=cfg.STATUS_CACHE_TTL_SECONDS,
            decision_ttl=cfg.CAN_GENERATE_CACHE_TTL_SECONDS,
        )

    # ===== Reads =====

    def get_subscription_status(self, user_id: str) -> EntitlementStatus:
        return self.retry.run(lambda: self._cached_status(user_id), name="get_subscription_status")

    def can_generate_document(self, user_id: str) -> GenerationDecision:
        return self.retry.run(lambda: self._cached_decision(user_id), name="can_generate_document")

    def _cached_status(self, user_id: str) -> EntitlementStatus:
        data = self.cache.get_or_compute(
            SUBSCRIPTION_STATUS,
            user_id,
            lambda: self._compute_status(user_id).model_dump(mode="json"),
            ttl=self.status_ttl,
        )
        return EntitlementStatus.model_validate(data)

    def _cached_decision(self, user_id: str) -> GenerationDecision:
        data = self.cache.get_or_compute(
            CAN_GENERATE,
            user_id,
            lambda: self._decide(self._cached_status(user_id)).model_dump(mode="json"),
            ttl=self.decision_ttl,
        )
        return GenerationDecision.model_validate(data)

    def _compute_status(self, user_id: str) -> EntitlementStatus:
        now = self._clock()
        subscription = self.gateway.get_active_subscription(user_id, now)
        current = self.gateway.get_usage_count(user_id)
        is_active = subscription is not None
        is_pro = is_active and subscription.entitles(now)
        return EntitlementStatus(
            is_active=is_active,
            is_pro=is_pro,
            subscription=SubscriptionSummary.from_subscription(subscription) if subscription else None,
            usage=UsageSummary(
                current=current,
                limit=UNLIMITED if is_pro else self.free_limit,
                unlimited=is_pro,
            ),
        )

    def _decide(self, status: EntitlementStatus) -> GenerationDecision:
        if status.is_pro or status.usage.current < status.usage.limit:
            entitlement_decisions_total.inc(labels={"result": "allowed"})
            return GenerationDecision(can_generate=True)
        entitlement_decisions_total.inc(labels={"result": "denied"})
        return GenerationDecision(can_generate=False, reason=quota_reached_message(status.usage.limit))

    # ===== Writes =====

    def record_document_usage(
        self,
        user_id: str,
        document_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        event_id: Optional[str] = None,
    ) -> UsageRecordResult:
        """Count one generated document against the user's quota.

        ``event_id`` makes the append idempotent; callers retrying the same
        generation should pass the same id.
        """
        try:
            supplied = {k: v for k, v in (metadata or {}).items() if v is not None}
            fields = {
                "user_id": user_id,
                "document_type": DocumentType(document_type),
                "metadata": UsageMetadata(**supplied),
            }
            if event_id:
                fields["event_id"] = event_id
            event = NewUsageEvent(**fields)
        except ValueError as exc:
            return UsageRecordResult.failed(ValidationError(f"Invalid usage event: {exc}", user_message="Invalid document type or metadata."))

        try:
            # Fresh check; the cached decision may predate a concurrent write
            status = self.retry.run(lambda: self._compute_status(user_id), name="record_usage.check")
            # A retried event that was already counted is not re-checked against the quota
            already_counted = bool(event_id) and self.retry.run(
                lambda: self.gateway.has_usage_event(event.event_id), name="record_usage.lookup"
            )
            if not already_counted:
                decision = self._decide(status)
                if not decision.can_generate:
                    log_event("info", "usage.quota_denied", user_id=user_id, error_code="quota_exceeded",
                              extra={"current": status.usage.current, "limit": status.usage.limit})
                    return UsageRecordResult.denied(decision.reason)

            inserted = not already_counted and self.retry.run(
                lambda: self.gateway.record_usage_event(event), name="record_usage.append"
            )
            if inserted:
                usage_events_recorded_total.inc(labels={"document_type": event.document_type.value})
                self._bump_counter(user_id)
            else:
                logger.info("usage.duplicate_event", extra={"user_id": user_id, "event_id": event.event_id})

            self.retry.run(lambda: invalidate_entitlements(self.cache, user_id), name="record_usage.invalidate")
        except AppError as err:
            log_event("warning", "usage.record_failed", user_id=user_id, error_code=err.code,
                      extra={"error_kind": err.kind.value})
            return UsageRecordResult.failed(err)

        return UsageRecordResult(success=True, remaining_uses=self._remaining_after(user_id, status, inserted))

    def _bump_counter(self, user_id: str) -> None:
        try:
            self.retry.run(lambda: self.gateway.increment_denormalized_counter(user_id), name="record_usage.counter")
        except AppError as err:
            # The event row is authoritative; the reconcile job rebuilds the counter
            log_event("warning", "usage.counter_increment_failed", user_id=user_id, error_code=err.code)

    def _remaining_after(self, user_id: str, before: EntitlementStatus, inserted: bool) -> int:
        try:
            return self.retry.run(lambda: self._cached_status(user_id), name="record_usage.recompute").remaining_uses
        except AppError:
            if before.is_pro:
                return UNLIMITED
            return max(0, before.usage.limit - before.usage.current - (1 if inserted else 0))

    def cancel_subscription(self, user_id: str) -> CancelResult:
        """Schedule cancellation at period end; status stays active until then."""
        try:
            subscription = self._active_subscription(user_id, "cancel")
            if subscription is None:
                return CancelResult(success=False, error=NO_ACTIVE_SUBSCRIPTION, error_kind=ErrorKind.VALIDATION)
            updated = self._set_cancel_flag(subscription, True, "cancel")
        except CorruptStateError:
            raise
        except AppError as err:
            log_event("warning", "subscription.cancel_failed", user_id=user_id, error_code=err.code)
            return CancelResult.failed(err)

        log_event("info", "subscription.cancel_scheduled", user_id=user_id, subscription_id=updated.external_subscription_id,
                  extra={"cancel_at": updated.current_period_end})
        return CancelResult(success=True, cancel_at=updated.current_period_end)

    def reactivate_subscription(self, user_id: str) -> ReactivateResult:
        try:
            subscription = self._active_subscription(user_id, "reactivate")
            if subscription is None:
                return ReactivateResult(success=False, error=NO_ACTIVE_SUBSCRIPTION, error_kind=ErrorKind.VALIDATION)
            if not subscription.cancel_at_period_end:
                return ReactivateResult(success=False, error=NOT_PENDING_CANCELLATION, error_kind=ErrorKind.VALIDATION)
            updated = self._set_cancel_flag(subscription, False, "reactivate")
        except CorruptStateError:
            raise
        except AppError as err:
            log_event("warning", "subscription.reactivate_failed", user_id=user_id, error_code=err.code)
            return ReactivateResult.failed(err)

        log_event("info", "subscription.reactivated", user_id=user_id, subscription_id=updated.external_subscription_id)
        return ReactivateResult(success=True)

    def _active_subscription(self, user_id: str, op: str) -> Optional[Subscription]:
        now = self._clock()
        return self.retry.run(lambda: self.gateway.get_active_subscription(user_id, now), name=f"{op}.lookup")

    def _set_cancel_flag(self, subscription: Subscription, flag: bool, op: str) -> Subscription:
        external_id = subscription.external_subscription_id
        if self.provider is not None:
            self.retry.run(lambda: self.provider.set_cancel_at_period_end(external_id, flag), name=f"{op}.provider")
        updated = self.retry.run(
            lambda: self.gateway.update_subscription(external_id, SubscriptionPatch(cancel_at_period_end=flag)),
            name=f"{op}.update",
        )
        if updated is None:
            raise CorruptStateError(f"Subscription {external_id} disappeared during {op}")
        self.retry.run(lambda: invalidate_entitlements(self.cache, subscription.user_id), name=f"{op}.invalidate")
        return updated
