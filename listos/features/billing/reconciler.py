"""
Webhook reconciler: applies payment-provider lifecycle events to stored
subscriptions.

Every transition is a field-level overwrite keyed by the external
subscription id, so replaying an event leaves state unchanged. Events that
carry a provider event id are additionally deduplicated, and an event older
than the last one applied to its subscription is dropped as stale.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from listos.core.cache import EntitlementCache, invalidate_entitlements
from listos.core.errors import AppError, ValidationError
from listos.core.metrics import webhook_events_total
from listos.core.retry import RetryOptions, RetryPolicy
from listos.features.billing.provider import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    WebhookEvent,
)
from listos.features.persistence.gateway import PersistenceGateway
from listos.models.subscription import (
    NewSubscription,
    Subscription,
    SubscriptionPatch,
    SubscriptionStatus,
)

logger = logging.getLogger("listos.billing.reconciler")


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"
    ACTIVATED = "activated"
    PAST_DUE = "past_due"
    IGNORED = "ignored"      # event type not handled
    SKIPPED = "skipped"      # handled type, nothing to apply it to
    DUPLICATE = "duplicate"  # event id already processed
    STALE = "stale"          # older than the last applied event


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    event_type: str
    external_subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "event_type": self.event_type,
            "external_subscription_id": self.external_subscription_id,
            "status": self.status.value if self.status else None,
        }


class WebhookReconciler:
    def __init__(
        self,
        gateway: PersistenceGateway,
        cache: EntitlementCache,
        *,
        retry: Optional[RetryPolicy] = None,
        ordering_guard: bool = True,
    ):
        self.gateway = gateway
        self.cache = cache
        self.retry = retry or RetryPolicy(RetryOptions(initial_delay=1.0))
        self.ordering_guard = ordering_guard
        self._handlers = {
            SUBSCRIPTION_CREATED: self._upsert,
            SUBSCRIPTION_UPDATED: self._upsert,
            SUBSCRIPTION_DELETED: self._deleted,
            PAYMENT_SUCCEEDED: self._payment(SubscriptionStatus.ACTIVE, ReconcileOutcome.ACTIVATED),
            PAYMENT_FAILED: self._payment(SubscriptionStatus.PAST_DUE, ReconcileOutcome.PAST_DUE),
        }

    @classmethod
    def from_settings(cls, gateway, cache, cfg, *, retry: Optional[RetryPolicy] = None) -> "WebhookReconciler":
        policy = retry or RetryPolicy(
            RetryOptions.from_settings(cfg, initial_delay=cfg.WEBHOOK_RETRY_INITIAL_DELAY_SECONDS)
        )
        return cls(gateway, cache, retry=policy, ordering_guard=cfg.WEBHOOK_ORDERING_GUARD)

    def apply(self, event: WebhookEvent, *, payload_hash: Optional[str] = None) -> ReconcileResult:
        """Apply one event. Failures are recorded against the event id and re-raised."""
        if event.event_id:
            claimed = self.retry.run(
                lambda: self.gateway.claim_webhook_event(
                    event.event_id, event.event_type, event.external_subscription_id, payload_hash
                ),
                name="webhook.claim",
            )
            if not claimed:
                return self._finish(event, ReconcileResult(ReconcileOutcome.DUPLICATE, event.event_type, event.external_subscription_id))

        handler = self._handlers.get(event.event_type)
        if handler is None:
            result = ReconcileResult(ReconcileOutcome.IGNORED, event.event_type, event.external_subscription_id)
        else:
            try:
                result = handler(event)
            except AppError as err:
                logger.error(
                    "webhook.failed",
                    extra={"event_type": event.event_type, "event_id": event.event_id,
                           "subscription_id": event.external_subscription_id,
                           "error_code": err.code, "error_kind": err.kind.value},
                )
                webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": "failed"})
                if event.event_id:
                    self.retry.run(
                        lambda: self.gateway.finish_webhook_event(event.event_id, "failed", error=err.message),
                        name="webhook.finish",
                    )
                raise

        if event.event_id:
            self.retry.run(
                lambda: self.gateway.finish_webhook_event(event.event_id, result.outcome.value),
                name="webhook.finish",
            )
        return self._finish(event, result)

    def _finish(self, event: WebhookEvent, result: ReconcileResult) -> ReconcileResult:
        webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": result.outcome.value})
        level = logging.INFO if result.outcome not in (ReconcileOutcome.IGNORED, ReconcileOutcome.SKIPPED) else logging.WARNING
        logger.log(
            level,
            "webhook.applied",
            extra={
                "event_type": event.event_type,
                "event_id": event.event_id,
                "subscription_id": result.external_subscription_id,
                "user_id": result.user_id,
                "outcome": result.outcome.value,
            },
        )
        return result

    # ===== Transitions =====

    def _lookup(self, event: WebhookEvent) -> Optional[Subscription]:
        if not event.external_subscription_id:
            return None
        return self.retry.run(
            lambda: self.gateway.get_subscription_by_external_id(event.external_subscription_id),
            name="webhook.lookup",
        )

    def _is_stale(self, existing: Subscription, event: WebhookEvent) -> bool:
        return (
            self.ordering_guard
            and event.created is not None
            and existing.last_event_at is not None
            and event.created < existing.last_event_at
        )

    def _upsert(self, event: WebhookEvent) -> ReconcileResult:
        if not event.external_subscription_id:
            raise ValidationError(f"{event.event_type} without a subscription id", code="invalid_webhook")
        status = SubscriptionStatus.from_provider(event.status)
        existing = self._lookup(event)

        if existing is None:
            if not event.user_id:
                logger.warning(
                    "webhook.missing_user",
                    extra={"event_type": event.event_type, "subscription_id": event.external_subscription_id},
                )
                return ReconcileResult(ReconcileOutcome.SKIPPED, event.event_type, event.external_subscription_id)
            created = self.retry.run(
                lambda: self.gateway.create_subscription(
                    NewSubscription(
                        user_id=event.user_id,
                        external_subscription_id=event.external_subscription_id,
                        status=status,
                        current_period_end=event.current_period_end,
                        cancel_at_period_end=event.cancel_at_period_end,
                        external_customer_id=event.customer_id,
                        price_id=event.price_id,
                        last_event_at=event.created,
                    )
                ),
                name="webhook.create",
            )
            self._after_write(created.user_id, created.external_subscription_id, status)
            return ReconcileResult(ReconcileOutcome.CREATED, event.event_type, created.external_subscription_id, created.user_id, status)

        if self._is_stale(existing, event):
            return ReconcileResult(ReconcileOutcome.STALE, event.event_type, existing.external_subscription_id, existing.user_id, existing.status)

        patch = SubscriptionPatch(
            status=status,
            current_period_end=event.current_period_end,
            cancel_at_period_end=event.cancel_at_period_end,
            external_customer_id=event.customer_id,
            price_id=event.price_id,
            last_event_at=event.created,
        )
        self._patch(existing, patch)
        return ReconcileResult(ReconcileOutcome.UPDATED, event.event_type, existing.external_subscription_id, existing.user_id, status)

    def _deleted(self, event: WebhookEvent) -> ReconcileResult:
        existing = self._lookup(event)
        if existing is None:
            return ReconcileResult(ReconcileOutcome.SKIPPED, event.event_type, event.external_subscription_id)
        if self._is_stale(existing, event):
            return ReconcileResult(ReconcileOutcome.STALE, event.event_type, existing.external_subscription_id, existing.user_id, existing.status)
        self._patch(existing, SubscriptionPatch(status=SubscriptionStatus.CANCELED, last_event_at=event.created))
        return ReconcileResult(ReconcileOutcome.CANCELED, event.event_type, existing.external_subscription_id, existing.user_id, SubscriptionStatus.CANCELED)

    def _payment(self, status: SubscriptionStatus, outcome: ReconcileOutcome) -> Callable[[WebhookEvent], ReconcileResult]:
        def handle(event: WebhookEvent) -> ReconcileResult:
            existing = self._lookup(event)
            if existing is None:
                return ReconcileResult(ReconcileOutcome.SKIPPED, event.event_type, event.external_subscription_id)
            if self._is_stale(existing, event):
                return ReconcileResult(ReconcileOutcome.STALE, event.event_type, existing.external_subscription_id, existing.user_id, existing.status)
            self._patch(existing, SubscriptionPatch(status=status, last_event_at=event.created))
            return ReconcileResult(outcome, event.event_type, existing.external_subscription_id, existing.user_id, status)

        return handle

    def _patch(self, existing: Subscription, patch: SubscriptionPatch) -> None:
        external_id = existing.external_subscription_id
        self.retry.run(lambda: self.gateway.update_subscription(external_id, patch), name="webhook.update")
        self._after_write(existing.user_id, external_id, patch.status)

    def _after_write(self, user_id: str, external_id: str, status: Optional[SubscriptionStatus]) -> None:
        if status == SubscriptionStatus.ACTIVE:
            superseded = self.retry.run(
                lambda: self.gateway.supersede_active_subscriptions(user_id, external_id),
                name="webhook.supersede",
            )
            if superseded:
                logger.info("webhook.superseded", extra={"user_id": user_id, "subscription_id": external_id})
        self.retry.run(lambda: invalidate_entitlements(self.cache, user_id), name="webhook.invalidate")
