"""
Persistence gateway: the narrow storage interface the engine depends on.

Implementations own every durable write. Calls may fail transiently, so
callers run them under a RetryPolicy.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from listos.models.subscription import NewSubscription, Subscription, SubscriptionPatch
from listos.models.usage_event import NewUsageEvent
from listos.models.user import User, UserIdentity


@dataclass(frozen=True)
class CounterDrift:
    user_id: str
    stored: int
    actual: int


class PersistenceGateway(Protocol):
    # Subscriptions
    def get_active_subscription(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """Return the subscription with status active whose period has not ended."""
        ...

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        ...

    def create_subscription(self, data: NewSubscription) -> Subscription:
        ...

    def update_subscription(self, external_subscription_id: str, patch: SubscriptionPatch) -> Optional[Subscription]:
        """Overwrite the patched fields; ``None`` when no row matches."""
        ...

    def supersede_active_subscriptions(self, user_id: str, keep_external_id: str) -> int:
        ...

    def list_lapsed_subscriptions(
        self, now: datetime, limit: int = 100, *, cancel_pending: Optional[bool] = None
    ) -> List[Subscription]:
        """Active rows past their period end; ``cancel_pending`` filters on the cancel flag."""
        ...

    # Usage
    def record_usage_event(self, event: NewUsageEvent) -> bool:
        """Append ``event``; False when its event_id was already recorded."""
        ...

    def has_usage_event(self, event_id: str) -> bool:
        ...

    def get_usage_count(self, user_id: str) -> int:
        ...

    def increment_denormalized_counter(self, user_id: str) -> Optional[int]:
        ...

    def list_counter_drift(self, limit: int = 100) -> List[CounterDrift]:
        ...

    def rebuild_usage_counter(self, user_id: str) -> int:
        ...

    # Users
    def upsert_user(self, identity: UserIdentity, now: Optional[datetime] = None) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    # Webhook bookkeeping
    def claim_webhook_event(
        self,
        provider_event_id: str,
        event_type: str,
        external_subscription_id: Optional[str] = None,
        payload_hash: Optional[str] = None,
    ) -> bool:
        """True when the event has not been processed successfully before."""
        ...

    def finish_webhook_event(self, provider_event_id: str, outcome: str, error: Optional[str] = None) -> None:
        ...
