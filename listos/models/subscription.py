"""
Subscription lifecycle models.

A subscription entitles its owner only while ``status`` is active AND the
billing period has not ended; the two facts are tracked independently.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from listos.core.errors import ValidationError


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def from_epoch(seconds: Optional[float]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(float(seconds), timezone.utc)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "SubscriptionStatus":
        """Normalize a payment-provider status string."""
        status = _PROVIDER_STATUSES.get((raw or "").strip().lower())
        if status is None:
            raise ValidationError(f"Unrecognized subscription status: {raw!r}", code="invalid_status")
        return status


_PROVIDER_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "expired": SubscriptionStatus.EXPIRED,
}

DEFAULT_PLAN_ID = "pro"


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    external_subscription_id: str
    status: SubscriptionStatus
    plan_id: str = DEFAULT_PLAN_ID
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    external_customer_id: Optional[str] = None
    price_id: Optional[str] = None
    last_event_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def within_period(self, now: datetime) -> bool:
        return self.current_period_end is not None and self.current_period_end > now

    def entitles(self, now: datetime) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and self.within_period(now)


class NewSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    external_subscription_id: str
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    plan_id: str = DEFAULT_PLAN_ID
    external_customer_id: Optional[str] = None
    price_id: Optional[str] = None
    last_event_at: Optional[datetime] = None


class SubscriptionPatch(BaseModel):
    """Field-level overwrite; ``None`` leaves a column untouched."""
    model_config = ConfigDict(frozen=True)

    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    external_customer_id: Optional[str] = None
    price_id: Optional[str] = None
    last_event_at: Optional[datetime] = None

    def values(self) -> dict:
        return {k: v for k, v in self.model_dump().items() if v is not None}
