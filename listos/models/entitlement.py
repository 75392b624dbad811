"""
Derived entitlement state and the result shapes of entitlement operations.

EntitlementStatus and GenerationDecision are computed on demand and are the
units stored in the entitlement cache. The *Result dataclasses carry expected
business outcomes (quota reached, nothing to cancel) as values instead of
exceptions.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from listos.core.errors import ACTIONS, AppError, ErrorKind
from listos.models.subscription import Subscription, SubscriptionStatus

UNLIMITED = -1


class _Wire(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class UsageSummary(_Wire):
    current: int
    limit: int
    unlimited: bool


class SubscriptionSummary(_Wire):
    id: str
    external_subscription_id: str
    status: SubscriptionStatus
    plan_id: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionSummary":
        return cls(
            id=sub.id,
            external_subscription_id=sub.external_subscription_id,
            status=sub.status,
            plan_id=sub.plan_id,
            current_period_end=sub.current_period_end,
            cancel_at_period_end=sub.cancel_at_period_end,
        )


class EntitlementStatus(_Wire):
    is_active: bool
    is_pro: bool
    subscription: Optional[SubscriptionSummary] = None
    usage: UsageSummary

    @property
    def remaining_uses(self) -> int:
        if self.usage.unlimited:
            return UNLIMITED
        return max(0, self.usage.limit - self.usage.current)


class GenerationDecision(_Wire):
    can_generate: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class _Outcome:
    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def action(self) -> Optional[str]:
        return ACTIONS.get(self.error_kind) if self.error_kind else None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.error_kind is not None:
            data["error_kind"] = self.error_kind.value
            data["action"] = self.action
        return data


@dataclass(frozen=True)
class UsageRecordResult(_Outcome):
    remaining_uses: Optional[int] = None

    @classmethod
    def denied(cls, reason: str) -> "UsageRecordResult":
        return cls(success=False, error=reason, error_kind=ErrorKind.QUOTA_EXCEEDED)

    @classmethod
    def failed(cls, err: AppError) -> "UsageRecordResult":
        return cls(success=False, error=err.user_message, error_kind=err.kind)


@dataclass(frozen=True)
class CancelResult(_Outcome):
    cancel_at: Optional[datetime] = None

    @classmethod
    def failed(cls, err: AppError) -> "CancelResult":
        return cls(success=False, error=err.user_message, error_kind=err.kind)

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.cancel_at is not None:
            data["cancel_at"] = self.cancel_at.isoformat()
        return data


@dataclass(frozen=True)
class ReactivateResult(_Outcome):

    @classmethod
    def failed(cls, err: AppError) -> "ReactivateResult":
        return cls(success=False, error=err.user_message, error_kind=err.kind)
