from datetime import datetime, timedelta, timezone

import pytest

from listos.core.cache import CAN_GENERATE, SUBSCRIPTION_STATUS
from listos.core.errors import ValidationError
from listos.core.metrics import webhook_events_total
from listos.features.billing.provider import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    WebhookEvent,
)
from listos.features.billing.reconciler import ReconcileOutcome, WebhookReconciler
from listos.models.subscription import SubscriptionStatus

PERIOD_END = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=30)
T1 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(minutes=5)


@pytest.fixture
def reconciler(gateway, cache, retry):
    return WebhookReconciler(gateway, cache, retry=retry)


def _created(**overrides):
    fields = dict(
        event_type=SUBSCRIPTION_CREATED,
        external_subscription_id="sub_123",
        status="active",
        current_period_end=PERIOD_END,
        customer_id="cus_1",
        price_id="price_pro",
        user_id="user_pro",
    )
    fields.update(overrides)
    return WebhookEvent(**fields)


def _state(sub):
    return sub.model_dump(exclude={"updated_at"})


def test_created_event_stores_subscription(reconciler, gateway):
    result = reconciler.apply(_created())

    assert result.outcome == ReconcileOutcome.CREATED
    assert result.user_id == "user_pro"
    sub = gateway.get_subscription_by_external_id("sub_123")
    assert sub.user_id == "user_pro"
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == PERIOD_END
    assert sub.external_customer_id == "cus_1"
    assert sub.price_id == "price_pro"


def test_created_without_user_is_skipped(reconciler, gateway):
    result = reconciler.apply(_created(user_id=None))

    assert result.outcome == ReconcileOutcome.SKIPPED
    assert gateway.get_subscription_by_external_id("sub_123") is None


def test_updated_event_overwrites_fields(reconciler, gateway, make_subscription):
    make_subscription()
    new_end = PERIOD_END + timedelta(days=30)

    result = reconciler.apply(
        _created(event_type=SUBSCRIPTION_UPDATED, status="past_due", current_period_end=new_end, cancel_at_period_end=True)
    )

    assert result.outcome == ReconcileOutcome.UPDATED
    sub = gateway.get_subscription_by_external_id("sub_123")
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.current_period_end == new_end
    assert sub.cancel_at_period_end is True


def test_deleted_event_cancels_and_invalidates_cache(reconciler, gateway, cache, make_subscription):
    make_subscription(user_id="user_pro")
    cache.set(SUBSCRIPTION_STATUS, "user_pro", {"isPro": True})
    cache.set(CAN_GENERATE, "user_pro", {"canGenerate": True})

    result = reconciler.apply(WebhookEvent(event_type=SUBSCRIPTION_DELETED, external_subscription_id="sub_123"))

    assert result.outcome == ReconcileOutcome.CANCELED
    assert gateway.get_subscription_by_external_id("sub_123").status == SubscriptionStatus.CANCELED
    assert gateway.get_active_subscription("user_pro") is None
    assert cache.get(SUBSCRIPTION_STATUS, "user_pro") is None
    assert cache.get(CAN_GENERATE, "user_pro") is None


@pytest.mark.parametrize(
    "event_type,expected_status,expected_outcome",
    [
        (PAYMENT_SUCCEEDED, SubscriptionStatus.ACTIVE, ReconcileOutcome.ACTIVATED),
        (PAYMENT_FAILED, SubscriptionStatus.PAST_DUE, ReconcileOutcome.PAST_DUE),
    ],
)
def test_payment_events_set_status(reconciler, gateway, make_subscription, event_type, expected_status, expected_outcome):
    make_subscription(status=SubscriptionStatus.PAST_DUE if expected_status == SubscriptionStatus.ACTIVE else SubscriptionStatus.ACTIVE)

    result = reconciler.apply(WebhookEvent(event_type=event_type, external_subscription_id="sub_123"))

    assert result.outcome == expected_outcome
    assert gateway.get_subscription_by_external_id("sub_123").status == expected_status


def test_unknown_subscription_is_skipped(reconciler):
    result = reconciler.apply(WebhookEvent(event_type=PAYMENT_FAILED, external_subscription_id="sub_unknown"))
    assert result.outcome == ReconcileOutcome.SKIPPED


def test_unhandled_event_type_is_ignored(reconciler):
    result = reconciler.apply(WebhookEvent(event_type="customer.created"))

    assert result.outcome == ReconcileOutcome.IGNORED
    assert webhook_events_total.value({"event_type": "customer.created", "outcome": "ignored"}) == 1.0


def test_replaying_an_event_is_idempotent(reconciler, gateway):
    event = _created(event_type=SUBSCRIPTION_UPDATED, cancel_at_period_end=True)
    reconciler.apply(_created())

    reconciler.apply(event)
    once = _state(gateway.get_subscription_by_external_id("sub_123"))
    reconciler.apply(event)
    twice = _state(gateway.get_subscription_by_external_id("sub_123"))

    assert once == twice


def test_duplicate_event_id_is_not_reapplied(reconciler, gateway):
    first = reconciler.apply(_created(event_id="evt_1"))
    second = reconciler.apply(_created(event_id="evt_1"))

    assert first.outcome == ReconcileOutcome.CREATED
    assert second.outcome == ReconcileOutcome.DUPLICATE


def test_stale_event_is_dropped(reconciler, gateway):
    reconciler.apply(_created(created=T2))

    result = reconciler.apply(WebhookEvent(event_type=PAYMENT_FAILED, external_subscription_id="sub_123", created=T1))

    assert result.outcome == ReconcileOutcome.STALE
    assert gateway.get_subscription_by_external_id("sub_123").status == SubscriptionStatus.ACTIVE


def test_ordering_guard_can_be_disabled(gateway, cache, retry):
    reconciler = WebhookReconciler(gateway, cache, retry=retry, ordering_guard=False)
    reconciler.apply(_created(created=T2))

    result = reconciler.apply(WebhookEvent(event_type=PAYMENT_FAILED, external_subscription_id="sub_123", created=T1))

    assert result.outcome == ReconcileOutcome.PAST_DUE
    assert gateway.get_subscription_by_external_id("sub_123").status == SubscriptionStatus.PAST_DUE


def test_activation_supersedes_previous_subscription(reconciler, gateway, make_subscription):
    make_subscription(user_id="user_pro", external_id="sub_old")

    reconciler.apply(_created(external_subscription_id="sub_new"))

    assert gateway.get_subscription_by_external_id("sub_old").status == SubscriptionStatus.CANCELED
    assert gateway.get_active_subscription("user_pro").external_subscription_id == "sub_new"


def test_failed_event_is_recorded_and_redeliverable(reconciler, gateway):
    bad = _created(status="paused_forever", event_id="evt_bad")

    with pytest.raises(ValidationError):
        reconciler.apply(bad)
    assert webhook_events_total.value({"event_type": SUBSCRIPTION_CREATED, "outcome": "failed"}) == 1.0

    # provider redelivers with a corrected payload under the same id
    assert reconciler.apply(_created(event_id="evt_bad")).outcome == ReconcileOutcome.CREATED
