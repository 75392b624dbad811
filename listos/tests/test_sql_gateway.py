from datetime import timedelta

from listos.conftest import NOW
from listos.models.subscription import SubscriptionPatch, SubscriptionStatus
from listos.models.usage_event import DocumentType, NewUsageEvent, UsageMetadata
from listos.models.user import UserIdentity, UserRole


def _event(user_id="user_free", event_id=None, **meta):
    kwargs = {"user_id": user_id, "document_type": DocumentType.WORKSHEET, "metadata": UsageMetadata(**meta)}
    if event_id:
        kwargs["event_id"] = event_id
    return NewUsageEvent(**kwargs)


class TestSubscriptions:
    def test_active_subscription_requires_active_status_and_open_period(self, gateway, make_subscription):
        make_subscription(user_id="u1", external_id="sub_past_due", status=SubscriptionStatus.PAST_DUE,
                          period_end=NOW + timedelta(days=5))
        make_subscription(user_id="u1", external_id="sub_lapsed", period_end=NOW - timedelta(seconds=1))

        assert gateway.get_active_subscription("u1", now=NOW) is None

        make_subscription(user_id="u1", external_id="sub_ok", period_end=NOW + timedelta(days=5))
        active = gateway.get_active_subscription("u1", now=NOW)
        assert active.external_subscription_id == "sub_ok"
        assert active.current_period_end == NOW + timedelta(days=5)
        assert active.current_period_end.tzinfo is not None

    def test_active_subscription_prefers_latest_period(self, gateway, make_subscription):
        make_subscription(user_id="u1", external_id="sub_a", period_end=NOW + timedelta(days=3))
        make_subscription(user_id="u1", external_id="sub_b", period_end=NOW + timedelta(days=30))

        assert gateway.get_active_subscription("u1", now=NOW).external_subscription_id == "sub_b"

    def test_update_patches_only_given_fields(self, gateway, make_subscription):
        created = make_subscription(period_end=NOW + timedelta(days=10))

        updated = gateway.update_subscription("sub_123", SubscriptionPatch(cancel_at_period_end=True))

        assert updated.cancel_at_period_end is True
        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.current_period_end == created.current_period_end
        assert updated.id == created.id

    def test_update_unknown_subscription_returns_none(self, gateway):
        assert gateway.update_subscription("sub_missing", SubscriptionPatch(status=SubscriptionStatus.CANCELED)) is None

    def test_supersede_cancels_other_active_rows(self, gateway, make_subscription):
        make_subscription(user_id="u1", external_id="sub_old")
        make_subscription(user_id="u1", external_id="sub_new")
        make_subscription(user_id="u2", external_id="sub_other")

        assert gateway.supersede_active_subscriptions("u1", keep_external_id="sub_new") == 1

        assert gateway.get_subscription_by_external_id("sub_old").status == SubscriptionStatus.CANCELED
        assert gateway.get_subscription_by_external_id("sub_new").status == SubscriptionStatus.ACTIVE
        assert gateway.get_subscription_by_external_id("sub_other").status == SubscriptionStatus.ACTIVE

    def test_list_lapsed_subscriptions(self, gateway, make_subscription):
        make_subscription(external_id="sub_lapsed", period_end=NOW - timedelta(days=1))
        make_subscription(external_id="sub_current", period_end=NOW + timedelta(days=1))
        make_subscription(external_id="sub_canceled", status=SubscriptionStatus.CANCELED,
                          period_end=NOW - timedelta(days=1))

        lapsed = gateway.list_lapsed_subscriptions(NOW)

        assert [s.external_subscription_id for s in lapsed] == ["sub_lapsed"]

    def test_list_lapsed_subscriptions_by_cancel_flag(self, gateway, make_subscription):
        make_subscription(user_id="u1", external_id="sub_renewal", period_end=NOW - timedelta(days=3))
        make_subscription(user_id="u2", external_id="sub_leaving", period_end=NOW - timedelta(days=1),
                          cancel_at_period_end=True)

        due = gateway.list_lapsed_subscriptions(NOW, 1, cancel_pending=True)
        overdue = gateway.list_lapsed_subscriptions(NOW, 1, cancel_pending=False)

        assert [s.external_subscription_id for s in due] == ["sub_leaving"]
        assert [s.external_subscription_id for s in overdue] == ["sub_renewal"]
        assert len(gateway.list_lapsed_subscriptions(NOW)) == 2


class TestUsage:
    def test_append_is_idempotent_on_event_id(self, gateway):
        assert gateway.record_usage_event(_event(event_id="evt-1")) is True
        assert gateway.record_usage_event(_event(event_id="evt-1")) is False
        assert gateway.record_usage_event(_event(event_id="evt-2")) is True

        assert gateway.get_usage_count("user_free") == 2
        assert gateway.get_usage_count("someone_else") == 0
        assert gateway.has_usage_event("evt-1") is True
        assert gateway.has_usage_event("evt-3") is False

    def test_extra_metadata_is_kept(self, gateway, engine):
        from sqlalchemy import select

        from listos.core.database import usage_events

        gateway.record_usage_event(_event(event_id="evt-x", subject="Math", topic="fractions"))

        with engine.connect() as conn:
            row = conn.execute(select(usage_events).where(usage_events.c.event_id == "evt-x")).fetchone()
        assert row.subject == "Math"
        assert row.grade == "N/A"
        assert row.language == "es"
        assert row.event_metadata == {"topic": "fractions"}

    def test_increment_counter(self, gateway, make_user):
        make_user("user_free")

        assert gateway.increment_denormalized_counter("user_free") == 1
        assert gateway.increment_denormalized_counter("user_free") == 2
        assert gateway.increment_denormalized_counter("ghost") is None

    def test_counter_drift_detected_and_rebuilt(self, gateway, make_user):
        make_user("user_free")
        make_user("user_ok")
        gateway.record_usage_event(_event())
        gateway.record_usage_event(_event())

        drift = gateway.list_counter_drift()

        assert [(d.user_id, d.stored, d.actual) for d in drift] == [("user_free", 0, 2)]
        assert gateway.rebuild_usage_counter("user_free") == 2
        assert gateway.list_counter_drift() == []


class TestUsers:
    def test_upsert_creates_then_refreshes(self, gateway):
        created = gateway.upsert_user(UserIdentity(user_id="u1", email="a@example.com"), now=NOW)
        assert created.role == UserRole.STANDARD
        assert created.worksheet_count == 0
        gateway.increment_denormalized_counter("u1")

        later = NOW + timedelta(hours=1)
        refreshed = gateway.upsert_user(UserIdentity(user_id="u1", display_name="Ana"), now=later)

        assert refreshed.email == "a@example.com"
        assert refreshed.display_name == "Ana"
        assert refreshed.worksheet_count == 1
        assert refreshed.created_at == NOW
        assert refreshed.last_seen_at == later

    def test_get_unknown_user(self, gateway):
        assert gateway.get_user("nobody") is None


class TestWebhookBookkeeping:
    def test_processed_event_cannot_be_claimed_again(self, gateway):
        assert gateway.claim_webhook_event("evt_1", "customer.subscription.updated", "sub_123") is True
        gateway.finish_webhook_event("evt_1", "updated")

        assert gateway.claim_webhook_event("evt_1", "customer.subscription.updated", "sub_123") is False

    def test_failed_event_stays_claimable(self, gateway):
        assert gateway.claim_webhook_event("evt_2", "invoice.payment_failed") is True
        gateway.finish_webhook_event("evt_2", "failed", error="db down")

        assert gateway.claim_webhook_event("evt_2", "invoice.payment_failed") is True
