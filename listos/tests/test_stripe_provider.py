import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe

from listos.core.errors import ErrorKind
from listos.features.billing.provider import (
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SUBSCRIPTION_UPDATED,
    BillingProviderError,
    BillingWebhookError,
)
from listos.features.billing.stripe_provider import StripeProvider
from listos.models.subscription import from_epoch

WEBHOOK_SECRET = "whsec_test_secret"
PERIOD_END = 1780000000


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def deliver(provider, event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event)
    return provider.handle_webhook({"stripe-signature": sign(body, secret)}, body.encode())


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


def subscription_event(obj_overrides=None, **overrides):
    obj = {
        "id": "sub_123",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_end": PERIOD_END,
        "metadata": {"userId": "user_pro"},
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }
    obj.update(obj_overrides or {})
    event = {"id": "evt_1", "type": SUBSCRIPTION_UPDATED, "created": 1770000000, "data": {"object": obj}}
    event.update(overrides)
    return event


def test_subscription_event_is_normalized(provider):
    event = deliver(provider, subscription_event())

    assert event.event_type == SUBSCRIPTION_UPDATED
    assert event.event_id == "evt_1"
    assert event.external_subscription_id == "sub_123"
    assert event.status == "active"
    assert event.current_period_end == from_epoch(PERIOD_END)
    assert event.created == from_epoch(1770000000)
    assert event.customer_id == "cus_1"
    assert event.price_id == "price_pro"
    assert event.user_id == "user_pro"
    assert event.cancel_at_period_end is False


def test_period_end_read_from_subscription_item(provider):
    raw = subscription_event({
        "current_period_end": None,
        "items": {"data": [{"price": {"id": "price_pro"}, "current_period_end": PERIOD_END}]},
    })

    assert deliver(provider, raw).current_period_end == from_epoch(PERIOD_END)


def test_invoice_event_with_parent_subscription_details(provider):
    raw = {
        "id": "evt_2",
        "type": PAYMENT_FAILED,
        "created": 1770000100,
        "data": {"object": {
            "customer": "cus_1",
            "parent": {"subscription_details": {"subscription": "sub_123", "metadata": {"userId": "user_pro"}}},
            "lines": {"data": [{"period": {"end": PERIOD_END}}]},
        }},
    }

    event = deliver(provider, raw)

    assert event.event_type == PAYMENT_FAILED
    assert event.external_subscription_id == "sub_123"
    assert event.user_id == "user_pro"
    assert event.current_period_end == from_epoch(PERIOD_END)


def test_invoice_paid_maps_to_payment_succeeded(provider):
    raw = {"id": "evt_3", "type": "invoice.paid", "data": {"object": {"subscription": "sub_123"}}}

    event = deliver(provider, raw)

    assert event.event_type == PAYMENT_SUCCEEDED
    assert event.external_subscription_id == "sub_123"


def test_invalid_signature_is_rejected(provider):
    with pytest.raises(BillingWebhookError) as excinfo:
        deliver(provider, subscription_event(), secret="whsec_wrong")
    assert excinfo.value.code == "invalid_signature"
    assert excinfo.value.status_code == 400


def test_missing_signature_header(provider):
    with pytest.raises(BillingWebhookError):
        provider.handle_webhook({}, b"{}")


def test_malformed_event(provider):
    with pytest.raises(BillingWebhookError):
        deliver(provider, {"id": "evt_4"})


def test_missing_webhook_secret_is_unavailable(monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    provider = StripeProvider(secret_key="sk_test_123")

    with pytest.raises(BillingWebhookError) as excinfo:
        provider.handle_webhook({"stripe-signature": "t=1,v1=x"}, b"{}")
    assert excinfo.value.status_code == 503


def test_missing_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    with pytest.raises(BillingProviderError):
        StripeProvider()


def test_cancel_flag_pushed_to_stripe(provider):
    with patch("stripe.Subscription.modify") as modify:
        provider.set_cancel_at_period_end("sub_123", True)
    modify.assert_called_once_with("sub_123", cancel_at_period_end=True)


@pytest.mark.parametrize(
    "error,kind",
    [
        (stripe.APIConnectionError("connection reset"), ErrorKind.NETWORK),
        (stripe.AuthenticationError("invalid api key"), ErrorKind.AUTHENTICATION),
        (stripe.CardError("card declined", None, "card_declined"), ErrorKind.PAYMENT),
    ],
)
def test_stripe_failures_are_classified(provider, error, kind):
    with patch("stripe.Subscription.modify", side_effect=error):
        with pytest.raises(BillingProviderError) as excinfo:
            provider.set_cancel_at_period_end("sub_123", True)
    assert excinfo.value.kind == kind
    assert excinfo.value.retryable is kind.retryable
