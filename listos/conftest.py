# listos/conftest.py
import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# App import builds a default app; keep it independent of the developer's .env
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from listos.core.cache import InMemoryEntitlementCache
from listos.core.config import Settings
from listos.core.database import metadata
from listos.core.metrics import METRICS
from listos.core.retry import RetryOptions, RetryPolicy
from listos.features.persistence.sql_gateway import SqlPersistenceGateway
from listos.models.subscription import NewSubscription, SubscriptionStatus
from listos.models.user import UserIdentity

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic seconds under test control."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across connections."""
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def gateway(engine):
    return SqlPersistenceGateway(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryEntitlementCache(default_ttl=300, time_fn=clock)


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def retry(sleeps):
    """Retry policy that records delays instead of sleeping."""
    return RetryPolicy(RetryOptions(max_retries=3, initial_delay=0.5, max_delay=5.0), sleep=sleeps, rand=lambda: 0.5)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL="sqlite+pysqlite:///:memory:",
        STRIPE_SECRET_KEY=None,
        STRIPE_WEBHOOK_SECRET=None,
        CACHE_BACKEND="memory",
    )


@pytest.fixture
def make_user(gateway):
    def _make(user_id: str = "user_free", email: str = "profe@example.com"):
        return gateway.upsert_user(UserIdentity(user_id=user_id, email=email, display_name="Ana"), now=NOW)
    return _make


@pytest.fixture
def make_subscription(gateway):
    def _make(
        user_id: str = "user_pro",
        external_id: str = "sub_123",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        period_end: datetime = None,
        cancel_at_period_end: bool = False,
        last_event_at: datetime = None,
    ):
        return gateway.create_subscription(
            NewSubscription(
                user_id=user_id,
                external_subscription_id=external_id,
                status=status,
                current_period_end=period_end or datetime.now(timezone.utc) + timedelta(days=20),
                cancel_at_period_end=cancel_at_period_end,
                last_event_at=last_event_at,
            )
        )
    return _make
