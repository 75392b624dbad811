"""
SQLAlchemy Core implementation of the persistence gateway.

Works against any SQLAlchemy-supported store (PostgreSQL, MySQL, SQLite for
tests); the engine is chosen from DATABASE_URL.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from listos.core.database import (
    billing_events,
    get_session_factory,
    subscriptions,
    usage_events,
    users,
)
from listos.features.persistence.gateway import CounterDrift
from listos.models.subscription import (
    NewSubscription,
    Subscription,
    SubscriptionPatch,
    SubscriptionStatus,
    as_utc,
    utc_now,
)
from listos.models.usage_event import NewUsageEvent
from listos.models.user import User, UserIdentity

_SUBSCRIPTION_DATES = ("current_period_end", "last_event_at", "created_at", "updated_at")
_USER_DATES = ("created_at", "last_seen_at")


def _subscription_from_row(row) -> Subscription:
    data = dict(row._mapping)
    for field in _SUBSCRIPTION_DATES:
        data[field] = as_utc(data.get(field))
    return Subscription(**data)


def _user_from_row(row) -> User:
    data = dict(row._mapping)
    for field in _USER_DATES:
        data[field] = as_utc(data.get(field))
    return User(**data)


class SqlPersistenceGateway:
    """Persistence gateway backed by the tables in listos.core.database."""

    def __init__(self, engine: Optional[Engine] = None):
        if engine is not None:
            self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        else:
            self._session_factory = get_session_factory()

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ===== Subscriptions =====

    def get_active_subscription(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        now = now or utc_now()
        with self._session() as session:
            row = session.execute(
                select(subscriptions)
                .where(
                    and_(
                        subscriptions.c.user_id == user_id,
                        subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                        subscriptions.c.current_period_end > now,
                    )
                )
                .order_by(subscriptions.c.current_period_end.desc())
                .limit(1)
            ).fetchone()
        return _subscription_from_row(row) if row else None

    def get_subscription_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        with self._session() as session:
            row = session.execute(
                select(subscriptions).where(
                    subscriptions.c.external_subscription_id == external_subscription_id
                )
            ).fetchone()
        return _subscription_from_row(row) if row else None

    def create_subscription(self, data: NewSubscription) -> Subscription:
        now = utc_now()
        values = data.model_dump()
        values["status"] = data.status.value
        values.update(id=str(uuid4()), created_at=now, updated_at=now)
        with self._session() as session:
            session.execute(insert(subscriptions).values(**values))
        return self.get_subscription_by_external_id(data.external_subscription_id)

    def update_subscription(self, external_subscription_id: str, patch: SubscriptionPatch) -> Optional[Subscription]:
        values = patch.values()
        if "status" in values:
            values["status"] = patch.status.value
        values["updated_at"] = utc_now()
        with self._session() as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.external_subscription_id == external_subscription_id)
                .values(**values)
            )
            if result.rowcount == 0:
                return None
        return self.get_subscription_by_external_id(external_subscription_id)

    def supersede_active_subscriptions(self, user_id: str, keep_external_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.user_id == user_id,
                        subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                        subscriptions.c.external_subscription_id != keep_external_id,
                    )
                )
                .values(status=SubscriptionStatus.CANCELED.value, updated_at=utc_now())
            )
            return result.rowcount

    def list_lapsed_subscriptions(
        self, now: datetime, limit: int = 100, *, cancel_pending: Optional[bool] = None
    ) -> List[Subscription]:
        conditions = [
            subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            subscriptions.c.current_period_end <= now,
        ]
        if cancel_pending is not None:
            conditions.append(subscriptions.c.cancel_at_period_end == cancel_pending)
        with self._session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(and_(*conditions))
                .order_by(subscriptions.c.current_period_end)
                .limit(limit)
            ).fetchall()
        return [_subscription_from_row(r) for r in rows]

    # ===== Usage =====

    def record_usage_event(self, event: NewUsageEvent) -> bool:
        try:
            with self._session() as session:
                existing = session.execute(
                    select(usage_events.c.id).where(usage_events.c.event_id == event.event_id)
                ).fetchone()
                if existing:
                    return False
                session.execute(
                    insert(usage_events).values(
                        event_id=event.event_id,
                        user_id=event.user_id,
                        document_type=event.document_type.value,
                        subject=event.metadata.subject,
                        grade=event.metadata.grade,
                        language=event.metadata.language,
                        event_metadata=event.extra_metadata(),
                        created_at=utc_now(),
                    )
                )
        except IntegrityError:
            # Concurrent insert of the same event_id won the race
            return False
        return True

    def has_usage_event(self, event_id: str) -> bool:
        with self._session() as session:
            row = session.execute(
                select(usage_events.c.id).where(usage_events.c.event_id == event_id)
            ).fetchone()
        return row is not None

    def get_usage_count(self, user_id: str) -> int:
        with self._session() as session:
            count = session.execute(
                select(func.count()).select_from(usage_events).where(usage_events.c.user_id == user_id)
            ).scalar()
        return int(count or 0)

    def increment_denormalized_counter(self, user_id: str) -> Optional[int]:
        with self._session() as session:
            result = session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .values(worksheet_count=users.c.worksheet_count + 1)
            )
            if result.rowcount == 0:
                return None
            return session.execute(
                select(users.c.worksheet_count).where(users.c.user_id == user_id)
            ).scalar()

    def list_counter_drift(self, limit: int = 100) -> List[CounterDrift]:
        counts = (
            select(usage_events.c.user_id, func.count().label("actual"))
            .group_by(usage_events.c.user_id)
            .subquery()
        )
        actual = func.coalesce(counts.c.actual, 0)
        with self._session() as session:
            rows = session.execute(
                select(users.c.user_id, users.c.worksheet_count, actual.label("actual"))
                .select_from(users.outerjoin(counts, users.c.user_id == counts.c.user_id))
                .where(users.c.worksheet_count != actual)
                .order_by(users.c.user_id)
                .limit(limit)
            ).fetchall()
        return [CounterDrift(user_id=r.user_id, stored=r.worksheet_count, actual=int(r.actual)) for r in rows]

    def rebuild_usage_counter(self, user_id: str) -> int:
        actual = self.get_usage_count(user_id)
        with self._session() as session:
            session.execute(update(users).where(users.c.user_id == user_id).values(worksheet_count=actual))
        return actual

    # ===== Users =====

    def upsert_user(self, identity: UserIdentity, now: Optional[datetime] = None) -> User:
        now = now or utc_now()
        with self._session() as session:
            existing = session.execute(
                select(users.c.user_id).where(users.c.user_id == identity.user_id)
            ).fetchone()
            if existing:
                values = {"last_seen_at": now}
                if identity.email:
                    values["email"] = identity.email
                if identity.display_name:
                    values["display_name"] = identity.display_name
                session.execute(update(users).where(users.c.user_id == identity.user_id).values(**values))
            else:
                session.execute(
                    insert(users).values(
                        user_id=identity.user_id,
                        email=identity.email,
                        display_name=identity.display_name,
                        role="standard",
                        worksheet_count=0,
                        created_at=now,
                        last_seen_at=now,
                    )
                )
        return self.get_user(identity.user_id)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._session() as session:
            row = session.execute(select(users).where(users.c.user_id == user_id)).fetchone()
        return _user_from_row(row) if row else None

    # ===== Webhook bookkeeping =====

    def claim_webhook_event(
        self,
        provider_event_id: str,
        event_type: str,
        external_subscription_id: Optional[str] = None,
        payload_hash: Optional[str] = None,
    ) -> bool:
        try:
            with self._session() as session:
                existing = session.execute(
                    select(billing_events.c.processed).where(
                        billing_events.c.provider_event_id == provider_event_id
                    )
                ).fetchone()
                if existing:
                    # Failed deliveries stay claimable so a redelivery can retry them
                    return not existing.processed
                session.execute(
                    insert(billing_events).values(
                        provider_event_id=provider_event_id,
                        event_type=event_type,
                        external_subscription_id=external_subscription_id,
                        payload_hash=payload_hash,
                        processed=False,
                        received_at=utc_now(),
                    )
                )
        except IntegrityError:
            # Another worker recorded the same event first
            return False
        return True

    def finish_webhook_event(self, provider_event_id: str, outcome: str, error: Optional[str] = None) -> None:
        values = {"outcome": outcome, "error": error}
        if error is None:
            values.update(processed=True, processed_at=utc_now())
        with self._session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == provider_event_id)
                .values(**values)
            )
