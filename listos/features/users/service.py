"""
User domain service.
- ensure_user(gateway, identity): create on first login, refresh afterwards
"""

import logging
from typing import Optional

from listos.core.retry import RetryPolicy
from listos.features.persistence.gateway import PersistenceGateway
from listos.models.user import User, UserIdentity

logger = logging.getLogger("listos.users")


def ensure_user(gateway: PersistenceGateway, identity: UserIdentity, retry: Optional[RetryPolicy] = None) -> User:
    policy = retry or RetryPolicy()
    user = policy.run(lambda: gateway.upsert_user(identity), name="users.upsert")
    logger.info("user.synced", extra={"user_id": user.user_id})
    return user
