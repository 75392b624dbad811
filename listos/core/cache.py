"""
Entitlement cache: namespaced key/value store with per-entry TTL.

Values are JSON-compatible dicts. Writers invalidate with ``delete`` after
their durable write commits; entries are never updated in place.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis

from listos.core.metrics import (
    cache_entries,
    entitlement_cache_invalidations_total,
    entitlement_cache_requests_total,
)

logger = logging.getLogger("listos.cache")

SUBSCRIPTION_STATUS = "subscription_status"
CAN_GENERATE = "can_generate"
ENTITLEMENT_NAMESPACES = (SUBSCRIPTION_STATUS, CAN_GENERATE)


class EntitlementCache(Protocol):
    def get(self, namespace: str, key: str) -> Optional[Any]:
        ...

    def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    def delete(self, namespace: str, key: str) -> None:
        ...

    def get_or_compute(self, namespace: str, key: str, compute: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        ...

    def clear_namespace(self, namespace: str) -> None:
        ...

    def clear(self) -> None:
        ...


def _record(namespace: str, hit: bool) -> None:
    entitlement_cache_requests_total.inc(labels={"namespace": namespace, "result": "hit" if hit else "miss"})


class InMemoryEntitlementCache:
    """Thread-safe in-process cache with lazy expiry.

    ``time_fn`` defaults to the monotonic clock; tests pass a fake.
    """

    def __init__(self, default_ttl: float = 300, time_fn: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._time = time_fn
        self._entries: Dict[Tuple[str, str], Tuple[Any, float]] = {}
        self._lock = threading.RLock()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get((namespace, key))
            if entry is None:
                _record(namespace, False)
                return None
            value, expires_at = entry
            if self._time() >= expires_at:
                del self._entries[(namespace, key)]
                cache_entries.set(len(self._entries))
                _record(namespace, False)
                return None
        _record(namespace, True)
        return value

    def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return
        with self._lock:
            self._entries[(namespace, key)] = (value, self._time() + ttl)
            cache_entries.set(len(self._entries))

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._entries.pop((namespace, key), None)
            cache_entries.set(len(self._entries))
        entitlement_cache_invalidations_total.inc(labels={"namespace": namespace})

    def get_or_compute(self, namespace: str, key: str, compute: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        cached = self.get(namespace, key)
        if cached is not None:
            return cached
        # compute runs unlocked; concurrent misses may both compute
        value = compute()
        if value is not None:
            self.set(namespace, key, value, ttl)
        return value

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._time()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
            for k in expired:
                del self._entries[k]
            cache_entries.set(len(self._entries))
        return len(expired)

    def clear_namespace(self, namespace: str) -> None:
        with self._lock:
            for k in [k for k in self._entries if k[0] == namespace]:
                del self._entries[k]
            cache_entries.set(len(self._entries))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            cache_entries.set(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisEntitlementCache:
    """Redis-backed cache shared across processes.

    Expiry is delegated to Redis (``SET PX``). Read and fill failures degrade
    to a miss; invalidation failures propagate so a write path never reports
    success while a stale entry survives.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "listos", default_ttl: float = 300):
        self.client = client
        self.prefix = prefix
        self.default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisEntitlementCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, **kwargs)

    def _key(self, namespace: str, key: str) -> str:
        return f"{self.prefix}:{namespace}:{key}"

    def get(self, namespace: str, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(self._key(namespace, key))
        except redis.exceptions.RedisError as exc:
            logger.warning("cache.read_failed", extra={"namespace": namespace, "error_code": type(exc).__name__})
            _record(namespace, False)
            return None
        if raw is None:
            _record(namespace, False)
            return None
        _record(namespace, True)
        return json.loads(raw)

    def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        ttl_ms = int(ttl * 1000)
        if ttl_ms <= 0:
            return
        try:
            self.client.set(self._key(namespace, key), json.dumps(value, default=str), px=ttl_ms)
        except redis.exceptions.RedisError as exc:
            logger.warning("cache.write_failed", extra={"namespace": namespace, "error_code": type(exc).__name__})

    def delete(self, namespace: str, key: str) -> None:
        self.client.delete(self._key(namespace, key))
        entitlement_cache_invalidations_total.inc(labels={"namespace": namespace})

    def get_or_compute(self, namespace: str, key: str, compute: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        cached = self.get(namespace, key)
        if cached is not None:
            return cached
        value = compute()
        if value is not None:
            self.set(namespace, key, value, ttl)
        return value

    def clear_namespace(self, namespace: str) -> None:
        keys = list(self.client.scan_iter(match=f"{self.prefix}:{namespace}:*"))
        if keys:
            self.client.delete(*keys)

    def clear(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.prefix}:*"))
        if keys:
            self.client.delete(*keys)


def invalidate_entitlements(cache: EntitlementCache, user_id: str) -> None:
    """Delete every derived entitlement entry for ``user_id``."""
    for namespace in ENTITLEMENT_NAMESPACES:
        cache.delete(namespace, user_id)
    logger.info("cache.invalidated", extra={"user_id": user_id})


def build_cache(cfg) -> EntitlementCache:
    """Select the cache backend named by CACHE_BACKEND."""
    backend = (cfg.CACHE_BACKEND or "memory").lower()
    if backend == "redis":
        return RedisEntitlementCache.from_url(
            cfg.REDIS_URL,
            prefix=cfg.CACHE_KEY_PREFIX,
            default_ttl=cfg.DEFAULT_CACHE_TTL_SECONDS,
        )
    if backend == "memory":
        return InMemoryEntitlementCache(default_ttl=cfg.DEFAULT_CACHE_TTL_SECONDS)
    raise ValueError(f"Unknown CACHE_BACKEND: {cfg.CACHE_BACKEND}")
