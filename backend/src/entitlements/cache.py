"""
Entitlement Cache - Redis-backed cache with invalidation on billing writes.

Provides:
- EntitlementCache: cache for resolved (non-metered) capability sets
- Invalidation on billing transitions and tier ownership writes: the
  shared Redis entry and this process's entry are dropped
- TTL-based expiration (5 seconds by default). Other processes' in-memory
  entries are not notified; the TTL is their staleness bound

CRITICAL: Billing transitions MUST invalidate cached capability sets
immediately. Metered checks never read from this cache.
"""

import json
import logging
import os
import time
from threading import Lock
from typing import Callable, Dict, Optional

import redis
from sqlalchemy import event
from sqlalchemy.orm import Session

from src.config.billing_config import get_billing_config
from src.entitlements.features import FEATURE_CATALOG_VERSION
from src.entitlements.models import CapabilitySet

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 5.0


class RedisClient:
    """
    Redis client wrapper with connection pooling and fallback.

    Provides graceful degradation when Redis is unavailable: the in-memory
    layer keeps working and staleness stays bounded by its TTL.
    """

    _instance: Optional['RedisClient'] = None
    _lock = Lock()

    def __new__(cls):
        """Singleton pattern."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._redis = None
        self._available = False
        self._connect()
        self._initialized = True

    def _connect(self) -> None:
        """Connect to Redis if configured."""
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            logger.info("REDIS_URL not configured - shared entitlement cache disabled")
            return

        try:
            self._redis = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=1.0,
                socket_connect_timeout=1.0,
            )
            self._redis.ping()
            self._available = True
            logger.info("Redis connection established for entitlement cache")
        except redis.RedisError as e:
            logger.warning("Redis connection failed - shared cache disabled", extra={"error": str(e)})

    @property
    def available(self) -> bool:
        """Check if Redis is available."""
        return self._available and self._redis is not None

    def get(self, key: str) -> Optional[str]:
        if not self.available:
            return None
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning("Redis GET failed", extra={"error": str(e)})
            return None

    def set(self, key: str, value: str, ttl_seconds: float) -> bool:
        if not self.available:
            return False
        try:
            self._redis.psetex(key, max(1, int(ttl_seconds * 1000)), value)
            return True
        except redis.RedisError as e:
            logger.warning("Redis SET failed", extra={"error": str(e)})
            return False

    def delete(self, *keys: str) -> int:
        if not self.available or not keys:
            return 0
        try:
            return self._redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Redis DELETE failed", extra={"error": str(e)})
            return 0


class InMemoryCache:
    """
    In-process cache layer.

    Thread-safe with TTL support. The clock is injectable for tests.
    """

    def __init__(self, max_size: int = 10000, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, tuple] = {}
        self._lock = Lock()
        self._max_size = max_size
        self._clock = clock

    def get(self, key: str, ttl_seconds: float) -> Optional[str]:
        """Get value if not expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            value, cached_at = entry
            if self._clock() - cached_at >= ttl_seconds:
                del self._cache[key]
                return None
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            # Evict oldest if at capacity
            if len(self._cache) >= self._max_size and key not in self._cache:
                oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
                del self._cache[oldest_key]
            self._cache[key] = (value, self._clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None


class EntitlementCache:
    """
    Caching layer for resolved capability sets.

    Uses Redis when available and always keeps an in-process layer. Both
    layers expire after ttl_seconds, which is the maximum time a stale
    "entitled" answer can survive a missed invalidation.

    Usage:
        cache = EntitlementCache(ttl_seconds=config.entitlement_cache_ttl_seconds)

        cached = cache.get(tenant_id)
        if cached is None:
            cached = compute(tenant_id)
            cache.set(cached)

        # After any billing transition for the tenant
        cache.invalidate(tenant_id, reason="addon:active->past_due")
    """

    CACHE_KEY_PREFIX = "entitlement:"

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        redis_client: Optional[RedisClient] = None,
        memory_cache: Optional[InMemoryCache] = None,
        config_version: str = "",
    ):
        self._redis = redis_client if redis_client is not None else RedisClient()
        self._memory_cache = memory_cache if memory_cache is not None else InMemoryCache()
        self._ttl_seconds = ttl_seconds
        self._config_version = config_version

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def _cache_key(self, tenant_id: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}v{FEATURE_CATALOG_VERSION}:{self._config_version}:{tenant_id}"

    def _decode(self, data: str, tenant_id: str) -> Optional[CapabilitySet]:
        try:
            return CapabilitySet.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(
                "Failed to deserialize cached capability set",
                extra={"tenant_id": tenant_id, "error": str(e)},
            )
            return None

    def get(self, tenant_id: str) -> Optional[CapabilitySet]:
        """Return the cached capability set or None if absent or expired."""
        if self._ttl_seconds <= 0:
            return None
        key = self._cache_key(tenant_id)

        data = self._memory_cache.get(key, self._ttl_seconds)
        if data is None and self._redis.available:
            data = self._redis.get(key)

        if data is None:
            logger.debug("Capability cache miss", extra={"tenant_id": tenant_id})
            return None
        return self._decode(data, tenant_id)

    def set(self, capabilities: CapabilitySet) -> None:
        if self._ttl_seconds <= 0:
            return
        key = self._cache_key(capabilities.tenant_id)
        data = json.dumps(capabilities.to_dict())
        if self._redis.available:
            self._redis.set(key, data, self._ttl_seconds)
        self._memory_cache.set(key, data)

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> None:
        """
        Invalidate cached capabilities for tenant.

        CRITICAL: Must be called whenever billing state or tier ownership changes.
        Other processes keep their in-memory copy until it expires.
        """
        key = self._cache_key(tenant_id)
        self._memory_cache.delete(key)
        if self._redis.available:
            self._redis.delete(key)
        logger.info(
            "Invalidated capability cache",
            extra={"tenant_id": tenant_id, "reason": reason},
        )

    def invalidate_on_commit(self, session: Session, tenant_id: str, reason: Optional[str] = None) -> None:
        """
        Invalidate now and again once the session commits.

        The second pass drops any entry a concurrent reader computed from
        pre-commit state between the first invalidation and the commit.
        """
        self.invalidate(tenant_id, reason)

        def _after_commit(_session):
            self.invalidate(tenant_id, reason)

        event.listen(session, "after_commit", _after_commit, once=True)


# Module-level singleton
_cache_instance: Optional[EntitlementCache] = None
_cache_lock = Lock()


def get_entitlement_cache() -> EntitlementCache:
    """Get the singleton EntitlementCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                config = get_billing_config()
                _cache_instance = EntitlementCache(
                    ttl_seconds=config.entitlement_cache_ttl_seconds,
                    config_version=config.catalog_version,
                )
    return _cache_instance


def reset_entitlement_cache() -> None:
    """Reset singleton (for tests only)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = None
