"""
Redis Caching Layer

`TTLCache` is an explicit cache object: it owns its key prefix, its TTL
and the JSON (de)serialisation of its values, and it is handed the Redis
client it talks to. Callers build one at process start (FastAPI lifespan,
Celery worker boot), inject it where it is needed and close it on shutdown.

Includes graceful degradation if Redis is unavailable: every operation
becomes a miss / no-op and the caller falls through to the database.
"""
import json
import logging
from typing import Any, Callable, Generic, Optional, TypeVar

import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from core.config import settings

logger = logging.getLogger(__name__)

V = TypeVar("V")


def create_redis_client(url: Optional[str] = None) -> Optional[redis.Redis]:
    """Build a Redis client with connection pooling. Returns None if Redis unavailable."""
    try:
        client = redis.from_url(
            url or settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        client.ping()
        logger.info("Redis connection established")
        return client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Caching disabled.")
        return None


class TTLCache(Generic[V]):
    """
    Prefix-scoped, TTL-bounded cache over Redis.

    Keys are built as ``"<prefix>:<key>"``. Values must be JSON-serialisable
    (``default=str`` covers datetimes and UUIDs).
    """

    def __init__(self, client: Optional[Any], prefix: str, ttl_s: int):
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self._client = client
        self.prefix = prefix
        self.ttl_s = int(ttl_s)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[V]:
        """Return the cached value or None on miss / Redis failure."""
        if self._client is None:
            return None
        try:
            raw = self._client.get(self._key(key))
            if raw is None:
                return None
            return json.loads(raw)
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Cache get error for key {self._key(key)}: {e}")
            return None

    def set(self, key: str, value: V) -> bool:
        """Store value for ttl_s seconds. Returns True if successful."""
        if self._client is None:
            return False
        try:
            self._client.setex(self._key(key), self.ttl_s, json.dumps(value, default=str))
            return True
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Cache set error for key {self._key(key)}: {e}")
            return False

    def delete(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            self._client.delete(self._key(key))
            return True
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"Cache delete error for key {self._key(key)}: {e}")
            return False

    def get_or_load(self, key: str, loader: Callable[[], Optional[V]]) -> Optional[V]:
        """Read-through helper: on miss call loader and cache a non-None result."""
        cached = self.get(key)
        if cached is not None:
            logger.debug(f"Cache hit: {self._key(key)}")
            return cached
        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def close(self) -> None:
        """Release the underlying connection pool (process shutdown)."""
        if self._client is None:
            return
        try:
            self._client.close()
        except RedisError as e:
            logger.warning(f"Cache close error for prefix {self.prefix}: {e}")
        finally:
            self._client = None


def build_athlete_profile_cache(client: Optional[Any] = None) -> TTLCache[dict]:
    """Cache of athlete profile lookups (timezone + owning coach) used by the sync engine."""
    return TTLCache(client, prefix="sync:athlete_profile", ttl_s=settings.CACHE_TTL_ATHLETE_PROFILE)
