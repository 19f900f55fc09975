"""
Key-value storage used for session records and operational counters.

Two backends share the KeyValueStore interface:
- RedisKeyValueStore: redis-py client, for multi-instance deployments
- InMemoryKeyValueStore: thread-safe dict with TTLs, for single-instance
  deployments, local development and tests

The backend is chosen by USE_REDIS_SESSIONS (see umbrella.config). Values are
strings; callers serialize structured data themselves.
"""

import time
import logging
from threading import Lock
from abc import ABC, abstractmethod
from typing import Optional, Dict, Tuple

from umbrella.config import get_settings
from umbrella.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal string key-value interface with per-key expiry."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value, or None when missing or expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store a value, optionally expiring after ttl_seconds."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        pass

    @abstractmethod
    def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        """
        Atomically add one to an integer value and return the new value.

        A missing key counts from zero. ttl_seconds, when given, is reset on
        every increment.
        """
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local key-value store.

    Expired entries are dropped lazily on read. Safe to share between the
    threads FastAPI uses for sync handlers.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and time.monotonic() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        with self._lock:
            entry = self._data.get(key)
            current = 0
            if entry is not None and (entry[1] is None or time.monotonic() < entry[1]):
                try:
                    current = int(entry[0])
                except ValueError:
                    logger.warning("Resetting non-integer counter", extra={"key": key})
            expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
            self._data[key] = (str(current + 1), expires_at)
            return current + 1

    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, or None for missing/persistent keys."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - time.monotonic())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisKeyValueStore(KeyValueStore):
    """Key-value store backed by Redis (lazy connection)."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            import redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def get(self, key: str) -> Optional[str]:
        return self._get_client().get(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            self._get_client().set(key, value, ex=ttl_seconds)
        else:
            self._get_client().set(key, value)

    def delete(self, key: str) -> bool:
        return bool(self._get_client().delete(key))

    def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        # INCR and EXPIRE run in one MULTI/EXEC transaction
        pipe = self._get_client().pipeline()
        pipe.incr(key)
        if ttl_seconds:
            pipe.expire(key, ttl_seconds)
        return int(pipe.execute()[0])


# Singleton instance
_kv_store: Optional[KeyValueStore] = None
_kv_lock = Lock()


def get_kv_store() -> KeyValueStore:
    """Get the configured key-value store singleton."""
    global _kv_store

    with _kv_lock:
        if _kv_store is None:
            settings = get_settings()
            if settings.use_redis_sessions:
                if not settings.redis_url:
                    raise ConfigurationError(
                        "REDIS_URL must be set when USE_REDIS_SESSIONS is enabled"
                    )
                _kv_store = RedisKeyValueStore(settings.redis_url)
                logger.info("Using Redis key-value store")
            else:
                _kv_store = InMemoryKeyValueStore()
                logger.info("Using in-memory key-value store")
        return _kv_store


def set_kv_store(store: Optional[KeyValueStore]) -> None:
    """Replace the key-value store singleton (tests and scripts)."""
    global _kv_store

    with _kv_lock:
        _kv_store = store
