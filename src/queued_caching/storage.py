"""
Storage backends for queued caching.

Provides InMemCache (in-memory), RedisCache and the CacheStorage protocol.
Cache records and guard markers are both stored through this protocol;
the only atomic primitive required is set_if_not_exists.
"""

from __future__ import annotations

import logging
import pickle
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from .exceptions import StorageError

try:
    import redis
except ImportError:
    redis = None  # type: ignore

logger = logging.getLogger(__name__)


# ============================================================================
# Cache Record - the value stored for a computation
# ============================================================================


@dataclass(frozen=True)
class CacheRecord:
    """
    Result of one successful computation.

    Timestamps are Unix epoch seconds. None means the record never goes
    stale (or never expires) by time.
    """

    results: Any
    stale_at: float | None = None
    expires_at: float | None = None

    @classmethod
    def build(
        cls,
        results: Any,
        now: float,
        stale_in: float | None = None,
        expires_in: float | None = None,
    ) -> "CacheRecord":
        """Create a record whose timestamps are offsets from `now`."""
        return cls(
            results=results,
            stale_at=now + stale_in if stale_in is not None else None,
            expires_at=now + expires_in if expires_in is not None else None,
        )


# ============================================================================
# Storage Protocol - Common interface for all backends
# ============================================================================


class CacheStorage(Protocol):
    """
    Protocol for cache storage backends.

    Any object implementing these methods can back a QueuedCache, which
    makes test doubles and separate namespaces trivial.

    set_if_not_exists must be atomic: two concurrent callers observing an
    absent key must never both get True. Guard keys rely on it.
    """

    def get(self, key: str) -> Any | None:
        """Get value by key. Returns None if not found or lapsed."""
        ...

    def set(self, key: str, value: Any, ttl: int = 0) -> None:
        """Set value with TTL in seconds. ttl=0 means no expiration."""
        ...

    def delete(self, key: str) -> None:
        """Delete key from cache."""
        ...

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        ...

    def set_if_not_exists(self, key: str, value: Any, ttl: int = 0) -> bool:
        """Atomic write-if-absent. Returns True if set, False if present."""
        ...


def validate_cache_storage(cache: Any) -> bool:
    """
    Validate that an object implements the CacheStorage protocol.
    Useful for debugging custom cache implementations.
    """
    required_methods = ["get", "set", "delete", "exists", "set_if_not_exists"]
    return all(
        hasattr(cache, method) and callable(getattr(cache, method))
        for method in required_methods
    )


# ============================================================================
# InMemCache - In-memory storage
# ============================================================================


@dataclass
class _Slot:
    value: Any
    lapses_at: float  # Unix timestamp, inf for no lease

    def is_live(self, now: float) -> bool:
        return now < self.lapses_at


class InMemCache:
    """
    Thread-safe in-memory storage.

    Values are kept as-is (no serialization). The optional ttl is a
    lease on the key itself and is independent of a CacheRecord's
    stale_at/expires_at.

    Attributes:
        _data: internal slot map
        _lock: re-entrant lock to protect concurrent access
    """

    def __init__(self):
        self._data: dict[str, _Slot] = {}
        self._lock = threading.RLock()

    def _live_slot(self, key: str) -> _Slot | None:
        slot = self._data.get(key)
        if slot is None:
            return None
        if not slot.is_live(time.time()):
            del self._data[key]
            return None
        return slot

    def get(self, key: str) -> Any | None:
        """Return value if key still live, otherwise drop it."""
        with self._lock:
            slot = self._live_slot(key)
            return slot.value if slot is not None else None

    def set(self, key: str, value: Any, ttl: int = 0) -> None:
        """Store value for ttl seconds (0=forever)."""
        lapses_at = time.time() + ttl if ttl > 0 else float("inf")
        with self._lock:
            self._data[key] = _Slot(value=value, lapses_at=lapses_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_slot(key) is not None

    def set_if_not_exists(self, key: str, value: Any, ttl: int = 0) -> bool:
        """Atomic set if not exists. Returns True if set, False if exists."""
        with self._lock:
            if self._live_slot(key) is not None:
                return False
            self.set(key, value, ttl)
            return True

    def keys(self) -> list[str]:
        """Snapshot of live keys (for debugging and tests)."""
        with self._lock:
            return [key for key in list(self._data) if self._live_slot(key) is not None]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


# ============================================================================
# RedisCache - Redis-backed storage
# ============================================================================


class RedisCache:
    """
    Redis-backed cache storage, shared by every process pointing at the
    same server. set_if_not_exists maps to SET NX.

    Example:
        import redis
        client = redis.Redis(host='localhost', port=6379)
        storage = RedisCache(client, prefix="app:")
        cache = QueuedCache(storage=storage)
    """

    def __init__(self, redis_client: Any, prefix: str = ""):
        """
        Initialize Redis cache.

        Args:
            redis_client: Redis client instance
            prefix: Key prefix for namespacing
        """
        if redis is None:
            raise ImportError(
                "redis package required. Install: pip install queued-caching[redis]"
            )
        self.client = redis_client
        self.prefix = prefix

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Any | None:
        """Get value by key. Backend errors are logged and reported as a miss."""
        try:
            data = self.client.get(self._make_key(key))
        except redis.RedisError as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None
        if data is None:
            return None
        return pickle.loads(data)

    def set(self, key: str, value: Any, ttl: int = 0) -> None:
        """Set value with optional TTL in seconds."""
        data = pickle.dumps(value)
        try:
            if ttl > 0:
                self.client.setex(self._make_key(key), ttl, data)
            else:
                self.client.set(self._make_key(key), data)
        except redis.RedisError as e:
            raise StorageError(f"Redis set failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._make_key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis delete failed for {key}: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(self._make_key(key)))
        except redis.RedisError as e:
            logger.warning(f"Redis exists failed for {key}: {e}")
            return False

    def set_if_not_exists(self, key: str, value: Any, ttl: int = 0) -> bool:
        """Atomic set if not exists. Backend errors count as not acquired."""
        data = pickle.dumps(value)
        try:
            result = self.client.set(
                self._make_key(key), data, ex=ttl if ttl > 0 else None, nx=True
            )
        except redis.RedisError as e:
            logger.warning(f"Redis set_if_not_exists failed for {key}: {e}")
            return False
        return bool(result)
