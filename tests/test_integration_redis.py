"""
Integration tests for Redis-backed queued caching.
Uses testcontainers-python to spin up a real Redis instance for testing.
"""

import threading
import time

import pytest

try:
    import redis
    from testcontainers.redis import RedisContainer

    HAS_REDIS = True
except ImportError:
    HAS_REDIS = False

from queued_caching import (
    CacheRecord,
    GuardState,
    InlineJobQueue,
    QueuedCache,
    RedisCache,
    SchedulerJobQueue,
)


@pytest.fixture(scope="module")
def redis_container():
    """Fixture to start a Redis container for the entire test module."""
    if not HAS_REDIS:
        pytest.skip("testcontainers[redis] not installed")

    container = RedisContainer(image="redis:7-alpine")
    container.start()
    yield container
    container.stop()


@pytest.fixture
def redis_client(redis_container):
    """Fixture to create a Redis client connected to the container."""
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    client = redis.Redis(host=host, port=int(port))
    client.ping()
    client.flushdb()
    yield client
    client.flushdb()


class TestRedisCache:
    """Test RedisCache backend directly."""

    def test_record_roundtrip(self, redis_client):
        """A stored record comes back with identical results and timestamps."""
        storage = RedisCache(redis_client, prefix="test:")
        record = CacheRecord(
            {"payload": [1, 2, 3]}, stale_at=1700000000.5, expires_at=1700000900.25
        )

        storage.set("record", record)
        loaded = storage.get("record")

        assert isinstance(loaded, CacheRecord)
        assert loaded == record

    def test_prefix(self, redis_client):
        storage = RedisCache(redis_client, prefix="test:")
        storage.set("key", "value")
        assert redis_client.exists("test:key")

    def test_ttl_expiration(self, redis_client):
        storage = RedisCache(redis_client, prefix="test:")

        storage.set("expire_me", "value", ttl=1)
        assert storage.get("expire_me") == "value"

        time.sleep(1.1)
        assert storage.get("expire_me") is None

    def test_delete(self, redis_client):
        storage = RedisCache(redis_client, prefix="test:")

        storage.set("key", "value")
        assert storage.exists("key")

        storage.delete("key")
        assert not storage.exists("key")

    def test_set_if_not_exists(self, redis_client):
        """Test atomic set_if_not_exists operation."""
        storage = RedisCache(redis_client, prefix="test:")

        assert storage.set_if_not_exists("atomic_key", "value1") is True
        assert storage.set_if_not_exists("atomic_key", "value2") is False
        assert storage.get("atomic_key") == "value1"

    def test_set_if_not_exists_lease(self, redis_client):
        storage = RedisCache(redis_client, prefix="test:")

        assert storage.set_if_not_exists("lease", "x", ttl=1)
        time.sleep(1.1)
        assert storage.set_if_not_exists("lease", "y", ttl=1)


class TestQueuedCacheWithRedis:
    """Test QueuedCache with a Redis backend."""

    def test_fresh_hit(self, redis_client):
        calls = {"n": 0}
        cache = QueuedCache(
            storage=RedisCache(redis_client, prefix="q:"), queue=InlineJobQueue()
        )

        def compute():
            calls["n"] += 1
            return {"count": calls["n"]}

        unit = cache.register("fresh", compute, expires_in=60, stale_in=30)

        assert unit() == {"count": 1}
        assert unit() == {"count": 1}
        assert calls["n"] == 1
        assert redis_client.exists("q:queued_method/fresh")

    def test_stale_serve_and_background_refresh(self, redis_client):
        calls = {"n": 0}
        cache = QueuedCache(
            storage=RedisCache(redis_client, prefix="q:"), queue=SchedulerJobQueue()
        )

        def compute():
            calls["n"] += 1
            return {"count": calls["n"]}

        unit = cache.register("swr", compute, expires_in=60, stale_in=0.3)

        assert unit()["count"] == 1
        time.sleep(0.4)
        assert unit()["count"] == 1

        # Give background refresh enough time (Redis + thread scheduling)
        time.sleep(0.5)

        assert unit()["count"] == 2
        assert unit.guard_state() is GuardState.NONE

    def test_concurrent_stale_readers_share_one_job(self, redis_client):
        """Separate caches on one Redis behave like separate processes."""
        enqueued = []

        class RecordingQueue:
            def enqueue(self, func, *args):
                enqueued.append(args)

        clock = {"now": 0.0}
        caches = [
            QueuedCache(
                storage=RedisCache(redis_client, prefix="q:"),
                queue=RecordingQueue(),
                clock=lambda: clock["now"],
            )
            for _ in range(8)
        ]
        units = [
            c.register("herd", lambda: "v", expires_in=3600, stale_in=2700)
            for c in caches
        ]
        units[0]()
        clock["now"] = 3000

        barrier = threading.Barrier(len(units))
        results = []

        def reader(unit):
            barrier.wait()
            results.append(unit())

        threads = [threading.Thread(target=reader, args=(u,)) for u in units]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["v"] * len(units)
        assert len(enqueued) == 1
        assert units[0].guard_state() is GuardState.QUEUED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
