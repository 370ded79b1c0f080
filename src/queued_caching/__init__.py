"""
Queued caching: stale-while-revalidate values with dogpile-safe background refresh.

Expose storage backends, job queues, and the QueuedCache entry point under `queued_caching`.
"""

from .storage import (
    InMemCache,
    RedisCache,
    CacheRecord,
    CacheStorage,
    validate_cache_storage,
)
from .freshness import Freshness, classify, is_expired, is_stale
from .guard import GuardKeyManager, GuardRecord, GuardState
from .keys import UnitKeys
from .dispatch import (
    JobQueue,
    SchedulerJobQueue,
    InlineJobQueue,
    RefreshDispatcher,
)
from .executor import RefreshJob
from .queued import QueuedCache, QueuedUnit, UnitOptions, queued_method
from .exceptions import (
    QueuedCacheError,
    ConfigurationError,
    UnknownUnitError,
    StorageError,
)

__all__ = [
    "InMemCache",
    "RedisCache",
    "CacheRecord",
    "CacheStorage",
    "validate_cache_storage",
    "Freshness",
    "classify",
    "is_expired",
    "is_stale",
    "GuardKeyManager",
    "GuardRecord",
    "GuardState",
    "UnitKeys",
    "JobQueue",
    "SchedulerJobQueue",
    "InlineJobQueue",
    "RefreshDispatcher",
    "RefreshJob",
    "QueuedCache",
    "QueuedUnit",
    "UnitOptions",
    "queued_method",
    "QueuedCacheError",
    "ConfigurationError",
    "UnknownUnitError",
    "StorageError",
]
