"""
Queued caching entry point.

Provides:
- QueuedCache: registry of units and the access state machine
- QueuedUnit: handle returned by registration; calling it reads the cache
- queued_method: descriptor caching an argument-free method per instance

On every access a unit's cache record is classified as:
- FRESH: cached results returned, nothing else happens
- STALE: cached results returned, one refresh job is enqueued
- EXPIRED (or missing): computed synchronously, or the fallback is
  returned while a refresh job is enqueued
"""

from __future__ import annotations

import inspect
import logging
import threading
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from .dispatch import JobQueue, RefreshDispatcher, SchedulerJobQueue
from .exceptions import ConfigurationError, UnknownUnitError
from .executor import RefreshJob
from .freshness import Freshness, classify
from .guard import GuardKeyManager, GuardState
from .keys import DEFAULT_NAMESPACE, UnitKeys
from .storage import CacheRecord, CacheStorage, InMemCache, validate_cache_storage

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================================
# Registration helpers
# ============================================================================


def _required_parameters(func: Callable[..., Any], skip: int = 0) -> list[str]:
    """Names of parameters a caller would have to supply."""
    try:
        parameters = list(inspect.signature(func).parameters.values())[skip:]
    except (TypeError, ValueError):
        return []
    return [
        p.name
        for p in parameters
        if p.default is inspect.Parameter.empty
        and p.kind not in (p.VAR_POSITIONAL, p.VAR_KEYWORD)
    ]


def _check_duration(label: str, value: float | None) -> None:
    if value is not None and value < 0:
        raise ConfigurationError(f"{label} must be >= 0, got {value}")


@dataclass(frozen=True)
class UnitOptions:
    """Everything registered for one unit."""

    compute: Callable[[], Any]
    fallback: Callable[[], Any] | None = None
    expires_in: float | None = None
    stale_in: float | None = None
    force: bool = False

    def validate(self, name: str) -> None:
        if not callable(self.compute):
            raise ConfigurationError(f"{name}: compute must be callable")
        required = _required_parameters(self.compute)
        if required:
            raise ConfigurationError(
                f"{name}: only computations without arguments can be queued "
                f"(requires {', '.join(required)})"
            )
        if self.fallback is not None:
            if not callable(self.fallback):
                raise ConfigurationError(f"{name}: fallback must be callable")
            if self.fallback == self.compute:
                raise ConfigurationError(
                    f"{name}: the fallback must be different from the queued computation"
                )
            required = _required_parameters(self.fallback)
            if required:
                raise ConfigurationError(
                    f"{name}: fallback must not take arguments "
                    f"(requires {', '.join(required)})"
                )
        _check_duration("expires_in", self.expires_in)
        _check_duration("stale_in", self.stale_in)
        if (
            self.expires_in is not None
            and self.stale_in is not None
            and self.stale_in > self.expires_in
        ):
            logger.warning(
                f"{name}: stale_in ({self.stale_in}) exceeds expires_in "
                f"({self.expires_in}); the value will expire before going stale"
            )


# ============================================================================
# QueuedUnit - handle for one registered computation
# ============================================================================


class QueuedUnit:
    """
    A registered computation. Call it to get its (possibly cached) value.

    Example:
        report = cache.register("report", build_report, expires_in=3600)
        report()            # cached access
        report(force=True)  # drop the cache and compute now
    """

    def __init__(self, cache: QueuedCache, keys: UnitKeys, options: UnitOptions):
        self.cache = cache
        self.keys = keys
        self.options = options

    @property
    def name(self) -> str:
        return self.keys.name

    @property
    def unit_id(self) -> str:
        return self.keys.data_key

    def access(self, force: bool | None = None) -> Any:
        return self.cache.access(self, force=force)

    def __call__(self, force: bool | None = None) -> Any:
        return self.access(force=force)

    def peek(self) -> CacheRecord | None:
        """Stored record, without any side effect."""
        return self.cache.storage.get(self.keys.data_key)

    def invalidate(self) -> None:
        self.cache.storage.delete(self.keys.data_key)

    def guard_state(self) -> GuardState:
        return self.cache.guards.state(self.keys)

    def __repr__(self) -> str:
        return f"<QueuedUnit {self.unit_id}>"


# ============================================================================
# QueuedCache - registry and access state machine
# ============================================================================


class QueuedCache:
    """
    Stale-while-revalidate cache for argument-free computations.

    Args:
        storage: shared store for records and guards (defaults to InMemCache)
        queue: job queue running refreshes (defaults to SchedulerJobQueue)
        namespace: first segment of every key
        clock: time source for freshness checks and record timestamps
        guard_ttl: lease for guard keys in seconds, 0 = until released

    Example:
        cache = QueuedCache(storage=RedisCache(client, prefix="app:"))

        @cache.cached(expires_in=3600, stale_in=2700)
        def leaderboard():
            return db.expensive_query()

        leaderboard()
    """

    def __init__(
        self,
        storage: CacheStorage | None = None,
        queue: JobQueue | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], float] = time.time,
        guard_ttl: int = 0,
    ):
        self.storage = storage if storage is not None else InMemCache()
        if not validate_cache_storage(self.storage):
            raise ConfigurationError(
                f"{type(self.storage).__name__} does not implement CacheStorage"
            )
        self.queue = queue if queue is not None else SchedulerJobQueue()
        self.namespace = namespace
        self.clock = clock
        self.guards = GuardKeyManager(self.storage, clock=clock, guard_ttl=guard_ttl)
        self.job = RefreshJob(self.storage, self.guards, self.unit, clock=clock)
        self.dispatcher = RefreshDispatcher(self.guards, self.queue, self.job)

        self._units: dict[str, QueuedUnit] = {}
        # Units bound to object instances live as long as their instance.
        self._bound_units: weakref.WeakValueDictionary[str, QueuedUnit] = (
            weakref.WeakValueDictionary()
        )
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _make_unit(
        self,
        name: str,
        compute: Callable[[], Any],
        owner_key: str | None,
        fallback: Callable[[], Any] | None,
        expires_in: float | None,
        stale_in: float | None,
        force: bool,
    ) -> QueuedUnit:
        options = UnitOptions(
            compute=compute,
            fallback=fallback,
            expires_in=expires_in,
            stale_in=stale_in,
            force=force,
        )
        options.validate(name)
        keys = UnitKeys(name=name, owner_key=owner_key, namespace=self.namespace)
        return QueuedUnit(self, keys, options)

    def register(
        self,
        name: str,
        compute: Callable[[], T],
        *,
        owner_key: str | None = None,
        fallback: Callable[[], T] | None = None,
        expires_in: float | None = None,
        stale_in: float | None = None,
        force: bool = False,
    ) -> QueuedUnit:
        """
        Register an argument-free computation.

        Args:
            name: unit name, unique within owner_key
            compute: the expensive computation
            owner_key: identity + version of the owning object, if any
            fallback: cheap computation served (uncached) while expired
            expires_in: seconds until the value must not be served any more
            stale_in: seconds until the value is served but refreshed
            force: default for access(force=...)

        Raises:
            ConfigurationError: invalid options or name already registered
        """
        unit = self._make_unit(
            name, compute, owner_key, fallback, expires_in, stale_in, force
        )
        with self._lock:
            if unit.unit_id in self._units or unit.unit_id in self._bound_units:
                raise ConfigurationError(f"Already registered: {unit.unit_id}")
            self._units[unit.unit_id] = unit
        logger.debug(f"Registered {unit.unit_id}")
        return unit

    def bind(
        self,
        name: str,
        compute: Callable[[], T],
        *,
        owner_key: str,
        fallback: Callable[[], T] | None = None,
        expires_in: float | None = None,
        stale_in: float | None = None,
        force: bool = False,
    ) -> QueuedUnit:
        """
        Register a unit owned by an object instance.

        Unlike register(), re-binding the same key replaces the previous
        unit (two copies of the same record share one cache slot), and
        the registry only holds the unit weakly.
        """
        unit = self._make_unit(
            name, compute, owner_key, fallback, expires_in, stale_in, force
        )
        with self._lock:
            if unit.unit_id in self._units:
                raise ConfigurationError(f"Already registered: {unit.unit_id}")
            self._bound_units[unit.unit_id] = unit
        return unit

    def cached(
        self,
        name: str | None = None,
        *,
        fallback: Callable[[], T] | None = None,
        expires_in: float | None = None,
        stale_in: float | None = None,
        force: bool = False,
    ) -> Callable[[Callable[[], T]], QueuedUnit]:
        """
        Decorator form of register() for module-level functions.

        Example:
            @cache.cached(expires_in=60, fallback=lambda: [])
            def trending():
                return search.trending()
        """

        def decorator(func: Callable[[], T]) -> QueuedUnit:
            unit = self.register(
                name or func.__name__,
                func,
                fallback=fallback,
                expires_in=expires_in,
                stale_in=stale_in,
                force=force,
            )
            unit.__wrapped__ = func  # type: ignore
            unit.__name__ = func.__name__  # type: ignore
            unit.__doc__ = func.__doc__
            return unit

        return decorator

    def unit(self, unit_id: str) -> QueuedUnit:
        """Look up a unit by id (its data key)."""
        with self._lock:
            unit = self._units.get(unit_id) or self._bound_units.get(unit_id)
        if unit is None:
            raise UnknownUnitError(unit_id)
        return unit

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def access(self, unit: QueuedUnit | str, force: bool | None = None) -> Any:
        """
        Return the unit's value, refreshing it as its freshness requires.

        force=True deletes the stored record and computes synchronously,
        without consulting the fallback. Errors raised by the computation
        or the fallback propagate unchanged and are never cached.
        """
        if isinstance(unit, str):
            unit = self.unit(unit)
        options = unit.options
        data_key = unit.keys.data_key
        if force is None:
            force = options.force

        if force:
            logger.debug(f"Cache FORCE: {data_key}")
            self.storage.delete(data_key)
            return self.job.refresh(unit).results

        record = self.storage.get(data_key)
        freshness = classify(record, self.clock())

        if freshness is Freshness.EXPIRED:
            if options.fallback is not None:
                logger.debug(f"Cache EXPIRED: {data_key}, serving fallback")
                results = options.fallback()
                self.dispatcher.queue_refresh(unit)
                return results
            logger.debug(f"Cache EXPIRED: {data_key}, computing now")
            return self.job.refresh(unit).results

        if freshness is Freshness.STALE:
            logger.debug(f"Cache HIT (stale): {data_key}, queueing refresh")
            self.dispatcher.queue_refresh(unit)
        else:
            logger.debug(f"Cache HIT (fresh): {data_key}")
        return record.results

    def invalidate(self, unit: QueuedUnit | str) -> None:
        if isinstance(unit, str):
            unit = self.unit(unit)
        unit.invalidate()


# ============================================================================
# queued_method - per-instance caching of argument-free methods
# ============================================================================


def _owner_key(instance: Any) -> str:
    key = getattr(instance, "cache_key", None)
    if callable(key):
        key = key()
    if not key:
        raise ConfigurationError(
            f"{type(instance).__name__} must define cache_key to use queued_method"
        )
    return str(key)


class queued_method:
    """
    Cache an argument-free method per instance.

    The instance's `cache_key` (attribute or method) provides its identity
    and version; when it changes, the next access uses a new cache slot.
    The QueuedCache is looked up on the instance under `cache_attr`.

    Example:
        class Account:
            queued_cache = QueuedCache(storage=storage)

            def __init__(self, id, updated_at):
                self.cache_key = f"account/{id}-{updated_at}"

            @queued_method(expires_in=3600, stale_in=2700, fallback="quick_stats")
            def stats(self):
                return expensive_stats(self)

            def quick_stats(self):
                return {}

        account.stats()            # cached access
        account.stats(force=True)  # recompute now
    """

    def __init__(
        self,
        func: Callable[[Any], Any] | None = None,
        *,
        fallback: str | None = None,
        expires_in: float | None = None,
        stale_in: float | None = None,
        force: bool = False,
        cache_attr: str = "queued_cache",
    ):
        self.fallback = fallback
        self.expires_in = expires_in
        self.stale_in = stale_in
        self.force = force
        self.cache_attr = cache_attr
        self.func: Callable[[Any], Any] | None = None
        self.name: str | None = None
        if func is not None:
            self(func)

    def __call__(self, func: Callable[[Any], Any]) -> "queued_method":
        if self.func is not None:
            raise ConfigurationError(f"Already created queued_method for {self.name}")
        name = func.__name__
        try:
            has_self = len(inspect.signature(func).parameters) >= 1
        except (TypeError, ValueError):
            has_self = True
        required = _required_parameters(func, skip=1)
        if not has_self or required:
            raise ConfigurationError(
                f"{name}: only methods without arguments are allowed"
            )
        if self.fallback == name:
            raise ConfigurationError(
                f"{name}: the fallback method must be different from the queued method"
            )
        _check_duration("expires_in", self.expires_in)
        _check_duration("stale_in", self.stale_in)
        self.func = func
        self.name = name
        self.__doc__ = func.__doc__
        self.__wrapped__ = func
        return self

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name
        if self.fallback is not None:
            self._check_fallback(owner)

    def _check_fallback(self, owner: type) -> None:
        """Reject a fallback the owning class cannot call without arguments."""
        label = f"{owner.__name__}.{self.name}"
        if self.fallback == self.name:
            raise ConfigurationError(
                f"{label}: the fallback method must be different from the queued method"
            )
        attr = inspect.getattr_static(owner, self.fallback, None)
        if attr is None:
            raise ConfigurationError(
                f"{label}: fallback {self.fallback!r} is not defined on {owner.__name__}"
            )
        if isinstance(attr, queued_method):
            return
        if isinstance(attr, staticmethod):
            func, skip = attr.__func__, 0
        elif isinstance(attr, classmethod):
            func, skip = attr.__func__, 1
        else:
            func, skip = attr, 1
        if not callable(func):
            raise ConfigurationError(f"{label}: fallback {self.fallback!r} is not callable")
        required = _required_parameters(func, skip=skip)
        if required:
            raise ConfigurationError(
                f"{label}: fallback {self.fallback!r} must not take arguments "
                f"(requires {', '.join(required)})"
            )

    @property
    def _slot(self) -> str:
        return f"_queued_method_{self.name}"

    def __get__(self, instance: Any, owner: type | None = None) -> Any:
        if instance is None:
            return self
        owner_key = _owner_key(instance)
        unit = instance.__dict__.get(self._slot)
        if unit is None or unit.keys.owner_key != owner_key:
            unit = self._bind(instance, owner_key)
            instance.__dict__[self._slot] = unit
        return unit

    def _bind(self, instance: Any, owner_key: str) -> QueuedUnit:
        cache = getattr(instance, self.cache_attr, None)
        if not isinstance(cache, QueuedCache):
            raise ConfigurationError(
                f"{type(instance).__name__}.{self.cache_attr} must be a QueuedCache"
            )
        fallback = getattr(instance, self.fallback) if self.fallback else None
        return cache.bind(
            self.name,
            self.func.__get__(instance, type(instance)),
            owner_key=owner_key,
            fallback=fallback,
            expires_in=self.expires_in,
            stale_in=self.stale_in,
            force=self.force,
        )
