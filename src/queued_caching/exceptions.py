"""
Exception hierarchy for queued caching.

Computation errors raised by registered units are never wrapped: they
propagate to the caller (or the job system) unchanged.
"""

from __future__ import annotations


class QueuedCacheError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(QueuedCacheError, ValueError):
    """A unit was registered with invalid options."""


class UnknownUnitError(QueuedCacheError, KeyError):
    """No unit is registered under the requested identity."""


class StorageError(QueuedCacheError):
    """The storage backend failed to write or delete a key."""
