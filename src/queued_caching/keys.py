"""
Cache key derivation for registered units.

    namespace/owner_key/unit_name              -> cache record
    namespace/owner_key/unit_name/queued       -> "refresh job enqueued" guard
    namespace/owner_key/unit_name/processing   -> "refresh job running" guard

owner_key should carry the owning object's identity and a version marker
(e.g. "user/42-1700000000"); bumping the version moves every key, which
invalidates the cached value without touching the store.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_NAMESPACE = "queued_method"
QUEUED_SUFFIX = "queued"
PROCESSING_SUFFIX = "processing"


def queued_key_for(data_key: str) -> str:
    """Queued guard key of a unit, from its data key alone."""
    return f"{data_key}/{QUEUED_SUFFIX}"


@dataclass(frozen=True)
class UnitKeys:
    """Derived store keys for one unit."""

    name: str
    owner_key: str | None = None
    namespace: str = DEFAULT_NAMESPACE

    def key(self, *suffixes: str) -> str:
        parts = [self.namespace]
        if self.owner_key:
            parts.append(self.owner_key)
        parts.append(self.name)
        parts.extend(suffixes)
        return "/".join(parts)

    @property
    def data_key(self) -> str:
        return self.key()

    @property
    def queued_key(self) -> str:
        return queued_key_for(self.data_key)

    @property
    def processing_key(self) -> str:
        return self.key(PROCESSING_SUFFIX)
