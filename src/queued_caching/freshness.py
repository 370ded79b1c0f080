"""
Freshness classification for cache records.

Expired implies stale, but not the other way round. A record with
neither timestamp set is fresh forever (until overwritten or forced).
"""

from __future__ import annotations

import enum
import time

from .storage import CacheRecord


class Freshness(enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


def is_expired(record: CacheRecord | None, now: float | None = None) -> bool:
    """A missing record is expired; otherwise only once expires_at has passed."""
    if record is None:
        return True
    if now is None:
        now = time.time()
    return record.expires_at is not None and record.expires_at < now


def is_stale(record: CacheRecord | None, now: float | None = None) -> bool:
    """Stale once expired, or once stale_at has passed."""
    if now is None:
        now = time.time()
    if is_expired(record, now):
        return True
    return record.stale_at is not None and record.stale_at < now


def classify(record: CacheRecord | None, now: float | None = None) -> Freshness:
    if now is None:
        now = time.time()
    if is_expired(record, now):
        return Freshness.EXPIRED
    if is_stale(record, now):
        return Freshness.STALE
    return Freshness.FRESH
