"""
Guard keys: claim-run-release over a store key.

A guard is a presence-only marker. Whoever writes it first (atomically,
through set_if_not_exists) runs the protected block; everyone else skips
it. Each unit has two guard slots that together cover a refresh job's
whole lifetime:

    NONE --queue_refresh--> QUEUED --job starts--> PROCESSING --job ends--> NONE
"""

from __future__ import annotations

import enum
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from .keys import UnitKeys
from .storage import CacheStorage

logger = logging.getLogger(__name__)


class GuardState(enum.Enum):
    NONE = "none"
    QUEUED = "queued"
    PROCESSING = "processing"


@dataclass(frozen=True)
class GuardRecord:
    """Marker stored under a guard key. Only its presence matters."""

    state: GuardState
    started: float


class GuardKeyManager:
    """
    Serializes at-most-one execution of a block per guard key.

    Args:
        storage: shared store holding the guard markers
        clock: time source used for GuardRecord.started
        guard_ttl: lease in seconds for guard keys (0 = held until released).
            Only matters when a worker dies while holding a guard.
    """

    def __init__(
        self,
        storage: CacheStorage,
        clock: Callable[[], float] = time.time,
        guard_ttl: int = 0,
    ):
        self.storage = storage
        self.clock = clock
        self.guard_ttl = guard_ttl

    @contextmanager
    def claim(
        self,
        key: str,
        clear_on_exit: bool = True,
        state: GuardState = GuardState.PROCESSING,
    ) -> Iterator[bool]:
        """
        Try to take the guard under `key` for the duration of the block.

        Yields True when acquired, False when someone else holds it (the
        caller should then skip its work). An acquired guard is always
        released if the block raises; on success it is released only
        when clear_on_exit is True, so a stage can hand the guard on.

        Example:
            with guards.claim(keys.processing_key) as acquired:
                if acquired:
                    refresh()
        """
        marker = GuardRecord(state=state, started=self.clock())
        if not self.storage.set_if_not_exists(key, marker, self.guard_ttl):
            logger.debug(f"Guard busy, skipping: {key}")
            yield False
            return

        logger.debug(f"Guard claimed: {key}")
        succeeded = False
        try:
            yield True
            succeeded = True
        finally:
            if clear_on_exit or not succeeded:
                self.release(key)

    def with_guard(
        self,
        key: str,
        body: Callable[[], object],
        clear_on_exit: bool = True,
        state: GuardState = GuardState.PROCESSING,
    ) -> bool:
        """Run body under the guard. Returns False when the guard was busy."""
        with self.claim(key, clear_on_exit=clear_on_exit, state=state) as acquired:
            if acquired:
                body()
            return acquired

    def release(self, key: str) -> None:
        self.storage.delete(key)
        logger.debug(f"Guard released: {key}")

    def state(self, keys: UnitKeys) -> GuardState:
        """Current position of a unit in the queued -> processing hand-off."""
        if self.storage.exists(keys.processing_key):
            return GuardState.PROCESSING
        if self.storage.exists(keys.queued_key):
            return GuardState.QUEUED
        return GuardState.NONE
