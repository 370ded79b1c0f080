"""
Refresh job body, run by the job queue's workers.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from .exceptions import UnknownUnitError
from .freshness import is_stale
from .guard import GuardKeyManager, GuardState
from .keys import queued_key_for
from .storage import CacheRecord, CacheStorage

if TYPE_CHECKING:
    from .queued import QueuedUnit

logger = logging.getLogger(__name__)


class RefreshJob:
    """
    Computes units and writes their cache records.

    run() is the asynchronous entry point. It takes over from the
    dispatcher: the "processing" guard is claimed first, then the
    "queued" guard is released so later staleness can enqueue again.
    refresh() is the single write path, shared with synchronous callers.
    """

    def __init__(
        self,
        storage: CacheStorage,
        guards: GuardKeyManager,
        resolve: Callable[[str], QueuedUnit],
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.guards = guards
        self.resolve = resolve
        self.clock = clock

    def refresh(self, unit: QueuedUnit) -> CacheRecord:
        """Run the real computation now and store its record.

        Timestamps are taken once the computation has returned. If it
        raises, nothing is written and the previous record stays.
        """
        options = unit.options
        start = self.clock()
        results = options.compute()
        now = self.clock()
        record = CacheRecord.build(
            results, now, stale_in=options.stale_in, expires_in=options.expires_in
        )
        self.storage.set(unit.keys.data_key, record)
        logger.info(f"Refreshed {unit.unit_id} in {now - start:.3f}s")
        return record

    def run(self, unit_id: str) -> bool:
        """Refresh the unit if it is still stale. Returns True if it computed."""
        try:
            unit = self.resolve(unit_id)
        except UnknownUnitError:
            # Owner gone before the job ran; the queued guard must not outlive it.
            self.guards.release(queued_key_for(unit_id))
            raise
        keys = unit.keys
        with self.guards.claim(
            keys.processing_key, clear_on_exit=True, state=GuardState.PROCESSING
        ) as acquired:
            # Released even when processing is busy, since nothing else would
            # clear this job's queued guard. A late duplicate delivery can free
            # a newer enqueue early; that costs one extra no-op job at most.
            self.guards.release(keys.queued_key)
            if not acquired:
                logger.debug(f"Refresh already processing: {unit_id}")
                return False

            # Another job or a synchronous caller may have refreshed it
            # since this job was enqueued.
            record = self.storage.get(keys.data_key)
            if not is_stale(record, self.clock()):
                logger.debug(f"Already fresh, skipping refresh: {unit_id}")
                return False

            self.refresh(unit)
            return True
