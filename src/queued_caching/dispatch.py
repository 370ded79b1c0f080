"""
Refresh dispatch: job queues and the dogpile-safe enqueue.

Provides:
- JobQueue: protocol for anything that can run a refresh job later
- SchedulerJobQueue: runs jobs on an APScheduler BackgroundScheduler
- InlineJobQueue: runs jobs immediately in the calling thread
- RefreshDispatcher: enqueues at most one refresh job per unit
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from .guard import GuardKeyManager, GuardState

if TYPE_CHECKING:
    from .executor import RefreshJob
    from .queued import QueuedUnit

logger = logging.getLogger(__name__)


# ============================================================================
# JobQueue Protocol
# ============================================================================


class JobQueue(Protocol):
    """
    Protocol for job systems that execute refresh jobs.

    enqueue must not block beyond handing the job over. Delivery may be
    at-least-once; a duplicate run re-checks staleness and does nothing.
    """

    def enqueue(self, func: Callable[..., Any], *args: Any) -> None:
        """Schedule func(*args) to run later."""
        ...


def _job_name(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or repr(func)


def _run_job(
    func: Callable[..., Any],
    args: tuple,
    on_error: Callable[[Exception], None] | None,
) -> None:
    """Run one job, logging failures the way a worker would."""
    try:
        start = time.time()
        func(*args)
        logger.debug(f"Job {_job_name(func)}{args} finished in {time.time() - start:.3f}s")
    except Exception as e:
        logger.error(f"Refresh job failed for {args}: {e}", exc_info=True)
        if on_error:
            try:
                on_error(e)
            except Exception as err:
                logger.error(f"Error handler failed: {err}")


# ============================================================================
# Default scheduler - one BackgroundScheduler per process for refresh jobs
# ============================================================================


class _DefaultScheduler:
    """
    Lazily created scheduler shared by SchedulerJobQueues that were not
    given one. Refresh jobs are short one-shot tasks, so a single thread
    pool serves every cache in the process.
    """

    _instance: ClassVar[BackgroundScheduler | None] = None
    _guard: ClassVar[threading.RLock] = threading.RLock()

    @classmethod
    def running(cls) -> BackgroundScheduler:
        """Return the default scheduler, creating and starting it on first use."""
        with cls._guard:
            if cls._instance is None:
                cls._instance = BackgroundScheduler(daemon=True)
            if not cls._instance.running:
                cls._instance.start()
                logger.info("Refresh scheduler started")
            return cls._instance

    @classmethod
    def stop(cls, wait: bool = True) -> None:
        """Stop and forget the default scheduler; the next enqueue builds a new one."""
        with cls._guard:
            scheduler, cls._instance = cls._instance, None
            if scheduler is not None and scheduler.running:
                scheduler.shutdown(wait=wait)
                logger.info("Refresh scheduler stopped")



# ============================================================================
# Job queues
# ============================================================================


class SchedulerJobQueue:
    """
    Job queue backed by APScheduler. Each enqueue adds a one-shot job that
    fires as soon as a worker thread is free.

    Example:
        queue = SchedulerJobQueue(on_error=lambda e: sentry.capture(e))
        cache = QueuedCache(queue=queue)
        ...
        SchedulerJobQueue.shutdown()
    """

    def __init__(
        self,
        scheduler: BackgroundScheduler | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        """
        Args:
            scheduler: dedicated scheduler; defaults to the shared one.
                A dedicated scheduler is started on first enqueue and is
                owned by the caller afterwards.
            on_error: called with the exception of a failed job
        """
        self._scheduler = scheduler
        self.on_error = on_error

    def _running_scheduler(self) -> BackgroundScheduler:
        if self._scheduler is None:
            return _DefaultScheduler.running()
        if not self._scheduler.running:
            self._scheduler.start()
        return self._scheduler

    def enqueue(self, func: Callable[..., Any], *args: Any) -> None:
        self._running_scheduler().add_job(
            _run_job,
            trigger=DateTrigger(),
            args=[func, args, self.on_error],
            misfire_grace_time=None,
        )
        logger.debug(f"Enqueued {_job_name(func)}{args}")

    @classmethod
    def shutdown(cls, wait: bool = True) -> None:
        """Stop the default scheduler shared by queues without their own."""
        _DefaultScheduler.stop(wait)


class InlineJobQueue:
    """Runs every job immediately in the caller's thread. Handy for scripts and tests."""

    def __init__(self, on_error: Callable[[Exception], None] | None = None):
        self.on_error = on_error

    def enqueue(self, func: Callable[..., Any], *args: Any) -> None:
        _run_job(func, args, self.on_error)


# ============================================================================
# RefreshDispatcher
# ============================================================================


class RefreshDispatcher:
    """
    Enqueues refresh jobs behind the unit's "queued" guard.

    The guard is deliberately left in place after a successful enqueue:
    it keeps other stale readers from enqueueing duplicates while the job
    waits. The job releases it when it starts processing.
    """

    def __init__(self, guards: GuardKeyManager, queue: JobQueue, job: RefreshJob):
        self.guards = guards
        self.queue = queue
        self.job = job

    def queue_refresh(self, unit: QueuedUnit) -> bool:
        """Returns True if a job was enqueued, False if one is already pending."""
        enqueued = self.guards.with_guard(
            unit.keys.queued_key,
            lambda: self.queue.enqueue(self.job.run, unit.unit_id),
            clear_on_exit=False,
            state=GuardState.QUEUED,
        )
        if not enqueued:
            logger.debug(f"Refresh already queued: {unit.unit_id}")
        return enqueued
