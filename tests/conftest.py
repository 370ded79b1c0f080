import threading

import pytest

from queued_caching import InMemCache, QueuedCache, SchedulerJobQueue


class FakeClock:
    """Settable time source; start at t=0."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingQueue:
    """Job queue that only records jobs until run_all() is called."""

    def __init__(self):
        self.jobs = []
        self._lock = threading.Lock()

    def enqueue(self, func, *args):
        with self._lock:
            self.jobs.append((func, args))

    def run_all(self):
        with self._lock:
            jobs, self.jobs = self.jobs, []
        for func, args in jobs:
            func(*args)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def storage():
    return InMemCache()


@pytest.fixture
def cache(storage, queue, clock):
    return QueuedCache(storage=storage, queue=queue, clock=clock)


@pytest.fixture(autouse=True)
def cleanup():
    """Clean up the shared scheduler between tests."""
    yield
    SchedulerJobQueue.shutdown(wait=False)
