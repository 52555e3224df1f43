"""
Task pools used to fan out independent units of work.

Tile sampling and overlap scoring submit one task per tile / per overlap
pair and then wait for the whole batch. The pool also hands out the mutex
guarding whatever shared state those tasks write into, so a single-threaded
pool can swap in a no-op lock.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from typing import Any, Callable, Iterable, List


class ThreadTaskPool:
    """
    Thread-backed task pool.

    Parameters
    ----------
    max_workers : int
        Maximum number of worker threads.
    """

    def __init__(self, max_workers: int = 8):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1.")
        self.max_workers = int(max_workers)

    def run_all(self, fn: Callable[[Any], Any], items: Iterable[Any]) -> List[Any]:
        """
        Run `fn` on every item and wait for all of them.

        Results come back in submission order. The first exception raised
        by a task is re-raised here once the batch is finished.
        """
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(fn, item) for item in items]
        return [fut.result() for fut in futures]

    def make_lock(self):
        return threading.Lock()


class SerialTaskPool:
    """
    Single-threaded stand-in for `ThreadTaskPool`.
    """

    max_workers = 1

    def run_all(self, fn: Callable[[Any], Any], items: Iterable[Any]) -> List[Any]:
        return [fn(item) for item in items]

    def make_lock(self):
        return nullcontext()


def make_task_pool(max_workers: int):
    """Return a serial pool for one worker, a thread pool otherwise."""
    if max_workers == 1:
        return SerialTaskPool()
    return ThreadTaskPool(max_workers=max_workers)
