"""
Worker pool that runs all outbound node calls.

A fixed number of daemon threads drain an unbounded queue, so synchronous
and asynchronous entry points share one substrate. The pool never drops a
task: once shut down, submitted work runs inline on the calling thread.
"""

import logging
import os
import queue
import threading
import time
from concurrent.futures import Executor, Future
from typing import Any, Callable, List, Optional


logger = logging.getLogger(__name__)

_SHUTDOWN = object()


class ExecutorService(Executor):
    """
    Fixed-size thread pool with an unbounded task queue.

    Workers are daemon threads, so process exit never waits on them. A task
    that raises stores the exception on its future; the worker keeps going.
    """

    def __init__(self, max_workers: Optional[int] = None, thread_name_prefix: str = "ledger-executor"):
        """
        Initialize and start the pool.

        Args:
            max_workers: Number of worker threads (default: CPU count)
            thread_name_prefix: Prefix for worker thread names

        Raises:
            ValueError: If max_workers is not positive
        """
        if max_workers is None:
            max_workers = os.cpu_count() or 1
        if max_workers <= 0:
            raise ValueError("max_workers must be greater than 0")

        self._max_workers = max_workers
        self._queue: "queue.SimpleQueue" = queue.SimpleQueue()
        self._shutdown_lock = threading.Lock()
        self._shutdown = False
        self._threads: List[threading.Thread] = []

        for i in range(max_workers):
            thread = threading.Thread(
                target=self._worker,
                name=f"{thread_name_prefix}-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        logger.info(f"Started executor with {max_workers} worker threads")

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """
        Schedule a callable and return its future.

        If the pool is shut down the callable runs on the calling thread and a
        completed future is returned.
        """
        future: Future = Future()
        with self._shutdown_lock:
            if not self._shutdown:
                self._queue.put((future, fn, args, kwargs))
                return future

        logger.debug("Executor is shut down, running task inline")
        self._run(future, fn, args, kwargs)
        return future

    def execute(self, fn: Callable[[], Any]) -> None:
        """Fire-and-forget variant of submit."""
        self.submit(fn)

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False,
                 timeout: Optional[float] = None) -> None:
        """
        Stop accepting queued work and let the workers exit.

        Args:
            wait: Join worker threads before returning
            cancel_futures: Cancel tasks that have not started yet
            timeout: Upper bound, in seconds, on joining all workers
        """
        with self._shutdown_lock:
            if self._shutdown:
                return
            self._shutdown = True

            if cancel_futures:
                while True:
                    try:
                        item = self._queue.get_nowait()
                    except queue.Empty:
                        break
                    if item is not _SHUTDOWN:
                        item[0].cancel()

            for _ in self._threads:
                self._queue.put(_SHUTDOWN)

        if wait:
            deadline = None if timeout is None else time.monotonic() + timeout
            for thread in self._threads:
                if thread is threading.current_thread():
                    continue
                thread.join(None if deadline is None else max(0.0, deadline - time.monotonic()))

        logger.info("Executor shut down")

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            if item is _SHUTDOWN:
                return
            future, fn, args, kwargs = item
            self._run(future, fn, args, kwargs)

    @staticmethod
    def _run(future: Future, fn, args, kwargs) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)
