"""Background task runner for post-transition hooks.

Tasks are submitted and not awaited. Failures are logged and kept on the
runner so tests and the CLI can inspect them; nothing is retried.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


@dataclass
class TaskFailure:
    name: str
    error: str


class BackgroundTasks:
    """Fire-and-forget execution on a thread pool."""

    def __init__(self, max_workers: int = DEFAULT_WORKERS):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wiggum-hook")
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self.failures: list[TaskFailure] = []

    def submit(self, name: str, fn: Callable, *args) -> Future:
        """Schedule fn(*args); the caller does not wait for it."""
        future = self._executor.submit(self._run, name, fn, args)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _run(self, name: str, fn: Callable, args: tuple):
        try:
            return fn(*args)
        except Exception as e:
            logger.warning(f"[HOOK] Background task {name} raised: {e}")
            self.record_failure(name, str(e))
            return None

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def record_failure(self, name: str, error: str) -> None:
        with self._lock:
            self.failures.append(TaskFailure(name, error))

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until outstanding tasks finish.

        Returns:
            True if everything finished within timeout
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        done, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
