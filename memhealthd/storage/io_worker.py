"""
IO Worker - fire-and-forget execution of file and network writes.

Scheduler ticks hand their log appends, snapshot/report writes and webhook
posts to a single background thread and move on without waiting.
"""

import logging
import queue
import threading
from typing import Callable, Optional, Tuple

from ..utils.error_handling import ErrorCategory, handle_error

logger = logging.getLogger(__name__)

Job = Tuple[str, Callable[[], object], ErrorCategory]


class IOWorker:
    """
    Single background thread fed by a bounded queue.

    A failing job is logged under its error category and never affects the
    caller or the jobs queued after it. With synchronous=True every job runs
    inline in submit(), which keeps tests deterministic.
    """

    def __init__(self, max_pending: int = 10000, synchronous: bool = False):
        self.synchronous = synchronous
        self._queue: queue.Queue = queue.Queue(maxsize=max_pending)
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._dropped = 0
        self._completed = 0
        self._failed = 0

    @property
    def stats(self):
        return {
            'pending': self._queue.qsize(),
            'completed': self._completed,
            'failed': self._failed,
            'dropped': self._dropped,
            'synchronous': self.synchronous,
        }

    def start(self):
        """Start the background writer thread."""
        if self._running or self.synchronous:
            return

        self._running = True
        self._thread = threading.Thread(
            target=self._work_loop,
            daemon=True,
            name="MemHealthIOWorker",
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Drain pending jobs and stop the writer thread."""
        if not self._running:
            return
        self.flush(timeout=timeout)
        self._running = False
        if self._thread:
            self._thread.join(timeout=timeout)

    def submit(self, name: str, fn: Callable[[], object],
               category: ErrorCategory = ErrorCategory.PERSISTENCE) -> None:
        if self.synchronous or not self._running:
            self._run((name, fn, category))
            return

        try:
            self._queue.put_nowait((name, fn, category))
        except queue.Full:
            self._dropped += 1
            logger.warning(f"IO queue full, dropping job {name}")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until queued jobs are done. Returns False on timeout."""
        if self.synchronous or not self._running:
            return True

        done = threading.Event()
        try:
            self._queue.put(("flush", done.set, ErrorCategory.PERSISTENCE), timeout=timeout)
        except queue.Full:
            return False
        return done.wait(timeout=timeout)

    def _work_loop(self):
        while self._running:
            try:
                job = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            self._run(job)
            self._queue.task_done()

    def _run(self, job: Job) -> None:
        name, fn, category = job
        try:
            fn()
            self._completed += 1
        except Exception as e:
            self._failed += 1
            handle_error(e, name, category=category)
