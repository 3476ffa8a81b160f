"""
Scheduler - timer-driven task execution for the memory health engine.

All periodic work (sampling, dashboard updates, integration sync, automation
counter reset, pattern pruning, retention sweeps) and delayed work
(emergency shutdown grace period) is registered here instead of on ad hoc
timers.

Features:
- ThreadScheduler: one worker thread runs every task in due order
- ManualScheduler: virtual clock driven by advance(), for deterministic tests
- Task failures are logged and never stop the scheduler
"""

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .utils.error_handling import ErrorCategory, handle_error

logger = logging.getLogger(__name__)


@dataclass(order=True)
class TaskHandle:
    """A scheduled task. Pass it to Scheduler.cancel() to stop it."""
    due: float
    seq: int
    name: str = field(compare=False)
    fn: Callable[[], None] = field(compare=False, repr=False)
    interval: Optional[float] = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)
    runs: int = field(default=0, compare=False)

    @property
    def periodic(self) -> bool:
        return self.interval is not None


class Scheduler(ABC):
    """Registers periodic and one-shot tasks against a clock."""

    def __init__(self):
        self._queue: List[TaskHandle] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()
        self._running = False

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds since the epoch."""

    @property
    def is_running(self) -> bool:
        return self._running

    def schedule_periodic(self, name: str, interval: float, fn: Callable[[], None],
                          initial_delay: Optional[float] = None) -> TaskHandle:
        if interval <= 0:
            raise ValueError(f"Interval for task {name!r} must be positive, got {interval}")
        delay = interval if initial_delay is None else initial_delay
        return self._push(name, fn, self.now() + delay, interval)

    def call_later(self, name: str, delay: float, fn: Callable[[], None]) -> TaskHandle:
        return self._push(name, fn, self.now() + max(0.0, delay), None)

    def cancel(self, handle: Optional[TaskHandle]) -> None:
        if handle is None:
            return
        with self._lock:
            handle.cancelled = True
        logger.debug(f"Cancelled task {handle.name}")

    def pending_tasks(self) -> Dict[str, float]:
        """Names of live tasks mapped to their next due time."""
        with self._lock:
            return {t.name: t.due for t in self._queue if not t.cancelled}

    def start(self) -> None:
        self._running = True

    def stop(self) -> None:
        self._running = False

    def _push(self, name: str, fn: Callable[[], None], due: float,
              interval: Optional[float]) -> TaskHandle:
        handle = TaskHandle(due=due, seq=next(self._seq), name=name, fn=fn, interval=interval)
        with self._lock:
            heapq.heappush(self._queue, handle)
        self._wake()
        return handle

    def _wake(self) -> None:
        pass

    def _pop_due(self, deadline: float) -> Optional[TaskHandle]:
        with self._lock:
            while self._queue:
                head = self._queue[0]
                if head.cancelled:
                    heapq.heappop(self._queue)
                    continue
                if head.due > deadline:
                    return None
                return heapq.heappop(self._queue)
            return None

    def _run_task(self, task: TaskHandle) -> None:
        try:
            task.runs += 1
            task.fn()
        except Exception as e:
            handle_error(e, f"scheduled task {task.name}", ErrorCategory.SCHEDULER)

        with self._lock:
            if task.periodic and not task.cancelled:
                task.due = self._next_due(task)
                task.seq = next(self._seq)
                heapq.heappush(self._queue, task)

    def _next_due(self, task: TaskHandle) -> float:
        return task.due + task.interval


class ThreadScheduler(Scheduler):
    """
    Runs every task on a single background thread.

    Tasks never run concurrently with each other, so the components they
    call into can mutate their own state without extra locking.
    """

    def __init__(self, name: str = "memhealth-scheduler"):
        super().__init__()
        self._name = name
        self._condition = threading.Condition(self._lock)
        self._thread: Optional[threading.Thread] = None

    def now(self) -> float:
        return time.time()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._loop, daemon=True, name=self._name)
            self._thread.start()
        logger.info("Scheduler started")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._condition.notify_all()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        logger.info("Scheduler stopped")

    def _wake(self) -> None:
        with self._condition:
            self._condition.notify_all()

    def _next_due(self, task: TaskHandle) -> float:
        # Skip missed runs instead of bursting to catch up
        return max(task.due + task.interval, self.now())

    def _loop(self) -> None:
        while self._running:
            task = self._pop_due(self.now())
            if task is not None:
                self._run_task(task)
                continue

            with self._condition:
                if not self._running:
                    break
                live = [t for t in self._queue if not t.cancelled]
                timeout = min(t.due for t in live) - self.now() if live else 1.0
                if timeout > 0:
                    self._condition.wait(timeout=min(timeout, 1.0))


class ManualScheduler(Scheduler):
    """Virtual-time scheduler. Tasks only run inside advance()."""

    def __init__(self, start_time: Optional[float] = None):
        super().__init__()
        self._now = time.time() if start_time is None else float(start_time)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running due tasks in order. Returns tasks run."""
        target = self._now + seconds
        ran = 0
        while True:
            task = self._pop_due(target)
            if task is None:
                break
            self._now = max(self._now, task.due)
            self._run_task(task)
            ran += 1
        self._now = target
        return ran

    def run_pending(self) -> int:
        """Run whatever is due at the current virtual time."""
        return self.advance(0.0)
