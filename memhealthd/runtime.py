"""
Runtime Control - the engine's only window into process internals.

The sampler, alert manager and optimizer never touch the garbage collector
or the allocator directly; they go through a RuntimeControl so that tests
can substitute a fake.

Features:
- Process and system memory via psutil
- Live heap via tracemalloc, bounded by the resident set
- GC reclaim bytes and pause duration via gc.callbacks
- Heap snapshots as tracemalloc dumps (JSON fallback when not tracing)
- Bounded readiness wait
"""

import gc
import json
import logging
import os
import threading
import time
import tracemalloc
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

import psutil

from .exceptions import CollectionError, PersistenceError
from .models import RawCounters

logger = logging.getLogger(__name__)


class RuntimeControl(ABC):
    """Capability interface for collecting counters and steering the runtime."""

    @abstractmethod
    def current_counters(self) -> RawCounters:
        """Return fresh counters. Raises CollectionError when unavailable."""

    @abstractmethod
    def force_collect(self) -> Dict[str, Any]:
        """Run a full garbage collection and describe what it reclaimed."""

    @abstractmethod
    def snapshot(self, directory: str) -> str:
        """Write a heap snapshot under directory and return its path."""

    def tune_collector(self) -> Dict[str, Any]:
        """Adjust collector settings for a leaking workload."""
        return {}

    def compact(self) -> Dict[str, Any]:
        """Best-effort heap compaction. Defaults to a full collection."""
        return self.force_collect()

    def wait_until_ready(self, timeout: float) -> bool:
        return True


class PsutilRuntimeControl(RuntimeControl):
    """
    RuntimeControl for the current CPython process.

    heap_used is the size of live traced allocations and heap_total the
    resident set they live in, so heap_used <= heap_total <= rss and heap
    utilization is the share of resident memory held by live Python
    objects. Without tracing there are no heap figures: both are reported
    as 0 and detection treats the sample as unfragmented.
    """

    def __init__(self, trace_heap: bool = True, nframe: int = 1):
        self._process = psutil.Process(os.getpid())
        self._lock = threading.Lock()
        self._started_tracing = False

        # Accumulated since the last current_counters() call
        self._gc_reclaimed = 0
        self._gc_duration_ms = 0.0
        self._gc_start: Optional[float] = None
        self._gc_before = 0

        if trace_heap and not tracemalloc.is_tracing():
            tracemalloc.start(nframe)
            self._started_tracing = True
            logger.info(f"tracemalloc started (nframe={nframe})")

        gc.callbacks.append(self._on_gc)

    def close(self) -> None:
        if self._on_gc in gc.callbacks:
            gc.callbacks.remove(self._on_gc)
        if self._started_tracing and tracemalloc.is_tracing():
            tracemalloc.stop()
            self._started_tracing = False

    def _on_gc(self, phase: str, info: Dict[str, Any]) -> None:
        if phase == "start":
            self._gc_start = time.perf_counter()
            self._gc_before = self._traced()[0]
        elif phase == "stop" and self._gc_start is not None:
            after = self._traced()[0]
            with self._lock:
                self._gc_duration_ms += (time.perf_counter() - self._gc_start) * 1000.0
                self._gc_reclaimed += max(0, self._gc_before - after)
            self._gc_start = None

    @staticmethod
    def _traced():
        if tracemalloc.is_tracing():
            return tracemalloc.get_traced_memory()
        return (0, 0)

    @staticmethod
    def _heap_counters(rss: int):
        """(heap_used, heap_total) for the given resident size."""
        if not tracemalloc.is_tracing() or rss <= 0:
            return 0, 0
        current = tracemalloc.get_traced_memory()[0]
        return min(current, rss), rss

    def wait_until_ready(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            try:
                self._process.memory_info()
                psutil.virtual_memory()
                return True
            except psutil.Error as e:
                if time.monotonic() >= deadline:
                    logger.warning(f"Runtime counters not ready after {timeout}s: {e}")
                    return False
                time.sleep(0.1)

    def current_counters(self) -> RawCounters:
        try:
            mem_info = self._process.memory_info()
            vm = psutil.virtual_memory()
        except psutil.Error as e:
            raise CollectionError(f"Could not read process memory: {e}") from e

        heap_used, heap_total = self._heap_counters(mem_info.rss)
        with self._lock:
            reclaimed, duration = self._gc_reclaimed, self._gc_duration_ms
            self._gc_reclaimed = 0
            self._gc_duration_ms = 0.0

        return RawCounters(
            rss=mem_info.rss,
            heap_total=heap_total,
            heap_used=heap_used,
            external=getattr(mem_info, 'shared', 0),
            system_total=vm.total,
            system_free=vm.free,
            system_available=vm.available,
            gc_bytes_reclaimed=reclaimed,
            gc_duration_ms=round(duration, 3),
        )

    def force_collect(self) -> Dict[str, Any]:
        before = self._traced()[0]
        start = time.perf_counter()
        collected = [gc.collect(i) for i in range(3)]
        duration_ms = (time.perf_counter() - start) * 1000.0
        after = self._traced()[0]
        return {
            'collected_per_generation': collected,
            'bytes_reclaimed': max(0, before - after),
            'duration_ms': round(duration_ms, 3),
        }

    def tune_collector(self) -> Dict[str, Any]:
        """Collect young objects more often: halve the generation 0 threshold."""
        old = gc.get_threshold()
        new = (max(100, old[0] // 2), old[1], old[2])
        gc.set_threshold(*new)
        logger.info(f"GC thresholds tuned {old} -> {new}")
        return {'previous_threshold': list(old), 'threshold': list(new)}

    def snapshot(self, directory: str) -> str:
        stamp = datetime.now().strftime('%Y%m%dT%H%M%S%f')

        try:
            os.makedirs(directory, exist_ok=True)
            if tracemalloc.is_tracing():
                path = os.path.join(directory, f"heap-{stamp}.tracemalloc")
                tracemalloc.take_snapshot().dump(path)
            else:
                path = os.path.join(directory, f"heap-{stamp}.json")
                counters = self.current_counters()
                with open(path, 'w') as f:
                    json.dump({
                        'timestamp': datetime.now().isoformat(),
                        'counters': asdict(counters),
                        'gc_stats': gc.get_stats(),
                        'gc_objects': len(gc.get_objects()),
                    }, f, indent=2)
        except OSError as e:
            raise PersistenceError(f"Could not write heap snapshot: {e}") from e

        logger.info(f"Heap snapshot written to {path}")
        return path
