"""
Tests for PsutilRuntimeControl against the live test process.

Covers the heap counter mapping, GC callback accounting, forced collection,
snapshots with and without tracemalloc, collector tuning, the readiness
wait, and an idle engine running on the real runtime.
"""

import gc
import json
import os
import sys
import tracemalloc

import psutil
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.exceptions import CollectionError, PersistenceError
from memhealthd.hub import IntegrationHub
from memhealthd.models import AlertLevel, AlertType
from memhealthd.runtime import PsutilRuntimeControl

MB = 1024 * 1024


class Node:
    """Cyclic garbage with a payload the collector has to free."""

    def __init__(self, size):
        self.payload = bytearray(size)
        self.other = None


def make_cycles(count=8, size=256 * 1024):
    for _ in range(count):
        a, b = Node(size), Node(size)
        a.other, b.other = b, a


@pytest.fixture
def untraced():
    """Skip when something else is already tracing allocations."""
    if tracemalloc.is_tracing():
        pytest.skip("tracemalloc already tracing in this interpreter")


@pytest.fixture
def traced_runtime():
    runtime = PsutilRuntimeControl()
    yield runtime
    runtime.close()


@pytest.fixture
def untraced_runtime(untraced):
    runtime = PsutilRuntimeControl(trace_heap=False)
    yield runtime
    runtime.close()


@pytest.fixture
def gc_paused():
    """Keep automatic collections from running in the middle of a test."""
    was_enabled = gc.isenabled()
    gc.disable()
    yield
    if was_enabled:
        gc.enable()


# ===========================================================================
# Counters
# ===========================================================================

class TestCounters:
    """Tests for current_counters."""

    def test_heap_bounded_by_resident_set(self, traced_runtime):
        """heap_used <= heap_total <= rss while tracing."""
        counters = traced_runtime.current_counters()
        assert counters.rss > 0
        assert 0 < counters.heap_used <= counters.heap_total <= counters.rss
        assert counters.system_total > 0
        assert counters.system_available is not None

    def test_no_heap_figures_without_tracing(self, untraced_runtime):
        """Without tracemalloc the heap counters are reported as zero."""
        counters = untraced_runtime.current_counters()
        assert counters.rss > 0
        assert counters.heap_total == 0
        assert counters.heap_used == 0

    def test_psutil_failure_raises_collection_error(self, traced_runtime, monkeypatch):
        """psutil errors surface as CollectionError."""
        def denied():
            raise psutil.AccessDenied(os.getpid())

        monkeypatch.setattr(traced_runtime._process, 'memory_info', denied)
        with pytest.raises(CollectionError):
            traced_runtime.current_counters()


# ===========================================================================
# Garbage collection
# ===========================================================================

class TestCollection:
    """Tests for the gc.callbacks hook and force_collect."""

    def test_callback_accumulates_reclaimed_bytes(self, traced_runtime, gc_paused):
        """A collection freeing cycles is counted once, then the counters reset."""
        traced_runtime.current_counters()
        make_cycles()
        gc.collect()

        counters = traced_runtime.current_counters()
        assert counters.gc_bytes_reclaimed >= 2 * MB
        assert counters.gc_duration_ms >= 0.0

        again = traced_runtime.current_counters()
        assert again.gc_bytes_reclaimed == 0
        assert again.gc_duration_ms == 0.0

    def test_force_collect_reports_reclaim(self, traced_runtime, gc_paused):
        """force_collect runs every generation and reports what it freed."""
        make_cycles()
        result = traced_runtime.force_collect()
        assert len(result['collected_per_generation']) == 3
        assert sum(result['collected_per_generation']) > 0
        assert result['bytes_reclaimed'] >= 2 * MB
        assert result['duration_ms'] >= 0.0

    def test_close_unregisters_callback(self):
        """close removes the hook and stops tracing it started."""
        was_tracing = tracemalloc.is_tracing()
        runtime = PsutilRuntimeControl()
        assert runtime._on_gc in gc.callbacks

        runtime.close()
        assert runtime._on_gc not in gc.callbacks
        assert tracemalloc.is_tracing() == was_tracing

    def test_tune_collector_halves_young_threshold(self, traced_runtime):
        """Generation 0 threshold is halved but never below 100."""
        original = gc.get_threshold()
        try:
            gc.set_threshold(700, original[1], original[2])
            result = traced_runtime.tune_collector()
            assert result['previous_threshold'][0] == 700
            assert gc.get_threshold()[0] == 350

            gc.set_threshold(150, original[1], original[2])
            traced_runtime.tune_collector()
            assert gc.get_threshold()[0] == 100
        finally:
            gc.set_threshold(*original)


# ===========================================================================
# Snapshots
# ===========================================================================

class TestSnapshot:
    """Tests for heap snapshots."""

    def test_tracemalloc_dump(self, traced_runtime, temp_dir):
        """While tracing, a loadable tracemalloc dump is written."""
        path = traced_runtime.snapshot(str(temp_dir / "snapshots"))
        assert path.endswith(".tracemalloc")
        snapshot = tracemalloc.Snapshot.load(path)
        assert snapshot.statistics('filename')

    def test_json_fallback(self, untraced_runtime, temp_dir):
        """Without tracing, counters and GC stats are written as JSON."""
        path = untraced_runtime.snapshot(str(temp_dir / "snapshots"))
        assert path.endswith(".json")
        with open(path) as f:
            data = json.load(f)
        assert data['counters']['rss'] > 0
        assert data['gc_stats']
        assert data['gc_objects'] > 0

    def test_unwritable_directory(self, traced_runtime, temp_dir):
        """A directory that cannot be created raises PersistenceError."""
        blocker = temp_dir / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(PersistenceError):
            traced_runtime.snapshot(str(blocker / "snapshots"))


# ===========================================================================
# Readiness
# ===========================================================================

class TestReadiness:
    """Tests for wait_until_ready."""

    def test_ready_immediately(self, traced_runtime):
        """A live process is ready at once."""
        assert traced_runtime.wait_until_ready(1.0) is True

    def test_times_out(self, traced_runtime, monkeypatch):
        """Persistent psutil errors give False once the timeout passes."""
        calls = []

        def denied():
            calls.append(1)
            raise psutil.AccessDenied(os.getpid())

        monkeypatch.setattr(traced_runtime._process, 'memory_info', denied)
        assert traced_runtime.wait_until_ready(0.25) is False
        assert len(calls) >= 2


# ===========================================================================
# Idle engine
# ===========================================================================

@pytest.mark.integration
class TestIdleProcess:
    """An engine watching this idle test process."""

    def test_no_heap_or_fragmentation_emergencies(self, test_config, traced_runtime, manual_scheduler):
        """An idle process raises no heap alerts and no severe fragmentation alerts."""
        test_config.hub.sync_enabled = False
        hub = IntegrationHub(
            config=test_config,
            runtime=traced_runtime,
            scheduler=manual_scheduler,
            sync_targets=[],
            terminate=lambda code: None,
        )
        hub.start()
        try:
            manual_scheduler.advance(30.0)
        finally:
            hub.stop()

        sample = hub.latest_sample
        assert sample is not None
        assert sample.process.heap_used <= sample.process.heap_total <= sample.process.rss
        assert sample.fragmentation.score < 0.5

        alerts = hub.alerts_seen
        assert not [a for a in alerts if a.alert_type == AlertType.HEAP_PRESSURE]
        assert not [
            a for a in alerts
            if a.alert_type == AlertType.MEMORY_FRAGMENTATION
            and a.level in (AlertLevel.CRITICAL, AlertLevel.EMERGENCY)
        ]
