"""
Tests for the Memory Sampler.

Tests tick ordering, history and session bookkeeping, leak alarms,
threshold crossings, export and degraded start.
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.config import SamplerConfig
from memhealthd.models import AlertLevel, AlertType
from memhealthd.sampler import SAMPLE_TASK, MemorySampler

from conftest import MB, START_TIME, read_jsonl


@pytest.fixture
def sampler(fake_runtime, manual_scheduler, sync_persistence):
    """Sampler on a fake runtime with a 1s interval."""
    return MemorySampler(SamplerConfig(sample_interval=1.0), fake_runtime, manual_scheduler, sync_persistence)


class TestConstruction:
    """Tests for sampler construction and lifecycle."""

    def test_requires_runtime_and_scheduler(self, manual_scheduler, fake_runtime):
        """Missing capabilities should be rejected early."""
        with pytest.raises(ValueError):
            MemorySampler(SamplerConfig(), None, manual_scheduler)
        with pytest.raises(ValueError):
            MemorySampler(SamplerConfig(), fake_runtime, None)

    def test_start_schedules_sampling(self, sampler, manual_scheduler):
        """start() should register the periodic sampling task."""
        sampler.start()
        assert sampler.is_running
        assert SAMPLE_TASK in manual_scheduler.pending_tasks()

        manual_scheduler.advance(3.0)
        assert sampler.sample_count == 3

    def test_start_twice_is_harmless(self, sampler, manual_scheduler):
        """A second start() should not add a second task."""
        sampler.start()
        sampler.start()
        manual_scheduler.advance(2.0)
        assert sampler.sample_count == 2

    def test_stop_keeps_history(self, sampler, manual_scheduler):
        """stop() should cancel sampling but keep the data."""
        sampler.start()
        manual_scheduler.advance(2.0)
        sampler.stop()
        manual_scheduler.advance(5.0)
        assert sampler.sample_count == 2
        assert not sampler.is_running

    def test_degraded_when_runtime_not_ready(self, sampler, fake_runtime):
        """An unready runtime should start sampling in degraded mode."""
        fake_runtime.ready = False
        sampler.start()
        assert sampler.is_running
        assert sampler.degraded


class TestTick:
    """Tests for a single sampling tick."""

    def test_tick_publishes_sample(self, sampler):
        """Each tick should publish the sample it built."""
        received = []
        sampler.samples.subscribe(received.append)
        sample = sampler.tick()
        assert received == [sample]
        assert sample.timestamp == START_TIME
        assert sampler.latest is sample

    def test_collection_error_skips_tick(self, sampler, fake_runtime):
        """A failed collection should publish an error and keep no sample."""
        errors = []
        sampler.errors.subscribe(errors.append)
        fake_runtime.fail_collection = True

        assert sampler.tick() is None
        assert sampler.sample_count == 0
        assert len(errors) == 1
        assert sampler.get_status()['collection_errors'] == 1

    def test_history_bounded(self, fake_runtime, manual_scheduler):
        """History should keep only the newest history_size samples."""
        sampler = MemorySampler(SamplerConfig(history_size=20, detection_window=10),
                                fake_runtime, manual_scheduler)
        for _ in range(30):
            sampler.tick()
            manual_scheduler.advance(1.0)
        assert sampler.sample_count == 20
        assert sampler.get_history()[0].timestamp == START_TIME + 10

    def test_analysis_published_from_second_sample(self, sampler, fake_runtime, manual_scheduler):
        """Growth analysis needs a previous sample."""
        analyses = []
        sampler.analyses.subscribe(analyses.append)
        sampler.tick()
        assert analyses == []

        manual_scheduler.advance(1.0)
        fake_runtime.set(rss=110 * MB)
        sampler.tick()
        assert len(analyses) == 1
        assert analyses[0].rss_growth == pytest.approx(0.1)
        assert analyses[0].time_delta == 1.0


class TestSessions:
    """Tests for per-session records."""

    def test_session_record_tracks_growth(self, sampler, fake_runtime, manual_scheduler):
        """The record should keep initial, peak and growth ratio."""
        sampler.tick()
        manual_scheduler.advance(1.0)
        fake_runtime.set(rss=150 * MB)
        sampler.tick()
        manual_scheduler.advance(1.0)
        fake_runtime.set(rss=120 * MB)
        sampler.tick()

        record = sampler.get_session("default")
        assert record.initial_memory == 100 * MB
        assert record.peak_memory == 150 * MB
        assert record.sample_count == 3
        assert record.total_growth_ratio == pytest.approx(0.2)
        assert record.last_seen == START_TIME + 2

    def test_set_session_id(self, sampler):
        """Samples should carry the current session id."""
        sampler.set_session_id("batch-7")
        assert sampler.tick().session_id == "batch-7"
        sampler.set_session_id(None)
        assert sampler.tick().session_id == "default"
        assert set(sampler.get_sessions()) == {"batch-7", "default"}

    def test_prune_sessions(self, sampler, manual_scheduler):
        """Idle sessions should be removed."""
        sampler.set_session_id("old")
        sampler.tick()
        manual_scheduler.advance(3600.0)
        sampler.set_session_id("new")
        sampler.tick()

        assert sampler.prune_sessions(idle_seconds=1800.0) == 1
        assert set(sampler.get_sessions()) == {"new"}


class TestLeakDetection:
    """Tests for leak detection inside the tick."""

    def _grow(self, sampler, fake_runtime, manual_scheduler, ticks, factor=1.0, reclaimed=0):
        rss = fake_runtime.counters.rss
        for _ in range(ticks):
            fake_runtime.set(rss=int(rss), gc_bytes_reclaimed=reclaimed)
            sampler.tick()
            manual_scheduler.advance(1.0)
            rss *= factor

    def test_no_detection_before_window_full(self, sampler, fake_runtime, manual_scheduler):
        """Leak detection should wait for detection_window samples."""
        signals = []
        sampler.leak_signals.subscribe(signals.append)
        self._grow(sampler, fake_runtime, manual_scheduler, 9)
        assert signals == []
        self._grow(sampler, fake_runtime, manual_scheduler, 1)
        assert len(signals) == 1

    def test_flat_memory_does_not_alarm(self, sampler, fake_runtime, manual_scheduler):
        """Only GC inefficiency fires for flat memory, staying below the alarm score."""
        alarms = []
        sampler.leak_alarms.subscribe(alarms.append)
        self._grow(sampler, fake_runtime, manual_scheduler, 12)
        assert alarms == []
        assert sampler.last_leak_signal.gc_inefficiency.detected is True
        assert sampler.leak_patterns == []

    def test_staircase_growth_alarms(self, sampler, fake_runtime, manual_scheduler, temp_dir):
        """Steps plus collector inefficiency should raise the alarm and be logged."""
        alarms = []
        sampler.leak_alarms.subscribe(alarms.append)
        rss = 100 * MB
        for i in range(10):
            if i % 2 == 1:
                rss = int(rss * 1.1)
            fake_runtime.set(rss=rss)
            sampler.tick()
            manual_scheduler.advance(1.0)

        # sustained 5/9, staircase 5 jumps / 4 plateaus -> 1.0, gc 1.0
        assert len(alarms) == 1
        assert alarms[0].overall_score > 0.7
        assert len(sampler.leak_patterns) == 1

        records = read_jsonl(temp_dir / "logs" / "memory-leaks.jsonl")
        assert len(records) == 1
        assert 'detection' in records[0]
        assert 'system_state' in records[0]

    def test_detection_disabled(self, fake_runtime, manual_scheduler):
        """With leak detection off, no signals should be produced."""
        sampler = MemorySampler(SamplerConfig(leak_detection_enabled=False), fake_runtime, manual_scheduler)
        signals = []
        sampler.leak_signals.subscribe(signals.append)
        for _ in range(15):
            sampler.tick()
        assert signals == []


class TestCrossings:
    """Tests for threshold crossings published by the sampler."""

    def test_highest_tier_published(self, sampler, fake_runtime):
        """Only the highest tier reached should be published per metric."""
        crossings = []
        sampler.crossings.subscribe(crossings.append)
        fake_runtime.set_utilization(0.9)
        sampler.tick()
        system = [c for c in crossings if c.alert_type == AlertType.SYSTEM_MEMORY]
        assert [c.level for c in system] == [AlertLevel.CRITICAL]

    def test_fragmentation_crossings_can_be_disabled(self, fake_runtime, manual_scheduler):
        """Fragmentation crossings are dropped when fragmentation is disabled."""
        sampler = MemorySampler(SamplerConfig(fragmentation_enabled=False), fake_runtime, manual_scheduler)
        crossings = []
        sampler.crossings.subscribe(crossings.append)
        fake_runtime.set(rss=400 * MB, heap_total=100 * MB, heap_used=20 * MB)
        sampler.tick()
        assert all(c.alert_type != AlertType.MEMORY_FRAGMENTATION for c in crossings)


class TestReporting:
    """Tests for status, basic recommendations and export."""

    def test_basic_recommendations_need_data(self, sampler):
        """With too little history, only an insufficient_data marker is returned."""
        sampler.tick()
        assert sampler.generate_basic_recommendations() == {'insufficient_data': True}

    def test_basic_recommendations_heap_pressure(self, sampler, fake_runtime, manual_scheduler):
        """High heap utilization should produce a heap_pressure entry."""
        fake_runtime.set(heap_used=76 * MB)
        for _ in range(10):
            sampler.tick()
            manual_scheduler.advance(1.0)
        result = sampler.generate_basic_recommendations()
        types = [r['type'] for r in result['recommendations']]
        assert 'heap_pressure' in types

    def test_status(self, sampler):
        """Status should describe the latest sample."""
        sampler.tick()
        status = sampler.get_status()
        assert status['samples'] == 1
        assert status['sessions'] == 1
        assert status['current']['system_utilization'] == "50.0%"

    def test_export_json(self, sampler, manual_scheduler):
        """JSON export should contain the history."""
        for _ in range(3):
            sampler.tick()
            manual_scheduler.advance(1.0)
        result = sampler.export_metrics("json")
        assert result['success'] is True
        assert result['size'] == 3
        with open(result['filepath']) as f:
            data = json.load(f)
        assert len(data['history']) == 3
        assert data['metadata']['total_samples'] == 3

    def test_export_csv(self, sampler):
        """CSV export should write a header and one row per sample."""
        sampler.tick()
        result = sampler.export_metrics("csv")
        with open(result['filepath']) as f:
            lines = f.read().strip().splitlines()
        assert lines[0].startswith("timestamp,rss")
        assert len(lines) == 2

    def test_export_bad_format(self, sampler):
        """Unknown formats should be rejected."""
        with pytest.raises(ValueError):
            sampler.export_metrics("xml")
