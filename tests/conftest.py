"""
Pytest configuration and shared fixtures for Memory Health Daemon tests.

Every component is driven by a FakeRuntime (scripted counters, recorded
GC/snapshot calls) and a ManualScheduler (virtual time), so no test
depends on the real memory of the test process.
"""

import dataclasses
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest

# Add the parent directory to the path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.config import MemoryHealthConfig
from memhealthd.detection import build_sample
from memhealthd.exceptions import CollectionError
from memhealthd.models import MetricSample, RawCounters
from memhealthd.runtime import RuntimeControl
from memhealthd.scheduler import ManualScheduler
from memhealthd.storage import IOWorker, Persistence
from memhealthd.utils.error_handling import get_error_aggregator

MB = 1024 * 1024
GB = 1024 * MB

# 2023-11-14T22:13:20Z
START_TIME = 1_700_000_000.0


# ===========================================================================
# Fake Runtime
# ===========================================================================

class FakeRuntime(RuntimeControl):
    """Scripted RuntimeControl that records what the engine asks of it."""

    def __init__(self):
        self.counters = RawCounters(
            rss=100 * MB,
            heap_total=80 * MB,
            heap_used=60 * MB,
            external=1 * MB,
            system_total=16 * GB,
            system_free=8 * GB,
            system_available=8 * GB,
        )
        self.fail_collection = False
        self.ready = True
        self.collect_calls = 0
        self.tune_calls = 0
        self.snapshots: List[str] = []

    def set(self, **changes) -> None:
        self.counters = dataclasses.replace(self.counters, **changes)

    def set_utilization(self, utilization: float) -> None:
        free = int(self.counters.system_total * (1 - utilization))
        self.set(system_free=free, system_available=free)

    def current_counters(self) -> RawCounters:
        if self.fail_collection:
            raise CollectionError("counters unavailable")
        return self.counters

    def force_collect(self) -> Dict[str, Any]:
        self.collect_calls += 1
        return {'collected_per_generation': [0, 0, 0], 'bytes_reclaimed': 0, 'duration_ms': 0.1}

    def tune_collector(self) -> Dict[str, Any]:
        self.tune_calls += 1
        return {'previous_threshold': [700, 10, 10], 'threshold': [350, 10, 10]}

    def snapshot(self, directory: str) -> str:
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, f"heap-{len(self.snapshots)}.json")
        with open(path, 'w') as f:
            json.dump(dataclasses.asdict(self.counters), f)
        self.snapshots.append(path)
        return path

    def wait_until_ready(self, timeout: float) -> bool:
        return self.ready


# ===========================================================================
# Temporary Directory Fixtures
# ===========================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that is cleaned up after the test."""
    tmpdir = tempfile.mkdtemp(prefix="memhealth_test_")
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


# ===========================================================================
# Engine Fixtures
# ===========================================================================

@pytest.fixture
def fake_runtime() -> FakeRuntime:
    """Provide a FakeRuntime with 50% system utilization."""
    return FakeRuntime()


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    """Provide a virtual-time scheduler started at a fixed instant."""
    scheduler = ManualScheduler(start_time=START_TIME)
    scheduler.start()
    return scheduler


@pytest.fixture
def sync_persistence(temp_dir: Path) -> Persistence:
    """Provide Persistence whose writes complete before submit() returns."""
    return Persistence(str(temp_dir), IOWorker(synchronous=True))


@pytest.fixture
def test_config(temp_dir: Path) -> MemoryHealthConfig:
    """Default configuration with quiet notifications and synchronous IO."""
    config = MemoryHealthConfig()
    config.sampler.sample_interval = 1.0
    config.alerts.notifications.console = False
    config.optimizer.maintenance_window = (0, 0)
    config.storage.root = str(temp_dir)
    config.storage.synchronous_io = True
    return config


@pytest.fixture
def make_sample() -> Callable[..., MetricSample]:
    """Factory building a MetricSample from a handful of counters."""
    def factory(
        timestamp: float = START_TIME,
        rss: int = 100 * MB,
        heap_total: int = 80 * MB,
        heap_used: int = 60 * MB,
        utilization: float = 0.5,
        gc_reclaimed: int = 0,
        session_id: str = "default",
    ) -> MetricSample:
        total = 16 * GB
        free = int(total * (1 - utilization))
        counters = RawCounters(
            rss=rss,
            heap_total=heap_total,
            heap_used=heap_used,
            external=0,
            system_total=total,
            system_free=free,
            system_available=free,
            gc_bytes_reclaimed=gc_reclaimed,
        )
        return build_sample(counters, timestamp, session_id)
    return factory


@pytest.fixture(autouse=True)
def clear_error_aggregator():
    """Start every test with an empty global error aggregator."""
    get_error_aggregator().clear()
    yield
    get_error_aggregator().clear()


# ===========================================================================
# Utility Functions
# ===========================================================================

def read_jsonl(path: Path) -> list:
    """Read all records from a JSONL file."""
    records = []
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if line:
                records.append(json.loads(line))
    return records


def series(make_sample: Callable[..., MetricSample], rss_values: List[int],
           start: float = START_TIME, step: float = 1.0,
           gc_reclaimed: Optional[List[int]] = None) -> List[MetricSample]:
    """Samples with the given RSS values, one per step seconds."""
    reclaimed = gc_reclaimed or [0] * len(rss_values)
    return [
        make_sample(timestamp=start + i * step, rss=rss, gc_reclaimed=reclaimed[i])
        for i, rss in enumerate(rss_values)
    ]


# ===========================================================================
# Markers Registration
# ===========================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests (>1s)")
