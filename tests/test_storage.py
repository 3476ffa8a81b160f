"""
Tests for storage: the JSONL log, the IO worker and Persistence.
"""

import os
import sys
import threading

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.storage import ALERT_LOG, IOWorker, JsonlLog, Persistence
from memhealthd.utils.error_handling import ErrorCategory, get_error_aggregator

from conftest import read_jsonl


# ===========================================================================
# JsonlLog
# ===========================================================================

class TestJsonlLog:
    """Tests for the append-only log file."""

    def test_append_adds_timestamp(self, temp_dir):
        """Records without a timestamp get one."""
        log = JsonlLog(str(temp_dir / "logs" / "events.jsonl"))
        entry = log.append({'event': 'start'})
        assert 'timestamp' in entry
        assert log.record_count == 1

    def test_keeps_existing_timestamp(self, temp_dir):
        """A caller-supplied timestamp is kept."""
        log = JsonlLog(str(temp_dir / "events.jsonl"))
        log.append({'event': 'x', 'timestamp': 'then'})
        assert read_jsonl(temp_dir / "events.jsonl")[0]['timestamp'] == 'then'

    def test_read_all_limit(self, temp_dir):
        """limit returns the most recent records."""
        log = JsonlLog(str(temp_dir / "events.jsonl"))
        for i in range(5):
            log.append({'n': i})
        assert [r['n'] for r in log.read_all()] == [0, 1, 2, 3, 4]
        assert [r['n'] for r in log.read_all(limit=2)] == [3, 4]

    def test_missing_file_reads_empty(self, temp_dir):
        """Reading a log that was never written yields nothing."""
        assert JsonlLog(str(temp_dir / "none.jsonl")).read_all() == []

    def test_concurrent_appends(self, temp_dir):
        """Appends from several threads never interleave lines."""
        log = JsonlLog(str(temp_dir / "events.jsonl"))

        def writer(thread_id):
            for i in range(50):
                log.append({'thread': thread_id, 'n': i})

        threads = [threading.Thread(target=writer, args=(t,)) for t in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        records = read_jsonl(temp_dir / "events.jsonl")
        assert len(records) == 200


# ===========================================================================
# IOWorker
# ===========================================================================

class TestIOWorker:
    """Tests for the background writer."""

    def test_synchronous_runs_inline(self):
        """In synchronous mode jobs run inside submit()."""
        worker = IOWorker(synchronous=True)
        ran = []
        worker.submit("job", lambda: ran.append(1))
        assert ran == [1]
        assert worker.stats['completed'] == 1

    def test_background_thread(self):
        """Started workers run jobs on their own thread."""
        worker = IOWorker()
        names = []
        worker.start()
        try:
            worker.submit("job", lambda: names.append(threading.current_thread().name))
            assert worker.flush(timeout=2.0)
        finally:
            worker.stop()
        assert names == ["MemHealthIOWorker"]

    def test_failure_counted_under_category(self):
        """Failing jobs are counted and recorded under their category."""
        worker = IOWorker(synchronous=True)

        def boom():
            raise OSError("disk full")

        worker.submit("write report", boom, ErrorCategory.PERSISTENCE)
        worker.submit("after", lambda: None)

        assert worker.stats['failed'] == 1
        assert worker.stats['completed'] == 1
        assert get_error_aggregator().get_error_summary()['by_category'] == {'persistence': 1}

    def test_full_queue_drops(self):
        """A full queue drops new jobs instead of blocking."""
        worker = IOWorker(max_pending=1)
        release = threading.Event()
        started = threading.Event()

        def slow():
            started.set()
            release.wait(timeout=2.0)

        worker.start()
        try:
            worker.submit("slow", slow)
            assert started.wait(timeout=2.0)
            worker.submit("queued", lambda: None)
            worker.submit("dropped", lambda: None)
            assert worker.stats['dropped'] == 1
        finally:
            release.set()
            worker.stop()


# ===========================================================================
# Persistence
# ===========================================================================

class TestPersistence:
    """Tests for the storage root helper."""

    def test_append(self, sync_persistence, temp_dir):
        """Records land in the named log under the root."""
        sync_persistence.append(ALERT_LOG, {'id': 'a1'})
        assert read_jsonl(temp_dir / "alerts" / "alerts.jsonl")[0]['id'] == 'a1'

    def test_write_and_read_json(self, sync_persistence, temp_dir):
        """write_json returns the full path and read_json loads it back."""
        path = sync_persistence.write_json(os.path.join("reports", "r.json"), {'ok': True})
        assert path == str(temp_dir / "reports" / "r.json")
        assert sync_persistence.read_json(os.path.join("reports", "r.json")) == {'ok': True}
        assert not os.path.exists(path + ".tmp")

    def test_read_missing_json(self, sync_persistence):
        """Missing files read as None."""
        assert sync_persistence.read_json("nope.json") is None

    def test_ensure_dir(self, sync_persistence, temp_dir):
        """ensure_dir creates and returns the directory."""
        path = sync_persistence.ensure_dir("snapshots")
        assert os.path.isdir(path)
        assert path == str(temp_dir / "snapshots")

    def test_background_writes_flushed_on_stop(self, temp_dir):
        """stop() drains queued writes."""
        persistence = Persistence(str(temp_dir))
        persistence.start()
        for i in range(20):
            persistence.append("logs/x.jsonl", {'n': i})
        persistence.stop()
        assert len(read_jsonl(temp_dir / "logs" / "x.jsonl")) == 20
