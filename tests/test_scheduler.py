"""
Tests for the Scheduler implementations and typed channels.
"""

import os
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.channels import Channel
from memhealthd.scheduler import ManualScheduler, ThreadScheduler


class TestManualScheduler:
    """Tests for the virtual-time scheduler."""

    def test_periodic_runs_on_interval(self):
        """A periodic task should run once per interval of virtual time."""
        scheduler = ManualScheduler(start_time=0.0)
        calls = []
        scheduler.schedule_periodic("tick", 5.0, lambda: calls.append(scheduler.now()))

        scheduler.advance(4.0)
        assert calls == []
        scheduler.advance(1.0)
        assert calls == [5.0]
        scheduler.advance(20.0)
        assert calls == [5.0, 10.0, 15.0, 20.0, 25.0]

    def test_initial_delay(self):
        """initial_delay should override the first due time."""
        scheduler = ManualScheduler(start_time=0.0)
        calls = []
        scheduler.schedule_periodic("tick", 10.0, lambda: calls.append(scheduler.now()), initial_delay=0.0)
        scheduler.run_pending()
        assert calls == [0.0]

    def test_call_later_runs_once(self):
        """One-shot tasks should not repeat."""
        scheduler = ManualScheduler(start_time=0.0)
        calls = []
        scheduler.call_later("once", 3.0, lambda: calls.append(scheduler.now()))
        scheduler.advance(100.0)
        assert calls == [3.0]

    def test_cancel(self):
        """Cancelled tasks should never run again."""
        scheduler = ManualScheduler(start_time=0.0)
        calls = []
        handle = scheduler.schedule_periodic("tick", 1.0, lambda: calls.append(1))
        scheduler.advance(2.0)
        scheduler.cancel(handle)
        scheduler.advance(10.0)
        assert len(calls) == 2
        assert "tick" not in scheduler.pending_tasks()

    def test_cancel_none_is_noop(self):
        """Cancelling nothing should not raise."""
        ManualScheduler().cancel(None)

    def test_tasks_run_in_due_order(self):
        """Tasks due within one advance run in time order."""
        scheduler = ManualScheduler(start_time=0.0)
        order = []
        scheduler.call_later("b", 2.0, lambda: order.append("b"))
        scheduler.call_later("a", 1.0, lambda: order.append("a"))
        scheduler.call_later("c", 3.0, lambda: order.append("c"))
        scheduler.advance(5.0)
        assert order == ["a", "b", "c"]

    def test_failing_task_keeps_running(self):
        """A raising periodic task should be logged and rescheduled."""
        scheduler = ManualScheduler(start_time=0.0)
        runs = []

        def boom():
            runs.append(1)
            raise RuntimeError("task failed")

        scheduler.schedule_periodic("boom", 1.0, boom)
        scheduler.advance(3.0)
        assert len(runs) == 3

    def test_invalid_interval(self):
        """Non-positive intervals should be rejected."""
        with pytest.raises(ValueError):
            ManualScheduler().schedule_periodic("bad", 0, lambda: None)


class TestThreadScheduler:
    """Tests for the background-thread scheduler."""

    def test_runs_task_on_worker_thread(self):
        """Tasks should run on the scheduler thread."""
        scheduler = ThreadScheduler()
        done = threading.Event()
        names = []

        def task():
            names.append(threading.current_thread().name)
            done.set()

        scheduler.start()
        try:
            scheduler.call_later("once", 0.01, task)
            assert done.wait(timeout=2.0)
        finally:
            scheduler.stop()

        assert names == ["memhealth-scheduler"]
        assert scheduler.is_running is False

    def test_now_is_wall_clock(self):
        """ThreadScheduler time should follow time.time()."""
        assert abs(ThreadScheduler().now() - time.time()) < 1.0


class TestChannel:
    """Tests for typed observer channels."""

    def test_publish_reaches_all_subscribers(self):
        """Every subscriber should receive each event."""
        channel = Channel("numbers")
        a, b = [], []
        channel.subscribe(a.append)
        channel.subscribe(b.append)
        channel.publish(1)
        assert a == [1] and b == [1]

    def test_failing_subscriber_isolated(self):
        """One raising subscriber should not block the others."""
        channel = Channel("numbers")
        received = []

        def bad(_):
            raise ValueError("subscriber failed")

        channel.subscribe(bad)
        channel.subscribe(received.append)
        channel.publish(7)
        assert received == [7]

    def test_unsubscribe(self):
        """The returned callable should remove the subscription."""
        channel = Channel("numbers")
        received = []
        unsubscribe = channel.subscribe(received.append)
        unsubscribe()
        channel.publish(1)
        assert received == []
        assert len(channel) == 0
