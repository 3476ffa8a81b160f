"""
Tests for the error handling utilities.

Tests categorization, severity, aggregation with deduplication and the
guarded-execution helpers.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.exceptions import CollectionError
from memhealthd.utils.error_handling import (
    ErrorAggregator,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    determine_severity,
    get_error_aggregator,
    handle_error,
    log_notification_error,
    safe_execute,
    with_error_handling,
)


class TestSeverity:
    """Tests for determine_severity."""

    def test_collection_is_warning(self):
        """A skipped tick is expected to recover."""
        assert determine_severity(CollectionError("x"), ErrorCategory.COLLECTION) == ErrorSeverity.WARNING

    def test_external_is_warning(self):
        """Unreachable collaborators are warnings."""
        assert determine_severity(ConnectionError("x"), ErrorCategory.EXTERNAL) == ErrorSeverity.WARNING

    def test_fatal_category(self):
        """The fatal category is critical."""
        assert determine_severity(RuntimeError("x"), ErrorCategory.FATAL) == ErrorSeverity.CRITICAL

    def test_timeouts_are_warnings(self):
        """Timeouts anywhere are warnings."""
        assert determine_severity(TimeoutError("slow"), ErrorCategory.NOTIFICATION) == ErrorSeverity.WARNING

    def test_default_is_error(self):
        """Everything else is an error."""
        assert determine_severity(ValueError("x"), ErrorCategory.ACTION) == ErrorSeverity.ERROR


class TestAggregator:
    """Tests for ErrorAggregator."""

    def _context(self, operation="op", category=ErrorCategory.PERSISTENCE):
        return ErrorContext(error=OSError("disk"), category=category,
                            severity=ErrorSeverity.ERROR, operation=operation)

    def test_deduplicates_within_window(self):
        """The same category/type/operation is stored once per window."""
        aggregator = ErrorAggregator(dedup_window_seconds=60)
        assert aggregator.add_error(self._context()) is True
        assert aggregator.add_error(self._context()) is False

        summary = aggregator.get_error_summary()
        assert summary['total_errors'] == 1
        assert summary['deduplicated_counts'] == {'persistence:OSError:op': 2}

    def test_different_operations_kept(self):
        """Different operations are tracked separately."""
        aggregator = ErrorAggregator()
        aggregator.add_error(self._context("a"))
        aggregator.add_error(self._context("b", ErrorCategory.ACTION))
        summary = aggregator.get_error_summary()
        assert summary['by_category'] == {'persistence': 1, 'action': 1}
        assert summary['by_severity'] == {'error': 2}

    def test_bounded(self):
        """Only max_errors contexts are kept."""
        aggregator = ErrorAggregator(max_errors=3)
        for i in range(5):
            aggregator.add_error(self._context(f"op{i}"))
        recent = aggregator.get_recent_errors(count=10)
        assert [e['operation'] for e in recent] == ["op2", "op3", "op4"]

    def test_clear(self):
        """clear() resets everything."""
        aggregator = ErrorAggregator()
        aggregator.add_error(self._context())
        aggregator.clear()
        assert aggregator.get_error_summary()['total_errors'] == 0


class TestHandleError:
    """Tests for handle_error and its helpers."""

    def test_records_in_global_aggregator(self):
        """Handled errors show up in the global summary."""
        context = handle_error(ValueError("bad"), "parse", ErrorCategory.CONFIG,
                               additional_context={'file': 'x.yaml'})
        assert context.to_dict()['additional_context'] == {'file': 'x.yaml'}
        assert get_error_aggregator().get_error_summary()['by_category'] == {'configuration': 1}

    def test_reraise(self):
        """reraise=True propagates after recording."""
        with pytest.raises(ValueError):
            handle_error(ValueError("bad"), "parse", reraise=True)
        assert get_error_aggregator().get_error_summary()['total_errors'] == 1

    def test_stack_trace_captured_inside_except(self):
        """Errors handled inside an except block keep their traceback."""
        try:
            raise RuntimeError("inside")
        except RuntimeError as e:
            context = handle_error(e, "trace")
        assert "RuntimeError: inside" in context.stack_trace
        assert "Stack Trace" in context.format_log_message()

    def test_log_notification_error(self):
        """Notification failures are categorized as notification."""
        context = log_notification_error(ConnectionError("refused"), "notify_webhook", alert_id="a1")
        assert context.category == ErrorCategory.NOTIFICATION
        assert context.additional_context == {'alert_id': 'a1'}


class TestGuardedExecution:
    """Tests for safe_execute and with_error_handling."""

    def test_safe_execute_success(self):
        """Successful blocks keep their value."""
        with safe_execute("compute") as result:
            result.value = 42
        assert result.success is True
        assert result.value == 42

    def test_safe_execute_failure(self):
        """Failures are recorded and the default returned."""
        with safe_execute("compute", ErrorCategory.PERSISTENCE, default_return=-1) as result:
            raise OSError("disk")
        assert result.success is False
        assert result.value == -1
        assert result.error.category == ErrorCategory.PERSISTENCE

    def test_decorator_default_return(self):
        """A failing decorated function returns the default."""
        @with_error_handling(category=ErrorCategory.PERSISTENCE, default_return=0)
        def load():
            raise ValueError("corrupt")

        assert load() == 0
        assert get_error_aggregator().get_error_summary()['by_category'] == {'persistence': 1}

    def test_decorator_retries(self):
        """Retries run until the function succeeds."""
        calls = []

        @with_error_handling(retry_count=2, retry_delay=0.0)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("try again")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_decorator_reraise(self):
        """reraise=True surfaces the last error."""
        @with_error_handling(reraise=True)
        def broken():
            raise KeyError("k")

        with pytest.raises(KeyError):
            broken()
