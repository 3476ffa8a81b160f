"""
Failure recording for the Memory Health Daemon.

Nothing the engine does on a tick is allowed to stop the next tick: a
missing counter, a full disk, a webhook that times out or a cache clearer
that raises are all logged, counted and survived. The one deliberate
exception is the emergency shutdown, which is not an error path at all.

Features:
- ErrorCategory names the engine's failure kinds
- Severity derived from category (no per-call-site guessing)
- A process-wide ErrorAggregator that collapses repeats of the same
  failure within a window, so a dead webhook does not flood the log
- safe_execute() for guarded blocks and with_error_handling() for
  guarded functions with optional retries

Usage:
    try:
        counters = runtime.current_counters()
    except Exception as e:
        handle_error(e, "collect counters", ErrorCategory.COLLECTION)

    with safe_execute("save learned patterns", ErrorCategory.PERSISTENCE):
        store.save(persistence)
"""

import functools
import logging
import threading
import time
import traceback
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """What kind of work failed."""
    COLLECTION = "collection"       # counters unavailable, tick skipped
    PERSISTENCE = "persistence"     # log, snapshot or report write
    ACTION = "action"               # remediation or optimization action
    NOTIFICATION = "notification"   # an alert channel
    SCHEDULER = "scheduler"         # a periodic task raised
    CONFIG = "configuration"
    EXTERNAL = "external"           # sync target
    FATAL = "fatal"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


_CATEGORY_SEVERITY: Dict[ErrorCategory, ErrorSeverity] = {
    ErrorCategory.COLLECTION: ErrorSeverity.WARNING,
    ErrorCategory.EXTERNAL: ErrorSeverity.WARNING,
    ErrorCategory.FATAL: ErrorSeverity.CRITICAL,
}

_LOG_LEVELS: Dict[ErrorSeverity, int] = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.FATAL: logging.CRITICAL,
}


def determine_severity(error: BaseException, category: ErrorCategory) -> ErrorSeverity:
    """Severity of a failure, from its category first and its type second."""
    if isinstance(error, (SystemExit, KeyboardInterrupt)):
        return ErrorSeverity.FATAL
    if category in _CATEGORY_SEVERITY:
        return _CATEGORY_SEVERITY[category]
    if isinstance(error, (TimeoutError, FileNotFoundError)) or 'timeout' in str(error).lower():
        return ErrorSeverity.WARNING
    return ErrorSeverity.ERROR


def _current_trace() -> str:
    trace = traceback.format_exc()
    return "" if trace.strip() == "NoneType: None" else trace


@dataclass
class ErrorContext:
    """One recorded failure."""
    error: BaseException
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    additional_context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    thread_name: str = field(default_factory=lambda: threading.current_thread().name)
    stack_trace: str = field(default_factory=_current_trace)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.category.value, type(self.error).__name__, self.operation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'category': self.category.value,
            'severity': self.severity.value,
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'timestamp': self.timestamp,
            'thread_name': self.thread_name,
            'additional_context': dict(self.additional_context),
            'stack_trace': self.stack_trace,
        }

    def format_log_message(self) -> str:
        head = (f"{self.operation} failed [{self.category.value}/{self.severity.value}] "
                f"{type(self.error).__name__}: {self.error} (thread {self.thread_name})")
        parts = [head]
        parts.extend(f"  {k} = {v}" for k, v in self.additional_context.items())
        if self.stack_trace:
            parts.append("  Stack Trace:")
            parts.extend(f"    {line}" for line in self.stack_trace.rstrip().splitlines())
        return "\n".join(parts)


class ErrorAggregator:
    """
    Bounded, thread-safe record of recent failures.

    A failure whose (category, error type, operation) was already stored
    less than dedup_window_seconds ago only bumps a counter.
    """

    def __init__(self, max_errors: int = 1000, dedup_window_seconds: float = 60):
        self._errors: Deque[ErrorContext] = deque(maxlen=max_errors)
        self._seen_at: Dict[Tuple[str, str, str], float] = {}
        self._counts: Counter = Counter()
        self._window = dedup_window_seconds
        self._lock = threading.Lock()

    def add_error(self, context: ErrorContext) -> bool:
        """Record a failure; False when it was collapsed into an earlier one."""
        key = context.key
        now = time.monotonic()
        with self._lock:
            last = self._seen_at.get(key)
            if last is not None and now - last < self._window:
                self._counts[key] += 1
                return False
            self._seen_at[key] = now
            self._counts[key] = 1
            self._errors.append(context)
            return True

    def get_error_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'total_errors': len(self._errors),
                'by_category': dict(Counter(e.category.value for e in self._errors)),
                'by_severity': dict(Counter(e.severity.value for e in self._errors)),
                'deduplicated_counts': {":".join(k): n for k, n in self._counts.items()},
            }

    def get_recent_errors(self, count: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            return [e.to_dict() for e in list(self._errors)[-count:]]

    def clear(self) -> None:
        with self._lock:
            self._errors.clear()
            self._seen_at.clear()
            self._counts.clear()


_aggregator = ErrorAggregator()


def get_error_aggregator() -> ErrorAggregator:
    return _aggregator


def handle_error(
    error: BaseException,
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
    reraise: bool = False,
) -> ErrorContext:
    """
    Log and aggregate a failure.

    Args:
        error: The exception being handled
        operation: Short description of what was being done
        category: Failure kind; drives the default severity
        severity: Explicit severity, overriding determine_severity()
        additional_context: Extra key/values for the log line
        reraise: Raise the error again once it is recorded

    Returns:
        The recorded ErrorContext
    """
    context = ErrorContext(
        error=error,
        category=category,
        severity=severity or determine_severity(error, category),
        operation=operation,
        additional_context=additional_context or {},
    )
    level = _LOG_LEVELS[context.severity]

    if _aggregator.add_error(context):
        logger.log(level, context.format_log_message())
    else:
        logger.log(level, f"{operation} failed again: {type(error).__name__}: {error}")

    if reraise:
        raise error
    return context


def log_notification_error(error: BaseException, operation: str, **context) -> ErrorContext:
    """Record a failed alert channel."""
    return handle_error(error, operation, ErrorCategory.NOTIFICATION, additional_context=context)


@dataclass
class GuardedResult:
    """Outcome of a safe_execute() block."""
    value: Any = None
    success: bool = True
    error: Optional[ErrorContext] = None


@contextmanager
def safe_execute(
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    default_return: Any = None,
    reraise: bool = False,
    additional_context: Optional[Dict[str, Any]] = None,
) -> Iterator[GuardedResult]:
    """
    Run a block, recording any exception instead of propagating it.

        with safe_execute("write report", ErrorCategory.PERSISTENCE) as result:
            result.value = persistence.write_json(name, report)
    """
    result = GuardedResult(value=default_return)
    try:
        yield result
    except Exception as e:
        result.success = False
        result.value = default_return
        result.error = handle_error(e, operation, category,
                                    additional_context=additional_context, reraise=reraise)


def with_error_handling(
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    operation: Optional[str] = None,
    default_return: Any = None,
    reraise: bool = False,
    retry_count: int = 0,
    retry_delay: float = 1.0,
    retry_backoff: float = 2.0,
):
    """
    Decorator form of safe_execute() with optional retries.

    The function runs up to retry_count + 1 times; every failed attempt is
    recorded. After the last failure default_return is returned, or the
    error raised when reraise is set.
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        name = operation or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = retry_delay
            for attempt in range(1, retry_count + 2):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_attempt = attempt > retry_count
                    handle_error(e, name, category, additional_context={
                        'attempt': attempt,
                        'max_attempts': retry_count + 1,
                    })
                    if last_attempt:
                        if reraise:
                            raise
                        return default_return
                    logger.info(f"Retrying {name} in {delay:.1f}s")
                    time.sleep(delay)
                    delay *= retry_backoff
            return default_return

        return wrapper
    return decorator


__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'GuardedResult',
    'get_error_aggregator',
    'determine_severity',
    'handle_error',
    'log_notification_error',
    'safe_execute',
    'with_error_handling',
]
