"""
Utility modules for the Memory Health Daemon.
"""

from .error_handling import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ErrorAggregator,
    GuardedResult,
    get_error_aggregator,
    handle_error,
    safe_execute,
    with_error_handling,
    determine_severity,
    log_notification_error,
)

__all__ = [
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'GuardedResult',
    'get_error_aggregator',
    'handle_error',
    'safe_execute',
    'with_error_handling',
    'determine_severity',
    'log_notification_error',
]
