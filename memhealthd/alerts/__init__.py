"""
Alerting for the memory health daemon.
"""

from .alert_manager import AlertManager
from .notifier import (
    ConsoleChannel,
    LogFileChannel,
    NotificationChannel,
    Notifier,
    WebhookChannel,
)

__all__ = [
    'AlertManager',
    'ConsoleChannel',
    'LogFileChannel',
    'NotificationChannel',
    'Notifier',
    'WebhookChannel',
]
