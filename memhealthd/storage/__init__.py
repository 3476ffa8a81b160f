"""
Storage for the memory health daemon: JSONL logs, JSON state files and the
background IO worker that writes them.
"""

from .io_worker import IOWorker
from .jsonl_log import JsonlLog
from .persistence import (
    Persistence,
    LEAK_LOG,
    ALERT_LOG,
    NOTIFICATION_LOG,
    IMPLEMENTATION_LOG,
    LEARNED_PATTERNS_FILE,
    EMERGENCY_STATE_FILE,
)

__all__ = [
    'IOWorker',
    'JsonlLog',
    'Persistence',
    'LEAK_LOG',
    'ALERT_LOG',
    'NOTIFICATION_LOG',
    'IMPLEMENTATION_LOG',
    'LEARNED_PATTERNS_FILE',
    'EMERGENCY_STATE_FILE',
]
