"""
Persistence - the storage root and everything written under it.

Layout under the configured root:
    logs/memory-leaks.jsonl
    alerts/alerts.jsonl
    alerts/notifications.jsonl
    alerts/leak-report-<ts>.json
    alerts/emergency-shutdown.json
    optimizations/implementations/implementations.jsonl
    optimizations/patterns/learned-patterns.json
    snapshots/
    reports/

Writes go through the IOWorker; directories are created on first use.
"""

import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional, Set

from ..constants import Paths
from ..utils.error_handling import ErrorCategory
from .io_worker import IOWorker
from .jsonl_log import JsonlLog

logger = logging.getLogger(__name__)

LEAK_LOG = os.path.join(Paths.LOGS, "memory-leaks.jsonl")
ALERT_LOG = os.path.join(Paths.ALERTS, "alerts.jsonl")
NOTIFICATION_LOG = os.path.join(Paths.ALERTS, "notifications.jsonl")
IMPLEMENTATION_LOG = os.path.join(Paths.OPTIMIZATIONS, "implementations", "implementations.jsonl")
LEARNED_PATTERNS_FILE = os.path.join(Paths.OPTIMIZATIONS, "patterns", "learned-patterns.json")
EMERGENCY_STATE_FILE = os.path.join(Paths.ALERTS, "emergency-shutdown.json")


class Persistence:
    """Owns the storage root, the durable logs and the IO worker."""

    def __init__(self, root: str, worker: Optional[IOWorker] = None):
        self.root = os.path.abspath(root)
        self.worker = worker or IOWorker()
        self._logs: Dict[str, JsonlLog] = {}
        self._created: Set[str] = set()
        self._lock = threading.Lock()

    def start(self):
        self.worker.start()

    def stop(self):
        self.worker.stop()

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self.worker.flush(timeout=timeout)

    def path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

    def ensure_dir(self, *parts: str) -> str:
        """Create a directory under the root if needed. Safe to call repeatedly."""
        directory = self.path(*parts)
        with self._lock:
            if directory not in self._created:
                os.makedirs(directory, exist_ok=True)
                self._created.add(directory)
        return directory

    def log(self, relative_path: str) -> JsonlLog:
        with self._lock:
            if relative_path not in self._logs:
                self._logs[relative_path] = JsonlLog(self.path(relative_path))
            return self._logs[relative_path]

    def append(self, relative_path: str, record: Dict[str, Any]) -> None:
        """Queue one record for the given log."""
        log = self.log(relative_path)
        self.worker.submit(f"append {relative_path}", lambda: log.append(record))

    def write_json(self, relative_path: str, data: Any) -> str:
        """Queue a JSON file write. Returns the path it will be written to."""
        full_path = self.path(relative_path)

        def write():
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            tmp_path = f"{full_path}.tmp"
            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_path, full_path)

        self.worker.submit(f"write {relative_path}", write)
        return full_path

    def read_json(self, relative_path: str) -> Optional[Any]:
        full_path = self.path(relative_path)
        if not os.path.exists(full_path):
            return None
        with open(full_path, 'r') as f:
            return json.load(f)

    def submit(self, name: str, fn: Callable[[], object],
               category: ErrorCategory = ErrorCategory.PERSISTENCE) -> None:
        """Queue arbitrary I/O (snapshots, webhook posts)."""
        self.worker.submit(name, fn, category)
