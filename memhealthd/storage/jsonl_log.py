"""
Append-only JSON Lines log.

One self-describing JSON object per line; every record carries an ISO
``timestamp``.
"""

import json
import os
import threading
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional


class JsonlLog:
    """Durable append-only log file."""

    def __init__(self, log_file_path: str):
        self.log_file_path = log_file_path
        self._lock = threading.Lock()
        self._record_count = 0

    @property
    def record_count(self) -> int:
        """Records appended through this instance."""
        return self._record_count

    def append(self, record: Dict[str, Any]) -> Dict[str, Any]:
        entry = dict(record)
        entry.setdefault('timestamp', datetime.now().isoformat())

        with self._lock:
            os.makedirs(os.path.dirname(self.log_file_path), exist_ok=True)
            with open(self.log_file_path, 'a') as f:
                f.write(json.dumps(entry, default=str) + '\n')
                f.flush()
            self._record_count += 1
        return entry

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if not os.path.exists(self.log_file_path):
            return
        with open(self.log_file_path, 'r') as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)

    def read_all(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Read records in append order; limit keeps the most recent ones."""
        records = list(self)
        if limit is not None:
            records = records[-limit:]
        return records
