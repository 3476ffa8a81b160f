"""
Logging Configuration for the Memory Health Daemon.

Every module logs through `logging.getLogger(__name__)`; this module only
decides where those records go and how they look.

Features:
- Console and optional file output
- Human-readable lines tagged with the component (sampler, alerts, ...)
- JSON lines for log shippers
- Per-component levels, e.g. a noisy sampler at WARNING while alerts
  stay at INFO

Usage:
    from memhealthd.logging_config import setup_logging

    setup_logging(verbose=True, log_file="memory-health/logs/daemon.log",
                  component_levels={'sampler': 'WARNING'})
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

PACKAGE = 'memhealthd'

COMPONENTS = (
    'sampler',
    'detection',
    'alerts',
    'optimizer',
    'hub',
    'sessions',
    'storage',
    'scheduler',
    'runtime',
    'config',
    'cli',
)

# Libraries whose INFO output is not about memory health
_QUIET_LIBRARIES = ('urllib3', 'requests')


def component_of(logger_name: str) -> str:
    """memhealthd.alerts.notifier -> alerts; anything outside the package -> its top name."""
    parts = logger_name.split('.')
    if parts[0] == PACKAGE:
        return parts[1] if len(parts) > 1 else 'core'
    return parts[0] or 'root'


class MemoryHealthFormatter(logging.Formatter):
    """Text or JSON formatter keyed on the emitting component."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33;1m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[31;1m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = False, json_format: bool = False):
        super().__init__()
        self.use_colors = use_colors
        self.json_format = json_format

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created)
        component = component_of(record.name)

        if self.json_format:
            data = {
                'timestamp': timestamp.isoformat(),
                'level': record.levelname,
                'component': component,
                'logger': record.name,
                'message': record.getMessage(),
            }
            if record.exc_info:
                data['exception'] = self.formatException(record.exc_info)
            return json.dumps(data, default=str)

        level = f"{record.levelname:8}"
        if self.use_colors:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        line = f"{timestamp:%Y-%m-%d %H:%M:%S} {level} [{component}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level(value: Union[int, str]) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value}")
    return level


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    component_levels: Optional[Dict[str, Union[int, str]]] = None,
) -> List[logging.Handler]:
    """
    Configure the root logger for the daemon.

    Args:
        verbose: DEBUG instead of INFO for the package
        log_file: Also write to this file (parent directories are created)
        console: Write to stdout
        json_format: One JSON object per line instead of text
        component_levels: Level overrides by component name

    Returns:
        The handlers that were installed
    """
    for name in component_levels or {}:
        if name not in COMPONENTS:
            raise ValueError(f"Unknown component {name!r} (choose from {', '.join(COMPONENTS)})")

    base_level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    handlers: List[logging.Handler] = []
    if console:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(MemoryHealthFormatter(
            use_colors=sys.stdout.isatty() and not json_format,
            json_format=json_format,
        ))
        handlers.append(stream)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(MemoryHealthFormatter(json_format=json_format))
        handlers.append(file_handler)

    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(logging.WARNING)

    logging.getLogger(PACKAGE).setLevel(base_level)
    for name in COMPONENTS:
        level = (component_levels or {}).get(name)
        logging.getLogger(f"{PACKAGE}.{name}").setLevel(_level(level) if level is not None else logging.NOTSET)
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handlers


__all__ = [
    'COMPONENTS',
    'MemoryHealthFormatter',
    'component_of',
    'setup_logging',
]
