"""
Exceptions raised by the memory health daemon.

Only configuration errors are meant to reach the host; every other kind is
caught and logged by the component that owns the failing operation.
"""


class MemoryHealthError(Exception):
    """Base class for memory health daemon errors."""


class CollectionError(MemoryHealthError):
    """Runtime counters could not be collected for a sampling tick."""


class PersistenceError(MemoryHealthError):
    """A log, snapshot or report could not be written."""


class ActionError(MemoryHealthError):
    """An automated remediation action failed."""


class ConfigError(MemoryHealthError):
    """Configuration could not be loaded or failed validation."""
