"""
Memory Health Daemon - runtime memory monitoring for long-running Python
processes.

Components:
- MemorySampler: periodic sampling, fragmentation and leak heuristics
- AlertManager: tiered alerts, cooldowns, remediation, notifications
- RecommendationEngine: analysis, prioritized recommendations, safe
  auto-implementation and a learning loop
- IntegrationHub: wiring, health score, dashboard summary and sync

Usage:
    from memhealthd import create_integration_hub

    hub = create_integration_hub(storage_root="/var/lib/memhealth")
    hub.start()
    print(hub.get_dashboard_summary()['health_status'])
"""

from .alerts import AlertManager, Notifier
from .config import MemoryHealthConfig, load_config
from .constants import Version
from .exceptions import (
    ActionError,
    CollectionError,
    ConfigError,
    MemoryHealthError,
    PersistenceError,
)
from .hub import (
    CallbackSyncTarget,
    FileSyncTarget,
    IntegrationHub,
    SyncTarget,
    compute_health_score,
    create_integration_hub,
    health_label,
)
from .optimizer import RecommendationEngine
from .runtime import PsutilRuntimeControl, RuntimeControl
from .sampler import MemorySampler
from .scheduler import ManualScheduler, Scheduler, ThreadScheduler
from .sessions import SessionAnalyzer

__version__ = Version.VERSION

__all__ = [
    'ActionError',
    'AlertManager',
    'CallbackSyncTarget',
    'CollectionError',
    'ConfigError',
    'FileSyncTarget',
    'IntegrationHub',
    'ManualScheduler',
    'MemoryHealthConfig',
    'MemoryHealthError',
    'MemorySampler',
    'Notifier',
    'PersistenceError',
    'PsutilRuntimeControl',
    'RecommendationEngine',
    'RuntimeControl',
    'Scheduler',
    'SessionAnalyzer',
    'SyncTarget',
    'ThreadScheduler',
    'compute_health_score',
    'create_integration_hub',
    'health_label',
    'load_config',
    '__version__',
]
