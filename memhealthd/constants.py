"""
Centralized Constants Module for the Memory Health Daemon.

This module consolidates the thresholds, intervals and limits used by the
sampler, alert manager, recommendation engine and integration hub so that
every module agrees on the same defaults.

These are defaults only. ``MEMHEALTH_*`` environment variables are applied
to the loaded configuration by memhealthd.config, never here.

Usage:
    from memhealthd.constants import Intervals, AlertThresholds

    scheduler.schedule_periodic("sample", Intervals.SAMPLE, tick)
"""

import os


# =============================================================================
# SAMPLING
# =============================================================================

DEFAULT_SESSION_ID = "default"


class Intervals:
    """Scheduler cadences in seconds."""
    SAMPLE = 1.0
    DASHBOARD_UPDATE = 5.0
    INTEGRATION_SYNC = 30.0
    RETENTION_SWEEP = 300.0
    AUTOMATION_RESET = 3600.0
    PATTERN_PRUNE = 3600.0
    SESSION_ANALYSIS = 300.0
    READINESS_TIMEOUT = 5.0
    SHUTDOWN_GRACE = 5.0


class Limits:
    """Capacity limits for retained state."""
    HISTORY_SIZE = 1000
    ALERT_HISTORY_MAX = 1000
    ALERT_HISTORY_KEEP = 500
    LEAK_PATTERNS_MAX = 100
    LEAK_PATTERNS_KEEP = 50
    RECOMMENDATIONS_KEPT = 100
    RECOMMENDATION_HISTORY = 1000
    LEARNED_PATTERNS_MAX = 100
    EMERGENCY_ALERTS_PERSISTED = 10
    RECENT_ALERTS = 10
    TOP_RECOMMENDATIONS = 5
    MAX_AUTOMATIONS_PER_HOUR = 5
    SESSION_SNAPSHOTS_MAX = 1000
    SESSION_SNAPSHOTS_KEEP = 500
    SESSION_ANALYSES_KEPT = 100


# =============================================================================
# DETECTION
# =============================================================================

class DetectionThresholds:
    """Leak and fragmentation heuristics."""
    WINDOW_SIZE = 10
    GROWTH_THRESHOLD = 0.1
    GROWTH_EPSILON = 0.001          # 0.1% per sample counts as growth
    SUSTAINED_DETECTED = 0.7
    PLATEAU_THRESHOLD = 0.001       # |change| < 0.1% is a plateau
    JUMP_THRESHOLD = 0.05           # |change| > 5% is a jump
    STAIRCASE_DETECTED = 0.3
    GC_EFFICIENCY_SCALE = 10.0
    GC_INEFFICIENCY_DETECTED = 0.6
    # Detector-side alarm; the optimizer keeps its own leak severity threshold
    LEAK_ALARM_SCORE = 0.7
    FRAGMENTATION_THRESHOLD = 0.3
    TREND_WINDOW = 10


class AlertThresholds:
    """Default (warning, critical, emergency) tiers per metric."""
    SYSTEM_MEMORY = (0.75, 0.85, 0.95)
    HEAP = (0.80, 0.90, 0.95)
    FRAGMENTATION = (0.30, 0.50, 0.70)
    LEAK_SCORE = (0.50, 0.70, 0.90)


class SessionThresholds:
    """Growth tiers for one phase of a session, as a fraction of RSS per sample."""
    NORMAL_GROWTH = 0.1
    CONCERNING_GROWTH = 0.3
    CRITICAL_GROWTH = 0.5
    SHRINKING = -0.05
    PHASE_CHANGE = 0.05             # |rate - phase rate| that opens a new phase
    FRAGMENTATION = 0.2
    INACTIVE_AFTER = 3600.0
    RECOMMEND_BELOW = 0.7           # health score that triggers recommendations


class Cooldowns:
    """Minimum seconds between two firings of the same alert key."""
    WARNING = 60.0
    CRITICAL = 30.0
    EMERGENCY = 10.0


# =============================================================================
# OPTIMIZATION
# =============================================================================

class OptimizerThresholds:
    MEMORY_PRESSURE = 0.8
    FRAGMENTATION_CRITICAL = 0.4
    LEAK_SEVERITY = 0.7
    PERFORMANCE_DEGRADATION = 0.3
    SESSION_GROWTH = 0.3
    BASELINE_EFFICIENCY = 0.8
    LEARNED_CONFIDENCE = 0.8
    LEARNED_SUCCESS_RATE = 0.7
    PRUNE_SUCCESS_RATE = 0.3
    PATTERN_STALE_DAYS = 30
    CONFIDENCE_ATTEMPTS = 10
    MAINTENANCE_WINDOW = (2, 4)     # [start_hour, end_hour)


# =============================================================================
# HEALTH SCORE
# =============================================================================

class HealthBands:
    """Lower bounds for each health label, checked in order."""
    EXCELLENT = 0.8
    GOOD = 0.6
    FAIR = 0.4
    POOR = 0.2


class Retention:
    DAYS = 7
    SESSION_TIMEOUT = 7200.0


class Paths:
    STORAGE_ROOT = os.path.join(os.getcwd(), "memory-health")
    LOGS = "logs"
    ALERTS = "alerts"
    OPTIMIZATIONS = "optimizations"
    SNAPSHOTS = "snapshots"
    INTEGRATION = "integration"
    REPORTS = "reports"
    SESSIONS = "sessions"


class Webhook:
    TIMEOUT = 10.0
    SERVICE_NAME = "memory-monitor"


class Version:
    VERSION = "1.0.0"
