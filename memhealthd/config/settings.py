"""
Configuration for the Memory Health Daemon.

Provides:
- Dataclass settings for each component (sampler, alerts, optimizer, hub,
  sessions, storage) aggregated in MemoryHealthConfig
- Named profiles ("default", "production")
- YAML or JSON config files merged over the chosen profile
- MEMHEALTH_* environment overrides applied last
- Validation that raises ConfigError with every problem found

Usage:
    from memhealthd.config import load_config

    config = load_config("memhealth.yaml", profile="production")
    print(config.alerts.cooldowns.warning)
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from ..constants import (
    AlertThresholds,
    Cooldowns,
    DetectionThresholds,
    Intervals,
    Limits,
    OptimizerThresholds,
    Paths,
    Retention,
    SessionThresholds,
    Webhook,
    DEFAULT_SESSION_ID,
)
from ..exceptions import ConfigError
from ..models import AlertLevel

logger = logging.getLogger(__name__)

AGGRESSIVENESS_LEVELS = ("conservative", "moderate", "aggressive")
CRITICALITY_LEVELS = ("low", "normal", "high", "critical")


class _Section:
    """to_dict/from_dict for nested settings dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if is_dataclass(value):
                value = value.to_dict()
            elif isinstance(value, tuple):
                value = list(value)
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str = ""):
        if not isinstance(data, dict):
            raise ConfigError(f"{path or cls.__name__} must be a mapping, got {type(data).__name__}")

        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown setting(s) in {path or 'config'}: {', '.join(unknown)}")

        kwargs = {}
        defaults = cls()
        for name, value in data.items():
            current = getattr(defaults, name)
            if is_dataclass(current):
                value = type(current).from_dict(value, f"{path}.{name}".lstrip('.'))
            elif isinstance(current, tuple) and isinstance(value, list):
                value = tuple(value)
            kwargs[name] = value
        return cls(**kwargs)


@dataclass
class ThresholdTiers(_Section):
    """Warning/critical/emergency boundaries for one metric"""
    warning: float = 0.0
    critical: float = 0.0
    emergency: float = 0.0

    @classmethod
    def of(cls, tiers: Tuple[float, float, float]) -> 'ThresholdTiers':
        return cls(*tiers)

    def highest_reached(self, value: float) -> Optional[Tuple[AlertLevel, float]]:
        """Highest tier reached (value >= threshold), or None."""
        for level, threshold in (
            (AlertLevel.EMERGENCY, self.emergency),
            (AlertLevel.CRITICAL, self.critical),
            (AlertLevel.WARNING, self.warning),
        ):
            if value >= threshold:
                return level, threshold
        return None

    def validate(self, name: str) -> List[str]:
        if not (0 < self.warning <= self.critical <= self.emergency <= 1.0):
            return [f"{name} tiers must satisfy 0 < warning <= critical <= emergency <= 1 "
                    f"(got {self.warning}/{self.critical}/{self.emergency})"]
        return []


@dataclass
class ThresholdSet(_Section):
    system_memory: ThresholdTiers = field(default_factory=lambda: ThresholdTiers.of(AlertThresholds.SYSTEM_MEMORY))
    heap: ThresholdTiers = field(default_factory=lambda: ThresholdTiers.of(AlertThresholds.HEAP))
    fragmentation: ThresholdTiers = field(default_factory=lambda: ThresholdTiers.of(AlertThresholds.FRAGMENTATION))
    leak_score: ThresholdTiers = field(default_factory=lambda: ThresholdTiers.of(AlertThresholds.LEAK_SCORE))

    def validate(self, prefix: str) -> List[str]:
        errors = []
        for f in fields(self):
            errors.extend(getattr(self, f.name).validate(f"{prefix}.{f.name}"))
        return errors


@dataclass
class SamplerConfig(_Section):
    sample_interval: float = Intervals.SAMPLE
    history_size: int = Limits.HISTORY_SIZE
    session_id: str = DEFAULT_SESSION_ID
    readiness_timeout: float = Intervals.READINESS_TIMEOUT
    leak_detection_enabled: bool = True
    detection_window: int = DetectionThresholds.WINDOW_SIZE
    growth_threshold: float = DetectionThresholds.GROWTH_THRESHOLD
    growth_epsilon: float = DetectionThresholds.GROWTH_EPSILON
    plateau_threshold: float = DetectionThresholds.PLATEAU_THRESHOLD
    jump_threshold: float = DetectionThresholds.JUMP_THRESHOLD
    leak_alarm_score: float = DetectionThresholds.LEAK_ALARM_SCORE
    fragmentation_enabled: bool = True
    fragmentation_threshold: float = DetectionThresholds.FRAGMENTATION_THRESHOLD
    thresholds: ThresholdSet = field(default_factory=ThresholdSet)


@dataclass
class CooldownPeriods(_Section):
    """Seconds between two firings of the same (type, level)"""
    warning: float = Cooldowns.WARNING
    critical: float = Cooldowns.CRITICAL
    emergency: float = Cooldowns.EMERGENCY

    def for_level(self, level: AlertLevel) -> float:
        return getattr(self, level.value)


@dataclass
class ActionTriggers(_Section):
    auto_gc: bool = True
    notifications: bool = True
    emergency_shutdown: bool = False
    memory_dump: bool = True


@dataclass
class NotificationConfig(_Section):
    console: bool = True
    log_file: bool = True
    webhook_url: Optional[str] = None
    webhook_timeout: float = Webhook.TIMEOUT


@dataclass
class AlertConfig(_Section):
    thresholds: ThresholdSet = field(default_factory=ThresholdSet)
    cooldowns: CooldownPeriods = field(default_factory=CooldownPeriods)
    actions: ActionTriggers = field(default_factory=ActionTriggers)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    shutdown_grace_period: float = Intervals.SHUTDOWN_GRACE
    history_max: int = Limits.ALERT_HISTORY_MAX
    history_keep: int = Limits.ALERT_HISTORY_KEEP


@dataclass
class OptimizerConfig(_Section):
    auto_optimization: bool = True
    aggressiveness: str = "moderate"
    max_automations_per_hour: int = Limits.MAX_AUTOMATIONS_PER_HOUR
    learning_mode: bool = True
    memory_pressure_threshold: float = OptimizerThresholds.MEMORY_PRESSURE
    fragmentation_threshold: float = OptimizerThresholds.FRAGMENTATION_CRITICAL
    leak_threshold: float = OptimizerThresholds.LEAK_SEVERITY
    performance_threshold: float = OptimizerThresholds.PERFORMANCE_DEGRADATION
    session_growth_threshold: float = OptimizerThresholds.SESSION_GROWTH
    baseline_efficiency: float = OptimizerThresholds.BASELINE_EFFICIENCY
    context_criticality: str = "normal"
    maintenance_window: Tuple[int, int] = OptimizerThresholds.MAINTENANCE_WINDOW
    persist_recommendations: bool = False
    history_size: int = Limits.RECOMMENDATION_HISTORY
    max_learned_patterns: int = Limits.LEARNED_PATTERNS_MAX
    pattern_stale_days: int = OptimizerThresholds.PATTERN_STALE_DAYS


@dataclass
class HubConfig(_Section):
    dashboard_update_interval: float = Intervals.DASHBOARD_UPDATE
    sync_enabled: bool = True
    sync_interval: float = Intervals.INTEGRATION_SYNC
    retention_sweep_interval: float = Intervals.RETENTION_SWEEP
    automation_reset_interval: float = Intervals.AUTOMATION_RESET
    pattern_prune_interval: float = Intervals.PATTERN_PRUNE
    retention_days: int = Retention.DAYS
    recommendations_kept: int = Limits.RECOMMENDATIONS_KEPT
    session_timeout: float = Retention.SESSION_TIMEOUT


@dataclass
class SessionConfig(_Section):
    enabled: bool = True
    analysis_interval: float = Intervals.SESSION_ANALYSIS
    inactive_after: float = SessionThresholds.INACTIVE_AFTER
    normal_growth: float = SessionThresholds.NORMAL_GROWTH
    concerning_growth: float = SessionThresholds.CONCERNING_GROWTH
    critical_growth: float = SessionThresholds.CRITICAL_GROWTH
    fragmentation_threshold: float = SessionThresholds.FRAGMENTATION
    max_snapshots: int = Limits.SESSION_SNAPSHOTS_MAX
    keep_snapshots: int = Limits.SESSION_SNAPSHOTS_KEEP
    analyses_kept: int = Limits.SESSION_ANALYSES_KEPT
    recommend_below: float = SessionThresholds.RECOMMEND_BELOW


@dataclass
class StorageConfig(_Section):
    root: str = Paths.STORAGE_ROOT
    synchronous_io: bool = False


@dataclass
class MemoryHealthConfig(_Section):
    """Complete configuration for one engine instance"""
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    hub: HubConfig = field(default_factory=HubConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the config is usable."""
        errors: List[str] = []
        s, a, o, h, ss = self.sampler, self.alerts, self.optimizer, self.hub, self.sessions

        if s.sample_interval <= 0:
            errors.append("sampler.sample_interval must be positive")
        if s.detection_window < 2:
            errors.append("sampler.detection_window must be at least 2")
        if s.history_size < s.detection_window:
            errors.append("sampler.history_size must be >= sampler.detection_window")
        if s.readiness_timeout < 0:
            errors.append("sampler.readiness_timeout must not be negative")
        if not 0 < s.fragmentation_threshold <= 1:
            errors.append("sampler.fragmentation_threshold must be in (0, 1]")
        errors.extend(s.thresholds.validate("sampler.thresholds"))

        errors.extend(a.thresholds.validate("alerts.thresholds"))
        for level in AlertLevel:
            if a.cooldowns.for_level(level) < 0:
                errors.append(f"alerts.cooldowns.{level.value} must not be negative")
        if a.shutdown_grace_period < 0:
            errors.append("alerts.shutdown_grace_period must not be negative")
        if not 0 < a.history_keep <= a.history_max:
            errors.append("alerts.history_keep must be in (0, history_max]")

        if o.aggressiveness not in AGGRESSIVENESS_LEVELS:
            errors.append(f"optimizer.aggressiveness must be one of {', '.join(AGGRESSIVENESS_LEVELS)}")
        if o.context_criticality not in CRITICALITY_LEVELS:
            errors.append(f"optimizer.context_criticality must be one of {', '.join(CRITICALITY_LEVELS)}")
        if o.max_automations_per_hour < 0:
            errors.append("optimizer.max_automations_per_hour must not be negative")
        if len(o.maintenance_window) != 2 or not 0 <= o.maintenance_window[0] <= o.maintenance_window[1] <= 24:
            errors.append("optimizer.maintenance_window must be [start_hour, end_hour] within 0-24")

        for name in ('dashboard_update_interval', 'sync_interval', 'retention_sweep_interval',
                     'automation_reset_interval', 'pattern_prune_interval'):
            if getattr(h, name) <= 0:
                errors.append(f"hub.{name} must be positive")
        if h.retention_days < 1:
            errors.append("hub.retention_days must be at least 1")
        if h.recommendations_kept < 1:
            errors.append("hub.recommendations_kept must be at least 1")

        if ss.analysis_interval <= 0:
            errors.append("sessions.analysis_interval must be positive")
        if ss.inactive_after <= 0:
            errors.append("sessions.inactive_after must be positive")
        if not 0 < ss.normal_growth < ss.concerning_growth < ss.critical_growth:
            errors.append("sessions growth tiers must satisfy 0 < normal < concerning < critical")
        if not 0 < ss.fragmentation_threshold <= 1:
            errors.append("sessions.fragmentation_threshold must be in (0, 1]")
        if not 0 < ss.keep_snapshots <= ss.max_snapshots:
            errors.append("sessions.keep_snapshots must be in (0, max_snapshots]")
        if ss.analyses_kept < 1:
            errors.append("sessions.analyses_kept must be at least 1")
        if not 0 <= ss.recommend_below <= 1:
            errors.append("sessions.recommend_below must be within [0, 1]")

        return errors


# =============================================================================
# PROFILES
# =============================================================================

def _production_profile() -> MemoryHealthConfig:
    config = MemoryHealthConfig()

    config.sampler.sample_interval = 5.0
    config.sampler.history_size = 2000
    config.sampler.growth_threshold = 0.05
    config.sampler.detection_window = 20
    config.sampler.fragmentation_threshold = 0.25
    config.sampler.thresholds.system_memory = ThresholdTiers(0.80, 0.90, 0.95)

    config.alerts.thresholds.system_memory = ThresholdTiers(0.80, 0.90, 0.95)
    config.alerts.thresholds.heap = ThresholdTiers(0.85, 0.92, 0.97)
    config.alerts.thresholds.fragmentation = ThresholdTiers(0.25, 0.40, 0.60)
    config.alerts.thresholds.leak_score = ThresholdTiers(0.4, 0.6, 0.8)
    config.alerts.cooldowns = CooldownPeriods(warning=120.0, critical=60.0, emergency=30.0)
    config.alerts.actions.emergency_shutdown = False

    config.optimizer.aggressiveness = "conservative"
    config.optimizer.max_automations_per_hour = 3
    config.optimizer.memory_pressure_threshold = 0.85
    config.optimizer.fragmentation_threshold = 0.35
    config.optimizer.leak_threshold = 0.6
    config.optimizer.performance_threshold = 0.25

    config.hub.dashboard_update_interval = 10.0
    config.hub.retention_days = 30
    config.hub.sync_interval = 60.0
    return config


PROFILES: Dict[str, Callable[[], MemoryHealthConfig]] = {
    "default": MemoryHealthConfig,
    "production": _production_profile,
}


# =============================================================================
# ENVIRONMENT OVERRIDES
# =============================================================================

ENV_PREFIX = "MEMHEALTH_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _optional_str(value: str) -> Optional[str]:
    return value or None


# env suffix -> (section, attribute, converter)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "SAMPLE_INTERVAL": ("sampler", "sample_interval", float),
    "HISTORY_SIZE": ("sampler", "history_size", int),
    "SESSION_ID": ("sampler", "session_id", str),
    "DETECTION_WINDOW": ("sampler", "detection_window", int),
    "WEBHOOK_URL": ("alerts.notifications", "webhook_url", _optional_str),
    "CONSOLE_ALERTS": ("alerts.notifications", "console", _parse_bool),
    "EMERGENCY_SHUTDOWN": ("alerts.actions", "emergency_shutdown", _parse_bool),
    "AUTO_GC": ("alerts.actions", "auto_gc", _parse_bool),
    "AUTO_OPTIMIZATION": ("optimizer", "auto_optimization", _parse_bool),
    "AGGRESSIVENESS": ("optimizer", "aggressiveness", str),
    "MAX_AUTOMATIONS": ("optimizer", "max_automations_per_hour", int),
    "LEARNING_MODE": ("optimizer", "learning_mode", _parse_bool),
    "RETENTION_DAYS": ("hub", "retention_days", int),
    "SYNC_INTERVAL": ("hub", "sync_interval", float),
    "SESSION_ANALYSIS": ("sessions", "enabled", _parse_bool),
    "STORAGE_ROOT": ("storage", "root", str),
}


def apply_env_overrides(config: MemoryHealthConfig,
                        environ: Optional[Dict[str, str]] = None) -> List[str]:
    """Apply MEMHEALTH_* variables in place. Returns the variables applied."""
    environ = os.environ if environ is None else environ
    applied = []

    for suffix, (section_path, attr, converter) in ENV_OVERRIDES.items():
        name = f"{ENV_PREFIX}{suffix}"
        if name not in environ:
            continue
        try:
            value = converter(environ[name])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {name}={environ[name]!r}: {e}") from e

        section = config
        for part in section_path.split('.'):
            section = getattr(section, part)
        setattr(section, attr, value)
        applied.append(name)

    if applied:
        logger.info(f"Applied environment overrides: {', '.join(applied)}")
    return applied


# =============================================================================
# LOADING
# =============================================================================

def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config_file(path: str) -> Dict[str, Any]:
    """Read a YAML or JSON config file into a dict."""
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, 'r') as f:
            if ext in ('.yaml', '.yml'):
                data = yaml.safe_load(f)
            elif ext == '.json':
                data = json.load(f)
            else:
                raise ConfigError(f"Unsupported config format {ext!r} (use .yaml, .yml or .json)")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")
    return data


def load_config(path: Optional[str] = None, profile: str = "default",
                environ: Optional[Dict[str, str]] = None) -> MemoryHealthConfig:
    """
    Build a validated configuration.

    Args:
        path: Optional YAML/JSON file merged over the profile
        profile: Name of the base profile ("default" or "production")
        environ: Environment mapping for overrides (defaults to os.environ)

    Raises:
        ConfigError: on unknown profile, unreadable file, unknown keys,
            bad environment values or failed validation
    """
    if profile not in PROFILES:
        raise ConfigError(f"Unknown profile {profile!r} (choose from {', '.join(PROFILES)})")

    data = PROFILES[profile]().to_dict()
    if path:
        data = _deep_merge(data, read_config_file(path))
        logger.info(f"Loaded config file {path} over profile {profile}")

    config = MemoryHealthConfig.from_dict(data)
    apply_env_overrides(config, environ)

    errors = config.validate()
    if errors:
        raise ConfigError("Invalid configuration:\n  " + "\n  ".join(errors))
    return config
