"""
Configuration loading for the memory health daemon.
"""

from .settings import (
    AGGRESSIVENESS_LEVELS,
    CRITICALITY_LEVELS,
    PROFILES,
    ActionTriggers,
    AlertConfig,
    CooldownPeriods,
    HubConfig,
    MemoryHealthConfig,
    NotificationConfig,
    OptimizerConfig,
    SamplerConfig,
    SessionConfig,
    StorageConfig,
    ThresholdSet,
    ThresholdTiers,
    apply_env_overrides,
    load_config,
    read_config_file,
)

__all__ = [
    'AGGRESSIVENESS_LEVELS',
    'CRITICALITY_LEVELS',
    'PROFILES',
    'ActionTriggers',
    'AlertConfig',
    'CooldownPeriods',
    'HubConfig',
    'MemoryHealthConfig',
    'NotificationConfig',
    'OptimizerConfig',
    'SamplerConfig',
    'SessionConfig',
    'StorageConfig',
    'ThresholdSet',
    'ThresholdTiers',
    'apply_env_overrides',
    'load_config',
    'read_config_file',
]
