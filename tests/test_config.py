"""
Tests for configuration loading, profiles, environment overrides and
validation.
"""

import json
import os
import sys

import pytest
import yaml

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.config import (
    MemoryHealthConfig,
    ThresholdTiers,
    apply_env_overrides,
    load_config,
    read_config_file,
)
from memhealthd.constants import Intervals
from memhealthd.exceptions import ConfigError
from memhealthd.models import AlertLevel


class TestDefaults:
    """Tests for the built-in defaults."""

    def test_defaults_are_valid(self):
        """The default configuration passes validation."""
        assert MemoryHealthConfig().validate() == []

    def test_default_values(self):
        """Defaults follow the documented constants."""
        config = MemoryHealthConfig()
        assert config.sampler.sample_interval == 1.0
        assert config.sampler.detection_window == 10
        assert config.alerts.thresholds.system_memory.critical == 0.85
        assert config.alerts.cooldowns.for_level(AlertLevel.EMERGENCY) == 10
        assert config.alerts.actions.emergency_shutdown is False
        assert config.optimizer.aggressiveness == "moderate"
        assert config.optimizer.maintenance_window == (2, 4)

    def test_round_trip_through_dict(self):
        """to_dict/from_dict keep every value, including tuples."""
        config = MemoryHealthConfig()
        config.alerts.cooldowns.warning = 90.0
        restored = MemoryHealthConfig.from_dict(config.to_dict())
        assert restored == config


class TestThresholdTiers:
    """Tests for per-metric tiers."""

    def test_highest_reached(self):
        """The highest tier whose threshold is reached wins."""
        tiers = ThresholdTiers(0.75, 0.85, 0.95)
        assert tiers.highest_reached(0.5) is None
        assert tiers.highest_reached(0.75) == (AlertLevel.WARNING, 0.75)
        assert tiers.highest_reached(0.9) == (AlertLevel.CRITICAL, 0.85)
        assert tiers.highest_reached(1.0) == (AlertLevel.EMERGENCY, 0.95)

    def test_validate_order(self):
        """Tiers must be ascending and within (0, 1]."""
        assert ThresholdTiers(0.9, 0.8, 0.95).validate("x")
        assert ThresholdTiers(0.5, 0.6, 1.2).validate("x")
        assert ThresholdTiers(0.5, 0.6, 0.7).validate("x") == []


class TestLoadConfig:
    """Tests for load_config."""

    def test_yaml_file(self, temp_dir):
        """YAML values are merged over the profile."""
        path = temp_dir / "memhealth.yaml"
        path.write_text(yaml.safe_dump({
            'sampler': {'sample_interval': 2.5},
            'alerts': {'thresholds': {'heap': {'warning': 0.7}}},
        }))
        config = load_config(str(path), environ={})

        assert config.sampler.sample_interval == 2.5
        assert config.alerts.thresholds.heap.warning == 0.7
        assert config.alerts.thresholds.heap.critical == 0.9

    def test_json_file(self, temp_dir):
        """JSON files are accepted too."""
        path = temp_dir / "memhealth.json"
        path.write_text(json.dumps({'optimizer': {'maintenance_window': [1, 3]}}))
        config = load_config(str(path), environ={})
        assert config.optimizer.maintenance_window == (1, 3)

    def test_empty_yaml(self, temp_dir):
        """An empty file means no overrides."""
        path = temp_dir / "empty.yaml"
        path.write_text("")
        assert read_config_file(str(path)) == {}

    def test_missing_file(self, temp_dir):
        """A missing file is a configuration error."""
        with pytest.raises(ConfigError):
            load_config(str(temp_dir / "nope.yaml"), environ={})

    def test_unsupported_extension(self, temp_dir):
        """Only YAML and JSON are supported."""
        path = temp_dir / "memhealth.toml"
        path.write_text("[sampler]\n")
        with pytest.raises(ConfigError, match="Unsupported"):
            load_config(str(path), environ={})

    def test_unparseable_yaml(self, temp_dir):
        """Syntax errors surface as ConfigError."""
        path = temp_dir / "bad.yaml"
        path.write_text("sampler: [unclosed\n")
        with pytest.raises(ConfigError, match="Could not parse"):
            load_config(str(path), environ={})

    def test_unknown_key(self, temp_dir):
        """Unknown settings are rejected with their path."""
        path = temp_dir / "memhealth.yaml"
        path.write_text(yaml.safe_dump({'alerts': {'cooldowns': {'info': 5}}}))
        with pytest.raises(ConfigError, match="alerts.cooldowns"):
            load_config(str(path), environ={})

    def test_section_must_be_mapping(self, temp_dir):
        """A scalar where a section belongs is rejected."""
        path = temp_dir / "memhealth.yaml"
        path.write_text(yaml.safe_dump({'sampler': 5}))
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(str(path), environ={})

    def test_validation_errors_collected(self, temp_dir):
        """Every validation problem is reported at once."""
        path = temp_dir / "memhealth.yaml"
        path.write_text(yaml.safe_dump({
            'sampler': {'sample_interval': 0},
            'optimizer': {'aggressiveness': 'reckless'},
        }))
        with pytest.raises(ConfigError) as exc_info:
            load_config(str(path), environ={})
        message = str(exc_info.value)
        assert "sampler.sample_interval" in message
        assert "optimizer.aggressiveness" in message

    def test_session_settings_validated(self, temp_dir):
        """Session growth tiers must ascend and snapshot limits nest."""
        path = temp_dir / "memhealth.yaml"
        path.write_text(yaml.safe_dump({'sessions': {
            'normal_growth': 0.4,
            'concerning_growth': 0.3,
            'keep_snapshots': 2000,
        }}))
        with pytest.raises(ConfigError) as exc_info:
            load_config(str(path), environ={})
        message = str(exc_info.value)
        assert "growth tiers" in message
        assert "sessions.keep_snapshots" in message

    def test_session_analysis_can_be_disabled(self):
        """MEMHEALTH_SESSION_ANALYSIS turns the session analyzer off."""
        config = load_config(environ={'MEMHEALTH_SESSION_ANALYSIS': 'off'})
        assert config.sessions.enabled is False

    def test_production_profile(self):
        """The production profile is conservative and slower."""
        config = load_config(profile="production", environ={})
        assert config.sampler.sample_interval == 5.0
        assert config.optimizer.aggressiveness == "conservative"
        assert config.alerts.cooldowns.warning == 120.0
        assert config.hub.retention_days == 30

    def test_unknown_profile(self):
        """Unknown profiles are rejected."""
        with pytest.raises(ConfigError, match="Unknown profile"):
            load_config(profile="staging", environ={})


class TestEnvironmentOverrides:
    """Tests for MEMHEALTH_* variables."""

    def test_overrides_applied_last(self, temp_dir):
        """Environment values win over the file."""
        path = temp_dir / "memhealth.yaml"
        path.write_text(yaml.safe_dump({'sampler': {'sample_interval': 2.0}}))
        config = load_config(str(path), environ={
            'MEMHEALTH_SAMPLE_INTERVAL': '0.5',
            'MEMHEALTH_EMERGENCY_SHUTDOWN': 'yes',
            'MEMHEALTH_WEBHOOK_URL': 'https://hooks.example.com/mem',
        })
        assert config.sampler.sample_interval == 0.5
        assert config.alerts.actions.emergency_shutdown is True
        assert config.alerts.notifications.webhook_url == 'https://hooks.example.com/mem'

    def test_returns_applied_names(self):
        """apply_env_overrides reports what it changed."""
        config = MemoryHealthConfig()
        applied = apply_env_overrides(config, {'MEMHEALTH_RETENTION_DAYS': '14', 'UNRELATED': 'x'})
        assert applied == ['MEMHEALTH_RETENTION_DAYS']
        assert config.hub.retention_days == 14

    def test_empty_webhook_disables(self):
        """An empty webhook URL turns the webhook off."""
        config = MemoryHealthConfig()
        config.alerts.notifications.webhook_url = "https://hooks.example.com/x"
        apply_env_overrides(config, {'MEMHEALTH_WEBHOOK_URL': ''})
        assert config.alerts.notifications.webhook_url is None

    def test_bad_value(self):
        """Values that cannot be converted raise ConfigError."""
        with pytest.raises(ConfigError, match="MEMHEALTH_HISTORY_SIZE"):
            apply_env_overrides(MemoryHealthConfig(), {'MEMHEALTH_HISTORY_SIZE': 'lots'})

    def test_invalid_override_fails_validation(self):
        """Overrides are validated like file values."""
        with pytest.raises(ConfigError, match="aggressiveness"):
            load_config(environ={'MEMHEALTH_AGGRESSIVENESS': 'yolo'})

    def test_process_environment_is_the_only_source(self, monkeypatch):
        """MEMHEALTH_* values reach the config unchanged and leave the defaults alone."""
        monkeypatch.setenv('MEMHEALTH_SAMPLE_INTERVAL', '0.01')
        monkeypatch.setenv('MEMHEALTH_HISTORY_SIZE', '50')

        config = load_config()
        assert config.sampler.sample_interval == 0.01
        assert config.sampler.history_size == 50
        assert MemoryHealthConfig().sampler.sample_interval == Intervals.SAMPLE == 1.0

    @pytest.mark.parametrize("raw,expected", [
        ("1", True), ("true", True), (" Yes ", True), ("on", True),
        ("0", False), ("false", False), ("", False), ("maybe", False),
    ])
    def test_boolean_spellings(self, raw, expected):
        """Boolean overrides accept the usual spellings."""
        config = MemoryHealthConfig()
        apply_env_overrides(config, {'MEMHEALTH_LEARNING_MODE': raw})
        assert config.optimizer.learning_mode is expected
