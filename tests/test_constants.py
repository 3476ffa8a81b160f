"""
Tests for the Constants module.

Tests centralized thresholds, intervals and limits.
"""

import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from memhealthd.constants import (
    AlertThresholds,
    Cooldowns,
    DetectionThresholds,
    HealthBands,
    Intervals,
    Limits,
    OptimizerThresholds,
)


# ===========================================================================
# Threshold Constants Tests
# ===========================================================================

class TestAlertThresholds:
    """Tests for default alert tiers."""

    @pytest.mark.parametrize("tiers", [
        AlertThresholds.SYSTEM_MEMORY,
        AlertThresholds.HEAP,
        AlertThresholds.FRAGMENTATION,
        AlertThresholds.LEAK_SCORE,
    ])
    def test_tiers_ascending(self, tiers):
        """Warning <= critical <= emergency, all within (0, 1]."""
        warning, critical, emergency = tiers
        assert 0 < warning <= critical <= emergency <= 1

    def test_cooldowns_shrink_with_severity(self):
        """More severe alerts may repeat sooner."""
        assert Cooldowns.WARNING > Cooldowns.CRITICAL > Cooldowns.EMERGENCY > 0


class TestDetectionThresholds:
    """Tests for leak heuristic constants."""

    def test_plateau_below_jump(self):
        """A change cannot be both a plateau and a jump."""
        assert DetectionThresholds.PLATEAU_THRESHOLD < DetectionThresholds.JUMP_THRESHOLD

    def test_window_is_usable(self):
        """The detection window needs at least two samples and fits in history."""
        assert 2 <= DetectionThresholds.WINDOW_SIZE <= Limits.HISTORY_SIZE


class TestLimitsAndIntervals:
    """Tests for limits and scheduler cadences."""

    def test_alert_history_keep_within_max(self):
        """Trimming keeps fewer alerts than the bound."""
        assert 0 < Limits.ALERT_HISTORY_KEEP < Limits.ALERT_HISTORY_MAX

    def test_leak_patterns_keep_within_max(self):
        """Leak pattern trimming keeps fewer than the bound."""
        assert 0 < Limits.LEAK_PATTERNS_KEEP < Limits.LEAK_PATTERNS_MAX

    def test_intervals_positive(self):
        """Every scheduler cadence is positive."""
        for name in ('SAMPLE', 'DASHBOARD_UPDATE', 'INTEGRATION_SYNC', 'RETENTION_SWEEP',
                     'AUTOMATION_RESET', 'PATTERN_PRUNE'):
            assert getattr(Intervals, name) > 0

    def test_health_bands_descending(self):
        """Bands are checked from excellent down."""
        assert HealthBands.EXCELLENT > HealthBands.GOOD > HealthBands.FAIR > HealthBands.POOR > 0

    def test_learning_thresholds(self):
        """Pruned patterns are well below the success rate needed to be offered."""
        assert OptimizerThresholds.PRUNE_SUCCESS_RATE < OptimizerThresholds.LEARNED_SUCCESS_RATE

