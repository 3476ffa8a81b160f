"""
Learned optimization patterns.

Every auto-implementation attempt updates the pattern for its
(type, priority) key. Patterns that keep succeeding are offered again as
"learned" recommendations; stale or unreliable ones are pruned once the
table grows past its limit.
"""

import logging
import threading
from typing import Dict, List, Optional

from ..constants import Limits, OptimizerThresholds
from ..models import LearnedPattern, PatternKey, Recommendation
from ..storage import LEARNED_PATTERNS_FILE, Persistence

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60


class PatternStore:
    """Table of LearnedPattern keyed by PatternKey."""

    def __init__(self, max_patterns: int = Limits.LEARNED_PATTERNS_MAX,
                 stale_days: int = OptimizerThresholds.PATTERN_STALE_DAYS):
        self.max_patterns = max_patterns
        self.stale_days = stale_days
        self._patterns: Dict[PatternKey, LearnedPattern] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._patterns)

    def __contains__(self, key: PatternKey) -> bool:
        return key in self._patterns

    def get(self, key: PatternKey) -> Optional[LearnedPattern]:
        return self._patterns.get(key)

    def all(self) -> List[LearnedPattern]:
        with self._lock:
            return list(self._patterns.values())

    def add(self, pattern: LearnedPattern) -> None:
        with self._lock:
            self._patterns[pattern.key] = pattern

    def record_attempt(self, recommendation: Recommendation, success: bool, now: float) -> LearnedPattern:
        """Update the pattern for the recommendation's (type, priority)."""
        key = PatternKey(recommendation.rec_type, recommendation.priority)
        with self._lock:
            pattern = self._patterns.get(key)
            if pattern is None:
                pattern = LearnedPattern(key=key, actions=list(recommendation.actions))
                self._patterns[key] = pattern

            pattern.attempts += 1
            if success:
                pattern.successes += 1
            pattern.success_rate = pattern.successes / pattern.attempts
            pattern.confidence = min(1.0, pattern.attempts / OptimizerThresholds.CONFIDENCE_ATTEMPTS)
            pattern.last_used = now
            oversized = len(self._patterns) > self.max_patterns

        if oversized:
            self.prune(now)
        return pattern

    def qualified(self, min_confidence: float = OptimizerThresholds.LEARNED_CONFIDENCE,
                  min_success_rate: float = OptimizerThresholds.LEARNED_SUCCESS_RATE) -> List[LearnedPattern]:
        """Patterns trusted enough to be offered as learned recommendations."""
        with self._lock:
            return [
                p for p in self._patterns.values()
                if p.confidence > min_confidence and p.success_rate > min_success_rate
            ]

    def prune(self, now: float) -> int:
        """Drop patterns unused for stale_days or with a low success rate."""
        cutoff = now - self.stale_days * DAY
        with self._lock:
            doomed = [
                key for key, p in self._patterns.items()
                if p.last_used < cutoff or p.success_rate < OptimizerThresholds.PRUNE_SUCCESS_RATE
            ]
            for key in doomed:
                del self._patterns[key]

        if doomed:
            logger.info(f"Pruned {len(doomed)} learned patterns ({len(self._patterns)} remain)")
        return len(doomed)

    def prune_if_needed(self, now: float) -> int:
        if len(self._patterns) <= self.max_patterns:
            return 0
        return self.prune(now)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self, persistence: Persistence) -> str:
        patterns = [p.to_dict() for p in self.all()]
        return persistence.write_json(LEARNED_PATTERNS_FILE, {'patterns': patterns})

    def load(self, persistence: Persistence) -> int:
        """Merge patterns from disk. Returns how many were loaded."""
        data = persistence.read_json(LEARNED_PATTERNS_FILE)
        if not data:
            return 0

        loaded = 0
        for entry in data.get('patterns', []):
            try:
                pattern = LearnedPattern.from_dict(entry)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed learned pattern {entry!r}: {e}")
                continue
            self.add(pattern)
            loaded += 1

        logger.info(f"Loaded {loaded} learned patterns")
        return loaded
