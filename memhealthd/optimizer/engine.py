"""
Recommendation Engine - analysis, prioritization and auto-implementation.

Features:
- Six-dimension analysis of each sample (pressure, fragmentation, leaks,
  performance, session growth, context)
- Recommendations scored by priority, urgency and context
- Auto-implementation gated by aggressiveness, automated actions and
  context criticality, with an hourly cap
- Learning loop over (type, priority) patterns
- Implementation log and optional per-batch recommendation files
"""

import logging
import os
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..channels import Channel
from ..config import OptimizerConfig
from ..constants import OptimizerThresholds, Paths
from ..models import (
    ImplementationResult,
    LeakSignal,
    MetricSample,
    Recommendation,
    RiskLevel,
    SessionRecord,
)
from ..runtime import RuntimeControl
from ..scheduler import Scheduler
from ..storage import IMPLEMENTATION_LOG, Persistence
from ..utils.error_handling import ErrorCategory, with_error_handling
from .actions import ActionExecutor
from .analysis import Analysis, AnalysisContext, PressureLevel, analyze
from .learning import PatternStore
from .recommendations import (
    checkpoint_recommendation,
    fragmentation_recommendation,
    learned_recommendation,
    leak_recommendation,
    memory_pressure_recommendation,
    performance_recommendation,
    prioritize,
    session_recommendation,
)

logger = logging.getLogger(__name__)

ALLOWED_RISK = {
    "conservative": {RiskLevel.VERY_LOW},
    "moderate": {RiskLevel.VERY_LOW, RiskLevel.LOW},
    "aggressive": {RiskLevel.VERY_LOW, RiskLevel.LOW, RiskLevel.MEDIUM},
}


def allowed_risk_levels(aggressiveness: str):
    if aggressiveness not in ALLOWED_RISK:
        raise ValueError(f"Unknown aggressiveness {aggressiveness!r}")
    return ALLOWED_RISK[aggressiveness]


def can_auto_implement(rec: Recommendation, aggressiveness: str, context: AnalysisContext) -> bool:
    if rec.risk_level not in allowed_risk_levels(aggressiveness):
        return False
    if not rec.has_automated_action:
        return False
    if context.criticality == "critical" and rec.risk_level != RiskLevel.VERY_LOW:
        return False
    return True


class RecommendationEngine:
    """
    Turns samples into prioritized recommendations and applies the safe ones.

    Subscribe to ``recommendations`` for each generated batch and to
    ``implementations`` for each auto-implementation attempt.
    """

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        runtime: Optional[RuntimeControl] = None,
        scheduler: Optional[Scheduler] = None,
        persistence: Optional[Persistence] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        if runtime is None or scheduler is None:
            raise ValueError("RecommendationEngine needs a runtime and a scheduler")

        self.config = config or OptimizerConfig()
        self.runtime = runtime
        self.scheduler = scheduler
        self.persistence = persistence
        self.clock = clock or scheduler.now

        self.executor = ActionExecutor(runtime, persistence)
        self.patterns = PatternStore(self.config.max_learned_patterns, self.config.pattern_stale_days)

        self._baseline_efficiency = self.config.baseline_efficiency
        self._automation_count = 0
        self._last_automation_reset = self.clock()
        self._history: deque = deque(maxlen=self.config.history_size)
        self._latest: List[Recommendation] = []
        self._last_analysis: Optional[Analysis] = None

        self.recommendations: Channel[List[Recommendation]] = Channel("recommendations")
        self.implementations: Channel[ImplementationResult] = Channel("implementations")

    # -------------------------------------------------------------------------
    # Host inputs
    # -------------------------------------------------------------------------

    @property
    def baseline_efficiency(self) -> float:
        return self._baseline_efficiency

    def set_baseline_efficiency(self, value: float) -> None:
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"Baseline efficiency must be within [0, 1], got {value}")
        self._baseline_efficiency = value
        logger.info(f"Baseline efficiency set to {value:.3f}")

    def register_cache_clearer(self, name: str, clearer: Callable[[], Any]) -> None:
        self.executor.register_cache_clearer(name, clearer)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(self, sample: MetricSample, session: Optional[SessionRecord] = None,
                 leak_signal: Optional[LeakSignal] = None) -> List[Recommendation]:
        now = self.clock()
        analysis = analyze(sample, session, leak_signal, self.config, self._baseline_efficiency, now)
        self._last_analysis = analysis

        candidates = []
        if analysis.memory_pressure.level == PressureLevel.CRITICAL:
            candidates.append(memory_pressure_recommendation(analysis, now))
        if analysis.fragmentation.needs_optimization:
            candidates.append(fragmentation_recommendation(analysis, now))
        if analysis.leaks.detected:
            candidates.append(leak_recommendation(analysis, now))
        if analysis.performance.degraded:
            candidates.append(performance_recommendation(analysis, now))
        if analysis.session.needs_optimization:
            candidates.append(session_recommendation(analysis, now))
        candidates.append(checkpoint_recommendation(analysis, now))
        if self.config.learning_mode:
            candidates.extend(learned_recommendation(p, now) for p in self.patterns.qualified())

        recommendations = prioritize(candidates, analysis.context)
        self._latest = recommendations

        if self.config.persist_recommendations:
            self._save_recommendations(recommendations, analysis)

        if self.config.auto_optimization:
            self.auto_implement(recommendations, analysis.context)

        self.recommendations.publish(recommendations)
        return recommendations

    @property
    def latest_recommendations(self) -> List[Recommendation]:
        return list(self._latest)

    @property
    def last_analysis(self) -> Optional[Analysis]:
        return self._last_analysis

    def _save_recommendations(self, recommendations: List[Recommendation], analysis: Analysis) -> None:
        if self.persistence is None:
            return

        by_priority: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for rec in recommendations:
            by_priority[rec.priority.value] = by_priority.get(rec.priority.value, 0) + 1
            by_type[rec.rec_type] = by_type.get(rec.rec_type, 0) + 1

        filename = f"recommendations_{int(analysis.timestamp * 1000)}.json"
        self.persistence.write_json(os.path.join(Paths.OPTIMIZATIONS, 'recommendations', filename), {
            'timestamp': datetime.now().isoformat(),
            'analysis': analysis.to_dict(),
            'recommendations': [r.to_dict() for r in recommendations],
            'metadata': {
                'total_recommendations': len(recommendations),
                'priorities': by_priority,
                'types': by_type,
                'auto_implementable': len([r for r in recommendations if r.has_automated_action]),
            },
        })

    # -------------------------------------------------------------------------
    # Auto-implementation
    # -------------------------------------------------------------------------

    @property
    def automations_this_hour(self) -> int:
        return self._automation_count

    def reset_automation_count(self) -> None:
        if self._automation_count:
            logger.debug(f"Resetting automation count ({self._automation_count} this hour)")
        self._automation_count = 0
        self._last_automation_reset = self.clock()

    def can_auto_implement(self, rec: Recommendation, context: AnalysisContext) -> bool:
        return can_auto_implement(rec, self.config.aggressiveness, context)

    def auto_implement(self, recommendations: List[Recommendation],
                       context: AnalysisContext) -> List[ImplementationResult]:
        """Implement every eligible recommendation. Only successes count toward the hourly cap."""
        limit = self.config.max_automations_per_hour
        if self._automation_count >= limit:
            logger.info("Auto-optimization limit reached for this hour")
            return []

        results = []
        for rec in recommendations:
            if not self.can_auto_implement(rec, context):
                continue
            if self._automation_count >= limit:
                logger.info("Auto-optimization limit reached for this hour")
                break
            result = self.implement(rec)
            if result.success:
                self._automation_count += 1
            results.append(result)
        return results

    def implement(self, rec: Recommendation) -> ImplementationResult:
        """Execute the automated actions of one recommendation."""
        result = ImplementationResult(recommendation=rec, timestamp=self.clock())

        for action in rec.actions:
            if not action.automated:
                continue
            outcome = self.executor.execute(action)
            result.executed.append(outcome)
            if not outcome.success:
                result.errors.append(outcome)

        self._history.append(result)
        if self.persistence is not None:
            self.persistence.append(IMPLEMENTATION_LOG, result.to_dict())

        if self.config.learning_mode:
            self.patterns.record_attempt(rec, result.success, result.timestamp)

        if result.success:
            logger.info(f"Optimization implemented: {rec.title}")
        else:
            logger.warning(
                f"Optimization {rec.rec_type} incomplete: "
                f"{'; '.join(e.error or 'failed' for e in result.errors) or 'no automated actions'}"
            )

        self.implementations.publish(result)
        return result

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def prune_learned_patterns(self) -> int:
        return self.patterns.prune_if_needed(self.clock())

    def save_learned_patterns(self) -> Optional[str]:
        if self.persistence is None:
            return None
        return self.patterns.save(self.persistence)

    @with_error_handling(category=ErrorCategory.PERSISTENCE, operation="load learned patterns", default_return=0)
    def load_learned_patterns(self) -> int:
        if self.persistence is None:
            return 0
        return self.patterns.load(self.persistence)

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    @property
    def history(self) -> List[ImplementationResult]:
        return list(self._history)

    def get_optimization_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, Dict[str, int]] = {}
        for result in self._history:
            entry = by_type.setdefault(result.recommendation.rec_type, {'total': 0, 'successful': 0})
            entry['total'] += 1
            if result.success:
                entry['successful'] += 1

        return {
            'total_optimizations': len(self._history),
            'automations_this_hour': self._automation_count,
            'last_automation_reset': self._last_automation_reset,
            'learned_patterns': len(self.patterns),
            'successful_patterns': len([
                p for p in self.patterns.all()
                if p.success_rate > OptimizerThresholds.LEARNED_SUCCESS_RATE
            ]),
            'by_type': [
                {
                    'type': rec_type,
                    'total': data['total'],
                    'successful': data['successful'],
                    'success_rate': data['successful'] / data['total'] if data['total'] else 0.0,
                }
                for rec_type, data in by_type.items()
            ],
        }
