"""
Recommendation engine: analysis, recommendations, automated actions and
learned patterns.
"""

from .actions import ActionExecutor
from .analysis import Analysis, AnalysisContext, ImpactLevel, PressureLevel, analyze
from .engine import ALLOWED_RISK, RecommendationEngine, allowed_risk_levels, can_auto_implement
from .learning import PatternStore
from .recommendations import prioritize, priority_score

__all__ = [
    'ALLOWED_RISK',
    'ActionExecutor',
    'Analysis',
    'AnalysisContext',
    'ImpactLevel',
    'PatternStore',
    'PressureLevel',
    'RecommendationEngine',
    'allowed_risk_levels',
    'analyze',
    'can_auto_implement',
    'prioritize',
    'priority_score',
]
