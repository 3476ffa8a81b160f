"""
Recommendation builders and prioritization.

Each builder turns one dimension of an Analysis into at most one
Recommendation. prioritize() scores them and sorts by priority score,
keeping input order for ties.
"""

from typing import Dict, Iterable, List

from ..models import (
    Action,
    Impact,
    LearnedPattern,
    Priority,
    Recommendation,
    RiskLevel,
    Urgency,
)
from .analysis import Analysis, AnalysisContext, ImpactLevel

# =============================================================================
# SCORING TABLES
# =============================================================================

PRIORITY_WEIGHTS: Dict[Priority, float] = {
    Priority.CRITICAL: 100,
    Priority.HIGH: 80,
    Priority.MEDIUM: 60,
    Priority.LOW: 40,
}

URGENCY_MULTIPLIERS: Dict[Urgency, float] = {
    Urgency.IMMEDIATE: 1.5,
    Urgency.URGENT: 1.3,
    Urgency.MODERATE: 1.0,
    Urgency.LOW: 0.8,
}

IMPACT_SCORES: Dict[Impact, int] = {
    Impact.HIGH: 30,
    Impact.MEDIUM: 20,
    Impact.LOW: 10,
    Impact.NONE: 0,
}

RISK_SCORES: Dict[RiskLevel, int] = {
    RiskLevel.VERY_LOW: 1,
    RiskLevel.LOW: 2,
    RiskLevel.MEDIUM: 3,
    RiskLevel.HIGH: 4,
    RiskLevel.VERY_HIGH: 5,
}

MAINTENANCE_BOOST = 1.2
CRITICAL_CONTEXT_DISCOUNT = 0.8


def _rec_id(rec_type: str, now: float) -> str:
    return f"{rec_type}_{int(now * 1000)}"


# =============================================================================
# BUILDERS
# =============================================================================

def memory_pressure_recommendation(analysis: Analysis, now: float) -> Recommendation:
    return Recommendation(
        rec_id=_rec_id("memory_pressure", now),
        rec_type="memory_pressure",
        priority=Priority.CRITICAL,
        urgency=Urgency.IMMEDIATE,
        title="Critical Memory Pressure - Immediate Action Required",
        description="System memory usage is critically high and may cause performance issues or crashes",
        actions=[
            Action("force_gc", "Force garbage collection to free up heap memory",
                   automated=True, estimated_impact=Impact.MEDIUM, implementation_time="immediate"),
            Action("clear_caches", "Clear non-essential caches and temporary data",
                   automated=True, estimated_impact=Impact.MEDIUM, implementation_time="immediate"),
            Action("memory_dump", "Create memory dump for analysis",
                   automated=False, estimated_impact=Impact.NONE, implementation_time="1 minute"),
        ],
        risk_level=RiskLevel.LOW,
        reversible=True,
        timestamp=now,
    )


def fragmentation_recommendation(analysis: Analysis, now: float) -> Recommendation:
    frag = analysis.fragmentation
    return Recommendation(
        rec_id=_rec_id("fragmentation", now),
        rec_type="memory_fragmentation",
        priority=frag.priority,
        urgency=frag.urgency,
        title="Memory Fragmentation Optimization",
        description=f"High memory fragmentation detected ({frag.score * 100:.1f}%)",
        actions=[
            Action("compact_heap", "Trigger heap compaction to reduce fragmentation",
                   automated=True, estimated_impact=Impact.HIGH, implementation_time="30 seconds"),
            Action("optimize_allocations", "Implement object pooling for frequently allocated objects",
                   automated=False, estimated_impact=Impact.HIGH, implementation_time="1-2 hours"),
            Action("adjust_gc_parameters", "Tune garbage collection thresholds for reduced fragmentation",
                   automated=False, estimated_impact=Impact.MEDIUM, implementation_time="15 minutes"),
        ],
        risk_level=RiskLevel.LOW,
        reversible=True,
        timestamp=now,
    )


def leak_actions(analysis: Analysis) -> List[Action]:
    leaks = analysis.leaks
    actions = []
    if leaks.sustained:
        actions.append(Action(
            "investigate_sustained_growth",
            "Investigate sustained memory growth pattern - likely accumulating objects",
            automated=False, estimated_impact=Impact.HIGH, implementation_time="30 minutes - 2 hours",
        ))
    if leaks.staircase:
        actions.append(Action(
            "investigate_staircase_pattern",
            "Investigate staircase allocation pattern - implement proper cleanup",
            automated=False, estimated_impact=Impact.HIGH, implementation_time="30 minutes - 1 hour",
        ))
    if leaks.gc_inefficiency:
        actions.append(Action(
            "optimize_gc_settings",
            "Optimize garbage collection settings for better efficiency",
            automated=True, estimated_impact=Impact.MEDIUM, implementation_time="5 minutes",
        ))
    actions.append(Action(
        "create_heap_snapshot",
        "Create heap snapshot for detailed leak analysis",
        automated=True, estimated_impact=Impact.NONE, implementation_time="1 minute",
    ))
    return actions


def leak_recommendation(analysis: Analysis, now: float) -> Recommendation:
    leaks = analysis.leaks
    return Recommendation(
        rec_id=_rec_id("memory_leak", now),
        rec_type="memory_leak",
        priority=Priority.CRITICAL if leaks.severity == Priority.CRITICAL else Priority.HIGH,
        urgency=leaks.urgency,
        title=f"Memory Leak Detection - {leaks.severity.value} severity",
        description=f"Memory leak detected with score {leaks.score:.3f}",
        actions=leak_actions(analysis),
        risk_level=RiskLevel.MEDIUM,
        reversible=False,
        timestamp=now,
    )


def performance_recommendation(analysis: Analysis, now: float) -> Recommendation:
    perf = analysis.performance
    severe = perf.impact == ImpactLevel.SEVERE
    return Recommendation(
        rec_id=_rec_id("performance", now),
        rec_type="performance_optimization",
        priority=Priority.HIGH if severe else Priority.MEDIUM,
        urgency=Urgency.URGENT if severe else Urgency.MODERATE,
        title="Performance Optimization Required",
        description=f"Performance degradation of {perf.degradation * 100:.1f}% detected",
        actions=[
            Action("memory_efficiency_tuning", "Optimize memory usage patterns for better performance",
                   automated=False, estimated_impact=Impact.HIGH, implementation_time="1-3 hours"),
            Action("cache_optimization", "Implement intelligent caching strategies",
                   automated=False, estimated_impact=Impact.MEDIUM, implementation_time="30 minutes - 1 hour"),
        ],
        risk_level=RiskLevel.LOW,
        reversible=True,
        timestamp=now,
    )


def session_recommendation(analysis: Analysis, now: float) -> Recommendation:
    return Recommendation(
        rec_id=_rec_id("session_optimization", now),
        rec_type="session_optimization",
        priority=Priority.MEDIUM,
        urgency=Urgency.MODERATE,
        title="Session Memory Optimization",
        description=(f"Session {analysis.session.session_id} grew "
                     f"{analysis.session.growth_ratio * 100:.1f}% - consider segmentation"),
        actions=[
            Action("implement_session_segmentation", "Break long sessions into smaller segments with checkpoints",
                   automated=False, estimated_impact=Impact.HIGH, implementation_time="1-2 hours"),
            Action("optimize_session_state", "Implement session state compression and cleanup",
                   automated=False, estimated_impact=Impact.MEDIUM, implementation_time="30 minutes - 1 hour"),
        ],
        risk_level=RiskLevel.LOW,
        reversible=True,
        timestamp=now,
    )


def checkpoint_recommendation(analysis: Analysis, now: float) -> Recommendation:
    return Recommendation(
        rec_id=_rec_id("checkpoint_optimization", now),
        rec_type="checkpoint_optimization",
        priority=Priority.LOW,
        urgency=Urgency.LOW,
        title="Checkpoint Size Optimization",
        description="Optimize checkpoint sizes for better memory efficiency",
        actions=[
            Action("implement_checkpoint_compression", "Enable compression for memory checkpoints",
                   automated=True, estimated_impact=Impact.MEDIUM, implementation_time="immediate"),
            Action("optimize_checkpoint_frequency", "Adjust checkpoint frequency based on memory patterns",
                   automated=False, estimated_impact=Impact.LOW, implementation_time="15 minutes"),
        ],
        risk_level=RiskLevel.VERY_LOW,
        reversible=True,
        timestamp=now,
    )


def learned_recommendation(pattern: LearnedPattern, now: float) -> Recommendation:
    name = f"{pattern.key.rec_type}_{pattern.key.priority.value}"
    return Recommendation(
        rec_id=_rec_id(f"learned_pattern_{name}", now),
        rec_type="learned_optimization",
        priority=Priority.MEDIUM,
        urgency=Urgency.LOW,
        title=f"Apply Learned Pattern: {name}",
        description=(f"Apply previously successful optimization pattern "
                     f"({pattern.success_rate * 100:.0f}% success over {pattern.attempts} attempts)"),
        actions=list(pattern.actions),
        risk_level=RiskLevel.LOW,
        reversible=True,
        timestamp=now,
    )


# =============================================================================
# PRIORITIZATION
# =============================================================================

def priority_score(rec: Recommendation, context: AnalysisContext) -> float:
    score = PRIORITY_WEIGHTS.get(rec.priority, 0) * URGENCY_MULTIPLIERS.get(rec.urgency, 1.0)
    if context.maintenance_window:
        score *= MAINTENANCE_BOOST
    if context.criticality == "critical":
        score *= CRITICAL_CONTEXT_DISCOUNT
    return score


def impact_score(rec: Recommendation) -> int:
    return sum(IMPACT_SCORES.get(a.estimated_impact, 0) for a in rec.actions)


def risk_score(rec: Recommendation) -> int:
    return RISK_SCORES.get(rec.risk_level, 3)


def prioritize(recommendations: Iterable[Recommendation],
               context: AnalysisContext) -> List[Recommendation]:
    """Score in place and return sorted by priority score, highest first."""
    scored = []
    for rec in recommendations:
        rec.priority_score = priority_score(rec, context)
        rec.impact_score = impact_score(rec)
        rec.risk_score = risk_score(rec)
        scored.append(rec)
    # sorted() is stable, so ties keep generation order
    return sorted(scored, key=lambda r: r.priority_score, reverse=True)
