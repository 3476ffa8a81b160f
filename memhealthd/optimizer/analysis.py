"""
Memory state analysis feeding the recommendation builders.

Six independent dimensions are computed from one sample plus the optional
session record and leak signal: memory pressure, fragmentation, leaks,
performance, session growth and context.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..models import (
    LeakSignal,
    MetricSample,
    Priority,
    SessionRecord,
    Urgency,
)


class PressureLevel(Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class ImpactLevel(Enum):
    NONE = "none"
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"


PRESSURE_ADVICE = {
    PressureLevel.CRITICAL: "Immediate action required - clear caches, force GC, consider scaling",
    PressureLevel.HIGH: "Action recommended - optimize memory usage, monitor closely",
    PressureLevel.MODERATE: "Monitor situation - consider preventive optimizations",
    PressureLevel.LOW: "System running normally",
}


@dataclass
class MemoryPressure:
    level: PressureLevel
    system_utilization: float
    heap_utilization: float
    available: int
    pressure_score: float

    @property
    def advice(self) -> str:
        return PRESSURE_ADVICE[self.level]


@dataclass
class FragmentationAnalysis:
    score: float
    level: str
    needs_optimization: bool
    heap: float
    rss: float
    urgency: Urgency

    @property
    def priority(self) -> Priority:
        return Priority.HIGH if self.urgency == Urgency.URGENT else Priority.MEDIUM


@dataclass
class LeakAnalysis:
    detected: bool = False
    score: float = 0.0
    sustained: bool = False
    staircase: bool = False
    gc_inefficiency: bool = False
    severity: Priority = Priority.LOW
    urgency: Urgency = Urgency.MODERATE


@dataclass
class PerformanceAnalysis:
    degraded: bool
    degradation: float
    current_efficiency: float
    baseline_efficiency: float
    impact: ImpactLevel


@dataclass
class SessionGrowth:
    session_id: Optional[str] = None
    growth_ratio: float = 0.0
    needs_optimization: bool = False


@dataclass
class AnalysisContext:
    maintenance_window: bool = False
    criticality: str = "normal"


@dataclass
class Analysis:
    timestamp: float
    memory_pressure: MemoryPressure
    fragmentation: FragmentationAnalysis
    leaks: LeakAnalysis
    performance: PerformanceAnalysis
    session: SessionGrowth
    context: AnalysisContext = field(default_factory=AnalysisContext)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'memory_pressure': {
                'level': self.memory_pressure.level.value,
                'system_utilization': self.memory_pressure.system_utilization,
                'heap_utilization': self.memory_pressure.heap_utilization,
                'pressure_score': self.memory_pressure.pressure_score,
                'recommendation': self.memory_pressure.advice,
            },
            'fragmentation': {
                'score': self.fragmentation.score,
                'level': self.fragmentation.level,
                'needs_optimization': self.fragmentation.needs_optimization,
                'urgency': self.fragmentation.urgency.value,
            },
            'leaks': {
                'detected': self.leaks.detected,
                'score': self.leaks.score,
                'severity': self.leaks.severity.value,
                'urgency': self.leaks.urgency.value,
            },
            'performance': {
                'degraded': self.performance.degraded,
                'degradation': self.performance.degradation,
                'current_efficiency': self.performance.current_efficiency,
                'baseline_efficiency': self.performance.baseline_efficiency,
                'impact': self.performance.impact.value,
            },
            'session': {
                'session_id': self.session.session_id,
                'growth_ratio': self.session.growth_ratio,
            },
            'context': {
                'maintenance_window': self.context.maintenance_window,
                'criticality': self.context.criticality,
            },
        }


def analyze_memory_pressure(sample: MetricSample) -> MemoryPressure:
    system = sample.system.utilization
    heap = sample.process.heap_utilization

    if system > 0.9:
        level = PressureLevel.CRITICAL
    elif system > 0.8:
        level = PressureLevel.HIGH
    elif system > 0.6:
        level = PressureLevel.MODERATE
    else:
        level = PressureLevel.LOW

    return MemoryPressure(
        level=level,
        system_utilization=system,
        heap_utilization=heap,
        available=sample.system.available,
        pressure_score=max(system, heap),
    )


def analyze_fragmentation(sample: MetricSample, threshold: float) -> FragmentationAnalysis:
    score = sample.fragmentation.score
    if score > 0.6:
        urgency = Urgency.URGENT
    elif score > 0.3:
        urgency = Urgency.MODERATE
    else:
        urgency = Urgency.LOW

    return FragmentationAnalysis(
        score=score,
        level=sample.fragmentation.level.value,
        needs_optimization=score > threshold,
        heap=sample.fragmentation.heap,
        rss=sample.fragmentation.rss,
        urgency=urgency,
    )


def analyze_leaks(signal: Optional[LeakSignal], threshold: float) -> LeakAnalysis:
    if signal is None:
        return LeakAnalysis()

    score = signal.overall_score
    if score > 0.8:
        severity = Priority.CRITICAL
    elif score > 0.6:
        severity = Priority.HIGH
    elif score > 0.4:
        severity = Priority.MEDIUM
    else:
        severity = Priority.LOW

    if score > 0.7:
        urgency = Urgency.IMMEDIATE
    elif score > 0.5:
        urgency = Urgency.URGENT
    else:
        urgency = Urgency.MODERATE

    return LeakAnalysis(
        detected=score > threshold,
        score=score,
        sustained=signal.sustained.detected,
        staircase=signal.staircase.detected,
        gc_inefficiency=signal.gc_inefficiency.detected,
        severity=severity,
        urgency=urgency,
    )


def analyze_performance(sample: MetricSample, baseline: float, threshold: float) -> PerformanceAnalysis:
    current = 1 - max(
        sample.system.utilization,
        sample.process.heap_utilization,
        sample.fragmentation.score,
    )
    degradation = max(0.0, baseline - current)

    if degradation > 0.4:
        impact = ImpactLevel.SEVERE
    elif degradation > 0.2:
        impact = ImpactLevel.MODERATE
    elif degradation > 0.1:
        impact = ImpactLevel.MINOR
    else:
        impact = ImpactLevel.NONE

    return PerformanceAnalysis(
        degraded=degradation > threshold,
        degradation=degradation,
        current_efficiency=current,
        baseline_efficiency=baseline,
        impact=impact,
    )


def analyze_session(session: Optional[SessionRecord], threshold: float) -> SessionGrowth:
    if session is None:
        return SessionGrowth()
    return SessionGrowth(
        session_id=session.session_id,
        growth_ratio=session.total_growth_ratio,
        needs_optimization=session.total_growth_ratio > threshold,
    )


def is_maintenance_window(timestamp: float, window: Tuple[int, int]) -> bool:
    start, end = window
    return start <= datetime.fromtimestamp(timestamp).hour < end


def analyze(
    sample: MetricSample,
    session: Optional[SessionRecord],
    leak_signal: Optional[LeakSignal],
    config,
    baseline_efficiency: float,
    now: float,
) -> Analysis:
    """Build the full Analysis. ``config`` is an OptimizerConfig."""
    return Analysis(
        timestamp=now,
        memory_pressure=analyze_memory_pressure(sample),
        fragmentation=analyze_fragmentation(sample, config.fragmentation_threshold),
        leaks=analyze_leaks(leak_signal, config.leak_threshold),
        performance=analyze_performance(sample, baseline_efficiency, config.performance_threshold),
        session=analyze_session(session, config.session_growth_threshold),
        context=AnalysisContext(
            maintenance_window=is_maintenance_window(now, tuple(config.maintenance_window)),
            criticality=config.context_criticality,
        ),
    )
