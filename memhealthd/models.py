"""
Data Model - records exchanged between the sampler, alert manager,
recommendation engine and integration hub.

Features:
- Immutable MetricSample created once per sampling tick
- Leak signals with per-heuristic pattern scores
- Alerts with acknowledgement/resolution bookkeeping
- Recommendations, actions and learned patterns
- Value-typed composite keys (AlertKey, PatternKey)
- Session snapshots, growth phases, checkpoints and analyses
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp).isoformat()


# =============================================================================
# ENUMS
# =============================================================================

class FragmentationLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertType(Enum):
    """Kinds of condition an alert can describe"""
    SYSTEM_MEMORY = "system_memory"
    HEAP_PRESSURE = "heap_pressure"
    MEMORY_FRAGMENTATION = "memory_fragmentation"
    MEMORY_LEAK = "memory_leak"
    SUSTAINED_GROWTH = "sustained_growth"
    STAIRCASE_PATTERN = "staircase_pattern"
    GC_INEFFICIENCY = "gc_inefficiency"


class AlertLevel(Enum):
    """Alert severity tiers, lowest first"""
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class TrendDirection(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Urgency(Enum):
    LOW = "low"
    MODERATE = "moderate"
    URGENT = "urgent"
    IMMEDIATE = "immediate"


class RiskLevel(Enum):
    VERY_LOW = "very low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very high"


class Impact(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HealthStatus(Enum):
    """Label bands for the aggregate health score"""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


class GrowthClass(Enum):
    """Classification of one growth phase of a session"""
    STABLE = "stable"
    NORMAL = "normal"
    CONCERNING = "concerning"
    CRITICAL = "critical"
    SHRINKING = "shrinking"


class SessionStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


# =============================================================================
# SAMPLING
# =============================================================================

@dataclass(frozen=True)
class RawCounters:
    """Counters as reported by a RuntimeControl, before any derivation"""
    rss: int
    heap_total: int
    heap_used: int
    external: int
    system_total: int
    system_free: int
    system_available: Optional[int] = None
    gc_bytes_reclaimed: int = 0
    gc_duration_ms: float = 0.0


@dataclass(frozen=True)
class ProcessMetrics:
    rss: int
    heap_total: int
    heap_used: int
    external: int
    heap_utilization: float
    rss_utilization: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rss': self.rss,
            'heap_total': self.heap_total,
            'heap_used': self.heap_used,
            'external': self.external,
            'heap_utilization': round(self.heap_utilization, 4),
            'rss_utilization': round(self.rss_utilization, 4),
        }


@dataclass(frozen=True)
class SystemMetrics:
    total: int
    free: int
    used: int
    utilization: float
    available: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'free': self.free,
            'used': self.used,
            'utilization': round(self.utilization, 4),
            'available': self.available,
        }


@dataclass(frozen=True)
class GCMetrics:
    bytes_reclaimed: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {'bytes_reclaimed': self.bytes_reclaimed, 'duration_ms': self.duration_ms}


@dataclass(frozen=True)
class Fragmentation:
    heap: float
    rss: float
    score: float
    level: FragmentationLevel

    def to_dict(self) -> Dict[str, Any]:
        return {
            'heap': round(self.heap, 4),
            'rss': round(self.rss, 4),
            'score': round(self.score, 4),
            'level': self.level.value,
        }


@dataclass(frozen=True)
class MetricSample:
    """One sampling tick. Never mutated after creation."""
    timestamp: float
    session_id: str
    process: ProcessMetrics
    system: SystemMetrics
    gc: GCMetrics
    fragmentation: Fragmentation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'timestamp_iso': _iso(self.timestamp),
            'session_id': self.session_id,
            'process': self.process.to_dict(),
            'system': self.system.to_dict(),
            'gc': self.gc.to_dict(),
            'fragmentation': self.fragmentation.to_dict(),
        }


@dataclass
class SessionRecord:
    """Per-session memory bookkeeping, owned by the sampler"""
    session_id: str
    start_time: float
    initial_memory: int
    peak_memory: int
    sample_count: int = 0
    total_growth_ratio: float = 0.0
    last_seen: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'start_time': self.start_time,
            'start_time_iso': _iso(self.start_time),
            'initial_memory': self.initial_memory,
            'peak_memory': self.peak_memory,
            'sample_count': self.sample_count,
            'total_growth_ratio': round(self.total_growth_ratio, 4),
            'last_seen': self.last_seen,
        }


@dataclass(frozen=True)
class Trend:
    direction: TrendDirection
    rate: float = 0.0
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'direction': self.direction.value,
            'rate': round(self.rate, 6),
            'confidence': round(self.confidence, 4),
        }


@dataclass(frozen=True)
class SampleAnalysis:
    """Growth of one sample relative to the previous one, plus the trend"""
    timestamp: float
    rss_growth: float
    heap_growth: float
    time_delta: float
    trend: Trend

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'rss_growth': round(self.rss_growth, 6),
            'heap_growth': round(self.heap_growth, 6),
            'time_delta': self.time_delta,
            'trend': self.trend.to_dict(),
        }


@dataclass(frozen=True)
class PatternScore:
    detected: bool
    score: float
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'detected': self.detected, 'score': round(self.score, 4), 'details': self.details}


@dataclass(frozen=True)
class LeakSignal:
    """Result of one leak detection cycle over the detection window"""
    timestamp: float
    sustained: PatternScore
    staircase: PatternScore
    gc_inefficiency: PatternScore
    overall_score: float

    @property
    def detected_patterns(self) -> List[str]:
        names = []
        if self.sustained.detected:
            names.append('sustained_growth')
        if self.staircase.detected:
            names.append('staircase')
        if self.gc_inefficiency.detected:
            names.append('gc_inefficiency')
        return names

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'timestamp_iso': _iso(self.timestamp),
            'sustained_growth': self.sustained.to_dict(),
            'staircase': self.staircase.to_dict(),
            'gc_inefficiency': self.gc_inefficiency.to_dict(),
            'overall_score': round(self.overall_score, 4),
        }


@dataclass(frozen=True)
class ThresholdCrossing:
    """Highest tier a metric exceeds in one tick"""
    alert_type: AlertType
    level: AlertLevel
    value: float
    threshold: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.alert_type.value,
            'level': self.level.value,
            'value': round(self.value, 4),
            'threshold': self.threshold,
            'timestamp': self.timestamp,
        }


# =============================================================================
# ALERTS
# =============================================================================

class AlertKey(NamedTuple):
    alert_type: AlertType
    level: AlertLevel


@dataclass
class Alert:
    """A fired alert and its lifecycle state"""
    alert_type: AlertType
    level: AlertLevel
    message: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)
    actions: List[str] = field(default_factory=list)
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[float] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[float] = None
    resolution: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.alert_type.value}_{self.level.value}_{int(self.timestamp * 1000)}"

    @property
    def key(self) -> AlertKey:
        return AlertKey(self.alert_type, self.level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.alert_type.value,
            'level': self.level.value,
            'message': self.message,
            'timestamp': self.timestamp,
            'timestamp_iso': _iso(self.timestamp),
            'data': self.data,
            'actions': list(self.actions),
            'acknowledged': self.acknowledged,
            'acknowledged_by': self.acknowledged_by,
            'acknowledged_at': _iso(self.acknowledged_at),
            'resolved': self.resolved,
            'resolved_by': self.resolved_by,
            'resolved_at': _iso(self.resolved_at),
            'resolution': self.resolution,
        }


@dataclass(frozen=True)
class ShutdownSignal:
    """Published before an emergency shutdown; the host may intercept it"""
    alert_id: str
    state_file: Optional[str]
    grace_period: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'alert_id': self.alert_id,
            'state_file': self.state_file,
            'grace_period': self.grace_period,
            'timestamp': self.timestamp,
        }


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

@dataclass
class Action:
    action_type: str
    description: str
    automated: bool = False
    estimated_impact: Impact = Impact.NONE
    implementation_time: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.action_type,
            'description': self.description,
            'automated': self.automated,
            'estimated_impact': self.estimated_impact.value,
            'implementation_time': self.implementation_time,
        }


@dataclass
class Recommendation:
    rec_id: str
    rec_type: str
    priority: Priority
    urgency: Urgency
    title: str
    description: str
    actions: List[Action] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    reversible: bool = True
    timestamp: float = field(default_factory=time.time)
    # Derived at prioritization time
    priority_score: float = 0.0
    impact_score: float = 0.0
    risk_score: float = 0.0

    @property
    def has_automated_action(self) -> bool:
        return any(a.automated for a in self.actions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.rec_id,
            'type': self.rec_type,
            'priority': self.priority.value,
            'urgency': self.urgency.value,
            'title': self.title,
            'description': self.description,
            'actions': [a.to_dict() for a in self.actions],
            'risk_level': self.risk_level.value,
            'reversible': self.reversible,
            'timestamp': self.timestamp,
            'priority_score': round(self.priority_score, 2),
            'impact_score': self.impact_score,
            'risk_score': self.risk_score,
        }


@dataclass
class ActionOutcome:
    action_type: str
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.action_type,
            'success': self.success,
            'result': self.result,
            'error': self.error,
        }


@dataclass
class ImplementationResult:
    """Outcome of auto-applying one recommendation"""
    recommendation: Recommendation
    timestamp: float
    executed: List[ActionOutcome] = field(default_factory=list)
    errors: List[ActionOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.executed) > 0 and len(self.errors) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'recommendation_id': self.recommendation.rec_id,
            'type': self.recommendation.rec_type,
            'priority': self.recommendation.priority.value,
            'timestamp': self.timestamp,
            'timestamp_iso': _iso(self.timestamp),
            'success': self.success,
            'executed_actions': [o.to_dict() for o in self.executed],
            'errors': [o.to_dict() for o in self.errors],
        }


class PatternKey(NamedTuple):
    rec_type: str
    priority: Priority


@dataclass
class LearnedPattern:
    key: PatternKey
    attempts: int = 0
    successes: int = 0
    success_rate: float = 0.0
    confidence: float = 0.0
    actions: List[Action] = field(default_factory=list)
    last_used: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.key.rec_type,
            'priority': self.key.priority.value,
            'attempts': self.attempts,
            'successes': self.successes,
            'success_rate': round(self.success_rate, 4),
            'confidence': round(self.confidence, 4),
            'actions': [a.to_dict() for a in self.actions],
            'last_used': self.last_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LearnedPattern':
        actions = [
            Action(
                action_type=a['type'],
                description=a.get('description', ''),
                automated=a.get('automated', False),
                estimated_impact=Impact(a.get('estimated_impact', 'none')),
                implementation_time=a.get('implementation_time', 'unknown'),
            )
            for a in data.get('actions', [])
        ]
        return cls(
            key=PatternKey(data['type'], Priority(data['priority'])),
            attempts=int(data.get('attempts', 0)),
            successes=int(data.get('successes', 0)),
            success_rate=float(data.get('success_rate', 0.0)),
            confidence=float(data.get('confidence', 0.0)),
            actions=actions,
            last_used=float(data.get('last_used', 0.0)),
        )


# =============================================================================
# SESSION ANALYSIS
# =============================================================================

@dataclass(frozen=True)
class SessionSnapshot:
    """One sample as seen by the session analyzer"""
    timestamp: float
    rss: int
    heap_used: int
    heap_utilization: float
    system_utilization: float
    fragmentation: float
    efficiency: float
    rss_growth: Optional[float] = None
    phase: Optional[GrowthClass] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'rss': self.rss,
            'heap_used': self.heap_used,
            'heap_utilization': round(self.heap_utilization, 6),
            'system_utilization': round(self.system_utilization, 6),
            'fragmentation': round(self.fragmentation, 6),
            'efficiency': round(self.efficiency, 6),
            'rss_growth': None if self.rss_growth is None else round(self.rss_growth, 6),
            'phase': self.phase.value if self.phase else None,
        }


@dataclass
class GrowthPhase:
    """A run of samples growing at roughly the same rate"""
    start_time: float
    rate: float
    growth_class: GrowthClass
    start_memory: int
    duration: float = 0.0
    memory_delta: int = 0

    @property
    def is_problematic(self) -> bool:
        return self.growth_class in (GrowthClass.CONCERNING, GrowthClass.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'start_time': self.start_time,
            'rate': round(self.rate, 6),
            'class': self.growth_class.value,
            'start_memory': self.start_memory,
            'duration': self.duration,
            'memory_delta': self.memory_delta,
        }


@dataclass(frozen=True)
class SessionCheckpoint:
    checkpoint_id: str
    session_id: str
    timestamp: float
    reason: str
    memory_state: Optional[Dict[str, Any]]
    total_growth: float
    peak_memory: int
    phase_count: int
    session_duration: float
    snapshot_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.checkpoint_id,
            'session_id': self.session_id,
            'timestamp': self.timestamp,
            'timestamp_iso': _iso(self.timestamp),
            'reason': self.reason,
            'memory_state': self.memory_state,
            'growth_analysis': {
                'total_growth': round(self.total_growth, 6),
                'peak_memory': self.peak_memory,
                'phase_count': self.phase_count,
            },
            'session_duration': self.session_duration,
            'snapshot_count': self.snapshot_count,
        }


@dataclass
class SessionAnalysis:
    """
    Whole-session report: memory, growth and fragmentation patterns, advisory
    recommendations and a health score in [0, 1].
    """
    session_id: str
    timestamp: float
    start_time: float
    duration: float
    snapshot_count: int
    memory: Dict[str, Any]
    growth: Dict[str, Any]
    fragmentation: Dict[str, Any]
    recommendations: List[Dict[str, Any]]
    health_score: float

    def as_record(self) -> SessionRecord:
        """The SessionRecord the recommendation engine consumes."""
        return SessionRecord(
            session_id=self.session_id,
            start_time=self.start_time,
            initial_memory=self.memory.get('initial', 0),
            peak_memory=self.memory.get('peak', 0),
            sample_count=self.snapshot_count,
            total_growth_ratio=self.growth.get('total_growth', 0.0),
            last_seen=self.start_time + self.duration,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'timestamp': self.timestamp,
            'timestamp_iso': _iso(self.timestamp),
            'start_time': self.start_time,
            'duration': self.duration,
            'snapshot_count': self.snapshot_count,
            'memory_patterns': self.memory,
            'growth_patterns': self.growth,
            'fragmentation_patterns': self.fragmentation,
            'recommendations': self.recommendations,
            'health_score': round(self.health_score, 4),
        }
