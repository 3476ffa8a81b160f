"""
Session Analyzer - memory behaviour over the lifetime of each session.

The sampler keeps one SessionRecord per session for the recommendation
engine. The analyzer keeps the snapshots behind it and turns them into
growth phases, a per-session health score and a whole-session report.

Features:
- Session registration with host metadata (implicit on the first sample)
- Growth phases classified as stable, normal, concerning, critical or
  shrinking
- Per-session health score and advisory recommendations
- Checkpoints written under sessions/checkpoints/
- Sessions idle past the timeout are analyzed and marked inactive
- Cross-session patterns once two or more sessions are inactive
- Per-session JSON and CSV export
- Retention cleanup of inactive sessions

Usage:
    analyzer = SessionAnalyzer(config.sessions, scheduler, persistence)
    analyzer.analyses.subscribe(on_analysis)
    sampler.samples.subscribe(analyzer.add_sample)
"""

import csv
import logging
import math
import os
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .channels import Channel
from .config import SessionConfig
from .constants import Paths, SessionThresholds
from .models import (
    GrowthClass,
    GrowthPhase,
    MetricSample,
    SessionAnalysis,
    SessionCheckpoint,
    SessionSnapshot,
    SessionStatus,
)
from .scheduler import Scheduler
from .storage import Persistence

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60


# =============================================================================
# STATISTICS
# =============================================================================

def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def variance(values: List[float]) -> float:
    """Population variance."""
    if not values:
        return 0.0
    mean = _mean(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def stability(values: List[float]) -> float:
    """1 minus the coefficient of variation, floored at 0."""
    mean = _mean(values)
    if mean == 0:
        return 1.0
    return max(0.0, 1.0 - math.sqrt(variance(values)) / abs(mean))


def linear_trend(values: List[float]) -> Dict[str, Any]:
    """Least-squares slope over the index, with strength relative to the mean."""
    n = len(values)
    if n < 2:
        return {'direction': 'unknown', 'strength': 0.0, 'slope': 0.0}

    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_xx = n * (n - 1) * (2 * n - 1) / 6
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)

    if slope > 0:
        direction = 'increasing'
    elif slope < 0:
        direction = 'decreasing'
    else:
        direction = 'stable'
    mean = sum_y / n
    strength = abs(slope) / abs(mean) if mean else 0.0
    return {'direction': direction, 'strength': round(strength, 6), 'slope': slope}


def correlation(xs: List[float], ys: List[float]) -> Dict[str, Any]:
    """Pearson correlation with a coarse strength label."""
    if len(xs) != len(ys) or len(xs) < 2:
        return {'insufficient_data': True}

    n = len(xs)
    sum_x, sum_y = sum(xs), sum(ys)
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_xx = sum(x * x for x in xs)
    sum_yy = sum(y * y for y in ys)

    denominator = math.sqrt(max(0.0, (n * sum_xx - sum_x ** 2) * (n * sum_yy - sum_y ** 2)))
    if denominator == 0:
        return {'correlation': 0.0, 'strength': 'none'}

    r = (n * sum_xy - sum_x * sum_y) / denominator
    if abs(r) > 0.8:
        strength = 'strong'
    elif abs(r) > 0.5:
        strength = 'moderate'
    elif abs(r) > 0.3:
        strength = 'weak'
    else:
        strength = 'none'
    return {'correlation': round(r, 6), 'strength': strength}


# =============================================================================
# CLASSIFICATION
# =============================================================================

def classify_growth(rate: float, config: Optional[SessionConfig] = None) -> GrowthClass:
    """Classify a per-sample RSS growth rate."""
    config = config or SessionConfig()
    if rate > config.critical_growth:
        return GrowthClass.CRITICAL
    if rate > config.concerning_growth:
        return GrowthClass.CONCERNING
    if rate > config.normal_growth:
        return GrowthClass.NORMAL
    if rate < SessionThresholds.SHRINKING:
        return GrowthClass.SHRINKING
    return GrowthClass.STABLE


def memory_efficiency(sample: MetricSample) -> float:
    """Mean headroom of heap and system, less fragmentation, floored at 0."""
    headroom = ((1 - sample.process.heap_utilization) + (1 - sample.system.utilization)) / 2
    return max(0.0, headroom - sample.fragmentation.score)


# =============================================================================
# SESSION STATE
# =============================================================================

@dataclass
class SessionState:
    """Everything the analyzer tracks for one session"""
    session_id: str
    start_time: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE
    snapshots: List[SessionSnapshot] = field(default_factory=list)
    phases: List[GrowthPhase] = field(default_factory=list)
    checkpoints: List[SessionCheckpoint] = field(default_factory=list)
    total_growth: float = 0.0
    peak_memory: int = 0
    avg_growth_rate: float = 0.0
    initial_memory: int = 0
    growth_samples: int = 0

    @property
    def last_activity(self) -> float:
        return self.snapshots[-1].timestamp if self.snapshots else self.start_time

    @property
    def problematic_phases(self) -> int:
        return len([p for p in self.phases if p.is_problematic])

    @property
    def average_fragmentation(self) -> float:
        return _mean([s.fragmentation for s in self.snapshots])

    @property
    def average_efficiency(self) -> float:
        return _mean([s.efficiency for s in self.snapshots])


# =============================================================================
# ANALYZER
# =============================================================================

class SessionAnalyzer:
    """
    Per-session growth analysis fed by the sampler's samples.

    Subscribe to ``analyses`` for every completed SessionAnalysis,
    ``completions`` for sessions that went inactive, and ``cross_session``
    for each cross-session pattern report.
    """

    CSV_HEADERS = [
        'timestamp', 'rss', 'heap_used', 'heap_utilization', 'fragmentation',
        'efficiency', 'growth_rate', 'growth_phase',
    ]

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        scheduler: Optional[Scheduler] = None,
        persistence: Optional[Persistence] = None,
    ):
        if scheduler is None:
            raise ValueError("SessionAnalyzer needs a scheduler")

        self.config = config or SessionConfig()
        self.scheduler = scheduler
        self.persistence = persistence

        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionState] = {}
        self._analyses: deque = deque(maxlen=self.config.analyses_kept)
        self._cross_session: deque = deque(maxlen=self.config.analyses_kept)

        self.analyses: Channel[SessionAnalysis] = Channel("session_analyses")
        self.completions: Channel[str] = Channel("session_completions")
        self.cross_session: Channel[Dict[str, Any]] = Channel("cross_session_patterns")

    # -------------------------------------------------------------------------
    # Registration and samples
    # -------------------------------------------------------------------------

    def register_session(self, session_id: str, metadata: Optional[Dict[str, Any]] = None) -> SessionState:
        """Start tracking a session. Re-registering keeps its data and merges metadata."""
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                state = SessionState(session_id=session_id, start_time=self.scheduler.now(),
                                     metadata=dict(metadata or {}))
                self._sessions[session_id] = state
                logger.info(f"Session registered for memory analysis: {session_id}")
            elif metadata:
                state.metadata.update(metadata)
            return state

    def add_sample(self, sample: MetricSample) -> SessionSnapshot:
        state = self._sessions.get(sample.session_id) \
            or self.register_session(sample.session_id, {'registered_by': 'sample'})
        with self._lock:
            return self._record(state, sample)

    def _record(self, state: SessionState, sample: MetricSample) -> SessionSnapshot:
        rss = sample.process.rss
        previous = state.snapshots[-1] if state.snapshots else None

        rss_growth = None
        if previous is not None and previous.rss > 0:
            rss_growth = (rss - previous.rss) / previous.rss

        if not state.snapshots:
            state.initial_memory = rss
        state.peak_memory = max(state.peak_memory, rss)
        if state.initial_memory > 0:
            state.total_growth = (rss - state.initial_memory) / state.initial_memory
        if rss_growth is not None:
            state.growth_samples += 1
            state.avg_growth_rate += (rss_growth - state.avg_growth_rate) / state.growth_samples

        phase = None
        if rss_growth is not None and len(state.snapshots) >= 2:
            phase = self._track_phase(state, rss_growth, sample.timestamp, rss)

        snapshot = SessionSnapshot(
            timestamp=sample.timestamp,
            rss=rss,
            heap_used=sample.process.heap_used,
            heap_utilization=sample.process.heap_utilization,
            system_utilization=sample.system.utilization,
            fragmentation=sample.fragmentation.score,
            efficiency=memory_efficiency(sample),
            rss_growth=rss_growth,
            phase=phase,
        )
        state.snapshots.append(snapshot)
        if state.status == SessionStatus.INACTIVE:
            state.status = SessionStatus.ACTIVE
            logger.info(f"Session {state.session_id} active again")

        if len(state.snapshots) > self.config.max_snapshots:
            state.snapshots = state.snapshots[-self.config.keep_snapshots:]
        return snapshot

    def _track_phase(self, state: SessionState, rate: float, timestamp: float, rss: int) -> GrowthClass:
        current = state.phases[-1] if state.phases else None
        if current is None or abs(rate - current.rate) > SessionThresholds.PHASE_CHANGE:
            if current is not None:
                current.duration = timestamp - current.start_time
                current.memory_delta = rss - current.start_memory
            current = GrowthPhase(
                start_time=timestamp,
                rate=rate,
                growth_class=classify_growth(rate, self.config),
                start_memory=rss,
            )
            state.phases.append(current)
            if current.is_problematic:
                logger.warning(
                    f"Session {state.session_id} entered a {current.growth_class.value} "
                    f"growth phase ({rate * 100:.1f}% per sample)"
                )
        return current.growth_class

    # -------------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------------

    def create_checkpoint(self, session_id: str, reason: str = "manual") -> SessionCheckpoint:
        now = self.scheduler.now()
        with self._lock:
            state = self._get(session_id)
            latest = state.snapshots[-1] if state.snapshots else None
            checkpoint = SessionCheckpoint(
                checkpoint_id=f"checkpoint_{_safe_name(session_id)}_{int(now * 1000)}",
                session_id=session_id,
                timestamp=now,
                reason=reason,
                memory_state=latest.to_dict() if latest else None,
                total_growth=state.total_growth,
                peak_memory=state.peak_memory,
                phase_count=len(state.phases),
                session_duration=now - state.start_time,
                snapshot_count=len(state.snapshots),
            )
            state.checkpoints.append(checkpoint)

        if self.persistence is not None:
            self.persistence.write_json(
                os.path.join(Paths.SESSIONS, 'checkpoints', f"{checkpoint.checkpoint_id}.json"),
                checkpoint.to_dict(),
            )
        logger.info(f"Checkpoint {checkpoint.checkpoint_id} created ({reason})")
        return checkpoint

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def analyze_session(self, session_id: str) -> SessionAnalysis:
        """Build the whole-session report, keep it, persist it and publish it."""
        with self._lock:
            analysis = self._analyze(self._get(session_id))
            self._analyses.append(analysis)

        if self.persistence is not None:
            filename = f"session_analysis_{_safe_name(session_id)}_{int(analysis.timestamp * 1000)}.json"
            self.persistence.write_json(os.path.join(Paths.SESSIONS, filename), analysis.to_dict())

        logger.info(f"Session {session_id} analyzed: health {analysis.health_score:.2f}, "
                    f"{len(analysis.recommendations)} recommendation(s)")
        self.analyses.publish(analysis)
        return analysis

    def _analyze(self, state: SessionState) -> SessionAnalysis:
        return SessionAnalysis(
            session_id=state.session_id,
            timestamp=self.scheduler.now(),
            start_time=state.start_time,
            duration=state.last_activity - state.start_time,
            snapshot_count=len(state.snapshots),
            memory=self._memory_patterns(state),
            growth=self._growth_patterns(state),
            fragmentation=self._fragmentation_patterns(state),
            recommendations=self._recommendations(state),
            health_score=self.health_score(state),
        )

    def _memory_patterns(self, state: SessionState) -> Dict[str, Any]:
        values = [s.rss for s in state.snapshots]
        if not values:
            return {'no_data': True, 'initial': state.initial_memory, 'peak': state.peak_memory}
        return {
            'initial': state.initial_memory,
            'final': values[-1],
            'peak': state.peak_memory,
            'min': min(values),
            'average': _mean(values),
            'variance': variance(values),
            'trend': linear_trend(values),
            'stability': round(stability(values), 6),
        }

    def _growth_patterns(self, state: SessionState) -> Dict[str, Any]:
        phases = state.phases
        counts = {c.value: 0 for c in GrowthClass}
        for phase in phases:
            counts[phase.growth_class.value] += 1

        longest = max(phases, key=lambda p: p.duration) if phases else None
        worst = next((p for p in phases if p.growth_class == GrowthClass.CRITICAL), None) \
            or next((p for p in phases if p.growth_class == GrowthClass.CONCERNING), None)
        return {
            'total_growth': state.total_growth,
            'avg_growth_rate': state.avg_growth_rate,
            'peak_memory': state.peak_memory,
            'phase_count': len(phases),
            'phases': counts,
            'longest_phase': longest.to_dict() if longest else None,
            'most_problematic_phase': worst.to_dict() if worst else None,
        }

    def _fragmentation_patterns(self, state: SessionState) -> Dict[str, Any]:
        scores = [s.fragmentation for s in state.snapshots if s.fragmentation > 0]
        if not scores:
            return {'no_data': True}
        return {
            'average': _mean(scores),
            'peak': max(scores),
            'trend': linear_trend(scores),
            'high_periods': len([s for s in scores if s > self.config.fragmentation_threshold]),
            'stability': round(stability(scores), 6),
        }

    def _recommendations(self, state: SessionState) -> List[Dict[str, Any]]:
        recommendations = []

        if state.total_growth > self.config.critical_growth:
            recommendations.append({
                'type': 'critical_growth',
                'priority': 'high',
                'message': 'Session shows critical memory growth - investigate memory leaks',
                'action': 'Review code for unreleased resources and add explicit cleanup',
            })
        elif state.total_growth > self.config.concerning_growth:
            recommendations.append({
                'type': 'concerning_growth',
                'priority': 'medium',
                'message': 'Session shows a concerning memory growth pattern',
                'action': 'Monitor closely and consider memory optimization',
            })

        if state.problematic_phases > len(state.phases) * 0.5:
            recommendations.append({
                'type': 'unstable_memory',
                'priority': 'high',
                'message': 'Session shows unstable memory behaviour with multiple problematic phases',
                'action': 'Monitor memory per task and consider splitting the session',
            })

        if state.average_fragmentation > self.config.fragmentation_threshold:
            recommendations.append({
                'type': 'high_fragmentation',
                'priority': 'medium',
                'message': 'Session shows high memory fragmentation',
                'action': 'Consider collector tuning and object pooling',
            })

        return recommendations

    def health_score(self, state: SessionState) -> float:
        """
        1.0 minus a tiered penalty for total growth, 0.3 x the share of
        problematic phases and 0.2 x the mean fragmentation, clamped to [0, 1].
        """
        score = 1.0
        if state.total_growth > self.config.critical_growth:
            score -= 0.4
        elif state.total_growth > self.config.concerning_growth:
            score -= 0.2
        elif state.total_growth > self.config.normal_growth:
            score -= 0.1

        score -= state.problematic_phases / max(1, len(state.phases)) * 0.3
        score -= state.average_fragmentation * 0.2
        return max(0.0, min(1.0, score))

    # -------------------------------------------------------------------------
    # Periodic work
    # -------------------------------------------------------------------------

    def periodic_analysis(self) -> List[SessionAnalysis]:
        """Analyze sessions idle past the timeout, then look across sessions."""
        now = self.scheduler.now()
        with self._lock:
            expired = [
                s.session_id for s in self._sessions.values()
                if s.status == SessionStatus.ACTIVE and now - s.last_activity > self.config.inactive_after
            ]
            for session_id in expired:
                self._sessions[session_id].status = SessionStatus.INACTIVE

        analyses = []
        for session_id in expired:
            logger.info(f"Session {session_id} inactive for {self.config.inactive_after:.0f}s")
            analyses.append(self.analyze_session(session_id))
            self.completions.publish(session_id)

        self.analyze_cross_session_patterns()
        return analyses

    def analyze_cross_session_patterns(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            completed = [s for s in self._sessions.values() if s.status == SessionStatus.INACTIVE]
            if len(completed) < 2:
                return None

            phase_fractions = {
                c.value: len([s for s in completed if any(p.growth_class == c for p in s.phases)]) / len(completed)
                for c in GrowthClass
            }
            efficiencies = [s.average_efficiency for s in completed]
            report = {
                'timestamp': self.scheduler.now(),
                'session_count': len(completed),
                'patterns': {
                    'average_growth': _mean([s.total_growth for s in completed]),
                    'common_growth_patterns': phase_fractions,
                    'duration_correlation': correlation(
                        [s.last_activity - s.start_time for s in completed],
                        [s.total_growth for s in completed],
                    ),
                    'efficiency_trends': {
                        'average': _mean(efficiencies),
                        'trend': linear_trend(efficiencies),
                        'distribution': {
                            'high': len([e for e in efficiencies if e > 0.8]) / len(efficiencies),
                            'medium': len([e for e in efficiencies if 0.5 < e <= 0.8]) / len(efficiencies),
                            'low': len([e for e in efficiencies if e <= 0.5]) / len(efficiencies),
                        },
                    },
                },
            }
            self._cross_session.append(report)

        self.cross_session.publish(report)
        return report

    def cleanup(self, retention_days: float) -> int:
        """Drop inactive sessions started before the retention cutoff."""
        cutoff = self.scheduler.now() - retention_days * DAY
        with self._lock:
            stale = [
                sid for sid, s in self._sessions.items()
                if s.status == SessionStatus.INACTIVE and s.start_time < cutoff
            ]
            for sid in stale:
                del self._sessions[sid]
            kept = [a for a in self._analyses if a.timestamp >= cutoff]
            self._analyses = deque(kept, maxlen=self.config.analyses_kept)

        if stale:
            logger.info(f"Removed {len(stale)} session(s) older than {retention_days} days")
        return len(stale)

    # -------------------------------------------------------------------------
    # Views and export
    # -------------------------------------------------------------------------

    def _get(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise KeyError(f"Session not found: {session_id}")
        return state

    def get_session(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    @property
    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    @property
    def history(self) -> List[SessionAnalysis]:
        with self._lock:
            return list(self._analyses)

    @property
    def cross_session_patterns(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._cross_session)

    def get_session_summary(self, session_id: str) -> Dict[str, Any]:
        with self._lock:
            state = self._get(session_id)
            return {
                'id': state.session_id,
                'status': state.status.value,
                'duration': self.scheduler.now() - state.start_time,
                'snapshot_count': len(state.snapshots),
                'checkpoint_count': len(state.checkpoints),
                'total_growth': state.total_growth,
                'peak_memory': state.peak_memory,
                'health_score': self.health_score(state),
                'last_activity': state.last_activity,
            }

    def export_session(self, session_id: str, fmt: str = "json") -> Dict[str, Any]:
        """Write one session's snapshots (and, as JSON, its analysis) under sessions/exports/."""
        if fmt not in ('json', 'csv'):
            raise ValueError(f"Unsupported export format: {fmt}")
        if self.persistence is None:
            return {'success': False, 'error': 'no storage configured'}

        analysis = self.analyze_session(session_id)
        with self._lock:
            state = self._get(session_id)
            snapshots = list(state.snapshots)
            session = {
                'id': state.session_id,
                'start_time': state.start_time,
                'status': state.status.value,
                'metadata': dict(state.metadata),
                'phases': [p.to_dict() for p in state.phases],
                'checkpoints': [c.to_dict() for c in state.checkpoints],
            }

        filename = f"session-{_safe_name(session_id)}-{int(self.scheduler.now() * 1000)}.{fmt}"
        relative = os.path.join(Paths.SESSIONS, 'exports', filename)

        if fmt == 'json':
            session['snapshots'] = [s.to_dict() for s in snapshots]
            session['analysis'] = analysis.to_dict()
            path = self.persistence.write_json(relative, {
                'session': session,
                'metadata': {
                    'export_time': datetime.now().isoformat(),
                    'format': fmt,
                },
            })
        else:
            path = self.persistence.path(relative)
            rows = [[
                s.timestamp, s.rss, s.heap_used, round(s.heap_utilization, 6),
                round(s.fragmentation, 6), round(s.efficiency, 6),
                '' if s.rss_growth is None else round(s.rss_growth, 6),
                s.phase.value if s.phase else '',
            ] for s in snapshots]

            def write_csv():
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, 'w', newline='') as f:
                    writer = csv.writer(f)
                    writer.writerow(self.CSV_HEADERS)
                    writer.writerows(rows)

            self.persistence.submit(f"export {filename}", write_csv)

        return {'success': True, 'filepath': path, 'size': len(snapshots)}


def _safe_name(session_id: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]', '_', session_id)
