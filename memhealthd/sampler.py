"""
Memory Sampler - periodic metric collection and leak detection.

Features:
- Fixed-cadence sampling through the Scheduler
- Fragmentation scoring on every sample
- Bounded sample history and per-session memory records
- Sustained growth, staircase and GC inefficiency leak heuristics
- Highest-tier threshold crossings for system memory, heap and fragmentation
- Growth/trend analysis, metric export (JSON/CSV) and a status summary

Each tick runs, in order: collect counters, compute fragmentation, append to
history, update the session record, compute growth against the previous
sample, run leak detection once the window is full, evaluate thresholds and
finally publish the sample.
"""

import csv
import logging
import os
import threading
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from .channels import Channel
from .config import SamplerConfig
from .constants import Limits
from .detection import (
    build_sample,
    compute_trend,
    detect_leaks,
    evaluate_thresholds,
    growth_between,
)
from .exceptions import CollectionError
from .models import (
    AlertType,
    FragmentationLevel,
    LeakSignal,
    MetricSample,
    SampleAnalysis,
    SessionRecord,
    ThresholdCrossing,
    TrendDirection,
)
from .runtime import RuntimeControl
from .scheduler import Scheduler, TaskHandle
from .storage import LEAK_LOG, Persistence
from .utils.error_handling import ErrorCategory, handle_error

logger = logging.getLogger(__name__)

SAMPLE_TASK = "memory-sample"


class MemorySampler:
    """
    Owns the sample history and the session map.

    Consumers subscribe to the channels below; nothing else mutates the
    sampler's collections.
    """

    def __init__(
        self,
        config: Optional[SamplerConfig] = None,
        runtime: Optional[RuntimeControl] = None,
        scheduler: Optional[Scheduler] = None,
        persistence: Optional[Persistence] = None,
    ):
        if runtime is None or scheduler is None:
            raise ValueError("MemorySampler needs a runtime and a scheduler")

        self.config = config or SamplerConfig()
        self.runtime = runtime
        self.scheduler = scheduler
        self.persistence = persistence

        self._lock = threading.Lock()
        self._history: deque = deque(maxlen=self.config.history_size)
        self._sessions: Dict[str, SessionRecord] = {}
        self._leak_patterns: List[LeakSignal] = []
        self._session_id = self.config.session_id
        self._task: Optional[TaskHandle] = None
        self._running = False
        self._degraded = False
        self._error_count = 0
        self._last_signal: Optional[LeakSignal] = None

        self.samples: Channel[MetricSample] = Channel("samples")
        self.leak_signals: Channel[LeakSignal] = Channel("leak_signals")
        self.leak_alarms: Channel[LeakSignal] = Channel("leak_alarms")
        self.crossings: Channel[ThresholdCrossing] = Channel("crossings")
        self.analyses: Channel[SampleAnalysis] = Channel("analyses")
        self.errors: Channel[CollectionError] = Channel("sampler_errors")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def degraded(self) -> bool:
        """True when the runtime was not ready within the readiness timeout."""
        return self._degraded

    def start(self, interval: Optional[float] = None) -> None:
        """Begin periodic sampling. Calling it again while running only warns."""
        if self._running:
            logger.warning("Memory sampling is already active")
            return

        interval = interval or self.config.sample_interval
        if not self.runtime.wait_until_ready(self.config.readiness_timeout):
            self._degraded = True
            logger.warning(
                f"Runtime not ready after {self.config.readiness_timeout}s, "
                f"sampling in degraded mode"
            )

        self._task = self.scheduler.schedule_periodic(SAMPLE_TASK, interval, self.tick)
        self._running = True
        logger.info(f"Memory sampling started (interval: {interval}s)")

    def stop(self) -> None:
        """Stop sampling. History and sessions are kept."""
        if not self._running:
            return
        self.scheduler.cancel(self._task)
        self._task = None
        self._running = False
        logger.info("Memory sampling stopped")

    def set_session_id(self, session_id: Optional[str]) -> None:
        self._session_id = session_id or self.config.session_id

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def tick(self) -> Optional[MetricSample]:
        """Take one sample. Returns None when collection failed."""
        try:
            counters = self.runtime.current_counters()
        except Exception as e:
            error = e if isinstance(e, CollectionError) else CollectionError(str(e))
            self._error_count += 1
            handle_error(error, "collect_counters", ErrorCategory.COLLECTION)
            self.errors.publish(error)
            return None

        sample = build_sample(
            counters,
            timestamp=self.scheduler.now(),
            session_id=self._session_id,
            fragmentation_threshold=self.config.fragmentation_threshold,
        )

        with self._lock:
            previous = self._history[-1] if self._history else None
            self._history.append(sample)
            self._update_session(sample)
            history_len = len(self._history)

        if previous is not None:
            self._analyze_growth(previous, sample)

        if self.config.leak_detection_enabled and history_len >= self.config.detection_window:
            self._run_leak_detection(sample)

        for crossing in evaluate_thresholds(sample, self.config.thresholds):
            if (crossing.alert_type == AlertType.MEMORY_FRAGMENTATION
                    and not self.config.fragmentation_enabled):
                continue
            self.crossings.publish(crossing)

        self.samples.publish(sample)
        return sample

    def _update_session(self, sample: MetricSample) -> None:
        record = self._sessions.get(sample.session_id)
        rss = sample.process.rss
        if record is None:
            record = SessionRecord(
                session_id=sample.session_id,
                start_time=sample.timestamp,
                initial_memory=rss,
                peak_memory=rss,
            )
            self._sessions[sample.session_id] = record

        record.sample_count += 1
        record.peak_memory = max(record.peak_memory, rss)
        if record.initial_memory > 0:
            record.total_growth_ratio = (rss - record.initial_memory) / record.initial_memory
        record.last_seen = sample.timestamp

    def _analyze_growth(self, previous: MetricSample, current: MetricSample) -> None:
        rss_growth, heap_growth = growth_between(previous, current)
        with self._lock:
            trend = compute_trend(self._history)

        if rss_growth > self.config.growth_threshold:
            logger.warning(f"Rapid memory growth: RSS +{rss_growth * 100:.1f}% since last sample")

        self.analyses.publish(SampleAnalysis(
            timestamp=current.timestamp,
            rss_growth=rss_growth,
            heap_growth=heap_growth,
            time_delta=current.timestamp - previous.timestamp,
            trend=trend,
        ))

    def _run_leak_detection(self, sample: MetricSample) -> None:
        with self._lock:
            window = list(self._history)[-self.config.detection_window:]

        signal = detect_leaks(
            window,
            epsilon=self.config.growth_epsilon,
            plateau_threshold=self.config.plateau_threshold,
            jump_threshold=self.config.jump_threshold,
            timestamp=sample.timestamp,
        )
        self._last_signal = signal
        self.leak_signals.publish(signal)

        if signal.overall_score > self.config.leak_alarm_score:
            logger.warning(
                f"Memory leak suspected (score: {signal.overall_score:.3f}, "
                f"patterns: {', '.join(signal.detected_patterns) or 'none'})"
            )
            self._record_leak(signal, sample)
            self.leak_alarms.publish(signal)

    def _record_leak(self, signal: LeakSignal, sample: MetricSample) -> None:
        with self._lock:
            self._leak_patterns.append(signal)
            if len(self._leak_patterns) > Limits.LEAK_PATTERNS_MAX:
                self._leak_patterns = self._leak_patterns[-Limits.LEAK_PATTERNS_KEEP:]

        if self.persistence is not None:
            self.persistence.append(LEAK_LOG, {
                'timestamp': datetime.fromtimestamp(signal.timestamp).isoformat(),
                'detection': signal.to_dict(),
                'system_state': sample.to_dict(),
            })

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def latest(self) -> Optional[MetricSample]:
        with self._lock:
            return self._history[-1] if self._history else None

    @property
    def last_leak_signal(self) -> Optional[LeakSignal]:
        return self._last_signal

    @property
    def sample_count(self) -> int:
        return len(self._history)

    @property
    def leak_patterns(self) -> List[LeakSignal]:
        with self._lock:
            return list(self._leak_patterns)

    def get_history(self, limit: Optional[int] = None) -> List[MetricSample]:
        with self._lock:
            history = list(self._history)
        if limit is not None:
            history = history[-limit:]
        return history

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_sessions(self) -> Dict[str, SessionRecord]:
        with self._lock:
            return dict(self._sessions)

    def prune_sessions(self, idle_seconds: float) -> int:
        """Drop sessions not seen for idle_seconds. Returns how many were removed."""
        cutoff = self.scheduler.now() - idle_seconds
        with self._lock:
            stale = [sid for sid, rec in self._sessions.items() if rec.last_seen < cutoff]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug(f"Pruned {len(stale)} idle sessions")
        return len(stale)

    def generate_basic_recommendations(self) -> Dict[str, Any]:
        """Advisory list derived from history alone; no actions are taken."""
        history = self.get_history()
        if len(history) < self.config.detection_window:
            return {'insufficient_data': True}

        latest = history[-1]
        trend = compute_trend(history)
        recommendations = []

        if latest.fragmentation.level == FragmentationLevel.HIGH:
            recommendations.append({
                'type': 'fragmentation',
                'priority': 'high',
                'recommendation': 'Consider triggering garbage collection or reducing object allocation frequency',
                'details': f"Fragmentation score: {latest.fragmentation.score:.3f}",
            })

        if trend.direction == TrendDirection.INCREASING and trend.rate > self.config.growth_threshold:
            recommendations.append({
                'type': 'growth_trend',
                'priority': 'medium',
                'recommendation': 'Memory usage is increasing rapidly. Review recent changes for potential leaks.',
                'details': f"Growth rate: {trend.rate * 100:.1f}% per measurement window",
            })

        if latest.process.heap_utilization > 0.8:
            recommendations.append({
                'type': 'heap_pressure',
                'priority': 'high',
                'recommendation': 'Heap utilization is high. Consider reducing retained objects.',
                'details': f"Heap utilization: {latest.process.heap_utilization * 100:.1f}%",
            })

        for session_id, record in self.get_sessions().items():
            if record.total_growth_ratio > 0.5:
                recommendations.append({
                    'type': 'session_growth',
                    'priority': 'medium',
                    'recommendation': f"Session {session_id} shows significant memory growth",
                    'details': f"Total growth: {record.total_growth_ratio * 100:.1f}%",
                })

        order = {'high': 3, 'medium': 2, 'low': 1}
        recommendations.sort(key=lambda r: order[r['priority']], reverse=True)
        return {
            'timestamp': self.scheduler.now(),
            'total_recommendations': len(recommendations),
            'recommendations': recommendations,
        }

    def get_status(self) -> Dict[str, Any]:
        latest = self.latest
        basic = self.generate_basic_recommendations()
        now = self.scheduler.now()
        leak_patterns = self.leak_patterns

        current = None
        if latest is not None:
            current = {
                'timestamp': latest.timestamp,
                'rss_mb': round(latest.process.rss / (1024 * 1024), 2),
                'heap_utilization': f"{latest.process.heap_utilization * 100:.1f}%",
                'system_utilization': f"{latest.system.utilization * 100:.1f}%",
                'fragmentation': latest.fragmentation.level.value,
            }

        return {
            'monitoring': self._running,
            'degraded': self._degraded,
            'samples': self.sample_count,
            'sessions': len(self._sessions),
            'collection_errors': self._error_count,
            'current': current,
            'recommendations': basic.get('total_recommendations', 0),
            'alerts': {
                'leaks': len(leak_patterns),
                'recent': len([p for p in leak_patterns if now - p.timestamp < 300]),
            },
        }

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    CSV_HEADERS = [
        'timestamp', 'rss', 'heap_total', 'heap_used', 'external',
        'heap_utilization', 'system_total', 'system_used', 'system_utilization',
        'fragmentation_score', 'session_id',
    ]

    def export_metrics(self, fmt: str = "json") -> Dict[str, Any]:
        """Write history, sessions and leak patterns to logs/ under the storage root."""
        if fmt not in ('json', 'csv'):
            raise ValueError(f"Unsupported export format: {fmt}")
        if self.persistence is None:
            return {'success': False, 'error': 'no storage configured'}

        history = self.get_history()
        filename = f"memory-export-{int(self.scheduler.now() * 1000)}.{fmt}"
        relative = os.path.join('logs', filename)

        if fmt == 'json':
            path = self.persistence.write_json(relative, {
                'metadata': {
                    'export_time': datetime.now().isoformat(),
                    'monitoring_duration': (history[-1].timestamp - history[0].timestamp) if history else 0,
                    'total_samples': len(history),
                    'session_count': len(self._sessions),
                },
                'configuration': self.config.to_dict(),
                'history': [s.to_dict() for s in history],
                'sessions': {sid: rec.to_dict() for sid, rec in self.get_sessions().items()},
                'leak_patterns': [p.to_dict() for p in self.leak_patterns],
                'recommendations': self.generate_basic_recommendations(),
            })
        else:
            path = self.persistence.path(relative)
            rows = [[
                s.timestamp, s.process.rss, s.process.heap_total, s.process.heap_used,
                s.process.external, round(s.process.heap_utilization, 6), s.system.total,
                s.system.used, round(s.system.utilization, 6), round(s.fragmentation.score, 6),
                s.session_id,
            ] for s in history]

            def write_csv():
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, 'w', newline='') as f:
                    writer = csv.writer(f)
                    writer.writerow(self.CSV_HEADERS)
                    writer.writerows(rows)

            self.persistence.submit(f"export {filename}", write_csv)

        return {'success': True, 'filepath': path, 'size': len(history)}
