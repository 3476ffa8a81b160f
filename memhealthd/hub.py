"""
Integration Hub - wires the sampler, alert manager and recommendation
engine together and exposes the dashboard surface.

Features:
- Builds and connects the three components through typed channels
- Health score and label per sample
- Derived views: latest sample, alerts seen, recommendations, sessions
- Scheduler tasks: dashboard update, integration sync, retention sweep,
  automation counter reset, learned-pattern pruning, session analysis
- Session analyzer fed by every sample; low-scoring session analyses are
  turned into recommendations
- Best-effort sync of a small summary to external targets
- Dashboard summary, memory report and full data export

Per sampling tick the hub sees: leak alarm (if any) -> sample. On the
sample it runs the alert thresholds, generates recommendations and
recomputes the health score from the alerts fired during that tick.
"""

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .alerts import AlertManager
from .channels import Channel
from .config import MemoryHealthConfig
from .constants import HealthBands, Limits, Paths, Version
from .models import (
    Alert,
    AlertLevel,
    HealthStatus,
    ImplementationResult,
    LeakSignal,
    MetricSample,
    Priority,
    Recommendation,
    SessionAnalysis,
    ShutdownSignal,
)
from .optimizer import RecommendationEngine
from .runtime import PsutilRuntimeControl, RuntimeControl
from .sampler import MemorySampler
from .scheduler import Scheduler, TaskHandle, ThreadScheduler
from .sessions import SessionAnalyzer
from .storage import IOWorker, Persistence
from .utils.error_handling import ErrorCategory, get_error_aggregator, handle_error, safe_execute

logger = logging.getLogger(__name__)

GB = 1024 ** 3
DAY = 24 * 60 * 60


# =============================================================================
# HEALTH SCORE
# =============================================================================

def compute_health_score(utilization: float, fragmentation: float,
                         critical_alerts: int = 0, warning_alerts: int = 0) -> float:
    """
    1.0 minus tiered penalties for system utilization and fragmentation and
    per-alert penalties for this cycle's alerts, clamped to [0, 1].
    """
    score = 1.0

    if utilization > 0.9:
        score -= 0.5
    elif utilization > 0.8:
        score -= 0.3
    elif utilization > 0.7:
        score -= 0.1

    if fragmentation > 0.5:
        score -= 0.3
    elif fragmentation > 0.3:
        score -= 0.2
    elif fragmentation > 0.1:
        score -= 0.1

    score -= critical_alerts * 0.2 + warning_alerts * 0.1
    return max(0.0, min(1.0, score))


def health_label(score: float) -> HealthStatus:
    if score >= HealthBands.EXCELLENT:
        return HealthStatus.EXCELLENT
    if score >= HealthBands.GOOD:
        return HealthStatus.GOOD
    if score >= HealthBands.FAIR:
        return HealthStatus.FAIR
    if score >= HealthBands.POOR:
        return HealthStatus.POOR
    return HealthStatus.CRITICAL


def count_alert_levels(alerts: Iterable[Alert]):
    """(critical-or-worse, warning) counts."""
    critical = 0
    warning = 0
    for alert in alerts:
        if alert.level == AlertLevel.WARNING:
            warning += 1
        else:
            critical += 1
    return critical, warning


# =============================================================================
# SYNC TARGETS
# =============================================================================

class SyncTarget(ABC):
    """External collaborator that receives the periodic summary."""

    name = "target"

    @abstractmethod
    def push(self, summary: Dict[str, Any]) -> None:
        """Deliver the summary. May raise; the hub logs and moves on."""


class FileSyncTarget(SyncTarget):
    """Writes the summary to integration/memory-integration.json."""

    name = "file"

    def __init__(self, persistence: Persistence,
                 relative_path: str = os.path.join(Paths.INTEGRATION, "memory-integration.json")):
        self.persistence = persistence
        self.relative_path = relative_path

    def push(self, summary: Dict[str, Any]) -> None:
        self.persistence.write_json(self.relative_path, summary)


class CallbackSyncTarget(SyncTarget):
    """Hands the summary to a host callable."""

    def __init__(self, name: str, callback: Callable[[Dict[str, Any]], None]):
        self.name = name
        self.callback = callback

    def push(self, summary: Dict[str, Any]) -> None:
        self.callback(summary)


# =============================================================================
# HUB
# =============================================================================

class IntegrationHub:
    """
    One engine instance: sampler, alert manager and recommendation engine
    sharing a runtime, a scheduler and a storage root.
    """

    def __init__(
        self,
        config: Optional[MemoryHealthConfig] = None,
        runtime: Optional[RuntimeControl] = None,
        scheduler: Optional[Scheduler] = None,
        sync_targets: Optional[List[SyncTarget]] = None,
        persistence: Optional[Persistence] = None,
        terminate: Optional[Callable[[int], None]] = None,
    ):
        self.config = config or MemoryHealthConfig()

        self._owns_runtime = runtime is None
        self.runtime = runtime or PsutilRuntimeControl()
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or ThreadScheduler()
        self.persistence = persistence or Persistence(
            self.config.storage.root,
            IOWorker(synchronous=self.config.storage.synchronous_io),
        )

        self.sampler = MemorySampler(self.config.sampler, self.runtime, self.scheduler, self.persistence)
        self.alert_manager = AlertManager(self.config.alerts, self.runtime, self.scheduler,
                                          self.persistence, terminate=terminate)
        self.engine = RecommendationEngine(self.config.optimizer, self.runtime, self.scheduler,
                                           self.persistence)
        self.session_analyzer = SessionAnalyzer(self.config.sessions, self.scheduler, self.persistence)

        if sync_targets is None:
            sync_targets = [FileSyncTarget(self.persistence)]
        self.sync_targets: List[SyncTarget] = list(sync_targets)

        self._lock = threading.Lock()
        self._status = "initializing"
        self._health_score = 1.0
        self._latest_sample: Optional[MetricSample] = None
        self._last_update: Optional[float] = None
        self._cycle_alerts: List[Alert] = []
        self._alerts: deque = deque(maxlen=self.config.alerts.history_max)
        self._recommendations: List[Recommendation] = []
        self._latest_batch: List[Recommendation] = []
        self._auto_implemented = 0
        self._collection_errors = 0
        self._sync_count = 0
        self._sync_failures: Dict[str, int] = {}
        self._last_sync: Optional[float] = None
        self._shutdown_signal: Optional[ShutdownSignal] = None
        self._tasks: Dict[str, TaskHandle] = {}

        self.summaries: Channel[Dict[str, Any]] = Channel("dashboard_summaries")

        self._wire()

    def _wire(self) -> None:
        self.sampler.samples.subscribe(self._on_sample)
        self.sampler.leak_alarms.subscribe(self._on_leak_alarm)
        self.sampler.errors.subscribe(self._on_collection_error)
        self.alert_manager.alerts.subscribe(self._on_alert)
        self.alert_manager.shutdown_signals.subscribe(self._on_shutdown_signal)
        self.engine.implementations.subscribe(self._on_implementation)
        self.session_analyzer.analyses.subscribe(self._on_session_analysis)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == "running"

    def start(self) -> None:
        if self.is_running:
            logger.warning("Integration hub is already running")
            return

        logger.info("Starting memory health engine...")
        self.persistence.start()
        for directory in (Paths.LOGS, Paths.ALERTS, Paths.OPTIMIZATIONS, Paths.SNAPSHOTS,
                          Paths.INTEGRATION, Paths.REPORTS, Paths.SESSIONS):
            self.persistence.ensure_dir(directory)

        if self.config.optimizer.learning_mode:
            self.engine.load_learned_patterns()

        hub = self.config.hub
        self._schedule("dashboard-update", hub.dashboard_update_interval, self.update_dashboard)
        if hub.sync_enabled:
            self._schedule("integration-sync", hub.sync_interval, self.sync)
        self._schedule("retention-sweep", hub.retention_sweep_interval, self.retention_sweep)
        self._schedule("automation-reset", hub.automation_reset_interval, self.engine.reset_automation_count)
        self._schedule("pattern-prune", hub.pattern_prune_interval, self.prune_patterns)
        if self.config.sessions.enabled:
            self.session_analyzer.register_session(self.config.sampler.session_id, {'source': 'hub'})
            self._schedule("session-analysis", self.config.sessions.analysis_interval,
                           self.session_analyzer.periodic_analysis)

        if not self.scheduler.is_running:
            self.scheduler.start()
        self.sampler.start()

        self._status = "running"
        logger.info("Memory health engine started")

    def stop(self) -> None:
        if self._status in ("stopped", "initializing"):
            return

        logger.info("Stopping memory health engine...")
        self.sampler.stop()
        for handle in self._tasks.values():
            self.scheduler.cancel(handle)
        self._tasks.clear()

        if self.config.optimizer.learning_mode:
            with safe_execute("save learned patterns", ErrorCategory.PERSISTENCE):
                self.engine.save_learned_patterns()

        if self._owns_scheduler:
            self.scheduler.stop()
        self.persistence.stop()
        if self._owns_runtime and isinstance(self.runtime, PsutilRuntimeControl):
            self.runtime.close()

        self._status = "stopped"
        logger.info("Memory health engine stopped")

    def _schedule(self, name: str, interval: float, fn: Callable[[], None]) -> None:
        self._tasks[name] = self.scheduler.schedule_periodic(name, interval, fn)

    # -------------------------------------------------------------------------
    # Channel handlers
    # -------------------------------------------------------------------------

    def _on_sample(self, sample: MetricSample) -> None:
        with self._lock:
            self._latest_sample = sample
            self._last_update = sample.timestamp

        self.alert_manager.process_sample(sample)
        if self.config.sessions.enabled:
            self.session_analyzer.add_sample(sample)

        session = self.sampler.get_session(sample.session_id)
        self._store_recommendations(self.engine.generate(sample, session, None))

        with self._lock:
            cycle_alerts, self._cycle_alerts = self._cycle_alerts, []
        self._update_health(sample, cycle_alerts)

    def _on_leak_alarm(self, signal: LeakSignal) -> None:
        sample = self.sampler.latest
        self.alert_manager.process_leak_signal(signal, sample)
        if sample is not None:
            self._store_recommendations(self.engine.generate(sample, None, signal))

    def _on_alert(self, alert: Alert) -> None:
        with self._lock:
            self._cycle_alerts.append(alert)
            self._alerts.append(alert)

    def _on_collection_error(self, error: Exception) -> None:
        self._collection_errors += 1

    def _on_shutdown_signal(self, signal: ShutdownSignal) -> None:
        self._shutdown_signal = signal
        self._status = "shutting_down"
        logger.critical(
            f"Emergency shutdown pending in {signal.grace_period:.0f}s "
            f"(state saved to {signal.state_file})"
        )

    def _on_implementation(self, result: ImplementationResult) -> None:
        if result.success:
            self._auto_implemented += 1

    def _on_session_analysis(self, analysis: SessionAnalysis) -> None:
        if analysis.health_score >= self.config.sessions.recommend_below:
            return
        sample = self._latest_sample
        if sample is None:
            return
        logger.info(f"Session {analysis.session_id} health {analysis.health_score:.2f}, "
                    f"generating recommendations")
        self._store_recommendations(self.engine.generate(sample, analysis.as_record(), None))

    def _store_recommendations(self, recommendations: List[Recommendation]) -> None:
        with self._lock:
            self._latest_batch = recommendations
            self._recommendations.extend(recommendations)

    def _update_health(self, sample: MetricSample, cycle_alerts: List[Alert]) -> None:
        critical, warning = count_alert_levels(cycle_alerts)
        score = compute_health_score(
            sample.system.utilization,
            sample.fragmentation.score,
            critical,
            warning,
        )
        with self._lock:
            previous = self._health_score
            self._health_score = score
        if health_label(score) != health_label(previous):
            logger.info(f"Memory health changed: {health_label(previous).value} -> {health_label(score).value}"
                        f" (score {score:.2f})")

    def intercept_shutdown(self) -> bool:
        intercepted = self.alert_manager.intercept_shutdown()
        if intercepted and self._status == "shutting_down":
            self._status = "running"
        return intercepted

    # -------------------------------------------------------------------------
    # Scheduled tasks
    # -------------------------------------------------------------------------

    def update_dashboard(self) -> Dict[str, Any]:
        summary = self.get_dashboard_summary()
        self.summaries.publish(summary)
        return summary

    def build_sync_summary(self) -> Optional[Dict[str, Any]]:
        sample = self._latest_sample
        if sample is None:
            return None
        return {
            'timestamp': self.scheduler.now(),
            'memory_health': {
                'score': self._health_score,
                'status': health_label(self._health_score).value,
                'utilization': sample.system.utilization,
                'fragmentation': sample.fragmentation.score,
            },
            'active_alerts': len(self.alert_manager.get_active_alerts()),
            'recommendation_count': len(self._recommendations),
            'session_count': len(self.sampler.get_sessions()),
        }

    def sync(self) -> int:
        """Push the summary to every target. Returns how many accepted it."""
        summary = self.build_sync_summary()
        if summary is None:
            return 0

        delivered = 0
        for target in self.sync_targets:
            try:
                target.push(summary)
                delivered += 1
            except Exception as e:
                self._sync_failures[target.name] = self._sync_failures.get(target.name, 0) + 1
                handle_error(e, f"sync {target.name}", ErrorCategory.EXTERNAL)

        self._sync_count += 1
        self._last_sync = summary['timestamp']
        return delivered

    def retention_sweep(self) -> Dict[str, int]:
        hub = self.config.hub
        retention = hub.retention_days * DAY
        cutoff = self.scheduler.now() - retention

        cleared_alerts = self.alert_manager.clear_resolved_alerts(older_than=retention)
        with self._lock:
            before = len(self._alerts)
            kept = [a for a in self._alerts if a.timestamp > cutoff or not a.resolved]
            self._alerts = deque(kept, maxlen=self.config.alerts.history_max)
            dropped_views = before - len(self._alerts)

            dropped_recs = max(0, len(self._recommendations) - hub.recommendations_kept)
            if dropped_recs:
                self._recommendations = self._recommendations[-hub.recommendations_kept:]

        pruned_sessions = self.sampler.prune_sessions(hub.session_timeout)
        analyzed_sessions = self.session_analyzer.cleanup(hub.retention_days)
        logger.debug(
            f"Retention sweep: {cleared_alerts} alerts, {dropped_views} alert views, "
            f"{dropped_recs} recommendations, {pruned_sessions} sessions, "
            f"{analyzed_sessions} analyzed sessions removed"
        )
        return {
            'alerts': cleared_alerts,
            'alert_views': dropped_views,
            'recommendations': dropped_recs,
            'sessions': pruned_sessions,
            'analyzed_sessions': analyzed_sessions,
        }

    def prune_patterns(self) -> int:
        removed = self.engine.prune_learned_patterns()
        if self.config.optimizer.learning_mode:
            self.engine.save_learned_patterns()
        return removed

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    @property
    def health_score(self) -> float:
        return self._health_score

    @property
    def health_status(self) -> HealthStatus:
        return health_label(self._health_score)

    @property
    def latest_sample(self) -> Optional[MetricSample]:
        return self._latest_sample

    @property
    def recommendations(self) -> List[Recommendation]:
        with self._lock:
            return list(self._recommendations)

    @property
    def alerts_seen(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts)

    def get_dashboard_summary(self) -> Dict[str, Any]:
        sample = self._latest_sample
        with self._lock:
            alerts = list(self._alerts)
            recommendations = list(self._recommendations)
            top = sorted(self._latest_batch, key=lambda r: r.priority_score, reverse=True)
        recent = alerts[-Limits.RECENT_ALERTS:]
        now = self.scheduler.now()
        sessions = self.sampler.get_sessions()

        memory = None
        if sample is not None:
            memory = {
                'system_utilization': f"{sample.system.utilization * 100:.1f}%",
                'heap_utilization': f"{sample.process.heap_utilization * 100:.1f}%",
                'fragmentation': sample.fragmentation.level.value,
                'available_gb': f"{sample.system.available / GB:.2f}",
            }

        return {
            'timestamp': now,
            'status': self._status,
            'health_score': self._health_score,
            'health_status': health_label(self._health_score).value,
            'memory': memory,
            'monitoring': {
                'active': self.sampler.is_running,
                'samples_collected': self.sampler.sample_count,
                'last_update': self._last_update,
            },
            'alerts': {
                'total': len(alerts),
                'active': len([a for a in alerts if not a.resolved]),
                'critical': len([a for a in recent if a.level != AlertLevel.WARNING]),
                'warnings': len([a for a in recent if a.level == AlertLevel.WARNING]),
                'recent': [
                    {
                        'id': a.id,
                        'level': a.level.value,
                        'type': a.alert_type.value,
                        'message': a.message,
                        'timestamp': a.timestamp,
                    }
                    for a in recent
                ],
            },
            'sessions': {
                'total': len(sessions),
                'active': len([s for s in sessions.values()
                               if now - s.last_seen < self.config.hub.session_timeout]),
                'analyzed': len(self.session_analyzer.history),
            },
            'optimizations': {
                'total_recommendations': len(recommendations),
                'high_priority': len([r for r in recommendations
                                      if r.priority in (Priority.CRITICAL, Priority.HIGH)]),
                'auto_implemented': self._auto_implemented,
                'top': [
                    {
                        'title': r.title,
                        'priority': r.priority.value,
                        'type': r.rec_type,
                        'estimated_impact': r.actions[0].estimated_impact.value if r.actions else 'unknown',
                    }
                    for r in top[:Limits.TOP_RECOMMENDATIONS]
                ],
            },
        }

    def get_integration_status(self) -> Dict[str, Any]:
        return {
            'dashboard': {
                'status': self._status,
                'health_score': self._health_score,
                'last_update': self._last_update,
            },
            'components': {
                'sampler': self.sampler.is_running,
                'alert_manager': len(self.alert_manager.history),
                'sessions': len(self.sampler.get_sessions()),
                'recommendation_engine': len(self._recommendations),
                'session_analyzer': len(self.session_analyzer.session_ids),
            },
            'integration': {
                'sync_targets': [t.name for t in self.sync_targets],
                'sync_count': self._sync_count,
                'sync_failures': dict(self._sync_failures),
                'last_sync': self._last_sync,
            },
            'scheduler': self.scheduler.pending_tasks(),
            'io': self.persistence.worker.stats,
            'errors': get_error_aggregator().get_error_summary(),
        }

    def generate_memory_report(self) -> Dict[str, Any]:
        """Write a JSON report under reports/ and return it with its path."""
        summary = self.get_dashboard_summary()
        stats = {
            'memory': self.sampler.get_status(),
            'alerts': self.alert_manager.get_alert_stats(),
            'optimizations': self.engine.get_optimization_stats(),
        }

        report = {
            'title': 'Memory Performance Report',
            'generated_at': datetime.now().isoformat(),
            'health_score': summary['health_score'],
            'health_status': summary['health_status'],
            'executive_summary': {
                'status': summary['status'],
                'key_metrics': summary['memory'],
                'critical_issues': summary['alerts']['critical'],
                'recommended_actions': summary['optimizations']['high_priority'],
            },
            'detailed_analysis': {
                'memory_usage': stats['memory'],
                'alert_analysis': stats['alerts'],
                'optimization_results': stats['optimizations'],
                'session_analysis': summary['sessions'],
            },
            'recommendations': summary['optimizations']['top'],
            'action_items': [
                {
                    'priority': r.priority.value,
                    'title': r.title,
                    'description': r.description,
                    'estimated_impact': r.actions[0].estimated_impact.value if r.actions else None,
                }
                for r in self.recommendations
                if r.priority in (Priority.CRITICAL, Priority.HIGH)
            ],
            'appendix': {
                'configuration': self.config.to_dict(),
                'storage_root': self.persistence.root,
                'component_status': {
                    'sampler': self.sampler.is_running,
                    'alert_manager': True,
                    'recommendation_engine': True,
                },
            },
        }

        filename = f"memory-report-{int(time.time() * 1000)}.json"
        path = self.persistence.write_json(os.path.join(Paths.REPORTS, filename), report)
        return {'report': report, 'filepath': path}

    def export_dashboard_data(self) -> Dict[str, Any]:
        sample = self._latest_sample
        data = {
            'metadata': {
                'export_time': datetime.now().isoformat(),
                'version': Version.VERSION,
                'retention': f"{self.config.hub.retention_days} days",
            },
            'summary': self.get_dashboard_summary(),
            'metrics': {
                'current': sample.to_dict() if sample else None,
                'history': [s.to_dict() for s in self.sampler.get_history()],
            },
            'alerts': [a.to_dict() for a in self.alerts_seen],
            'sessions': {sid: rec.to_dict() for sid, rec in self.sampler.get_sessions().items()},
            'session_analyses': [a.to_dict() for a in self.session_analyzer.history],
            'cross_session_patterns': self.session_analyzer.cross_session_patterns,
            'optimizations': [r.to_dict() for r in self.recommendations],
            'stats': {
                'memory': self.sampler.get_status(),
                'alerts': self.alert_manager.get_alert_stats(),
                'optimizations': self.engine.get_optimization_stats(),
            },
        }

        timestamp = int(time.time() * 1000)
        filename = f"memory-dashboard-export-{timestamp}.json"
        path = self.persistence.write_json(os.path.join(Paths.INTEGRATION, filename), data)
        return {'success': True, 'filepath': path, 'timestamp': timestamp}


def create_integration_hub(
    config: Optional[MemoryHealthConfig] = None,
    storage_root: Optional[str] = None,
    sample_interval: Optional[float] = None,
    sync_targets: Optional[List[SyncTarget]] = None,
) -> IntegrationHub:
    """
    Create a hub backed by the current process.

    Args:
        config: Full configuration (defaults used when omitted)
        storage_root: Override for the storage root directory
        sample_interval: Override for the sampling interval in seconds
        sync_targets: External summary targets (defaults to the integration file)

    Returns:
        Configured, not yet started IntegrationHub
    """
    config = config or MemoryHealthConfig()
    if storage_root:
        config.storage.root = storage_root
    if sample_interval:
        config.sampler.sample_interval = sample_interval
    return IntegrationHub(config=config, sync_targets=sync_targets)


if __name__ == '__main__':
    import tempfile

    from .logging_config import setup_logging

    setup_logging(verbose=True)
    print("Testing Integration Hub...")

    hub = create_integration_hub(storage_root=tempfile.mkdtemp(prefix="memhealth-"), sample_interval=1.0)
    hub.summaries.subscribe(
        lambda s: print(f"\n[summary] health={s['health_score']:.2f} ({s['health_status']}), "
                        f"samples={s['monitoring']['samples_collected']}, alerts={s['alerts']['total']}")
    )
    hub.start()

    try:
        print("\nMonitoring memory. Press Ctrl+C to stop...")
        time.sleep(20)
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        result = hub.generate_memory_report()
        print(f"Report written to {result['filepath']}")
        hub.stop()
        print("Integration hub test complete.")
