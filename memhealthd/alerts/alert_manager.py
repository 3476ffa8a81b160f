"""
Alert Manager - turns threshold crossings and leak signals into alerts.

Features:
- Per (type, level) cooldowns: suppressed conditions leave no trace
- Level x type dispatch of remediation actions, each individually guarded
- Console / log file / webhook notification fan-out
- Durable alert log
- Acknowledgement and resolution tracking
- Leak reports with targeted recommendations
- Emergency shutdown with persisted state and an interceptable grace period

Alert lifecycle per key:
    Quiet -> Fired -> (Acknowledged | Resolved) -> Quiet

A key may fire again only once the cooldown for its level has elapsed since
its last firing.
"""

import logging
import os
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ..channels import Channel
from ..config import AlertConfig
from ..constants import Limits, Paths
from ..detection import evaluate_thresholds
from ..exceptions import ActionError
from ..models import (
    Alert,
    AlertKey,
    AlertLevel,
    AlertType,
    LeakSignal,
    MetricSample,
    ShutdownSignal,
    ThresholdCrossing,
)
from ..runtime import RuntimeControl
from ..scheduler import Scheduler, TaskHandle
from ..storage import ALERT_LOG, EMERGENCY_STATE_FILE, Persistence
from ..utils.error_handling import ErrorCategory, handle_error
from .notifier import Notifier

logger = logging.getLogger(__name__)

SHUTDOWN_TASK = "emergency-shutdown"

_LOG_LEVELS = {
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.CRITICAL: logging.ERROR,
    AlertLevel.EMERGENCY: logging.CRITICAL,
}

_MESSAGES = {
    AlertType.SYSTEM_MEMORY: {
        AlertLevel.EMERGENCY: "System memory critically low",
        AlertLevel.CRITICAL: "System memory low",
        AlertLevel.WARNING: "System memory usage high",
    },
    AlertType.HEAP_PRESSURE: {
        AlertLevel.EMERGENCY: "Heap memory critically full",
        AlertLevel.CRITICAL: "Heap memory pressure",
        AlertLevel.WARNING: "Heap memory usage high",
    },
    AlertType.MEMORY_FRAGMENTATION: {
        AlertLevel.EMERGENCY: "Severe memory fragmentation",
        AlertLevel.CRITICAL: "High memory fragmentation",
        AlertLevel.WARNING: "Memory fragmentation detected",
    },
}

_LEAK_MESSAGES = {
    AlertLevel.EMERGENCY: "Critical memory leak detected",
    AlertLevel.CRITICAL: "Significant memory leak detected",
    AlertLevel.WARNING: "Potential memory leak detected",
}


def _default_terminate(code: int) -> None:
    os._exit(code)


class AlertManager:
    """
    Owns alert history, cooldown state and the active key set.

    Subscribe to ``alerts`` for every fired alert and to ``shutdown_signals``
    to be told about a pending emergency shutdown (call intercept_shutdown()
    within the grace period to stop it).
    """

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        runtime: Optional[RuntimeControl] = None,
        scheduler: Optional[Scheduler] = None,
        persistence: Optional[Persistence] = None,
        notifier: Optional[Notifier] = None,
        terminate: Optional[Callable[[int], None]] = None,
    ):
        if runtime is None or scheduler is None:
            raise ValueError("AlertManager needs a runtime and a scheduler")

        self.config = config or AlertConfig()
        self.runtime = runtime
        self.scheduler = scheduler
        self.persistence = persistence
        self.notifier = notifier or Notifier.from_config(self.config.notifications, persistence)
        self._terminate = terminate or _default_terminate

        self._lock = threading.Lock()
        self._history: List[Alert] = []
        self._last_fired: Dict[AlertKey, float] = {}
        self._active: Set[AlertKey] = set()
        self._stats = {
            'total': 0,
            'by_level': {level.value: 0 for level in AlertLevel},
            'by_type': {},
        }
        self._latest_sample: Optional[MetricSample] = None
        self._shutdown_task: Optional[TaskHandle] = None

        self.alerts: Channel[Alert] = Channel("alerts")
        self.shutdown_signals: Channel[ShutdownSignal] = Channel("shutdown_signals")

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def process_sample(self, sample: MetricSample) -> List[Alert]:
        """Evaluate the alert thresholds against a sample. Returns alerts fired."""
        self._latest_sample = sample
        fired = []
        for crossing in evaluate_thresholds(sample, self.config.thresholds):
            alert = self.process_crossing(crossing, sample)
            if alert is not None:
                fired.append(alert)
        return fired

    def process_crossing(self, crossing: ThresholdCrossing,
                         sample: Optional[MetricSample] = None) -> Optional[Alert]:
        """Fire an alert for one crossing unless its key is cooling down."""
        if sample is not None:
            self._latest_sample = sample

        base = _MESSAGES.get(crossing.alert_type, {}).get(crossing.level, crossing.alert_type.value)
        message = f"{base}: {crossing.value * 100:.1f}%"
        data: Dict[str, Any] = {'threshold': crossing.threshold, 'message': message}

        if crossing.alert_type == AlertType.SYSTEM_MEMORY:
            data['utilization'] = crossing.value
            if sample is not None:
                data['available'] = sample.system.available
                data['total'] = sample.system.total
        elif crossing.alert_type == AlertType.HEAP_PRESSURE:
            data['utilization'] = crossing.value
            if sample is not None:
                data['heap_used'] = sample.process.heap_used
                data['heap_total'] = sample.process.heap_total
        else:
            data['score'] = crossing.value
            if sample is not None:
                data['level'] = sample.fragmentation.level.value
                data['heap'] = sample.fragmentation.heap
                data['rss'] = sample.fragmentation.rss

        return self._fire(Alert(
            alert_type=crossing.alert_type,
            level=crossing.level,
            message=message,
            timestamp=self.scheduler.now(),
            data=data,
        ))

    def process_leak_signal(self, signal: LeakSignal,
                            sample: Optional[MetricSample] = None) -> List[Alert]:
        """Leak score tier alert plus one alert per detected pattern."""
        if sample is not None:
            self._latest_sample = sample

        now = self.scheduler.now()
        candidates = []

        reached = self.config.thresholds.leak_score.highest_reached(signal.overall_score)
        if reached is not None:
            level, _ = reached
            message = f"{_LEAK_MESSAGES[level]} (score: {signal.overall_score:.3f})"
            candidates.append(Alert(
                alert_type=AlertType.MEMORY_LEAK,
                level=level,
                message=message,
                timestamp=now,
                data={'score': signal.overall_score, 'details': signal.to_dict(), 'message': message},
            ))

        patterns = (
            (signal.sustained, AlertType.SUSTAINED_GROWTH, AlertLevel.WARNING,
             "Sustained memory growth pattern detected"),
            (signal.staircase, AlertType.STAIRCASE_PATTERN, AlertLevel.WARNING,
             "Staircase memory allocation pattern detected"),
            (signal.gc_inefficiency, AlertType.GC_INEFFICIENCY, AlertLevel.CRITICAL,
             "Garbage collection inefficiency detected"),
        )
        for pattern, alert_type, level, message in patterns:
            if pattern.detected:
                candidates.append(Alert(
                    alert_type=alert_type,
                    level=level,
                    message=message,
                    timestamp=now,
                    data={'pattern': alert_type.value, 'details': pattern.to_dict(), 'message': message},
                ))

        fired = []
        for alert in candidates:
            if self._fire(alert) is not None:
                fired.append(alert)
        return fired

    # -------------------------------------------------------------------------
    # Firing
    # -------------------------------------------------------------------------

    def _in_cooldown(self, alert: Alert) -> bool:
        last = self._last_fired.get(alert.key)
        if last is None:
            return False
        return alert.timestamp - last < self.config.cooldowns.for_level(alert.level)

    def _fire(self, alert: Alert) -> Optional[Alert]:
        with self._lock:
            if self._in_cooldown(alert):
                return None

            self._last_fired[alert.key] = alert.timestamp
            self._active.add(alert.key)
            self._history.append(alert)
            self._stats['total'] += 1
            self._stats['by_level'][alert.level.value] += 1
            by_type = self._stats['by_type']
            by_type[alert.alert_type.value] = by_type.get(alert.alert_type.value, 0) + 1

        logger.log(_LOG_LEVELS[alert.level], f"[{alert.level.value.upper()}] {alert.message}")

        alert.actions = self._dispatch(alert)

        if self.config.actions.notifications:
            self.notifier.notify(alert)

        if self.persistence is not None:
            self.persistence.append(ALERT_LOG, alert.to_dict())

        self.alerts.publish(alert)

        with self._lock:
            if len(self._history) > self.config.history_max:
                self._history = self._history[-self.config.history_keep:]
        return alert

    def _dispatch(self, alert: Alert) -> List[str]:
        """Run the remediation actions for the alert's level and type."""
        triggers = self.config.actions
        steps = []

        if alert.level == AlertLevel.EMERGENCY:
            if triggers.memory_dump and alert.alert_type in (AlertType.SYSTEM_MEMORY, AlertType.HEAP_PRESSURE):
                steps.append(('memory_dump', self.create_memory_dump))
            if triggers.auto_gc and alert.alert_type == AlertType.HEAP_PRESSURE:
                steps.append(('force_gc', self.runtime.force_collect))
            if triggers.emergency_shutdown and alert.alert_type == AlertType.SYSTEM_MEMORY:
                steps.append(('emergency_shutdown', lambda: self.initiate_emergency_shutdown(alert)))

        elif alert.level == AlertLevel.CRITICAL:
            if triggers.auto_gc and alert.alert_type in (AlertType.HEAP_PRESSURE, AlertType.MEMORY_FRAGMENTATION):
                steps.append(('gc_triggered', self.runtime.force_collect))
            if alert.alert_type == AlertType.MEMORY_LEAK:
                steps.append(('leak_report_generated', lambda: self.generate_leak_report(alert)))

        elif alert.level == AlertLevel.WARNING:
            if alert.alert_type == AlertType.MEMORY_FRAGMENTATION:
                steps.append(('memory_optimization', self._optimize_memory_layout))

        actions = []
        for name, step in steps:
            try:
                step()
                actions.append(name)
            except Exception as e:
                handle_error(e, f"alert action {name}", ErrorCategory.ACTION,
                             additional_context={'alert_id': alert.id})
                actions.append(f"action_error:{e}")
        return actions

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _require_storage(self, action: str) -> Persistence:
        if self.persistence is None:
            raise ActionError(f"{action} needs a storage root")
        return self.persistence

    def create_memory_dump(self) -> str:
        """Queue a heap snapshot under snapshots/. Returns the directory."""
        persistence = self._require_storage("memory_dump")
        directory = persistence.ensure_dir(Paths.SNAPSHOTS)
        persistence.submit("memory dump", lambda: self.runtime.snapshot(directory))
        return directory

    def generate_leak_report(self, alert: Alert) -> str:
        persistence = self._require_storage("leak_report")
        report = {
            'timestamp': datetime.now().isoformat(),
            'alert': alert.to_dict(),
            'system_state': self._latest_sample.to_dict() if self._latest_sample else None,
            'recommendations': self.generate_leak_recommendations(alert),
        }
        filename = f"leak-report-{int(alert.timestamp * 1000)}.json"
        path = persistence.write_json(os.path.join(Paths.ALERTS, filename), report)
        logger.info(f"Memory leak report generated: {path}")
        return path

    @staticmethod
    def generate_leak_recommendations(alert: Alert) -> List[Dict[str, str]]:
        details = alert.data.get('details') or {}
        recommendations = []

        if details.get('sustained_growth', {}).get('detected'):
            recommendations.append({
                'type': 'code_review',
                'priority': 'high',
                'action': 'Review recent code changes for objects that are not being properly cleaned up',
                'details': 'Sustained memory growth indicates objects are accumulating over time',
            })
        if details.get('staircase', {}).get('detected'):
            recommendations.append({
                'type': 'allocation_pattern',
                'priority': 'medium',
                'action': 'Review allocation patterns and implement object pooling where appropriate',
                'details': 'Staircase pattern suggests periodic large allocations without cleanup',
            })
        if details.get('gc_inefficiency', {}).get('detected'):
            recommendations.append({
                'type': 'gc_tuning',
                'priority': 'high',
                'action': 'Review garbage collection settings and consider collector threshold adjustments',
                'details': 'GC appears to be struggling to reclaim memory effectively',
            })
        return recommendations

    def _optimize_memory_layout(self) -> None:
        logger.info("Memory layout optimization suggested (fragmentation warning)")

    # -------------------------------------------------------------------------
    # Emergency shutdown
    # -------------------------------------------------------------------------

    def save_emergency_state(self) -> Optional[str]:
        if self.persistence is None:
            return None
        with self._lock:
            recent = [a.to_dict() for a in self._history[-Limits.EMERGENCY_ALERTS_PERSISTED:]]
        return self.persistence.write_json(EMERGENCY_STATE_FILE, {
            'timestamp': datetime.now().isoformat(),
            'reason': 'memory_exhaustion',
            'alerts': recent,
            'system_state': self._latest_sample.to_dict() if self._latest_sample else None,
        })

    def initiate_emergency_shutdown(self, alert: Alert) -> ShutdownSignal:
        """Persist state, announce the shutdown and schedule termination."""
        logger.critical("EMERGENCY: initiating shutdown due to memory exhaustion")

        state_file = self.save_emergency_state()
        grace = self.config.shutdown_grace_period
        signal = ShutdownSignal(
            alert_id=alert.id,
            state_file=state_file,
            grace_period=grace,
            timestamp=self.scheduler.now(),
        )

        if self._shutdown_task is None:
            self._shutdown_task = self.scheduler.call_later(SHUTDOWN_TASK, grace, self._shutdown_now)
        self.shutdown_signals.publish(signal)
        return signal

    @property
    def shutdown_pending(self) -> bool:
        return self._shutdown_task is not None

    def intercept_shutdown(self) -> bool:
        """Cancel a pending emergency shutdown. Returns False if none was pending."""
        if self._shutdown_task is None:
            return False
        self.scheduler.cancel(self._shutdown_task)
        self._shutdown_task = None
        logger.warning("Emergency shutdown intercepted by host")
        return True

    def _shutdown_now(self) -> None:
        self._shutdown_task = None
        if self.persistence is not None:
            self.persistence.flush(timeout=self.config.shutdown_grace_period)
        logger.critical("Terminating process after emergency shutdown grace period")
        self._terminate(1)

    # -------------------------------------------------------------------------
    # Lifecycle operations
    # -------------------------------------------------------------------------

    def _find(self, alert_id: str) -> Optional[Alert]:
        for alert in reversed(self._history):
            if alert.id == alert_id:
                return alert
        return None

    def acknowledge_alert(self, alert_id: str, user: str = "system") -> bool:
        with self._lock:
            alert = self._find(alert_id)
            if alert is None or alert.acknowledged:
                return False
            alert.acknowledged = True
            alert.acknowledged_by = user
            alert.acknowledged_at = self.scheduler.now()
        logger.info(f"Alert {alert_id} acknowledged by {user}")
        return True

    def resolve_alert(self, alert_id: str, resolution: str = "manual", user: str = "system") -> bool:
        """Resolve once; a second call returns False and changes nothing."""
        with self._lock:
            alert = self._find(alert_id)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            alert.resolved_by = user
            alert.resolved_at = self.scheduler.now()
            alert.resolution = resolution
            self._active.discard(alert.key)
        logger.info(f"Alert {alert_id} resolved by {user} ({resolution})")
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def history(self) -> List[Alert]:
        with self._lock:
            return list(self._history)

    @property
    def active_keys(self) -> Set[AlertKey]:
        with self._lock:
            return set(self._active)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._find(alert_id)

    def get_active_alerts(self) -> List[Alert]:
        with self._lock:
            return [a for a in self._history if not a.resolved]

    def get_recent_alerts(self, limit: int = 50) -> List[Alert]:
        """Most recent alerts, newest first."""
        with self._lock:
            recent = self._history[-limit:]
        return sorted(recent, key=lambda a: a.timestamp, reverse=True)

    def get_alert_stats(self) -> Dict[str, Any]:
        now = self.scheduler.now()
        with self._lock:
            return {
                'total': self._stats['total'],
                'by_level': dict(self._stats['by_level']),
                'by_type': dict(self._stats['by_type']),
                'active': len(self._active),
                'recent': len([a for a in self._history if now - a.timestamp < 3600]),
                'unresolved': len([a for a in self._history if not a.resolved]),
            }

    def clear_resolved_alerts(self, older_than: float = 86400) -> int:
        """Drop resolved alerts older than older_than seconds. Returns how many."""
        cutoff = self.scheduler.now() - older_than
        with self._lock:
            before = len(self._history)
            self._history = [a for a in self._history if not a.resolved or a.timestamp > cutoff]
            cleared = before - len(self._history)
        logger.info(f"Cleared {cleared} resolved alerts from history")
        return cleared
