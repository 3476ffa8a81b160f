"""
Detection - pure functions that turn counters into samples and samples
into leak signals, trends and threshold crossings.

Features:
- Fragmentation scoring (heap and RSS views, clamped to [0, 1])
- Sustained growth, staircase and GC inefficiency leak heuristics
- Composite leak score
- Trend over the last two windows of resident size
- Highest-tier threshold evaluation per metric

Nothing here keeps state; the sampler owns the history these functions
read.
"""

import math
from typing import List, Optional, Sequence, Tuple

from .constants import DetectionThresholds
from .models import (
    AlertType,
    Fragmentation,
    FragmentationLevel,
    GCMetrics,
    LeakSignal,
    MetricSample,
    PatternScore,
    ProcessMetrics,
    RawCounters,
    SystemMetrics,
    ThresholdCrossing,
    Trend,
    TrendDirection,
)


def _ratio(numerator: float, denominator: float) -> float:
    """numerator/denominator, or 0 when the denominator is not positive."""
    if denominator <= 0:
        return 0.0
    return numerator / denominator


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# =============================================================================
# SAMPLE CONSTRUCTION
# =============================================================================

def fragmentation_level(score: float, threshold: float) -> FragmentationLevel:
    """Band the composite score: high above threshold, medium above half of it."""
    if score > threshold:
        return FragmentationLevel.HIGH
    if score > threshold * 0.5:
        return FragmentationLevel.MEDIUM
    return FragmentationLevel.LOW


def compute_fragmentation(
    rss: int,
    heap_total: int,
    heap_used: int,
    threshold: float = DetectionThresholds.FRAGMENTATION_THRESHOLD,
) -> Fragmentation:
    """
    Estimate reserved-but-unused memory.

    heap = (heap_total - heap_used) / heap_total
    rss  = (rss - heap_total) / rss
    score is the mean of the two and the level bands the score. Each ratio
    is clamped to [0, 1] and a zero denominator counts as no fragmentation.
    A zero heap_total means no heap figures were collected, which also
    counts as no fragmentation.
    """
    if heap_total <= 0:
        return Fragmentation(heap=0.0, rss=0.0, score=0.0, level=FragmentationLevel.LOW)

    heap = _clamp(_ratio(heap_total - heap_used, heap_total))
    rss_frag = _clamp(_ratio(rss - heap_total, rss))
    score = (heap + rss_frag) / 2
    return Fragmentation(
        heap=heap,
        rss=rss_frag,
        score=score,
        level=fragmentation_level(score, threshold),
    )


def build_sample(
    counters: RawCounters,
    timestamp: float,
    session_id: str,
    fragmentation_threshold: float = DetectionThresholds.FRAGMENTATION_THRESHOLD,
) -> MetricSample:
    """Derive an immutable MetricSample from raw counters."""
    used = max(0, counters.system_total - counters.system_free)
    available = counters.system_available
    if available is None:
        available = counters.system_free

    return MetricSample(
        timestamp=timestamp,
        session_id=session_id,
        process=ProcessMetrics(
            rss=counters.rss,
            heap_total=counters.heap_total,
            heap_used=counters.heap_used,
            external=counters.external,
            heap_utilization=_ratio(counters.heap_used, counters.heap_total),
            rss_utilization=_ratio(counters.rss, counters.system_total),
        ),
        system=SystemMetrics(
            total=counters.system_total,
            free=counters.system_free,
            used=used,
            utilization=_ratio(used, counters.system_total),
            available=available,
        ),
        gc=GCMetrics(
            bytes_reclaimed=counters.gc_bytes_reclaimed,
            duration_ms=counters.gc_duration_ms,
        ),
        fragmentation=compute_fragmentation(
            counters.rss, counters.heap_total, counters.heap_used, fragmentation_threshold,
        ),
    )


def growth_between(previous: MetricSample, current: MetricSample) -> Tuple[float, float]:
    """Relative (rss, heap_used) growth from previous to current."""
    rss_growth = _ratio(current.process.rss - previous.process.rss, previous.process.rss)
    heap_growth = _ratio(current.process.heap_used - previous.process.heap_used,
                         previous.process.heap_used)
    return rss_growth, heap_growth


def _rss_changes(window: Sequence[MetricSample]) -> List[float]:
    return [growth_between(window[i - 1], window[i])[0] for i in range(1, len(window))]


# =============================================================================
# LEAK HEURISTICS
# =============================================================================

def detect_sustained_growth(
    window: Sequence[MetricSample],
    epsilon: float = DetectionThresholds.GROWTH_EPSILON,
) -> PatternScore:
    """Fraction of adjacent pairs whose RSS grew by more than epsilon."""
    rates = _rss_changes(window)
    if not rates:
        return PatternScore(False, 0.0, {'positive_growth_ratio': 0.0, 'average_growth_rate': 0.0})

    score = sum(1 for r in rates if r > epsilon) / len(rates)
    return PatternScore(
        detected=score > DetectionThresholds.SUSTAINED_DETECTED,
        score=score,
        details={'positive_growth_ratio': score, 'average_growth_rate': _mean(rates)},
    )


def detect_staircase(
    window: Sequence[MetricSample],
    plateau_threshold: float = DetectionThresholds.PLATEAU_THRESHOLD,
    jump_threshold: float = DetectionThresholds.JUMP_THRESHOLD,
) -> PatternScore:
    """Allocate-hold-allocate: ratio of RSS jumps to plateaus."""
    plateaus = 0
    jumps = 0
    for change in _rss_changes(window):
        magnitude = abs(change)
        if magnitude < plateau_threshold:
            plateaus += 1
        elif magnitude > jump_threshold:
            jumps += 1

    ratio = jumps / plateaus if plateaus > 0 else 0.0
    return PatternScore(
        detected=ratio > DetectionThresholds.STAIRCASE_DETECTED,
        score=min(ratio, 1.0),
        details={'plateau_count': plateaus, 'jump_count': jumps, 'ratio': ratio},
    )


def detect_gc_inefficiency(window: Sequence[MetricSample]) -> PatternScore:
    """Low reclaimed/heap_used across the window means the collector is not keeping up."""
    efficiencies = [
        _ratio(s.gc.bytes_reclaimed, s.process.heap_used) if s.gc.bytes_reclaimed else 0.0
        for s in window
    ]
    average = _mean(efficiencies)
    score = max(0.0, 1.0 - average * DetectionThresholds.GC_EFFICIENCY_SCALE)
    return PatternScore(
        detected=score > DetectionThresholds.GC_INEFFICIENCY_DETECTED,
        score=score,
        details={'average_efficiency': average, 'samples': len(efficiencies)},
    )


def detect_leaks(
    window: Sequence[MetricSample],
    epsilon: float = DetectionThresholds.GROWTH_EPSILON,
    plateau_threshold: float = DetectionThresholds.PLATEAU_THRESHOLD,
    jump_threshold: float = DetectionThresholds.JUMP_THRESHOLD,
    timestamp: Optional[float] = None,
) -> LeakSignal:
    """Run all three heuristics over the window and combine them."""
    sustained = detect_sustained_growth(window, epsilon)
    staircase = detect_staircase(window, plateau_threshold, jump_threshold)
    gc_inefficiency = detect_gc_inefficiency(window)

    if timestamp is None:
        timestamp = window[-1].timestamp if window else 0.0

    return LeakSignal(
        timestamp=timestamp,
        sustained=sustained,
        staircase=staircase,
        gc_inefficiency=gc_inefficiency,
        overall_score=(sustained.score + staircase.score + gc_inefficiency.score) / 3,
    )


# =============================================================================
# TREND
# =============================================================================

def compute_trend(history: Sequence[MetricSample],
                  window: int = DetectionThresholds.TREND_WINDOW) -> Trend:
    """
    Compare the mean RSS of the most recent window against the one before.

    Confidence is 1 minus the coefficient of variation of the recent window.
    """
    if len(history) <= window:
        return Trend(TrendDirection.INSUFFICIENT_DATA)

    samples = list(history)
    recent = [s.process.rss for s in samples[-window:]]
    older = [s.process.rss for s in samples[-2 * window:-window]]

    recent_avg = _mean(recent)
    older_avg = _mean(older)

    if recent_avg > older_avg:
        direction = TrendDirection.INCREASING
    elif recent_avg < older_avg:
        direction = TrendDirection.DECREASING
    else:
        direction = TrendDirection.STABLE

    variance = _mean([(v - recent_avg) ** 2 for v in recent])
    coefficient = _ratio(math.sqrt(variance), recent_avg)

    return Trend(
        direction=direction,
        rate=_ratio(recent_avg - older_avg, older_avg),
        confidence=max(0.0, 1.0 - coefficient),
    )


# =============================================================================
# THRESHOLDS
# =============================================================================

def metric_values(sample: MetricSample):
    """The values each thresholded alert type is judged on."""
    return (
        (AlertType.SYSTEM_MEMORY, sample.system.utilization),
        (AlertType.HEAP_PRESSURE, sample.process.heap_utilization),
        (AlertType.MEMORY_FRAGMENTATION, sample.fragmentation.score),
    )


def evaluate_thresholds(sample: MetricSample, thresholds) -> List[ThresholdCrossing]:
    """
    One crossing per metric at most: the highest tier reached.

    ``thresholds`` is a ThresholdSet (system_memory, heap, fragmentation).
    """
    tiers_by_type = {
        AlertType.SYSTEM_MEMORY: thresholds.system_memory,
        AlertType.HEAP_PRESSURE: thresholds.heap,
        AlertType.MEMORY_FRAGMENTATION: thresholds.fragmentation,
    }

    crossings = []
    for alert_type, value in metric_values(sample):
        reached = tiers_by_type[alert_type].highest_reached(value)
        if reached is None:
            continue
        level, threshold = reached
        crossings.append(ThresholdCrossing(
            alert_type=alert_type,
            level=level,
            value=value,
            threshold=threshold,
            timestamp=sample.timestamp,
        ))
    return crossings
