"""
Latency Monitor - Stage timing for the swap pipeline

Tracks per-order stage durations:
- quote: one venue quote call (keyed by venue)
- routing: full route selection
- execution: venue execution call
- end_to_end: admission to terminal status

Keeps rolling statistics per stage and raises threshold alerts.
One monitor is owned by each ExecutionEngine; there is no global instance.
"""

import time
import threading
import statistics
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Any

from loguru import logger

from .order_schemas import utc_now


@dataclass
class LatencyStats:
    """Statistical summary of one stage"""

    metric_name: str
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    min_value: float = float('inf')
    max_value: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'metric_name': self.metric_name,
            'count': self.count,
            'mean': self.mean,
            'median': self.median,
            'p95': self.p95,
            'p99': self.p99,
            'min': self.min_value,
            'max': self.max_value
        }


class LatencyTimer:
    """
    Millisecond timer on time.perf_counter()

    Usable as a context manager.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self.start_time = 0.0
        self.end_time = 0.0
        self.is_running = False

    def start(self) -> 'LatencyTimer':
        self.start_time = time.perf_counter()
        self.is_running = True
        return self

    def stop(self) -> float:
        """Stop the timer and return elapsed milliseconds"""
        if not self.is_running:
            return 0.0
        self.end_time = time.perf_counter()
        self.is_running = False
        return (self.end_time - self.start_time) * 1000.0

    def elapsed_ms(self) -> float:
        if self.is_running:
            return (time.perf_counter() - self.start_time) * 1000.0
        return (self.end_time - self.start_time) * 1000.0

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


def _percentile(sorted_values: List[float], pct: float) -> float:
    idx = min(int(pct / 100.0 * len(sorted_values)), len(sorted_values) - 1)
    return sorted_values[idx]


class LatencyMonitor:
    """
    Thread-safe stage latency tracking with rolling history
    """

    DEFAULT_THRESHOLDS_MS = {
        'quote': 1000.0,
        'routing': 2000.0,
        'execution': 10000.0,
        'end_to_end': 30000.0
    }

    def __init__(self, history_size: int = 10000, max_tracked_orders: int = 10000):
        self.history_size = history_size
        self.max_tracked_orders = max_tracked_orders

        self._lock = threading.RLock()
        self._active_timers: Dict[str, Dict[str, LatencyTimer]] = defaultdict(dict)
        self._measurements: Dict[str, deque] = defaultdict(lambda: deque(maxlen=history_size))
        self._order_metrics: Dict[str, Dict[str, float]] = {}
        self._alert_thresholds = dict(self.DEFAULT_THRESHOLDS_MS)
        self._alerts: deque = deque(maxlen=100)
        self._start_time: datetime = utc_now()

    def create_timer(self, name: str = "") -> LatencyTimer:
        """Standalone timer, not tied to an order"""
        return LatencyTimer(name)

    def start_timer(self, key: str, metric_name: str) -> LatencyTimer:
        with self._lock:
            timer = LatencyTimer(f"{key}_{metric_name}").start()
            self._active_timers[key][metric_name] = timer
            return timer

    def stop_timer(self, key: str, metric_name: str) -> float:
        """Stop a running timer and record it; 0.0 when no such timer is running"""
        with self._lock:
            timer = self._active_timers.get(key, {}).pop(metric_name, None)
            if timer is None:
                return 0.0
            if not self._active_timers[key]:
                del self._active_timers[key]
            elapsed_ms = timer.stop()
            self._record(key, metric_name, elapsed_ms)
            return elapsed_ms

    def discard_timers(self, key: str) -> None:
        """Drop running timers for a key without recording them"""
        with self._lock:
            self._active_timers.pop(key, None)

    def record_latency(self, key: str, metric_name: str, latency_ms: float) -> None:
        with self._lock:
            self._record(key, metric_name, latency_ms)

    def _record(self, key: str, metric_name: str, latency_ms: float) -> None:
        self._measurements[metric_name].append(latency_ms)

        if key not in self._order_metrics and len(self._order_metrics) >= self.max_tracked_orders:
            # Forget the oldest tracked key
            self._order_metrics.pop(next(iter(self._order_metrics)))
        self._order_metrics.setdefault(key, {})[metric_name] = latency_ms

        threshold = self._alert_thresholds.get(metric_name)
        if threshold and latency_ms > threshold:
            severity = 'HIGH' if latency_ms > threshold * 2 else 'MEDIUM'
            self._alerts.append({
                'timestamp': utc_now(),
                'key': key,
                'metric': metric_name,
                'value': latency_ms,
                'threshold': threshold,
                'severity': severity
            })
            logger.warning(f"Slow {metric_name} for {key}: {latency_ms:.1f}ms (threshold {threshold:.0f}ms)")

    def get_order_metrics(self, key: str) -> Optional[Dict[str, float]]:
        with self._lock:
            metrics = self._order_metrics.get(key)
            return dict(metrics) if metrics is not None else None

    def get_stats(self, metric_name: Optional[str] = None) -> Dict[str, LatencyStats]:
        with self._lock:
            names = [metric_name] if metric_name else list(self._measurements)
            return {name: self._compute_stats(name) for name in names}

    def _compute_stats(self, metric_name: str) -> LatencyStats:
        values = sorted(self._measurements.get(metric_name, ()))
        if not values:
            return LatencyStats(metric_name=metric_name)
        return LatencyStats(
            metric_name=metric_name,
            count=len(values),
            mean=statistics.mean(values),
            median=statistics.median(values),
            p95=_percentile(values, 95),
            p99=_percentile(values, 99),
            min_value=values[0],
            max_value=values[-1]
        )

    def set_alert_threshold(self, metric_name: str, threshold_ms: float) -> None:
        with self._lock:
            self._alert_thresholds[metric_name] = threshold_ms

    def get_recent_alerts(self, count: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._alerts)[-count:]

    def get_summary(self) -> Dict[str, Any]:
        """Uptime, alert count and per-stage statistics"""
        with self._lock:
            return {
                'uptime_seconds': (utc_now() - self._start_time).total_seconds(),
                'active_timers': sum(len(timers) for timers in self._active_timers.values()),
                'tracked_orders': len(self._order_metrics),
                'alerts': len(self._alerts),
                'metrics': {name: self._compute_stats(name).to_dict() for name in self._measurements}
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._measurements.clear()
            self._order_metrics.clear()
            self._alerts.clear()
            self._start_time = utc_now()
