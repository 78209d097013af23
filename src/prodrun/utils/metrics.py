"""
In-process metrics for prodrun services.

Request gauges, status counters and resource samples land here. Every
emission is debug-logged; exports carry a ``<project>.<app>.<host>`` prefix.
"""

import socket
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import statistics
from collections import defaultdict, deque
import threading

from .logging import get_logger

logger = get_logger("prodrun.metrics")


def metric_prefix(project_name: str, app_name: str, hostname: Optional[str] = None) -> str:
    """Build the export prefix; dots in the hostname become underscores."""
    host = (hostname or socket.gethostname()).replace(".", "_")
    return f"{project_name}.{app_name}.{host}"


class MetricsCollector:
    """Thread-safe metrics collector."""

    def __init__(self, prefix: str = "", enabled: bool = True):
        self.prefix = prefix
        self.enabled = enabled
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))

    def inc(self, name: str, value: float = 1) -> None:
        """Increment a counter metric."""
        if not self.enabled:
            return
        with self._lock:
            self._counters[name] += value
        logger.debug("metric_inc", metric=name, value=value)

    def gauge(self, name: str, value: float) -> None:
        """Set a gauge metric."""
        if not self.enabled:
            return
        with self._lock:
            self._gauges[name] = value
        logger.debug("metric_gauge", metric=name, value=value)

    def timing(self, name: str, duration: float) -> None:
        """Record a duration in seconds."""
        if not self.enabled:
            return
        with self._lock:
            self._timers[name].append(duration)
        logger.debug("metric_timing", metric=name, value=duration)

    def get_metrics(self) -> Dict[str, Any]:
        """Get all current metrics, keyed by prefixed name."""
        with self._lock:
            metrics: Dict[str, Any] = {
                "prefix": self.prefix,
                "counters": {self._full(k): v for k, v in self._counters.items()},
                "gauges": {self._full(k): v for k, v in self._gauges.items()},
                "timers": {},
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

            for key, durations in self._timers.items():
                if durations:
                    metrics["timers"][self._full(key)] = {
                        "count": len(durations),
                        "min": min(durations),
                        "max": max(durations),
                        "mean": statistics.mean(durations),
                        "median": statistics.median(durations),
                        "p95": self._percentile(durations, 0.95),
                        "p99": self._percentile(durations, 0.99)
                    }

            return metrics

    def get_counter(self, name: str) -> float:
        """Get counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_gauge(self, name: str) -> Optional[float]:
        """Get gauge value."""
        with self._lock:
            return self._gauges.get(name)

    def _full(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def _percentile(self, values: deque, percentile: float) -> float:
        """Calculate percentile of values."""
        sorted_values = sorted(values)
        k = (len(sorted_values) - 1) * percentile
        f = int(k)
        c = k - f

        if f == len(sorted_values) - 1:
            return sorted_values[f]
        else:
            return sorted_values[f] * (1 - c) + sorted_values[f + 1] * c


__all__ = [
    'MetricsCollector',
    'metric_prefix',
]
