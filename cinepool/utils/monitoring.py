"""
Monitoring and metrics collection for worker pools and spawned workers.
"""

import time
import logging
from typing import Dict, Optional, Any, List
from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, start_http_server


@dataclass
class MetricPoint:
    """Individual metric data point."""
    timestamp: float
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class Metric:
    """Metric container with history."""
    name: str
    description: str
    metric_type: str  # counter, gauge, histogram
    points: List[MetricPoint] = field(default_factory=list)
    current_value: float = 0.0


def _metric_key(name: str, labels: Dict[str, str]) -> str:
    if not labels:
        return name
    rendered = ','.join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}{{{rendered}}}"


class MetricsCollector:
    """Collects and manages execution metrics."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.metrics: Dict[str, Metric] = {}
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port

        self.prometheus_registry = CollectorRegistry()
        self.prometheus_metrics = {
            'tasks_total': Counter(
                'cinepool_tasks_total',
                'Pool tasks settled, by pool and outcome',
                ['pool', 'outcome'],
                registry=self.prometheus_registry
            ),
            'task_duration_seconds': Histogram(
                'cinepool_task_duration_seconds',
                'Time a task occupied a worker unit',
                ['pool'],
                registry=self.prometheus_registry
            ),
            'queue_size': Gauge(
                'cinepool_queue_size',
                'Tasks waiting for an idle worker unit',
                ['pool'],
                registry=self.prometheus_registry
            ),
            'busy_units': Gauge(
                'cinepool_busy_units',
                'Worker units currently running a task',
                ['pool'],
                registry=self.prometheus_registry
            ),
            'unit_respawns_total': Counter(
                'cinepool_unit_respawns_total',
                'Worker units replaced after a crash or timeout',
                ['pool', 'reason'],
                registry=self.prometheus_registry
            ),
            'spawns_total': Counter(
                'cinepool_spawns_total',
                'One-off worker runs, by job and outcome',
                ['job', 'outcome'],
                registry=self.prometheus_registry
            ),
        }

    async def start_prometheus_server(self):
        """Start Prometheus metrics HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.prometheus_registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_metric(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                      description: str = "", metric_type: str = "gauge", delta: float = 0.0):
        """Record a metric value."""
        labels = labels or {}
        key = _metric_key(name, labels)

        if key not in self.metrics:
            self.metrics[key] = Metric(
                name=name,
                description=description,
                metric_type=metric_type
            )

        metric = self.metrics[key]
        metric.points.append(MetricPoint(timestamp=time.time(), value=value, labels=labels))
        metric.current_value = value

        # Keep only recent points (last 1000)
        if len(metric.points) > 1000:
            metric.points = metric.points[-1000:]

        prom_metric = self.prometheus_metrics.get(name)
        if prom_metric is None:
            return
        target = prom_metric.labels(**labels) if labels else prom_metric
        if metric_type == 'counter':
            target.inc(delta)
        elif metric_type == 'histogram':
            target.observe(value)
        else:
            target.set(value)

    def increment_counter(self, name: str, labels: Optional[Dict[str, str]] = None,
                          description: str = ""):
        """Increment a counter metric."""
        current_value = 0
        key = _metric_key(name, labels or {})
        if key in self.metrics:
            current_value = self.metrics[key].current_value

        self.record_metric(name, current_value + 1, labels, description, "counter", delta=1)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  description: str = ""):
        """Set a gauge metric value."""
        self.record_metric(name, value, labels, description, "gauge")

    def observe_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                          description: str = ""):
        """Record a histogram observation."""
        self.record_metric(name, value, labels, description, "histogram")

    def get_value(self, name: str, **labels) -> float:
        """Current value of a metric, 0 if never recorded."""
        metric = self.metrics.get(_metric_key(name, labels))
        return metric.current_value if metric else 0.0

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all metrics."""
        return {key: metric.current_value for key, metric in self.metrics.items()}


class PoolMonitor:
    """High-level monitoring interface for pools and spawned workers."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.start_time = time.time()

    def record_task(self, pool: str, outcome: str, duration: Optional[float] = None):
        """Record a settled pool task."""
        self.metrics.increment_counter('tasks_total', {'pool': pool, 'outcome': outcome},
                                       'Pool tasks settled')
        if duration is not None:
            self.metrics.observe_histogram('task_duration_seconds', duration, {'pool': pool},
                                           'Task duration')

    def update_queue_size(self, pool: str, size: int):
        self.metrics.set_gauge('queue_size', size, {'pool': pool}, 'Tasks in backlog')

    def update_busy_units(self, pool: str, count: int):
        self.metrics.set_gauge('busy_units', count, {'pool': pool}, 'Busy worker units')

    def record_respawn(self, pool: str, reason: str):
        self.metrics.increment_counter('unit_respawns_total', {'pool': pool, 'reason': reason},
                                       'Worker unit respawns')

    def record_spawn(self, job: str, outcome: str):
        self.metrics.increment_counter('spawns_total', {'job': job, 'outcome': outcome},
                                       'One-off worker runs')

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        return {
            'runtime_seconds': time.time() - self.start_time,
            'metrics': self.metrics.get_current_values(),
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> PoolMonitor:
    """Create a monitor backed by a fresh metrics registry."""
    return PoolMonitor(MetricsCollector(enable_prometheus, prometheus_port))
