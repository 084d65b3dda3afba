"""
Prometheus Metrics Collector

Lightweight metrics collection for observability without external dependencies.
Generates Prometheus text exposition format (text/plain; version=0.0.4).
"""
import time
import threading
from typing import Dict, List, Optional
from dataclasses import dataclass, field


@dataclass
class MetricValue:
    """Single metric value with optional labels."""
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class _LabeledMetric:
    """Shared storage for metrics keyed by label set."""

    metric_type = "untyped"

    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _label_key(labels: Dict[str, str]) -> tuple:
        """Create hashable key from labels."""
        return tuple(sorted((k, str(v)) for k, v in labels.items()))

    def _add(self, amount: float, labels: Dict[str, str]) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        """Current value for one label set (0 if never touched)."""
        with self._lock:
            return self._values.get(self._label_key(labels), 0.0)

    def collect(self) -> List[MetricValue]:
        """Collect all metric values."""
        with self._lock:
            return [
                MetricValue(value=v, labels=dict(k))
                for k, v in self._values.items()
            ]


class Counter(_LabeledMetric):
    """
    Prometheus Counter metric.

    A counter is a cumulative metric that only goes up.
    Used for: ingested events, retries, dead letters, etc.
    """

    metric_type = "counter"

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        """Increment counter by amount."""
        self._add(amount, labels)


class Gauge(_LabeledMetric):
    """
    Prometheus Gauge metric.

    A gauge can go up and down.
    Used for: lane depth, dead-letter backlog, success rate, etc.
    """

    metric_type = "gauge"

    def set(self, value: float, **labels: str) -> None:
        """Set gauge to value."""
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        self._add(amount, labels)

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self._add(-amount, labels)


class Histogram:
    """
    Prometheus Histogram metric.

    Samples observations and counts them in buckets.
    Used for: job processing duration.
    """

    metric_type = "histogram"

    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._values: Dict[tuple, Dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **labels: str) -> None:
        """Record an observation."""
        key = tuple(sorted(labels.items()))
        with self._lock:
            data = self._values.setdefault(key, {
                "buckets": {b: 0 for b in self.buckets},
                "sum": 0.0,
                "count": 0
            })
            data["sum"] += value
            data["count"] += 1

            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def collect(self) -> List[MetricValue]:
        """Collect bucket, sum and count series."""
        result = []
        with self._lock:
            for key, data in self._values.items():
                base_labels = dict(key)

                for bucket in sorted(self.buckets):
                    result.append(MetricValue(
                        value=data["buckets"][bucket],
                        labels={**base_labels, "le": str(bucket)}
                    ))

                result.append(MetricValue(value=data["count"], labels={**base_labels, "le": "+Inf"}))
                result.append(MetricValue(value=data["sum"], labels={**base_labels, "_metric": "sum"}))
                result.append(MetricValue(value=data["count"], labels={**base_labels, "_metric": "count"}))

        return result


class Timer:
    """Context manager for timing code blocks (works around awaits too)."""

    def __init__(self, histogram: Histogram, **labels: str):
        self.histogram = histogram
        self.labels = labels
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        if self.start_time is not None:
            self.duration = time.perf_counter() - self.start_time
            self.histogram.observe(self.duration, **self.labels)


class MetricsRegistry:
    """
    Central registry for all pipeline metrics.

    Provides singleton access and Prometheus text format export.
    """

    _instance: Optional["MetricsRegistry"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetricsRegistry":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._initialized = True

        self._setup_metrics()

    def _setup_metrics(self) -> None:
        """Initialize all pipeline metrics."""

        # ============================================
        # INGESTION METRICS
        # ============================================
        self.events_ingested = self.counter(
            "eventgate_events_ingested_total",
            "Inbound events by type and ingestion outcome",
            ["event_type", "status"]
        )

        self.signature_failures = self.counter(
            "eventgate_webhook_signature_failures_total",
            "Webhook requests rejected by signature validation"
        )

        # ============================================
        # SCHEDULER METRICS
        # ============================================
        self.jobs_scheduled = self.counter(
            "eventgate_jobs_scheduled_total",
            "Jobs scheduled by priority group",
            ["group"]
        )

        self.jobs_rate_limited = self.counter(
            "eventgate_jobs_rate_limited_total",
            "Jobs deferred because their lane hit its per-minute limit",
            ["group"]
        )

        self.retries_total = self.counter(
            "eventgate_job_retries_total",
            "Retries scheduled by hook",
            ["hook"]
        )

        self.queue_pending = self.gauge(
            "eventgate_queue_pending",
            "Pending jobs by priority group",
            ["priority"]
        )

        self.queue_running = self.gauge(
            "eventgate_queue_running",
            "Running jobs by priority group",
            ["priority"]
        )

        # ============================================
        # PROCESSING METRICS
        # ============================================
        self.jobs_processed = self.counter(
            "eventgate_jobs_processed_total",
            "Processor executions by hook and outcome",
            ["hook", "outcome"]
        )

        self.job_duration = self.histogram(
            "eventgate_job_duration_seconds",
            "Processor execution duration",
            ["hook"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
        )

        self.circuit_deferrals = self.counter(
            "eventgate_circuit_deferrals_total",
            "Jobs deferred because their processor's circuit was open",
            ["hook"]
        )

        self.queue_completed_last_day = self.gauge(
            "eventgate_queue_completed_last_day",
            "Jobs completed in the last 24 hours"
        )

        self.queue_success_rate = self.gauge(
            "eventgate_queue_success_rate",
            "Percentage of jobs that completed in the last hour"
        )

        # ============================================
        # DEAD LETTER METRICS
        # ============================================
        self.dead_letters_total = self.counter(
            "eventgate_dead_letters_total",
            "Jobs quarantined by reason",
            ["reason"]
        )

        self.dlq_pending = self.gauge(
            "eventgate_dlq_pending",
            "Dead letter entries awaiting a decision"
        )

    def counter(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None
    ) -> Counter:
        """Create and register a counter."""
        metric = Counter(name, description, labels)
        self._metrics[name] = metric
        return metric

    def gauge(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None
    ) -> Gauge:
        """Create and register a gauge."""
        metric = Gauge(name, description, labels)
        self._metrics[name] = metric
        return metric

    def histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ) -> Histogram:
        """Create and register a histogram."""
        metric = Histogram(name, description, labels, buckets)
        self._metrics[name] = metric
        return metric

    def export(self) -> str:
        """
        Export all metrics in Prometheus text exposition format.

        Format specification:
        https://prometheus.io/docs/instrumenting/exposition_formats/
        """
        lines = []

        for name, metric in self._metrics.items():
            lines.append(f"# HELP {name} {metric.description}")
            lines.append(f"# TYPE {name} {metric.metric_type}")

            for mv in metric.collect():
                metric_name = name
                if isinstance(metric, Histogram):
                    if "_metric" in mv.labels:
                        metric_name = f"{name}_{mv.labels.pop('_metric')}"
                    elif "le" in mv.labels:
                        metric_name = f"{name}_bucket"

                lines.append(f"{metric_name}{self._format_labels(mv.labels)} {mv.value}")

            lines.append("")  # Empty line between metrics

        return "\n".join(lines)

    def _format_labels(self, labels: Dict[str, str]) -> str:
        """Format labels as Prometheus label string."""
        if not labels:
            return ""

        parts = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(parts) + "}"

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        self._metrics.clear()
        self._setup_metrics()


# Global metrics instance
metrics = MetricsRegistry()
