"""
Tests for Prometheus metrics collection.
"""
import pytest

from eventgate.utils.metrics import (
    MetricsRegistry,
    Counter,
    Gauge,
    Histogram,
    Timer,
    metrics,
)


class TestCounter:
    """Tests for Counter metric type."""

    def test_counter_increment(self):
        """Counter increments correctly."""
        counter = Counter("test_counter", "Test counter")
        counter.inc()
        counter.inc(5)

        values = counter.collect()
        assert len(values) == 1
        assert values[0].value == 6

    def test_counter_with_labels(self):
        """Counter tracks separate values per label combination."""
        counter = Counter("test_counter", "Test counter", ["status"])
        counter.inc(1, status="accepted")
        counter.inc(2, status="duplicate")
        counter.inc(1, status="accepted")

        assert counter.value(status="accepted") == 2
        assert counter.value(status="duplicate") == 2
        assert counter.value(status="failed") == 0


class TestGauge:
    """Tests for Gauge metric type."""

    def test_gauge_set_inc_dec(self):
        gauge = Gauge("test_gauge", "Test gauge", ["priority"])
        gauge.set(10, priority="urgent")
        gauge.inc(2, priority="urgent")
        gauge.dec(5, priority="urgent")

        assert gauge.value(priority="urgent") == 7


class TestHistogram:
    """Tests for Histogram metric type."""

    def test_buckets_are_cumulative(self):
        histogram = Histogram("test_hist", "Test histogram", buckets=(0.1, 1.0))
        histogram.observe(0.05)
        histogram.observe(0.5)

        values = {v.labels.get("le", v.labels.get("_metric")): v.value for v in histogram.collect()}

        assert values["0.1"] == 1
        assert values["1.0"] == 2
        assert values["+Inf"] == 2
        assert values["count"] == 2
        assert values["sum"] == pytest.approx(0.55)

    def test_timer_observes_duration(self):
        histogram = Histogram("test_timer", "Test timer")

        with Timer(histogram, hook="h") as timer:
            pass

        assert timer.duration is not None
        count = next(v for v in histogram.collect() if v.labels.get("_metric") == "count")
        assert count.value == 1


class TestRegistry:

    def test_singleton(self):
        assert MetricsRegistry() is metrics

    def test_export_format(self):
        metrics.events_ingested.inc(event_type="message", status="accepted")
        metrics.job_duration.observe(0.2, hook="process_webhook_message")

        output = metrics.export()

        assert "# TYPE eventgate_events_ingested_total counter" in output
        assert 'eventgate_events_ingested_total{event_type="message",status="accepted"} 1.0' in output
        assert 'eventgate_job_duration_seconds_bucket{hook="process_webhook_message",le="0.25"} 1' in output
        assert 'eventgate_job_duration_seconds_count{hook="process_webhook_message"} 1' in output

    def test_reset_clears_values(self):
        metrics.retries_total.inc(hook="h")
        metrics.reset()
        assert metrics.retries_total.value(hook="h") == 0
