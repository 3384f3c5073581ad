"""
Tests for metrics collection, Prometheus export and tracing spans.
"""

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from vertector_harperdb.observability import EnhancedMetrics, PercentileTracker, Tracer


@pytest.mark.unit
class TestPercentileTracker:
    """Test sliding-window percentiles."""

    def test_empty(self):
        assert PercentileTracker().get_percentiles() == {"p50": 0.0, "p95": 0.0, "p99": 0.0}

    def test_single_sample(self):
        tracker = PercentileTracker()
        tracker.record(4.0)
        assert tracker.get_stats()["p99"] == 4.0

    def test_window_bounded(self):
        tracker = PercentileTracker(window_size=3)
        for value in range(10):
            tracker.record(float(value))
        assert list(tracker.samples) == [7.0, 8.0, 9.0]

    def test_stats(self):
        tracker = PercentileTracker()
        for value in (1.0, 2.0, 3.0):
            tracker.record(value)
        stats = tracker.get_stats()
        assert stats["count"] == 3
        assert stats["avg"] == 2.0
        assert stats["min"] == 1.0
        assert stats["max"] == 3.0


@pytest.mark.unit
class TestEnhancedMetrics:
    """Test counters and exposition."""

    def test_query_and_error_counts(self):
        metrics = EnhancedMetrics()
        metrics.record_query("sql", 12.0)
        metrics.record_query("sql", 30.0, success=False, error_type="QueryExecutionError")

        stats = metrics.get_stats()
        assert stats["operations"]["by_type"] == {"sql": 2}
        assert stats["errors"]["by_type"] == {"sql": 1}
        assert stats["errors"]["by_error"] == {"QueryExecutionError": 1}
        assert stats["errors"]["rate"] == 0.5

    def test_cache_hit_rate(self):
        metrics = EnhancedMetrics()
        metrics.record_cache_hit()
        metrics.record_cache_miss()
        metrics.record_cache_miss()
        metrics.record_cache_hit()
        assert metrics.get_stats()["cache"]["hit_rate"] == 0.5

    def test_batch_totals(self):
        metrics = EnhancedMetrics()
        metrics.record_batch(1500, 1000, 42.0, batch_type="insert")
        batches = metrics.get_stats()["batches"]
        assert batches == {"total": 1, "items_succeeded": 1500, "items_failed": 1000}
        assert metrics.get_latency_stats("batch_insert")["count"] == 1

    def test_prometheus_export(self):
        metrics = EnhancedMetrics()
        metrics.record_query("describe_table", 5.0)
        metrics.record_retry()

        text = metrics.export_prometheus()

        assert 'harperdb_operations_total{operation="describe_table"} 1.0' in text
        assert "harperdb_retries_total 1.0" in text

    def test_private_registries(self):
        """Test that two instances do not collide in one process."""
        first, second = EnhancedMetrics(), EnhancedMetrics()
        first.record_retry()
        assert "harperdb_retries_total 0.0" in second.export_prometheus()

    def test_reset(self):
        metrics = EnhancedMetrics()
        metrics.record_query("sql", 1.0)
        metrics.record_retry()
        metrics.reset()
        stats = metrics.get_stats()
        assert stats["operations"]["total"] == 0
        assert stats["retries"] == 0


@pytest.mark.unit
class TestTracer:
    """Test span creation."""

    @pytest.mark.asyncio
    async def test_disabled_yields_none(self):
        tracer = Tracer(enabled=False)
        async with tracer.span("harperdb.sql") as span:
            assert span is None

    @pytest.mark.asyncio
    async def test_spans_exported(self):
        """Test that spans carry attributes and error status."""
        tracer = Tracer(service_name="harperdb-test")
        exporter = InMemorySpanExporter()
        trace.get_tracer_provider().add_span_processor(SimpleSpanProcessor(exporter))

        async with tracer.span("harperdb.describe_table", {"table": "dog", "schema": None, "records": [1]}):
            pass
        with pytest.raises(RuntimeError):
            async with tracer.span("harperdb.sql"):
                raise RuntimeError("boom")

        spans = {s.name: s for s in exporter.get_finished_spans()}
        ok = spans["harperdb.describe_table"]
        assert ok.attributes["table"] == "dog"
        assert ok.attributes["db.system"] == "harperdb"
        assert "schema" not in ok.attributes
        assert ok.attributes["records"] == "[1]"
        assert spans["harperdb.sql"].status.status_code == trace.StatusCode.ERROR
