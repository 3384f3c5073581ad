"""
Observability module for the HarperDB client.

Provides:
- OpenTelemetry distributed tracing around operation requests
- Latency percentiles, error and cache counters per operation
- Prometheus exposition of the collected metrics
"""

import time
import logging
import statistics
from typing import Any, Optional
from collections import defaultdict, deque
from contextlib import asynccontextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================

class Tracer:
    """
    OpenTelemetry spans around HarperDB operations.

    Spans are created from whatever tracer provider the application installed.
    If none is installed, an SDK provider named after `service_name` is
    registered. Every span carries `db.system=harperdb`; when tracing is
    disabled, span() yields None and records nothing.
    """

    DB_SYSTEM = "harperdb"

    def __init__(self, service_name: str = "harperdb-client", enabled: bool = True):
        self.service_name = service_name
        self.enabled = enabled
        self._tracer = self._get_tracer(service_name) if enabled else None

    @staticmethod
    def _get_tracer(service_name: str):
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME

        if not isinstance(trace.get_tracer_provider(), TracerProvider):
            trace.set_tracer_provider(
                TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))
            )
            logger.info(f"OpenTelemetry tracer provider registered for {service_name}")
        return trace.get_tracer(__name__)

    @asynccontextmanager
    async def span(self, name: str, attributes: Optional[dict[str, Any]] = None):
        """
        Open a span for one operation request.

        Args:
            name: Span name, e.g. "harperdb.search_by_value"
            attributes: Extra attributes; None values are dropped and
                non-primitive values are stringified

        Yields:
            The active span, or None when tracing is disabled
        """
        if self._tracer is None:
            yield None
            return

        from opentelemetry import trace

        with self._tracer.start_as_current_span(
            name, record_exception=False, set_status_on_exception=False
        ) as span:
            span.set_attribute("db.system", self.DB_SYSTEM)
            for key, value in (attributes or {}).items():
                if value is not None:
                    span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise
            span.set_status(trace.Status(trace.StatusCode.OK))


# ============================================================================
# Metrics
# ============================================================================

class PercentileTracker:
    """
    Track percentile latencies (p50, p95, p99) efficiently.

    Uses a sliding window to avoid unbounded memory growth.
    """

    def __init__(self, window_size: int = 1000, percentiles: list[float] = None):
        self.window_size = window_size
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self.samples = deque(maxlen=window_size)

    def record(self, value: float):
        """Record a sample."""
        self.samples.append(value)

    def get_percentiles(self) -> dict[str, float]:
        """
        Calculate percentile values.

        Returns:
            Dictionary with keys like "p50", "p95", "p99"
        """
        if not self.samples:
            return {f"p{int(p*100)}": 0.0 for p in self.percentiles}

        if len(self.samples) == 1:
            only = self.samples[0]
            return {f"p{int(p*100)}": only for p in self.percentiles}

        cut_points = statistics.quantiles(self.samples, n=100, method='inclusive')
        return {
            f"p{int(p*100)}": cut_points[max(int(p * 100) - 1, 0)]
            for p in self.percentiles
        }

    def get_stats(self) -> dict[str, Any]:
        """
        Get comprehensive statistics.

        Returns:
            Dictionary with percentiles, avg, min, max, count
        """
        if not self.samples:
            return {
                "count": 0,
                "avg": 0.0,
                "min": 0.0,
                "max": 0.0,
                **self.get_percentiles()
            }

        return {
            "count": len(self.samples),
            "avg": statistics.mean(self.samples),
            "min": min(self.samples),
            "max": max(self.samples),
            **self.get_percentiles()
        }


class EnhancedMetrics:
    """
    Client metrics with percentile latencies and operation tracking.

    Tracks:
    - Latency percentiles per operation
    - Request and error counts
    - Retries
    - Cache hit rates
    - Batch jobs and their item outcomes

    Counters are mirrored into a private prometheus_client registry so they can
    be scraped or pushed without touching the global default registry.
    """

    def __init__(self, service_name: str = "harperdb_client", percentiles: list[float] = None):
        self.service_name = service_name
        self.percentiles = percentiles or [0.5, 0.95, 0.99]

        self.latencies: dict[str, PercentileTracker] = defaultdict(
            lambda: PercentileTracker(percentiles=self.percentiles)
        )
        self.operation_counts: dict[str, int] = defaultdict(int)
        self.error_counts: dict[str, int] = defaultdict(int)
        self.error_types: dict[str, int] = defaultdict(int)

        self.cache_hits = 0
        self.cache_misses = 0
        self.retries = 0

        self.batch_count = 0
        self.batch_items_succeeded = 0
        self.batch_items_failed = 0

        self.start_time = time.time()
        self._init_registry()

    def _init_registry(self):
        self.registry = CollectorRegistry()
        self._prom_operations = Counter(
            "harperdb_operations", "Operations sent to HarperDB",
            ["operation"], registry=self.registry,
        )
        self._prom_errors = Counter(
            "harperdb_errors", "Operations that failed",
            ["operation", "error_type"], registry=self.registry,
        )
        self._prom_latency = Histogram(
            "harperdb_latency_seconds", "Operation latency",
            ["operation"], registry=self.registry,
        )
        self._prom_cache = Counter(
            "harperdb_cache_lookups", "Response cache lookups",
            ["result"], registry=self.registry,
        )
        self._prom_retries = Counter(
            "harperdb_retries", "Transport retries", registry=self.registry,
        )
        self._prom_batch_items = Counter(
            "harperdb_batch_items", "Items processed by batch jobs",
            ["outcome"], registry=self.registry,
        )

    def record_latency(self, operation: str, latency_ms: float):
        """Record operation latency in milliseconds."""
        self.latencies[operation].record(latency_ms)
        self.operation_counts[operation] += 1
        self._prom_operations.labels(operation=operation).inc()
        self._prom_latency.labels(operation=operation).observe(latency_ms / 1000)

    def record_error(self, operation: str, error_type: str | None = None):
        """Record operation error."""
        self.error_counts[operation] += 1
        if error_type:
            self.error_types[error_type] += 1
        self._prom_errors.labels(operation=operation, error_type=error_type or "unknown").inc()

    def record_query(self, operation: str, latency_ms: float, success: bool = True, error_type: str | None = None):
        """
        Record one executed operation.

        Args:
            operation: Operation name (e.g., 'insert', 'sql')
            latency_ms: Latency in milliseconds
            success: Whether the operation succeeded
            error_type: Type of error if it failed
        """
        self.record_latency(operation, latency_ms)
        if not success:
            self.record_error(operation, error_type)

    def record_cache_hit(self):
        """Record cache hit."""
        self.cache_hits += 1
        self._prom_cache.labels(result="hit").inc()

    def record_cache_miss(self):
        """Record cache miss."""
        self.cache_misses += 1
        self._prom_cache.labels(result="miss").inc()

    def record_retry(self):
        """Record a transport retry."""
        self.retries += 1
        self._prom_retries.inc()

    def record_batch(self, successful: int, failed: int, latency_ms: float, batch_type: str = "bulk"):
        """
        Record a finished batch job.

        Args:
            successful: Items that succeeded
            failed: Items that failed
            latency_ms: Job duration in milliseconds
            batch_type: "bulk" or "parallel"
        """
        self.batch_count += 1
        self.batch_items_succeeded += successful
        self.batch_items_failed += failed
        self.latencies[f"batch_{batch_type}"].record(latency_ms)
        self._prom_batch_items.labels(outcome="success").inc(successful)
        self._prom_batch_items.labels(outcome="failure").inc(failed)

    def get_latency_stats(self, operation: str) -> dict[str, Any]:
        """Get latency statistics for a specific operation."""
        return self.latencies[operation].get_stats()

    def get_stats(self) -> dict[str, Any]:
        """
        Get all metrics.

        Returns:
            Metrics dictionary
        """
        elapsed_seconds = time.time() - self.start_time
        total_operations = sum(self.operation_counts.values())
        total_errors = sum(self.error_counts.values())
        total_cache_accesses = self.cache_hits + self.cache_misses

        return {
            "uptime_seconds": elapsed_seconds,
            "operations": {
                "total": total_operations,
                "rate_per_sec": total_operations / elapsed_seconds if elapsed_seconds > 0 else 0.0,
                "by_type": dict(self.operation_counts),
            },
            "errors": {
                "total": total_errors,
                "rate": total_errors / total_operations if total_operations > 0 else 0.0,
                "by_type": dict(self.error_counts),
                "by_error": dict(self.error_types),
            },
            "latencies": {
                operation: tracker.get_stats()
                for operation, tracker in self.latencies.items()
            },
            "cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": self.cache_hits / total_cache_accesses if total_cache_accesses > 0 else 0.0,
            },
            "retries": self.retries,
            "batches": {
                "total": self.batch_count,
                "items_succeeded": self.batch_items_succeeded,
                "items_failed": self.batch_items_failed,
            },
        }

    def reset(self):
        """Reset all metrics counters."""
        self.latencies.clear()
        self.operation_counts.clear()
        self.error_counts.clear()
        self.error_types.clear()
        self.cache_hits = 0
        self.cache_misses = 0
        self.retries = 0
        self.batch_count = 0
        self.batch_items_succeeded = 0
        self.batch_items_failed = 0
        self.start_time = time.time()
        self._init_registry()

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text exposition format.

        Returns:
            Prometheus-formatted metrics string
        """
        return generate_latest(self.registry).decode("utf-8")
