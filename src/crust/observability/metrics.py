"""Prometheus metrics for crust.

Provides metrics for:
- Cache reads (hits, misses) and failures
- Cache invalidation
- Post-order aggregation step outcomes
- Background task pool throughput and queue depth

Usage:
    from crust.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.cache_hits_total.labels(entity="product").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

from crust.config import settings

logger = logging.getLogger(__name__)


class NoOpMetric:
    """No-op metric for when metrics are disabled."""

    def labels(self, **kwargs: Any) -> NoOpMetric:
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def dec(self, amount: float = 1) -> None:
        pass

    def set(self, value: float) -> None:
        pass

    def observe(self, value: float) -> None:
        pass


_NOOP = NoOpMetric()


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Cache metrics
    cache_hits_total: Any = _NOOP
    cache_misses_total: Any = _NOOP
    cache_errors_total: Any = _NOOP
    cache_operation_duration_seconds: Any = _NOOP
    cache_invalidations_total: Any = _NOOP

    # Aggregation metrics
    aggregation_steps_total: Any = _NOOP
    aggregation_skipped_items_total: Any = _NOOP

    # Background pool metrics
    background_tasks_total: Any = _NOOP
    background_queue_depth: Any = _NOOP

    # Realtime channel
    realtime_events_total: Any = _NOOP

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self, enabled: bool | None = None) -> None:
        """Create Prometheus collectors, or leave no-ops when disabled."""
        if self._initialized:
            return

        if enabled is None:
            enabled = settings.enable_metrics
        if not enabled:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = REGISTRY

        self.cache_hits_total = Counter(
            "crust_cache_hits_total",
            "Cache hits",
            ["entity"],
        )
        self.cache_misses_total = Counter(
            "crust_cache_misses_total",
            "Cache misses",
            ["entity"],
        )
        self.cache_errors_total = Counter(
            "crust_cache_errors_total",
            "Cache operations that failed or timed out",
            ["operation"],
        )
        self.cache_operation_duration_seconds = Histogram(
            "crust_cache_operation_duration_seconds",
            "Cache operation latency in seconds",
            ["operation"],
            buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
        )
        self.cache_invalidations_total = Counter(
            "crust_cache_invalidations_total",
            "Cache keys invalidated",
            ["entity"],
        )

        self.aggregation_steps_total = Counter(
            "crust_aggregation_steps_total",
            "Post-order aggregation step outcomes",
            ["step", "outcome"],
        )
        self.aggregation_skipped_items_total = Counter(
            "crust_aggregation_skipped_items_total",
            "Line items skipped because their product no longer exists",
        )

        self.background_tasks_total = Counter(
            "crust_background_tasks_total",
            "Background task lifecycle events",
            ["kind", "outcome"],
        )
        self.background_queue_depth = Gauge(
            "crust_background_queue_depth",
            "Tasks waiting in the background pool queue",
        )

        self.realtime_events_total = Counter(
            "crust_realtime_events_total",
            "Realtime events published",
            ["event_type", "outcome"],
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def record_cache_hit(entity: str) -> None:
    get_metrics().cache_hits_total.labels(entity=entity).inc()


def record_cache_miss(entity: str) -> None:
    get_metrics().cache_misses_total.labels(entity=entity).inc()


def record_cache_error(operation: str) -> None:
    get_metrics().cache_errors_total.labels(operation=operation).inc()


def record_cache_operation(operation: str, duration: float) -> None:
    """Record cache operation duration.

    Args:
        operation: Cache operation (get, set, delete, ...)
        duration: Operation duration in seconds
    """
    get_metrics().cache_operation_duration_seconds.labels(operation=operation).observe(duration)


def record_invalidation(entity: str, count: int) -> None:
    if count:
        get_metrics().cache_invalidations_total.labels(entity=entity).inc(count)


def record_aggregation_step(step: str, outcome: str) -> None:
    """Record a post-order aggregation step.

    Args:
        step: "products" or "customer"
        outcome: "ok", "failed", "skipped"
    """
    get_metrics().aggregation_steps_total.labels(step=step, outcome=outcome).inc()


def record_background_task(kind: str, outcome: str) -> None:
    get_metrics().background_tasks_total.labels(kind=kind, outcome=outcome).inc()


def record_realtime_event(event_type: str, outcome: str) -> None:
    get_metrics().realtime_events_total.labels(event_type=event_type, outcome=outcome).inc()
