"""Observability module for crust.

Provides structured logging with order/customer correlation and
Prometheus metrics for the cache, aggregation and background pool.
"""

from crust.observability.logging import (
    LogContext,
    configure_logging,
    customer_id_var,
    order_id_var,
    request_id_var,
)
from crust.observability.metrics import get_metrics, metrics_registry

__all__ = [
    # Logging
    "configure_logging",
    "LogContext",
    "request_id_var",
    "order_id_var",
    "customer_id_var",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
