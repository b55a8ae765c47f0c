"""Metrics collection for vector store operations.

Provides a thin convenience wrapper around ``prometheus_client`` so every
backend records operation counts, latencies, filter degradations, and pool
occupancy with the same label sets.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A registry is kept per collector (inject one to share with an exporter)
- ``track_operation`` instruments ``VectorStore`` methods in place
"""

import time
from functools import wraps
from typing import Any, Callable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from .logging import log_performance


class MetricsCollector:
    """Centralized metrics collection for vector stores.

    Parameters
    - service_name: Logical name of the process owning the stores
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.vector_store_operations = Counter(
            'vector_store_operations_total',
            'Total vector store operations',
            ['backend', 'operation', 'status'],
            registry=self.registry
        )

        self.vector_store_duration = Histogram(
            'vector_store_operation_duration_seconds',
            'Vector store operation duration',
            ['backend', 'operation'],
            registry=self.registry
        )

        self.filter_fallbacks = Counter(
            'vector_store_filter_fallbacks_total',
            'Filters degraded because the backend lacks a native operator',
            ['backend'],
            registry=self.registry
        )

        self.payload_decode_failures = Counter(
            'vector_store_payload_decode_failures_total',
            'Records skipped because their stored payload could not be decoded',
            ['backend'],
            registry=self.registry
        )

        self.pooled_connections = Gauge(
            'vector_store_pooled_connections',
            'Number of clients held by the connection pool',
            registry=self.registry
        )

    def record_operation(
        self,
        backend: str,
        operation: str,
        status: str,
        duration: float
    ) -> None:
        """Record a vector store operation.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.vector_store_operations.labels(backend=backend, operation=operation, status=status).inc()
        self.vector_store_duration.labels(backend=backend, operation=operation).observe(duration)

    def record_filter_fallback(self, backend: str) -> None:
        """Record a filter translated with a degraded operator."""
        self.filter_fallbacks.labels(backend=backend).inc()

    def record_decode_failure(self, backend: str) -> None:
        """Record a record skipped due to a payload decode failure."""
        self.payload_decode_failures.labels(backend=backend).inc()

    def set_pooled_connections(self, count: int) -> None:
        self.pooled_connections.set(count)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


def track_operation(operation: str) -> Callable:
    """Decorator timing an async ``VectorStore`` method.

    Reads ``self.metrics`` (may be ``None``) and ``self.backend_type`` from
    the instance, so one decorator serves every backend.

    Example
    >>> class MyStore(VectorStore):
    ...     @track_operation("search")
    ...     async def search(self, query, limit=10, filters=None):
    ...         ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            status = "success"
            try:
                return await func(self, *args, **kwargs)
            except Exception:
                status = "error"
                raise
            finally:
                duration = time.perf_counter() - start_time
                collector = getattr(self, "metrics", None)
                if collector is not None:
                    collector.record_operation(self.backend_type, operation, status, duration)
                log_performance(
                    operation,
                    duration * 1000,
                    backend=self.backend_type,
                    status=status
                )
        return wrapper
    return decorator
