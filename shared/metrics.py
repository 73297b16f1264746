"""
Shared metrics configuration for the throttled listener service.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, start_http_server, CollectorRegistry
from typing import Dict, Any, Optional
import threading


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # Service-specific metrics
        if self.service_name == "listener":
            self._setup_listener_metrics()

    def _setup_listener_metrics(self):
        """Set up listener-specific metrics."""
        self._metrics["listener_connections_accepted_total"] = Counter(
            "listener_connections_accepted_total",
            "Connections admitted past the throttle",
            registry=self.registry
        )

        self._metrics["listener_accept_errors_total"] = Counter(
            "listener_accept_errors_total",
            "Accept failures from the underlying listener",
            ["error_type"],
            registry=self.registry
        )

        self._metrics["listener_throttle_cancelled_total"] = Counter(
            "listener_throttle_cancelled_total",
            "Permit waits aborted by cancellation",
            registry=self.registry
        )

        self._metrics["listener_throttle_wait_seconds"] = Histogram(
            "listener_throttle_wait_seconds",
            "Time accepted connections spent waiting for a permit",
            buckets=(0.0, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry
        )

        self._metrics["listener_permits_available"] = Gauge(
            "listener_permits_available",
            "Permits left in the admission bucket",
            registry=self.registry
        )

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        if self.registry is not None:
            start_http_server(port, registry=self.registry)
        else:
            start_http_server(port)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
