"""
Shared metrics configuration for the validation gate.
"""

from prometheus_client import Counter, Histogram, CollectorRegistry, REGISTRY
from typing import Dict, Any, Optional
import threading


class MetricsCollector:
    """Centralized metrics collector for the gate."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up metrics for the service."""

        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["gate_validations_total"] = Counter(
            "gate_validations_total",
            "Total validation gate invocations",
            ["validator", "outcome", "kind"],
            registry=self.registry
        )

        self._metrics["jwks_fetch_total"] = Counter(
            "jwks_fetch_total",
            "Total key set fetches",
            ["status"],
            registry=self.registry
        )

        self._metrics["jwks_fetch_duration_seconds"] = Histogram(
            "jwks_fetch_duration_seconds",
            "Key set fetch duration in seconds",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_validation(self, validator: str, outcome: str, kind: str = ""):
        """Record one gate outcome."""
        self._metrics["gate_validations_total"].labels(
            validator=validator,
            outcome=outcome,
            kind=kind
        ).inc()

    def record_jwks_fetch(self, status: str, duration: float):
        """Record one key set fetch."""
        self._metrics["jwks_fetch_total"].labels(status=status).inc()
        self._metrics["jwks_fetch_duration_seconds"].observe(duration)


_default_collector: Optional[MetricsCollector] = None
_default_lock = threading.Lock()


def get_metrics_collector(service_name: str = "gate", registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector.

    Without an explicit registry every caller shares one collector, since
    prometheus refuses to register the same metric name twice.
    """
    global _default_collector

    if registry is not None:
        return MetricsCollector(service_name, registry)

    with _default_lock:
        if _default_collector is None:
            _default_collector = MetricsCollector(service_name)
        return _default_collector
