"""Monitoring and metrics utilities."""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import structlog
from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = structlog.get_logger(__name__)


class Metrics:
    """Prometheus metrics for the streaming service.

    Each instance owns its registry so the service (and tests) can build
    more than one without colliding in the process-wide default registry.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize metrics."""
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        # HTTP metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code", "service"],
            registry=self.registry,
        )

        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint", "service"],
            registry=self.registry,
        )

        # Streaming metrics
        self.active_sessions = Gauge(
            "streaming_active_sessions",
            "Number of active streaming sessions",
            ["service"],
            registry=self.registry,
        )

        self.active_connections = Gauge(
            "active_connections",
            "Number of active socket connections",
            ["service"],
            registry=self.registry,
        )

        self.audio_chunks_total = Counter(
            "audio_chunks_total",
            "Audio chunks received",
            ["service", "outcome"],  # outcome: accepted, dropped, rejected
            registry=self.registry,
        )

        self.transcript_updates_total = Counter(
            "transcript_updates_total",
            "Transcript updates broadcast",
            ["service", "kind"],  # kind: partial, final
            registry=self.registry,
        )

        self.session_duration_seconds = Histogram(
            "streaming_session_duration_seconds",
            "Streaming session duration in seconds",
            ["service"],
            buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
            registry=self.registry,
        )

        # Usage metrics
        self.usage_denials_total = Counter(
            "usage_denials_total",
            "Usage checks that denied a request",
            ["service", "category"],
            registry=self.registry,
        )

        self.translation_requests_total = Counter(
            "translation_requests_total",
            "Translation calls",
            ["service", "status"],  # status: success, error
            registry=self.registry,
        )

        # Error metrics
        self.errors_total = Counter(
            "errors_total",
            "Total errors",
            ["service", "type", "component"],
            registry=self.registry,
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration: float,
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=status_code,
            service=self.service_name,
        ).inc()

        self.http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint,
            service=self.service_name,
        ).observe(duration)

    def set_active_sessions(self, count: int) -> None:
        """Set active streaming sessions count."""
        self.active_sessions.labels(service=self.service_name).set(count)

    def set_active_connections(self, count: int) -> None:
        """Set active connections count."""
        self.active_connections.labels(service=self.service_name).set(count)

    def record_chunk(self, outcome: str) -> None:
        """Record an audio chunk outcome."""
        self.audio_chunks_total.labels(service=self.service_name, outcome=outcome).inc()

    def record_transcript_update(self, is_final: bool) -> None:
        """Record a broadcast transcript update."""
        self.transcript_updates_total.labels(
            service=self.service_name,
            kind="final" if is_final else "partial",
        ).inc()

    def record_session_duration(self, seconds: float) -> None:
        """Record a completed session duration."""
        self.session_duration_seconds.labels(service=self.service_name).observe(seconds)

    def record_usage_denial(self, category: str) -> None:
        """Record a usage denial."""
        self.usage_denials_total.labels(service=self.service_name, category=category).inc()

    def record_translation(self, success: bool) -> None:
        """Record a translation call."""
        self.translation_requests_total.labels(
            service=self.service_name,
            status="success" if success else "error",
        ).inc()

    def record_error(self, error_type: str, component: str) -> None:
        """Record error metrics."""
        self.errors_total.labels(
            service=self.service_name,
            type=error_type,
            component=component,
        ).inc()


# Global metrics instance
_metrics: Optional[Metrics] = None


def init_metrics(service_name: str) -> Metrics:
    """Initialize global metrics."""
    global _metrics
    _metrics = Metrics(service_name)
    return _metrics


def get_metrics() -> Optional[Metrics]:
    """Get global metrics instance."""
    return _metrics


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    content = generate_latest(_metrics.registry) if _metrics else b""
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )


class HealthChecker:
    """Health check utilities."""

    def __init__(self) -> None:
        """Initialize health checker."""
        self.checks: Dict[str, Callable[[], Any]] = {}
        self._healthy = True

    def add_check(self, name: str, check_func: Callable[[], Any]) -> None:
        """Add a health check."""
        self.checks[name] = check_func

    async def check_health(self) -> Dict[str, Any]:
        """Run all health checks."""
        results = {}
        overall_healthy = True

        for name, check_func in self.checks.items():
            try:
                if asyncio.iscoroutinefunction(check_func):
                    healthy = await check_func()
                else:
                    healthy = check_func()

                results[name] = {
                    "status": "healthy" if healthy else "unhealthy",
                    "timestamp": time.time(),
                }

                if not healthy:
                    overall_healthy = False

            except Exception as e:
                results[name] = {
                    "status": "error",
                    "error": str(e),
                    "timestamp": time.time(),
                }
                overall_healthy = False

        self._healthy = overall_healthy

        return {
            "status": "healthy" if overall_healthy else "unhealthy",
            "checks": results,
            "timestamp": time.time(),
        }

    @property
    def healthy(self) -> bool:
        """Get current health status."""
        return self._healthy
