"""
Prometheus metrics for kernel builds, searches, and verification.

All collectors live on a private registry so tests and embedding
applications never collide with the default global registry.
"""

from prometheus_client import (
    Counter, Histogram, Gauge, Info, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST
)
from typing import Dict, Any, Tuple
import time


REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'zenith_requests_total',
    'Total number of API requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'zenith_request_duration_seconds',
    'Request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=REGISTRY
)

# Build metrics
KERNEL_BUILDS = Counter(
    'zenith_kernel_builds_total',
    'Total kernel builds',
    ['tier', 'status'],  # complete, partial
    registry=REGISTRY
)

KERNEL_BUILD_DURATION = Histogram(
    'zenith_kernel_build_duration_seconds',
    'Kernel build duration in seconds',
    ['tier'],
    buckets=[0.01, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
    registry=REGISTRY
)

KERNEL_SIZE = Gauge(
    'zenith_kernel_size_bytes',
    'Size of the most recently built or loaded kernel',
    registry=REGISTRY
)

ORACLE_QUERIES = Counter(
    'zenith_oracle_queries_total',
    'Total oracle lookups',
    ['status'],  # success, fallback, failed
    registry=REGISTRY
)

UNRESOLVED_BODIES = Counter(
    'zenith_unresolved_bodies_total',
    'Bodies stored with the missing-value sentinel',
    ['body'],
    registry=REGISTRY
)

# Search metrics
SEARCHES = Counter(
    'zenith_searches_total',
    'Total reconstruction requests',
    ['source', 'verified'],
    registry=REGISTRY
)

# Verification metrics
VERIFICATION_POINTS = Counter(
    'zenith_verification_points_total',
    'Sample times checked by the verifier',
    registry=REGISTRY
)

VERIFICATION_ERRORS = Counter(
    'zenith_verification_errors_total',
    'Samples whose deviation exceeded tolerance',
    registry=REGISTRY
)

# Error metrics
ERRORS_TOTAL = Counter(
    'zenith_errors_total',
    'Total number of errors by category',
    ['error_code', 'error_category'],
    registry=REGISTRY
)

SYSTEM_INFO = Info(
    'zenith_system_info',
    'System information',
    registry=REGISTRY
)

APP_START_TIME = Gauge(
    'zenith_app_start_time_seconds',
    'Unix timestamp when the application started',
    registry=REGISTRY
)


class MetricsCollector:
    """
    High-level metrics collector for kernel operations.

    Provides methods to record metrics for common operations
    with consistent labeling.
    """

    def __init__(self):
        self.start_time = time.time()
        APP_START_TIME.set(self.start_time)

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration_seconds: float
    ):
        """Record HTTP request metrics."""
        REQUEST_COUNT.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        REQUEST_DURATION.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration_seconds)

    def record_build(
        self,
        tier: str,
        size_bytes: int,
        unresolved: int,
        duration_seconds: float
    ):
        KERNEL_BUILDS.labels(
            tier=tier,
            status="partial" if unresolved else "complete"
        ).inc()
        KERNEL_BUILD_DURATION.labels(tier=tier).observe(duration_seconds)
        KERNEL_SIZE.set(size_bytes)

    def record_oracle_query(self, status: str, count: int = 1):
        """status is one of success, fallback, failed."""
        if count:
            ORACLE_QUERIES.labels(status=status).inc(count)

    def record_unresolved(self, body: str):
        UNRESOLVED_BODIES.labels(body=body).inc()

    def record_kernel_loaded(self, size_bytes: int):
        KERNEL_SIZE.set(size_bytes)

    def record_search(self, source: str, verified: bool):
        SEARCHES.labels(source=source, verified=str(verified).lower()).inc()

    def record_verification(self, points_checked: int, error_count: int):
        VERIFICATION_POINTS.inc(points_checked)
        VERIFICATION_ERRORS.inc(error_count)

    def record_error(self, error_code: str):
        """Record error metrics."""
        # "KERNEL.FORMAT_MISMATCH" -> "KERNEL"
        error_category = error_code.split('.')[0] if '.' in error_code else error_code

        ERRORS_TOTAL.labels(
            error_code=error_code,
            error_category=error_category
        ).inc()

    def set_system_info(
        self,
        version: str,
        tier: str,
        catalog: str,
        python_version: str
    ):
        SYSTEM_INFO.info({
            'version': version,
            'tier': tier,
            'catalog': catalog,
            'python_version': python_version
        })

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of key metrics for health checks."""
        return {
            "uptime_seconds": round(time.time() - self.start_time, 1),
            "kernel_size_bytes": int(REGISTRY.get_sample_value('zenith_kernel_size_bytes') or 0)
        }


# Global metrics collector instance
metrics = MetricsCollector()


def get_metrics_content() -> Tuple[str, str]:
    """
    Get Prometheus metrics content for /metrics endpoint.

    Returns:
        Tuple of (content, content_type)
    """
    content = generate_latest(REGISTRY)
    return content.decode('utf-8'), CONTENT_TYPE_LATEST


class RequestMetricsMiddleware:
    """
    ASGI middleware recording request count, duration, and status.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        endpoint = self._normalize_endpoint(scope["path"])

        start_time = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start_time
            metrics.record_request(method, endpoint, status_code, duration)

    @staticmethod
    def _normalize_endpoint(path: str) -> str:
        """Normalize endpoint path for metrics grouping."""
        if path.startswith("/v1/"):
            return path
        if path in ("/", "/healthz", "/metrics"):
            return path
        if path.startswith("/docs"):
            return "/docs"
        if path.startswith("/openapi"):
            return "/openapi"
        return "/other"
