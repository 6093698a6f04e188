"""
Prometheus metrics for monitoring.

Disabled unless explicitly enabled through settings.
"""

from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Try to import prometheus_client, but don't fail if not installed
try:
    from prometheus_client import Counter, Histogram, start_http_server
    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False
    logger.warning("prometheus_client not installed - metrics disabled")


class Metrics:
    """
    Prometheus metrics collector.

    Tracks:
    - API request count and latency
    - Remote rate-limit retries
    - Credential renewals
    - Local admission wait time
    - Navigation nodes crawled
    """

    def __init__(self, enabled: bool = True, port: int = 9090, start_server: bool = True):
        """
        Initialize metrics.

        Args:
            enabled: Enable metrics collection
            port: Metrics HTTP server port
            start_server: Expose metrics over HTTP
        """
        self.enabled = enabled and PROMETHEUS_AVAILABLE

        if not self.enabled:
            return

        # API metrics
        self.api_requests = Counter(
            'ig_api_requests_total',
            'Total API requests',
            ['method', 'endpoint', 'status']
        )

        self.api_latency = Histogram(
            'ig_api_latency_seconds',
            'API request latency',
            ['method', 'endpoint']
        )

        # Pipeline metrics
        self.rate_limit_retries = Counter(
            'ig_rate_limit_retries_total',
            'Operations retried after a remote rate-limit rejection'
        )

        self.credential_renewals = Counter(
            'ig_credential_renewals_total',
            'Credential renewals',
            ['reason', 'outcome']
        )

        self.admission_wait = Histogram(
            'ig_admission_wait_seconds',
            'Time spent waiting for local rate-limit admission'
        )

        # Crawler metrics
        self.crawl_nodes = Counter(
            'ig_crawl_nodes_total',
            'Market navigation nodes fetched'
        )

        if not start_server:
            return

        try:
            start_http_server(port)
            logger.info(f"Metrics server started on port {port}")
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")
            self.enabled = False

    def track_api_request(self, method: str, endpoint: str, status: str) -> None:
        """Record API request."""
        if self.enabled:
            self.api_requests.labels(method=method, endpoint=endpoint, status=status).inc()

    def track_api_latency(self, method: str, endpoint: str, duration: float) -> None:
        """Record API latency."""
        if self.enabled:
            self.api_latency.labels(method=method, endpoint=endpoint).observe(duration)

    def track_rate_limit_retry(self) -> None:
        if self.enabled:
            self.rate_limit_retries.inc()

    def track_credential_renewal(self, reason: str, outcome: str) -> None:
        """Record renewal (reason: proactive/expired, outcome: success/failure)."""
        if self.enabled:
            self.credential_renewals.labels(reason=reason, outcome=outcome).inc()

    def track_admission_wait(self, duration: float) -> None:
        if self.enabled:
            self.admission_wait.observe(duration)

    def track_crawl_node(self) -> None:
        if self.enabled:
            self.crawl_nodes.inc()


# Global metrics instance
_metrics: Optional[Metrics] = None


def get_metrics(enabled: bool = False, port: int = 9090) -> Metrics:
    """
    Get or create metrics instance.

    The first call decides whether collection is enabled.
    """
    global _metrics
    if _metrics is None:
        _metrics = Metrics(enabled=enabled, port=port)
    return _metrics
