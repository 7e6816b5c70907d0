"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    REASON = "reason"
    ERROR_TYPE = "error_type"


class RedemptionMetrics:
    """
    Centralized metrics for the Redemption API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Token issuance (rate, rejections by reason, duration)
    - Scan validation (outcome and reason, duration)
    - Housekeeping passes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "redemption_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "redemption_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "redemption_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "redemption_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Issuance Metrics
        # ====================================================================
        self.tokens_issued_total = Counter(
            "redemption_tokens_issued_total",
            "Total tokens issued",
            ["superseded"],
        )

        self.issue_rejections_total = Counter(
            "redemption_issue_rejections_total",
            "Token issuance refused, by reason",
            [MetricLabels.REASON],
        )

        self.issue_duration_seconds = Histogram(
            "redemption_issue_duration_seconds",
            "Token issuance duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Scan Metrics
        # ====================================================================
        self.scans_total = Counter(
            "redemption_scans_total",
            "Scan validations, by outcome and reason",
            [MetricLabels.OUTCOME, MetricLabels.REASON],
        )

        self.scan_duration_seconds = Histogram(
            "redemption_scan_duration_seconds",
            "Scan validation duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Housekeeping Metrics
        # ====================================================================
        self.reaper_expired_tokens_total = Counter(
            "redemption_reaper_expired_tokens_total",
            "Tokens marked expired by the reaper",
        )

        self.reaper_pruned_counters_total = Counter(
            "redemption_reaper_pruned_counters_total",
            "Daily counter rows pruned by the reaper",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "redemption_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_issue(self, rejection: str | None, superseded: bool, duration: float) -> None:
        """Record a token issuance attempt that reached a business result."""
        if rejection is None:
            self.tokens_issued_total.labels(superseded=str(superseded)).inc()
        else:
            self.issue_rejections_total.labels(reason=rejection).inc()
        self.issue_duration_seconds.observe(duration)

    def record_scan(self, outcome: str, reason: str | None, duration: float) -> None:
        """Record a scan validation result."""
        self.scans_total.labels(outcome=outcome, reason=reason or "none").inc()
        self.scan_duration_seconds.observe(duration)

    def record_reaper_pass(self, expired_tokens: int, pruned_counters: int) -> None:
        """Record one housekeeping pass."""
        self.reaper_expired_tokens_total.inc(expired_tokens)
        self.reaper_pruned_counters_total.inc(pruned_counters)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = RedemptionMetrics()
