"""
Metrics Collection with Prometheus.

Exposes broker decision and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from broker.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    CATEGORY = "category"
    NOTIFICATION_TYPE = "notification_type"
    ERROR_TYPE = "error_type"


class BrokerMetrics:
    """
    Centralized metrics for the broker API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Credential resolutions by outcome
    - Consent decisions by category and outcome
    - Notification target resolution and delivery
    - Errors by type
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "broker_service",
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
            "broker_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "broker_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "broker_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Decision Metrics
        # ====================================================================
        self.credential_resolutions_total = Counter(
            "broker_credential_resolutions_total",
            "Credential resolutions by outcome",
            [MetricLabels.OUTCOME],
        )

        self.consent_decisions_total = Counter(
            "broker_consent_decisions_total",
            "Consent gate decisions",
            [MetricLabels.CATEGORY, MetricLabels.OUTCOME],
        )

        self.notification_resolutions_total = Counter(
            "broker_notification_resolutions_total",
            "Notification target resolutions by type and source",
            [MetricLabels.NOTIFICATION_TYPE, MetricLabels.OUTCOME],
        )

        self.notification_deliveries_total = Counter(
            "broker_notification_deliveries_total",
            "Notification delivery attempts",
            [MetricLabels.OUTCOME],
        )

        self.permission_checks_total = Counter(
            "broker_permission_checks_total",
            "Permission checks by check and status",
            ["check", MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Action Metrics
        # ====================================================================
        self.actions_total = Counter(
            "broker_actions_total",
            "Actions executed through the envelope",
            ["service", "action", MetricLabels.OUTCOME],
        )

        self.action_duration_seconds = Histogram(
            "broker_action_duration_seconds",
            "Provider call duration in seconds",
            ["service"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "broker_errors_total",
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

    def record_credential_resolution(self, outcome: str) -> None:
        self.credential_resolutions_total.labels(outcome=outcome).inc()

    def record_consent_decision(self, category: str, outcome: str) -> None:
        self.consent_decisions_total.labels(category=category, outcome=outcome).inc()

    def record_notification_resolution(self, notification_type: str, outcome: str) -> None:
        self.notification_resolutions_total.labels(
            notification_type=notification_type, outcome=outcome
        ).inc()

    def record_notification_delivery(self, outcome: str) -> None:
        self.notification_deliveries_total.labels(outcome=outcome).inc()

    def record_permission_check(self, check: str, outcome: str) -> None:
        self.permission_checks_total.labels(check=check, outcome=outcome).inc()

    def record_action(self, service: str, action: str, outcome: str, duration: float) -> None:
        """Record an action envelope outcome and its provider call duration."""
        self.actions_total.labels(service=service, action=action, outcome=outcome).inc()
        self.action_duration_seconds.labels(service=service).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BrokerMetrics()
