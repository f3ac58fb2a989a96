"""
Metrics Collection with Prometheus.

Exposes subscription lifecycle, refill and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info

from subscription_billing.config import settings
from subscription_billing.models.domain import RefillSweepResult


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class SubscriptionMetrics:
    """
    Centralized metrics for the subscription billing service.

    Covers:
    - HTTP requests (rate, duration)
    - Webhook events by type and outcome
    - Credit grants from invoices
    - Refill sweeps and per-record outcomes
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "subscription_billing_service",
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
            "subscription_billing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "subscription_billing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "subscription_billing_webhook_events_total",
            "Provider webhook events by type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.webhook_processing_seconds = Histogram(
            "subscription_billing_webhook_processing_seconds",
            "Webhook processing duration in seconds",
            [MetricLabels.EVENT_TYPE],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.subscription_grants_total = Counter(
            "subscription_billing_grants_total",
            "Credit grants from paid subscription invoices",
            ["plan", "billing_reason"],
        )

        # ====================================================================
        # Refill Metrics
        # ====================================================================
        self.refill_records_total = Counter(
            "subscription_billing_refill_records_total",
            "Refill sweep per-record outcomes",
            [MetricLabels.OUTCOME],
        )

        self.refill_sweep_duration_seconds = Histogram(
            "subscription_billing_refill_sweep_duration_seconds",
            "Refill sweep duration in seconds",
            buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0),
        )

        self.refill_sweeps_skipped_total = Counter(
            "subscription_billing_refill_sweeps_skipped_total",
            "Sweeps not started because another sweep was running",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "subscription_billing_errors_total",
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

    def record_webhook_event(self, event_type: str, outcome: str, duration: float) -> None:
        """Record a processed (or rejected) webhook delivery."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        self.webhook_processing_seconds.labels(event_type=event_type).observe(duration)

    def record_grant(self, plan: str, billing_reason: str) -> None:
        self.subscription_grants_total.labels(plan=plan, billing_reason=billing_reason).inc()

    def record_refill_sweep(self, result: RefillSweepResult, duration: float) -> None:
        """Record one sweep's counts."""
        if result.already_running:
            self.refill_sweeps_skipped_total.inc()
            return
        self.refill_records_total.labels(outcome="granted").inc(result.granted)
        self.refill_records_total.labels(outcome="skipped").inc(result.skipped)
        self.refill_records_total.labels(outcome="disabled").inc(result.disabled)
        self.refill_records_total.labels(outcome="errored").inc(result.errored)
        self.refill_sweep_duration_seconds.observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = SubscriptionMetrics()
