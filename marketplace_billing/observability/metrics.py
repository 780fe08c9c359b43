"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from marketplace_billing.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


MONEY_BUCKETS = (100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 500000)


class MarketplaceMetrics:
    """
    Centralized metrics for the marketplace billing service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Webhook events (by type and outcome, processing duration)
    - Purchases (count, amounts, platform fees)
    - Payouts (by status, amounts, rejections by rule)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("marketplace_billing_service", "Service information")
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
            "marketplace_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "marketplace_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "marketplace_http_requests_in_progress",
            "HTTP requests currently being processed",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "marketplace_webhook_events_total",
            "Webhook events by type and outcome (applied, duplicate, ignored, failed)",
            [MetricLabels.EVENT_TYPE.value, MetricLabels.OUTCOME.value],
        )

        self.webhook_processing_duration_seconds = Histogram(
            "marketplace_webhook_processing_duration_seconds",
            "Webhook reconciliation duration in seconds",
            [MetricLabels.EVENT_TYPE.value],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.purchases_total = Counter(
            "marketplace_purchases_total",
            "Purchases recorded from successful payments",
        )

        self.purchase_amount_minor = Histogram(
            "marketplace_purchase_amount_minor",
            "Purchase amounts in minor units (cents)",
            buckets=MONEY_BUCKETS,
        )

        self.platform_fees_minor_total = Counter(
            "marketplace_platform_fees_minor_total",
            "Platform fees collected in minor units (cents)",
        )

        # ====================================================================
        # Payout Metrics
        # ====================================================================
        self.payouts_total = Counter(
            "marketplace_payouts_total",
            "Payouts finalized, by status",
            ["status"],
        )

        self.payout_amount_minor = Histogram(
            "marketplace_payout_amount_minor",
            "Completed payout amounts in minor units (cents)",
            buckets=MONEY_BUCKETS,
        )

        self.payout_rejections_total = Counter(
            "marketplace_payout_rejections_total",
            "Payout requests rejected by a business rule",
            ["code"],
        )

        self.payout_duration_seconds = Histogram(
            "marketplace_payout_duration_seconds",
            "Payout issuance duration in seconds (lock to commit)",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.rate_limited_total = Counter(
            "marketplace_rate_limited_total",
            "Requests rejected by a rate limiter",
            ["scope"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "marketplace_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
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
        """Record a reconciled (or rejected) webhook event."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        self.webhook_processing_duration_seconds.labels(event_type=event_type).observe(duration)

    def record_purchase(self, amount_minor: int, platform_fee_minor: int) -> None:
        """Record a purchase written by the reconciler."""
        self.purchases_total.inc()
        self.purchase_amount_minor.observe(amount_minor)
        self.platform_fees_minor_total.inc(platform_fee_minor)

    def record_payout(self, status: str, amount_minor: int, duration: float) -> None:
        """Record a finalized payout."""
        self.payouts_total.labels(status=status).inc()
        if status == "completed":
            self.payout_amount_minor.observe(amount_minor)
        self.payout_duration_seconds.observe(duration)

    def record_payout_rejection(self, code: str) -> None:
        """Record a payout rejected before any side effect."""
        self.payout_rejections_total.labels(code=code).inc()

    def record_rate_limited(self, scope: str) -> None:
        """Record a rate-limited request."""
        self.rate_limited_total.labels(scope=scope).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MarketplaceMetrics()
