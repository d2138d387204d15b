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
    VARIANT = "variant"
    MODEL = "model"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class DashboardMetrics:
    """
    Centralized metrics for the dashboard API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Generation calls (rate, duration, outcome) and tokens consumed
    - Token purchases credited
    - Stripe API calls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "dashboard_service",
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
            "dashboard_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "dashboard_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "dashboard_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Generation Metrics
        # ====================================================================
        self.generations_total = Counter(
            "dashboard_generations_total",
            "Total assistant generation requests",
            [MetricLabels.VARIANT, MetricLabels.MODEL, MetricLabels.OUTCOME],
        )

        self.generation_duration_seconds = Histogram(
            "dashboard_generation_duration_seconds",
            "Generation API call duration in seconds",
            [MetricLabels.MODEL],
            buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0, 120.0),
        )

        self.tokens_consumed_total = Counter(
            "dashboard_tokens_consumed_total",
            "Tokens deducted from token packs",
            [MetricLabels.VARIANT, MetricLabels.MODEL],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.token_purchases_total = Counter(
            "dashboard_token_purchases_total",
            "Token purchase reconciliations",
            [MetricLabels.OUTCOME],
        )

        self.tokens_purchased_total = Counter(
            "dashboard_tokens_purchased_total",
            "Tokens credited to token packs",
            [MetricLabels.MODEL],
        )

        # ====================================================================
        # Stripe Metrics
        # ====================================================================
        self.stripe_calls_total = Counter(
            "dashboard_stripe_calls_total",
            "Stripe API calls",
            [MetricLabels.OPERATION, "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "dashboard_errors_total",
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

    def record_generation(
        self,
        variant: str,
        model: str,
        outcome: str,
        tokens_used: int = 0,
        duration: float | None = None,
    ) -> None:
        """Record one generation request and the tokens it consumed."""
        self.generations_total.labels(variant=variant, model=model, outcome=outcome).inc()
        if tokens_used > 0:
            self.tokens_consumed_total.labels(variant=variant, model=model).inc(tokens_used)
        if duration is not None:
            self.generation_duration_seconds.labels(model=model).observe(duration)

    def record_token_purchase(self, outcome: str, tokens_by_model: dict[str, int]) -> None:
        """Record a purchase reconciliation."""
        self.token_purchases_total.labels(outcome=outcome).inc()
        for model, tokens in tokens_by_model.items():
            self.tokens_purchased_total.labels(model=model).inc(tokens)

    def record_stripe_call(self, operation: str, success: bool) -> None:
        """Record a Stripe API call."""
        self.stripe_calls_total.labels(operation=operation, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = DashboardMetrics()
