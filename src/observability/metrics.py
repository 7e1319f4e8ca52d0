"""
Prometheus metrics for monitoring the polling engine.

Defines and exposes metrics for:
- Poll cycle duration and outcomes per source kind
- Items delivered into rooms
- Fetch and dispatch failures
- Subscriptions removed because their room is gone

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Poll cycles hit the network once per subscription, so buckets reach further
# than a single request would.
CYCLE_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)


class MetricsCollector:
    """
    Prometheus metrics collector for the polling engine.

    Usage:
        metrics = MetricsCollector()
        metrics.start_server()

        metrics.record_delivery(kind="feed", count=3)
        metrics.record_cycle(kind="github", duration=1.2)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        self.items_delivered = Counter(
            "room_notifier_items_delivered_total",
            "Total number of items dispatched into rooms",
            ["kind"],
        )

        self.dispatch_failures = Counter(
            "room_notifier_dispatch_failures_total",
            "Total number of failed message dispatches",
            ["kind"],
        )

        self.fetch_errors = Counter(
            "room_notifier_fetch_errors_total",
            "Total source fetch errors",
            ["kind", "error_type"],
        )

        self.subscriptions_removed = Counter(
            "room_notifier_subscriptions_removed_total",
            "Subscriptions deleted because their room no longer resolves",
            ["kind"],
        )

        self.polls_rate_limited = Counter(
            "room_notifier_polls_rate_limited_total",
            "Subscriptions skipped because their client is rate limited",
            ["kind"],
        )

        self.cycle_failures = Counter(
            "room_notifier_cycle_failures_total",
            "Poll cycles aborted by an unrecoverable error",
            ["kind"],
        )

        self.cycle_duration = Histogram(
            "room_notifier_cycle_duration_seconds",
            "Time to run one poll cycle over all subscriptions of a kind",
            ["kind"],
            buckets=CYCLE_BUCKETS,
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port

        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    # Convenience methods

    def record_delivery(self, kind: str, count: int = 1) -> None:
        if count > 0:
            self.items_delivered.labels(kind=kind).inc(count)

    def record_dispatch_failure(self, kind: str) -> None:
        self.dispatch_failures.labels(kind=kind).inc()

    def record_fetch_error(self, kind: str, error_type: str) -> None:
        self.fetch_errors.labels(kind=kind, error_type=error_type).inc()

    def record_subscription_removed(self, kind: str) -> None:
        self.subscriptions_removed.labels(kind=kind).inc()

    def record_rate_limited(self, kind: str) -> None:
        self.polls_rate_limited.labels(kind=kind).inc()

    def record_cycle(self, kind: str, duration: float) -> None:
        self.cycle_duration.labels(kind=kind).observe(duration)

    def record_cycle_failure(self, kind: str) -> None:
        self.cycle_failures.labels(kind=kind).inc()


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
