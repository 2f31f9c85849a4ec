"""
Prometheus metrics for the store bot engine.

Tracks:
- Stock deductions, reservations and rejections
- Payment state transitions
- Stock update publishes
- Best-effort side effect outcomes
- Admin and customer notification deliveries
- Catalog synchronizations
"""
from prometheus_client import Counter, Histogram

# Stock metrics
stock_deductions_total = Counter(
    "stock_deductions_total",
    "Total locked stock deductions",
    ["status"],  # deducted, insufficient
)

stock_reservations_total = Counter(
    "stock_reservations_total",
    "Total locked stock reservations",
    ["status"],  # reserved, insufficient
)

stock_updates_total = Counter(
    "stock_updates_total",
    "Total absolute stock updates by admins",
)

stock_lock_wait_seconds = Histogram(
    "stock_lock_wait_seconds",
    "Time spent acquiring the stock ledger row lock",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Payment metrics
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Total payment state transitions",
    ["status", "method"],  # status: created, verified, failed, already_verified
)

payment_verification_duration_seconds = Histogram(
    "payment_verification_duration_seconds",
    "Payment verification transaction duration in seconds",
    ["verification_method"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Pub/sub metrics
stock_update_publish_total = Counter(
    "stock_update_publish_total",
    "Total stock update publishes",
    ["status"],  # published, failed, timeout
)

stock_update_received_total = Counter(
    "stock_update_received_total",
    "Total stock update events delivered to subscribers",
    ["status"],  # delivered, malformed, callback_error
)

# Side effects
side_effects_total = Counter(
    "side_effects_total",
    "Total best-effort side effects by outcome",
    ["name", "status"],  # status: ok, failed
)

# Notification metrics
admin_notifications_total = Counter(
    "admin_notifications_total",
    "Total admin notification deliveries",
    ["notification_type", "status"],  # sent, failed, skipped
)

customer_notifications_total = Counter(
    "customer_notifications_total",
    "Total customer notification deliveries",
    ["notification_type", "status"],
)

notification_retries_total = Counter(
    "notification_retries_total",
    "Total notification resend attempts",
    ["status"],  # sent, failed
)

# Catalog metrics
catalog_syncs_total = Counter(
    "catalog_syncs_total",
    "Total catalog synchronizations",
    ["status"],  # synced, flipped, failed
)

# Order metrics
abandoned_orders_total = Counter(
    "abandoned_orders_total",
    "Total pending orders handled by the checkout timeout sweep",
    ["status"],  # cancelled, skipped, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stock_deduction(status: str) -> None:
        """Record a locked stock deduction."""
        stock_deductions_total.labels(status=status).inc()

    @staticmethod
    def record_stock_reservation(status: str) -> None:
        """Record a locked stock reservation."""
        stock_reservations_total.labels(status=status).inc()

    @staticmethod
    def record_stock_update() -> None:
        """Record an absolute stock update."""
        stock_updates_total.inc()

    @staticmethod
    def record_lock_wait(duration_seconds: float) -> None:
        """Record time spent waiting for the ledger row lock."""
        stock_lock_wait_seconds.observe(duration_seconds)

    @staticmethod
    def record_payment_transition(status: str, method: str) -> None:
        """Record a payment state transition."""
        payment_transitions_total.labels(status=status, method=method).inc()

    @staticmethod
    def record_verification_duration(verification_method: str, duration_seconds: float) -> None:
        """Record how long a verification transaction took."""
        payment_verification_duration_seconds.labels(
            verification_method=verification_method
        ).observe(duration_seconds)

    @staticmethod
    def record_stock_publish(status: str) -> None:
        """Record a stock update publish."""
        stock_update_publish_total.labels(status=status).inc()

    @staticmethod
    def record_stock_event_received(status: str) -> None:
        """Record a stock update delivered to a subscriber."""
        stock_update_received_total.labels(status=status).inc()

    @staticmethod
    def record_side_effect(name: str, ok: bool) -> None:
        """Record the outcome of a best-effort side effect."""
        side_effects_total.labels(name=name, status="ok" if ok else "failed").inc()

    @staticmethod
    def record_admin_notification(notification_type: str, status: str) -> None:
        """Record an admin notification delivery."""
        admin_notifications_total.labels(
            notification_type=notification_type, status=status
        ).inc()

    @staticmethod
    def record_customer_notification(notification_type: str, status: str) -> None:
        """Record a customer notification delivery."""
        customer_notifications_total.labels(
            notification_type=notification_type, status=status
        ).inc()

    @staticmethod
    def record_notification_retry(status: str) -> None:
        """Record a notification resend attempt."""
        notification_retries_total.labels(status=status).inc()

    @staticmethod
    def record_catalog_sync(status: str) -> None:
        """Record a catalog synchronization."""
        catalog_syncs_total.labels(status=status).inc()

    @staticmethod
    def record_abandoned_order(status: str) -> None:
        """Record an abandoned order handled by the timeout sweep."""
        abandoned_orders_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
