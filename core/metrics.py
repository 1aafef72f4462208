"""
Payment and checkout metrics using Prometheus
"""
from decimal import Decimal
from typing import Union

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Info, generate_latest

from core.config import settings
from core.logging import get_logger

# Create a global registry for the application
REGISTRY = CollectorRegistry()

app_info = Info("backerstore_app", "BackerStore application information", registry=REGISTRY)

checkouts_total = Counter(
    "backerstore_checkouts_total",
    "Checkout attempts by classification and outcome",
    ["classification", "outcome"],
    registry=REGISTRY,
)

authorizations_total = Counter(
    "backerstore_gateway_authorizations_total",
    "Payment intents created, by capture mode",
    ["capture_mode"],
    registry=REGISTRY,
)

captures_total = Counter(
    "backerstore_bulk_captures_total",
    "Per-order capture outcomes during bulk capture",
    ["outcome"],
    registry=REGISTRY,
)

captured_amount = Counter(
    "backerstore_captured_amount_total",
    "Amount captured through bulk capture, in major currency units",
    ["currency"],
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "backerstore_webhook_events_total",
    "Gateway events received, by type and result",
    ["event_type", "result"],
    registry=REGISTRY,
)

orphaned_transactions_total = Counter(
    "backerstore_orphaned_transactions_total",
    "Gateway objects created without a persisted local record",
    ["operation"],
    registry=REGISTRY,
)

notifications_total = Counter(
    "backerstore_notifications_total",
    "Notification sends by type and result",
    ["notification_type", "status"],
    registry=REGISTRY,
)


class MetricsCollector:
    """Helper class for collecting metrics"""

    def __init__(self):
        self.logger = get_logger("metrics")
        app_info.info({"version": settings.app_version, "environment": settings.environment})

    def track_checkout(self, classification: str, outcome: str):
        checkouts_total.labels(classification=classification, outcome=outcome).inc()

    def track_authorization(self, capture_mode: str):
        authorizations_total.labels(capture_mode=capture_mode).inc()

    def track_capture(self, outcome: str, amount: Union[Decimal, float, None] = None, currency: str = "usd"):
        """Track one order's capture result; amount only counts on success"""
        captures_total.labels(outcome=outcome).inc()
        if amount is not None and outcome == "succeeded":
            captured_amount.labels(currency=currency).inc(float(amount))

    def track_webhook(self, event_type: str, result: str):
        webhook_events_total.labels(event_type=event_type, result=result).inc()

    def track_orphaned_transaction(self, operation: str):
        orphaned_transactions_total.labels(operation=operation).inc()

    def track_notification(self, notification_type: str, success: bool):
        status = "sent" if success else "failed"
        notifications_total.labels(notification_type=notification_type, status=status).inc()

    def get_metrics(self) -> bytes:
        """Get current metrics in Prometheus format"""
        return generate_latest(REGISTRY)


# Global metrics collector instance
metrics = MetricsCollector()


def get_metrics_response() -> tuple[bytes, str]:
    """Get metrics response for Prometheus endpoint"""
    return metrics.get_metrics(), CONTENT_TYPE_LATEST
