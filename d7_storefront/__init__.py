"""
D7 Storefront & Payment Flow

Checkout, payment orchestration against Stripe, and reconciliation of the
order payment state machine from webhooks and the bulk capture sweep.
"""

from .bulk_capture import BulkCaptureSweep, CaptureFailure, CaptureOutcome, SweepSummary
from .checkout import CheckoutManager, CheckoutRequest, CheckoutResult
from .models import TRANSITIONS, CaptureMode, Order, PaymentStatus
from .orchestrator import AuthorizationResult, PaymentOrchestrator
from .reconciliation import ApplyResult, ReconciliationEngine
from .repository import OrderRepository
from .webhook_handlers import ChargeHandler, PaymentIntentHandler
from .webhooks import WebhookEventType, WebhookProcessor, WebhookStatus

__all__ = [
    # Models
    "Order",
    "PaymentStatus",
    "CaptureMode",
    "TRANSITIONS",
    "OrderRepository",
    # Checkout Flow
    "CheckoutManager",
    "CheckoutRequest",
    "CheckoutResult",
    "PaymentOrchestrator",
    "AuthorizationResult",
    # Reconciliation
    "ReconciliationEngine",
    "ApplyResult",
    "BulkCaptureSweep",
    "SweepSummary",
    "CaptureOutcome",
    "CaptureFailure",
    # Webhook Processing
    "WebhookProcessor",
    "WebhookEventType",
    "WebhookStatus",
    "PaymentIntentHandler",
    "ChargeHandler",
]
