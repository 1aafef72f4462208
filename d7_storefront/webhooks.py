"""
D7 Storefront Webhooks

Stripe webhook processor: verifies the signature, then routes the event to
a handler that reconciles the matching order. Delivery is at-least-once and
unordered; idempotency comes from comparing the implied status with the
stored one, so the processor keeps no record of seen event ids.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from core.config import get_settings
from core.logging import get_logger
from core.metrics import metrics
from d0_gateway.exceptions import WebhookSignatureError
from d0_gateway.providers.stripe import StripeClient

from .reconciliation import ReconciliationEngine

logger = get_logger(__name__, domain="d7")


class WebhookEventType(Enum):
    """Stripe webhook event types we handle"""

    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED = "payment_intent.amount_capturable_updated"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    CHARGE_REFUNDED = "charge.refunded"
    CHARGE_DISPUTE_CREATED = "charge.dispute.created"


class WebhookStatus(Enum):
    """Webhook processing status"""

    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"


class WebhookProcessor:
    """Main webhook processor for Stripe events"""

    def __init__(
        self,
        engine: ReconciliationEngine,
        stripe_client: Optional[StripeClient] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.engine = engine
        self.stripe_client = stripe_client or engine.stripe
        self.webhook_secret = webhook_secret or get_settings().get_webhook_secret()

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify and parse an inbound event

        Raises:
            WebhookSignatureError: Missing or invalid signature
        """
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")
        return self.stripe_client.construct_webhook_event(payload, signature, self.webhook_secret)

    async def process_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify then process one delivery

        Returns a result dict; ``success`` False asks the sender to retry
        (except for a bad signature, which no retry will fix).
        """
        try:
            event = self.construct_event(payload, signature)
        except WebhookSignatureError as e:
            logger.warning(f"Rejected webhook: {e.message}")
            metrics.track_webhook("unverified", "rejected")
            return {
                "success": False,
                "error": e.message,
                "status": WebhookStatus.FAILED.value,
            }

        return await self.process_event(event)

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Process an already verified event"""
        event_id = event.get("id")
        event_type = event.get("type")
        event_data = event.get("data") or {}

        logger.info(f"Processing webhook event {event_id} of type {event_type}")

        try:
            result = await self._process_event(event_type, event_data, event_id)
        except Exception as e:
            # The sender retries failed deliveries; reconciliation makes the retry safe
            logger.error(f"Error processing event {event_id} of type {event_type}: {e}", exc_info=True)
            self.engine.db.rollback()
            result = {"success": False, "status": WebhookStatus.FAILED.value, "error": str(e)}

        metrics.track_webhook(event_type or "unknown", result.get("data", {}).get("result") or result["status"])
        return {
            "success": result["success"],
            "event_id": event_id,
            "event_type": event_type,
            "status": result["status"],
            "data": result.get("data", {}),
            "error": result.get("error"),
            "reason": result.get("reason"),
        }

    async def _process_event(self, event_type: str, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """Route to the handler for the event type"""
        from .webhook_handlers import ChargeHandler, PaymentIntentHandler

        if event_type == WebhookEventType.PAYMENT_INTENT_SUCCEEDED.value:
            return await PaymentIntentHandler(self.engine).handle_payment_succeeded(event_data, event_id)

        elif event_type == WebhookEventType.PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED.value:
            return await PaymentIntentHandler(self.engine).handle_amount_capturable_updated(event_data, event_id)

        elif event_type == WebhookEventType.PAYMENT_INTENT_FAILED.value:
            return await PaymentIntentHandler(self.engine).handle_payment_failed(event_data, event_id)

        elif event_type == WebhookEventType.PAYMENT_INTENT_CANCELED.value:
            return await PaymentIntentHandler(self.engine).handle_payment_canceled(event_data, event_id)

        elif event_type == WebhookEventType.CHARGE_REFUNDED.value:
            return await ChargeHandler(self.engine).handle_charge_refunded(event_data, event_id)

        elif event_type == WebhookEventType.CHARGE_DISPUTE_CREATED.value:
            return await ChargeHandler(self.engine).handle_dispute_created(event_data, event_id)

        logger.info(f"Unhandled event type: {event_type}")
        return {
            "success": True,
            "status": WebhookStatus.IGNORED.value,
            "reason": f"Unhandled event type: {event_type}",
        }

    def get_supported_events(self) -> List[str]:
        """Get list of supported webhook event types"""
        return [event.value for event in WebhookEventType]
