"""
D7 Storefront Webhook Handlers

Handlers for payment intent and charge events. Each one finds the order,
works out the status the event implies and hands it to the reconciliation
engine.
"""

from typing import Any, Dict, Optional

from core.logging import get_logger

from .models import Order, PaymentStatus
from .reconciliation import ApplyResult, ReconciliationEngine, failure_fields
from .webhooks import WebhookStatus

logger = get_logger(__name__, domain="d7")


class BaseWebhookHandler:
    """Base class for webhook event handlers"""

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine

    def _object(self, event_data: Dict[str, Any]) -> Dict[str, Any]:
        return event_data.get("object") or {}

    def _order_not_found(self, reference: Optional[str], event_id: str) -> Dict[str, Any]:
        logger.warning(f"No order for {reference} (event {event_id}), ignoring")
        return {
            "success": True,
            "status": WebhookStatus.IGNORED.value,
            "reason": "Order not found",
            "data": {"payment_intent_id": reference},
        }

    def _applied(self, order: Order, result: ApplyResult, payment_intent_id: Optional[str]) -> Dict[str, Any]:
        return {
            "success": True,
            "status": WebhookStatus.COMPLETED.value,
            "data": {
                "order_id": order.id,
                "payment_intent_id": payment_intent_id,
                "order_status": order.status.value,
                "result": result.value,
            },
        }


class PaymentIntentHandler(BaseWebhookHandler):
    """Handler for payment intent events"""

    def _locate(self, event_data: Dict[str, Any]):
        intent = self._object(event_data)
        return intent, intent.get("id"), self.engine.locate_order(intent)

    async def handle_payment_succeeded(self, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """Charge confirmed: succeeded for immediate orders, charged for deferred ones"""
        intent, payment_intent_id, order = self._locate(event_data)
        if order is None:
            return self._order_not_found(payment_intent_id, event_id)

        implied = PaymentStatus.CHARGED if order.is_deferred else PaymentStatus.SUCCEEDED
        result = await self.engine.apply_intent(order, intent, implied, event_id=event_id)
        return self._applied(order, result, payment_intent_id)

    async def handle_amount_capturable_updated(self, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """Authorization confirmed on a manual-capture intent: the card is saved"""
        intent, payment_intent_id, order = self._locate(event_data)
        if order is None:
            return self._order_not_found(payment_intent_id, event_id)

        result = await self.engine.apply_intent(order, intent, PaymentStatus.CARD_SAVED, event_id=event_id)
        return self._applied(order, result, payment_intent_id)

    async def handle_payment_failed(self, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        intent, payment_intent_id, order = self._locate(event_data)
        if order is None:
            return self._order_not_found(payment_intent_id, event_id)

        implied = self.engine.implied_failure(order)
        values = failure_fields(intent.get("last_payment_error"))
        logger.info(f"Payment failed for order {order.id}: {values['failure_code']}")
        result = await self.engine.apply_status(order, implied, event_id=event_id, **values)
        return self._applied(order, result, payment_intent_id)

    async def handle_payment_canceled(self, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """Cancels happen when bulk capture replaces a stale authorization; no status change"""
        intent = self._object(event_data)
        logger.info(f"Payment intent {intent.get('id')} canceled ({intent.get('cancellation_reason')})")
        return {
            "success": True,
            "status": WebhookStatus.IGNORED.value,
            "reason": "Cancellation does not change order status",
            "data": {"payment_intent_id": intent.get("id")},
        }


class ChargeHandler(BaseWebhookHandler):
    """Handler for refund and dispute events"""

    async def handle_charge_refunded(self, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """Full refunds move the order to refunded; partial refunds are only logged"""
        charge = self._object(event_data)
        payment_intent_id = charge.get("payment_intent")
        order = self.engine.locate_order(charge, payment_intent_id)
        if order is None:
            return self._order_not_found(payment_intent_id, event_id)

        amount = charge.get("amount") or 0
        amount_refunded = charge.get("amount_refunded") or 0
        if not charge.get("refunded") and amount_refunded < amount:
            logger.info(f"Partial refund of {amount_refunded} on order {order.id}, status unchanged")
            return {
                "success": True,
                "status": WebhookStatus.IGNORED.value,
                "reason": "Partial refund",
                "data": {"order_id": order.id, "amount_refunded": amount_refunded},
            }

        result = await self.engine.apply_status(order, PaymentStatus.REFUNDED, event_id=event_id)
        return self._applied(order, result, payment_intent_id)

    async def handle_dispute_created(self, event_data: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        dispute = self._object(event_data)
        payment_intent_id = dispute.get("payment_intent")
        order = self.engine.locate_order(dispute, payment_intent_id)
        if order is None:
            return self._order_not_found(payment_intent_id, event_id)

        logger.warning(f"Dispute {dispute.get('id')} opened on order {order.id}: {dispute.get('reason')}")
        result = await self.engine.apply_status(order, PaymentStatus.DISPUTED, event_id=event_id)
        return self._applied(order, result, payment_intent_id)
