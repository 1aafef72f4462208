"""
Payment notifications

Fire-and-forget emails about payment outcomes. A failed send is logged and
counted but never raised: notifications must not block or fail a payment.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from core.config import get_settings
from core.logging import get_logger
from core.metrics import metrics
from d0_gateway.providers.sendgrid import SendGridClient

logger = get_logger(__name__, domain="d9")


def _amount(order: Any) -> str:
    total = Decimal(order.total or 0).quantize(Decimal("0.01"))
    return f"${total} {(order.currency or 'usd').upper()}"


class NotificationService:
    """Sends payment emails through SendGrid"""

    def __init__(self, client: Optional[SendGridClient] = None, config: Optional[Any] = None):
        self.config = config or get_settings()
        self._client = client

    @property
    def client(self) -> SendGridClient:
        # Created on first send so services that never notify need no key
        if self._client is None:
            self._client = SendGridClient(timeout=self.config.notification_timeout_seconds)
        return self._client

    async def _send(
        self,
        notification_type: str,
        to_email: Optional[str],
        subject: str,
        body: str,
        custom_args: Optional[Dict[str, str]] = None,
    ) -> bool:
        if not to_email:
            logger.warning(f"No recipient for {notification_type} notification, skipping")
            metrics.track_notification(notification_type, False)
            return False

        try:
            await self.client.send_email(
                to_email=to_email,
                subject=subject,
                text_content=body,
                from_email=self.config.from_email,
                from_name=self.config.from_name,
                categories=["payment", notification_type],
                custom_args=custom_args,
            )
        except Exception as e:
            logger.warning(f"Failed to send {notification_type} notification to {to_email}: {e}")
            metrics.track_notification(notification_type, False)
            return False

        logger.info(f"Sent {notification_type} notification to {to_email}")
        metrics.track_notification(notification_type, True)
        return True

    async def send_payment_succeeded(self, to_email: str, order: Any) -> bool:
        body = (
            f"Thank you! We received your payment of {_amount(order)} for order {order.id}.\n\n"
            "We'll let you know when your rewards ship."
        )
        return await self._send(
            "payment_succeeded", to_email, "Payment received", body, custom_args={"order_id": order.id}
        )

    async def send_payment_failed(self, to_email: str, order: Any, reason: Optional[str] = None) -> bool:
        body = (
            f"We couldn't process your payment of {_amount(order)} for order {order.id}.\n"
            f"Reason: {reason or 'the card was declined'}\n\n"
            "Please update your payment method so we can complete your order."
        )
        return await self._send(
            "payment_failed", to_email, "Action needed: payment failed", body, custom_args={"order_id": order.id}
        )

    async def send_card_saved(self, to_email: str, order: Any) -> bool:
        body = (
            f"Your card has been saved for order {order.id}. You won't be charged {_amount(order)} "
            "until your rewards are ready to ship."
        )
        return await self._send("card_saved", to_email, "Your card is saved", body, custom_args={"order_id": order.id})

    async def send_dispute_alert(self, order: Any) -> bool:
        body = (
            f"A dispute was opened on order {order.id} ({_amount(order)}).\n"
            f"Payment intent: {order.stripe_payment_intent_id}\n"
            "Review it in the Stripe dashboard."
        )
        return await self._send(
            "dispute_alert",
            self.config.admin_email,
            f"Dispute opened on order {order.id}",
            body,
            custom_args={"order_id": order.id},
        )

    async def send_bulk_capture_summary(self, summary: Dict[str, Any]) -> bool:
        lines = [
            f"Attempted: {summary.get('attempted', 0)}",
            f"Succeeded: {summary.get('succeeded', 0)}",
            f"Failed: {summary.get('failed', 0)}",
            f"Total captured: {summary.get('total_captured', '0.00')} {str(summary.get('currency', 'usd')).upper()}",
        ]
        failures = summary.get("failures") or []
        if failures:
            lines.append("")
            lines.append("Failures:")
            for failure in failures:
                unknown = " (outcome unknown)" if failure.get("outcome_unknown") else ""
                lines.append(
                    f"  {failure.get('order_id')}: {failure.get('failure_code')} {failure.get('message') or ''}{unknown}"
                )
        orphaned = summary.get("orphaned_references") or []
        if orphaned:
            lines.append("")
            lines.append(f"Captured but not recorded (reconcile manually): {', '.join(orphaned)}")

        return await self._send(
            "bulk_capture_summary",
            self.config.admin_email,
            f"Bulk capture: {summary.get('succeeded', 0)}/{summary.get('attempted', 0)} captured",
            "\n".join(lines),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
