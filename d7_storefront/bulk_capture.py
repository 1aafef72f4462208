"""
Bulk capture sweep over deferred orders

Operator-triggered. Orders are captured one at a time and every failure is
isolated to its order: the sweep always finishes and returns a summary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.config import get_settings
from core.exceptions import NotFoundError, PersistenceError, ValidationError
from core.logging import get_logger
from core.metrics import metrics
from d0_gateway.exceptions import GatewayError, GatewayTimeoutError
from d0_gateway.providers.stripe import StripeClient, format_amount_for_stripe, format_amount_from_stripe
from d9_delivery.notifications import NotificationService
from database.base import utcnow

from .models import Order, PaymentStatus
from .reconciliation import ApplyResult, ReconciliationEngine
from .repository import OrderRepository

logger = get_logger(__name__, domain="d7")

# Intent statuses that can be canceled before charging the saved card afresh
CANCELABLE_INTENT_STATUSES = {"requires_payment_method", "requires_confirmation", "requires_action"}

RETRYABLE_STATUSES = {PaymentStatus.CARD_SAVED, PaymentStatus.CHARGE_FAILED}


def capture_idempotency_key(order_id: str, attempt: int) -> str:
    return f"capture-{order_id}-{attempt}"


@dataclass
class CaptureFailure:
    order_id: str
    amount: Decimal
    failure_code: str
    message: str
    decline_code: Optional[str] = None
    outcome_unknown: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "amount": str(self.amount),
            "failure_code": self.failure_code,
            "decline_code": self.decline_code,
            "message": self.message,
            "outcome_unknown": self.outcome_unknown,
        }


@dataclass
class CaptureOutcome:
    """Result of one order's capture attempt"""

    order_id: str
    succeeded: bool
    amount: Decimal
    payment_intent_id: Optional[str] = None
    failure: Optional[CaptureFailure] = None
    orphaned_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "succeeded": self.succeeded,
            "amount": str(self.amount),
            "payment_intent_id": self.payment_intent_id,
            "failure": self.failure.to_dict() if self.failure else None,
            "orphaned_reference": self.orphaned_reference,
        }


@dataclass
class SweepSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    total_captured: Decimal = Decimal("0.00")
    currency: str = "usd"
    failures: List[CaptureFailure] = field(default_factory=list)
    orphaned_references: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record(self, outcome: CaptureOutcome) -> None:
        self.attempted += 1
        if outcome.succeeded:
            self.succeeded += 1
            self.total_captured += outcome.amount
        else:
            self.failed += 1
            self.failures.append(outcome.failure)
        if outcome.orphaned_reference:
            self.orphaned_references.append(outcome.orphaned_reference)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total_captured": str(self.total_captured),
            "currency": self.currency,
            "failures": [failure.to_dict() for failure in self.failures],
            "orphaned_references": list(self.orphaned_references),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class BulkCaptureSweep:
    """Captures every deferred order that has a saved card"""

    def __init__(
        self,
        db,
        stripe_client: Optional[StripeClient] = None,
        notifications: Optional[NotificationService] = None,
        engine: Optional[ReconciliationEngine] = None,
    ):
        self.db = db
        self.stripe = stripe_client or StripeClient()
        self.notifications = notifications or NotificationService()
        self.engine = engine or ReconciliationEngine(db, stripe_client=self.stripe, notifications=self.notifications)
        self.orders = OrderRepository(db)

    async def run(self) -> SweepSummary:
        """Capture all eligible orders sequentially and send the admin summary"""
        summary = SweepSummary(currency=get_settings().currency, started_at=utcnow())
        orders = self.orders.find_ready_to_capture()
        logger.info(f"Bulk capture starting: {len(orders)} orders ready")

        async with self.engine.deferred_notifications():
            for order in orders:
                order_id = order.id
                amount = Decimal(order.total)
                try:
                    outcome = await self._capture(order)
                except Exception as e:
                    # One broken order never aborts the batch
                    self.db.rollback()
                    logger.error(f"Unexpected error capturing order {order_id}: {e}", exc_info=True)
                    metrics.track_capture("failed")
                    outcome = CaptureOutcome(
                        order_id=order_id,
                        succeeded=False,
                        amount=amount,
                        failure=CaptureFailure(
                            order_id=order_id, amount=amount, failure_code="internal_error", message=str(e)
                        ),
                    )
                summary.record(outcome)

        summary.finished_at = utcnow()
        logger.info(
            f"Bulk capture finished: {summary.succeeded}/{summary.attempted} captured, "
            f"{summary.failed} failed, {summary.total_captured} {summary.currency} total"
        )
        await self.notifications.send_bulk_capture_summary(summary.to_dict())
        return summary

    async def capture_order(self, order_id: str) -> CaptureOutcome:
        """
        Targeted manual retry of one card_saved or charge_failed order

        Raises:
            NotFoundError: Unknown order
            ValidationError: Order not in a capturable state or no saved card
        """
        order = self.orders.get_or_raise(order_id)
        if order.status not in RETRYABLE_STATUSES:
            raise ValidationError(
                f"Order {order_id} is {order.status.value}, only card_saved or charge_failed orders can be captured",
                field="status",
                reason="not_capturable",
            )
        if not order.stripe_customer_id:
            raise ValidationError(f"Order {order_id} has no gateway customer", reason="no_payment_method")

        payment_method = order.stripe_payment_method_id or await self._find_saved_card(order.stripe_customer_id)
        if not payment_method:
            raise ValidationError(f"No saved card for order {order_id}", reason="no_payment_method")

        return await self._capture(order, payment_method)

    async def _find_saved_card(self, customer_id: str) -> Optional[str]:
        methods = await self.stripe.list_payment_methods(customer_id)
        cards = methods.get("data") or []
        return cards[0]["id"] if cards else None

    async def _charge(self, order: Order, payment_method: str, idempotency_key: str, attempt: int) -> Dict[str, Any]:
        """Capture the authorization if it is still open, else charge the saved card off-session"""
        intent = None
        if order.stripe_payment_intent_id:
            try:
                intent = await self.stripe.get_payment_intent(order.stripe_payment_intent_id)
            except GatewayTimeoutError:
                raise
            except GatewayError as e:
                if e.api_status_code != 404:
                    raise
                logger.warning(f"Intent {order.stripe_payment_intent_id} for order {order.id} not found")

        status = intent.get("status") if intent else None
        if status == "requires_capture":
            return await self.stripe.capture_payment_intent(intent["id"], idempotency_key=idempotency_key)
        if status == "succeeded":
            logger.info(f"Intent {intent['id']} for order {order.id} already captured")
            return intent
        if status in CANCELABLE_INTENT_STATUSES:
            # Keep a single outstanding intent per order
            await self.stripe.cancel_payment_intent(intent["id"], cancellation_reason="abandoned")

        return await self.stripe.charge_off_session(
            amount=format_amount_for_stripe(order.total),
            customer_id=order.stripe_customer_id,
            payment_method_id=payment_method,
            currency=order.currency,
            description=f"Order {order.id}",
            metadata={
                "order_id": order.id,
                "identity_id": order.identity_id,
                "order_type": "bulk-capture",
                "capture_attempt": attempt,
            },
            idempotency_key=idempotency_key,
        )

    async def _capture(self, order: Order, payment_method: Optional[str] = None) -> CaptureOutcome:
        payment_method = payment_method or order.stripe_payment_method_id
        amount = Decimal(order.total)
        attempt = (order.capture_attempts or 0) + 1
        key = capture_idempotency_key(order.id, attempt)
        order_logger = logger.with_context(order_id=order.id, capture_attempt=attempt)

        try:
            intent = await self._charge(order, payment_method, key, attempt)
        except GatewayTimeoutError as e:
            # Attempt not consumed: the retry reuses the same idempotency key
            order_logger.error(f"Capture of order {order.id} timed out; outcome unknown, left {order.status.value}")
            metrics.track_capture("unknown")
            return CaptureOutcome(
                order_id=order.id,
                succeeded=False,
                amount=amount,
                failure=CaptureFailure(
                    order_id=order.id,
                    amount=amount,
                    failure_code="timeout",
                    message=e.provider_message,
                    outcome_unknown=True,
                ),
            )
        except GatewayError as e:
            order_logger.error(f"Capture of order {order.id} declined: {e.failure_code} ({e.provider_message})")
            metrics.track_capture("failed")
            await self._record_decline(order, e, attempt)
            return CaptureOutcome(
                order_id=order.id,
                succeeded=False,
                amount=amount,
                payment_intent_id=e.payment_intent_id,
                failure=CaptureFailure(
                    order_id=order.id,
                    amount=amount,
                    failure_code=e.failure_code,
                    decline_code=e.decline_code,
                    message=e.provider_message,
                ),
            )

        if intent.get("status") != "succeeded":
            order_logger.error(f"Capture of order {order.id} returned {intent.get('status')}; awaiting gateway event")
            metrics.track_capture("unknown")
            return CaptureOutcome(
                order_id=order.id,
                succeeded=False,
                amount=amount,
                payment_intent_id=intent.get("id"),
                failure=CaptureFailure(
                    order_id=order.id,
                    amount=amount,
                    failure_code=f"intent_{intent.get('status')}",
                    message="Charge not settled",
                    outcome_unknown=True,
                ),
            )

        captured = format_amount_from_stripe(intent.get("amount_received") or format_amount_for_stripe(amount))
        fields = {"capture_attempts": attempt, "stripe_payment_method_id": payment_method}
        if intent.get("id") != order.stripe_payment_intent_id:
            fields["stripe_payment_intent_id"] = intent.get("id")

        try:
            await self.engine.apply_status(order, PaymentStatus.CHARGED, source="bulk_capture", **fields)
        except PersistenceError:
            order_logger.critical(
                f"Orphaned transaction: captured {captured} for order {order.id} on intent {intent.get('id')} "
                "but could not record it",
                extra={"gateway_reference": intent.get("id"), "operation": "bulk_capture"},
            )
            metrics.track_orphaned_transaction("bulk_capture")
            metrics.track_capture("succeeded", captured, order.currency)
            return CaptureOutcome(
                order_id=order.id,
                succeeded=True,
                amount=captured,
                payment_intent_id=intent.get("id"),
                orphaned_reference=intent.get("id"),
            )

        order_logger.info(f"Captured {captured} {order.currency} for order {order.id}")
        metrics.track_capture("succeeded", captured, order.currency)
        return CaptureOutcome(order_id=order.id, succeeded=True, amount=captured, payment_intent_id=intent.get("id"))

    async def _record_decline(self, order: Order, error: GatewayError, attempt: int) -> None:
        fields = {
            "decline_code": error.decline_code,
            "failure_code": error.failure_code,
            "failure_message": error.provider_message,
            "capture_attempts": attempt,
        }
        if error.payment_intent_id and error.payment_intent_id != order.stripe_payment_intent_id:
            # Declined off-session intent becomes the outstanding one; the retry cancels it
            fields["stripe_payment_intent_id"] = error.payment_intent_id
        result = await self.engine.apply_status(order, PaymentStatus.CHARGE_FAILED, source="bulk_capture", **fields)
        if result == ApplyResult.DUPLICATE:
            # Repeated decline on a manual retry: keep the latest details
            self.orders.record_failure_details(order, **fields)
