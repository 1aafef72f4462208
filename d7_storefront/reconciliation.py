"""
Reconciliation Engine

Every payment status change after authorization goes through
``ReconciliationEngine.apply_status``. An implied status is compared with
the stored one before anything is written, which makes repeated and
out-of-order deliveries harmless:

- same status: duplicate, nothing happens
- reachable ahead of the stored status: applied, one notification sent
- already behind the stored status: stale, nothing happens
- neither: conflict, logged for manual review and never auto-corrected
"""

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional

from core.exceptions import NotFoundError, ReconciliationConflict
from core.logging import get_logger
from d0_gateway.providers.stripe import StripeClient
from d1_profiles.repository import AccountRepository
from d9_delivery.notifications import NotificationService
from database.base import utcnow

from .models import PAID_STATUSES, Order, PaymentStatus, can_transition, is_reachable
from .repository import OrderRepository

logger = get_logger(__name__, domain="d7")


class ApplyResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    CONFLICT = "conflict"


# A status change may race a concurrent writer; re-evaluate this many times
MAX_APPLY_ATTEMPTS = 3


def payment_method_id(intent: Dict[str, Any]) -> Optional[str]:
    """Payment method id from an intent, expanded or not"""
    payment_method = intent.get("payment_method")
    if isinstance(payment_method, dict):
        return payment_method.get("id")
    return payment_method


def failure_fields(error: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Order failure columns from a gateway ``last_payment_error``"""
    error = error or {}
    return {
        "decline_code": error.get("decline_code"),
        "failure_code": error.get("decline_code") or error.get("code") or "payment_failed",
        "failure_message": error.get("message"),
    }


class ReconciliationEngine:
    """Advances order payment status from gateway events and operator actions"""

    def __init__(
        self,
        db,
        stripe_client: Optional[StripeClient] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.db = db
        self.stripe = stripe_client or StripeClient()
        self.notifications = notifications or NotificationService()
        self.orders = OrderRepository(db)
        self.accounts = AccountRepository(db)
        self._deferred: Optional[List[asyncio.Future]] = None

    def classify_change(self, current: PaymentStatus, implied: PaymentStatus) -> ApplyResult:
        if implied == current:
            return ApplyResult.DUPLICATE
        if is_reachable(current, implied):
            return ApplyResult.APPLIED
        if is_reachable(implied, current):
            return ApplyResult.STALE
        return ApplyResult.CONFLICT

    async def apply_status(
        self,
        order: Order,
        implied: PaymentStatus,
        event_id: Optional[str] = None,
        source: str = "webhook",
        **fields,
    ) -> ApplyResult:
        """
        Apply an implied status to an order

        Args:
            order: Order to update
            implied: Status the event or operation implies
            event_id: Gateway event id, recorded on the order when applied
            source: webhook, sync or bulk_capture, for logs
            **fields: Extra order columns written with the status

        Returns:
            ApplyResult; notifications are sent only for APPLIED

        A status several moves ahead is written in one step. Deliveries can
        arrive out of order, e.g. ``charge.refunded`` before
        ``payment_intent.succeeded``, and the later status is the truth; the
        skipped intermediate statuses are not notified.
        """
        order_logger = logger.with_context(order_id=order.id, event_id=event_id, source=source)

        for _ in range(MAX_APPLY_ATTEMPTS):
            current = order.status
            result = self.classify_change(current, implied)

            if result == ApplyResult.DUPLICATE:
                order_logger.info(f"Order {order.id} already {current.value}, nothing to apply")
                return result
            if result == ApplyResult.STALE:
                order_logger.info(f"Ignoring stale {implied.value} for order {order.id}, already {current.value}")
                return result
            if result == ApplyResult.CONFLICT:
                conflict = ReconciliationConflict(order.id, current.value, implied.value, event_id)
                order_logger.warning(f"Reconciliation conflict: {conflict.message}", extra={"details": conflict.details})
                return result

            values = dict(fields)
            if implied in PAID_STATUSES:
                values["paid"] = True
            elif implied == PaymentStatus.REFUNDED:
                values["paid"] = False
            if implied in (PaymentStatus.SUCCEEDED, PaymentStatus.CHARGED) and "captured_at" not in values:
                values["captured_at"] = utcnow()
            if event_id:
                values["last_event_id"] = event_id

            if self.orders.transition(order, current, implied, **values):
                order_logger.info(f"Order {order.id}: {current.value} -> {implied.value}")
                if not can_transition(current, implied):
                    order_logger.info(f"Order {order.id} skipped intermediate statuses on the way to {implied.value}")
                await self._notify(order, implied)
                return ApplyResult.APPLIED

            order_logger.info(f"Order {order.id} changed concurrently, re-evaluating {implied.value}")

        order_logger.warning(f"Gave up applying {implied.value} to order {order.id} after concurrent updates")
        return ApplyResult.CONFLICT

    @asynccontextmanager
    async def deferred_notifications(self):
        """
        Schedule notifications in the background instead of awaiting each one

        All scheduled sends are collected when the block exits, so a slow
        mail provider does not hold up the next order of a sweep.
        """
        self._deferred = []
        try:
            yield self
        finally:
            pending, self._deferred = self._deferred, None
            if pending:
                await asyncio.gather(*pending)

    def _notification(self, order: Order, status: PaymentStatus) -> Optional[Awaitable[bool]]:
        """The send for a newly applied status, or None when nothing goes out"""
        if status == PaymentStatus.DISPUTED:
            return self.notifications.send_dispute_alert(order)

        account = self.accounts.find_by_identity(order.identity_id)
        if account is None or not account.email:
            logger.warning(f"No email on file for order {order.id}, skipping {status.value} notification")
            return None

        if status in (PaymentStatus.SUCCEEDED, PaymentStatus.CHARGED):
            return self.notifications.send_payment_succeeded(account.email, order)
        if status == PaymentStatus.CARD_SAVED:
            return self.notifications.send_card_saved(account.email, order)
        if status in (PaymentStatus.FAILED, PaymentStatus.CHARGE_FAILED):
            return self.notifications.send_payment_failed(account.email, order, order.failure_message)
        return None

    async def _notify(self, order: Order, status: PaymentStatus) -> None:
        send = self._notification(order, status)
        if send is None:
            return
        if self._deferred is not None:
            self._deferred.append(asyncio.ensure_future(send))
        else:
            await send

    def locate_order(self, gateway_object: Dict[str, Any], payment_intent_id: Optional[str] = None) -> Optional[Order]:
        """
        Find the order a gateway object belongs to

        Matches on the payment intent id first. Failing that, the order_id
        metadata written at authorization recovers orders whose gateway
        reference was never stored.
        """
        payment_intent_id = payment_intent_id or gateway_object.get("id")
        order = self.orders.find_by_payment_intent(payment_intent_id)
        if order is not None:
            return order

        order_id = (gateway_object.get("metadata") or {}).get("order_id")
        if not order_id:
            return None

        order = self.orders.get(order_id)
        if order is not None:
            logger.warning(
                f"Matched intent {payment_intent_id} to order {order.id} through metadata "
                f"(stored intent: {order.stripe_payment_intent_id})",
                extra={"gateway_reference": payment_intent_id},
            )
            if order.stripe_payment_intent_id is None:
                customer = gateway_object.get("customer")
                if isinstance(customer, dict):
                    customer = customer.get("id")
                order = self.orders.attach_gateway_references(order.id, customer, payment_intent_id)
                logger.info(f"Recovered orphaned intent {payment_intent_id} onto order {order.id}")
        return order

    def implied_status_for_intent(self, order: Order, intent: Dict[str, Any]) -> Optional[PaymentStatus]:
        """Map a gateway intent status onto the order state machine; None means no change"""
        status = intent.get("status")
        if status == "succeeded":
            return PaymentStatus.CHARGED if order.is_deferred else PaymentStatus.SUCCEEDED
        if status == "requires_capture":
            return PaymentStatus.CARD_SAVED
        if status == "requires_payment_method" and intent.get("last_payment_error"):
            return self.implied_failure(order)
        return None

    def implied_failure(self, order: Order) -> PaymentStatus:
        """A declined capture of a saved card is charge_failed; anything earlier is failed"""
        if order.status in (PaymentStatus.CARD_SAVED, PaymentStatus.CHARGE_FAILED):
            return PaymentStatus.CHARGE_FAILED
        return PaymentStatus.FAILED

    def fields_from_intent(self, order: Order, intent: Dict[str, Any], implied: PaymentStatus) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        method_id = payment_method_id(intent)
        if method_id:
            values["stripe_payment_method_id"] = method_id
        if implied in (PaymentStatus.FAILED, PaymentStatus.CHARGE_FAILED):
            values.update(failure_fields(intent.get("last_payment_error")))
        if implied in PAID_STATUSES and intent.get("id") and intent["id"] != order.stripe_payment_intent_id:
            # A charge on a new intent supersedes the authorization
            values["stripe_payment_intent_id"] = intent["id"]
        return values

    async def apply_intent(
        self,
        order: Order,
        intent: Dict[str, Any],
        implied: PaymentStatus,
        event_id: Optional[str] = None,
        source: str = "webhook",
    ) -> ApplyResult:
        return await self.apply_status(
            order, implied, event_id=event_id, source=source, **self.fields_from_intent(order, intent, implied)
        )

    async def sync_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """
        Pull an intent from the gateway and apply the status it implies

        Used after client-side confirmation and to settle outcomes left
        unknown by a timeout.

        Raises:
            NotFoundError: No order matches the intent
        """
        intent = await self.stripe.get_payment_intent(payment_intent_id)
        order = self.locate_order(intent, payment_intent_id)
        if order is None:
            raise NotFoundError("Order", payment_intent_id)

        implied = self.implied_status_for_intent(order, intent)
        if implied is None:
            logger.info(f"Intent {payment_intent_id} is {intent.get('status')}, order {order.id} unchanged")
            return {
                "order_id": order.id,
                "status": order.status.value,
                "gateway_status": intent.get("status"),
                "result": "unchanged",
            }

        result = await self.apply_intent(order, intent, implied, source="sync")
        return {
            "order_id": order.id,
            "status": order.status.value,
            "gateway_status": intent.get("status"),
            "result": result.value,
        }
