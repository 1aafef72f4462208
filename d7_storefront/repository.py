"""
Repository for orders and their payment records
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, PersistenceError
from core.logging import get_logger
from d1_profiles.types import Classification, PricingType
from database.base import utcnow

from .models import CaptureMode, Order, PaymentStatus

logger = get_logger("order_repository", domain="d7")

# Columns a status transition may write alongside the status
TRANSITION_FIELDS = {
    "paid",
    "stripe_payment_intent_id",
    "authorization_intent_id",
    "stripe_payment_method_id",
    "decline_code",
    "failure_code",
    "failure_message",
    "capture_attempts",
    "captured_at",
    "last_event_id",
}


class OrderRepository:
    """Repository for Order operations"""

    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        identity_id: str,
        classification: Classification,
        pricing_type: PricingType,
        capture_mode: CaptureMode,
        line_items: List[Dict[str, Any]],
        subtotal: Decimal,
        shipping_cost: Decimal,
        currency: str,
        shipping_address: Optional[Dict[str, Any]] = None,
    ) -> Order:
        try:
            order = Order(
                identity_id=identity_id,
                classification=classification,
                pricing_type=pricing_type,
                capture_mode=capture_mode,
                line_items=line_items,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                total=subtotal + shipping_cost,
                currency=currency,
                shipping_address=shipping_address,
                status=PaymentStatus.PENDING,
                paid=False,
                capture_attempts=0,
            )
            self.db.add(order)
            self.db.commit()
            self.db.refresh(order)
            logger.info(f"Created pending order {order.id} for {identity_id}: {order.total} {currency}")
            return order
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error creating order for {identity_id}: {e}")
            raise PersistenceError(f"Failed to create order: {e}", operation="create_order") from e

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.id == order_id).first()

    def get_or_raise(self, order_id: str) -> Order:
        order = self.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        """Match on the current intent or on a superseded authorization intent"""
        if not payment_intent_id:
            return None
        return (
            self.db.query(Order)
            .filter(
                or_(
                    Order.stripe_payment_intent_id == payment_intent_id,
                    Order.authorization_intent_id == payment_intent_id,
                )
            )
            .first()
        )

    def attach_gateway_references(self, order_id: str, customer_id: str, payment_intent_id: str) -> Order:
        """Store the gateway ids returned at authorization"""
        try:
            order = self.get_or_raise(order_id)
            order.stripe_customer_id = customer_id
            order.stripe_payment_intent_id = payment_intent_id
            order.authorization_intent_id = payment_intent_id
            order.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(order)
            return order
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error storing gateway references for order {order_id}: {e}")
            raise PersistenceError(
                f"Failed to store gateway references: {e}",
                operation="attach_gateway_references",
                gateway_reference=payment_intent_id,
                order_id=order_id,
            ) from e

    def find_ready_to_capture(self) -> List[Order]:
        """Deferred orders with a saved card, oldest first"""
        return (
            self.db.query(Order)
            .filter(
                Order.status == PaymentStatus.CARD_SAVED,
                Order.paid.is_(False),
                Order.stripe_customer_id.isnot(None),
                Order.stripe_payment_method_id.isnot(None),
            )
            .order_by(Order.created_at, Order.id)
            .all()
        )

    def transition(self, order: Order, expected: PaymentStatus, target: PaymentStatus, **fields) -> bool:
        """
        Move an order from expected to target in one conditional write

        Returns:
            False when the stored status was no longer ``expected``
            (another writer got there first); the order is refreshed.
        """
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable on transition: {sorted(unknown)}")

        values = {getattr(Order, key): value for key, value in fields.items()}
        values[Order.status] = target
        values[Order.updated_at] = utcnow()

        try:
            updated = (
                self.db.query(Order)
                .filter(Order.id == order.id, Order.status == expected)
                .update(values, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error moving order {order.id} {expected.value} -> {target.value}: {e}")
            raise PersistenceError(
                f"Failed to update order status: {e}",
                operation="transition",
                gateway_reference=fields.get("stripe_payment_intent_id") or order.stripe_payment_intent_id,
                order_id=order.id,
            ) from e

        self.db.refresh(order)
        return bool(updated)

    def record_failure_details(self, order: Order, **fields) -> Order:
        """Write failure details without a status change (timeouts, repeated declines)"""
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable on order: {sorted(unknown)}")
        try:
            for key, value in fields.items():
                setattr(order, key, value)
            order.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(order)
            return order
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error updating order {order.id}: {e}")
            raise PersistenceError(f"Failed to update order: {e}", operation="record_failure", order_id=order.id) from e
