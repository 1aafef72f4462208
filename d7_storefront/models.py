"""
D7 Storefront Models

Orders carry the payment record: gateway references, amounts and the
payment status state machine.
"""

import enum
from collections import deque
from decimal import Decimal
from typing import Dict, FrozenSet

from sqlalchemy import JSON, TIMESTAMP, Boolean, CheckConstraint, Column, Index, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from d1_profiles.types import Classification, PaymentMethod, PricingType
from database.base import Base, DatabaseAgnosticEnum, generate_uuid


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle of an order"""

    PENDING = "pending"  # intent created, nothing confirmed yet
    SUCCEEDED = "succeeded"  # immediate charge confirmed
    CARD_SAVED = "card_saved"  # deferred authorization confirmed
    FAILED = "failed"  # immediate charge or authorization declined
    CHARGED = "charged"  # bulk capture succeeded
    CHARGE_FAILED = "charge_failed"  # bulk capture declined
    REFUNDED = "refunded"
    DISPUTED = "disputed"


# Allowed forward moves. failed -> succeeded/card_saved covers the customer
# re-confirming the same intent with another card; charge_failed -> charged
# is the targeted manual retry.
TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.CARD_SAVED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.CARD_SAVED}),
    PaymentStatus.CARD_SAVED: frozenset({PaymentStatus.CHARGED, PaymentStatus.CHARGE_FAILED}),
    PaymentStatus.CHARGE_FAILED: frozenset({PaymentStatus.CHARGED}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.DISPUTED}),
    PaymentStatus.CHARGED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.DISPUTED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.DISPUTED: frozenset(),
}

PAID_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.CHARGED, PaymentStatus.DISPUTED})
TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Single-step move allowed by the state machine"""
    return target in TRANSITIONS[current]


def is_reachable(current: PaymentStatus, target: PaymentStatus) -> bool:
    """True when target lies strictly ahead of current along allowed moves"""
    seen = set()
    queue = deque(TRANSITIONS[current])
    while queue:
        status = queue.popleft()
        if status == target:
            return True
        if status in seen:
            continue
        seen.add(status)
        queue.extend(TRANSITIONS[status])
    return False


class CaptureMode(str, enum.Enum):
    """Gateway capture method"""

    AUTOMATIC = "automatic"  # charged on confirmation
    MANUAL = "manual"  # authorized now, captured by bulk capture

    @classmethod
    def for_payment_method(cls, method: PaymentMethod) -> "CaptureMode":
        return cls.AUTOMATIC if method == PaymentMethod.IMMEDIATE else cls.MANUAL

    @property
    def order_type(self) -> str:
        """Label carried in gateway metadata"""
        return "immediate-charge" if self == CaptureMode.AUTOMATIC else "pre-order-autodebit"


class Order(Base):
    """
    An order and its payment record.

    Created pending at checkout by the payment orchestrator; every later
    status change goes through the reconciliation engine. Never deleted.
    stripe_payment_intent_id always names the one current intent;
    authorization_intent_id keeps the checkout intent once a bulk-capture
    charge supersedes it.
    """

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    identity_id = Column(String(36), nullable=False, index=True)

    classification = Column(DatabaseAgnosticEnum(Classification), nullable=False)
    pricing_type = Column(DatabaseAgnosticEnum(PricingType), nullable=False)
    capture_mode = Column(DatabaseAgnosticEnum(CaptureMode), nullable=False)

    line_items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    shipping_address = Column(JSON)

    status = Column(DatabaseAgnosticEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    paid = Column(Boolean, nullable=False, default=False)

    stripe_customer_id = Column(String(255), index=True)
    stripe_payment_intent_id = Column(String(255), unique=True, index=True)
    authorization_intent_id = Column(String(255), index=True)
    stripe_payment_method_id = Column(String(255))

    decline_code = Column(String(100))
    failure_code = Column(String(100))
    failure_message = Column(Text)
    capture_attempts = Column(Integer, nullable=False, default=0)
    last_event_id = Column(String(255))

    captured_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_orders_status_paid", "status", "paid"),
        CheckConstraint("subtotal >= 0", name="check_order_subtotal_non_negative"),
        CheckConstraint("shipping_cost >= 0", name="check_order_shipping_non_negative"),
        CheckConstraint("total >= 0", name="check_order_total_non_negative"),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, total={self.total})>"

    @property
    def is_deferred(self) -> bool:
        return self.capture_mode == CaptureMode.MANUAL

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "classification": self.classification.value if self.classification else None,
            "capture_mode": self.capture_mode.value if self.capture_mode else None,
            "status": self.status.value if self.status else None,
            "paid": self.paid,
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "total": str(self.total),
            "currency": self.currency,
            "line_items": self.line_items,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "decline_code": self.decline_code,
            "failure_code": self.failure_code,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
        }
