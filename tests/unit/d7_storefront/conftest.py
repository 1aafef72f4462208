"""
Storefront fixtures: persisted orders in any payment state and a
reconciliation engine wired to the mocked gateway and notifications
"""
from decimal import Decimal

import pytest

from d1_profiles.types import Classification, PricingType
from d7_storefront.models import CaptureMode, Order, PaymentStatus
from d7_storefront.reconciliation import ReconciliationEngine


@pytest.fixture
def make_order(db_session):
    """Factory for orders; deferred orders default to a saved card"""
    counter = {"n": 0}

    def _make(account, status=PaymentStatus.PENDING, total="18.00", deferred=False, **attributes):
        counter["n"] += 1
        total = Decimal(total)
        values = {
            "identity_id": account.identity_id,
            "classification": Classification.COLLECTED if deferred else Classification.GUEST,
            "pricing_type": PricingType.BACKER if deferred else PricingType.RETAIL,
            "capture_mode": CaptureMode.MANUAL if deferred else CaptureMode.AUTOMATIC,
            "line_items": [],
            "subtotal": total,
            "shipping_cost": Decimal("0.00"),
            "total": total,
            "currency": "usd",
            "status": status,
            "paid": status in (PaymentStatus.SUCCEEDED, PaymentStatus.CHARGED),
            "stripe_customer_id": f"cus_{counter['n']}",
            "stripe_payment_intent_id": f"pi_order_{counter['n']}",
            "authorization_intent_id": f"pi_order_{counter['n']}",
            "stripe_payment_method_id": f"pm_{counter['n']}" if deferred else None,
            "capture_attempts": 0,
        }
        values.update(attributes)
        order = Order(**values)
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make


@pytest.fixture
def engine(db_session, stripe_client, notifications):
    return ReconciliationEngine(db_session, stripe_client=stripe_client, notifications=notifications)
