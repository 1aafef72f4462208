"""
Payment Orchestrator

Turns a validated cart total and payment strategy into one gateway payment
intent in the right capture mode, and records the gateway references on a
pending order.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from core.config import get_settings
from core.exceptions import PersistenceError, ValidationError
from core.logging import get_logger
from core.metrics import metrics
from d0_gateway.exceptions import GatewayError, GatewayTimeoutError
from d0_gateway.providers.stripe import StripeClient, format_amount_for_stripe
from d1_profiles.profiles import BackerProfile
from d1_profiles.repository import AccountRepository
from d2_pricing.shipping import parse_shipping_cost
from d2_pricing.types import PricedCart

from .models import CaptureMode, Order, PaymentStatus
from .repository import OrderRepository

logger = get_logger(__name__, domain="d7")


@dataclass
class AuthorizationResult:
    """Gateway references for a freshly authorized order"""

    order: Order
    payment_intent_id: str
    client_secret: Optional[str]
    customer_id: str
    capture_mode: CaptureMode
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order.id,
            "payment_intent_id": self.payment_intent_id,
            "client_secret": self.client_secret,
            "customer_id": self.customer_id,
            "capture_mode": self.capture_mode.value,
            "amount": str(self.amount),
        }


def customer_idempotency_key(identity_id: str) -> str:
    return f"customer-{identity_id}"


def checkout_idempotency_key(order_id: str) -> str:
    return f"checkout-{order_id}"


class PaymentOrchestrator:
    """Creates the gateway customer and payment intent for a checkout"""

    def __init__(self, db, stripe_client: Optional[StripeClient] = None, currency: Optional[str] = None):
        self.db = db
        self.stripe = stripe_client or StripeClient()
        self.currency = currency or get_settings().currency
        self.orders = OrderRepository(db)
        self.accounts = AccountRepository(db)

    async def ensure_customer(self, profile: BackerProfile) -> str:
        """
        Reuse the identity's gateway customer or create exactly one

        The create is keyed by identity so concurrent or retried checkouts
        get the same customer back; the conditional store settles which id
        is kept locally.
        """
        account = profile.account
        if account.stripe_customer_id:
            return account.stripe_customer_id

        customer = await self.stripe.create_customer(
            email=account.email,
            name=account.name,
            metadata={"identity_id": account.identity_id, "user_type": profile.classification.value},
            idempotency_key=customer_idempotency_key(account.identity_id),
        )
        customer_id = customer["id"]

        try:
            stored = self.accounts.attach_gateway_customer(account.identity_id, customer_id)
        except PersistenceError:
            logger.critical(
                f"Orphaned transaction: gateway customer {customer_id} created for {account.identity_id} "
                "but not stored",
                extra={"gateway_reference": customer_id, "operation": "create_customer"},
            )
            metrics.track_orphaned_transaction("create_customer")
            raise

        logger.info(f"Created gateway customer {stored} for {account.identity_id}")
        return stored

    async def authorize(
        self,
        profile: BackerProfile,
        cart: PricedCart,
        shipping_cost: Any = 0,
        shipping_address: Optional[Dict[str, Any]] = None,
    ) -> AuthorizationResult:
        """
        Authorize serverTotal + shipping for a profile

        Args:
            profile: Resolved profile; must have an account
            cart: Priced cart from the validator
            shipping_cost: Shipping in major units
            shipping_address: Stored on the order as given

        Returns:
            AuthorizationResult once the gateway references are persisted

        Raises:
            ValidationError: Nothing to charge, or no account
            GatewayError: Gateway rejected the intent (order marked failed)
            GatewayTimeoutError: Outcome unknown (order left pending)
            PersistenceError: References could not be stored after the
                gateway call; the intent stands and is logged as orphaned
        """
        if profile.account is None:
            raise ValidationError("An account is required to authorize a payment", field="identity_id")

        shipping = parse_shipping_cost(shipping_cost)

        amount = cart.total_with_shipping(shipping)
        if amount <= 0:
            raise ValidationError("Order total must be greater than zero", field="total", reason="zero_amount")

        capture_mode = CaptureMode.for_payment_method(profile.payment.method)
        order = self.orders.create_pending(
            identity_id=profile.identity_id,
            classification=profile.classification,
            pricing_type=profile.pricing.type,
            capture_mode=capture_mode,
            line_items=[line.to_dict() for line in cart.lines],
            subtotal=cart.server_total,
            shipping_cost=shipping,
            currency=self.currency,
            shipping_address=shipping_address,
        )
        order_logger = logger.with_context(order_id=order.id, identity_id=profile.identity_id)

        try:
            customer_id = await self.ensure_customer(profile)
            intent = await self.stripe.create_payment_intent(
                amount=format_amount_for_stripe(amount),
                currency=self.currency,
                customer_id=customer_id,
                capture_method=capture_mode.value,
                setup_future_usage="off_session" if capture_mode == CaptureMode.MANUAL else None,
                description=f"Order {order.id}",
                metadata={
                    "order_id": order.id,
                    "identity_id": profile.identity_id,
                    "user_email": profile.email,
                    "order_amount": str(amount),
                    "order_type": capture_mode.order_type,
                    "user_type": profile.classification.value,
                },
                receipt_email=profile.email,
                idempotency_key=checkout_idempotency_key(order.id),
            )
        except GatewayTimeoutError:
            order_logger.error(f"Gateway timed out authorizing for order {order.id}; outcome unknown")
            raise
        except GatewayError as e:
            order_logger.warning(f"Gateway rejected authorization for order {order.id}: {e.failure_code}")
            self.orders.transition(
                order,
                PaymentStatus.PENDING,
                PaymentStatus.FAILED,
                decline_code=e.decline_code,
                failure_code=e.failure_code,
                failure_message=e.provider_message,
            )
            raise

        payment_intent_id = intent["id"]
        metrics.track_authorization(capture_mode.value)

        try:
            order = self.orders.attach_gateway_references(order.id, customer_id, payment_intent_id)
        except PersistenceError:
            order_logger.critical(
                f"Orphaned transaction: payment intent {payment_intent_id} created for order {order.id} "
                "but not stored; recover through the intent's order_id metadata",
                extra={"gateway_reference": payment_intent_id, "operation": "create_payment_intent"},
            )
            metrics.track_orphaned_transaction("create_payment_intent")
            raise

        order_logger.info(
            f"Authorized {amount} {self.currency} for order {order.id} ({capture_mode.value} capture, "
            f"intent {payment_intent_id})"
        )
        return AuthorizationResult(
            order=order,
            payment_intent_id=payment_intent_id,
            client_secret=intent.get("client_secret"),
            customer_id=customer_id,
            capture_mode=capture_mode,
            amount=amount,
        )
