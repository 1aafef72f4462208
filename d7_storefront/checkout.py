"""
D7 Storefront Checkout

Checkout flow: classify the purchaser, resolve strategies, price the cart
on the server and authorize the payment. One RequestContext spans the whole
request so rules and the profile are read once.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from core.exceptions import ValidationError
from core.logging import get_logger
from core.metrics import metrics
from d0_gateway.exceptions import GatewayError
from d0_gateway.providers.stripe import StripeClient
from d1_profiles.context import RequestContext
from d1_profiles.profiles import BackerProfile, ProfileService
from d1_profiles.repository import AccountRepository
from d2_pricing.catalog import Catalog
from d2_pricing.shipping import calculate_shipping, parse_shipping_cost, validate_address
from d2_pricing.types import CartLine, PricedCart
from d2_pricing.validator import CartPricingValidator, compare_submitted_total, load_cart_limits

from .orchestrator import PaymentOrchestrator

logger = get_logger(__name__, domain="d7")


@dataclass
class CheckoutRequest:
    """
    Checkout input. Either identity_id (logged in) or guest_email.

    items are CartLine objects or client cart dicts. shipping_cost is used
    only when no destination is given; with a destination the server quotes
    shipping itself. submitted_total is compared and logged, never charged.
    """

    identity_id: Optional[str] = None
    guest_email: Optional[str] = None
    guest_name: Optional[str] = None
    items: List[Union[CartLine, Dict[str, Any]]] = field(default_factory=list)
    shipping_cost: Any = None
    shipping_country: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    submitted_total: Any = None
    request_id: Optional[str] = None

    def cart_lines(self) -> List[CartLine]:
        return [item if isinstance(item, CartLine) else CartLine.from_dict(item) for item in self.items]


@dataclass
class CheckoutResult:
    order_id: str
    payment_intent_id: str
    client_secret: Optional[str]
    customer_id: str
    classification: str
    pricing_type: str
    capture_mode: str
    status: str
    subtotal: Decimal
    shipping_cost: Decimal
    total: Decimal
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "order_id": self.order_id,
            "payment_intent_id": self.payment_intent_id,
            "client_secret": self.client_secret,
            "customer_id": self.customer_id,
            "classification": self.classification,
            "pricing_type": self.pricing_type,
            "capture_mode": self.capture_mode,
            "status": self.status,
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "total": str(self.total),
            "warnings": list(self.warnings),
        }


class CheckoutManager:
    """
    High-level checkout flow manager that coordinates pricing with the
    payment orchestrator
    """

    def __init__(self, db, stripe_client: Optional[StripeClient] = None, rules: Any = None):
        self.db = db
        self.rules = rules
        self.orchestrator = PaymentOrchestrator(db, stripe_client=stripe_client)
        self.accounts = AccountRepository(db)

    def resolve_profile(self, request: CheckoutRequest, profiles: ProfileService) -> BackerProfile:
        """Profile for a logged-in identity, or a shadow account for a guest email"""
        if request.identity_id:
            return profiles.get_profile(request.identity_id)

        if not request.guest_email:
            raise ValidationError("Log in or provide an email to check out", field="email", reason="identity_required")

        existing = self.accounts.find_by_email(request.guest_email)
        if existing is not None and existing.has_backer_number:
            raise ValidationError(
                "This email belongs to a Kickstarter backer. Please log in to get backer pricing.",
                field="email",
                reason="backer_login_required",
            )

        account, created = self.accounts.ensure_by_email(request.guest_email, name=request.guest_name)
        if created:
            logger.info(f"Created shadow account {account.identity_id} for guest checkout")
        return profiles.get_profile(account.identity_id)

    def quote_shipping(self, request: CheckoutRequest, cart: PricedCart) -> tuple:
        """
        Returns:
            (shipping cost, normalised address or None)
        """
        address = validate_address(request.shipping_address) if request.shipping_address else None
        country = (address or {}).get("country") or request.shipping_country

        if country:
            quote = calculate_shipping(country, cart.lines)
            if request.shipping_cost is not None:
                # Client figure is informational once the destination is known
                try:
                    submitted = parse_shipping_cost(request.shipping_cost)
                except ValidationError:
                    submitted = None
                if submitted != quote.cost:
                    logger.warning(f"Client shipping {request.shipping_cost!r} differs from quote {quote.cost} for {country}")
            return quote.cost, address

        return parse_shipping_cost(request.shipping_cost), address

    async def initiate_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Run a checkout end to end

        Raises:
            ValidationError: With a specific reason (empty_cart, unknown_item,
                quantity_out_of_bounds, backer_login_required, ...)
            NotFoundError: Unknown identity
            GatewayError: Immediate charge declined; carries the decline code
        """
        context = RequestContext.for_session(self.db, rules=self.rules, request_id=request.request_id)
        profiles = ProfileService(context)
        classification = "unknown"

        try:
            profile = self.resolve_profile(request, profiles)
            classification = profile.classification.value

            validator = CartPricingValidator(Catalog(self.db), load_cart_limits(context.rules))
            cart = validator.validate(
                request.cart_lines(),
                profile.pricing,
                allow_empty=profile.allows_shipping_only_checkout,
                is_backer=profile.is_backer,
            )
            shipping, address = self.quote_shipping(request, cart)
            compare_submitted_total(request.submitted_total, cart.total_with_shipping(shipping))

            authorization = await self.orchestrator.authorize(profile, cart, shipping, shipping_address=address)
        except ValidationError as e:
            logger.info(f"Checkout rejected ({classification}): {e.reason or e.message}")
            metrics.track_checkout(classification, "rejected")
            raise
        except GatewayError as e:
            outcome = "unknown" if e.outcome_unknown else "declined"
            logger.warning(f"Checkout {outcome} ({classification}): {e.failure_code}")
            metrics.track_checkout(classification, outcome)
            raise

        metrics.track_checkout(classification, "authorized")
        order = authorization.order
        logger.info(
            f"Checkout authorized for {profile.identity_id}: order {order.id}, "
            f"{profile.pricing.type.value} pricing, {authorization.capture_mode.value} capture"
        )
        return CheckoutResult(
            order_id=order.id,
            payment_intent_id=authorization.payment_intent_id,
            client_secret=authorization.client_secret,
            customer_id=authorization.customer_id,
            classification=classification,
            pricing_type=profile.pricing.type.value,
            capture_mode=authorization.capture_mode.value,
            status=order.status.value,
            subtotal=cart.server_total,
            shipping_cost=shipping,
            total=authorization.amount,
            warnings=list(cart.warnings),
        )
