"""
Backer profiles: account + classification + resolved strategies

Also derives the dashboard extras (original pledge, payment-plan progress,
alerts) shown to each kind of backer.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.exceptions import NotFoundError
from core.logging import get_logger
from database.models import BackerAccount

from .classifier import classify
from .context import RequestContext
from .repository import AccountRepository, normalize_email
from .strategies import StrategyResolver
from .types import DISPLAY_NAMES, Classification, PaymentStrategy, PricingStrategy

logger = get_logger(__name__, domain="d1")

ZERO = Decimal("0")

SHIPPING_ONLY_CLASSIFICATIONS = {Classification.COLLECTED, Classification.POT}


@dataclass
class DashboardAlert:
    type: str
    title: str
    message: str
    action: Optional[str] = None
    action_data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "action": self.action,
            "action_data": self.action_data,
        }


def _money(value) -> Decimal:
    return Decimal(value) if value is not None else ZERO


@dataclass
class BackerProfile:
    account: Optional[BackerAccount]
    classification: Classification
    pricing: PricingStrategy
    payment: PaymentStrategy
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def identity_id(self) -> Optional[str]:
        return self.account.identity_id if self.account else None

    @property
    def email(self) -> Optional[str]:
        return self.account.email if self.account else None

    @property
    def display_name(self) -> str:
        return DISPLAY_NAMES[self.classification]

    @property
    def is_backer(self) -> bool:
        return bool(self.account and self.account.ks_backer_number)

    @property
    def allows_shipping_only_checkout(self) -> bool:
        """Only backers whose pledge was collected can pay shipping alone"""
        return self.classification in SHIPPING_ONLY_CLASSIFICATIONS

    def original_pledge(self) -> Optional[Dict[str, Any]]:
        """Unpaid original pledge for dropped and canceled backers"""
        if self.account is None or self.classification not in (Classification.DROPPED, Classification.CANCELED):
            return None
        pledge_amount = _money(self.account.ks_pledge_amount)
        amount_paid = _money(self.account.ks_amount_paid)
        return {
            "pledge_id": self.account.ks_pledge_id,
            "pledge_amount": pledge_amount,
            "amount_paid": amount_paid,
            "amount_due": pledge_amount - amount_paid,
        }

    def payment_plan_status(self) -> Optional[Dict[str, Any]]:
        if self.account is None or self.classification != Classification.POT:
            return None
        pledge_amount = _money(self.account.ks_pledge_amount)
        amount_paid = _money(self.account.ks_amount_paid)
        if self.account.ks_amount_due is not None:
            amount_due = _money(self.account.ks_amount_due)
        else:
            amount_due = pledge_amount - amount_paid
        percent_paid = int((amount_paid / pledge_amount * 100).to_integral_value()) if pledge_amount > 0 else 0
        return {
            "pledge_amount": pledge_amount,
            "amount_paid": amount_paid,
            "amount_due": amount_due,
            "percent_paid": percent_paid,
            "is_complete": amount_due <= 0,
        }

    def alerts(self) -> List[DashboardAlert]:
        alerts = []

        if self.classification in (Classification.DROPPED, Classification.CANCELED):
            pledge = self.original_pledge() or {}
            outcome = "was not collected" if self.classification == Classification.DROPPED else "was canceled"
            alerts.append(
                DashboardAlert(
                    type="warning",
                    title="Complete Your Pledge",
                    message=(
                        f"Your original Kickstarter pledge of ${pledge.get('pledge_amount', ZERO)} {outcome}. "
                        "Complete your pledge to receive your rewards."
                    ),
                    action="Complete Pledge",
                    action_data=pledge,
                )
            )

        elif self.classification == Classification.POT:
            status = self.payment_plan_status()
            if status and not status["is_complete"]:
                alerts.append(
                    DashboardAlert(
                        type="info",
                        title="Payment Plan Active",
                        message=(
                            f"You've paid ${status['amount_paid']} of ${status['pledge_amount']} "
                            f"({status['percent_paid']}% complete). Remaining balance: ${status['amount_due']}. "
                            "Payment is managed by Kickstarter."
                        ),
                    )
                )
            elif status:
                alerts.append(
                    DashboardAlert(type="success", title="Payment Plan Complete", message="Your payment plan is fully paid!")
                )

        if self.classification in SHIPPING_ONLY_CLASSIFICATIONS and self.account and not self.account.ship_address_1:
            alerts.append(
                DashboardAlert(
                    type="info",
                    title="Shipping Address Needed",
                    message="Please add your shipping address to receive your rewards.",
                    action="Add Address",
                )
            )

        return alerts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.classification.value,
            "display_name": self.display_name,
            "identity_id": self.identity_id,
            "email": self.email,
            "is_backer": self.is_backer,
            "pricing": self.pricing.to_dict(),
            "payment": self.payment.to_dict(),
            "original_pledge": self.original_pledge(),
            "payment_plan_status": self.payment_plan_status(),
            "alerts": [alert.to_dict() for alert in self.alerts()],
        }


class ProfileService:
    """Builds BackerProfiles, caching them for the life of a RequestContext"""

    def __init__(self, context: RequestContext):
        self.context = context
        self.accounts = AccountRepository(context.db)
        self.resolver = StrategyResolver(context.rules)

    def build(self, account: Optional[BackerAccount]) -> BackerProfile:
        classification = classify(account)
        strategies = self.resolver.resolve(classification)
        return BackerProfile(
            account=account,
            classification=classification,
            pricing=strategies.pricing,
            payment=strategies.payment,
        )

    def guest_profile(self) -> BackerProfile:
        return self.build(None)

    def get_profile(self, identity_id: str) -> BackerProfile:
        cached = self.context.profiles.get(identity_id)
        if cached is not None:
            return cached

        account = self.accounts.find_by_identity(identity_id)
        if account is None:
            raise NotFoundError("Account", identity_id)

        profile = self.build(account)
        self.context.profiles[identity_id] = profile
        logger.debug(f"Resolved profile {profile.classification.value} for {identity_id}")
        return profile

    def get_profile_by_email(self, email: str) -> BackerProfile:
        account = self.accounts.find_by_email(normalize_email(email))
        if account is None:
            raise NotFoundError("Account", email)
        return self.get_profile(account.identity_id)
