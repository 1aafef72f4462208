"""
Type definitions for the profiles domain
"""

from dataclasses import dataclass
from enum import Enum


class Classification(str, Enum):
    """Closed set of account categories that drive pricing and payment"""

    GUEST = "guest"
    COLLECTED = "collected"
    POT = "pot"
    DROPPED = "dropped"
    CANCELED = "canceled"
    LATE_PLEDGE = "late_pledge"


class PricingType(str, Enum):
    BACKER = "backer"
    RETAIL = "retail"


class PaymentMethod(str, Enum):
    """How an order's payment is collected"""

    IMMEDIATE = "immediate"  # captured at authorization
    DEFERRED = "deferred"  # card saved, captured by the bulk sweep


# Stored rule values accepted for payment_method
PAYMENT_METHOD_ALIASES = {
    "immediate": PaymentMethod.IMMEDIATE,
    "deferred": PaymentMethod.DEFERRED,
    "card_saved": PaymentMethod.DEFERRED,
}


DISPLAY_NAMES = {
    Classification.GUEST: "Guest",
    Classification.COLLECTED: "Kickstarter Backer",
    Classification.POT: "Kickstarter Backer (Payment Plan)",
    Classification.DROPPED: "Kickstarter Backer (Payment Pending)",
    Classification.CANCELED: "Kickstarter Backer (Canceled)",
    Classification.LATE_PLEDGE: "Late Pledge Backer",
}


@dataclass(frozen=True)
class PricingStrategy:
    type: PricingType
    reason: str

    @property
    def uses_backer_prices(self) -> bool:
        return self.type == PricingType.BACKER

    def to_dict(self) -> dict:
        return {"type": self.type.value, "reason": self.reason}


@dataclass(frozen=True)
class PaymentStrategy:
    method: PaymentMethod
    reason: str

    @property
    def charges_immediately(self) -> bool:
        return self.method == PaymentMethod.IMMEDIATE

    def to_dict(self) -> dict:
        return {"method": self.method.value, "reason": self.reason}


@dataclass(frozen=True)
class ResolvedStrategies:
    """Pricing and payment decisions for one classification"""

    classification: Classification
    pricing: PricingStrategy
    payment: PaymentStrategy
