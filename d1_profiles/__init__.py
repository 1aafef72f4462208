"""
D1 Profiles - Backer classification and strategy resolution

Classifies purchasers into closed account categories and resolves the
pricing and payment strategy each category gets.
"""

from .classifier import classify
from .context import RequestContext
from .profiles import BackerProfile, ProfileService
from .repository import AccountRepository
from .rules import CachedRuleStore, RuleStore, seed_default_rules
from .strategies import DEFAULT_STRATEGIES, StrategyResolver
from .types import Classification, PaymentMethod, PaymentStrategy, PricingStrategy, PricingType

__all__ = [
    "classify",
    "Classification",
    "PricingType",
    "PaymentMethod",
    "PricingStrategy",
    "PaymentStrategy",
    "DEFAULT_STRATEGIES",
    "StrategyResolver",
    "RuleStore",
    "CachedRuleStore",
    "seed_default_rules",
    "AccountRepository",
    "RequestContext",
    "BackerProfile",
    "ProfileService",
]
