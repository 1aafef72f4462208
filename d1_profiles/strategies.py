"""
Strategy resolution: classification -> pricing and payment strategies

Rules under ``profile.<classification>`` override the default table. Any
rule-store failure or unrecognised stored value falls back to the default.
"""

from typing import Any, Dict, Tuple

from core.exceptions import RuleStoreUnavailable
from core.logging import get_logger

from .rules import profile_category
from .types import (
    DISPLAY_NAMES,
    PAYMENT_METHOD_ALIASES,
    Classification,
    PaymentMethod,
    PaymentStrategy,
    PricingStrategy,
    PricingType,
    ResolvedStrategies,
)

logger = get_logger(__name__, domain="d1")

DEFAULT_STRATEGIES: Dict[Classification, Tuple[PricingType, PaymentMethod]] = {
    Classification.GUEST: (PricingType.RETAIL, PaymentMethod.IMMEDIATE),
    Classification.COLLECTED: (PricingType.BACKER, PaymentMethod.DEFERRED),
    Classification.POT: (PricingType.BACKER, PaymentMethod.DEFERRED),
    Classification.DROPPED: (PricingType.BACKER, PaymentMethod.IMMEDIATE),
    Classification.CANCELED: (PricingType.BACKER, PaymentMethod.IMMEDIATE),
    Classification.LATE_PLEDGE: (PricingType.RETAIL, PaymentMethod.IMMEDIATE),
}

# Adding a classification without a default row fails at import
_unmapped = (set(Classification) - set(DEFAULT_STRATEGIES)) | (set(Classification) - set(DISPLAY_NAMES))
if _unmapped:
    raise RuntimeError(f"Classifications without default strategies: {sorted(c.value for c in _unmapped)}")


def pricing_reason(classification: Classification, pricing_type: PricingType) -> str:
    name = DISPLAY_NAMES[classification]
    if pricing_type == PricingType.BACKER:
        return f"{name} receives exclusive backer pricing"
    return f"{name} pays retail prices"


def payment_reason(classification: Classification, method: PaymentMethod) -> str:
    name = DISPLAY_NAMES[classification]
    if method == PaymentMethod.DEFERRED:
        return f"{name} card saved for bulk charge when items ship"
    return f"{name} payments are charged immediately"


class StrategyResolver:
    """Resolves strategies from a rule source (RuleStore or CachedRuleStore)"""

    def __init__(self, rules: Any):
        self.rules = rules

    def _read_rule(self, classification: Classification, key: str) -> Any:
        try:
            return self.rules.get(profile_category(classification), key)
        except RuleStoreUnavailable as e:
            logger.warning(f"Rule store unavailable resolving {classification.value}.{key}, using default: {e.message}")
            return None

    def resolve_pricing(self, classification: Classification) -> PricingStrategy:
        default_type, _ = DEFAULT_STRATEGIES[classification]
        raw = self._read_rule(classification, "pricing_type")

        pricing_type = default_type
        if raw is not None:
            try:
                pricing_type = PricingType(str(raw).strip().lower())
            except ValueError:
                logger.warning(f"Invalid pricing_type {raw!r} for {classification.value}, using {default_type.value}")

        return PricingStrategy(type=pricing_type, reason=pricing_reason(classification, pricing_type))

    def resolve_payment(self, classification: Classification) -> PaymentStrategy:
        _, default_method = DEFAULT_STRATEGIES[classification]
        raw = self._read_rule(classification, "payment_method")

        method = default_method
        if raw is not None:
            method = PAYMENT_METHOD_ALIASES.get(str(raw).strip().lower())
            if method is None:
                logger.warning(f"Invalid payment_method {raw!r} for {classification.value}, using {default_method.value}")
                method = default_method

        return PaymentStrategy(method=method, reason=payment_reason(classification, method))

    def resolve(self, classification: Classification) -> ResolvedStrategies:
        return ResolvedStrategies(
            classification=classification,
            pricing=self.resolve_pricing(classification),
            payment=self.resolve_payment(classification),
        )
