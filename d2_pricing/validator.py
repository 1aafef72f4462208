"""
Cart Pricing Validator

Recomputes every line price and the order subtotal on the server from the
catalog and the resolved pricing strategy. Client-submitted prices are
ignored for ordinary lines and client totals are never used. Reads only,
never writes.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from core.exceptions import RuleStoreUnavailable, ValidationError
from core.logging import get_logger
from d1_profiles.rules import CART_CATEGORY
from d1_profiles.types import PricingStrategy
from database.models import ItemType

from .catalog import Catalog
from .types import CENT, CartLimits, CartLine, LineKind, PricedCart, PricedLine, to_money

logger = get_logger(__name__, domain="d2")

TOTAL_TOLERANCE = Decimal("0.01")


def load_cart_limits(rules: Any) -> CartLimits:
    """Cart limits from the ``cart`` rule category, defaults where absent"""
    defaults = CartLimits()

    def read(key: str, default):
        try:
            value = rules.get(CART_CATEGORY, key)
        except RuleStoreUnavailable as e:
            logger.warning(f"Rule store unavailable reading cart.{key}, using default: {e.message}")
            return default
        # Zero reads as unset, same as an absent rule
        return value if value else default

    return CartLimits(
        min_quantity=int(read("min_quantity", defaults.min_quantity)),
        max_quantity_per_item=int(read("max_quantity_per_item", defaults.max_quantity_per_item)),
        max_items_in_cart=int(read("max_items_in_cart", defaults.max_items_in_cart)),
        max_total_amount=to_money(read("max_total_amount", defaults.max_total_amount)),
    )


def parse_quantity(raw: Any) -> int:
    """
    Integer quantity from client input.

    Missing, zero or unparseable quantities become 1. Fractions truncate.
    Negative numbers are returned as-is so the bounds check rejects them.
    """
    if raw is None or isinstance(raw, bool):
        return 1
    try:
        quantity = int(Decimal(str(raw).strip()))
    except (InvalidOperation, ValueError, OverflowError):
        return 1
    return quantity or 1


class CartPricingValidator:
    """Prices carts for one pricing strategy against the catalog"""

    def __init__(self, catalog: Catalog, limits: Optional[CartLimits] = None):
        self.catalog = catalog
        self.limits = limits or CartLimits()

    def validate(
        self,
        lines: Sequence[CartLine],
        pricing: PricingStrategy,
        allow_empty: bool = False,
        is_backer: bool = False,
    ) -> PricedCart:
        """
        Price a cart

        Args:
            lines: Submitted cart lines
            pricing: Resolved pricing strategy
            allow_empty: Permit an empty cart (shipping-only checkout)
            is_backer: Suppresses the multiple-pledge warning

        Returns:
            PricedCart with server_total

        Raises:
            ValidationError: empty cart, quantity out of bounds, too many
                lines, total over the limit, unknown item, or a special
                line without a usable price
        """
        if not lines:
            if allow_empty:
                return PricedCart(lines=[], server_total=Decimal("0.00"))
            raise ValidationError("Cart is empty", field="items", reason="empty_cart")

        limits = self.limits
        if len(lines) > limits.max_items_in_cart:
            raise ValidationError(
                f"Maximum {limits.max_items_in_cart} unique items allowed in cart",
                field="items",
                reason="too_many_items",
                count=len(lines),
                limit=limits.max_items_in_cart,
            )

        priced: List[PricedLine] = []
        for line in lines:
            quantity = parse_quantity(line.quantity)
            label = line.name or line.item_id
            if quantity < limits.min_quantity or quantity > limits.max_quantity_per_item:
                raise ValidationError(
                    f"Quantity for {label} must be between {limits.min_quantity} and {limits.max_quantity_per_item}, got {quantity}",
                    field="quantity",
                    reason="quantity_out_of_bounds",
                    item_id=line.item_id,
                    quantity=quantity,
                )

            if line.kind.is_special:
                priced.append(self._price_special_line(line, quantity))
            else:
                priced.append(self._price_catalog_line(line, quantity, pricing))

        server_total = sum((p.subtotal for p in priced), Decimal("0")).quantize(CENT)
        if server_total > limits.max_total_amount:
            raise ValidationError(
                f"Order total exceeds maximum of ${limits.max_total_amount}",
                field="total",
                reason="total_exceeds_limit",
                total=str(server_total),
                limit=str(limits.max_total_amount),
            )

        warnings = []
        pledge_count = sum(p.quantity for p in priced if p.item_type == ItemType.PLEDGE)
        if pledge_count > 1 and not is_backer:
            warnings.append("Multiple pledges detected. Are you sure?")

        return PricedCart(lines=priced, server_total=server_total, warnings=warnings)

    def _price_special_line(self, line: CartLine, quantity: int) -> PricedLine:
        if line.price is None or line.price == "":
            raise ValidationError(
                f"{line.kind.value} line {line.item_id} has no price",
                field="price",
                reason="missing_price",
                item_id=line.item_id,
            )
        try:
            unit_price = to_money(line.price)
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(
                f"{line.kind.value} line {line.item_id} has an invalid price",
                field="price",
                reason="invalid_price",
                item_id=line.item_id,
            )
        if unit_price < 0:
            raise ValidationError(
                f"{line.kind.value} line {line.item_id} has a negative price",
                field="price",
                reason="invalid_price",
                item_id=line.item_id,
            )

        return PricedLine(
            item_id=line.item_id,
            name=line.name or line.item_id,
            kind=line.kind,
            item_type=ItemType.ADDON if line.kind == LineKind.ORIGINAL_ADDON else ItemType.PLEDGE,
            unit_price=unit_price,
            quantity=quantity,
            subtotal=(unit_price * quantity).quantize(CENT),
        )

    def _price_catalog_line(self, line: CartLine, quantity: int, pricing: PricingStrategy) -> PricedLine:
        entry = self.catalog.get_item(line.item_id)
        if entry is None:
            raise ValidationError(
                f"Item {line.name or line.item_id} not found in catalog",
                field="item_id",
                reason="unknown_item",
                item_id=line.item_id,
            )

        use_backer = pricing.uses_backer_prices and entry.backer_price is not None
        unit_price = entry.backer_price if use_backer else entry.retail_price

        return PricedLine(
            item_id=entry.id,
            name=entry.name,
            kind=line.kind,
            item_type=entry.item_type,
            unit_price=unit_price,
            quantity=quantity,
            subtotal=(unit_price * quantity).quantize(CENT),
            is_backer_price=use_backer,
        )


def compare_submitted_total(submitted: Any, expected: Decimal, tolerance: Decimal = TOTAL_TOLERANCE) -> Dict[str, Any]:
    """
    Compare a client-submitted total with the server figure

    Only ever logged; the server figure is always the one charged.
    """
    if submitted is None:
        return {"valid": True, "difference": None, "expected_total": expected, "submitted_total": None}

    try:
        submitted_total = to_money(submitted)
    except (InvalidOperation, ValueError, TypeError):
        logger.warning(f"Unparseable client total {submitted!r}, server total {expected}")
        return {"valid": False, "difference": None, "expected_total": expected, "submitted_total": submitted}

    difference = abs(expected - submitted_total)
    valid = difference <= tolerance
    if not valid:
        logger.warning(f"Client total {submitted_total} differs from server total {expected} by {difference}")
    return {
        "valid": valid,
        "difference": difference,
        "expected_total": expected,
        "submitted_total": submitted_total,
    }
