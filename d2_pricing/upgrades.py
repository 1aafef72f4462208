"""
Pledge tiers and upgrade pricing

Upgrades are priced as the difference between tiers. Downgrades are never
offered.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from core.exceptions import ValidationError

from .types import CartLine, LineKind, to_money


@dataclass(frozen=True)
class PledgeTier:
    id: str
    name: str
    price: Decimal


# Ordered by value
PLEDGE_TIERS: List[PledgeTier] = [
    PledgeTier("ebook-only", "Ebook Only", Decimal("15.00")),
    PledgeTier("standard", "Standard Edition", Decimal("45.00")),
    PledgeTier("deluxe", "Deluxe Edition", Decimal("75.00")),
    PledgeTier("collectors", "Collectors Edition", Decimal("150.00")),
    PledgeTier("founders-of-neh", "Founders of Neh", Decimal("500.00")),
]


def get_tier(tier_id: Optional[str]) -> Optional[PledgeTier]:
    return next((tier for tier in PLEDGE_TIERS if tier.id == tier_id), None)


def _current_price(current_pledge_id: Optional[str], current_price: Any) -> Decimal:
    tier = get_tier(current_pledge_id)
    if tier is not None:
        return tier.price
    return to_money(current_price or 0)


def get_upgrade_options(current_pledge_id: Optional[str], current_price: Any = 0) -> List[dict]:
    """Tiers above the current pledge with their upgrade price"""
    base = _current_price(current_pledge_id, current_price)
    return [
        {"id": tier.id, "name": tier.name, "price": tier.price, "upgrade_price": tier.price - base}
        for tier in PLEDGE_TIERS
        if tier.price > base
    ]


def get_downgrade_tiers(current_pledge_id: Optional[str], current_price: Any = 0) -> List[dict]:
    base = _current_price(current_pledge_id, current_price)
    return [
        {"id": tier.id, "name": tier.name, "price": tier.price, "reason": "Cannot downgrade pledge"}
        for tier in PLEDGE_TIERS
        if tier.price < base
    ]


def calculate_upgrade_price(from_price: Any, to_price: Any) -> Decimal:
    """Difference between two pledge prices, zero for same or lower tier"""
    difference = to_money(to_price or 0) - to_money(from_price or 0)
    return difference if difference > 0 else Decimal("0.00")


def build_upgrade_line(current_pledge_id: Optional[str], target_tier_id: str, current_price: Any = 0) -> CartLine:
    """Special cart line carrying the authoritative upgrade differential"""
    target = get_tier(target_tier_id)
    if target is None:
        raise ValidationError(f"Unknown pledge tier {target_tier_id}", field="tier", reason="unknown_item")

    upgrade_price = calculate_upgrade_price(_current_price(current_pledge_id, current_price), target.price)
    if upgrade_price <= 0:
        raise ValidationError(
            f"{target.name} is not an upgrade from the current pledge",
            field="tier",
            reason="not_an_upgrade",
        )

    return CartLine(
        item_id=target.id,
        quantity=1,
        kind=LineKind.PLEDGE_UPGRADE,
        price=upgrade_price,
        name=f"Upgrade to {target.name}",
    )
