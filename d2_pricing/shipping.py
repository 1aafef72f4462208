"""
Shipping cost by destination zone

US ships free. Elsewhere: zone base cost, plus a per-addon cost for every
addon after the first, plus surcharges for heavy items.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from core.exceptions import ValidationError

from .types import to_money


@dataclass(frozen=True)
class ShippingZone:
    code: str
    name: str
    base_cost: Decimal
    per_addon_cost: Decimal
    countries: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def free_shipping(self) -> bool:
        return self.base_cost == 0 and self.per_addon_cost == 0


EU_COUNTRIES = frozenset(
    "de fr it es nl be at pl pt ie fi se dk cz gr hu ro bg sk si hr ee lv lt mt cy lu".split()
)

SHIPPING_ZONES: Dict[str, ShippingZone] = {
    "us": ShippingZone("us", "United States", Decimal("0"), Decimal("0"), frozenset({"us"})),
    "ca": ShippingZone("ca", "Canada", Decimal("15"), Decimal("5"), frozenset({"ca"})),
    "gb": ShippingZone("gb", "United Kingdom", Decimal("20"), Decimal("8"), frozenset({"gb", "uk"})),
    "eu": ShippingZone("eu", "European Union", Decimal("25"), Decimal("10"), EU_COUNTRIES),
    "oceania": ShippingZone("oceania", "Australia/New Zealand", Decimal("30"), Decimal("12"), frozenset({"au", "nz"})),
    "row": ShippingZone("row", "Rest of World", Decimal("40"), Decimal("15")),
}

HEAVY_ITEM_SURCHARGES: Dict[str, Decimal] = {
    "deluxe-set": Decimal("10"),
    "hardcover-artbook": Decimal("5"),
    "founders-of-neh": Decimal("5"),
}


@dataclass(frozen=True)
class ShippingQuote:
    cost: Decimal
    zone: ShippingZone
    base: Decimal
    addons: Decimal
    heavy_items: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cost": str(self.cost),
            "zone": self.zone.name,
            "breakdown": {"base": str(self.base), "addons": str(self.addons), "heavy_items": str(self.heavy_items)},
        }


def get_zone(country_code: Optional[str]) -> ShippingZone:
    code = (country_code or "").strip().lower()
    for zone in SHIPPING_ZONES.values():
        if code in zone.countries:
            return zone
    return SHIPPING_ZONES["row"]


def _sku(line: Any) -> str:
    raw = getattr(line, "item_id", None) or getattr(line, "name", None) or ""
    return "-".join(str(raw).lower().split())


def calculate_shipping(country_code: Optional[str], lines: Sequence[Any] = ()) -> ShippingQuote:
    """
    Quote shipping for priced cart lines (anything with item_id, item_type
    and quantity)
    """
    zone = get_zone(country_code)
    if zone.free_shipping:
        zero = to_money(0)
        return ShippingQuote(cost=zero, zone=zone, base=zero, addons=zero, heavy_items=zero)

    addon_count = 0
    heavy = Decimal("0")
    for line in lines:
        quantity = int(getattr(line, "quantity", 1) or 1)
        item_type = getattr(line, "item_type", None)
        if getattr(item_type, "value", item_type) != "pledge":
            addon_count += quantity
        heavy += HEAVY_ITEM_SURCHARGES.get(_sku(line), Decimal("0")) * quantity

    base = to_money(zone.base_cost)
    addons = to_money(max(0, addon_count - 1) * zone.per_addon_cost)
    heavy_items = to_money(heavy)
    return ShippingQuote(cost=base + addons + heavy_items, zone=zone, base=base, addons=addons, heavy_items=heavy_items)


REQUIRED_ADDRESS_FIELDS = ("name", "address1", "city", "postal_code", "country")


def validate_address(address: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Check a shipping address has its required fields; returns it normalised"""
    address = dict(address or {})
    missing: List[str] = [name for name in REQUIRED_ADDRESS_FIELDS if not str(address.get(name) or "").strip()]
    if missing:
        raise ValidationError(
            f"Shipping address is missing: {', '.join(missing)}",
            field="shipping_address",
            reason="invalid_address",
            missing=missing,
        )
    address["country"] = str(address["country"]).strip().lower()
    return address


def parse_shipping_cost(value: Any) -> Decimal:
    """Client-supplied shipping cost as money; unparseable or negative values are rejected"""
    try:
        cost = to_money(value or 0)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(
            f"Invalid shipping cost {value!r}", field="shipping_cost", reason="invalid_shipping"
        )
    if cost < 0:
        raise ValidationError("Shipping cost cannot be negative", field="shipping_cost", reason="invalid_shipping")
    return cost
