"""
Type definitions for cart pricing
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from database.models import ItemType

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Decimal rounded to cents; floats go through str to avoid binary noise"""
    if isinstance(value, float):
        value = str(value)
    amount = Decimal(value)
    if not amount.is_finite():
        raise InvalidOperation(f"Not a finite amount: {value!r}")
    return amount.quantize(CENT)


class LineKind(str, Enum):
    """Ordinary lines are priced from the catalog; the rest carry a trusted price"""

    ORDINARY = "ordinary"
    PLEDGE_UPGRADE = "pledge_upgrade"
    ORIGINAL_PLEDGE = "original_pledge"
    ORIGINAL_ADDON = "original_addon"

    @property
    def is_special(self) -> bool:
        return self != LineKind.ORDINARY


@dataclass(frozen=True)
class CatalogEntry:
    """Read-only snapshot of a catalog item"""

    id: str
    name: str
    item_type: ItemType
    retail_price: Decimal
    backer_price: Optional[Decimal] = None


@dataclass
class CartLine:
    """
    One line as submitted by the client.

    ``price`` is only honoured for special lines, whose authoritative price
    was computed upstream (upgrade differential, carried-over pledge). Any
    price on an ordinary line is ignored.
    """

    item_id: str
    quantity: Any = 1
    kind: LineKind = LineKind.ORDINARY
    price: Optional[Any] = None
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CartLine":
        """Build from a client cart entry, honouring the legacy boolean markers"""
        if data.get("kind"):
            kind = LineKind(data["kind"])
        elif data.get("isPledgeUpgrade") or data.get("is_pledge_upgrade"):
            kind = LineKind.PLEDGE_UPGRADE
        elif data.get("isOriginalPledge") or data.get("isDroppedBackerPledge") or data.get("is_original_pledge"):
            kind = LineKind.ORIGINAL_PLEDGE
        elif data.get("isOriginalAddon") or data.get("is_original_addon"):
            kind = LineKind.ORIGINAL_ADDON
        else:
            kind = LineKind.ORDINARY

        return cls(
            item_id=str(data.get("id") or data.get("item_id") or ""),
            quantity=data.get("quantity", 1),
            kind=kind,
            price=data.get("price"),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class CartLimits:
    min_quantity: int = 1
    max_quantity_per_item: int = 10
    max_items_in_cart: int = 50
    max_total_amount: Decimal = Decimal("10000")


@dataclass(frozen=True)
class PricedLine:
    item_id: str
    name: str
    kind: LineKind
    item_type: Optional[ItemType]
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    is_backer_price: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "kind": self.kind.value,
            "item_type": self.item_type.value if self.item_type else None,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "subtotal": str(self.subtotal),
            "is_backer_price": self.is_backer_price,
        }


@dataclass(frozen=True)
class PricedCart:
    """Authoritative pricing of a cart; server_total is the only figure charged"""

    lines: List[PricedLine]
    server_total: Decimal
    warnings: List[str] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.lines)

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def total_with_shipping(self, shipping_cost: Any) -> Decimal:
        return (self.server_total + to_money(shipping_cost or 0)).quantize(CENT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "server_total": str(self.server_total),
            "warnings": list(self.warnings),
        }
