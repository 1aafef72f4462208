"""
Catalog reads for cart pricing
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from database.models import CatalogItem, ItemType

from .types import CatalogEntry, to_money


def _to_entry(item: CatalogItem) -> CatalogEntry:
    return CatalogEntry(
        id=item.id,
        name=item.name,
        item_type=item.item_type,
        retail_price=to_money(item.retail_price),
        backer_price=to_money(item.backer_price) if item.backer_price is not None else None,
    )


class Catalog:
    """Read-only access to active catalog items"""

    def __init__(self, db: Session):
        self.db = db

    def get_item(self, item_id: str) -> Optional[CatalogEntry]:
        """Active item by id, or None; inactive items count as missing"""
        item = self.db.query(CatalogItem).filter(CatalogItem.id == item_id, CatalogItem.active.is_(True)).first()
        return _to_entry(item) if item else None

    def add_item(
        self,
        item_id: str,
        name: str,
        item_type: ItemType,
        retail_price: Decimal,
        backer_price: Optional[Decimal] = None,
    ) -> CatalogEntry:
        """Insert a catalog item (fixtures and admin import)"""
        item = CatalogItem(
            id=item_id,
            name=name,
            item_type=item_type,
            retail_price=to_money(retail_price),
            backer_price=to_money(backer_price) if backer_price is not None else None,
        )
        self.db.add(item)
        self.db.commit()
        return _to_entry(item)
