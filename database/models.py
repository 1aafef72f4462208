"""
Shared database models for BackerStore

Accounts, configurable rules and the product catalog. Orders live with the
storefront domain in d7_storefront.models.
"""

import enum

from sqlalchemy import TIMESTAMP, Boolean, CheckConstraint, Column, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from database.base import Base, DatabaseAgnosticEnum, generate_uuid


class BackerStatus(str, enum.Enum):
    """Pledge status imported from the crowdfunding platform"""

    COLLECTED = "collected"
    DROPPED = "dropped"
    CANCELED = "canceled"


class ItemType(str, enum.Enum):
    PLEDGE = "pledge"
    ADDON = "addon"


class RuleDataType(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


class BackerAccount(Base):
    """
    A purchaser identity, created on first contact (login or guest checkout).

    The ks_* columns are written only by import/admin processes. Checkout
    code reads them and touches nothing but the gateway customer id.
    ks_status stays a plain string so unexpected imported values survive.
    """

    __tablename__ = "backers"

    identity_id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255))

    ks_backer_number = Column(String(64), index=True)
    ks_status = Column(String(32))
    ks_pledge_over_time = Column(Boolean, default=False, nullable=False)
    ks_late_pledge = Column(Boolean, default=False, nullable=False)
    ks_pledge_id = Column(String(64))
    ks_pledge_amount = Column(Numeric(10, 2))
    ks_amount_paid = Column(Numeric(10, 2))
    ks_amount_due = Column(Numeric(10, 2))

    ship_address_1 = Column(String(255))
    ship_country = Column(String(2))

    stripe_customer_id = Column(String(255), unique=True)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<BackerAccount(identity_id={self.identity_id}, email={self.email}, status={self.ks_status})>"

    @property
    def has_backer_number(self) -> bool:
        return bool(self.ks_backer_number)


class Rule(Base):
    """Externally configurable key/value rule, stored as text with a data type"""

    __tablename__ = "rules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    category = Column(String(100), nullable=False, index=True)
    rule_key = Column(String(100), nullable=False)
    rule_value = Column(Text, nullable=False)
    data_type = Column(DatabaseAgnosticEnum(RuleDataType), default=RuleDataType.STRING, nullable=False)
    description = Column(Text)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (UniqueConstraint("category", "rule_key", name="uq_rules_category_key"),)

    def __repr__(self):
        return f"<Rule({self.category}.{self.rule_key}={self.rule_value!r})>"


class CatalogItem(Base):
    """Pledge tier or add-on offered in the store"""

    __tablename__ = "catalog_items"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    item_type = Column(DatabaseAgnosticEnum(ItemType), nullable=False)
    retail_price = Column(Numeric(10, 2), nullable=False)
    backer_price = Column(Numeric(10, 2))
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_catalog_items_type_active", "item_type", "active"),
        CheckConstraint("retail_price >= 0", name="check_retail_price_non_negative"),
    )

    def __repr__(self):
        return f"<CatalogItem(id={self.id}, retail={self.retail_price}, backer={self.backer_price})>"
