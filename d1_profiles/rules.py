"""
Rule store: externally configurable key/value rules

Values are stored as text plus a data type and parsed on read. Absent rules
read as None; callers supply their own defaults.
"""

import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import RuleStoreUnavailable
from core.logging import get_logger
from database.models import Rule, RuleDataType

logger = get_logger(__name__, domain="d1")

CART_CATEGORY = "cart"


def profile_category(classification: str) -> str:
    """Rule category holding one classification's strategy overrides"""
    return f"profile.{getattr(classification, 'value', classification)}"


# (category, key) -> (value, data type, description)
DEFAULT_RULES: Dict[Tuple[str, str], Tuple[str, RuleDataType, str]] = {
    (CART_CATEGORY, "min_quantity"): ("1", RuleDataType.NUMBER, "Minimum quantity per line"),
    (CART_CATEGORY, "max_quantity_per_item"): ("10", RuleDataType.NUMBER, "Maximum quantity per line"),
    (CART_CATEGORY, "max_items_in_cart"): ("50", RuleDataType.NUMBER, "Maximum distinct lines per cart"),
    (CART_CATEGORY, "max_total_amount"): ("10000", RuleDataType.NUMBER, "Maximum order subtotal"),
    ("profile.guest", "pricing_type"): ("retail", RuleDataType.STRING, "Guests pay retail"),
    ("profile.guest", "payment_method"): ("immediate", RuleDataType.STRING, "Guests are charged at checkout"),
    ("profile.collected", "pricing_type"): ("backer", RuleDataType.STRING, "Collected backers get backer prices"),
    ("profile.collected", "payment_method"): ("deferred", RuleDataType.STRING, "Charged by bulk capture at shipping"),
    ("profile.pot", "pricing_type"): ("backer", RuleDataType.STRING, "Payment-plan backers get backer prices"),
    ("profile.pot", "payment_method"): ("deferred", RuleDataType.STRING, "Charged by bulk capture at shipping"),
    ("profile.dropped", "pricing_type"): ("backer", RuleDataType.STRING, "Dropped backers keep backer prices"),
    ("profile.dropped", "payment_method"): ("immediate", RuleDataType.STRING, "Dropped backers pay at checkout"),
    ("profile.canceled", "pricing_type"): ("backer", RuleDataType.STRING, "Canceled backers keep backer prices"),
    ("profile.canceled", "payment_method"): ("immediate", RuleDataType.STRING, "Canceled backers pay at checkout"),
    ("profile.late_pledge", "pricing_type"): ("retail", RuleDataType.STRING, "Late pledges pay retail"),
    ("profile.late_pledge", "payment_method"): ("immediate", RuleDataType.STRING, "Late pledges pay at checkout"),
}


def parse_rule_value(raw: str, data_type: RuleDataType) -> Any:
    """Parse a stored rule value according to its data type"""
    if data_type == RuleDataType.NUMBER:
        try:
            return Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            logger.warning(f"Unparseable number rule value {raw!r}")
            return None
    if data_type == RuleDataType.BOOLEAN:
        return str(raw).strip().lower() in ("true", "1")
    if data_type == RuleDataType.JSON:
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw
    return raw


def serialize_rule_value(value: Any, data_type: RuleDataType) -> str:
    if data_type == RuleDataType.JSON and not isinstance(value, str):
        return json.dumps(value)
    if data_type == RuleDataType.BOOLEAN:
        return "true" if value else "false"
    return str(value)


class RuleStore:
    """Database-backed rule store"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, category: str, key: str) -> Any:
        """
        Read one rule

        Returns:
            Typed value, or None when the rule is absent

        Raises:
            RuleStoreUnavailable: When the database cannot be read
        """
        try:
            rule = self.db.query(Rule).filter(Rule.category == category, Rule.rule_key == key).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Rule store read failed for {category}.{key}: {e}")
            raise RuleStoreUnavailable(f"Rule store unavailable: {e}", category=category, key=key) from e

        if rule is None:
            return None
        return parse_rule_value(rule.rule_value, rule.data_type)

    def get_category(self, category: str) -> Dict[str, Any]:
        try:
            rules = self.db.query(Rule).filter(Rule.category == category).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuleStoreUnavailable(f"Rule store unavailable: {e}", category=category) from e
        return {rule.rule_key: parse_rule_value(rule.rule_value, rule.data_type) for rule in rules}

    def set(
        self,
        category: str,
        key: str,
        value: Any,
        data_type: RuleDataType = RuleDataType.STRING,
        description: Optional[str] = None,
    ) -> Rule:
        """Insert or update a rule (administrative use)"""
        try:
            rule = self.db.query(Rule).filter(Rule.category == category, Rule.rule_key == key).first()
            if rule is None:
                rule = Rule(category=category, rule_key=key)
                self.db.add(rule)
            rule.rule_value = serialize_rule_value(value, data_type)
            rule.data_type = data_type
            if description is not None:
                rule.description = description
            self.db.commit()
            self.db.refresh(rule)
            logger.info(f"Set rule {category}.{key} = {rule.rule_value!r}")
            return rule
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database error setting rule {category}.{key}: {e}")
            raise


def seed_default_rules(db: Session) -> int:
    """Insert any missing default rules without touching existing ones

    Returns:
        Number of rules inserted
    """
    existing = {(r.category, r.rule_key) for r in db.query(Rule.category, Rule.rule_key).all()}
    inserted = 0
    for (category, key), (value, data_type, description) in DEFAULT_RULES.items():
        if (category, key) in existing:
            continue
        db.add(Rule(category=category, rule_key=key, rule_value=value, data_type=data_type, description=description))
        inserted += 1
    db.commit()
    logger.info(f"Seeded {inserted} default rules")
    return inserted


_MISSING = object()


class CachedRuleStore:
    """
    Read-through cache in front of any rule source.

    With ttl_seconds=None entries never expire, which suits a cache created
    per request and dropped with it. A process-wide instance should get a
    TTL; entries older than it are re-read. Failures are not cached.
    """

    def __init__(
        self,
        source: Any,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[Any, float]] = {}

    def get(self, category: str, key: str) -> Any:
        cache_key = (category, key)
        value, stored_at = self._entries.get(cache_key, (_MISSING, 0.0))
        if value is not _MISSING and not self._expired(stored_at):
            return value

        value = self.source.get(category, key)
        self._entries[cache_key] = (value, self._clock())
        return value

    def _expired(self, stored_at: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return self._clock() - stored_at >= self.ttl_seconds

    def invalidate(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
