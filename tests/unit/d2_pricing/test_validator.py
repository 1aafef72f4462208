"""
Tests for server-side cart pricing
"""
from decimal import Decimal, InvalidOperation
from unittest.mock import Mock

import pytest

from core.exceptions import RuleStoreUnavailable, ValidationError
from d1_profiles.rules import RuleStore
from d1_profiles.types import PricingStrategy, PricingType
from d2_pricing.catalog import Catalog
from d2_pricing.types import CartLimits, CartLine, LineKind, to_money
from d2_pricing.validator import CartPricingValidator, compare_submitted_total, load_cart_limits, parse_quantity
from database.models import RuleDataType

RETAIL = PricingStrategy(PricingType.RETAIL, "Guest pricing")
BACKER = PricingStrategy(PricingType.BACKER, "Backer pricing")


@pytest.fixture
def validator(db_session, catalog_items):
    return CartPricingValidator(Catalog(db_session))


class TestCartPricing:
    def test_retail_prices(self, validator):
        cart = validator.validate([CartLine("standard-pledge"), CartLine("dice-set", quantity=2)], RETAIL)

        assert [line.unit_price for line in cart.lines] == [Decimal("25.00"), Decimal("35.00")]
        assert cart.server_total == Decimal("95.00")
        assert not any(line.is_backer_price for line in cart.lines)

    def test_backer_prices(self, validator):
        cart = validator.validate([CartLine("standard-pledge"), CartLine("dice-set")], BACKER)
        assert cart.server_total == Decimal("43.00")
        assert all(line.is_backer_price for line in cart.lines)

    def test_backer_falls_back_to_retail_without_backer_price(self, validator):
        cart = validator.validate([CartLine("enamel-pin", quantity=3)], BACKER)
        line = cart.lines[0]
        assert line.unit_price == Decimal("12.00")
        assert line.is_backer_price is False
        assert cart.server_total == Decimal("36.00")

    def test_client_price_on_ordinary_line_is_ignored(self, validator):
        cart = validator.validate([CartLine("dice-set", price="0.01")], RETAIL)
        assert cart.server_total == Decimal("35.00")

    @pytest.mark.parametrize("raw", [0, "0", None, "abc", ""])
    def test_missing_or_zero_quantity_becomes_one(self, validator, raw):
        cart = validator.validate([CartLine("dice-set", quantity=raw)], RETAIL)
        assert cart.lines[0].quantity == 1

    def test_quantity_parsing(self):
        assert parse_quantity("3") == 3
        assert parse_quantity(2.7) == 2
        assert parse_quantity(-2) == -2
        assert parse_quantity(True) == 1

    @pytest.mark.parametrize("quantity", [-1, 11])
    def test_quantity_out_of_bounds(self, validator, quantity):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate([CartLine("dice-set", quantity=quantity)], RETAIL)
        assert exc_info.value.reason == "quantity_out_of_bounds"
        assert exc_info.value.field == "quantity"

    def test_quantity_at_bounds(self, validator):
        cart = validator.validate([CartLine("enamel-pin", quantity=10)], RETAIL)
        assert cart.server_total == Decimal("120.00")

    def test_too_many_items(self, db_session, catalog_items):
        validator = CartPricingValidator(Catalog(db_session), CartLimits(max_items_in_cart=2))
        lines = [CartLine("standard-pledge"), CartLine("dice-set"), CartLine("enamel-pin")]
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(lines, RETAIL)
        assert exc_info.value.reason == "too_many_items"

    def test_total_exceeds_limit(self, db_session, catalog_items):
        validator = CartPricingValidator(Catalog(db_session), CartLimits(max_total_amount=Decimal("50")))
        with pytest.raises(ValidationError) as exc_info:
            validator.validate([CartLine("dice-set", quantity=2)], RETAIL)
        assert exc_info.value.reason == "total_exceeds_limit"

    @pytest.mark.parametrize("item_id", ["does-not-exist", "retired-poster"])
    def test_unknown_or_inactive_item(self, validator, item_id):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate([CartLine(item_id)], RETAIL)
        assert exc_info.value.reason == "unknown_item"

    def test_empty_cart(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate([], RETAIL)
        assert exc_info.value.reason == "empty_cart"

    def test_empty_cart_allowed_for_shipping_only(self, validator):
        cart = validator.validate([], BACKER, allow_empty=True)
        assert cart.is_empty
        assert cart.server_total == Decimal("0.00")

    def test_special_lines_use_their_price(self, validator):
        lines = [
            CartLine("standard-pledge", kind=LineKind.ORIGINAL_PLEDGE, price="18.00", name="Original Pledge"),
            CartLine("deluxe", kind=LineKind.PLEDGE_UPGRADE, price=30),
            CartLine("dice-set"),
        ]
        cart = validator.validate(lines, BACKER)
        assert [line.subtotal for line in cart.lines] == [Decimal("18.00"), Decimal("30.00"), Decimal("25.00")]
        assert cart.server_total == Decimal("73.00")

    def test_special_line_without_price(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate([CartLine("deluxe", kind=LineKind.PLEDGE_UPGRADE)], BACKER)
        assert exc_info.value.reason == "missing_price"

    @pytest.mark.parametrize("price", ["free", "-5", "NaN", "Infinity", "-Infinity"])
    def test_special_line_with_invalid_price(self, validator, price):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate([CartLine("x", kind=LineKind.ORIGINAL_ADDON, price=price)], BACKER)
        assert exc_info.value.reason == "invalid_price"

    def test_multiple_pledge_warning_only_for_non_backers(self, validator):
        lines = [CartLine("standard-pledge", quantity=2)]
        assert validator.validate(lines, RETAIL).warnings == ["Multiple pledges detected. Are you sure?"]
        assert validator.validate(lines, BACKER, is_backer=True).warnings == []

    def test_pricing_is_deterministic(self, validator):
        lines = [CartLine("standard-pledge"), CartLine("enamel-pin", quantity=4)]
        assert validator.validate(lines, BACKER) == validator.validate(lines, BACKER)

    def test_total_with_shipping(self, validator):
        cart = validator.validate([CartLine("dice-set")], RETAIL)
        assert cart.total_with_shipping("15") == Decimal("50.00")
        assert cart.total_with_shipping(None) == Decimal("35.00")

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity"])
    def test_to_money_rejects_non_finite(self, value):
        with pytest.raises(InvalidOperation):
            to_money(value)

    def test_from_dict_honours_legacy_markers(self):
        line = CartLine.from_dict({"id": "standard-pledge", "isDroppedBackerPledge": True, "price": 18})
        assert line.kind == LineKind.ORIGINAL_PLEDGE
        assert CartLine.from_dict({"id": "x", "isPledgeUpgrade": True}).kind == LineKind.PLEDGE_UPGRADE
        assert CartLine.from_dict({"item_id": "dice-set"}).kind == LineKind.ORDINARY


class TestSubmittedTotal:
    def test_no_submitted_total(self):
        assert compare_submitted_total(None, Decimal("25.00"))["valid"] is True

    def test_within_tolerance(self):
        result = compare_submitted_total("25.01", Decimal("25.00"))
        assert result["valid"] is True
        assert result["difference"] == Decimal("0.01")

    def test_mismatch_is_logged(self, caplog):
        with caplog.at_level("WARNING"):
            result = compare_submitted_total(1, Decimal("25.00"))
        assert result["valid"] is False
        assert result["difference"] == Decimal("24.00")
        assert "differs from server total" in caplog.text

    def test_unparseable(self):
        assert compare_submitted_total("lots", Decimal("25.00"))["valid"] is False

    @pytest.mark.parametrize("submitted", ["NaN", "Infinity", "-Infinity", "sNaN"])
    def test_non_finite_total_is_unparseable(self, submitted, caplog):
        with caplog.at_level("WARNING"):
            result = compare_submitted_total(submitted, Decimal("25.00"))
        assert result["valid"] is False
        assert result["difference"] is None
        assert "Unparseable client total" in caplog.text


class TestCartLimits:
    def test_defaults_without_rules(self, db_session):
        assert load_cart_limits(RuleStore(db_session)) == CartLimits()

    def test_limits_from_rules(self, db_session):
        store = RuleStore(db_session)
        store.set("cart", "max_quantity_per_item", 3, RuleDataType.NUMBER)
        store.set("cart", "max_total_amount", "250.50", RuleDataType.NUMBER)

        limits = load_cart_limits(store)
        assert limits.max_quantity_per_item == 3
        assert limits.max_total_amount == Decimal("250.50")
        assert limits.min_quantity == 1

    def test_zero_rule_reads_as_default(self, db_session):
        store = RuleStore(db_session)
        store.set("cart", "max_items_in_cart", 0, RuleDataType.NUMBER)
        assert load_cart_limits(store).max_items_in_cart == 50

    def test_unavailable_rules_use_defaults(self):
        rules = Mock()
        rules.get.side_effect = RuleStoreUnavailable("down")
        assert load_cart_limits(rules) == CartLimits()
