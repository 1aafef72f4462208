"""
D2 Pricing - Server-side cart pricing

Prices carts from the catalog for a resolved pricing strategy, plus pledge
upgrade differentials and shipping quotes.
"""

from .catalog import Catalog
from .shipping import ShippingQuote, calculate_shipping, get_zone, parse_shipping_cost
from .types import CartLimits, CartLine, CatalogEntry, LineKind, PricedCart, PricedLine
from .upgrades import PLEDGE_TIERS, build_upgrade_line, calculate_upgrade_price, get_upgrade_options
from .validator import CartPricingValidator, compare_submitted_total, load_cart_limits

__all__ = [
    "Catalog",
    "CatalogEntry",
    "CartLine",
    "CartLimits",
    "LineKind",
    "PricedCart",
    "PricedLine",
    "CartPricingValidator",
    "load_cart_limits",
    "compare_submitted_total",
    "PLEDGE_TIERS",
    "get_upgrade_options",
    "calculate_upgrade_price",
    "build_upgrade_line",
    "ShippingQuote",
    "calculate_shipping",
    "parse_shipping_cost",
    "get_zone",
]
