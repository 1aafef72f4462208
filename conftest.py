"""
Root conftest.py for pytest configuration

Registers the domain markers and applies them from each test's location.
"""
import pytest

DOMAIN_MARKERS = {
    "core": "Configuration, logging and metrics tests",
    "d0_gateway": "Gateway client tests",
    "d1_profiles": "Classification and strategy tests",
    "d2_pricing": "Cart pricing tests",
    "d7_storefront": "Checkout, payment and reconciliation tests",
    "d9_delivery": "Notification tests",
}


def pytest_configure(config):
    """Register domain markers"""
    for marker_name, description in DOMAIN_MARKERS.items():
        config.addinivalue_line("markers", f"{marker_name}: {description}")
    config.addinivalue_line("markers", "unit: Fast tests with no external services")


def pytest_collection_modifyitems(config, items):
    """Mark tests with their domain and as unit tests based on their path"""
    for item in items:
        path = str(item.fspath)
        if "/tests/unit/" in path:
            item.add_marker(pytest.mark.unit)
        for marker_name in DOMAIN_MARKERS:
            if f"/{marker_name}/" in path:
                item.add_marker(getattr(pytest.mark, marker_name))
