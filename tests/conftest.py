"""
Shared fixtures: test settings, an in-memory database, sample accounts and
catalog, and mocked gateway and notification clients.
"""
import os
import sys
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

# Settings are read on first import of core.config
os.environ["ENVIRONMENT"] = "test"
os.environ["USE_STUBS"] = "true"
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ADMIN_EMAIL", "ops@backerstore.test")

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import d7_storefront.models  # noqa: E402,F401
from d0_gateway.providers.stripe import StripeClient  # noqa: E402
from d9_delivery.notifications import NotificationService  # noqa: E402
from database.base import Base  # noqa: E402
from database.models import BackerAccount, CatalogItem, ItemType  # noqa: E402


@pytest.fixture
def db_session():
    """Fresh in-memory SQLite database per test"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def catalog_items(db_session):
    """Pledge $25 retail / $18 backer, addons with and without backer prices"""
    items = [
        CatalogItem(
            id="standard-pledge",
            name="Standard Edition",
            item_type=ItemType.PLEDGE,
            retail_price=Decimal("25.00"),
            backer_price=Decimal("18.00"),
        ),
        CatalogItem(
            id="dice-set",
            name="Dice Set",
            item_type=ItemType.ADDON,
            retail_price=Decimal("35.00"),
            backer_price=Decimal("25.00"),
        ),
        CatalogItem(
            id="enamel-pin",
            name="Enamel Pin",
            item_type=ItemType.ADDON,
            retail_price=Decimal("12.00"),
            backer_price=None,
        ),
        CatalogItem(
            id="retired-poster",
            name="Retired Poster",
            item_type=ItemType.ADDON,
            retail_price=Decimal("10.00"),
            active=False,
        ),
    ]
    db_session.add_all(items)
    db_session.commit()
    return {item.id: item for item in items}


@pytest.fixture
def make_account(db_session):
    """Factory for persisted backer accounts"""
    counter = {"n": 0}

    def _make(email=None, **attributes):
        counter["n"] += 1
        account = BackerAccount(email=email or f"backer{counter['n']}@example.com", **attributes)
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account

    return _make


@pytest.fixture
def guest_account(make_account):
    return make_account(email="guest@example.com", name="Guest Buyer")


@pytest.fixture
def collected_account(make_account):
    return make_account(
        email="collected@example.com",
        name="Collected Backer",
        ks_backer_number="1001",
        ks_status="collected",
        ks_pledge_id="standard-pledge",
        ks_pledge_amount=Decimal("18.00"),
        ks_amount_paid=Decimal("18.00"),
    )


@pytest.fixture
def dropped_account(make_account):
    return make_account(
        email="dropped@example.com",
        name="Dropped Backer",
        ks_backer_number="1002",
        ks_status="dropped",
        ks_pledge_id="standard-pledge",
        ks_pledge_amount=Decimal("18.00"),
        ks_amount_paid=Decimal("0.00"),
    )


@pytest.fixture
def stripe_client():
    """StripeClient double; every gateway call is an AsyncMock"""
    client = Mock(spec=StripeClient)
    client.create_customer = AsyncMock(return_value={"id": "cus_test123", "object": "customer"})
    client.get_customer = AsyncMock()
    client.create_payment_intent = AsyncMock(
        side_effect=lambda **kwargs: {
            "id": "pi_test123",
            "object": "payment_intent",
            "client_secret": "pi_test123_secret_abc",
            "amount": kwargs["amount"],
            "currency": kwargs.get("currency", "usd"),
            "capture_method": kwargs.get("capture_method"),
            "status": "requires_payment_method",
            "metadata": kwargs.get("metadata", {}),
        }
    )
    client.get_payment_intent = AsyncMock()
    client.capture_payment_intent = AsyncMock()
    client.cancel_payment_intent = AsyncMock(return_value={"status": "canceled"})
    client.charge_off_session = AsyncMock()
    client.list_payment_methods = AsyncMock(return_value={"data": []})
    client.construct_webhook_event = Mock()
    return client


@pytest.fixture
def notifications():
    """NotificationService double recording every send"""
    service = Mock(spec=NotificationService)
    service.send_payment_succeeded = AsyncMock(return_value=True)
    service.send_payment_failed = AsyncMock(return_value=True)
    service.send_card_saved = AsyncMock(return_value=True)
    service.send_dispute_alert = AsyncMock(return_value=True)
    service.send_bulk_capture_summary = AsyncMock(return_value=True)
    service.close = AsyncMock()
    return service
