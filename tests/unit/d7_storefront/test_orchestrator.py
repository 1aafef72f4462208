"""
Tests for the payment orchestrator
"""
from decimal import Decimal
from unittest.mock import Mock

import pytest

from core.exceptions import PersistenceError, ValidationError
from d0_gateway.exceptions import GatewayError, GatewayTimeoutError
from d1_profiles.context import RequestContext
from d1_profiles.profiles import ProfileService
from d2_pricing.catalog import Catalog
from d2_pricing.types import CartLine
from d2_pricing.validator import CartPricingValidator
from d7_storefront.models import CaptureMode, Order, PaymentStatus
from d7_storefront.orchestrator import PaymentOrchestrator, checkout_idempotency_key, customer_idempotency_key


def profile_for(db_session, account):
    return ProfileService(RequestContext(db_session)).get_profile(account.identity_id)


def price(db_session, profile, *item_ids):
    validator = CartPricingValidator(Catalog(db_session))
    return validator.validate([CartLine(item_id) for item_id in item_ids], profile.pricing)


class TestEnsureCustomer:
    @pytest.mark.asyncio
    async def test_creates_and_stores_customer_once(self, db_session, stripe_client, guest_account):
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        profile = profile_for(db_session, guest_account)

        customer_id = await orchestrator.ensure_customer(profile)

        assert customer_id == "cus_test123"
        kwargs = stripe_client.create_customer.call_args.kwargs
        assert kwargs["email"] == "guest@example.com"
        assert kwargs["idempotency_key"] == customer_idempotency_key(guest_account.identity_id)
        assert kwargs["metadata"]["user_type"] == "guest"

        db_session.refresh(guest_account)
        assert guest_account.stripe_customer_id == "cus_test123"

    @pytest.mark.asyncio
    async def test_reuses_existing_customer(self, db_session, stripe_client, make_account):
        account = make_account(stripe_customer_id="cus_existing")
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)

        assert await orchestrator.ensure_customer(profile_for(db_session, account)) == "cus_existing"
        stripe_client.create_customer.assert_not_called()


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_guest_immediate_charge(self, db_session, stripe_client, catalog_items, guest_account):
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        profile = profile_for(db_session, guest_account)
        cart = price(db_session, profile, "standard-pledge")

        result = await orchestrator.authorize(profile, cart, shipping_cost="5.00")

        kwargs = stripe_client.create_payment_intent.call_args.kwargs
        assert kwargs["amount"] == 3000
        assert kwargs["capture_method"] == "automatic"
        assert kwargs["setup_future_usage"] is None
        assert kwargs["idempotency_key"] == checkout_idempotency_key(result.order.id)
        assert kwargs["receipt_email"] == "guest@example.com"
        assert kwargs["metadata"]["order_id"] == result.order.id
        assert kwargs["metadata"]["order_type"] == "immediate-charge"
        assert kwargs["metadata"]["order_amount"] == "30.00"

        order = result.order
        assert result.amount == Decimal("30.00")
        assert result.client_secret == "pi_test123_secret_abc"
        assert order.status == PaymentStatus.PENDING
        assert order.paid is False
        assert order.total == Decimal("30.00")
        assert order.stripe_payment_intent_id == "pi_test123"
        assert order.authorization_intent_id == "pi_test123"
        assert order.stripe_customer_id == "cus_test123"

    @pytest.mark.asyncio
    async def test_deferred_uses_manual_capture(self, db_session, stripe_client, catalog_items, collected_account):
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        profile = profile_for(db_session, collected_account)
        cart = price(db_session, profile, "dice-set")

        result = await orchestrator.authorize(profile, cart)

        kwargs = stripe_client.create_payment_intent.call_args.kwargs
        assert kwargs["amount"] == 2500
        assert kwargs["capture_method"] == "manual"
        assert kwargs["setup_future_usage"] == "off_session"
        assert kwargs["metadata"]["order_type"] == "pre-order-autodebit"
        assert result.capture_mode == CaptureMode.MANUAL
        assert result.order.capture_mode == CaptureMode.MANUAL

    @pytest.mark.asyncio
    async def test_zero_amount_rejected_before_gateway(self, db_session, stripe_client, collected_account):
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        profile = profile_for(db_session, collected_account)
        empty = CartPricingValidator(Catalog(db_session)).validate([], profile.pricing, allow_empty=True)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.authorize(profile, empty, shipping_cost=0)

        assert exc_info.value.reason == "zero_amount"
        stripe_client.create_payment_intent.assert_not_called()
        assert db_session.query(Order).count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("shipping_cost", ["-1", "abc", "NaN"])
    async def test_invalid_shipping_rejected(self, db_session, stripe_client, catalog_items, guest_account, shipping_cost):
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        profile = profile_for(db_session, guest_account)
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.authorize(profile, price(db_session, profile, "dice-set"), shipping_cost=shipping_cost)
        assert exc_info.value.reason == "invalid_shipping"
        stripe_client.create_payment_intent.assert_not_called()

    @pytest.mark.asyncio
    async def test_decline_marks_order_failed(self, db_session, stripe_client, catalog_items, guest_account):
        stripe_client.create_payment_intent.side_effect = GatewayError(
            provider="stripe",
            message="Your card was declined.",
            status_code=402,
            error_code="card_declined",
            decline_code="generic_decline",
        )
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        profile = profile_for(db_session, guest_account)

        with pytest.raises(GatewayError):
            await orchestrator.authorize(profile, price(db_session, profile, "dice-set"))

        order = db_session.query(Order).one()
        assert order.status == PaymentStatus.FAILED
        assert order.decline_code == "generic_decline"
        assert order.failure_code == "generic_decline"
        assert order.failure_message == "Your card was declined."
        assert order.paid is False

    @pytest.mark.asyncio
    async def test_timeout_leaves_order_pending(self, db_session, stripe_client, catalog_items, guest_account):
        stripe_client.create_payment_intent.side_effect = GatewayTimeoutError("stripe", 30, "POST:/v1/payment_intents")
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        profile = profile_for(db_session, guest_account)

        with pytest.raises(GatewayTimeoutError):
            await orchestrator.authorize(profile, price(db_session, profile, "dice-set"))

        order = db_session.query(Order).one()
        assert order.status == PaymentStatus.PENDING
        assert order.stripe_payment_intent_id is None

    @pytest.mark.asyncio
    async def test_orphaned_intent_is_logged_critical(
        self, db_session, stripe_client, catalog_items, guest_account, caplog
    ):
        orchestrator = PaymentOrchestrator(db_session, stripe_client=stripe_client)
        orchestrator.orders.attach_gateway_references = Mock(
            side_effect=PersistenceError("disk full", operation="attach_gateway_references", gateway_reference="pi_test123")
        )
        profile = profile_for(db_session, guest_account)

        with caplog.at_level("CRITICAL"):
            with pytest.raises(PersistenceError) as exc_info:
                await orchestrator.authorize(profile, price(db_session, profile, "dice-set"))

        assert exc_info.value.gateway_reference == "pi_test123"
        records = [r for r in caplog.records if r.levelname == "CRITICAL"]
        assert records
        assert "pi_test123" in records[0].getMessage()
        assert records[0].gateway_reference == "pi_test123"
