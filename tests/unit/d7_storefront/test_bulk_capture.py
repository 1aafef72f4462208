"""
Tests for the bulk capture sweep and manual capture retries
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from core.exceptions import NotFoundError, PersistenceError, ValidationError
from d0_gateway.exceptions import GatewayError, GatewayTimeoutError
from d7_storefront.bulk_capture import BulkCaptureSweep, SweepSummary, capture_idempotency_key
from d7_storefront.models import PaymentStatus

S = PaymentStatus


def decline(intent_id=None, code="insufficient_funds"):
    return GatewayError(
        provider="stripe",
        message="Your card has insufficient funds.",
        status_code=402,
        error_code="card_declined",
        decline_code=code,
        payment_intent_id=intent_id,
    )


@pytest.fixture
def sweep(db_session, stripe_client, notifications, engine):
    return BulkCaptureSweep(db_session, stripe_client=stripe_client, notifications=notifications, engine=engine)


@pytest.fixture
def open_authorizations(stripe_client):
    """Every stored intent is still authorized; captures settle"""
    stripe_client.get_payment_intent.side_effect = lambda pi: {"id": pi, "status": "requires_capture"}
    stripe_client.capture_payment_intent.side_effect = lambda pi, idempotency_key=None: {
        "id": pi,
        "status": "succeeded",
    }
    return stripe_client


class TestSweep:
    @pytest.mark.asyncio
    async def test_captures_every_saved_card(
        self, sweep, db_session, open_authorizations, notifications, make_order, collected_account
    ):
        """Two saved cards of $18 and $35 are captured for $53"""
        first = make_order(collected_account, status=S.CARD_SAVED, deferred=True, total="18.00")
        second = make_order(collected_account, status=S.CARD_SAVED, deferred=True, total="35.00")

        summary = await sweep.run()

        assert summary.attempted == 2
        assert summary.succeeded == 2
        assert summary.failed == 0
        assert summary.total_captured == Decimal("53.00")

        for order in (first, second):
            db_session.refresh(order)
            assert order.status == S.CHARGED
            assert order.paid is True
            assert order.capture_attempts == 1

        keys = [call.kwargs["idempotency_key"] for call in open_authorizations.capture_payment_intent.call_args_list]
        assert sorted(keys) == sorted([capture_idempotency_key(first.id, 1), capture_idempotency_key(second.id, 1)])

        notifications.send_bulk_capture_summary.assert_awaited_once()
        sent = notifications.send_bulk_capture_summary.call_args.args[0]
        assert sent["total_captured"] == "53.00"
        assert notifications.send_payment_succeeded.await_count == 2

    @pytest.mark.asyncio
    async def test_notifications_do_not_hold_up_captures(
        self, sweep, open_authorizations, notifications, make_order, collected_account
    ):
        events = []
        capture = open_authorizations.capture_payment_intent.side_effect

        def record_capture(pi, idempotency_key=None):
            events.append("capture")
            return capture(pi, idempotency_key=idempotency_key)

        async def record_send(to_email, order):
            events.append("notify")
            return True

        open_authorizations.capture_payment_intent.side_effect = record_capture
        notifications.send_payment_succeeded.side_effect = record_send
        make_order(collected_account, status=S.CARD_SAVED, deferred=True)
        make_order(collected_account, status=S.CARD_SAVED, deferred=True)

        summary = await sweep.run()

        assert summary.succeeded == 2
        assert events == ["capture", "capture", "notify", "notify"]

    @pytest.mark.asyncio
    async def test_only_eligible_orders_selected(self, sweep, open_authorizations, make_order, collected_account, guest_account):
        make_order(collected_account, status=S.CARD_SAVED, deferred=True)
        make_order(collected_account, status=S.CARD_SAVED, deferred=True, stripe_payment_method_id=None)
        make_order(collected_account, status=S.CHARGE_FAILED, deferred=True)
        make_order(guest_account, status=S.SUCCEEDED)

        summary = await sweep.run()
        assert summary.attempted == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, sweep, db_session, stripe_client, notifications, make_order, collected_account
    ):
        declined = make_order(collected_account, status=S.CARD_SAVED, deferred=True, total="10.00")
        broken = make_order(collected_account, status=S.CARD_SAVED, deferred=True, total="20.00")
        good = make_order(collected_account, status=S.CARD_SAVED, deferred=True, total="30.00")

        def get_intent(pi):
            if pi == broken.stripe_payment_intent_id:
                raise RuntimeError("unexpected payload")
            return {"id": pi, "status": "requires_capture"}

        def capture(pi, idempotency_key=None):
            if pi == declined.stripe_payment_intent_id:
                raise decline(pi)
            return {"id": pi, "status": "succeeded"}

        stripe_client.get_payment_intent.side_effect = get_intent
        stripe_client.capture_payment_intent.side_effect = capture

        summary = await sweep.run()

        assert summary.attempted == 3
        assert summary.succeeded == 1
        assert summary.failed == 2
        assert summary.total_captured == Decimal("30.00")
        assert {f.order_id: f.failure_code for f in summary.failures} == {
            declined.id: "insufficient_funds",
            broken.id: "internal_error",
        }

        db_session.refresh(declined)
        db_session.refresh(broken)
        db_session.refresh(good)
        assert declined.status == S.CHARGE_FAILED
        assert declined.decline_code == "insufficient_funds"
        assert declined.capture_attempts == 1
        assert broken.status == S.CARD_SAVED
        assert good.status == S.CHARGED
        notifications.send_payment_failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_is_unknown_and_keeps_attempt(self, sweep, db_session, stripe_client, make_order, collected_account):
        order = make_order(collected_account, status=S.CARD_SAVED, deferred=True)
        stripe_client.get_payment_intent.side_effect = lambda pi: {"id": pi, "status": "requires_capture"}
        stripe_client.capture_payment_intent.side_effect = GatewayTimeoutError("stripe", 30)

        summary = await sweep.run()

        failure = summary.failures[0]
        assert failure.outcome_unknown is True
        assert failure.failure_code == "timeout"
        db_session.refresh(order)
        assert order.status == S.CARD_SAVED
        assert order.capture_attempts == 0

    @pytest.mark.asyncio
    async def test_expired_authorization_charges_saved_card(self, sweep, db_session, stripe_client, make_order, collected_account):
        order = make_order(collected_account, status=S.CARD_SAVED, deferred=True, total="25.00")
        stripe_client.get_payment_intent.return_value = {"id": order.stripe_payment_intent_id, "status": "canceled"}
        stripe_client.charge_off_session.return_value = {"id": "pi_fresh", "status": "succeeded", "amount_received": 2500}

        summary = await sweep.run()

        assert summary.succeeded == 1
        stripe_client.cancel_payment_intent.assert_not_called()
        kwargs = stripe_client.charge_off_session.call_args.kwargs
        assert kwargs["amount"] == 2500
        assert kwargs["payment_method_id"] == order.stripe_payment_method_id
        assert kwargs["metadata"]["order_id"] == order.id
        assert kwargs["idempotency_key"] == capture_idempotency_key(order.id, 1)

        db_session.refresh(order)
        assert order.status == S.CHARGED
        assert order.stripe_payment_intent_id == "pi_fresh"
        assert order.authorization_intent_id != "pi_fresh"

    @pytest.mark.asyncio
    async def test_unsettled_charge_is_unknown(self, sweep, stripe_client, make_order, collected_account):
        make_order(collected_account, status=S.CARD_SAVED, deferred=True)
        stripe_client.get_payment_intent.side_effect = lambda pi: {"id": pi, "status": "requires_capture"}
        stripe_client.capture_payment_intent.side_effect = lambda pi, idempotency_key=None: {"id": pi, "status": "processing"}

        summary = await sweep.run()
        assert summary.failed == 1
        assert summary.failures[0].outcome_unknown is True

    @pytest.mark.asyncio
    async def test_unrecorded_capture_is_reported_as_orphan(
        self, sweep, engine, open_authorizations, make_order, collected_account, caplog
    ):
        order = make_order(collected_account, status=S.CARD_SAVED, deferred=True)
        engine.apply_status = AsyncMock(side_effect=PersistenceError("locked", operation="transition"))

        with caplog.at_level("CRITICAL"):
            summary = await sweep.run()

        assert summary.succeeded == 1
        assert summary.orphaned_references == [order.stripe_payment_intent_id]
        assert "Orphaned transaction" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_sweep_still_reports(self, sweep, notifications):
        summary = await sweep.run()
        assert summary.attempted == 0
        assert summary.total_captured == Decimal("0.00")
        notifications.send_bulk_capture_summary.assert_awaited_once()


class TestCaptureOrder:
    @pytest.mark.asyncio
    async def test_retry_cancels_declined_intent(self, sweep, db_session, stripe_client, make_order, collected_account):
        order = make_order(collected_account, status=S.CARD_SAVED, deferred=True)
        authorization = order.authorization_intent_id
        intents = {authorization: "canceled"}
        stripe_client.get_payment_intent.side_effect = lambda pi: {"id": pi, "status": intents[pi]}
        stripe_client.charge_off_session.side_effect = decline("pi_declined")

        await sweep.run()

        db_session.refresh(order)
        assert order.status == S.CHARGE_FAILED
        assert order.stripe_payment_intent_id == "pi_declined"
        assert order.authorization_intent_id == authorization

        intents["pi_declined"] = "requires_payment_method"
        stripe_client.charge_off_session.side_effect = None
        stripe_client.charge_off_session.return_value = {"id": "pi_retry", "status": "succeeded"}

        outcome = await sweep.capture_order(order.id)

        assert outcome.succeeded is True
        stripe_client.cancel_payment_intent.assert_awaited_once_with("pi_declined", cancellation_reason="abandoned")
        assert stripe_client.charge_off_session.call_args.kwargs["idempotency_key"] == capture_idempotency_key(order.id, 2)

        db_session.refresh(order)
        assert order.status == S.CHARGED
        assert order.stripe_payment_intent_id == "pi_retry"
        assert order.capture_attempts == 2

    @pytest.mark.asyncio
    async def test_repeated_decline_updates_details_without_notifying(
        self, sweep, db_session, stripe_client, notifications, make_order, collected_account
    ):
        order = make_order(
            collected_account, status=S.CHARGE_FAILED, deferred=True, capture_attempts=1, decline_code="expired_card"
        )
        stripe_client.get_payment_intent.return_value = {"id": order.stripe_payment_intent_id, "status": "canceled"}
        stripe_client.charge_off_session.side_effect = decline(code="do_not_honor")

        outcome = await sweep.capture_order(order.id)

        assert outcome.succeeded is False
        assert outcome.failure.decline_code == "do_not_honor"
        db_session.refresh(order)
        assert order.status == S.CHARGE_FAILED
        assert order.decline_code == "do_not_honor"
        assert order.capture_attempts == 2
        notifications.send_payment_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_finds_saved_card_when_none_recorded(self, sweep, stripe_client, make_order, collected_account):
        order = make_order(collected_account, status=S.CARD_SAVED, deferred=True, stripe_payment_method_id=None)
        stripe_client.list_payment_methods.return_value = {"data": [{"id": "pm_listed"}]}
        stripe_client.get_payment_intent.return_value = {"id": order.stripe_payment_intent_id, "status": "canceled"}
        stripe_client.charge_off_session.return_value = {"id": "pi_new", "status": "succeeded"}

        await sweep.capture_order(order.id)

        assert stripe_client.charge_off_session.call_args.kwargs["payment_method_id"] == "pm_listed"

    @pytest.mark.asyncio
    async def test_missing_intent_falls_through_to_charge(self, sweep, stripe_client, make_order, collected_account):
        order = make_order(collected_account, status=S.CARD_SAVED, deferred=True)
        stripe_client.get_payment_intent.side_effect = GatewayError(provider="stripe", message="No such intent", status_code=404)
        stripe_client.charge_off_session.return_value = {"id": "pi_new", "status": "succeeded"}

        outcome = await sweep.capture_order(order.id)
        assert outcome.succeeded is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [S.PENDING, S.CHARGED, S.REFUNDED])
    async def test_not_capturable(self, sweep, make_order, collected_account, status):
        order = make_order(collected_account, status=status, deferred=True)
        with pytest.raises(ValidationError) as exc_info:
            await sweep.capture_order(order.id)
        assert exc_info.value.reason == "not_capturable"

    @pytest.mark.asyncio
    async def test_no_saved_card(self, sweep, make_order, collected_account):
        order = make_order(collected_account, status=S.CARD_SAVED, deferred=True, stripe_payment_method_id=None)
        with pytest.raises(ValidationError) as exc_info:
            await sweep.capture_order(order.id)
        assert exc_info.value.reason == "no_payment_method"

    @pytest.mark.asyncio
    async def test_unknown_order(self, sweep):
        with pytest.raises(NotFoundError):
            await sweep.capture_order("missing")


class TestSweepSummary:
    def test_to_dict(self):
        summary = SweepSummary(currency="usd")
        data = summary.to_dict()
        assert data["attempted"] == 0
        assert data["total_captured"] == "0.00"
        assert data["failures"] == []
