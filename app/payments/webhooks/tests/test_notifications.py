"""
Tests for Stripe event normalization.

Tests cover:
- Capture notifications from charge and payment_intent events
- Fetching the processor fee when the payload lacks it
- Refund notifications
- Events that carry nothing to reconcile
"""

from unittest.mock import MagicMock

from payments.adapters import ChargeSettlement, ProcessorAdapter
from payments.webhooks.notifications import (
    CAPTURE_SUCCEEDED,
    REFUND_SUCCEEDED,
    normalize_stripe_event,
)
from payments.webhooks.tests.conftest import charge_object, stripe_event


class TestCaptureEvents:
    """Tests for capture notifications."""

    def test_captured_charge(self, captured_charge_payload):
        """Should report the captured amount, fees and manager net."""
        (notification,) = normalize_stripe_event(captured_charge_payload)

        assert notification.type == CAPTURE_SUCCEEDED
        assert notification.intent_id == "pi_test_webhook"
        assert notification.event_id == "evt_test_webhook"
        assert notification.amount_cents == 11500
        assert notification.processor_fee_cents == 364
        assert notification.application_fee_cents == 364
        assert notification.net_amount_cents == 11136

    def test_uncaptured_charge_ignored(self):
        """Should ignore charge.succeeded for a hold that is only authorized."""
        event = stripe_event("charge.succeeded", charge_object(captured=False))

        assert normalize_stripe_event(event) == []

    def test_fee_fetched_when_not_expanded(self):
        """Should ask the processor for the fee when the balance transaction is an ID."""
        processor = MagicMock(spec=ProcessorAdapter)
        processor.retrieve_charge_settlement.return_value = ChargeSettlement(
            charge_id="ch_test_webhook",
            intent_id="pi_test_webhook",
            amount_cents=11500,
            processor_fee_cents=364,
            net_amount_cents=11136,
            application_fee_cents=364,
        )
        event = stripe_event("charge.captured", charge_object(balance_transaction="txn_test"))

        (notification,) = normalize_stripe_event(event, processor=processor)

        processor.retrieve_charge_settlement.assert_called_once_with("ch_test_webhook")
        assert notification.processor_fee_cents == 364

    def test_fee_unknown_without_processor(self):
        """Should leave the fee unknown rather than guess it."""
        event = stripe_event("charge.captured", charge_object(balance_transaction="txn_test"))

        (notification,) = normalize_stripe_event(event)

        assert notification.processor_fee_cents is None
        assert notification.net_amount_cents == 11136

    def test_payment_intent_succeeded_with_expanded_charge(self):
        intent = {"id": "pi_test_webhook", "amount_received": 11500, "latest_charge": charge_object()}

        (notification,) = normalize_stripe_event(stripe_event("payment_intent.succeeded", intent))

        assert notification.intent_id == "pi_test_webhook"
        assert notification.amount_cents == 11500

    def test_payment_intent_succeeded_without_charge(self):
        """Should fall back to the intent's own amounts."""
        intent = {"id": "pi_test_webhook", "amount_received": 13800, "application_fee_amount": 430}

        (notification,) = normalize_stripe_event(stripe_event("payment_intent.succeeded", intent))

        assert notification.amount_cents == 13800
        assert notification.application_fee_cents == 430
        assert notification.net_amount_cents == 13370
        assert notification.processor_fee_cents is None


class TestRefundEvents:
    """Tests for refund notifications."""

    def test_charge_refunded_reports_succeeded_refunds_only(self, refund_payload):
        notifications = normalize_stripe_event(refund_payload)

        assert [n.refund_reference for n in notifications] == ["re_succeeded"]
        assert notifications[0].type == REFUND_SUCCEEDED
        assert notifications[0].amount_cents == 11136

    def test_refund_updated(self):
        refund = {"id": "re_updated", "amount": 500, "status": "succeeded", "payment_intent": "pi_test_webhook"}

        (notification,) = normalize_stripe_event(stripe_event("refund.updated", refund))

        assert notification.refund_reference == "re_updated"
        assert notification.intent_id == "pi_test_webhook"

    def test_pending_refund_ignored(self):
        refund = {"id": "re_pending", "amount": 500, "status": "pending"}

        assert normalize_stripe_event(stripe_event("refund.created", refund)) == []


def test_unrelated_event_ignored():
    """Should produce no notifications for events outside settlement."""
    event = stripe_event("customer.created", {"id": "cus_test"})

    assert normalize_stripe_event(event) == []
