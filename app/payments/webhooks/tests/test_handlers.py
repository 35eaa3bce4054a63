"""
Tests for webhook event handlers.

Tests cover:
- Handler registration
- Handler dispatch
- Settlement events (captures and refunds)
- payment_intent.canceled handling
- Unknown event handling
"""

from unittest.mock import patch

import pytest

from core.services import ServiceResult
from payments.ledger import LedgerStore, RefundRecordParams
from payments.services.settlement_engine import SettlementResult
from payments.state_machines import TransactionStatus
from payments.tests.factories import PaymentTransactionFactory, WebhookEventFactory
from payments.webhooks.handlers import (
    WEBHOOK_HANDLERS,
    dispatch_webhook,
    handle_payment_intent_canceled,
    handle_settlement_event,
    register_handler,
)
from payments.webhooks.tests.conftest import charge_object, stripe_event


@pytest.fixture(autouse=True)
def stripe_adapter():
    """Handlers must not build a real Stripe client."""
    with patch("payments.webhooks.handlers.StripeAdapter") as mock_adapter:
        yield mock_adapter


# =============================================================================
# Handler Registration Tests
# =============================================================================


class TestRegisterHandler:
    """Tests for handler registration decorator."""

    def test_settlement_events_registered(self):
        """Should route every settlement event to the settlement handler."""
        for event_type in (
            "charge.succeeded",
            "charge.captured",
            "charge.updated",
            "charge.refunded",
            "payment_intent.succeeded",
            "refund.created",
            "refund.updated",
        ):
            assert WEBHOOK_HANDLERS[event_type] == handle_settlement_event

        assert WEBHOOK_HANDLERS["payment_intent.canceled"] == handle_payment_intent_canceled

    def test_register_new_handler(self):
        """Should register a new handler."""

        @register_handler("test.event.type")
        def test_handler(webhook_event):
            return ServiceResult.success(None)

        assert WEBHOOK_HANDLERS["test.event.type"] == test_handler

        del WEBHOOK_HANDLERS["test.event.type"]


# =============================================================================
# Dispatch Tests
# =============================================================================


class TestDispatchWebhook:
    """Tests for webhook dispatch function."""

    def test_dispatch_to_registered_handler(self, pending_webhook_event):
        """Should dispatch to the settlement handler; no ledger entry means failure."""
        result = dispatch_webhook(pending_webhook_event)

        assert result.success is False
        assert result.error_code == "UNKNOWN_PAYMENT_INTENT"

    def test_dispatch_unknown_event_type(self, db):
        """Should return success for unknown event types."""
        webhook_event = WebhookEventFactory(event_type="customer.subscription.deleted")

        result = dispatch_webhook(webhook_event)

        assert result.success is True
        assert result.data is None


# =============================================================================
# Settlement Event Handler Tests
# =============================================================================


class TestHandleSettlementEvent:
    """Tests for captures and refunds reported by Stripe."""

    def test_capture_applied(self, pending_webhook_event, captured_entry):
        result = handle_settlement_event(pending_webhook_event)

        assert result.success is True
        (summary,) = result.data
        assert summary["payment_intent_id"] == "pi_test_webhook"
        assert summary["processor_fee_cents"] == 364
        captured_entry.refresh_from_db()
        assert captured_entry.processor_fee_cents == 364

    def test_uncaptured_charge_is_a_no_op(self, db):
        """Should succeed without touching the ledger for a mere hold."""
        payload = stripe_event("charge.succeeded", charge_object(captured=False))
        webhook_event = WebhookEventFactory(event_type="charge.succeeded", payload=payload)

        result = handle_settlement_event(webhook_event)

        assert result.success is True
        assert result.data is None

    def test_refund_confirmed(self, captured_entry, refund_payload):
        LedgerStore.append_refund_record(
            captured_entry.id,
            RefundRecordParams(amount_cents=11136, reason="Booking cancelled", refund_reference="re_succeeded"),
        )
        webhook_event = WebhookEventFactory(event_type="charge.refunded", payload=refund_payload)

        result = handle_settlement_event(webhook_event)

        assert result.success is True
        assert result.data == [{"refund_reference": "re_succeeded", "confirmed": True, "recorded": False}]

    def test_replayed_event_is_harmless(self, pending_webhook_event, captured_entry):
        handle_settlement_event(pending_webhook_event)
        captured_entry.refresh_from_db()
        version = captured_entry.version

        result = handle_settlement_event(pending_webhook_event)

        assert result.success is True
        captured_entry.refresh_from_db()
        assert captured_entry.version == version


# =============================================================================
# Payment Intent Canceled Handler Tests
# =============================================================================


class TestHandlePaymentIntentCanceled:
    """Tests for the payment_intent.canceled handler."""

    @staticmethod
    def canceled_event(intent_id):
        return WebhookEventFactory(
            event_type="payment_intent.canceled",
            payload=stripe_event("payment_intent.canceled", {"id": intent_id, "status": "canceled"}),
        )

    def test_settled_entry_left_alone(self, db):
        """Should acknowledge cancellations the engine made itself."""
        entry = PaymentTransactionFactory(status=TransactionStatus.CANCELED)

        with patch("payments.webhooks.handlers.SettlementEngine") as mock_engine:
            result = handle_payment_intent_canceled(self.canceled_event(entry.payment_intent_id))

        assert result.success is True
        assert result.data["status"] == TransactionStatus.CANCELED
        mock_engine.assert_not_called()

    def test_pending_settlement_resolved(self, db):
        """Should re-query a capture whose outcome is unknown."""
        entry = PaymentTransactionFactory(status=TransactionStatus.PROCESSING)

        with patch("payments.webhooks.handlers.SettlementEngine") as mock_engine:
            mock_engine.return_value.resolve_pending_settlement.return_value = SettlementResult(
                booking_id=str(entry.booking_id),
                new_booking_status="cancelled",
                new_payment_status="failed",
            )
            result = handle_payment_intent_canceled(self.canceled_event(entry.payment_intent_id))

        mock_engine.return_value.resolve_pending_settlement.assert_called_once_with(entry.payment_intent_id)
        assert result.success is True
        assert result.data["new_payment_status"] == "failed"

    def test_unknown_intent(self, db):
        result = handle_payment_intent_canceled(self.canceled_event("pi_unknown"))

        assert result.success is False
        assert result.error_code == "UNKNOWN_PAYMENT_INTENT"
