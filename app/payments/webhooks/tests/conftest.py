"""
Pytest fixtures for webhook tests.

Provides Stripe event payloads for the settlement events we consume and
WebhookEvent rows in each processing state.
"""

import pytest

from payments.state_machines import WebhookEventStatus
from payments.tests.factories import PaymentTransactionFactory, WebhookEventFactory


# =============================================================================
# Payload Builders
# =============================================================================


def charge_object(
    intent_id="pi_test_webhook",
    amount=11500,
    application_fee_amount=364,
    captured=True,
    balance_transaction=None,
):
    """A destination charge as Stripe sends it in charge.* events."""
    return {
        "id": "ch_test_webhook",
        "object": "charge",
        "payment_intent": intent_id,
        "amount": amount,
        "amount_captured": amount if captured else 0,
        "captured": captured,
        "application_fee_amount": application_fee_amount,
        "transfer_data": {"destination": "acct_manager"},
        "balance_transaction": balance_transaction,
    }


def stripe_event(event_type, obj, event_id="evt_test_webhook"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


# =============================================================================
# Payload Fixtures
# =============================================================================


@pytest.fixture
def captured_charge_payload():
    """charge.captured for the reference booking with the fee expanded."""
    return stripe_event(
        "charge.captured",
        charge_object(balance_transaction={"id": "txn_test", "fee": 364}),
    )


@pytest.fixture
def refund_payload():
    """charge.refunded carrying one succeeded and one pending refund."""
    charge = charge_object()
    charge["refunds"] = {
        "data": [
            {"id": "re_succeeded", "amount": 11136, "status": "succeeded", "payment_intent": "pi_test_webhook"},
            {"id": "re_pending", "amount": 100, "status": "pending", "payment_intent": "pi_test_webhook"},
        ]
    }
    return stripe_event("charge.refunded", charge, event_id="evt_test_refund")


# =============================================================================
# WebhookEvent Fixtures
# =============================================================================


@pytest.fixture
def pending_webhook_event(db, captured_charge_payload):
    """A received charge.captured event awaiting processing."""
    return WebhookEventFactory(
        stripe_event_id=captured_charge_payload["id"],
        payload=captured_charge_payload,
    )


@pytest.fixture
def processed_webhook_event(db):
    return WebhookEventFactory(status=WebhookEventStatus.PROCESSED)


@pytest.fixture
def failed_webhook_event(db):
    """A failed event with retries left."""
    return WebhookEventFactory(
        status=WebhookEventStatus.FAILED,
        error_message="Previous failure",
        retry_count=1,
    )


# =============================================================================
# Ledger Fixtures
# =============================================================================


@pytest.fixture
def captured_entry(db):
    """Ledger entry the payloads above refer to."""
    return PaymentTransactionFactory(captured=True, payment_intent_id="pi_test_webhook")
