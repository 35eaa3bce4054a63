"""
Tests for the Stripe webhook view.

Tests cover:
- Stripe signature verification
- Webhook event creation and idempotency
- Task queuing
"""

import json
from unittest.mock import patch

import pytest
from django.test import RequestFactory

from payments.exceptions import StripeInvalidRequestError
from payments.models import WebhookEvent
from payments.state_machines import WebhookEventStatus
from payments.tests.factories import WebhookEventFactory
from payments.webhooks.views import _intent_reference, stripe_webhook


# =============================================================================
# Setup
# =============================================================================


@pytest.fixture
def rf():
    """Request factory for creating test requests."""
    return RequestFactory()


def make_webhook_request(rf, payload: dict, signature: str = "t=1,v1=test_sig"):
    """Create a POST request to the webhook endpoint."""
    return rf.post(
        "/api/v1/payments/webhooks/stripe/",
        data=json.dumps(payload),
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=signature,
    )


@pytest.fixture
def verify():
    with patch("payments.webhooks.views.StripeAdapter.verify_webhook_signature") as mock_verify:
        yield mock_verify


@pytest.fixture
def queue():
    with patch("payments.tasks.process_webhook_event.delay") as mock_delay:
        yield mock_delay


# =============================================================================
# Signature Verification Tests
# =============================================================================


class TestStripeWebhookSignature:
    """Tests for signature verification."""

    def test_missing_signature_returns_400(self, rf, db):
        """Should return 400 if Stripe-Signature header is missing."""
        request = rf.post(
            "/api/v1/payments/webhooks/stripe/",
            data=json.dumps({"id": "evt_test"}),
            content_type="application/json",
        )

        response = stripe_webhook(request)

        assert response.status_code == 400
        assert b"Missing signature" in response.content

    def test_invalid_signature_returns_400(self, rf, db, verify, queue):
        """Should return 400 and store nothing if verification fails."""
        verify.side_effect = StripeInvalidRequestError("Invalid webhook signature")

        response = stripe_webhook(make_webhook_request(rf, {"id": "evt_test", "type": "charge.captured"}))

        assert response.status_code == 400
        assert b"Invalid signature" in response.content
        assert not WebhookEvent.objects.exists()
        queue.assert_not_called()

    def test_event_without_type_returns_400(self, rf, db, verify, queue):
        verify.return_value = {"id": "evt_test"}

        response = stripe_webhook(make_webhook_request(rf, {"id": "evt_test"}))

        assert response.status_code == 400
        queue.assert_not_called()

    def test_get_not_allowed(self, rf, db):
        response = stripe_webhook(rf.get("/api/v1/payments/webhooks/stripe/"))

        assert response.status_code == 405


# =============================================================================
# Event Creation Tests
# =============================================================================


class TestStripeWebhookEventCreation:
    """Tests for webhook event creation."""

    def test_creates_and_queues_new_event(self, rf, db, verify, queue, captured_charge_payload):
        """Should store a new WebhookEvent and queue it."""
        verify.return_value = captured_charge_payload

        response = stripe_webhook(make_webhook_request(rf, captured_charge_payload))

        assert response.status_code == 200
        event = WebhookEvent.objects.get(stripe_event_id="evt_test_webhook")
        assert event.event_type == "charge.captured"
        assert event.status == WebhookEventStatus.PENDING
        assert event.payload == captured_charge_payload
        queue.assert_called_once_with(str(event.id))

    def test_duplicate_processed_event_not_requeued(self, rf, db, verify, queue, captured_charge_payload):
        """Should acknowledge a redelivery without processing it again."""
        WebhookEventFactory(stripe_event_id="evt_test_webhook", status=WebhookEventStatus.PROCESSED)
        verify.return_value = captured_charge_payload

        response = stripe_webhook(make_webhook_request(rf, captured_charge_payload))

        assert response.status_code == 200
        assert b"Already received" in response.content
        assert WebhookEvent.objects.filter(stripe_event_id="evt_test_webhook").count() == 1
        queue.assert_not_called()

    def test_duplicate_failed_event_requeued(self, rf, db, verify, queue, captured_charge_payload):
        """Should queue a redelivered event whose earlier processing failed."""
        event = WebhookEventFactory(stripe_event_id="evt_test_webhook", status=WebhookEventStatus.FAILED)
        verify.return_value = captured_charge_payload

        response = stripe_webhook(make_webhook_request(rf, captured_charge_payload))

        assert response.status_code == 200
        queue.assert_called_once_with(str(event.id))

    def test_queue_failure_propagates(self, rf, db, verify, queue, captured_charge_payload):
        """Should not acknowledge an event that could not be queued."""
        verify.return_value = captured_charge_payload
        queue.side_effect = ConnectionError("broker unreachable")

        with pytest.raises(ConnectionError):
            stripe_webhook(make_webhook_request(rf, captured_charge_payload))

        assert WebhookEvent.objects.filter(stripe_event_id="evt_test_webhook").exists()


@pytest.mark.parametrize(
    ("obj", "expected"),
    [
        ({"object": "payment_intent", "id": "pi_1"}, "pi_1"),
        ({"object": "charge", "payment_intent": "pi_2"}, "pi_2"),
        ({"object": "refund", "payment_intent": {"id": "pi_3"}}, "pi_3"),
        ({"object": "customer"}, None),
    ],
)
def test_intent_reference(obj, expected):
    assert _intent_reference({"data": {"object": obj}}) == expected
