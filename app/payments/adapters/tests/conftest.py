"""
Pytest fixtures for Stripe adapter tests.

This module provides fixtures for testing the Stripe adapter, including
mock Stripe API responses and error conditions.

Sections:
    - Mock Stripe Objects
    - Mock Stripe Error Fixtures
    - Mock Stripe Client Fixtures
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe

from payments.adapters import StripeAdapter


# =============================================================================
# Mock Stripe Objects
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with attribute access and to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


def payment_intent(
    id: str = "pi_test123456",
    status: str = "requires_capture",
    amount: int = 13800,
    amount_received: int = 0,
    application_fee_amount: int | None = None,
    latest_charge: Any = None,
) -> MockStripeObject:
    return MockStripeObject(
        {
            "id": id,
            "object": "payment_intent",
            "status": status,
            "amount": amount,
            "currency": "usd",
            "amount_received": amount_received,
            "application_fee_amount": application_fee_amount,
            "latest_charge": latest_charge,
            "metadata": {},
        }
    )


def charge(transfer: str | None = "tr_test123456", balance_transaction: Any = None) -> MockStripeObject:
    return MockStripeObject(
        {
            "id": "ch_test123456",
            "object": "charge",
            "payment_intent": "pi_test123456",
            "amount": 11500,
            "amount_captured": 11500,
            "captured": True,
            "application_fee_amount": 364,
            "transfer": transfer,
            "transfer_data": {"destination": "acct_manager"},
            "balance_transaction": balance_transaction,
        }
    )


# =============================================================================
# Mock Stripe Error Fixtures
# =============================================================================


@pytest.fixture
def card_error():
    """Create a Stripe CardError."""

    def _create(
        message: str = "Your card was declined.",
        code: str = "card_declined",
        decline_code: str | None = "generic_decline",
    ) -> stripe.CardError:
        error = stripe.CardError(message=message, param=None, code=code)
        error.decline_code = decline_code
        return error

    return _create


@pytest.fixture
def invalid_request_error():
    """Create a Stripe InvalidRequestError."""

    def _create(
        message: str = "No such payment_intent: 'pi_missing'",
        param: str | None = "intent",
        code: str = "resource_missing",
    ) -> stripe.InvalidRequestError:
        return stripe.InvalidRequestError(message=message, param=param, code=code)

    return _create


@pytest.fixture
def rate_limit_error():
    return stripe.RateLimitError(message="Too many requests hit the API too quickly.")


@pytest.fixture
def api_connection_error():
    return stripe.APIConnectionError(message="Request timed out.")


@pytest.fixture
def api_error():
    return stripe.APIError(message="Something went wrong on Stripe's end.")


@pytest.fixture
def authentication_error():
    return stripe.AuthenticationError(message="Invalid API Key provided.")


# =============================================================================
# Mock Stripe Client Fixtures
# =============================================================================


@pytest.fixture
def adapter():
    """Adapter with a test key; the HTTP client is never built for real."""
    with patch("stripe.RequestsClient"):
        yield StripeAdapter(api_key="sk_test_adapter", timeout=5)


@pytest.fixture
def mock_stripe_payment_intent():
    """Mock stripe.PaymentIntent API."""
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = payment_intent()
        mock.capture.return_value = payment_intent(status="succeeded", amount_received=11500, application_fee_amount=364)
        mock.cancel.return_value = payment_intent(status="canceled")
        mock.retrieve.return_value = payment_intent(latest_charge=charge())
        yield mock


@pytest.fixture
def mock_stripe_transfer():
    """Mock stripe.Transfer API."""
    with patch("stripe.Transfer") as mock:
        mock.create_reversal.return_value = MockStripeObject({"id": "trr_test123456", "amount": 11136})
        yield mock


@pytest.fixture
def mock_stripe_refund():
    """Mock stripe.Refund API."""
    with patch("stripe.Refund") as mock:
        mock.create.return_value = MockStripeObject(
            {"id": "re_test123456", "amount": 11136, "status": "succeeded", "payment_intent": "pi_test123456"}
        )
        yield mock


@pytest.fixture
def mock_stripe_webhook():
    """Mock stripe.Webhook API."""
    with patch("stripe.Webhook") as mock:
        mock.construct_event.return_value = MockStripeObject(
            {
                "id": "evt_test123",
                "type": "charge.captured",
                "data": {"object": {"id": "ch_test123456", "object": "charge"}},
            }
        )
        yield mock
