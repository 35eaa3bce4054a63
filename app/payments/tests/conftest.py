"""
Pytest fixtures for payment tests.

The settlement engine is always built with a MagicMock processor that
follows the ProcessorAdapter interface, so no test talks to Stripe. The
mock's defaults behave like a healthy processor: holds are placed,
captures capture exactly what was asked, refunds succeed.

Usage:
    def test_partial_capture(engine, processor, authorized_booking, storage_item):
        engine.decide_approval(authorized_booking.id, rejected_line_item_ids=[storage_item.id])
        processor.capture.assert_called_once()
"""

from unittest.mock import MagicMock

import pytest

from bookings.tests.factories import BookingFactory, LineItemFactory
from payments.adapters import (
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    IntentStatusResult,
    ProcessorAdapter,
    RefundWithReversalResult,
)
from payments.fees import FeeSchedule
from payments.services import SettlementEngine

BOOKING_INTENT_ID = "pi_booking_hold"


# =============================================================================
# Processor Fixtures
# =============================================================================


def _capture(intent_id, *, idempotency_key, amount_cents=None, application_fee_cents=None):
    return CaptureResult(
        intent_id=intent_id,
        status="succeeded",
        captured_amount_cents=amount_cents,
        application_fee_cents=application_fee_cents,
    )


def _refund(intent_id, *, amount_cents, reason, reversal_amount_cents, idempotency_key):
    return RefundWithReversalResult(
        refund_id=f"re_{intent_id}_{amount_cents}",
        reversal_id=f"trr_{intent_id}_{reversal_amount_cents}",
        amount_cents=amount_cents,
        reversal_amount_cents=reversal_amount_cents,
        status="succeeded",
    )


@pytest.fixture
def processor():
    """Healthy processor double."""
    mock = MagicMock(spec=ProcessorAdapter)
    mock.authorize.return_value = AuthorizationResult(
        intent_id=BOOKING_INTENT_ID,
        status="requires_capture",
        amount_cents=13800,
    )
    mock.capture.side_effect = _capture
    mock.cancel_authorization.side_effect = lambda intent_id, *, idempotency_key: CancelResult(
        intent_id=intent_id, status="canceled"
    )
    mock.refund_with_reversal.side_effect = _refund
    mock.retrieve.return_value = IntentStatusResult(
        intent_id=BOOKING_INTENT_ID,
        status="requires_capture",
        amount_cents=13800,
        amount_received_cents=0,
    )
    return mock


@pytest.fixture
def fee_schedule():
    """2.9% + 30c, no platform commission."""
    return FeeSchedule()


@pytest.fixture
def engine(processor, fee_schedule):
    return SettlementEngine(processor=processor, fee_schedule=fee_schedule)


# =============================================================================
# Booking Fixtures
# =============================================================================


@pytest.fixture
def booking(db):
    """Pending booking: 10000 base, 15% tax."""
    return BookingFactory()


@pytest.fixture
def storage_item(booking):
    """2000-cent storage add-on; the booking total becomes 13800."""
    return LineItemFactory(booking=booking, name="Dry storage shelf")


@pytest.fixture
def authorized_booking(engine, booking, storage_item):
    """The reference booking with its 13800 hold in place."""
    engine.authorize_booking(booking.id)
    booking.refresh_from_db()
    return booking


@pytest.fixture
def captured_booking(engine, authorized_booking, storage_item):
    """Reference booking approved with the storage item rejected (11500 captured)."""
    engine.decide_approval(authorized_booking.id, rejected_line_item_ids=[storage_item.id])
    authorized_booking.refresh_from_db()
    return authorized_booking
