"""
Pytest fixtures for booking tests.

Bookings are created directly in the state a test needs; the settlement
engine is the only production code that moves them, and it has its own
tests under payments/tests.
"""

import pytest

from bookings.states import BookingStatus, PaymentStatus
from bookings.tests.factories import BookingFactory, LineItemFactory


@pytest.fixture
def booking(db):
    """Pending booking at 10000 cents with 15% tax."""
    return BookingFactory()


@pytest.fixture
def storage_item(booking):
    """2000-cent storage add-on of ``booking``."""
    return LineItemFactory(booking=booking)


@pytest.fixture
def confirmed_booking(db):
    """Booking whose payment was captured."""
    booking = BookingFactory(
        status=BookingStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        payment_intent_id="pi_confirmed",
    )
    LineItemFactory(
        booking=booking,
        status=BookingStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
    )
    return booking
