"""
Tests for Booking, LineItem and BookingExtension models.

Tests cover:
- Price and tax computation
- Status and payment status transitions (django-fsm)
- The confirmed-implies-settled guard
- Optimistic locking (version bump, compare_and_set)
"""

from decimal import Decimal

import pytest
from django_fsm import TransitionNotAllowed

from bookings.models import Booking
from bookings.states import BookingStatus, ExtensionStatus, PaymentStatus
from bookings.tests.factories import (
    BookingExtensionFactory,
    BookingFactory,
    LineItemFactory,
)


# =============================================================================
# Pricing
# =============================================================================


class TestBookingPricing:
    """Tests for base price, tax and totals."""

    def test_price_for_duration_rounds_half_up(self):
        assert Booking.price_for_duration(2500, Decimal("4")) == 10000
        assert Booking.price_for_duration(1001, Decimal("0.5")) == 501

    def test_base_price_derived_when_missing(self, db):
        booking = Booking.objects.create(
            hourly_rate_cents=3000,
            duration_hours=Decimal("2.5"),
            tax_rate_percent=Decimal("15"),
        )

        assert booking.base_price_cents == 7500

    def test_total_with_tax_includes_line_items(self, booking, storage_item):
        assert booking.pre_tax_subtotal_cents == 12000
        assert booking.total_with_tax_cents == 13800

    def test_zero_tax_rate(self, db):
        booking = BookingFactory(tax_rate_percent=Decimal("0"))

        assert booking.tax_for(10000) == 0
        assert booking.total_with_tax_cents == 10000


# =============================================================================
# Transitions
# =============================================================================


class TestBookingTransitions:
    """Tests for booking state machine transitions."""

    def test_confirm_requires_settled_payment(self, booking):
        booking.payment_status = PaymentStatus.AUTHORIZED

        with pytest.raises(TransitionNotAllowed):
            booking.confirm()

    def test_capture_confirms_booking(self, booking):
        booking.authorize()
        booking.mark_paid()
        booking.confirm()

        assert booking.status == BookingStatus.CONFIRMED
        assert booking.payment_status == PaymentStatus.PAID
        assert booking.authorized_at is not None
        assert booking.confirmed_at is not None

    def test_unknown_capture_outcome_returns_to_pending(self, booking):
        booking.authorize()
        booking.mark_capture_unknown()

        assert booking.payment_status == PaymentStatus.PENDING
        # Still resolvable either way
        booking.mark_paid()
        assert booking.payment_status == PaymentStatus.PAID

    def test_refund_requires_captured_payment(self, booking):
        booking.authorize()

        with pytest.raises(TransitionNotAllowed):
            booking.mark_refunded()

    def test_partial_then_full_refund(self, confirmed_booking):
        confirmed_booking.mark_partially_refunded()
        confirmed_booking.mark_refunded()

        assert confirmed_booking.payment_status == PaymentStatus.REFUNDED

    def test_cancelled_is_terminal(self, booking):
        booking.cancel()

        assert booking.cancelled_at is not None
        with pytest.raises(TransitionNotAllowed):
            booking.cancel()

    def test_flag_manual_refund(self, confirmed_booking):
        confirmed_booking.flag_manual_refund("Refund failed")

        assert confirmed_booking.requires_manual_refund is True
        assert confirmed_booking.manual_settlement_reason == "Refund failed"


class TestLineItem:
    """Tests for line item flags and transitions."""

    def test_is_rejected_when_cancelled_or_failed(self, storage_item):
        assert storage_item.is_rejected is False

        storage_item.authorize()
        storage_item.mark_failed()
        assert storage_item.is_rejected is True

    def test_is_refundable_only_when_paid(self, storage_item):
        storage_item.authorize()
        assert storage_item.is_refundable is False

        storage_item.mark_paid()
        assert storage_item.is_refundable is True

        storage_item.mark_refunded()
        assert storage_item.is_refundable is False

    def test_confirm_requires_settled_payment(self, storage_item):
        with pytest.raises(TransitionNotAllowed):
            storage_item.confirm()


class TestBookingExtension:
    """Tests for extension transitions."""

    def test_total_includes_tax(self, db):
        extension = BookingExtensionFactory(base_price_cents=1000, tax_cents=150)

        assert extension.total_cents == 1150

    def test_reject_records_reason(self, db):
        extension = BookingExtensionFactory()
        extension.authorize()
        extension.reject("Shelf not available")

        assert extension.status == ExtensionStatus.REJECTED
        assert extension.rejection_reason == "Shelf not available"
        assert extension.rejected_at is not None

    def test_expire_only_from_authorized(self, db):
        extension = BookingExtensionFactory()

        with pytest.raises(TransitionNotAllowed):
            extension.expire()


# =============================================================================
# Optimistic Locking
# =============================================================================


class TestOptimisticLocking:
    """Tests for version bumps and compare_and_set."""

    def test_save_increments_version(self, booking):
        assert booking.version == 1

        booking.manual_settlement_reason = "note"
        booking.save()

        assert booking.version == 2

    def test_save_with_update_fields_increments_version(self, booking):
        booking.requires_manual_refund = True
        booking.save(update_fields=["requires_manual_refund"])

        booking.refresh_from_db()
        assert booking.version == 2

    def test_compare_and_set_writes_when_guard_matches(self, booking):
        written = booking.compare_and_set(
            {"payment_status": PaymentStatus.PENDING},
            payment_status=PaymentStatus.AUTHORIZED,
        )

        assert written is True
        assert booking.version == 2
        booking.refresh_from_db()
        assert booking.payment_status == PaymentStatus.AUTHORIZED

    def test_compare_and_set_refuses_stale_version(self, booking):
        Booking.objects.filter(pk=booking.pk).update(version=5)

        written = booking.compare_and_set(
            {"payment_status": PaymentStatus.PENDING},
            payment_status=PaymentStatus.AUTHORIZED,
        )

        assert written is False
        booking.refresh_from_db()
        assert booking.payment_status == PaymentStatus.PENDING

    def test_compare_and_set_refuses_changed_guard(self, booking):
        Booking.objects.filter(pk=booking.pk).update(payment_status=PaymentStatus.FAILED)

        written = booking.compare_and_set(
            {"payment_status": PaymentStatus.PENDING},
            payment_status=PaymentStatus.AUTHORIZED,
        )

        assert written is False


def test_line_items_ordered_by_creation(booking):
    first = LineItemFactory(booking=booking)
    second = LineItemFactory(booking=booking)

    assert list(booking.line_items.all()) == [first, second]
