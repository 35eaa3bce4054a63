"""
Tests for ServiceResult and BaseService.

These tests verify that:
- success/failure constructors set the right fields
- from_exception keeps application error codes
- to_response produces the documented shape
- BaseService.atomic rolls back on error
"""

from __future__ import annotations

import pytest

from bookings.models import Booking
from bookings.tests.factories import BookingFactory
from core.exceptions import ConflictError, ValidationError
from core.services import BaseService, ServiceResult


class TestServiceResult:
    def test_success(self):
        result = ServiceResult.success({"refunded": 11136})

        assert result.success is True
        assert result.data == {"refunded": 11136}
        assert result.error is None
        assert bool(result) is True

    def test_failure(self):
        result = ServiceResult.failure(
            "Unknown payment intent",
            error_code="UNKNOWN_PAYMENT_INTENT",
            errors={"intent_id": ["not found"]},
        )

        assert result.success is False
        assert result.data is None
        assert result.error_code == "UNKNOWN_PAYMENT_INTENT"
        assert not result

    def test_from_application_error(self):
        result = ServiceResult.from_exception(ValidationError("Amount must be positive", error_code="NEGATIVE_AMOUNT"))

        assert result.error == "Amount must be positive"
        assert result.error_code == "NEGATIVE_AMOUNT"

    def test_from_plain_exception(self):
        """Should fall back to the exception class name."""
        result = ServiceResult.from_exception(KeyError("booking"))

        assert result.error_code == "KEYERROR"

    def test_explicit_code_wins(self):
        result = ServiceResult.from_exception(ConflictError("stale"), error_code="RETRY_LATER")

        assert result.error_code == "RETRY_LATER"

    def test_to_response(self):
        assert ServiceResult.success(1).to_response() == {"success": True, "data": 1}
        assert ServiceResult.failure("nope", error_code="X").to_response() == {
            "success": False,
            "error": "nope",
            "error_code": "X",
        }


class TestBaseService:
    def test_logger_named_after_service(self):
        class RefundAudit(BaseService):
            pass

        assert RefundAudit.get_logger().name.endswith(".RefundAudit")

    def test_atomic_rolls_back(self, db):
        booking = BookingFactory()

        with pytest.raises(RuntimeError):
            with BaseService.atomic():
                Booking.objects.filter(pk=booking.pk).delete()
                raise RuntimeError("abort")

        assert Booking.objects.filter(pk=booking.pk).exists()
