"""
Tests for the application exception hierarchy.
"""

from __future__ import annotations

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)


def test_default_error_codes():
    assert ValidationError("bad").error_code == "VALIDATION_ERROR"
    assert NotFoundError("missing").error_code == "NOT_FOUND"
    assert ConflictError("stale").error_code == "CONFLICT"


def test_to_dict_includes_details_only_when_present():
    plain = ValidationError("Refund amount must not be negative")
    detailed = ValidationError(
        "Unknown line items",
        error_code="UNKNOWN_LINE_ITEMS",
        details={"line_item_ids": ["li_1"]},
    )

    assert plain.to_dict() == {
        "error": "Refund amount must not be negative",
        "error_code": "VALIDATION_ERROR",
    }
    assert detailed.to_dict()["details"] == {"line_item_ids": ["li_1"]}


def test_str_and_repr():
    error = NotFoundError("Booking 42 not found", error_code="BOOKING_NOT_FOUND")

    assert str(error) == "[BOOKING_NOT_FOUND] Booking 42 not found"
    assert repr(error).startswith("NotFoundError(message='Booking 42 not found'")
    assert isinstance(error, BaseApplicationError)
