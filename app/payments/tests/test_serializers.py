"""
Tests for settlement API serializers.
"""

from uuid import uuid4

from payments.serializers import (
    ApprovalDecisionSerializer,
    CancellationDecisionSerializer,
    ExtensionRejectionSerializer,
    LineItemCancellationSerializer,
    SettlementResultSerializer,
)


class TestApprovalDecisionSerializer:
    def test_empty_decision_approves_everything(self):
        serializer = ApprovalDecisionSerializer(data={})

        assert serializer.is_valid(), serializer.errors
        assert serializer.validated_data == {"approved_line_item_ids": [], "rejected_line_item_ids": []}

    def test_overlap_rejected(self):
        item_id = str(uuid4())
        serializer = ApprovalDecisionSerializer(
            data={"approved_line_item_ids": [item_id], "rejected_line_item_ids": [item_id]}
        )

        assert not serializer.is_valid()
        assert "rejected_line_item_ids" in serializer.errors

    def test_ids_must_be_uuids(self):
        serializer = ApprovalDecisionSerializer(data={"rejected_line_item_ids": ["storage"]})

        assert not serializer.is_valid()


def test_cancellation_requires_explicit_refund_choice():
    assert not CancellationDecisionSerializer(data={}).is_valid()
    assert CancellationDecisionSerializer(data={"refund_requested": False}).is_valid()


def test_line_item_cancellation_defaults_to_refund():
    serializer = LineItemCancellationSerializer(data={"line_item_ids": [str(uuid4())]})

    assert serializer.is_valid(), serializer.errors
    assert serializer.validated_data["refund_requested"] is True


def test_extension_rejection_reason_optional():
    serializer = ExtensionRejectionSerializer(data={})

    assert serializer.is_valid()
    assert serializer.validated_data["reason"] == ""


def test_settlement_result_with_refund():
    booking_id = uuid4()
    data = SettlementResultSerializer(
        {
            "booking_id": booking_id,
            "new_booking_status": "cancelled",
            "new_payment_status": "refunded",
            "refund": {"amount_cents": 11136, "reference": "re_1", "reversal_reference": "trr_1"},
            "requires_manual_refund": False,
            "payment_intent_id": "pi_1",
            "captured_amount_cents": 11500,
            "extension_id": None,
            "extension_status": None,
        }
    ).data

    assert data["booking_id"] == str(booking_id)
    assert data["refund"]["amount_cents"] == 11136
    assert data["extension_id"] is None
