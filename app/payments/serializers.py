"""
Serializers for the settlement API.

Request serializers validate the shape of a decision; every business rule
(line items belonging to the booking, state preconditions) is checked by
the settlement engine, which raises before any processor call.
"""

from __future__ import annotations

from drf_spectacular.utils import OpenApiExample, extend_schema_serializer
from rest_framework import serializers


# =============================================================================
# Requests
# =============================================================================


class ApprovalDecisionSerializer(serializers.Serializer):
    """Manager approval; line items named in neither list are approved."""

    approved_line_item_ids = serializers.ListField(
        child=serializers.UUIDField(),
        required=False,
        default=list,
        help_text="Line items the manager approves",
    )
    rejected_line_item_ids = serializers.ListField(
        child=serializers.UUIDField(),
        required=False,
        default=list,
        help_text="Line items the manager rejects; they are not captured",
    )

    def validate(self, attrs):
        overlap = set(attrs["approved_line_item_ids"]) & set(attrs["rejected_line_item_ids"])
        if overlap:
            raise serializers.ValidationError(
                {"rejected_line_item_ids": "A line item cannot be both approved and rejected."}
            )
        return attrs


class CancellationDecisionSerializer(serializers.Serializer):
    refund_requested = serializers.BooleanField(
        help_text="Refund captured money to the payer (false leaves it for an operator)",
    )


class LineItemCancellationSerializer(serializers.Serializer):
    line_item_ids = serializers.ListField(
        child=serializers.UUIDField(),
        allow_empty=False,
        help_text="Line items to cancel while the booking stands",
    )
    refund_requested = serializers.BooleanField(default=True)


class ExtensionRejectionSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="", max_length=500)


# =============================================================================
# Responses
# =============================================================================


class RefundSummarySerializer(serializers.Serializer):
    amount_cents = serializers.IntegerField(help_text="Amount credited to the payer and debited from the manager")
    reference = serializers.CharField(allow_null=True, help_text="Processor refund ID (re_xxx)")
    reversal_reference = serializers.CharField(allow_null=True, help_text="Transfer reversal ID (trr_xxx)")


@extend_schema_serializer(
    examples=[
        OpenApiExample(
            "Partial capture",
            value={
                "booking_id": "6f1c9c1e-8a44-4a8e-9f0a-2b1d7c5e9a10",
                "new_booking_status": "confirmed",
                "new_payment_status": "paid",
                "refund": None,
                "requires_manual_refund": False,
                "payment_intent_id": "pi_3Nx2",
                "captured_amount_cents": 11500,
                "extension_id": None,
                "extension_status": None,
            },
            response_only=True,
        ),
    ]
)
class SettlementResultSerializer(serializers.Serializer):
    booking_id = serializers.UUIDField()
    new_booking_status = serializers.CharField()
    new_payment_status = serializers.CharField()
    refund = RefundSummarySerializer(allow_null=True)
    requires_manual_refund = serializers.BooleanField()
    payment_intent_id = serializers.CharField(allow_null=True)
    captured_amount_cents = serializers.IntegerField(allow_null=True)
    extension_id = serializers.UUIDField(allow_null=True)
    extension_status = serializers.CharField(allow_null=True)


class ErrorSerializer(serializers.Serializer):
    error = serializers.CharField()
    error_code = serializers.CharField()
    details = serializers.DictField(required=False)
