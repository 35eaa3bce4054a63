"""
API views for booking settlement decisions.

Provides:
- BookingAuthorizationView: Place the hold for a booking
- BookingApprovalView: Manager approval (full or partial capture)
- BookingCancellationView: Cancel a booking, with or without refund
- LineItemCancellationView: Cancel some line items of a standing booking
- ExtensionAuthorizationView / ExtensionApprovalView / ExtensionRejectionView
- PendingSettlementResolveView: Operator re-query of an unknown capture

Every view returns a serialized SettlementResult. Domain errors map to
HTTP status by class:

    ValidationError     -> 400
    NotFoundError       -> 404
    ConflictError       -> 409
    ProcessorError      -> 502 (504 when the outcome is unknown)
    InvariantViolation  -> 500 with a generic message
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import BaseApplicationError, ConflictError, NotFoundError, ValidationError
from payments.exceptions import InvariantViolation, ProcessorError
from payments.serializers import (
    ApprovalDecisionSerializer,
    CancellationDecisionSerializer,
    ErrorSerializer,
    ExtensionRejectionSerializer,
    LineItemCancellationSerializer,
    SettlementResultSerializer,
)
from payments.services import SettlementEngine

logger = logging.getLogger(__name__)


ERROR_RESPONSES = {
    400: OpenApiResponse(response=ErrorSerializer, description="Invalid decision"),
    404: OpenApiResponse(response=ErrorSerializer, description="Booking or extension not found"),
    409: OpenApiResponse(response=ErrorSerializer, description="State does not allow the operation, or concurrent change"),
    502: OpenApiResponse(response=ErrorSerializer, description="Payment processor refused the operation"),
    504: OpenApiResponse(response=ErrorSerializer, description="Processor outcome unknown; settlement pending"),
}


def error_status(exc: BaseApplicationError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ProcessorError):
        return status.HTTP_504_GATEWAY_TIMEOUT if exc.outcome_unknown else status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, InvariantViolation):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


class SettlementAPIView(APIView):
    """Base view: authenticated, domain errors rendered with ``to_dict()``."""

    permission_classes = [IsAuthenticated]

    def get_engine(self) -> SettlementEngine:
        return SettlementEngine()

    def handle_exception(self, exc):
        if not isinstance(exc, BaseApplicationError):
            return super().handle_exception(exc)

        code = error_status(exc)
        if isinstance(exc, InvariantViolation):
            # Already logged at CRITICAL where raised
            body = {"error": "Internal settlement error", "error_code": exc.error_code}
        else:
            body = exc.to_dict()
            logger.info(
                "Settlement request rejected",
                extra={"error_code": exc.error_code, "status": code, "path": self.request.path},
            )
        return Response(body, status=code)

    def settled(self, result) -> Response:
        return Response(SettlementResultSerializer(result.to_dict()).data, status=status.HTTP_200_OK)


# =============================================================================
# Booking Decisions
# =============================================================================


class BookingAuthorizationView(SettlementAPIView):
    """POST /api/v1/payments/bookings/<id>/authorize/"""

    @extend_schema(
        operation_id="authorize_booking",
        summary="Authorize booking payment",
        description="Place a hold for the booking and all of its line items, tax included.",
        request=None,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Bookings"],
    )
    def post(self, request, booking_id):
        return self.settled(self.get_engine().authorize_booking(booking_id))


class BookingApprovalView(SettlementAPIView):
    """
    POST /api/v1/payments/bookings/<id>/approval/

    Captures the base price plus approved line items plus their tax. If
    any line item is rejected only the approved subtotal is captured and
    the platform fee is computed on the captured amount.
    """

    @extend_schema(
        operation_id="approve_booking",
        summary="Approve booking",
        description=(
            "Manager approval. Rejected line items are left out of the capture; "
            "the rest of the hold is released by the processor."
        ),
        request=ApprovalDecisionSerializer,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Bookings"],
    )
    def post(self, request, booking_id):
        serializer = ApprovalDecisionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = self.get_engine().decide_approval(
            booking_id,
            approved_line_item_ids=serializer.validated_data["approved_line_item_ids"],
            rejected_line_item_ids=serializer.validated_data["rejected_line_item_ids"],
        )
        return self.settled(result)


class BookingCancellationView(SettlementAPIView):
    """POST /api/v1/payments/bookings/<id>/cancellation/"""

    @extend_schema(
        operation_id="cancel_booking",
        summary="Cancel booking",
        description=(
            "Before capture the hold is released. After capture the base price and "
            "every paid line item are refunded, capped at the manager's remaining revenue. "
            "A failed refund leaves the booking cancelled and flagged requires_manual_refund."
        ),
        request=CancellationDecisionSerializer,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Bookings"],
    )
    def post(self, request, booking_id):
        serializer = CancellationDecisionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = self.get_engine().decide_cancellation(
            booking_id,
            refund_requested=serializer.validated_data["refund_requested"],
        )
        return self.settled(result)


class LineItemCancellationView(SettlementAPIView):
    """POST /api/v1/payments/bookings/<id>/line-items/cancel/"""

    @extend_schema(
        operation_id="cancel_line_items",
        summary="Cancel line items",
        description="Reject some add-ons while the booking stands; captured ones are refunded.",
        request=LineItemCancellationSerializer,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Bookings"],
    )
    def post(self, request, booking_id):
        serializer = LineItemCancellationSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = self.get_engine().cancel_line_items(
            booking_id,
            serializer.validated_data["line_item_ids"],
            refund_requested=serializer.validated_data["refund_requested"],
        )
        return self.settled(result)


# =============================================================================
# Extensions & Penalties
# =============================================================================


class ExtensionAuthorizationView(SettlementAPIView):
    """POST /api/v1/payments/extensions/<id>/authorize/"""

    @extend_schema(
        operation_id="authorize_extension",
        summary="Authorize extension",
        request=None,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Extensions"],
    )
    def post(self, request, extension_id):
        return self.settled(self.get_engine().authorize_extension(extension_id))


class ExtensionApprovalView(SettlementAPIView):
    """POST /api/v1/payments/extensions/<id>/approve/"""

    @extend_schema(
        operation_id="approve_extension",
        summary="Approve extension",
        description="Capture the extension's separate hold in full.",
        request=None,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Extensions"],
    )
    def post(self, request, extension_id):
        return self.settled(self.get_engine().approve_extension(extension_id))


class ExtensionRejectionView(SettlementAPIView):
    """POST /api/v1/payments/extensions/<id>/reject/"""

    @extend_schema(
        operation_id="reject_extension",
        summary="Reject extension",
        request=ExtensionRejectionSerializer,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Extensions"],
    )
    def post(self, request, extension_id):
        serializer = ExtensionRejectionSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        result = self.get_engine().reject_extension(
            extension_id,
            reason=serializer.validated_data["reason"],
        )
        return self.settled(result)


# =============================================================================
# Operations
# =============================================================================


class PendingSettlementResolveView(SettlementAPIView):
    """POST /api/v1/payments/transactions/<payment_intent_id>/resolve/"""

    @extend_schema(
        operation_id="resolve_pending_settlement",
        summary="Resolve pending settlement",
        description="Re-query the processor for a capture whose outcome is unknown and settle accordingly.",
        request=None,
        responses={200: SettlementResultSerializer, **ERROR_RESPONSES},
        tags=["Payments - Operations"],
    )
    def post(self, request, payment_intent_id):
        return self.settled(self.get_engine().resolve_pending_settlement(payment_intent_id))
