"""
Settlement engine: reconciles booking decisions with held payments.

The engine is the only code that moves a booking's payment status. Each
operation follows the same shape:

    1. Read the booking, its line items and its ledger entry
    2. Validate and compute every amount (no processor call yet)
    3. Call the processor without holding any database lock
    4. Write back ledger, booking and line items, the booking guarded by a
       compare-and-set on the payment status read in step 1
    5. Re-synchronize the booking's line-item snapshot, whatever happened

State paths (booking status / payment status):
    pending/authorized   --approve-->          confirmed/paid       (capture, full or partial)
    pending/authorized   --cancel-->           cancelled/failed     (hold released, no refund)
    confirmed/paid       --cancel+refund-->    cancelled/refunded
    confirmed/paid       --cancel items-->     confirmed/partially_refunded
    confirmed/paid       --cancel, no refund-> cancelled/paid       (flagged for an operator)
    pending/authorized   --capture timeout-->  pending/pending      (awaiting reconciliation)
    cancelled/paid       --refund confirmed--> cancelled/refunded   (refund response was lost)

Extensions and penalties settle against their own hold and ledger entry.

Usage:
    from payments.services import SettlementEngine

    engine = SettlementEngine()
    result = engine.decide_approval(
        booking.id,
        approved_line_item_ids=[],
        rejected_line_item_ids=[storage_item.id],
    )
    result.new_payment_status  # "paid"
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from django_fsm import TransitionNotAllowed

from core.exceptions import ConflictError
from core.services import BaseService

from bookings.models import Booking, BookingExtension, LineItem
from bookings.registry import LineItemRegistry, ensure_snapshot_consistency
from bookings.states import (
    SETTLED_PAYMENT_STATUSES,
    BookingStatus,
    ExtensionStatus,
    PaymentStatus,
)
from payments.adapters import IdempotencyKeyGenerator, StripeAdapter
from payments.exceptions import (
    BookingNotFoundError,
    InvalidStateTransitionError,
    PaymentValidationError,
    ProcessorError,
    StaleRecordError,
    StripeAuthorizationExpiredError,
    StripeInvalidRequestError,
)
from payments.fees import FeeSchedule
from payments.ledger import LedgerStore, RefundRecordParams, SettlementMetadata
from payments.services.amounts import RefundPlan, plan_capture, plan_refund
from payments.state_machines import (
    UNSETTLED_TRANSACTION_STATUSES,
    HistoryEventType,
    TransactionKind,
    TransactionStatus,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable, Generator, Iterable, Sequence
    from datetime import datetime
    from typing import Any

    from payments.adapters import ProcessorAdapter
    from payments.models import PaymentTransaction


#: Booking columns written back by the compare-and-set.
BOOKING_STATE_FIELDS = (
    "status",
    "payment_status",
    "payment_intent_id",
    "requires_manual_refund",
    "manual_settlement_reason",
    "authorized_at",
    "confirmed_at",
    "cancelled_at",
)

#: Extension columns written back by the compare-and-set.
EXTENSION_STATE_FIELDS = (
    "status",
    "payment_intent_id",
    "tax_cents",
    "rejection_reason",
    "authorized_at",
    "approved_at",
    "rejected_at",
)

#: Ledger statuses from which a capture can still be completed.
CAPTURABLE_LEDGER_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
    TransactionStatus.SUCCEEDED,
)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class RefundSummary:
    amount_cents: int
    reference: str | None
    reversal_reference: str | None = None


@dataclass
class SettlementResult:
    """
    Outcome of a settlement operation.

    Attributes:
        booking_id: Booking the operation settled
        new_booking_status: Booking status after the operation
        new_payment_status: Booking payment status after the operation
        refund: Refund issued by the operation, if any
        requires_manual_refund: Money is still owed to the payer
        payment_intent_id: Processor intent the operation acted on
        captured_amount_cents: Amount captured, for approvals
        extension_id / extension_status: Set for extension operations
    """

    booking_id: str
    new_booking_status: str
    new_payment_status: str
    refund: RefundSummary | None = None
    requires_manual_refund: bool = False
    payment_intent_id: str | None = None
    captured_amount_cents: int | None = None
    extension_id: str | None = None
    extension_status: str | None = None

    @classmethod
    def for_booking(cls, booking: Booking, **kwargs: Any) -> SettlementResult:
        return cls(
            booking_id=str(booking.pk),
            new_booking_status=booking.status,
            new_payment_status=booking.payment_status,
            requires_manual_refund=booking.requires_manual_refund,
            payment_intent_id=kwargs.pop("payment_intent_id", booking.payment_intent_id),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RefundOutcome:
    plan: RefundPlan
    summary: RefundSummary | None = None
    error: ProcessorError | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def manual_refund_reason(self, subject: str = "Refund") -> str:
        if self.error.outcome_unknown:
            return f"{subject} outcome unknown, awaiting processor confirmation: {self.error.message}"
        return f"{subject} failed: {self.error.message}"


# =============================================================================
# Settlement Engine
# =============================================================================


class SettlementEngine(BaseService):
    """
    Drives captures, releases and refunds for bookings and extensions.

    Collaborators are injected; by default the engine builds a StripeAdapter
    and a FeeSchedule from settings on first use.

    Args:
        processor: ProcessorAdapter implementation
        fee_schedule: Fee schedule used for every capture
    """

    def __init__(
        self,
        processor: ProcessorAdapter | None = None,
        fee_schedule: FeeSchedule | None = None,
    ):
        self._processor = processor
        self.fee_schedule = fee_schedule or FeeSchedule.from_settings()

    @property
    def processor(self) -> ProcessorAdapter:
        if self._processor is None:
            self._processor = StripeAdapter.from_settings()
        return self._processor

    # =========================================================================
    # Authorization
    # =========================================================================

    def authorize_booking(self, booking_id: uuid.UUID | str) -> SettlementResult:
        """
        Place the hold for a booking and all of its line items.

        pending/pending -> pending/authorized. Creates the ledger entry.

        Raises:
            InvalidStateTransitionError: Booking is not awaiting payment
            PaymentValidationError: Nothing to charge
            ProcessorError: Hold could not be placed
        """
        with self._settling(booking_id) as booking:
            self._require(booking, "authorize_booking", status=BookingStatus.PENDING, payment_status=PaymentStatus.PENDING)
            if booking.payment_intent_id:
                raise InvalidStateTransitionError(
                    "Booking already has a payment authorization",
                    details={"booking_id": str(booking.pk), "payment_intent_id": booking.payment_intent_id},
                )

            registry = LineItemRegistry(booking)
            subtotal = registry.subtotal(registry.open_items(), include_base=True)
            tax = booking.tax_for(subtotal)
            amount = subtotal + tax
            if amount <= 0:
                raise PaymentValidationError(
                    "Booking total must be positive to authorize",
                    details={"booking_id": str(booking.pk), "amount_cents": amount},
                )

            authorization = self.processor.authorize(
                amount_cents=amount,
                currency=booking.currency,
                payer_reference=booking.payer_reference,
                destination_account=booking.manager_account_id,
                idempotency_key=IdempotencyKeyGenerator.generate("authorize", booking.pk),
                metadata={"booking_id": str(booking.pk)},
            )
            if not authorization.is_held:
                raise ProcessorError(
                    "The payment method could not be authorized",
                    error_code="AUTHORIZATION_INCOMPLETE",
                    details={"payment_intent_id": authorization.intent_id, "status": authorization.status},
                )

            LedgerStore.create(
                booking=booking,
                payment_intent_id=authorization.intent_id,
                authorized_amount_cents=authorization.amount_cents,
                tax_cents=tax,
                currency=booking.currency,
            )

            def hold_placed(b: Booking) -> None:
                b.authorize()
                b.payment_intent_id = authorization.intent_id

            booking = self._commit_booking(
                booking,
                hold_placed,
                after=lambda _: registry.mark_authorized(registry.open_items()),
            )

            self.get_logger().info(
                "Booking authorized",
                extra={
                    "booking_id": str(booking.pk),
                    "payment_intent_id": authorization.intent_id,
                    "amount_cents": authorization.amount_cents,
                },
            )
            return SettlementResult.for_booking(booking)

    def authorize_extension(self, extension_id: uuid.UUID | str) -> SettlementResult:
        """
        Place the separate hold for an extension or penalty.

        Only a confirmed booking with a settled payment can be extended.
        """
        extension = self._load_extension(extension_id)
        with self._settling(extension.booking_id) as booking:
            self._require(booking, "authorize_extension", status=BookingStatus.CONFIRMED)
            self._require_settled(booking, "authorize_extension")
            if extension.status != ExtensionStatus.PENDING:
                raise self._transition_error(extension, "authorize_extension")

            tax = booking.tax_for(extension.base_price_cents)
            amount = extension.base_price_cents + tax
            if amount <= 0:
                raise PaymentValidationError(
                    "Extension total must be positive to authorize",
                    details={"extension_id": str(extension.pk), "amount_cents": amount},
                )

            authorization = self.processor.authorize(
                amount_cents=amount,
                currency=booking.currency,
                payer_reference=booking.payer_reference,
                destination_account=booking.manager_account_id,
                idempotency_key=IdempotencyKeyGenerator.generate("authorize", extension.pk),
                metadata={"booking_id": str(booking.pk), "extension_id": str(extension.pk)},
            )
            if not authorization.is_held:
                raise ProcessorError(
                    "The payment method could not be authorized",
                    error_code="AUTHORIZATION_INCOMPLETE",
                    details={"payment_intent_id": authorization.intent_id, "status": authorization.status},
                )

            LedgerStore.create(
                booking=booking,
                extension=extension,
                kind=extension.kind,
                payment_intent_id=authorization.intent_id,
                authorized_amount_cents=authorization.amount_cents,
                tax_cents=tax,
                currency=booking.currency,
            )

            def hold_placed(ext: BookingExtension) -> None:
                ext.authorize()
                ext.tax_cents = tax
                ext.payment_intent_id = authorization.intent_id

            extension = self._commit_extension(extension, hold_placed)
            return self._extension_result(booking, extension)

    # =========================================================================
    # Approval
    # =========================================================================

    def decide_approval(
        self,
        booking_id: uuid.UUID | str,
        approved_line_item_ids: Iterable[uuid.UUID | str] = (),
        rejected_line_item_ids: Iterable[uuid.UUID | str] = (),
    ) -> SettlementResult:
        """
        Manager approves the booking, possibly rejecting some line items.

        Captures the booking's base price plus the approved line items plus
        tax on that subtotal; the fee is computed on the captured amount.
        Line items named in neither list are approved.

        For a partial capture the ``partial_capture`` marker is committed to
        the ledger entry before the processor is called, so a capture
        notification that overtakes the call cannot overwrite the approved
        amounts.

        Raises:
            PaymentValidationError: Bad line item ids (before any processor call)
            InvalidStateTransitionError: Booking is not pending/authorized
            StripeAuthorizationExpiredError: Hold lapsed; booking is cancelled
            ProcessorError: Capture failed; with ``outcome_unknown`` the
                booking is parked in pending/pending for reconciliation
        """
        with self._settling(booking_id) as booking:
            registry = LineItemRegistry(booking)
            approved, rejected = registry.partition(approved_line_item_ids, rejected_line_item_ids)
            self._require(booking, "decide_approval", status=BookingStatus.PENDING, payment_status=PaymentStatus.AUTHORIZED)

            entry = LedgerStore.get(booking.payment_intent_id)
            plan = plan_capture(
                approved_subtotal_cents=registry.subtotal(approved, include_base=True),
                tax_rate_percent=booking.tax_rate_percent,
                authorized_amount_cents=entry.authorized_amount_cents,
                fee_schedule=self.fee_schedule,
            )
            partial = plan.is_partial or bool(rejected)

            LedgerStore.update(
                entry.id,
                expected_status=TransactionStatus.PENDING,
                metadata=SettlementMetadata(
                    partial_capture=partial,
                    approved_subtotal_cents=plan.approved_subtotal_cents,
                    approved_tax_cents=plan.tax_cents,
                    approved_line_item_ids=tuple(str(item.id) for item in approved),
                    rejected_line_item_ids=tuple(str(item.id) for item in rejected),
                    recalculated_platform_fee_cents=plan.platform_fee_cents,
                    capture_requested_at=timezone.now().isoformat(),
                ),
                event_type=HistoryEventType.CAPTURE_REQUESTED,
                description=f"Capture of {plan.capture_amount_cents} requested",
            )

            self.get_logger().info(
                "Capturing booking payment",
                extra={
                    "booking_id": str(booking.pk),
                    "payment_intent_id": entry.payment_intent_id,
                    "authorized_amount_cents": plan.authorized_amount_cents,
                    "capture_amount_cents": plan.capture_amount_cents,
                    "platform_fee_cents": plan.platform_fee_cents,
                    "partial_capture": partial,
                    "rejected_line_item_ids": [str(item.id) for item in rejected],
                },
            )

            try:
                capture = self.processor.capture(
                    entry.payment_intent_id,
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        "capture", f"{entry.payment_intent_id}:{plan.capture_amount_cents}"
                    ),
                    amount_cents=plan.capture_amount_cents,
                    application_fee_cents=plan.platform_fee_cents,
                )
            except ProcessorError as e:
                self._capture_failed(booking, registry, entry, e)
                raise

            booking = self._complete_booking_capture(booking, entry, capture.captured_amount_cents, via="engine")
            return SettlementResult.for_booking(booking, captured_amount_cents=capture.captured_amount_cents)

    def approve_extension(self, extension_id: uuid.UUID | str) -> SettlementResult:
        """
        Capture an extension or penalty hold in full.

        The booking's own ledger entry is not touched. On approval the
        extended line item takes the extension's new end date. The booking
        must still be confirmed.
        """
        extension = self._load_extension(extension_id)
        with self._settling(extension.booking_id) as booking:
            self._require(booking, "approve_extension", status=BookingStatus.CONFIRMED)
            if extension.status != ExtensionStatus.AUTHORIZED:
                raise self._transition_error(extension, "approve_extension")

            entry = LedgerStore.get(extension.payment_intent_id)
            plan = plan_capture(
                approved_subtotal_cents=extension.base_price_cents,
                tax_rate_percent=booking.tax_rate_percent,
                authorized_amount_cents=entry.authorized_amount_cents,
                fee_schedule=self.fee_schedule,
            )

            LedgerStore.update(
                entry.id,
                expected_status=TransactionStatus.PENDING,
                metadata=SettlementMetadata(
                    partial_capture=plan.is_partial,
                    approved_subtotal_cents=plan.approved_subtotal_cents,
                    approved_tax_cents=plan.tax_cents,
                    recalculated_platform_fee_cents=plan.platform_fee_cents,
                    capture_requested_at=timezone.now().isoformat(),
                ),
                event_type=HistoryEventType.CAPTURE_REQUESTED,
            )

            try:
                capture = self.processor.capture(
                    entry.payment_intent_id,
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        "capture", f"{entry.payment_intent_id}:{plan.capture_amount_cents}"
                    ),
                    amount_cents=plan.capture_amount_cents,
                    application_fee_cents=plan.platform_fee_cents,
                )
            except ProcessorError as e:
                self._extension_capture_failed(extension, entry, e)
                raise

            extension = self._complete_extension_capture(extension, entry, capture.captured_amount_cents, via="engine")
            return self._extension_result(booking, extension, captured_amount_cents=capture.captured_amount_cents)

    # =========================================================================
    # Cancellation & Refunds
    # =========================================================================

    def decide_cancellation(
        self,
        booking_id: uuid.UUID | str,
        refund_requested: bool,
    ) -> SettlementResult:
        """
        Cancel a booking and settle its payment.

        - authorized (nothing captured): release the hold -> cancelled/failed.
          No refund is created.
        - paid / partially_refunded with refund: unified refund of the base
          price and every still-paid line item -> cancelled/refunded. If the
          refund fails the cancellation stands and the booking is flagged
          ``requires_manual_refund``. A refund that timed out is also left
          pending on the ledger entry until the processor confirms it.
        - paid / partially_refunded without refund: cancelled/paid, flagged
          for an operator.

        Raises:
            InvalidStateTransitionError: Already cancelled, or a capture is
                awaiting reconciliation
            ProcessorError: The hold could not be released
        """
        with self._settling(booking_id) as booking:
            if booking.status == BookingStatus.CANCELLED:
                raise self._transition_error(booking, "decide_cancellation")

            registry = LineItemRegistry(booking)

            if booking.payment_status == PaymentStatus.AUTHORIZED:
                booking = self._release_booking_hold(booking, registry, reason="Booking cancelled before capture")
                return SettlementResult.for_booking(booking)

            if booking.payment_status == PaymentStatus.PENDING:
                if booking.payment_intent_id:
                    raise InvalidStateTransitionError(
                        "A capture for this booking is awaiting reconciliation",
                        error_code="SETTLEMENT_PENDING",
                        details={"booking_id": str(booking.pk), "payment_intent_id": booking.payment_intent_id},
                    )
                booking = self._commit_booking(
                    booking,
                    self._cancel_unpaid,
                    after=lambda _: registry.mark_rejected(registry.open_items()),
                )
                return SettlementResult.for_booking(booking)

            if booking.payment_status not in SETTLED_PAYMENT_STATUSES:
                booking = self._commit_booking(
                    booking,
                    lambda b: b.cancel(),
                    after=lambda _: registry.mark_cancelled(registry.open_items()),
                )
                return SettlementResult.for_booking(booking)

            entry = LedgerStore.get(booking.payment_intent_id)
            refundable = registry.refundable_items()

            if not refund_requested:
                reason = "Cancelled without a refund request; refund needs operator review"
                LedgerStore.record_history(
                    entry,
                    event_type=HistoryEventType.MANUAL_SETTLEMENT,
                    previous_status=entry.status,
                    new_status=entry.status,
                    description=reason,
                )
                booking = self._commit_booking(
                    booking,
                    lambda b: (b.cancel(), b.flag_manual_refund(reason)),
                    after=lambda _: registry.mark_cancelled(registry.open_items()),
                )
                self.get_logger().warning(
                    "Booking cancelled with payment left for manual settlement",
                    extra={"booking_id": str(booking.pk), "payment_intent_id": entry.payment_intent_id},
                )
                return SettlementResult.for_booking(booking)

            outcome = self._refund(
                entry,
                rejected_subtotal_cents=registry.subtotal(refundable, include_base=True),
                tax_rate_percent=booking.tax_rate_percent,
                reason="Booking cancelled",
                line_item_ids=[item.id for item in refundable],
                new_status=TransactionStatus.REFUNDED,
            )

            if outcome.failed:
                reason = outcome.manual_refund_reason()
                booking = self._commit_booking(
                    booking,
                    lambda b: (b.cancel(), b.flag_manual_refund(reason)),
                    after=lambda _: registry.mark_cancelled(registry.open_items()),
                )
            else:
                def cancelled_and_refunded(b: Booking) -> None:
                    b.cancel()
                    b.mark_refunded()

                def release_items(_: Booking) -> None:
                    registry.mark_refunded(refundable)
                    registry.mark_cancelled(registry.open_items())

                booking = self._commit_booking(booking, cancelled_and_refunded, after=release_items)

            return SettlementResult.for_booking(booking, refund=outcome.summary)

    def cancel_line_items(
        self,
        booking_id: uuid.UUID | str,
        line_item_ids: Sequence[uuid.UUID | str],
        refund_requested: bool = True,
    ) -> SettlementResult:
        """
        Reject some line items while the booking itself stands.

        Before capture the items are simply dropped (the later capture
        leaves them out). After capture their share is refunded with the
        unified refund and the booking becomes confirmed/partially_refunded.
        """
        with self._settling(booking_id) as booking:
            registry = LineItemRegistry(booking)
            items = registry.get_many(line_item_ids)
            if not items:
                raise PaymentValidationError("No line items given", error_code="NO_LINE_ITEMS")
            closed = [str(item.id) for item in items if item.status == BookingStatus.CANCELLED]
            if closed:
                raise PaymentValidationError(
                    "Line items are already cancelled",
                    error_code="LINE_ITEMS_CLOSED",
                    details={"line_item_ids": closed},
                )
            if booking.status == BookingStatus.CANCELLED:
                raise self._transition_error(booking, "cancel_line_items")

            if booking.status == BookingStatus.PENDING and booking.payment_status in (
                PaymentStatus.PENDING,
                PaymentStatus.AUTHORIZED,
            ):
                with self.atomic():
                    registry.mark_rejected(items)
                return SettlementResult.for_booking(booking)

            self._require_settled(booking, "cancel_line_items")
            entry = LedgerStore.get(booking.payment_intent_id)

            if not refund_requested:
                reason = "Line items cancelled without a refund request; refund needs operator review"
                booking = self._commit_booking(
                    booking,
                    lambda b: b.flag_manual_refund(reason),
                    after=lambda _: registry.mark_cancelled(items),
                )
                return SettlementResult.for_booking(booking)

            refundable = [item for item in items if item.is_refundable]
            outcome = self._refund(
                entry,
                rejected_subtotal_cents=registry.subtotal(refundable, include_base=False),
                tax_rate_percent=booking.tax_rate_percent,
                reason="Line items cancelled",
                line_item_ids=[item.id for item in refundable],
                new_status=TransactionStatus.PARTIALLY_REFUNDED,
            )

            if outcome.failed:
                reason = outcome.manual_refund_reason()
                booking = self._commit_booking(
                    booking,
                    lambda b: b.flag_manual_refund(reason),
                    after=lambda _: registry.mark_cancelled(items),
                )
            elif outcome.summary is None:
                with self.atomic():
                    registry.mark_cancelled(items)
            else:
                def release_items(_: Booking) -> None:
                    registry.mark_refunded(refundable)
                    registry.mark_cancelled(items)

                booking = self._commit_booking(
                    booking,
                    lambda b: b.mark_partially_refunded(),
                    after=release_items,
                )

            return SettlementResult.for_booking(booking, refund=outcome.summary)

    def reject_extension(self, extension_id: uuid.UUID | str, reason: str = "") -> SettlementResult:
        """
        Reject an extension or penalty.

        An authorized hold is released; a captured one is refunded with the
        unified refund. A failed refund flags the booking for manual refund.
        """
        extension = self._load_extension(extension_id)
        with self._settling(extension.booking_id) as booking:
            if extension.status == ExtensionStatus.AUTHORIZED:
                entry = LedgerStore.get(extension.payment_intent_id)
                self._release_hold(entry, reason=reason or "Extension rejected")
                extension = self._commit_extension(extension, lambda ext: ext.reject(reason))
                return self._extension_result(booking, extension)

            if extension.status != ExtensionStatus.APPROVED:
                raise self._transition_error(extension, "reject_extension")

            entry = LedgerStore.get(extension.payment_intent_id)
            outcome = self._refund(
                entry,
                rejected_subtotal_cents=extension.base_price_cents,
                tax_rate_percent=booking.tax_rate_percent,
                reason=reason or "Extension rejected",
                line_item_ids=[extension.line_item_id] if extension.line_item_id else [],
                new_status=TransactionStatus.REFUNDED,
            )

            if outcome.failed:
                extension = self._commit_extension(extension, lambda ext: ext.reject(reason))
                refund_reason = outcome.manual_refund_reason("Extension refund")
                booking = self._commit_booking(booking, lambda b: b.flag_manual_refund(refund_reason))
            elif outcome.summary is None:
                extension = self._commit_extension(extension, lambda ext: ext.reject(reason))
            else:
                extension = self._commit_extension(
                    extension,
                    lambda ext: (ext.reject(reason), ext.mark_refunded()),
                )

            return self._extension_result(booking, extension, refund=outcome.summary)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def finalize_capture(
        self,
        payment_intent_id: str,
        captured_amount_cents: int,
        via: str,
    ) -> SettlementResult:
        """
        Complete a capture whose outcome was unknown to the engine.

        Called by the reconciliation listener and by the operator re-query.
        Safe to call more than once.
        """
        entry = LedgerStore.get(payment_intent_id)
        with self._settling(entry.booking_id) as booking:
            if entry.kind == TransactionKind.BOOKING:
                if booking.payment_status in SETTLED_PAYMENT_STATUSES or booking.payment_status == PaymentStatus.REFUNDED:
                    return SettlementResult.for_booking(booking)
                booking = self._complete_booking_capture(booking, entry, captured_amount_cents, via=via)
                return SettlementResult.for_booking(booking, captured_amount_cents=captured_amount_cents)

            extension = entry.extension
            if extension.status != ExtensionStatus.AUTHORIZED:
                return self._extension_result(booking, extension)
            extension = self._complete_extension_capture(extension, entry, captured_amount_cents, via=via)
            return self._extension_result(booking, extension, captured_amount_cents=captured_amount_cents)

    def complete_pending_refund(
        self,
        payment_intent_id: str,
        refund_reference: str,
        amount_cents: int | None = None,
    ) -> SettlementResult:
        """
        Record a refund whose outcome the engine never learned.

        Called by the reconciliation listener when the processor confirms a
        refund while the entry carries a pending-refund marker. The refund
        goes through the same capped append as any other, the manual-refund
        flag is cleared and the payment status follows the ledger. Without a
        marker, or for a reference already recorded, nothing changes.
        """
        entry = LedgerStore.get(payment_intent_id)
        with self._settling(entry.booking_id) as booking:
            meta = entry.settlement_metadata
            if not meta.refund_pending or LedgerStore.has_refund(refund_reference):
                return self._result_for_entry(booking, entry)

            logger = self.get_logger()
            amount = amount_cents or meta.pending_refund_cents
            context = {
                "payment_intent_id": payment_intent_id,
                "refund_reference": refund_reference,
                "pending_refund_cents": meta.pending_refund_cents,
                "amount_cents": amount,
            }
            if amount != meta.pending_refund_cents:
                logger.warning("Confirmed refund differs from the pending amount", extra=context)

            with self.atomic():
                LedgerStore.append_refund_record(
                    entry.id,
                    RefundRecordParams(
                        amount_cents=amount,
                        reason=meta.pending_refund_reason or "Refund confirmed by processor",
                        refund_reference=refund_reference,
                        line_item_ids=list(meta.pending_refund_line_item_ids or ()),
                    ),
                    new_status=meta.pending_refund_status or None,
                )
                entry = LedgerStore.update(
                    entry.id,
                    metadata=SettlementMetadata(pending_refund_cents=0),
                    event_type=HistoryEventType.RECONCILED,
                    description="Pending refund confirmed by the processor",
                )
                LedgerStore.confirm_refund(refund_reference)

            if entry.kind == TransactionKind.BOOKING:
                registry = LineItemRegistry(booking)
                refunded_items = [
                    item
                    for item in registry.get_many(meta.pending_refund_line_item_ids or ())
                    if item.is_refundable
                ]
                fully_refunded = entry.status == TransactionStatus.REFUNDED

                def refunded(b: Booking) -> None:
                    if fully_refunded:
                        b.mark_refunded()
                    else:
                        b.mark_partially_refunded()
                    b.clear_manual_refund()

                booking = self._commit_booking(
                    booking,
                    refunded,
                    after=lambda _: registry.mark_refunded(refunded_items),
                )
                logger.info("Pending refund recorded", extra=context)
                return SettlementResult.for_booking(
                    booking,
                    refund=RefundSummary(amount_cents=amount, reference=refund_reference),
                )

            extension = self._commit_extension(entry.extension, lambda ext: ext.mark_refunded())
            booking = self._commit_booking(booking, lambda b: b.clear_manual_refund())
            logger.info("Pending extension refund recorded", extra=context)
            return self._extension_result(
                booking,
                extension,
                refund=RefundSummary(amount_cents=amount, reference=refund_reference),
            )

    def resolve_pending_settlement(self, payment_intent_id: str) -> SettlementResult:
        """
        Re-query the processor for a capture nobody finished.

        Covers a capture whose outcome is unknown (entry processing) and a
        capture that was requested but never written back (entry pending
        with a capture request on record).

        succeeded        -> finish the capture
        requires_capture -> the capture never happened; back to authorized
        canceled         -> the hold is gone; cancelled/failed
        anything else    -> left as is
        """
        entry = LedgerStore.get(payment_intent_id)
        if not self._awaiting_capture(entry):
            booking = self._load_booking(entry.booking_id)
            return self._result_for_entry(booking, entry)

        intent = self.processor.retrieve(payment_intent_id)
        self.get_logger().info(
            "Pending settlement re-queried",
            extra={
                "payment_intent_id": payment_intent_id,
                "ledger_status": entry.status,
                "processor_status": intent.status,
            },
        )

        if intent.status == "succeeded":
            return self.finalize_capture(payment_intent_id, intent.amount_received_cents, via="requery")

        with self._settling(entry.booking_id) as booking:
            if intent.status == "requires_capture":
                LedgerStore.update(
                    entry.id,
                    expected_status=UNSETTLED_TRANSACTION_STATUSES,
                    status=TransactionStatus.PENDING,
                    metadata=SettlementMetadata(capture_outcome_unknown=False, capture_requested_at=""),
                    event_type=HistoryEventType.RECONCILED,
                    description="Capture did not happen; authorization still open",
                )
                if entry.kind == TransactionKind.BOOKING and booking.payment_status == PaymentStatus.PENDING:
                    booking = self._commit_booking(booking, lambda b: b.authorize())

            elif intent.status == "canceled":
                LedgerStore.update(
                    entry.id,
                    expected_status=UNSETTLED_TRANSACTION_STATUSES,
                    status=TransactionStatus.CANCELED,
                    metadata=SettlementMetadata(capture_outcome_unknown=False),
                    event_type=HistoryEventType.RECONCILED,
                    description="Authorization was cancelled at the processor",
                )
                if entry.kind == TransactionKind.BOOKING:
                    registry = LineItemRegistry(booking)
                    booking = self._commit_booking(
                        booking,
                        lambda b: (b.cancel(), b.mark_failed()),
                        after=lambda _: registry.mark_rejected(registry.open_items()),
                    )
                else:
                    self._commit_extension(entry.extension, lambda ext: ext.expire())

            entry.refresh_from_db()
            return self._result_for_entry(booking, entry)

    def expire_stale_authorizations(self, now: datetime | None = None) -> dict[str, int]:
        """
        Release holds the manager never decided on.

        Bookings become cancelled/failed, extensions expired. One failure
        does not stop the sweep.

        Returns:
            Counts of expired bookings, expired extensions and failures
        """
        cutoff = (now or timezone.now()) - timedelta(hours=settings.AUTHORIZATION_EXPIRY_HOURS)
        stats = {"bookings_expired": 0, "extensions_expired": 0, "failed": 0}
        logger = self.get_logger()

        booking_ids = Booking.objects.filter(
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.AUTHORIZED,
            authorized_at__lt=cutoff,
        ).values_list("pk", flat=True)

        for booking_id in booking_ids:
            try:
                with self._settling(booking_id) as booking:
                    self._release_booking_hold(
                        booking,
                        LineItemRegistry(booking),
                        reason="Authorization expired before the manager decided",
                    )
                stats["bookings_expired"] += 1
            except (ProcessorError, ConflictError) as e:
                stats["failed"] += 1
                logger.warning(
                    "Could not expire booking authorization",
                    extra={"booking_id": str(booking_id), "error": str(e)},
                )

        extension_ids = BookingExtension.objects.filter(
            status=ExtensionStatus.AUTHORIZED,
            authorized_at__lt=cutoff,
        ).values_list("pk", flat=True)

        for extension_id in extension_ids:
            extension = BookingExtension.objects.get(pk=extension_id)
            try:
                with self._settling(extension.booking_id):
                    entry = LedgerStore.get(extension.payment_intent_id)
                    self._release_hold(entry, reason="Extension authorization expired")
                    self._commit_extension(extension, lambda ext: ext.expire())
                stats["extensions_expired"] += 1
            except (ProcessorError, ConflictError) as e:
                stats["failed"] += 1
                logger.warning(
                    "Could not expire extension authorization",
                    extra={"extension_id": str(extension_id), "error": str(e)},
                )

        logger.info("Stale authorization sweep finished", extra=stats)
        return stats

    # =========================================================================
    # Capture Internals
    # =========================================================================

    def _capture_failed(
        self,
        booking: Booking,
        registry: LineItemRegistry,
        entry: PaymentTransaction,
        error: ProcessorError,
    ) -> None:
        logger = self.get_logger()
        context = {
            "booking_id": str(booking.pk),
            "payment_intent_id": entry.payment_intent_id,
            "error_code": error.error_code,
        }

        if error.outcome_unknown:
            logger.warning("Capture outcome unknown; awaiting reconciliation", extra=context)
            self._mark_capture_unknown(entry, error)
            self._commit_booking(booking, lambda b: b.mark_capture_unknown())
            return

        if isinstance(error, StripeAuthorizationExpiredError):
            logger.warning("Capture refused: authorization lapsed", extra=context)
            LedgerStore.update(
                entry.id,
                status=TransactionStatus.CANCELED,
                event_type=HistoryEventType.AUTHORIZATION_CANCELED,
                description=error.message,
            )
            self._commit_booking(
                booking,
                lambda b: (b.cancel(), b.mark_failed()),
                after=lambda _: registry.mark_rejected(registry.open_items()),
            )
            return

        logger.error("Capture failed", extra=context)

    def _extension_capture_failed(
        self,
        extension: BookingExtension,
        entry: PaymentTransaction,
        error: ProcessorError,
    ) -> None:
        if error.outcome_unknown:
            self._mark_capture_unknown(entry, error)
        elif isinstance(error, StripeAuthorizationExpiredError):
            LedgerStore.update(
                entry.id,
                status=TransactionStatus.CANCELED,
                event_type=HistoryEventType.AUTHORIZATION_CANCELED,
                description=error.message,
            )
            self._commit_extension(extension, lambda ext: ext.expire())

        self.get_logger().warning(
            "Extension capture failed",
            extra={
                "extension_id": str(extension.pk),
                "payment_intent_id": entry.payment_intent_id,
                "error_code": error.error_code,
                "outcome_unknown": error.outcome_unknown,
            },
        )

    def _mark_capture_unknown(self, entry: PaymentTransaction, error: ProcessorError) -> None:
        LedgerStore.update(
            entry.id,
            expected_status=(TransactionStatus.PENDING, TransactionStatus.PROCESSING),
            status=TransactionStatus.PROCESSING,
            metadata=SettlementMetadata(capture_outcome_unknown=True),
            event_type=HistoryEventType.CAPTURE_UNKNOWN,
            description=error.message,
        )

    def _record_capture(
        self,
        entry: PaymentTransaction,
        captured_amount_cents: int,
        via: str,
    ) -> PaymentTransaction:
        """Write the captured totals to the ledger entry."""
        entry = LedgerStore.get(entry.payment_intent_id)
        meta = entry.settlement_metadata

        fee = meta.recalculated_platform_fee_cents
        if fee is None:
            fee = self.fee_schedule.platform_fee(captured_amount_cents)
        tax = meta.approved_tax_cents if meta.approved_tax_cents is not None else entry.tax_cents

        if entry.last_synced_at is not None:
            # Processor figures already applied by the listener
            manager_revenue = entry.manager_revenue_cents
        else:
            manager_revenue = captured_amount_cents - fee

        return LedgerStore.update(
            entry.id,
            expected_status=CAPTURABLE_LEDGER_STATUSES,
            status=TransactionStatus.SUCCEEDED,
            amount_cents=captured_amount_cents,
            base_amount_cents=captured_amount_cents - fee,
            tax_cents=tax,
            platform_fee_cents=fee,
            manager_revenue_cents=manager_revenue,
            captured_at=entry.captured_at or timezone.now(),
            metadata=SettlementMetadata(capture_outcome_unknown=False, captured_via=via),
            event_type=HistoryEventType.CAPTURED,
            description=f"Captured via {via}",
        )

    def _complete_booking_capture(
        self,
        booking: Booking,
        entry: PaymentTransaction,
        captured_amount_cents: int,
        via: str,
    ) -> Booking:
        entry = self._record_capture(entry, captured_amount_cents, via)
        meta = entry.settlement_metadata

        registry = LineItemRegistry(booking)
        rejected = registry.get_many(meta.rejected_line_item_ids or ())
        if meta.approved_line_item_ids is not None:
            approved = registry.get_many(meta.approved_line_item_ids)
        else:
            rejected_ids = {item.id for item in rejected}
            approved = [item for item in registry.open_items() if item.id not in rejected_ids]

        def items_settled(_: Booking) -> None:
            registry.mark_approved([item for item in approved if item.status == BookingStatus.PENDING])
            registry.mark_rejected([item for item in rejected if item.status != BookingStatus.CANCELLED])

        booking = self._commit_booking(
            booking,
            lambda b: (b.mark_paid(), b.confirm()),
            after=items_settled,
        )
        self.get_logger().info(
            "Booking payment captured",
            extra={
                "booking_id": str(booking.pk),
                "payment_intent_id": entry.payment_intent_id,
                "captured_amount_cents": captured_amount_cents,
                "platform_fee_cents": entry.platform_fee_cents,
                "via": via,
            },
        )
        return booking

    def _complete_extension_capture(
        self,
        extension: BookingExtension,
        entry: PaymentTransaction,
        captured_amount_cents: int,
        via: str,
    ) -> BookingExtension:
        self._record_capture(entry, captured_amount_cents, via)

        def extend_line_item(ext: BookingExtension) -> None:
            if ext.line_item_id and ext.new_end_date:
                LineItem.objects.filter(pk=ext.line_item_id).update(
                    end_date=ext.new_end_date,
                    updated_at=timezone.now(),
                )

        return self._commit_extension(extension, lambda ext: ext.approve(), after=extend_line_item)

    # =========================================================================
    # Release & Refund Internals
    # =========================================================================

    def _release_booking_hold(self, booking: Booking, registry: LineItemRegistry, reason: str) -> Booking:
        entry = LedgerStore.get(booking.payment_intent_id)
        self._release_hold(entry, reason=reason)
        return self._commit_booking(
            booking,
            lambda b: (b.cancel(), b.mark_failed()),
            after=lambda _: registry.mark_rejected(registry.open_items()),
        )

    def _release_hold(self, entry: PaymentTransaction, reason: str) -> None:
        """
        Cancel an uncaptured authorization. No money moves, no refund exists.

        A hold the processor already cancelled (it lapsed) counts as released.
        """
        try:
            self.processor.cancel_authorization(
                entry.payment_intent_id,
                idempotency_key=IdempotencyKeyGenerator.generate("cancel", entry.payment_intent_id),
            )
        except StripeInvalidRequestError:
            intent = self.processor.retrieve(entry.payment_intent_id)
            if intent.status != "canceled":
                raise

        LedgerStore.update(
            entry.id,
            expected_status=(TransactionStatus.PENDING, TransactionStatus.CANCELED),
            status=TransactionStatus.CANCELED,
            event_type=HistoryEventType.AUTHORIZATION_CANCELED,
            description=reason,
        )
        self.get_logger().info(
            "Authorization released",
            extra={"payment_intent_id": entry.payment_intent_id, "reason": reason},
        )

    def _refund(
        self,
        entry: PaymentTransaction,
        *,
        rejected_subtotal_cents: int,
        tax_rate_percent: Any,
        reason: str,
        line_item_ids: Iterable[uuid.UUID | str],
        new_status: TransactionStatus | None = None,
    ) -> RefundOutcome:
        """
        Unified refund: the same amount credited to the payer and debited
        from the manager, capped at what the manager still holds.

        Processor failures are returned, not raised. A refund whose outcome
        is unknown leaves a pending-refund marker on the entry; the
        reconciliation listener records it when the processor confirms.
        """
        logger = self.get_logger()
        plan = plan_refund(
            rejected_subtotal_cents=rejected_subtotal_cents,
            tax_rate_percent=tax_rate_percent,
            gross_amount_cents=entry.amount_cents,
            processor_fee_cents=entry.processor_fee_cents,
            manager_revenue_cents=entry.manager_revenue_cents,
            refunded_amount_cents=entry.refunded_amount_cents,
        )
        context = {
            "payment_intent_id": entry.payment_intent_id,
            "gross_refund_cents": plan.gross_refund_cents,
            "processor_fee_share_cents": plan.processor_fee_share_cents,
            "refund_amount_cents": plan.refund_amount_cents,
            "capped": plan.is_capped,
        }

        if plan.refund_amount_cents == 0:
            logger.info("Nothing left to refund", extra=context)
            return RefundOutcome(plan=plan)

        idempotency_key = IdempotencyKeyGenerator.generate(
            "refund", f"{entry.payment_intent_id}:{entry.refunded_amount_cents}"
        )
        try:
            refund = self.processor.refund_with_reversal(
                entry.payment_intent_id,
                amount_cents=plan.refund_amount_cents,
                reason=reason,
                reversal_amount_cents=plan.refund_amount_cents,
                idempotency_key=idempotency_key,
            )
        except ProcessorError as e:
            if e.outcome_unknown:
                logger.warning(
                    "Refund outcome unknown; awaiting processor confirmation",
                    extra={**context, "error_code": e.error_code},
                )
                LedgerStore.update(
                    entry.id,
                    metadata=SettlementMetadata(
                        pending_refund_cents=plan.refund_amount_cents,
                        pending_refund_key=idempotency_key,
                        pending_refund_reason=reason,
                        pending_refund_status=str(new_status) if new_status else None,
                        pending_refund_line_item_ids=tuple(str(item_id) for item_id in line_item_ids),
                    ),
                    event_type=HistoryEventType.REFUND_UNKNOWN,
                    description=e.message,
                )
                return RefundOutcome(plan=plan, error=e)

            logger.error("Refund failed; manual refund required", extra={**context, "error_code": e.error_code})
            LedgerStore.record_history(
                entry,
                event_type=HistoryEventType.REFUND_FAILED,
                previous_status=entry.status,
                new_status=entry.status,
                amount_cents=plan.refund_amount_cents,
                description=e.message,
            )
            return RefundOutcome(plan=plan, error=e)

        LedgerStore.append_refund_record(
            entry.id,
            RefundRecordParams(
                amount_cents=plan.refund_amount_cents,
                reason=reason,
                refund_reference=refund.refund_id,
                reversal_reference=refund.reversal_id,
                line_item_ids=[str(item_id) for item_id in line_item_ids],
            ),
            new_status=new_status,
        )
        logger.info("Refund issued", extra={**context, "refund_reference": refund.refund_id})
        return RefundOutcome(
            plan=plan,
            summary=RefundSummary(
                amount_cents=plan.refund_amount_cents,
                reference=refund.refund_id,
                reversal_reference=refund.reversal_id,
            ),
        )

    # =========================================================================
    # Write-back
    # =========================================================================

    def _commit_booking(
        self,
        booking: Booking,
        transition: Callable[[Booking], Any],
        after: Callable[[Booking], Any] | None = None,
    ) -> Booking:
        return self._compare_and_set(booking, "payment_status", BOOKING_STATE_FIELDS, transition, after)

    def _commit_extension(
        self,
        extension: BookingExtension,
        transition: Callable[[BookingExtension], Any],
        after: Callable[[BookingExtension], Any] | None = None,
    ) -> BookingExtension:
        return self._compare_and_set(extension, "status", EXTENSION_STATE_FIELDS, transition, after)

    def _compare_and_set(self, instance, guard_field, fields, transition, after):
        """
        Apply ``transition`` and write ``fields`` back in one conditional UPDATE.

        The write only lands if ``guard_field`` still holds the value read at
        the start of the operation. On a miss the row is re-read; if the
        guard still matches (only unrelated columns moved) the transition is
        applied to the fresh row once more. Otherwise, or on a second miss,
        StaleRecordError is raised. ``after`` runs in the same transaction as
        a successful write.
        """
        model = type(instance)
        expected = {guard_field: getattr(instance, guard_field)}
        candidate = instance

        for attempt in (1, 2):
            with self.atomic():
                self._transition(candidate, transition)
                changes = {name: getattr(candidate, name) for name in fields}
                changes["updated_at"] = timezone.now()
                if candidate.compare_and_set(expected, **changes):
                    if after is not None:
                        after(candidate)
                    return candidate

            fresh = model.objects.get(pk=instance.pk)
            self.get_logger().warning(
                "Concurrent modification detected",
                extra={
                    "model": model.__name__,
                    "id": str(instance.pk),
                    "attempt": attempt,
                    "expected": expected,
                    "current": getattr(fresh, guard_field),
                },
            )
            if getattr(fresh, guard_field) != expected[guard_field]:
                break
            candidate = fresh

        raise StaleRecordError(
            f"{model.__name__} {instance.pk} was modified by another process",
            details={"id": str(instance.pk), "expected": expected},
        )

    @staticmethod
    def _transition(instance, transition) -> None:
        try:
            transition(instance)
        except TransitionNotAllowed as e:
            raise InvalidStateTransitionError(
                f"{type(instance).__name__} {instance.pk} cannot make this transition",
                details={"id": str(instance.pk), "error": str(e)},
            ) from e

    @staticmethod
    def _cancel_unpaid(booking: Booking) -> None:
        booking.cancel()
        booking.mark_failed()

    # =========================================================================
    # Loading & Guards
    # =========================================================================

    @contextmanager
    def _settling(self, booking_id: uuid.UUID | str) -> Generator[Booking, None, None]:
        """Load the booking; re-synchronize its snapshot however the operation ends."""
        booking = self._load_booking(booking_id)
        try:
            yield booking
        finally:
            ensure_snapshot_consistency(booking.pk)

    @staticmethod
    def _load_booking(booking_id: uuid.UUID | str) -> Booking:
        try:
            return Booking.objects.get(pk=booking_id)
        except Booking.DoesNotExist:
            raise BookingNotFoundError(
                f"Booking {booking_id} not found",
                details={"booking_id": str(booking_id)},
            )

    @staticmethod
    def _load_extension(extension_id: uuid.UUID | str) -> BookingExtension:
        try:
            return BookingExtension.objects.get(pk=extension_id)
        except BookingExtension.DoesNotExist:
            raise BookingNotFoundError(
                f"Extension {extension_id} not found",
                error_code="EXTENSION_NOT_FOUND",
                details={"extension_id": str(extension_id)},
            )

    def _require(
        self,
        booking: Booking,
        action: str,
        status: str | None = None,
        payment_status: str | None = None,
    ) -> None:
        if (status is None or booking.status == status) and (
            payment_status is None or booking.payment_status == payment_status
        ):
            return
        raise self._transition_error(booking, action)

    @staticmethod
    def _awaiting_capture(entry: PaymentTransaction) -> bool:
        if entry.status == TransactionStatus.PROCESSING:
            return True
        return entry.status == TransactionStatus.PENDING and bool(entry.settlement_metadata.capture_requested_at)

    def _require_settled(self, booking: Booking, action: str) -> None:
        if booking.payment_status not in SETTLED_PAYMENT_STATUSES:
            raise self._transition_error(booking, action)

    @staticmethod
    def _transition_error(instance, action: str) -> InvalidStateTransitionError:
        state = {"status": instance.status}
        if hasattr(instance, "payment_status"):
            state["payment_status"] = instance.payment_status
        return InvalidStateTransitionError(
            f"Cannot {action.replace('_', ' ')} for {type(instance).__name__.lower()} in state {state}",
            details={"id": str(instance.pk), "action": action, **state},
        )

    @staticmethod
    def _extension_result(booking: Booking, extension: BookingExtension, **kwargs: Any) -> SettlementResult:
        return SettlementResult.for_booking(
            booking,
            payment_intent_id=extension.payment_intent_id,
            extension_id=str(extension.pk),
            extension_status=extension.status,
            **kwargs,
        )

    def _result_for_entry(self, booking: Booking, entry: PaymentTransaction) -> SettlementResult:
        if entry.kind == TransactionKind.BOOKING:
            return SettlementResult.for_booking(booking)
        extension = BookingExtension.objects.get(pk=entry.extension_id)
        return self._extension_result(booking, extension)
