"""
Ledger store: the only writer of PaymentTransaction rows.

Every write is a single-row transaction taken under ``select_for_update``,
so a reader sees either the entry before an update or after it, never a
mix. Metadata is merged, never replaced, which lets the settlement engine
and the reconciliation listener each set their own flags on the same row
without erasing the other's.

Usage:
    from payments.ledger import LedgerStore, RefundRecordParams, SettlementMetadata

    transaction = LedgerStore.create(
        booking=booking,
        payment_intent_id="pi_123",
        authorized_amount_cents=13800,
    )

    # Marker first, processor call second
    LedgerStore.update(
        transaction.id,
        metadata=SettlementMetadata(partial_capture=True, approved_subtotal_cents=10000),
    )

    LedgerStore.append_refund_record(
        transaction.id,
        RefundRecordParams(amount_cents=11136, reason="Booking cancelled"),
    )
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.utils import timezone

from payments.exceptions import (
    InvariantViolation,
    PaymentNotFoundError,
    StaleRecordError,
)
from payments.models import PaymentHistoryEntry, PaymentTransaction, RefundRecord
from payments.state_machines import HistoryEventType, TransactionKind, TransactionStatus

from .types import RefundRecordParams, SettlementMetadata

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from typing import Any

    from bookings.models import Booking, BookingExtension


logger = logging.getLogger(__name__)


#: Fields ``update`` refuses to touch; they have dedicated operations.
_PROTECTED_FIELDS = frozenset(
    {"id", "pk", "booking", "booking_id", "payment_intent_id", "refunded_amount_cents", "version"}
)


class LedgerStore:
    """
    Persistence for one PaymentTransaction per payment intent.

    All methods are static - no instance state is maintained.
    """

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    def find(payment_intent_id: str) -> PaymentTransaction | None:
        """Ledger entry for a payment intent, or None."""
        return PaymentTransaction.objects.filter(payment_intent_id=payment_intent_id).first()

    @staticmethod
    def get(payment_intent_id: str) -> PaymentTransaction:
        """
        Ledger entry for a payment intent.

        Raises:
            PaymentNotFoundError: If no entry exists
        """
        entry = LedgerStore.find(payment_intent_id)
        if entry is None:
            raise PaymentNotFoundError(
                f"No payment transaction for {payment_intent_id}",
                details={"payment_intent_id": payment_intent_id},
            )
        return entry

    # =========================================================================
    # Writes
    # =========================================================================

    @staticmethod
    def create(
        *,
        booking: Booking,
        payment_intent_id: str,
        authorized_amount_cents: int,
        tax_cents: int = 0,
        kind: TransactionKind | str = TransactionKind.BOOKING,
        extension: BookingExtension | None = None,
        currency: str = "usd",
        metadata: SettlementMetadata | None = None,
    ) -> PaymentTransaction:
        """
        Create the ledger entry for a freshly authorized payment intent.

        Idempotent on ``payment_intent_id``: a second call returns the
        existing entry unchanged.
        """
        if authorized_amount_cents <= 0:
            raise InvariantViolation(
                "Authorized amount must be positive",
                details={"payment_intent_id": payment_intent_id, "amount_cents": authorized_amount_cents},
            )

        existing = LedgerStore.find(payment_intent_id)
        if existing is not None:
            return existing

        metadata = SettlementMetadata(original_authorized_cents=authorized_amount_cents).merge(
            metadata or SettlementMetadata()
        )
        try:
            with transaction.atomic():
                entry = PaymentTransaction.objects.create(
                    booking=booking,
                    extension=extension,
                    kind=kind,
                    payment_intent_id=payment_intent_id,
                    authorized_amount_cents=authorized_amount_cents,
                    tax_cents=tax_cents,
                    currency=currency,
                    status=TransactionStatus.PENDING,
                    metadata=metadata.to_dict(),
                )
                LedgerStore.record_history(
                    entry,
                    event_type=HistoryEventType.AUTHORIZED,
                    new_status=entry.status,
                    amount_cents=authorized_amount_cents,
                    description="Payment authorized",
                )
        except IntegrityError:
            # Another worker created it between our check and insert
            return LedgerStore.get(payment_intent_id)

        logger.info(
            "Payment transaction created",
            extra={
                "payment_intent_id": payment_intent_id,
                "booking_id": str(booking.pk),
                "kind": str(kind),
                "authorized_amount_cents": authorized_amount_cents,
            },
        )
        return entry

    @staticmethod
    def update(
        transaction_id: uuid.UUID,
        *,
        expected_status: Iterable[str] | str | None = None,
        metadata: SettlementMetadata | None = None,
        event_type: str | None = None,
        description: str = "",
        **fields: Any,
    ) -> PaymentTransaction:
        """
        Update a ledger entry in one transaction.

        Args:
            transaction_id: PaymentTransaction primary key
            expected_status: Status (or statuses) the row must still be in
            metadata: Patch merged into the stored SettlementMetadata
            event_type: If given, a history entry is appended in the same
                transaction
            description: History description
            **fields: Column values to write

        Raises:
            StaleRecordError: The row is no longer in ``expected_status``
            InvariantViolation: The write would break a money invariant
        """
        protected = _PROTECTED_FIELDS.intersection(fields)
        if protected:
            raise InvariantViolation(
                "Ledger field cannot be updated directly",
                details={"fields": sorted(protected)},
            )

        with transaction.atomic():
            entry = LedgerStore._lock(transaction_id)
            previous_status = entry.status

            if expected_status is not None:
                statuses = [expected_status] if isinstance(expected_status, str) else expected_status
                allowed = {str(status) for status in statuses}
                if entry.status not in allowed:
                    raise StaleRecordError(
                        f"Payment transaction {entry.payment_intent_id} is {entry.status}",
                        details={
                            "payment_intent_id": entry.payment_intent_id,
                            "status": entry.status,
                            "expected_status": sorted(allowed),
                        },
                    )

            for name, value in fields.items():
                setattr(entry, name, value)
            if metadata is not None:
                entry.metadata = entry.settlement_metadata.merge(metadata).to_dict()

            LedgerStore._check_invariants(entry)
            entry.save()

            if event_type:
                LedgerStore.record_history(
                    entry,
                    event_type=event_type,
                    previous_status=previous_status,
                    new_status=entry.status,
                    amount_cents=fields.get("amount_cents"),
                    description=description,
                    metadata=metadata.to_dict() if metadata is not None else None,
                )

        return entry

    @staticmethod
    def append_refund_record(
        transaction_id: uuid.UUID,
        params: RefundRecordParams,
        *,
        new_status: TransactionStatus | str | None = None,
    ) -> RefundRecord:
        """
        Append a refund and raise the cumulative refunded amount.

        The same amount is credited to the payer and debited from the
        manager. The status moves to REFUNDED once nothing is left to refund
        and to PARTIALLY_REFUNDED otherwise, unless ``new_status`` says
        differently. A refund reference that is already recorded returns
        the existing record unchanged.

        Raises:
            InvariantViolation: The refund would take cumulative refunds
                above the manager's net revenue, or the entry was never
                captured
        """
        with transaction.atomic():
            entry = LedgerStore._lock(transaction_id)

            if params.refund_reference:
                existing = RefundRecord.objects.filter(refund_reference=params.refund_reference).first()
                if existing is not None:
                    return existing

            if not entry.is_captured:
                LedgerStore._violation(
                    "Refund recorded against an uncaptured payment",
                    entry,
                    amount_cents=params.amount_cents,
                )

            refunded = entry.refunded_amount_cents + params.amount_cents
            if refunded > entry.manager_revenue_cents:
                LedgerStore._violation(
                    "Cumulative refunds would exceed manager revenue",
                    entry,
                    amount_cents=params.amount_cents,
                    refunded_amount_cents=entry.refunded_amount_cents,
                    manager_revenue_cents=entry.manager_revenue_cents,
                )

            record = RefundRecord.objects.create(
                transaction=entry,
                amount_cents=params.amount_cents,
                reason=params.reason,
                refund_reference=params.refund_reference,
                reversal_reference=params.reversal_reference,
                line_item_ids=[str(item_id) for item_id in params.line_item_ids],
            )

            previous_status = entry.status
            entry.refunded_amount_cents = refunded
            if new_status is None:
                new_status = (
                    TransactionStatus.REFUNDED
                    if entry.remaining_refundable_cents == 0
                    else TransactionStatus.PARTIALLY_REFUNDED
                )
            entry.status = new_status
            entry.save(update_fields=["refunded_amount_cents", "status", "updated_at"])

            LedgerStore.record_history(
                entry,
                event_type=HistoryEventType.REFUNDED,
                previous_status=previous_status,
                new_status=entry.status,
                amount_cents=params.amount_cents,
                description=params.reason,
                metadata={"refund_reference": params.refund_reference},
            )

        logger.info(
            "Refund recorded",
            extra={
                "payment_intent_id": entry.payment_intent_id,
                "refund_reference": params.refund_reference,
                "amount_cents": params.amount_cents,
                "refunded_amount_cents": refunded,
            },
        )
        return record

    @staticmethod
    def has_refund(refund_reference: str) -> bool:
        return RefundRecord.objects.filter(refund_reference=refund_reference).exists()

    @staticmethod
    def confirm_refund(refund_reference: str) -> bool:
        """
        Stamp a refund as confirmed by the processor.

        Returns:
            True on the first confirmation, False if unknown or already confirmed
        """
        updated = RefundRecord.objects.filter(
            refund_reference=refund_reference,
            confirmed_at__isnull=True,
        ).update(confirmed_at=timezone.now())
        return updated == 1

    @staticmethod
    def record_history(
        entry: PaymentTransaction,
        *,
        event_type: str,
        previous_status: str = "",
        new_status: str = "",
        amount_cents: int | None = None,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> PaymentHistoryEntry:
        """Append an audit entry for ``entry``."""
        return PaymentHistoryEntry.objects.create(
            transaction=entry,
            event_type=event_type,
            previous_status=previous_status,
            new_status=new_status,
            amount_cents=amount_cents,
            description=description,
            metadata=metadata or {},
        )

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _lock(transaction_id: uuid.UUID) -> PaymentTransaction:
        try:
            return PaymentTransaction.objects.select_for_update().get(pk=transaction_id)
        except PaymentTransaction.DoesNotExist:
            raise PaymentNotFoundError(
                f"Payment transaction {transaction_id} not found",
                details={"transaction_id": str(transaction_id)},
            )

    @staticmethod
    def _check_invariants(entry: PaymentTransaction) -> None:
        if entry.amount_cents > entry.authorized_amount_cents:
            LedgerStore._violation(
                "Captured amount exceeds authorization",
                entry,
                amount_cents=entry.amount_cents,
                authorized_amount_cents=entry.authorized_amount_cents,
            )
        if entry.platform_fee_cents > entry.amount_cents:
            LedgerStore._violation(
                "Platform fee exceeds captured amount",
                entry,
                amount_cents=entry.amount_cents,
                platform_fee_cents=entry.platform_fee_cents,
            )
        if entry.refunded_amount_cents > entry.manager_revenue_cents:
            LedgerStore._violation(
                "Refunded amount exceeds manager revenue",
                entry,
                refunded_amount_cents=entry.refunded_amount_cents,
                manager_revenue_cents=entry.manager_revenue_cents,
            )

    @staticmethod
    def _violation(message: str, entry: PaymentTransaction, **details: Any) -> None:
        details["payment_intent_id"] = entry.payment_intent_id
        logger.critical(message, extra=details)
        raise InvariantViolation(message, details=details)
