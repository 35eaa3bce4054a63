"""
PaymentTransaction, RefundRecord and PaymentHistoryEntry models.

PaymentTransaction is the ledger entry for one payment intent: it holds the
authoritative totals of what was captured, what the platform kept, what the
processor charged, what the manager earned and how much has been refunded.
RefundRecord and PaymentHistoryEntry are append-only children giving the
refund list and the audit trail.

Money identity (all integer cents):
    amount_cents           gross currently captured
    base_amount_cents    = amount_cents - platform_fee_cents
    manager_revenue_cents = base amount until the processor reports its fee,
                            then the processor's net figure
    refunded_amount_cents <= manager_revenue_cents   (database constraint)

Usage:
    from payments.ledger import LedgerStore

    transaction = LedgerStore.get("pi_123")
    transaction.settlement_metadata.partial_capture
    transaction.remaining_refundable_cents
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models
from django.db.models import F, Q

from core.models import BaseModel
from core.model_mixins import OptimisticLockMixin, UUIDPrimaryKeyMixin

from payments.state_machines import (
    CAPTURED_TRANSACTION_STATUSES,
    HistoryEventType,
    TransactionKind,
    TransactionStatus,
)

if TYPE_CHECKING:
    from payments.ledger.types import SettlementMetadata


class PaymentTransaction(UUIDPrimaryKeyMixin, OptimisticLockMixin, BaseModel):
    """
    Ledger entry for one payment intent.

    Written only through payments.ledger.LedgerStore. Booking charges,
    extensions and penalties each get their own row; an extension never
    reopens its booking's row.

    Fields:
        payment_intent_id: Processor PaymentIntent ID, unique
        booking / extension: What the intent pays for
        kind: booking, extension or penalty
        authorized_amount_cents: Amount held at authorization
        amount_cents: Gross amount currently captured
        base_amount_cents: Gross minus platform fee
        tax_cents: Tax portion of the captured amount
        platform_fee_cents: Application fee kept by the platform
        processor_fee_cents: Processor's fee (known after settlement)
        manager_revenue_cents: Manager's net revenue
        refunded_amount_cents: Cumulative refunds (payer credit == manager debit)
        metadata: Serialized SettlementMetadata
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    booking = models.ForeignKey(
        "bookings.Booking",
        on_delete=models.PROTECT,
        related_name="payment_transactions",
        help_text="Booking this payment belongs to",
    )

    extension = models.OneToOneField(
        "bookings.BookingExtension",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payment_transaction",
        help_text="Extension or penalty paid by this intent (if any)",
    )

    kind = models.CharField(
        max_length=20,
        choices=TransactionKind.choices,
        default=TransactionKind.BOOKING,
        help_text="What this payment intent pays for",
    )

    # ==========================================================================
    # Processor Reference
    # ==========================================================================

    payment_intent_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Processor PaymentIntent ID (pi_xxx)",
    )

    # ==========================================================================
    # Amounts (integer cents)
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    authorized_amount_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Amount held when the intent was authorized",
    )

    amount_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Gross amount currently captured",
    )

    base_amount_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Gross amount minus platform fee",
    )

    tax_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Tax portion of the captured amount",
    )

    platform_fee_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Application fee kept by the platform",
    )

    processor_fee_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Processor's own fee, known after settlement",
    )

    manager_revenue_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Manager net revenue",
    )

    refunded_amount_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Cumulative amount refunded to the payer and debited from the manager",
    )

    # ==========================================================================
    # Status & Metadata
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=TransactionStatus.choices,
        default=TransactionStatus.PENDING,
        db_index=True,
        help_text="Ledger status of this payment intent",
    )

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Serialized SettlementMetadata (merged on update, never replaced)",
    )

    captured_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the capture was confirmed",
    )

    last_synced_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When a processor notification was last applied",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Transaction"
        verbose_name_plural = "Payment Transactions"
        indexes = [
            models.Index(fields=["booking", "kind"], name="payment_txn_booking_kind_idx"),
            models.Index(fields=["status", "updated_at"], name="payment_txn_status_upd_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(refunded_amount_cents__lte=F("manager_revenue_cents")),
                name="payment_transaction_refunds_within_manager_revenue",
            ),
            models.CheckConstraint(
                condition=Q(amount_cents__lte=F("authorized_amount_cents")),
                name="payment_transaction_capture_within_authorization",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentTransaction({self.payment_intent_id}, {self.status}, {self.amount_cents}c)"

    @property
    def settlement_metadata(self) -> SettlementMetadata:
        from payments.ledger.types import SettlementMetadata

        return SettlementMetadata.from_dict(self.metadata)

    @property
    def is_captured(self) -> bool:
        return self.status in CAPTURED_TRANSACTION_STATUSES

    @property
    def remaining_refundable_cents(self) -> int:
        """What can still be debited from the manager for refunds."""
        return max(0, self.manager_revenue_cents - self.refunded_amount_cents)


class AppendOnlyModel(UUIDPrimaryKeyMixin, BaseModel):
    """Rows are written once; updates and deletes are refused."""

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError(f"{type(self).__name__} rows are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError(f"{type(self).__name__} rows are append-only")


class RefundRecord(AppendOnlyModel):
    """
    One refund issued against a PaymentTransaction.

    ``amount_cents`` is both the payer credit and the manager debit.
    ``confirmed_at`` is the single exception to append-only: the
    reconciliation listener stamps it through a queryset update when the
    processor confirms the refund.
    """

    transaction = models.ForeignKey(
        PaymentTransaction,
        on_delete=models.PROTECT,
        related_name="refund_records",
    )

    amount_cents = models.PositiveBigIntegerField(
        help_text="Amount credited to the payer and debited from the manager",
    )

    reason = models.CharField(
        max_length=255,
        help_text="Why the refund was issued",
    )

    refund_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor refund ID (re_xxx)",
    )

    reversal_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor transfer reversal ID (trr_xxx)",
    )

    line_item_ids = models.JSONField(
        default=list,
        blank=True,
        help_text="Line items covered by this refund",
    )

    confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the processor confirmed the refund",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Refund Record"
        verbose_name_plural = "Refund Records"
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name="refund_record_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"RefundRecord({self.refund_reference}, {self.amount_cents}c)"


class PaymentHistoryEntry(AppendOnlyModel):
    """Audit trail entry for a PaymentTransaction."""

    transaction = models.ForeignKey(
        PaymentTransaction,
        on_delete=models.PROTECT,
        related_name="history",
    )

    event_type = models.CharField(
        max_length=40,
        choices=HistoryEventType.choices,
    )

    previous_status = models.CharField(max_length=20, blank=True, default="")
    new_status = models.CharField(max_length=20, blank=True, default="")

    amount_cents = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="Amount involved in the event, if any",
    )

    description = models.TextField(blank=True, default="")

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Payment History Entry"
        verbose_name_plural = "Payment History"

    def __str__(self) -> str:
        return f"PaymentHistoryEntry({self.event_type}, {self.previous_status}->{self.new_status})"
