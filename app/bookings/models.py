"""
Booking, LineItem and BookingExtension models.

Booking is the primary reservation (a kitchen slot). LineItems are storage
and equipment add-ons booked together with it; each carries its own price,
status and payment status. BookingExtension is a later, separately
authorized charge (a storage extension or an overstay penalty) that settles
against its own payment intent and never reopens the booking's ledger entry.

Usage:
    from bookings.models import Booking, LineItem
    from bookings.states import LineItemKind

    booking = Booking.objects.create(
        hourly_rate_cents=2500,
        duration_hours=Decimal("4"),
        tax_rate_percent=Decimal("15"),
        manager_account_id="acct_123",
        payer_reference="pm_card_visa",
    )
    LineItem.objects.create(
        booking=booking,
        kind=LineItemKind.STORAGE,
        name="Dry storage shelf",
        price_cents=2000,
    )

    # State transitions use django-fsm; persistence of payment-side
    # changes goes through the settlement engine's compare-and-set.
    booking.authorize()
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import OptimisticLockMixin, UUIDPrimaryKeyMixin

from bookings.states import (
    SETTLED_PAYMENT_STATUSES,
    BookingStatus,
    ExtensionKind,
    ExtensionStatus,
    LineItemKind,
    PaymentStatus,
)
from payments.money import apply_percent


def has_settled_payment(instance) -> bool:
    """FSM condition: money has been captured for this record."""
    return instance.payment_status in SETTLED_PAYMENT_STATUSES


class Booking(UUIDPrimaryKeyMixin, OptimisticLockMixin, BaseModel):
    """
    The primary reservation reconciled by the settlement engine.

    State Flow (status):
        PENDING -> CONFIRMED -> CANCELLATION_REQUESTED -> CANCELLED
        PENDING -> CANCELLED
        CONFIRMED -> CANCELLED

    State Flow (payment_status): see bookings.states

    Invariant:
        status == CONFIRMED implies payment_status in {PAID, PARTIALLY_REFUNDED}.
        ``confirm`` is guarded by that condition, so callers must move the
        payment status first.

    Fields:
        hourly_rate_cents / duration_hours: price inputs
        base_price_cents: rate x duration, fixed at creation
        tax_rate_percent: tax applied to every subtotal (may be zero)
        payer_reference: processor payment method used for the hold
        manager_account_id: processor connected account receiving funds
        payment_intent_id: processor hold reference, set on authorization
        line_item_snapshot: denormalized copy of line items for list views
        requires_manual_refund: money is still owed to the payer
    """

    # ==========================================================================
    # Pricing
    # ==========================================================================

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    hourly_rate_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Hourly rate of the primary resource in cents",
    )

    duration_hours = models.DecimalField(
        max_digits=6,
        decimal_places=2,
        default=Decimal("0"),
        help_text="Booked duration in hours",
    )

    base_price_cents = models.PositiveBigIntegerField(
        help_text="Pre-tax price of the primary resource (rate x duration)",
    )

    tax_rate_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("0"),
        help_text="Tax percentage applied to subtotals (15 means 15%)",
    )

    # ==========================================================================
    # State (django-fsm)
    # ==========================================================================

    status = FSMField(
        default=BookingStatus.PENDING,
        choices=BookingStatus.choices,
        db_index=True,
        help_text="Booking lifecycle state",
    )

    payment_status = FSMField(
        default=PaymentStatus.PENDING,
        choices=PaymentStatus.choices,
        db_index=True,
        help_text="Payment state of the primary booking",
    )

    # ==========================================================================
    # Processor References
    # ==========================================================================

    payer_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Processor payment method or customer used for the hold",
    )

    manager_account_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Processor connected account (acct_xxx) that receives funds",
    )

    payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor PaymentIntent ID (pi_xxx) of the initial hold",
    )

    # ==========================================================================
    # Denormalized Snapshot
    # ==========================================================================

    line_item_snapshot = models.JSONField(
        default=list,
        blank=True,
        help_text="Copy of line item fields for list rendering",
    )

    # ==========================================================================
    # Manual Settlement
    # ==========================================================================

    requires_manual_refund = models.BooleanField(
        default=False,
        help_text="Money is still owed to the payer and needs operator action",
    )

    manual_settlement_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the booking was flagged for manual settlement",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    authorized_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payment hold was placed",
    )

    confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the manager approved the booking",
    )

    cancelled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the booking was cancelled",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Booking"
        verbose_name_plural = "Bookings"
        indexes = [
            models.Index(fields=["status", "payment_status"], name="booking_status_payment_idx"),
            models.Index(fields=["payment_status", "authorized_at"], name="booking_payment_auth_idx"),
        ]

    def __str__(self) -> str:
        return f"Booking({self.id}, {self.status}/{self.payment_status})"

    def save(self, *args, **kwargs):
        if self.base_price_cents is None:
            self.base_price_cents = self.price_for_duration(
                self.hourly_rate_cents, self.duration_hours
            )
        super().save(*args, **kwargs)

    @staticmethod
    def price_for_duration(hourly_rate_cents: int, duration_hours: Decimal) -> int:
        """Rate x duration, rounded half-up to the cent."""
        exact = Decimal(hourly_rate_cents) * Decimal(duration_hours)
        return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    # ==========================================================================
    # Amounts
    # ==========================================================================

    def tax_for(self, subtotal_cents: int) -> int:
        """Tax on a pre-tax subtotal at this booking's rate (0 if no rate)."""
        return apply_percent(subtotal_cents, self.tax_rate_percent)

    @property
    def pre_tax_subtotal_cents(self) -> int:
        """Base price plus every line item price."""
        items = self.line_items.all()
        return self.base_price_cents + sum(item.price_cents for item in items)

    @property
    def total_with_tax_cents(self) -> int:
        """Amount authorized for the booking and all of its line items."""
        subtotal = self.pre_tax_subtotal_cents
        return subtotal + self.tax_for(subtotal)

    # ==========================================================================
    # Status Transitions
    # ==========================================================================

    @transition(
        field=status,
        source=BookingStatus.PENDING,
        target=BookingStatus.CONFIRMED,
        conditions=[has_settled_payment],
    )
    def confirm(self):
        """Manager approved and the payment is captured."""
        self.confirmed_at = timezone.now()

    @transition(
        field=status,
        source=BookingStatus.CONFIRMED,
        target=BookingStatus.CANCELLATION_REQUESTED,
    )
    def request_cancellation(self):
        """Chef asked to cancel a confirmed booking; awaits a decision."""

    @transition(
        field=status,
        source=[
            BookingStatus.PENDING,
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLATION_REQUESTED,
        ],
        target=BookingStatus.CANCELLED,
    )
    def cancel(self):
        self.cancelled_at = timezone.now()

    # ==========================================================================
    # Payment Transitions
    # ==========================================================================

    @transition(
        field=payment_status,
        source=[PaymentStatus.PENDING],
        target=PaymentStatus.AUTHORIZED,
    )
    def authorize(self):
        """A hold for the full amount was placed (or confirmed still open)."""
        if self.authorized_at is None:
            self.authorized_at = timezone.now()

    @transition(
        field=payment_status,
        source=[PaymentStatus.AUTHORIZED, PaymentStatus.PENDING],
        target=PaymentStatus.PAID,
    )
    def mark_paid(self):
        """Capture succeeded (synchronously or via reconciliation)."""

    @transition(
        field=payment_status,
        source=PaymentStatus.AUTHORIZED,
        target=PaymentStatus.PENDING,
    )
    def mark_capture_unknown(self):
        """Capture call timed out; outcome awaits reconciliation."""

    @transition(
        field=payment_status,
        source=[PaymentStatus.AUTHORIZED, PaymentStatus.PENDING],
        target=PaymentStatus.FAILED,
    )
    def mark_failed(self):
        """Hold released without capture; no money moved."""

    @transition(
        field=payment_status,
        source=[PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED],
        target=PaymentStatus.PARTIALLY_REFUNDED,
    )
    def mark_partially_refunded(self):
        pass

    @transition(
        field=payment_status,
        source=[PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED],
        target=PaymentStatus.REFUNDED,
    )
    def mark_refunded(self):
        pass

    def flag_manual_refund(self, reason: str) -> None:
        """Record that money is still owed to the payer."""
        self.requires_manual_refund = True
        self.manual_settlement_reason = reason

    def clear_manual_refund(self) -> None:
        """The money owed to the payer has reached them."""
        self.requires_manual_refund = False
        self.manual_settlement_reason = ""


class LineItem(UUIDPrimaryKeyMixin, BaseModel):
    """
    A storage or equipment add-on attached to exactly one booking.

    Priced independently of the booking's base price; the approved subtotal
    of a booking is always base price plus the prices of its approved items.
    """

    booking = models.ForeignKey(
        Booking,
        on_delete=models.PROTECT,
        related_name="line_items",
        help_text="Primary booking this add-on belongs to",
    )

    kind = models.CharField(
        max_length=20,
        choices=LineItemKind.choices,
        help_text="Storage or equipment",
    )

    name = models.CharField(
        max_length=200,
        blank=True,
        default="",
        help_text="Display name shown in list views",
    )

    price_cents = models.PositiveBigIntegerField(
        help_text="Pre-tax price of this add-on in cents",
    )

    status = FSMField(
        default=BookingStatus.PENDING,
        choices=BookingStatus.choices,
        help_text="Add-on lifecycle state",
    )

    payment_status = FSMField(
        default=PaymentStatus.PENDING,
        choices=PaymentStatus.choices,
        help_text="Payment state of this add-on",
    )

    end_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of the rental period (storage only)",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Line Item"
        verbose_name_plural = "Line Items"
        indexes = [
            models.Index(fields=["booking", "status"], name="line_item_booking_status_idx"),
        ]

    def __str__(self) -> str:
        return f"LineItem({self.id}, {self.kind}, {self.status}/{self.payment_status})"

    @property
    def is_rejected(self) -> bool:
        """Whether the snapshot must show this item as rejected."""
        return (
            self.status == BookingStatus.CANCELLED
            or self.payment_status == PaymentStatus.FAILED
        )

    @property
    def is_refundable(self) -> bool:
        """Captured and not yet refunded."""
        return self.payment_status == PaymentStatus.PAID

    # ==========================================================================
    # Transitions
    # ==========================================================================

    @transition(field=payment_status, source=PaymentStatus.PENDING, target=PaymentStatus.AUTHORIZED)
    def authorize(self):
        pass

    @transition(
        field=status,
        source=BookingStatus.PENDING,
        target=BookingStatus.CONFIRMED,
        conditions=[has_settled_payment],
    )
    def confirm(self):
        pass

    @transition(
        field=status,
        source=[
            BookingStatus.PENDING,
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLATION_REQUESTED,
        ],
        target=BookingStatus.CANCELLED,
    )
    def cancel(self):
        pass

    @transition(
        field=payment_status,
        source=[PaymentStatus.AUTHORIZED, PaymentStatus.PENDING],
        target=PaymentStatus.PAID,
    )
    def mark_paid(self):
        pass

    @transition(
        field=payment_status,
        source=[PaymentStatus.AUTHORIZED, PaymentStatus.PENDING],
        target=PaymentStatus.FAILED,
    )
    def mark_failed(self):
        pass

    @transition(
        field=payment_status,
        source=[PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED],
        target=PaymentStatus.REFUNDED,
    )
    def mark_refunded(self):
        pass


class BookingExtension(UUIDPrimaryKeyMixin, OptimisticLockMixin, BaseModel):
    """
    A separately authorized extension or penalty charge.

    Each extension has its own payment intent and its own ledger entry; it
    never changes the booking's original capture.

    State Flow:
        PENDING -> AUTHORIZED -> APPROVED -> REFUNDED
        AUTHORIZED -> REJECTED | EXPIRED
    """

    booking = models.ForeignKey(
        Booking,
        on_delete=models.PROTECT,
        related_name="extensions",
        help_text="Booking this charge is raised against",
    )

    line_item = models.ForeignKey(
        LineItem,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="extensions",
        help_text="Storage line item being extended (if any)",
    )

    kind = models.CharField(
        max_length=20,
        choices=ExtensionKind.choices,
        default=ExtensionKind.EXTENSION,
        help_text="Extension of a rental or penalty charge",
    )

    description = models.CharField(
        max_length=255,
        blank=True,
        default="",
    )

    base_price_cents = models.PositiveBigIntegerField(
        help_text="Pre-tax price of the extension",
    )

    tax_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Tax on the extension at the booking's tax rate",
    )

    status = FSMField(
        default=ExtensionStatus.PENDING,
        choices=ExtensionStatus.choices,
        db_index=True,
    )

    payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor PaymentIntent ID (pi_xxx) of the separate hold",
    )

    new_end_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End date applied to the line item on approval",
    )

    rejection_reason = models.TextField(blank=True, default="")

    authorized_at = models.DateTimeField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    rejected_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Booking Extension"
        verbose_name_plural = "Booking Extensions"
        indexes = [
            models.Index(fields=["status", "authorized_at"], name="extension_status_auth_idx"),
        ]

    def __str__(self) -> str:
        return f"BookingExtension({self.id}, {self.kind}, {self.status})"

    @property
    def total_cents(self) -> int:
        return self.base_price_cents + self.tax_cents

    @transition(field=status, source=ExtensionStatus.PENDING, target=ExtensionStatus.AUTHORIZED)
    def authorize(self):
        self.authorized_at = timezone.now()

    @transition(field=status, source=ExtensionStatus.AUTHORIZED, target=ExtensionStatus.APPROVED)
    def approve(self):
        self.approved_at = timezone.now()

    @transition(
        field=status,
        source=[ExtensionStatus.AUTHORIZED, ExtensionStatus.APPROVED],
        target=ExtensionStatus.REJECTED,
    )
    def reject(self, reason: str = ""):
        self.rejected_at = timezone.now()
        self.rejection_reason = reason

    @transition(field=status, source=ExtensionStatus.AUTHORIZED, target=ExtensionStatus.EXPIRED)
    def expire(self):
        self.rejection_reason = "Payment authorization expired before a decision was made"

    @transition(
        field=status,
        source=[ExtensionStatus.APPROVED, ExtensionStatus.REJECTED],
        target=ExtensionStatus.REFUNDED,
    )
    def mark_refunded(self):
        pass
