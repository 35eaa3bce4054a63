"""
Payment admin configuration.

Ledger entries, refund records and history are read-only here; every
change goes through the settlement engine. Operators can trigger the
re-query of captures whose outcome is unknown and re-queue failed
webhook events.
"""

from django.contrib import admin, messages

from core.exceptions import BaseApplicationError

from payments.models import PaymentHistoryEntry, PaymentTransaction, RefundRecord, WebhookEvent
from payments.money import format_cents
from payments.state_machines import TransactionStatus, WebhookEventStatus

__all__ = [
    "PaymentTransactionAdmin",
    "WebhookEventAdmin",
]


class RefundRecordInline(admin.TabularInline):
    """Refunds appended to a ledger entry."""

    model = RefundRecord
    extra = 0
    readonly_fields = [
        "id",
        "amount_cents",
        "reason",
        "refund_reference",
        "reversal_reference",
        "line_item_ids",
        "confirmed_at",
        "created_at",
    ]
    can_delete = False

    def has_add_permission(self, request, obj=None) -> bool:
        return False


class PaymentHistoryInline(admin.TabularInline):
    """Audit trail of a ledger entry."""

    model = PaymentHistoryEntry
    extra = 0
    readonly_fields = [
        "event_type",
        "previous_status",
        "new_status",
        "amount_cents",
        "description",
        "created_at",
    ]
    exclude = ["metadata"]
    can_delete = False
    ordering = ["created_at"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentTransaction (ledger entries).

    All money fields are read-only.
    """

    list_display = [
        "payment_intent_id",
        "booking",
        "kind",
        "status",
        "captured_display",
        "refunded_display",
        "created_at",
    ]
    list_filter = ["status", "kind", "currency", "created_at"]
    search_fields = ["id", "payment_intent_id", "booking__id"]
    readonly_fields = [
        "id",
        "booking",
        "extension",
        "kind",
        "payment_intent_id",
        "currency",
        "authorized_amount_cents",
        "amount_cents",
        "base_amount_cents",
        "tax_cents",
        "platform_fee_cents",
        "processor_fee_cents",
        "manager_revenue_cents",
        "refunded_amount_cents",
        "status",
        "metadata",
        "captured_at",
        "last_synced_at",
        "version",
        "created_at",
        "updated_at",
    ]
    inlines = [RefundRecordInline, PaymentHistoryInline]
    actions = ["resolve_pending"]
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "booking", "extension", "kind", "payment_intent_id", "status")}),
        (
            "Amounts",
            {
                "fields": (
                    "currency",
                    "authorized_amount_cents",
                    "amount_cents",
                    "base_amount_cents",
                    "tax_cents",
                    "platform_fee_cents",
                    "processor_fee_cents",
                    "manager_revenue_cents",
                    "refunded_amount_cents",
                ),
            },
        ),
        ("Settlement Metadata", {"fields": ("metadata", "version"), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("captured_at", "last_synced_at", "created_at", "updated_at")}),
    )

    def captured_display(self, obj: PaymentTransaction) -> str:
        return format_cents(obj.amount_cents, obj.currency)

    captured_display.short_description = "Captured"

    def refunded_display(self, obj: PaymentTransaction) -> str:
        return format_cents(obj.refunded_amount_cents, obj.currency)

    refunded_display.short_description = "Refunded"

    @admin.action(description="Re-query processor for selected pending captures")
    def resolve_pending(self, request, queryset):
        from payments.services import SettlementEngine

        engine = SettlementEngine()
        resolved = 0
        for entry in queryset.filter(status=TransactionStatus.PROCESSING):
            try:
                engine.resolve_pending_settlement(entry.payment_intent_id)
                resolved += 1
            except BaseApplicationError as e:
                self.message_user(request, f"{entry.payment_intent_id}: {e.message}", level=messages.ERROR)
        self.message_user(request, f"Re-queried {resolved} pending captures.")

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for ledger entries (audit trail)."""
        return False

    def has_add_permission(self, request) -> bool:
        """Ledger entries are created by the settlement engine only."""
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for WebhookEvent.

    Provides visibility into webhook processing status.
    Webhook events are immutable once received.
    """

    list_display = [
        "id",
        "stripe_event_id",
        "event_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type", "created_at"]
    search_fields = ["id", "stripe_event_id", "event_type"]
    readonly_fields = [
        "id",
        "created_at",
        "updated_at",
        "stripe_event_id",
        "event_type",
        "payload",
        "processed_at",
    ]
    actions = ["requeue"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "stripe_event_id", "event_type", "status")}),
        ("Processing", {"fields": ("processed_at", "retry_count")}),
        ("Error Info", {"fields": ("error_message",), "classes": ("collapse",)}),
        ("Payload", {"fields": ("payload",), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    @admin.action(description="Re-queue selected failed events")
    def requeue(self, request, queryset):
        from payments.tasks import process_webhook_event

        count = 0
        for event in queryset.filter(status=WebhookEventStatus.FAILED):
            process_webhook_event.delay(str(event.id))
            count += 1
        self.message_user(request, f"Re-queued {count} webhook events.")

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for webhook events (audit trail)."""
        return False

    def has_add_permission(self, request) -> bool:
        """Disable adding webhook events through admin."""
        return False
