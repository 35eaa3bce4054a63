"""
Booking admin configuration.

Statuses are FSM fields written by the settlement engine, so they are
read-only here. The manual-refund flag is the operator's work queue.
"""

from django.contrib import admin

from bookings.models import Booking, BookingExtension, LineItem


class LineItemInline(admin.TabularInline):
    model = LineItem
    extra = 0
    readonly_fields = ["id", "kind", "name", "price_cents", "status", "payment_status", "end_date"]
    can_delete = False

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "status",
        "payment_status",
        "base_price_cents",
        "requires_manual_refund",
        "created_at",
    ]
    list_filter = ["status", "payment_status", "requires_manual_refund"]
    search_fields = ["id", "payment_intent_id", "manager_account_id"]
    readonly_fields = [
        "id",
        "status",
        "payment_status",
        "payment_intent_id",
        "line_item_snapshot",
        "authorized_at",
        "confirmed_at",
        "cancelled_at",
        "version",
        "created_at",
        "updated_at",
    ]
    inlines = [LineItemInline]
    ordering = ["-created_at"]


@admin.register(BookingExtension)
class BookingExtensionAdmin(admin.ModelAdmin):
    list_display = ["id", "booking", "kind", "status", "base_price_cents", "tax_cents", "created_at"]
    list_filter = ["kind", "status"]
    search_fields = ["id", "booking__id", "payment_intent_id"]
    readonly_fields = [
        "id",
        "status",
        "payment_intent_id",
        "tax_cents",
        "authorized_at",
        "approved_at",
        "rejected_at",
        "version",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
