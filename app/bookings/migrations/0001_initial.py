import uuid
from decimal import Decimal

import django.db.models.deletion
import django_fsm
from django.db import migrations, models


BOOKING_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("confirmed", "Confirmed"),
    ("cancellation_requested", "Cancellation Requested"),
    ("cancelled", "Cancelled"),
]

PAYMENT_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("authorized", "Authorized"),
    ("paid", "Paid"),
    ("partially_refunded", "Partially Refunded"),
    ("refunded", "Refunded"),
    ("failed", "Failed"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Booking",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each write")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("currency", models.CharField(default="usd", help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                ("hourly_rate_cents", models.PositiveBigIntegerField(default=0, help_text="Hourly rate of the primary resource in cents")),
                ("duration_hours", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Booked duration in hours", max_digits=6)),
                ("base_price_cents", models.PositiveBigIntegerField(help_text="Pre-tax price of the primary resource (rate x duration)")),
                ("tax_rate_percent", models.DecimalField(decimal_places=2, default=Decimal("0"), help_text="Tax percentage applied to subtotals (15 means 15%)", max_digits=5)),
                ("status", django_fsm.FSMField(choices=BOOKING_STATUS_CHOICES, db_index=True, default="pending", help_text="Booking lifecycle state", max_length=50)),
                ("payment_status", django_fsm.FSMField(choices=PAYMENT_STATUS_CHOICES, db_index=True, default="pending", help_text="Payment state of the primary booking", max_length=50)),
                ("payer_reference", models.CharField(blank=True, default="", help_text="Processor payment method or customer used for the hold", max_length=255)),
                ("manager_account_id", models.CharField(blank=True, default="", help_text="Processor connected account (acct_xxx) that receives funds", max_length=255)),
                ("payment_intent_id", models.CharField(blank=True, help_text="Processor PaymentIntent ID (pi_xxx) of the initial hold", max_length=255, null=True, unique=True)),
                ("line_item_snapshot", models.JSONField(blank=True, default=list, help_text="Copy of line item fields for list rendering")),
                ("requires_manual_refund", models.BooleanField(default=False, help_text="Money is still owed to the payer and needs operator action")),
                ("manual_settlement_reason", models.TextField(blank=True, default="", help_text="Why the booking was flagged for manual settlement")),
                ("authorized_at", models.DateTimeField(blank=True, help_text="When the payment hold was placed", null=True)),
                ("confirmed_at", models.DateTimeField(blank=True, help_text="When the manager approved the booking", null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, help_text="When the booking was cancelled", null=True)),
            ],
            options={
                "verbose_name": "Booking",
                "verbose_name_plural": "Bookings",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "payment_status"], name="booking_status_payment_idx"),
                    models.Index(fields=["payment_status", "authorized_at"], name="booking_payment_auth_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="LineItem",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("kind", models.CharField(choices=[("storage", "Storage"), ("equipment", "Equipment")], help_text="Storage or equipment", max_length=20)),
                ("name", models.CharField(blank=True, default="", help_text="Display name shown in list views", max_length=200)),
                ("price_cents", models.PositiveBigIntegerField(help_text="Pre-tax price of this add-on in cents")),
                ("status", django_fsm.FSMField(choices=BOOKING_STATUS_CHOICES, default="pending", help_text="Add-on lifecycle state", max_length=50)),
                ("payment_status", django_fsm.FSMField(choices=PAYMENT_STATUS_CHOICES, default="pending", help_text="Payment state of this add-on", max_length=50)),
                ("end_date", models.DateTimeField(blank=True, help_text="End of the rental period (storage only)", null=True)),
                ("booking", models.ForeignKey(help_text="Primary booking this add-on belongs to", on_delete=django.db.models.deletion.PROTECT, related_name="line_items", to="bookings.booking")),
            ],
            options={
                "verbose_name": "Line Item",
                "verbose_name_plural": "Line Items",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["booking", "status"], name="line_item_booking_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BookingExtension",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each write")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("kind", models.CharField(choices=[("extension", "Extension"), ("penalty", "Penalty")], default="extension", help_text="Extension of a rental or penalty charge", max_length=20)),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("base_price_cents", models.PositiveBigIntegerField(help_text="Pre-tax price of the extension")),
                ("tax_cents", models.PositiveBigIntegerField(default=0, help_text="Tax on the extension at the booking's tax rate")),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("authorized", "Authorized"),
                            ("approved", "Approved"),
                            ("rejected", "Rejected"),
                            ("expired", "Expired"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=50,
                    ),
                ),
                ("payment_intent_id", models.CharField(blank=True, help_text="Processor PaymentIntent ID (pi_xxx) of the separate hold", max_length=255, null=True, unique=True)),
                ("new_end_date", models.DateTimeField(blank=True, help_text="End date applied to the line item on approval", null=True)),
                ("rejection_reason", models.TextField(blank=True, default="")),
                ("authorized_at", models.DateTimeField(blank=True, null=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("rejected_at", models.DateTimeField(blank=True, null=True)),
                ("booking", models.ForeignKey(help_text="Booking this charge is raised against", on_delete=django.db.models.deletion.PROTECT, related_name="extensions", to="bookings.booking")),
                ("line_item", models.ForeignKey(blank=True, help_text="Storage line item being extended (if any)", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="extensions", to="bookings.lineitem")),
            ],
            options={
                "verbose_name": "Booking Extension",
                "verbose_name_plural": "Booking Extensions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "authorized_at"], name="extension_status_auth_idx"),
                ],
            },
        ),
    ]
