import uuid

import django.db.models.deletion
from django.db import migrations, models


TRANSACTION_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("processing", "Processing"),
    ("succeeded", "Succeeded"),
    ("partially_refunded", "Partially Refunded"),
    ("refunded", "Refunded"),
    ("canceled", "Canceled"),
    ("failed", "Failed"),
]

HISTORY_EVENT_CHOICES = [
    ("authorized", "Authorized"),
    ("capture_requested", "Capture Requested"),
    ("captured", "Captured"),
    ("capture_unknown", "Capture Outcome Unknown"),
    ("authorization_canceled", "Authorization Canceled"),
    ("refunded", "Refunded"),
    ("refund_failed", "Refund Failed"),
    ("refund_unknown", "Refund Outcome Unknown"),
    ("reconciled", "Reconciled"),
    ("manual_settlement", "Manual Settlement Required"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("bookings", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each write")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("kind", models.CharField(choices=[("booking", "Booking"), ("extension", "Extension"), ("penalty", "Penalty")], default="booking", help_text="What this payment intent pays for", max_length=20)),
                ("payment_intent_id", models.CharField(help_text="Processor PaymentIntent ID (pi_xxx)", max_length=255, unique=True)),
                ("currency", models.CharField(default="usd", help_text="ISO 4217 currency code (lowercase)", max_length=3)),
                ("authorized_amount_cents", models.PositiveBigIntegerField(default=0, help_text="Amount held when the intent was authorized")),
                ("amount_cents", models.PositiveBigIntegerField(default=0, help_text="Gross amount currently captured")),
                ("base_amount_cents", models.PositiveBigIntegerField(default=0, help_text="Gross amount minus platform fee")),
                ("tax_cents", models.PositiveBigIntegerField(default=0, help_text="Tax portion of the captured amount")),
                ("platform_fee_cents", models.PositiveBigIntegerField(default=0, help_text="Application fee kept by the platform")),
                ("processor_fee_cents", models.PositiveBigIntegerField(default=0, help_text="Processor's own fee, known after settlement")),
                ("manager_revenue_cents", models.PositiveBigIntegerField(default=0, help_text="Manager net revenue")),
                ("refunded_amount_cents", models.PositiveBigIntegerField(default=0, help_text="Cumulative amount refunded to the payer and debited from the manager")),
                ("status", models.CharField(choices=TRANSACTION_STATUS_CHOICES, db_index=True, default="pending", help_text="Ledger status of this payment intent", max_length=20)),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="Serialized SettlementMetadata (merged on update, never replaced)")),
                ("captured_at", models.DateTimeField(blank=True, help_text="When the capture was confirmed", null=True)),
                ("last_synced_at", models.DateTimeField(blank=True, help_text="When a processor notification was last applied", null=True)),
                ("booking", models.ForeignKey(help_text="Booking this payment belongs to", on_delete=django.db.models.deletion.PROTECT, related_name="payment_transactions", to="bookings.booking")),
                ("extension", models.OneToOneField(blank=True, help_text="Extension or penalty paid by this intent (if any)", null=True, on_delete=django.db.models.deletion.PROTECT, related_name="payment_transaction", to="bookings.bookingextension")),
            ],
            options={
                "verbose_name": "Payment Transaction",
                "verbose_name_plural": "Payment Transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["booking", "kind"], name="payment_txn_booking_kind_idx"),
                    models.Index(fields=["status", "updated_at"], name="payment_txn_status_upd_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("refunded_amount_cents__lte", models.F("manager_revenue_cents"))),
                        name="payment_transaction_refunds_within_manager_revenue",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__lte", models.F("authorized_amount_cents"))),
                        name="payment_transaction_capture_within_authorization",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RefundRecord",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("amount_cents", models.PositiveBigIntegerField(help_text="Amount credited to the payer and debited from the manager")),
                ("reason", models.CharField(help_text="Why the refund was issued", max_length=255)),
                ("refund_reference", models.CharField(blank=True, help_text="Processor refund ID (re_xxx)", max_length=255, null=True, unique=True)),
                ("reversal_reference", models.CharField(blank=True, help_text="Processor transfer reversal ID (trr_xxx)", max_length=255, null=True)),
                ("line_item_ids", models.JSONField(blank=True, default=list, help_text="Line items covered by this refund")),
                ("confirmed_at", models.DateTimeField(blank=True, help_text="When the processor confirmed the refund", null=True)),
                ("transaction", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="refund_records", to="payments.paymenttransaction")),
            ],
            options={
                "verbose_name": "Refund Record",
                "verbose_name_plural": "Refund Records",
                "ordering": ["created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="refund_record_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentHistoryEntry",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("event_type", models.CharField(choices=HISTORY_EVENT_CHOICES, max_length=40)),
                ("previous_status", models.CharField(blank=True, default="", max_length=20)),
                ("new_status", models.CharField(blank=True, default="", max_length=20)),
                ("amount_cents", models.BigIntegerField(blank=True, help_text="Amount involved in the event, if any", null=True)),
                ("description", models.TextField(blank=True, default="")),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("transaction", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="history", to="payments.paymenttransaction")),
            ],
            options={
                "verbose_name": "Payment History Entry",
                "verbose_name_plural": "Payment History",
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for this record", primary_key=True, serialize=False)),
                ("stripe_event_id", models.CharField(help_text="Stripe Event ID (evt_xxx) - unique constraint for idempotency", max_length=255, unique=True)),
                ("event_type", models.CharField(db_index=True, help_text="Stripe event type (e.g., 'charge.succeeded')", max_length=100)),
                ("payload", models.JSONField(help_text="Full webhook payload from Stripe (JSON)")),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("processed", "Processed"), ("failed", "Failed")], db_index=True, default="pending", help_text="Current processing status", max_length=20)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, help_text="Error message if processing failed", null=True)),
                ("retry_count", models.PositiveSmallIntegerField(default=0, help_text="Number of processing attempts")),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "retry_count"], name="webhook_status_retry_idx"),
                    models.Index(fields=["event_type", "created_at"], name="webhook_type_created_idx"),
                ],
            },
        ),
    ]
