"""
State enums for payment models.

This module defines the state enums used by payment models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

PaymentTransaction States:
    pending → succeeded                       capture confirmed
    pending → processing → succeeded          capture outcome unknown, then resolved
    pending/processing → canceled             hold released without capture
    pending/processing → failed               processor declined
    succeeded → partially_refunded → refunded
    succeeded → refunded

WebhookEvent States:
    pending → processing → processed
    pending → processing → failed (retried)
"""

from django.db import models


class TransactionStatus(models.TextChoices):
    """
    States of a PaymentTransaction (one per payment intent).

    Terminal states: REFUNDED, CANCELED, FAILED
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    SUCCEEDED = "succeeded", "Succeeded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially Refunded"
    REFUNDED = "refunded", "Refunded"
    CANCELED = "canceled", "Canceled"
    FAILED = "failed", "Failed"


#: Statuses in which captured money sits with the manager and can be refunded.
CAPTURED_TRANSACTION_STATUSES = (
    TransactionStatus.SUCCEEDED,
    TransactionStatus.PARTIALLY_REFUNDED,
)

#: Statuses of a hold whose capture has not been written back.
UNSETTLED_TRANSACTION_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
)


class TransactionKind(models.TextChoices):
    """What a payment intent pays for."""

    BOOKING = "booking", "Booking"
    EXTENSION = "extension", "Extension"
    PENALTY = "penalty", "Penalty"


class HistoryEventType(models.TextChoices):
    """Audit trail event types recorded against a PaymentTransaction."""

    AUTHORIZED = "authorized", "Authorized"
    CAPTURE_REQUESTED = "capture_requested", "Capture Requested"
    CAPTURED = "captured", "Captured"
    CAPTURE_UNKNOWN = "capture_unknown", "Capture Outcome Unknown"
    AUTHORIZATION_CANCELED = "authorization_canceled", "Authorization Canceled"
    REFUNDED = "refunded", "Refunded"
    REFUND_FAILED = "refund_failed", "Refund Failed"
    REFUND_UNKNOWN = "refund_unknown", "Refund Outcome Unknown"
    RECONCILED = "reconciled", "Reconciled"
    MANUAL_SETTLEMENT = "manual_settlement", "Manual Settlement Required"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for WebhookEvent.

    State Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED (can retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"
