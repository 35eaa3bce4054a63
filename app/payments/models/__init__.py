"""
Payment domain models.

This module contains all payment-related models:
- PaymentTransaction: Ledger entry for one payment intent
- RefundRecord: Append-only refunds issued against a PaymentTransaction
- PaymentHistoryEntry: Append-only audit trail of a PaymentTransaction
- WebhookEvent: Stripe webhook event tracking for idempotent processing
"""

from payments.models.payment_transaction import (
    PaymentHistoryEntry,
    PaymentTransaction,
    RefundRecord,
)
from payments.models.webhook_event import WebhookEvent

__all__ = [
    "PaymentHistoryEntry",
    "PaymentTransaction",
    "RefundRecord",
    "WebhookEvent",
]
