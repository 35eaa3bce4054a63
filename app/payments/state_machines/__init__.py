"""
State machine enums for payment models.

This module defines the state enums used by payment models with django-fsm.
"""

from payments.state_machines.states import (
    CAPTURED_TRANSACTION_STATUSES,
    UNSETTLED_TRANSACTION_STATUSES,
    HistoryEventType,
    TransactionKind,
    TransactionStatus,
    WebhookEventStatus,
)

__all__ = [
    "CAPTURED_TRANSACTION_STATUSES",
    "UNSETTLED_TRANSACTION_STATUSES",
    "HistoryEventType",
    "TransactionKind",
    "TransactionStatus",
    "WebhookEventStatus",
]
