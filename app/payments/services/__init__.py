"""
Settlement services for booking payments.

This module provides:
- SettlementEngine: Captures, releases and refunds for bookings and extensions
- ReconciliationListener: Applies processor notifications to the ledger
- plan_capture / plan_refund: Pure amount calculations used by the engine

Usage:
    from payments.services import SettlementEngine

    engine = SettlementEngine()

    # Manager approves, rejecting the storage add-on
    result = engine.decide_approval(
        booking.id,
        rejected_line_item_ids=[storage_item.id],
    )

    # Later the booking is cancelled with a refund
    result = engine.decide_cancellation(booking.id, refund_requested=True)
    result.refund.amount_cents
"""

from payments.services.amounts import CapturePlan, RefundPlan, plan_capture, plan_refund
from payments.services.settlement_engine import (
    RefundSummary,
    SettlementEngine,
    SettlementResult,
)
from payments.services.reconciliation_listener import ReconciliationListener

__all__ = [
    "CapturePlan",
    "ReconciliationListener",
    "RefundPlan",
    "RefundSummary",
    "SettlementEngine",
    "SettlementResult",
    "plan_capture",
    "plan_refund",
]
