"""
Capture and refund amount calculations.

Pure functions over integer cents; no database or processor access. The
settlement engine builds a plan first and only then talks to the
processor, so every amount that leaves the system can be checked here.

Capture (approval with some line items possibly rejected):
    approved_subtotal = base price + approved line item prices
    tax               = round(approved_subtotal * tax_rate / 100)
    capture           = approved_subtotal + tax          (<= authorized)
    platform_fee      = fee_schedule(capture)            (never of the authorization)

Refund (an already captured ledger entry):
    gross_refund      = rejected_subtotal + round(rejected_subtotal * tax_rate / 100)
    fee_share         = round(processor_fee * gross_refund / gross_captured)
    net_refund        = max(0, gross_refund - fee_share)
    refund            = min(net_refund, manager_revenue - refunded_so_far)

The refund amount is both the payer credit and the manager debit.

Usage:
    from payments.services.amounts import plan_capture

    plan = plan_capture(
        approved_subtotal_cents=10000,
        tax_rate_percent=Decimal("15"),
        authorized_amount_cents=13800,
        fee_schedule=FeeSchedule(),
    )
    plan.capture_amount_cents  # 11500
    plan.platform_fee_cents    # 364
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from payments.exceptions import InvariantViolation, PaymentValidationError
from payments.fees import FeeSchedule
from payments.money import apply_percent, prorate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapturePlan:
    authorized_amount_cents: int
    approved_subtotal_cents: int
    tax_cents: int
    capture_amount_cents: int
    platform_fee_cents: int

    @property
    def is_partial(self) -> bool:
        """Less than the hold is captured; Stripe releases the rest."""
        return self.capture_amount_cents < self.authorized_amount_cents

    @property
    def base_amount_cents(self) -> int:
        return self.capture_amount_cents - self.platform_fee_cents


@dataclass(frozen=True)
class RefundPlan:
    rejected_subtotal_cents: int
    proportional_tax_cents: int
    gross_refund_cents: int
    processor_fee_share_cents: int
    net_refund_cents: int
    refund_amount_cents: int

    @property
    def is_capped(self) -> bool:
        """The manager's remaining balance limited the refund."""
        return self.refund_amount_cents < self.net_refund_cents


def plan_capture(
    *,
    approved_subtotal_cents: int,
    tax_rate_percent: Decimal,
    authorized_amount_cents: int,
    fee_schedule: FeeSchedule,
) -> CapturePlan:
    """
    Amounts for capturing an approved subtotal out of a hold.

    Raises:
        PaymentValidationError: Negative subtotal
        InvariantViolation: The capture would exceed the authorization
    """
    if approved_subtotal_cents < 0:
        raise PaymentValidationError(
            "Approved subtotal cannot be negative",
            details={"approved_subtotal_cents": approved_subtotal_cents},
        )

    tax = apply_percent(approved_subtotal_cents, tax_rate_percent)
    capture = approved_subtotal_cents + tax

    if capture > authorized_amount_cents:
        details = {
            "capture_amount_cents": capture,
            "authorized_amount_cents": authorized_amount_cents,
        }
        logger.critical("Capture would exceed authorization", extra=details)
        raise InvariantViolation("Capture would exceed authorization", details=details)

    return CapturePlan(
        authorized_amount_cents=authorized_amount_cents,
        approved_subtotal_cents=approved_subtotal_cents,
        tax_cents=tax,
        capture_amount_cents=capture,
        platform_fee_cents=fee_schedule.platform_fee(capture),
    )


def plan_refund(
    *,
    rejected_subtotal_cents: int,
    tax_rate_percent: Decimal,
    gross_amount_cents: int,
    processor_fee_cents: int,
    manager_revenue_cents: int,
    refunded_amount_cents: int,
) -> RefundPlan:
    """
    Amounts for refunding a rejected subtotal from a captured entry.

    Raises:
        PaymentValidationError: Negative subtotal
        InvariantViolation: Nothing was ever captured on the entry
    """
    if rejected_subtotal_cents < 0:
        raise PaymentValidationError(
            "Refund subtotal cannot be negative",
            details={"rejected_subtotal_cents": rejected_subtotal_cents},
        )
    if gross_amount_cents <= 0:
        details = {"gross_amount_cents": gross_amount_cents}
        logger.critical("Refund planned against an uncaptured payment", extra=details)
        raise InvariantViolation("Refund planned against an uncaptured payment", details=details)

    tax = apply_percent(rejected_subtotal_cents, tax_rate_percent)
    gross_refund = rejected_subtotal_cents + tax
    fee_share = prorate(processor_fee_cents, gross_refund, gross_amount_cents)
    net_refund = max(0, gross_refund - fee_share)
    remaining = max(0, manager_revenue_cents - refunded_amount_cents)

    return RefundPlan(
        rejected_subtotal_cents=rejected_subtotal_cents,
        proportional_tax_cents=tax,
        gross_refund_cents=gross_refund,
        processor_fee_share_cents=fee_share,
        net_refund_cents=net_refund,
        refund_amount_cents=min(net_refund, remaining),
    )
