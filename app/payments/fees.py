"""
Platform fee schedule.

The platform collects its fee as the Stripe ``application_fee_amount`` on a
destination charge. The fee recovers the processor's own charge fee
(percentage plus fixed part) so the platform breaks even on processing, plus
an optional commission.

    fee(amount) = round(amount * PROCESSOR_FEE_PERCENT / 100)
                + PROCESSOR_FEE_FIXED_CENTS
                + round(amount * PLATFORM_FEE_PERCENT / 100)

The fee is 0 for a zero amount and never exceeds the amount it is taken from.
It is always computed on the amount actually captured, so a partial capture
is charged on the smaller amount.

Usage:
    from payments.fees import FeeSchedule

    schedule = FeeSchedule.from_settings()
    schedule.platform_fee(11500)  # 364 with the default 2.9% + 30c
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings

from payments.money import apply_percent, to_decimal


@dataclass(frozen=True)
class FeeSchedule:
    """
    Immutable fee configuration.

    Attributes:
        processor_percent: Processor percentage fee (2.9 means 2.9%)
        processor_fixed_cents: Processor fixed fee per charge
        platform_percent: Platform commission percentage on top
    """

    processor_percent: Decimal = Decimal("2.9")
    processor_fixed_cents: int = 30
    platform_percent: Decimal = Decimal("0")

    @classmethod
    def from_settings(cls) -> FeeSchedule:
        """Build the schedule from Django settings."""
        return cls(
            processor_percent=to_decimal(settings.PROCESSOR_FEE_PERCENT),
            processor_fixed_cents=int(settings.PROCESSOR_FEE_FIXED_CENTS),
            platform_percent=to_decimal(settings.PLATFORM_FEE_PERCENT),
        )

    def platform_fee(self, amount_cents: int) -> int:
        """
        Fee taken from a charge of ``amount_cents``.

        Raises:
            ValueError: If the amount is negative
        """
        if amount_cents < 0:
            raise ValueError(f"Cannot compute a fee on a negative amount ({amount_cents})")
        if amount_cents == 0:
            return 0

        fee = (
            apply_percent(amount_cents, self.processor_percent)
            + self.processor_fixed_cents
            + apply_percent(amount_cents, self.platform_percent)
        )
        return min(fee, amount_cents)
