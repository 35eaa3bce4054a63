"""
Integer minor-unit money arithmetic.

Every monetary value in the settlement engine is a signed ``int`` number of
cents. Percentages are ``decimal.Decimal`` so that a tax rate like 13.5%
never passes through binary floating point.

Rounding rules:
    apply_percent: nearest cent, ties away from zero (ROUND_HALF_UP)
    prorate:       integer multiply before divide, nearest cent, ties up
    prorate_floor: integer multiply before divide, floor

Usage:
    from payments.money import Money, apply_percent, prorate

    tax = apply_percent(10000, Decimal("15"))          # 1500
    fee_share = prorate(364, part=11500, whole=11500)  # 364

    total = Money(10000) + Money(1500)
    print(total)  # "$115.00 USD"
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

HUNDRED = Decimal(100)


@dataclass(frozen=True)
class Money:
    """
    A monetary amount in the smallest currency unit.

    Attributes:
        cents: Amount in minor units (may be negative for debits)
        currency: ISO 4217 currency code (lowercase)

    Example:
        amount = Money(cents=11500, currency="usd")
        print(amount)  # "$115.00 USD"
    """

    cents: int
    currency: str = "usd"

    def __post_init__(self) -> None:
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise TypeError(
                f"Money.cents must be an int, got {type(self.cents).__name__}"
            )

    def __str__(self) -> str:
        """Format as currency string (e.g., '$50.00 USD')."""
        sign = "-" if self.cents < 0 else ""
        whole, minor = divmod(abs(self.cents), 100)
        return f"${sign}{whole}.{minor:02d} {self.currency.upper()}"

    def _check_currency(self, other: Money, verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(
                f"Cannot {verb} Money with different currencies: "
                f"{self.currency} and {other.currency}"
            )

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "add")
        return Money(cents=self.cents + other.cents, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "subtract")
        return Money(cents=self.cents - other.cents, currency=self.currency)

    def percent(self, rate_percent: Decimal | int | str) -> Money:
        """Return ``rate_percent`` of this amount, rounded half-up."""
        return Money(apply_percent(self.cents, rate_percent), self.currency)


def to_decimal(value: Decimal | int | str) -> Decimal:
    """
    Coerce a percentage to Decimal.

    Floats are rejected outright: ``Decimal(0.1)`` silently carries the
    binary representation error into money math.
    """
    if isinstance(value, float):
        raise TypeError("Percentages must be Decimal, int or str, not float")
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


def apply_percent(amount_cents: int, rate_percent: Decimal | int | str) -> int:
    """
    Apply a percentage to an amount, rounding to the nearest cent.

    Ties round away from zero, so 333.5 becomes 334 and -333.5 becomes -334.
    A zero or missing rate yields 0.

    Args:
        amount_cents: Amount in minor units
        rate_percent: Percentage (15 means 15%)

    Example:
        apply_percent(10000, Decimal("15"))  # 1500
        apply_percent(11500, Decimal("2.9"))  # 334 (333.5 rounded up)
    """
    rate = to_decimal(rate_percent or 0)
    if not rate or not amount_cents:
        return 0
    exact = Decimal(amount_cents) * rate / HUNDRED
    return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def prorate(total: int, part: int, whole: int) -> int:
    """
    Allocate ``total`` in the ratio ``part / whole``, rounded half-up.

    Computed as a single integer expression ``total * part / whole`` so no
    intermediate ratio is ever materialized. Used for the processor fee
    share of a refund.

    Raises:
        ValueError: If ``whole`` is not positive or an argument is negative
    """
    _check_prorate_args(total, part, whole)
    numerator = total * part
    return (2 * numerator + whole) // (2 * whole)


def prorate_floor(total: int, part: int, whole: int) -> int:
    """
    Allocate ``total`` in the ratio ``part / whole``, rounded down.

    Same single-expression rule as ``prorate``; used where an allocation
    must never exceed its exact share.
    """
    _check_prorate_args(total, part, whole)
    return (total * part) // whole


def _check_prorate_args(total: int, part: int, whole: int) -> None:
    if whole <= 0:
        raise ValueError(f"Cannot prorate against a non-positive whole ({whole})")
    if total < 0 or part < 0:
        raise ValueError("Cannot prorate negative amounts")


def format_cents(amount_cents: int, currency: str = "usd") -> str:
    """Human-readable amount for log messages and admin displays."""
    return str(Money(amount_cents, currency))
