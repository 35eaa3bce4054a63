"""
Tests for integer money arithmetic.
"""

from decimal import Decimal

import pytest

from payments.money import Money, apply_percent, format_cents, prorate, prorate_floor, to_decimal


class TestMoney:
    def test_cents_must_be_int(self):
        with pytest.raises(TypeError):
            Money(10.5)

    def test_bool_is_not_money(self):
        with pytest.raises(TypeError):
            Money(True)

    def test_add_and_subtract(self):
        assert Money(10000) + Money(1500) == Money(11500)
        assert Money(11500) - Money(364) == Money(11136)

    def test_currency_mismatch(self):
        with pytest.raises(ValueError, match="different currencies"):
            Money(100, "usd") + Money(100, "eur")

    def test_str(self):
        assert str(Money(11500)) == "$115.00 USD"
        assert str(Money(-5)) == "$-0.05 USD"

    def test_percent(self):
        assert Money(10000).percent(Decimal("15")) == Money(1500)


class TestApplyPercent:
    def test_whole_percentage(self):
        assert apply_percent(10000, Decimal("15")) == 1500

    def test_tie_rounds_away_from_zero(self):
        # 11500 * 2.9% = 333.5
        assert apply_percent(11500, Decimal("2.9")) == 334
        assert apply_percent(-11500, Decimal("2.9")) == -334

    def test_below_half_rounds_down(self):
        # 1150 * 2.9% = 33.35
        assert apply_percent(1150, Decimal("2.9")) == 33

    def test_zero_or_missing_rate(self):
        assert apply_percent(10000, Decimal("0")) == 0
        assert apply_percent(10000, None) == 0

    def test_string_rate(self):
        assert apply_percent(2000, "13.5") == 270

    def test_float_rate_rejected(self):
        with pytest.raises(TypeError):
            apply_percent(10000, 15.0)


class TestProrate:
    def test_full_share(self):
        assert prorate(364, 11500, 11500) == 364

    def test_rounds_half_up(self):
        # 3 * 1 / 2 = 1.5
        assert prorate(3, 1, 2) == 2
        assert prorate_floor(3, 1, 2) == 1

    def test_multiplies_before_dividing(self):
        # 1/3 of 100 three times must not lose a cent to an early division
        assert prorate(100, 1, 3) * 3 == 99
        assert prorate(100, 2, 3) == 67

    def test_zero_total(self):
        assert prorate(0, 500, 11500) == 0

    @pytest.mark.parametrize("total,part,whole", [(100, 1, 0), (-1, 1, 2), (100, -1, 2)])
    def test_invalid_arguments(self, total, part, whole):
        with pytest.raises(ValueError):
            prorate(total, part, whole)


def test_to_decimal_passthrough():
    rate = Decimal("2.9")
    assert to_decimal(rate) is rate
    assert to_decimal(15) == Decimal("15")


def test_format_cents():
    assert format_cents(13800) == "$138.00 USD"
