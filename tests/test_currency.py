"""
Test suite for the Money type

Amounts must never pass through float and must round once, half up, to the
currency's minor unit.
"""

import pytest
from decimal import Decimal

from sacco_ledger.currency import Currency, Money, round_to_currency, to_decimal


class TestMoney:
    """Test Money construction and arithmetic"""

    def test_ugx_rounds_to_whole_shillings(self):
        """UGX has no minor unit in circulation"""
        assert Money(Decimal("9333.33"), Currency.UGX).amount == Decimal("9333")
        assert Money(Decimal("9333.5"), Currency.UGX).amount == Decimal("9334")

    def test_two_decimal_currency_rounds_half_up(self):
        assert Money(Decimal("10.005"), Currency.USD).amount == Decimal("10.01")
        assert Money(Decimal("10.004"), Currency.USD).amount == Decimal("10.00")
        assert Money(Decimal("-10.005"), Currency.USD).amount == Decimal("-10.01")

    def test_accepts_int_and_string(self):
        assert Money(100000, Currency.UGX) == Money(Decimal("100000"), Currency.UGX)
        assert Money("1,500", Currency.UGX).amount == Decimal("1500")

    def test_rejects_float(self):
        with pytest.raises(ValueError):
            Money(100.5, Currency.UGX)

    def test_addition_and_subtraction(self):
        a = Money(5000, Currency.UGX)
        b = Money(1200, Currency.UGX)
        assert (a + b).amount == Decimal("6200")
        assert (a - b).amount == Decimal("3800")
        assert (b - a).is_negative()

    def test_mixed_currency_arithmetic_fails(self):
        with pytest.raises(ValueError):
            Money(100, Currency.UGX) + Money(100, Currency.KES)
        with pytest.raises(ValueError):
            Money(100, Currency.UGX) < Money(100, Currency.KES)

    def test_comparisons(self):
        small = Money(100, Currency.UGX)
        large = Money(200, Currency.UGX)
        assert small < large
        assert large >= small
        assert max(small, large) == large
        assert small.compare(small) == 0

    def test_multiply_by_rate_rounds_once(self):
        """10% of 100000 over 12/12 months"""
        principal = Money(100000, Currency.UGX)
        assert principal.multiply_by_rate(10).amount == Decimal("10000")
        assert principal.multiply_by_rate(3, 1).amount == Decimal("300000")

    def test_minor_units(self):
        assert Money(Decimal("12.34"), Currency.USD).minor_units == 1234
        assert Money.from_minor_units(1234, Currency.USD).amount == Decimal("12.34")
        assert Money.from_minor_units(9333, Currency.UGX).amount == Decimal("9333")

    def test_to_string(self):
        assert Money(112000, Currency.UGX).to_string() == "UGX 112,000"
        assert str(Money(Decimal("5.5"), Currency.USD)) == "USD 5.50"


class TestUtilityFunctions:
    """Test module-level helpers"""

    def test_to_decimal(self):
        assert to_decimal("100.25") == Decimal("100.25")
        assert to_decimal(7) == Decimal("7")
        with pytest.raises(ValueError):
            to_decimal(True)
        with pytest.raises(ValueError):
            to_decimal("abc")

    def test_round_to_currency(self):
        assert round_to_currency(Decimal("410.96"), Currency.UGX) == Decimal("411")
        assert round_to_currency(Decimal("0.125"), Currency.KES) == Decimal("0.13")

    def test_minor_unit(self):
        assert Currency.UGX.minor_unit == Decimal("1")
        assert Currency.USD.minor_unit == Decimal("0.01")
