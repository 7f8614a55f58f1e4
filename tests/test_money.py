"""Tests for base-unit amount conversion."""

from decimal import Decimal

from tollgate.money import (
    amount_to_base_units,
    base_units_to_decimal,
    format_base_units,
    limit_to_base_units,
)


class TestMoney:
    def test_amounts_round_up(self):
        assert amount_to_base_units("0.0000001") == 1
        assert amount_to_base_units("1.5") == 1_500_000

    def test_limits_round_down(self):
        assert limit_to_base_units("0.0000019") == 1
        assert limit_to_base_units(10) == 10_000_000

    def test_decimal_and_format(self):
        assert base_units_to_decimal(1_500_000) == Decimal("1.500000")
        assert format_base_units(1_500_000) == "1.50 USDC"
        assert format_base_units(0) == "0.00 USDC"
