"""
Tests for stakeledger_core.precision: fixed-point conversions.
"""

from decimal import Decimal

import pytest

from stakeledger_core.precision import (
    SHARE_RATE_SCALE,
    UNITS_PER_TOKEN,
    format_amount,
    from_units,
    rate_to_decimal,
    to_units,
)


class TestToUnits:
    def test_integer_tokens(self):
        assert to_units(2) == 2 * UNITS_PER_TOKEN

    def test_decimal_string(self):
        assert to_units("1.5") == 15 * UNITS_PER_TOKEN // 10

    def test_smallest_unit(self):
        assert to_units("0.000000000000000001") == 1

    def test_decimal_instance(self):
        assert to_units(Decimal("0.25")) == UNITS_PER_TOKEN // 4

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            to_units(1.5)

    def test_too_many_decimals(self):
        with pytest.raises(ValueError):
            to_units("0.0000000000000000001")

    def test_garbage(self):
        with pytest.raises(ValueError):
            to_units("ten")


class TestFromUnits:
    def test_exact(self):
        assert from_units(15 * UNITS_PER_TOKEN // 10) == Decimal("1.5")

    def test_roundtrip(self):
        assert from_units(to_units("123.456")) == Decimal("123.456")


class TestDisplay:
    def test_rate(self):
        assert rate_to_decimal(250_000) == Decimal("2.5")
        assert rate_to_decimal(SHARE_RATE_SCALE) == 1

    def test_format_truncates(self):
        assert format_amount(to_units("1.23456789")) == "1.234567 STK"

    def test_format_symbol(self):
        assert format_amount(0, "HEX", 2) == "0.00 HEX"
