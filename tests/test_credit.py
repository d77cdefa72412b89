"""
Tests for fixed-point credit arithmetic.
"""

from decimal import Decimal

import pytest

from provider_gateway.credit import RAW_PER_DOLLAR, Credit


class TestConstruction:
    """Test building credits from dollars and cents."""

    def test_from_dollars_string(self):
        assert Credit.from_dollars("1.50").raw == 1_500_000_000

    def test_from_dollars_float_uses_decimal_text(self):
        """0.1 must mean one tenth, not its binary expansion."""
        assert Credit.from_dollars(0.1).raw == 100_000_000

    def test_from_cents(self):
        assert Credit.from_cents(3) == Credit.from_dollars("0.03")

    def test_sub_nano_amount_rounds_half_even(self):
        assert Credit.from_dollars("0.0000000005").raw == 0
        assert Credit.from_dollars("0.0000000015").raw == 2

    def test_rejects_non_int_raw(self):
        with pytest.raises(TypeError):
            Credit(1.5)
        with pytest.raises(TypeError):
            Credit(True)

    def test_rejects_garbage_string(self):
        with pytest.raises(ValueError):
            Credit.from_dollars("twelve")


class TestArithmetic:
    """Test exact arithmetic and rounding."""

    def test_add_and_subtract(self):
        a = Credit.from_dollars("0.10")
        b = Credit.from_dollars("0.20")
        assert (a + b) == Credit.from_dollars("0.30")
        assert (a - b) == Credit.from_dollars("-0.10")

    def test_multiply_by_decimal_margin(self):
        cost = Credit.from_dollars("0.0079")
        assert (cost * Decimal("2.53")).raw == 19_987_000

    def test_multiply_rounds_ties_to_even(self):
        assert Credit(1).multiply("0.5").raw == 0
        assert Credit(3).multiply("0.5").raw == 2

    def test_repeated_margin_does_not_drift(self):
        charge = Credit.from_dollars("0.013")
        for _ in range(10):
            charge = charge * Decimal("1.0")
        assert charge == Credit.from_dollars("0.013")

    def test_rmul(self):
        assert 2 * Credit.from_cents(5) == Credit.from_cents(10)

    def test_negative_and_zero(self):
        assert Credit.zero().is_zero()
        assert not Credit.zero()
        assert (-Credit.from_cents(1)).is_negative()

    def test_ordering(self):
        assert Credit.from_cents(1) < Credit.from_cents(2)
        assert Credit.from_cents(2) >= Credit.from_cents(2)

    def test_adding_non_credit_is_type_error(self):
        with pytest.raises(TypeError):
            Credit.zero() + 1


class TestBoundaryConversions:
    """Test conversions used only at I/O boundaries."""

    def test_to_dollars_has_nine_places(self):
        assert Credit(1).to_dollars() == Decimal("0.000000001")
        assert Credit(RAW_PER_DOLLAR).to_dollars() == Decimal("1.000000000")

    def test_to_cents_half_even(self):
        assert Credit.from_dollars("0.005").to_cents() == 0
        assert Credit.from_dollars("0.015").to_cents() == 2

    def test_display_string(self):
        assert Credit.from_dollars("1.5").to_display_string() == "$1.50"
        assert str(Credit.from_dollars("-0.25")) == "-$0.25"
