"""
Tests for input validation, unit conversion and the re-entrancy guard.
"""

from decimal import Decimal

import pytest

from settlement.errors import (
    InvalidAddress,
    InvalidAmount,
    ReentrantCall,
    ZeroAddress,
    ZeroAmount,
)
from settlement.hardening import (
    MAX_U64,
    AtomicCounter,
    InvariantChecker,
    InvariantViolation,
    Validators,
    format_units,
    non_reentrant,
    require_address,
    require_amount,
    to_base_units,
)


class TestAmountValidation:

    def test_accepts_u64_range(self):
        assert require_amount(1) == 1
        assert require_amount(MAX_U64) == MAX_U64

    @pytest.mark.parametrize("bad", [-1, MAX_U64 + 1, 1.5, "10", True, None])
    def test_rejects_invalid(self, bad):
        with pytest.raises(InvalidAmount):
            require_amount(bad)

    def test_zero(self):
        with pytest.raises(ZeroAmount):
            require_amount(0)
        assert require_amount(0, allow_zero=True) == 0

    def test_result_carries_error(self):
        result = Validators.validate_amount(-5)
        assert not result.is_valid
        assert result.errors[0].code == "invalid_amount"


class TestAddressValidation:

    def test_lowercases(self):
        assert require_address("0x" + "AB" * 20) == "0x" + "ab" * 20

    @pytest.mark.parametrize("bad", ["0x123", "ab" * 20, "0x" + "zz" * 20, 7])
    def test_rejects_malformed(self, bad):
        with pytest.raises(InvalidAddress):
            require_address(bad)

    def test_zero_address(self):
        zero = "0x" + "0" * 40
        with pytest.raises(ZeroAddress):
            require_address(zero)
        assert require_address(zero, allow_zero=True) == zero


class TestUnits:

    def test_to_base_units(self):
        assert to_base_units("12.5") == 12_500_000
        assert to_base_units(3) == 3_000_000
        assert to_base_units(Decimal("0.000001")) == 1

    def test_excess_precision_rejected(self):
        with pytest.raises(InvalidAmount):
            to_base_units("0.0000001")

    @pytest.mark.parametrize("bad", ["abc", "NaN", "-1"])
    def test_invalid_numbers(self, bad):
        with pytest.raises(InvalidAmount):
            to_base_units(bad)

    def test_format_units(self):
        assert format_units(104_000_000) == "104.000000"
        assert format_units(1) == "0.000001"


class TestPrimitives:

    def test_atomic_counter(self):
        counter = AtomicCounter()
        assert counter.increment() == 1
        assert counter.increment(5) == 6
        assert counter.get() == 6

    def test_invariants(self):
        InvariantChecker.check_non_negative("pending_deposits", 0)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_non_negative("pending_deposits", -1)
        assert InvariantChecker.saturating_sub(5, 9) == 0
        assert InvariantChecker.saturating_sub(9, 5) == 4

    def test_non_reentrant(self):
        class Guarded:
            def __init__(self):
                self.calls = 0

            @non_reentrant
            def outer(self):
                self.calls += 1
                return self.inner()

            @non_reentrant
            def inner(self):
                return "unreachable"

            @non_reentrant
            def leaf(self):
                self.calls += 1
                return "ok"

        g = Guarded()
        with pytest.raises(ReentrantCall):
            g.outer()
        assert g.leaf() == "ok"
        assert g.calls == 2
