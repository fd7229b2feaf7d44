"""
Tests for order size normalization against lot rules.
"""

import math

import pytest

from gridpilot.core.errors import OrderSizeError, ValidationError
from gridpilot.execution.order_normalizer import normalize_order_size


class TestNormalizeOrderSize:

    def test_whole_contracts_pass_through(self):
        out = normalize_order_size(5, step=1, min_size=1)
        assert out.size == 5
        assert out.adjusted is False

    def test_rounds_down_to_step(self):
        out = normalize_order_size(7.9, step=1, min_size=1)
        assert out.size == 7
        assert out.adjusted is True

    def test_fractional_step_without_drift(self):
        assert normalize_order_size(0.3, step=0.1, min_size=0.1).size == pytest.approx(0.3)
        assert normalize_order_size(0.0299, step=0.001, min_size=0.001).size == pytest.approx(0.029)

    def test_below_minimum_rejected(self):
        with pytest.raises(OrderSizeError) as exc_info:
            normalize_order_size(4, step=1, min_size=5)
        assert exc_info.value.min_size == 5
        assert exc_info.value.requested == 4

    def test_rounds_to_zero_rejected(self):
        with pytest.raises(OrderSizeError):
            normalize_order_size(0.4, step=1, min_size=0)

    @pytest.mark.parametrize("bad", [0, -1, math.nan, math.inf, None, True])
    def test_invalid_input_rejected(self, bad):
        with pytest.raises(OrderSizeError):
            normalize_order_size(bad)

    def test_bad_step_defaults_to_one(self):
        assert normalize_order_size(3.7, step=0, min_size=1).size == 3

    def test_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            normalize_order_size(0.5)
