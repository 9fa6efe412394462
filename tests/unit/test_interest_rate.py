"""
test_interest_rate.py - Unit tests for the kinked interest rate model

Tests:
- Construction-time validation
- Rate at zero, at the kink and at full utilization
- Continuity and monotonicity
- Supply rate and reserve factor
- Utilization of an empty pool
- rate_curve sampling (numpy)
- to_dict / from_dict
"""

import pytest
from decimal import Decimal

import numpy as np

from vaultledger import InterestRateModel, ValidationError, calculate_utilization


class TestConstruction:
    """Configuration is validated when the model is built."""

    def test_defaults(self):
        irm = InterestRateModel()
        assert irm.base_rate_bps == 200
        assert irm.optimal_utilization == Decimal("0.8")

    @pytest.mark.parametrize("optimal", [0, 10000, -1, 12000])
    def test_optimal_must_be_strictly_inside(self, optimal):
        with pytest.raises(ValidationError, match="optimal_utilization_bps"):
            InterestRateModel(200, 400, 6000, optimal)

    @pytest.mark.parametrize("field", ["base_rate_bps", "slope1_bps", "slope2_bps"])
    def test_negative_parameters_rejected(self, field):
        kwargs = {field: -1}
        with pytest.raises(ValidationError, match=field):
            InterestRateModel(**kwargs)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            InterestRateModel(optimal_utilization_bps=0)


class TestBorrowRate:
    """Piecewise-linear rate."""

    def test_zero_utilization_is_base(self):
        assert InterestRateModel(200, 400, 6000, 8000).borrow_rate(Decimal("0")) == Decimal("200")

    def test_rate_at_kink_is_base_plus_slope1(self):
        """80% utilization yields exactly base + slope1."""
        irm = InterestRateModel(200, 400, 6000, 8000)
        assert irm.borrow_rate(Decimal("0.8")) == Decimal("600")

    def test_rate_below_kink(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        assert irm.borrow_rate(Decimal("0.4")) == Decimal("400")

    def test_rate_above_kink(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        # 90% is halfway up the steep segment
        assert irm.borrow_rate(Decimal("0.9")) == Decimal("3600")

    def test_full_utilization(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        assert irm.borrow_rate(Decimal("1")) == Decimal("6600")

    def test_utilization_is_clamped(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        assert irm.borrow_rate(Decimal("1.5")) == irm.borrow_rate(Decimal("1"))
        assert irm.borrow_rate(Decimal("-0.5")) == irm.borrow_rate(Decimal("0"))

    def test_continuous_at_kink(self):
        irm = InterestRateModel(150, 350, 7500, 9000)
        eps = Decimal("1e-20")
        below = irm.borrow_rate(Decimal("0.9") - eps)
        above = irm.borrow_rate(Decimal("0.9") + eps)
        assert abs(above - below) < Decimal("1e-10")

    def test_monotonic_on_grid(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        rates = [irm.borrow_rate(Decimal(i) / Decimal(100)) for i in range(101)]
        assert all(a <= b for a, b in zip(rates, rates[1:]))

    def test_flat_model(self):
        irm = InterestRateModel(500, 0, 0, 5000)
        assert irm.borrow_rate(Decimal("0.1")) == irm.borrow_rate(Decimal("0.99")) == Decimal("500")


class TestSupplyRate:

    def test_supply_rate_without_reserve(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        # 600 bps * 0.8
        assert irm.supply_rate(Decimal("0.8")) == Decimal("480")

    def test_reserve_factor_reduces_supply_rate(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        assert irm.supply_rate(Decimal("0.8"), reserve_factor_bps=1000) == Decimal("432")

    def test_supply_rate_zero_when_idle(self):
        assert InterestRateModel().supply_rate(Decimal("0")) == Decimal("0")


class TestUtilization:

    def test_empty_pool(self):
        assert calculate_utilization(Decimal("0"), Decimal("0")) == Decimal("0")

    def test_ratio(self):
        assert calculate_utilization(Decimal("250"), Decimal("1000")) == Decimal("0.25")


class TestRateCurve:
    """numpy sampling of the curve."""

    def test_shapes(self):
        u, borrow, supply = InterestRateModel().rate_curve(n_points=11)
        assert u.shape == borrow.shape == supply.shape == (11,)
        assert u[0] == 0.0 and u[-1] == 1.0

    def test_curve_matches_point_rates(self):
        irm = InterestRateModel(200, 400, 6000, 8000)
        u, borrow, _ = irm.rate_curve(n_points=11)
        assert borrow[8] == pytest.approx(600.0)
        assert borrow[-1] == pytest.approx(6600.0)

    def test_curve_is_monotonic(self):
        _, borrow, _ = InterestRateModel(100, 700, 9000, 6500).rate_curve(n_points=257)
        assert np.all(np.diff(borrow) >= 0)

    def test_kink_visible_in_slope(self):
        u, borrow, _ = InterestRateModel(200, 400, 6000, 8000).rate_curve(n_points=101)
        slopes = np.diff(borrow) / np.diff(u)
        assert slopes[:79].max() < slopes[81:].min()

    def test_needs_two_points(self):
        with pytest.raises(ValidationError):
            InterestRateModel().rate_curve(n_points=1)


class TestSerialization:

    def test_round_trip(self):
        irm = InterestRateModel(123, 456, 7890, 7500)
        assert InterestRateModel.from_dict(irm.to_dict()) == irm

    def test_from_dict_validates(self):
        with pytest.raises(ValidationError):
            InterestRateModel.from_dict({
                'base_rate_bps': 0, 'slope1_bps': 0, 'slope2_bps': 0, 'optimal_utilization_bps': 0,
            })
