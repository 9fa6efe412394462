"""
interest_rate.py - Kinked utilization-based borrow rate

Pure, stateless model consumed by the pool on every accrual. Rates are
annualized basis points expressed as Decimal so accrual arithmetic stays
exact; utilization is a Decimal fraction in [0, 1].

    rate(u) = base + u * slope1 / optimal                       for u <= optimal
    rate(u) = base + slope1 + (u - optimal) * slope2 / (1 - optimal)   above
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Tuple

import numpy as np

from .core import BPS, ValidationError, to_decimal


ONE = Decimal("1")
ZERO = Decimal("0")


def calculate_utilization(total_borrowed: Decimal, total_deposits: Decimal) -> Decimal:
    """Borrowed over deposited; zero for an empty pool."""
    if total_deposits <= 0:
        return ZERO
    return to_decimal(total_borrowed) / to_decimal(total_deposits)


def _clamp(utilization: Decimal) -> Decimal:
    return min(ONE, max(ZERO, to_decimal(utilization)))


@dataclass(frozen=True, slots=True)
class InterestRateModel:
    """
    Piecewise-linear borrow rate with a kink at optimal utilization.

    Attributes:
        base_rate_bps: Rate at zero utilization
        slope1_bps: Rate increase from zero to optimal utilization
        slope2_bps: Rate increase from optimal to full utilization
        optimal_utilization_bps: Kink position, strictly between 0 and 10000

    Example:
        irm = InterestRateModel(200, 400, 6000, 8000)
        irm.borrow_rate(Decimal("0.8"))   # Decimal('600')
    """
    base_rate_bps: int = 200
    slope1_bps: int = 400
    slope2_bps: int = 6000
    optimal_utilization_bps: int = 8000

    def __post_init__(self):
        if not 0 < self.optimal_utilization_bps < BPS:
            raise ValidationError(
                f"optimal_utilization_bps must be in (0, {BPS}), got {self.optimal_utilization_bps}"
            )
        for name in ('base_rate_bps', 'slope1_bps', 'slope2_bps'):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must be non-negative, got {getattr(self, name)}")

    @property
    def optimal_utilization(self) -> Decimal:
        return Decimal(self.optimal_utilization_bps) / Decimal(BPS)

    def borrow_rate(self, utilization: Decimal) -> Decimal:
        """Annual borrow rate in bps for a utilization fraction (clamped to [0, 1])."""
        u = _clamp(utilization)
        optimal = self.optimal_utilization
        if u <= optimal:
            return Decimal(self.base_rate_bps) + u * Decimal(self.slope1_bps) / optimal
        excess = (u - optimal) / (ONE - optimal)
        return Decimal(self.base_rate_bps + self.slope1_bps) + excess * Decimal(self.slope2_bps)

    def supply_rate(self, utilization: Decimal, reserve_factor_bps: int = 0) -> Decimal:
        """
        Annual rate earned by depositors in bps.

        R_supply = R_borrow * U * (1 - reserve_factor)
        """
        u = _clamp(utilization)
        keep = ONE - Decimal(reserve_factor_bps) / Decimal(BPS)
        return self.borrow_rate(u) * u * keep

    def rate_curve(
        self, n_points: int = 101, reserve_factor_bps: int = 0
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Sample the curve for plotting or analysis.

        Returns:
            (utilization, borrow_bps, supply_bps) as float arrays of length n_points
        """
        if n_points < 2:
            raise ValidationError("rate_curve needs at least 2 points")
        utilizations = np.linspace(0.0, 1.0, n_points)
        borrow = np.array([float(self.borrow_rate(Decimal(str(u)))) for u in utilizations])
        supply = np.array([
            float(self.supply_rate(Decimal(str(u)), reserve_factor_bps)) for u in utilizations
        ])
        return utilizations, borrow, supply

    def to_dict(self) -> Dict[str, int]:
        return {
            'base_rate_bps': self.base_rate_bps,
            'slope1_bps': self.slope1_bps,
            'slope2_bps': self.slope2_bps,
            'optimal_utilization_bps': self.optimal_utilization_bps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InterestRateModel:
        return cls(
            base_rate_bps=int(data['base_rate_bps']),
            slope1_bps=int(data['slope1_bps']),
            slope2_bps=int(data['slope2_bps']),
            optimal_utilization_bps=int(data['optimal_utilization_bps']),
        )
