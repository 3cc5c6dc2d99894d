# backend/lib/meter_core/estimator.py
from typing import Dict, Iterable
from decimal import Decimal, ROUND_HALF_UP
from .models import TopUp


class TariffEstimator:
    def __init__(self, rate_per_unit: float = 0.20):
        """
        rate_per_unit: price of one prepaid unit (kWh) in currency units
        """
        self.rate = float(rate_per_unit)

    @classmethod
    def from_top_ups(cls, top_ups: Iterable[TopUp], default_rate: float = 0.20) -> "TariffEstimator":
        """
        Effective rate paid so far: total cost / total units, over purchases
        that recorded a cost. Falls back to default_rate.
        """
        priced = [t for t in top_ups if t.cost is not None]
        units = sum(t.units_added for t in priced)
        if units <= 0:
            return cls(default_rate)
        return cls(sum(t.cost for t in priced) / units)

    def estimate_cost(self, usage_by_period: Dict[str, float]) -> float:
        """
        usage_by_period: dict like {'2025-11': 84.5, ...}
        returns total cost rounded to 2 decimals
        """
        total_units = sum(float(v) for v in usage_by_period.values())
        cost = total_units * self.rate
        # ROUND_HALF_UP, not the banker's rounding round() would apply
        return float(Decimal(str(cost)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))
