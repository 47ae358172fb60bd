"""
Overage Calculator

Derives the usage view a tenant sees from a counter snapshot plus the
tenant's limit and rate. Money is always ``Decimal`` at two places, rounded
half-up; floats never touch an amount.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

CENT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")

MoneyLike = Union[Decimal, str, int]


def to_money(value: MoneyLike) -> Decimal:
    """Quantize an amount to two decimal places (half-up)."""
    if isinstance(value, float):
        raise TypeError("monetary amounts must not be floats")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a two-place amount to integer minor units (ore, cents)."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def percent_used(used: int, limit: int) -> int:
    if limit <= 0:
        return 0
    ratio = Decimal(used * 100) / Decimal(limit)
    return int(ratio.to_integral_value(rounding=ROUND_HALF_UP))


@dataclass
class UsageView:
    """What a tenant sees for one resource in the current period."""
    resource_type: str
    period_start: date
    limit: int
    used: int
    remaining: int
    overage_count: int
    overage_charge: Decimal
    overage_rate: Decimal
    percent_used: int
    active: bool = True
    currency: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "period_start": self.period_start.isoformat(),
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "overage_count": self.overage_count,
            "overage_charge": str(self.overage_charge),
            "overage_rate": str(self.overage_rate),
            "percent_used": self.percent_used,
            "active": self.active,
            "currency": self.currency,
        }


def compute(
    snapshot: Any,
    limit: int,
    rate: MoneyLike,
    active: bool = True,
    currency: Optional[str] = None,
) -> UsageView:
    """
    Build a UsageView.

    ``snapshot`` is any object exposing ``resource_type``, ``period_start``,
    ``units_consumed`` and ``accrued_overage_charge`` (a CounterSnapshot).
    """
    used = snapshot.units_consumed
    return UsageView(
        resource_type=snapshot.resource_type,
        period_start=snapshot.period_start,
        limit=limit,
        used=used,
        remaining=max(0, limit - used),
        overage_count=max(0, used - limit),
        overage_charge=to_money(snapshot.accrued_overage_charge),
        overage_rate=to_money(rate),
        percent_used=percent_used(used, limit),
        active=active,
        currency=currency,
    )


def overage_cost(new_total: int, limit: int, rate: MoneyLike) -> Decimal:
    """Charge for the unit that brought the counter to ``new_total``."""
    if new_total > limit:
        return to_money(rate)
    return ZERO_MONEY
