"""
Meterline - Core Module

Pure building blocks with no I/O:
- Period Clock (calendar-month billing periods)
- Overage Calculator (usage view, money rounding)
- Resource / plan / package catalog
"""

from .period import current_period_start, period_bounds, previous_period
from .overage import UsageView, compute, to_money, to_minor_units, percent_used
from .catalog import ResourceType, EmailPlan, SmsPackage

__all__ = [
    "current_period_start",
    "period_bounds",
    "previous_period",
    "UsageView",
    "compute",
    "to_money",
    "to_minor_units",
    "percent_used",
    "ResourceType",
    "EmailPlan",
    "SmsPackage",
]
