"""
Metered resources, email plans and SMS packages.

Email is quota-based (a monthly limit per plan); SMS is package-based and
only billable while a package is active.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class ResourceType(Enum):
    """Metered outbound resources."""
    EMAIL = "email"
    SMS = "sms"

    @classmethod
    def parse(cls, value: Any) -> "ResourceType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown resource type: {value}")


@dataclass(frozen=True)
class EmailPlan:
    name: str
    display_name: str
    monthly_limit: int
    overage_rate: Decimal
    monthly_price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "monthly_limit": self.monthly_limit,
            "overage_rate": str(self.overage_rate),
            "monthly_price": str(self.monthly_price),
        }


@dataclass(frozen=True)
class SmsPackage:
    package_size: int
    display_name: str
    monthly_price: Decimal
    price_per_sms: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_size": self.package_size,
            "display_name": self.display_name,
            "monthly_price": str(self.monthly_price),
            "price_per_sms": str(self.price_per_sms),
        }


EMAIL_PLANS: Dict[str, EmailPlan] = {
    "basic": EmailPlan("basic", "Basic", 500, Decimal("0.10"), Decimal("0.00")),
    "professional": EmailPlan("professional", "Professional", 2_000, Decimal("0.08"), Decimal("199.00")),
    "enterprise": EmailPlan("enterprise", "Enterprise", 10_000, Decimal("0.05"), Decimal("499.00")),
}

# Largest package is 500 messages; larger volumes run as overage
SMS_PACKAGES: Dict[int, SmsPackage] = {
    50: SmsPackage(50, "50 SMS", Decimal("49.00"), Decimal("0.98")),
    100: SmsPackage(100, "100 SMS", Decimal("89.00"), Decimal("0.89")),
    200: SmsPackage(200, "200 SMS", Decimal("159.00"), Decimal("0.80")),
    500: SmsPackage(500, "500 SMS", Decimal("349.00"), Decimal("0.70")),
}


def list_email_plans() -> List[EmailPlan]:
    return sorted(EMAIL_PLANS.values(), key=lambda p: p.monthly_limit)


def get_email_plan(name: str) -> Optional[EmailPlan]:
    return EMAIL_PLANS.get(name.lower())


def list_sms_packages() -> List[SmsPackage]:
    return [SMS_PACKAGES[size] for size in sorted(SMS_PACKAGES)]


def get_sms_package(package_size: int) -> Optional[SmsPackage]:
    return SMS_PACKAGES.get(package_size)
