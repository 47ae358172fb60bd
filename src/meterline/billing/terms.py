"""
Billing terms for a tenant and resource.

Tenant configuration may leave fields empty; the service-wide defaults fill
them in here so every caller sees the same limit, rate and currency.
"""

from dataclasses import dataclass
from decimal import Decimal

from ..config import Settings
from ..core.catalog import ResourceType
from ..core.overage import to_money
from ..persistence.models import TenantBillingConfig


@dataclass(frozen=True)
class BillingTerms:
    resource_type: ResourceType
    limit: int
    overage_rate: Decimal
    active: bool
    currency: str
    tax_rate: Decimal


def resolve_terms(
    config: TenantBillingConfig,
    resource_type: ResourceType,
    settings: Settings,
) -> BillingTerms:
    if resource_type is ResourceType.EMAIL:
        limit = config.email_monthly_limit
        if limit is None:
            limit = settings.default_email_limit
        rate = config.email_overage_rate
        if rate is None:
            rate = settings.default_email_overage_rate
    else:
        # SMS limit is the package size; no package means every message is overage
        limit = config.sms_package_size
        rate = config.sms_overage_rate
        if rate is None:
            rate = settings.default_sms_overage_rate

    tax_rate = config.tax_rate if config.tax_rate is not None else settings.default_tax_rate
    return BillingTerms(
        resource_type=resource_type,
        limit=limit,
        overage_rate=to_money(rate),
        active=config.is_active(resource_type),
        currency=(config.currency or settings.default_currency).upper(),
        tax_rate=to_money(tax_rate),
    )
