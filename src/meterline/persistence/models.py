"""
Data Models for Persistence Layer

Row <-> object mapping for tenant billing configuration, metering counters,
the usage ledger and overage invoices. SQLite hands back text for dates and
amounts while PostgreSQL hands back date/Decimal objects; ``from_row``
accepts both.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from ..core.catalog import ResourceType
from ..core.overage import ZERO_MONEY, to_money


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _as_money(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    return to_money(Decimal(str(value)))


class InvoiceStatus(Enum):
    """Lifecycle of an overage invoice. Only PENDING may change."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not InvoiceStatus.PENDING


@dataclass
class TenantBillingConfig:
    """
    Billing rules for a tenant.

    Empty fields fall back to service-wide defaults (see Settings).
    """
    tenant_id: str
    name: str
    email: Optional[str] = None
    currency: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    email_monthly_limit: Optional[int] = None
    email_overage_rate: Optional[Decimal] = None
    sms_package_size: int = 0
    sms_package_price: Decimal = ZERO_MONEY
    sms_package_active: bool = False
    sms_overage_rate: Optional[Decimal] = None
    subscription_plan: str = "basic"
    remote_customer_id: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def is_active(self, resource_type: ResourceType) -> bool:
        if resource_type is ResourceType.SMS:
            return self.sms_package_active and self.sms_package_size > 0
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "name": self.name,
            "email": self.email,
            "currency": self.currency,
            "tax_rate": str(self.tax_rate) if self.tax_rate is not None else None,
            "email_monthly_limit": self.email_monthly_limit,
            "email_overage_rate": str(self.email_overage_rate) if self.email_overage_rate is not None else None,
            "sms_package_size": self.sms_package_size,
            "sms_package_price": str(self.sms_package_price),
            "sms_package_active": self.sms_package_active,
            "sms_overage_rate": str(self.sms_overage_rate) if self.sms_overage_rate is not None else None,
            "subscription_plan": self.subscription_plan,
            "remote_customer_id": self.remote_customer_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.tenant_id,
            self.name,
            self.email,
            self.currency,
            str(self.tax_rate) if self.tax_rate is not None else None,
            self.email_monthly_limit,
            str(self.email_overage_rate) if self.email_overage_rate is not None else None,
            self.sms_package_size,
            str(self.sms_package_price),
            self.sms_package_active,
            str(self.sms_overage_rate) if self.sms_overage_rate is not None else None,
            self.subscription_plan,
            self.remote_customer_id,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TenantBillingConfig":
        return cls(
            tenant_id=row["tenant_id"],
            name=row["name"],
            email=row.get("email"),
            currency=row.get("currency"),
            tax_rate=_as_money(row.get("tax_rate")),
            email_monthly_limit=row.get("email_monthly_limit"),
            email_overage_rate=_as_money(row.get("email_overage_rate")),
            sms_package_size=row.get("sms_package_size") or 0,
            sms_package_price=_as_money(row.get("sms_package_price"), ZERO_MONEY),
            sms_package_active=bool(row.get("sms_package_active")),
            sms_overage_rate=_as_money(row.get("sms_overage_rate")),
            subscription_plan=row.get("subscription_plan") or "basic",
            remote_customer_id=row.get("remote_customer_id"),
            created_at=_as_iso(row["created_at"]),
            updated_at=_as_iso(row["updated_at"]),
        )


@dataclass
class CounterSnapshot:
    """Counters for one tenant and resource in one billing period."""
    tenant_id: str
    resource_type: str
    units_consumed: int
    accrued_overage_charge: Decimal
    period_start: date
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "resource_type": self.resource_type,
            "units_consumed": self.units_consumed,
            "accrued_overage_charge": str(self.accrued_overage_charge),
            "period_start": self.period_start.isoformat(),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CounterSnapshot":
        return cls(
            tenant_id=row["tenant_id"],
            resource_type=row["resource_type"],
            units_consumed=row["units_consumed"],
            accrued_overage_charge=_as_money(row["accrued_overage_charge"], ZERO_MONEY),
            period_start=_as_date(row["period_start"]),
            updated_at=_as_iso(row["updated_at"]),
        )


@dataclass
class UsageEvent:
    """One send attempt. Immutable once written."""
    event_id: str
    tenant_id: str
    resource_type: str
    recipient: str
    event_type: str
    is_overage: bool
    incremental_cost: Decimal
    timestamp: str = field(default_factory=_now_iso)
    subject: Optional[str] = None
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "tenant_id": self.tenant_id,
            "resource_type": self.resource_type,
            "recipient": self.recipient,
            "event_type": self.event_type,
            "is_overage": self.is_overage,
            "incremental_cost": str(self.incremental_cost),
            "timestamp": self.timestamp,
            "subject": self.subject,
            "provider": self.provider,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.event_id,
            self.tenant_id,
            self.resource_type,
            self.recipient,
            self.event_type,
            self.is_overage,
            str(self.incremental_cost),
            self.subject,
            self.provider,
            self.timestamp,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageEvent":
        return cls(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            resource_type=row["resource_type"],
            recipient=row["recipient"],
            event_type=row["event_type"],
            is_overage=bool(row["is_overage"]),
            incremental_cost=_as_money(row["incremental_cost"], ZERO_MONEY),
            timestamp=_as_iso(row["timestamp"]),
            subject=row.get("subject"),
            provider=row.get("provider"),
        )


@dataclass
class OverageInvoice:
    """A local overage invoice, mirrored to the payment provider."""
    invoice_id: str
    invoice_number: str
    tenant_id: str
    resource_type: str
    period_start: date
    period_end: date
    units_over_limit: int
    overage_rate: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    currency: str
    due_date: date
    status: InvoiceStatus = InvoiceStatus.PENDING
    remote_invoice_id: Optional[str] = None
    remote_payment_intent_id: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "tenant_id": self.tenant_id,
            "resource_type": self.resource_type,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "units_over_limit": self.units_over_limit,
            "overage_rate": str(self.overage_rate),
            "subtotal": str(self.subtotal),
            "tax_rate": str(self.tax_rate),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "currency": self.currency,
            "status": self.status.value,
            "due_date": self.due_date.isoformat(),
            "remote_invoice_id": self.remote_invoice_id,
            "remote_payment_intent_id": self.remote_payment_intent_id,
            "hosted_invoice_url": self.hosted_invoice_url,
            "paid_at": self.paid_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.invoice_id,
            self.invoice_number,
            self.tenant_id,
            self.resource_type,
            self.period_start.isoformat(),
            self.period_end.isoformat(),
            self.units_over_limit,
            str(self.overage_rate),
            str(self.subtotal),
            str(self.tax_rate),
            str(self.tax_amount),
            str(self.total),
            self.currency,
            self.status.value,
            self.due_date.isoformat(),
            self.remote_invoice_id,
            self.remote_payment_intent_id,
            self.hosted_invoice_url,
            self.paid_at,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OverageInvoice":
        return cls(
            invoice_id=row["invoice_id"],
            invoice_number=row["invoice_number"],
            tenant_id=row["tenant_id"],
            resource_type=row["resource_type"],
            period_start=_as_date(row["period_start"]),
            period_end=_as_date(row["period_end"]),
            units_over_limit=row["units_over_limit"],
            overage_rate=_as_money(row["overage_rate"]),
            subtotal=_as_money(row["subtotal"]),
            tax_rate=_as_money(row["tax_rate"]),
            tax_amount=_as_money(row["tax_amount"]),
            total=_as_money(row["total"]),
            currency=row["currency"],
            due_date=_as_date(row["due_date"]),
            status=InvoiceStatus(row["status"]),
            remote_invoice_id=row.get("remote_invoice_id"),
            remote_payment_intent_id=row.get("remote_payment_intent_id"),
            hosted_invoice_url=row.get("hosted_invoice_url"),
            paid_at=_as_iso(row.get("paid_at")),
            created_at=_as_iso(row["created_at"]),
            updated_at=_as_iso(row["updated_at"]),
        )
