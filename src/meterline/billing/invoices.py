"""
Invoice Generator

Turns a closed period's overage into a local invoice. At most one invoice
exists per (tenant, resource type, period); the check, the usage read and the
insert share one transaction, and the table's unique constraint backs the
check up when two generators race.
"""

import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..config import Settings
from ..core.catalog import ResourceType
from ..core.overage import to_money
from ..core.period import utcnow
from ..errors import InvoiceAlreadyExists, InvoiceNotFound, NoOverage, TenantNotFound
from ..persistence.database import Database, DuplicateRowError, Transaction, get_database
from ..persistence.models import InvoiceStatus, OverageInvoice
from ..persistence.repository import (
    InvoiceRepository,
    MeteringStateRepository,
    TenantConfigRepository,
)
from .counter_store import Clock
from .ledger import UsageLedger
from .terms import resolve_terms

logger = structlog.get_logger()


def invoice_number(tenant_id: str, resource_type: ResourceType, period_end: date) -> str:
    """INV-YYYYMM-RESOURCE-TENANT, unique per tenant, resource and period.

    The month is taken from the period end, so March usage billed over
    [03-01, 04-01) is numbered 202604.
    """
    return f"INV-{period_end:%Y%m}-{resource_type.value.upper()}-{tenant_id.upper()}"


def invoice_amounts(units_over: int, rate: Decimal, tax_rate: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """(subtotal, tax, total), each rounded half-up to two places."""
    subtotal = to_money(Decimal(units_over) * rate)
    tax = to_money(subtotal * tax_rate / Decimal(100))
    return subtotal, tax, to_money(subtotal + tax)


@dataclass
class InvoicePage:
    invoices: List[OverageInvoice]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoices": [i.to_dict() for i in self.invoices],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "pages": self.pages,
        }


class InvoiceGenerator:
    """Creates and lists overage invoices."""

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db or get_database()
        self.settings = settings or Settings.from_env()
        self.clock = clock
        self.tenants = TenantConfigRepository(self.db)
        self.counters = MeteringStateRepository(self.db)
        self.invoices = InvoiceRepository(self.db)
        self.ledger = UsageLedger(self.db)

    def _units_used(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        period_start: date,
        period_end: date,
        tx: Transaction,
    ) -> int:
        snapshot = self.counters.get(tenant_id, resource_type.value, tx=tx)
        if snapshot is not None and snapshot.period_start == period_start:
            return snapshot.units_consumed
        # The counter has moved on (or never existed); the ledger still has the period
        return self.ledger.count_in_period(tenant_id, resource_type.value, period_start, period_end, tx=tx)

    def generate_invoice(
        self,
        tenant_id: str,
        resource_type: Any,
        period_start: date,
        period_end: date,
    ) -> OverageInvoice:
        """
        Create the overage invoice for one tenant, resource and period.

        Raises:
            TenantNotFound: no billing configuration
            InvoiceAlreadyExists: the period is already invoiced
            NoOverage: usage stayed within the limit
        """
        resource = ResourceType.parse(resource_type)
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")

        try:
            with self.db.transaction() as tx:
                config = self.tenants.get(tenant_id, tx=tx)
                if config is None:
                    raise TenantNotFound(tenant_id)

                if self.invoices.find_for_period(tenant_id, resource.value, period_start, period_end, tx=tx):
                    raise InvoiceAlreadyExists(tenant_id, resource.value, period_start, period_end)

                terms = resolve_terms(config, resource, self.settings)
                used = self._units_used(tenant_id, resource, period_start, period_end, tx)
                units_over = max(0, used - terms.limit)
                if units_over == 0:
                    raise NoOverage(tenant_id, resource.value)

                subtotal, tax, total = invoice_amounts(units_over, terms.overage_rate, terms.tax_rate)
                now = self.clock().isoformat()
                invoice = OverageInvoice(
                    invoice_id=str(uuid.uuid4()),
                    invoice_number=invoice_number(tenant_id, resource, period_end),
                    tenant_id=tenant_id,
                    resource_type=resource.value,
                    period_start=period_start,
                    period_end=period_end,
                    units_over_limit=units_over,
                    overage_rate=terms.overage_rate,
                    subtotal=subtotal,
                    tax_rate=terms.tax_rate,
                    tax_amount=tax,
                    total=total,
                    currency=terms.currency,
                    due_date=period_end + timedelta(days=self.settings.invoice_due_days),
                    status=InvoiceStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
                self.invoices.create(invoice, tx=tx)
        except DuplicateRowError:
            raise InvoiceAlreadyExists(tenant_id, resource.value, period_start, period_end)

        logger.info(
            "invoice_generated",
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            tenant_id=tenant_id,
            resource_type=resource.value,
            units_over_limit=units_over,
            total=str(total),
            currency=invoice.currency,
        )
        return invoice

    def list_invoices(self, tenant_id: str, page: int = 1, page_size: int = 20) -> InvoicePage:
        page = max(1, page)
        page_size = max(1, min(page_size, 100))
        invoices = self.invoices.list_for_tenant(tenant_id, limit=page_size, offset=(page - 1) * page_size)
        total = self.invoices.count_for_tenant(tenant_id)
        return InvoicePage(invoices=invoices, total=total, page=page, page_size=page_size)

    def get_invoice(self, tenant_id: str, invoice_id: str) -> OverageInvoice:
        """A tenant's invoice; other tenants' invoices are reported as missing."""
        invoice = self.invoices.get(invoice_id)
        if invoice is None or invoice.tenant_id != tenant_id:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def list_all_invoices(
        self,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[OverageInvoice]:
        parsed = InvoiceStatus(status) if status else None
        return self.invoices.list_all(status=parsed, limit=limit, offset=offset)
