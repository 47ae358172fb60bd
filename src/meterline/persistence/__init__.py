"""
Meterline Persistence Layer

Provides database storage for:
- Tenant billing configuration
- Metering counters (one row per tenant and resource)
- Usage ledger (append-only)
- Overage invoices
"""

from .database import Database, DuplicateRowError, Transaction, get_database
from .models import (
    CounterSnapshot,
    InvoiceStatus,
    OverageInvoice,
    TenantBillingConfig,
    UsageEvent,
)
from .repository import (
    InvoiceRepository,
    MeteringStateRepository,
    TenantConfigRepository,
    UsageEventRepository,
)

__all__ = [
    "Database",
    "DuplicateRowError",
    "Transaction",
    "get_database",
    "CounterSnapshot",
    "InvoiceStatus",
    "OverageInvoice",
    "TenantBillingConfig",
    "UsageEvent",
    "InvoiceRepository",
    "MeteringStateRepository",
    "TenantConfigRepository",
    "UsageEventRepository",
]
