"""
Meterline Billing Module

- Usage Counter Store: per-tenant counters with period rollover
- Usage Ledger: append-only send events
- Invoice Generator: one overage invoice per tenant, resource and period
- Payment Bridge: Stripe mirroring and webhook verification
- Reconciliation Handler: idempotent invoice settlement
"""

from .counter_store import SendResult, UsageCounterStore
from .invoices import InvoiceGenerator, InvoicePage, invoice_amounts, invoice_number
from .ledger import UsageHistoryPage, UsageLedger
from .payment_bridge import PaymentBridge, PaymentEvent
from .reconciliation import ReconciliationHandler, ReconciliationResult
from .service import MeteringService
from .terms import BillingTerms, resolve_terms

__all__ = [
    "SendResult",
    "UsageCounterStore",
    "InvoiceGenerator",
    "InvoicePage",
    "invoice_amounts",
    "invoice_number",
    "UsageHistoryPage",
    "UsageLedger",
    "PaymentBridge",
    "PaymentEvent",
    "ReconciliationHandler",
    "ReconciliationResult",
    "MeteringService",
    "BillingTerms",
    "resolve_terms",
]
