"""
Reconciliation Handler

Applies payment notifications to local invoices. Stripe may deliver an event
more than once and in any order, so every transition is a conditional update
on ``status = 'pending'``: the first delivery moves the invoice, later ones
change nothing and are acknowledged.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import structlog

from ..core.period import utcnow
from ..errors import InvoiceNotFound, InvoiceNotPending
from ..persistence.database import Database, get_database
from ..persistence.models import InvoiceStatus, OverageInvoice
from ..persistence.repository import InvoiceRepository, MeteringStateRepository
from .counter_store import Clock

logger = structlog.get_logger()

APPLIED = "applied"
ALREADY_FINAL = "already_final"
INVOICE_NOT_FOUND = "invoice_not_found"


@dataclass
class ReconciliationResult:
    """What a payment notification did. Always safe to acknowledge."""
    outcome: str
    remote_invoice_id: str
    invoice_id: Optional[str] = None
    status: Optional[str] = None
    counter_reset: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "remote_invoice_id": self.remote_invoice_id,
            "invoice_id": self.invoice_id,
            "status": self.status,
            "counter_reset": self.counter_reset,
        }


class ReconciliationHandler:
    """Moves invoices out of ``pending`` exactly once."""

    def __init__(self, db: Optional[Database] = None, clock: Clock = utcnow):
        self.db = db or get_database()
        self.clock = clock
        self.invoices = InvoiceRepository(self.db)
        self.counters = MeteringStateRepository(self.db)

    def handle_payment_event(
        self,
        remote_invoice_id: str,
        status: Union[InvoiceStatus, str],
        paid_at: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Apply a paid or failed notification for a Stripe invoice.

        A paid invoice also clears the tenant's accrued overage for the billed
        period, in the same transaction as the status change. Unknown invoices
        and invoices that already left ``pending`` are logged and acknowledged.
        """
        status = InvoiceStatus(status)
        if status not in (InvoiceStatus.PAID, InvoiceStatus.FAILED):
            raise ValueError(f"Payment events settle invoices as paid or failed, not {status.value}")
        if status is InvoiceStatus.PAID and paid_at is None:
            paid_at = self.clock().isoformat()

        with self.db.transaction() as tx:
            invoice = self.invoices.get_by_remote_id(remote_invoice_id, tx=tx)
            if invoice is None:
                logger.warning("invoice_not_found", remote_invoice_id=remote_invoice_id, status=status.value)
                return ReconciliationResult(outcome=INVOICE_NOT_FOUND, remote_invoice_id=remote_invoice_id)

            changed = self.invoices.transition(
                invoice.invoice_id,
                status,
                paid_at=paid_at if status is InvoiceStatus.PAID else None,
                payment_intent_id=payment_intent_id,
                tx=tx,
            )
            if not changed:
                logger.info(
                    "payment_event_ignored",
                    invoice_id=invoice.invoice_id,
                    current_status=invoice.status.value,
                    event_status=status.value,
                )
                return ReconciliationResult(
                    outcome=ALREADY_FINAL,
                    remote_invoice_id=remote_invoice_id,
                    invoice_id=invoice.invoice_id,
                    status=invoice.status.value,
                )

            counter_reset = False
            if status is InvoiceStatus.PAID:
                # Only the billed period's accrual is settled; a newer period's is still owed
                counter_reset = self.counters.reset_accrued(
                    invoice.tenant_id, invoice.resource_type, invoice.period_start, tx=tx
                ) > 0

        logger.info(
            "payment_event_applied",
            invoice_id=invoice.invoice_id,
            tenant_id=invoice.tenant_id,
            status=status.value,
            counter_reset=counter_reset,
        )
        return ReconciliationResult(
            outcome=APPLIED,
            remote_invoice_id=remote_invoice_id,
            invoice_id=invoice.invoice_id,
            status=status.value,
            counter_reset=counter_reset,
        )

    def cancel_invoice(self, invoice_id: str) -> OverageInvoice:
        """Cancel a pending invoice."""
        with self.db.transaction() as tx:
            invoice = self.invoices.get(invoice_id, tx=tx)
            if invoice is None:
                raise InvoiceNotFound(invoice_id)
            if not self.invoices.transition(invoice_id, InvoiceStatus.CANCELLED, tx=tx):
                raise InvoiceNotPending(invoice_id, invoice.status.value)
            invoice = self.invoices.get(invoice_id, tx=tx)

        logger.info("invoice_cancelled", invoice_id=invoice_id, tenant_id=invoice.tenant_id)
        return invoice
