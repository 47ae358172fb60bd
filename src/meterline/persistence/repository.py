"""
Repository Layer for Meterline

CRUD for tenant billing configuration, metering counters, the usage ledger
and overage invoices.

Every method takes an optional ``tx``. Pass the Transaction from
``Database.transaction()`` to make the call part of a larger atomic
operation; leave it out and the statement runs in its own transaction.
"""

from typing import Any, List, Optional, Union
from datetime import date, datetime, timezone
from decimal import Decimal
import structlog

from .database import Database, Transaction, get_database
from .models import (
    CounterSnapshot,
    InvoiceStatus,
    OverageInvoice,
    TenantBillingConfig,
    UsageEvent,
)

logger = structlog.get_logger()

Runner = Union[Database, Transaction]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money_param(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


class _Repository:

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def _runner(self, tx: Optional[Transaction]) -> Runner:
        return tx if tx is not None else self.db


class TenantConfigRepository(_Repository):
    """Repository for tenant billing configuration."""

    def create(self, config: TenantBillingConfig, tx: Optional[Transaction] = None) -> TenantBillingConfig:
        """Create a tenant billing configuration."""
        self._runner(tx).update(
            """INSERT INTO tenant_billing_config
               (tenant_id, name, email, currency, tax_rate, email_monthly_limit,
                email_overage_rate, sms_package_size, sms_package_price,
                sms_package_active, sms_overage_rate, subscription_plan,
                remote_customer_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            config.to_db_tuple()
        )
        logger.info("tenant_config_created", tenant_id=config.tenant_id)
        return config

    def get(self, tenant_id: str, tx: Optional[Transaction] = None) -> Optional[TenantBillingConfig]:
        results = self._runner(tx).execute(
            "SELECT * FROM tenant_billing_config WHERE tenant_id = ?",
            (tenant_id,)
        )
        return TenantBillingConfig.from_row(results[0]) if results else None

    def list_all(self, tx: Optional[Transaction] = None) -> List[TenantBillingConfig]:
        results = self._runner(tx).execute(
            "SELECT * FROM tenant_billing_config ORDER BY tenant_id"
        )
        return [TenantBillingConfig.from_row(r) for r in results]

    def set_remote_customer_id(
        self, tenant_id: str, customer_id: str, tx: Optional[Transaction] = None
    ) -> None:
        self._runner(tx).update(
            "UPDATE tenant_billing_config SET remote_customer_id = ?, updated_at = ? WHERE tenant_id = ?",
            (customer_id, _now_iso(), tenant_id)
        )
        logger.info("remote_customer_linked", tenant_id=tenant_id, customer_id=customer_id)

    def set_sms_package(
        self,
        tenant_id: str,
        package_size: int,
        package_price: Decimal,
        tx: Optional[Transaction] = None,
    ) -> int:
        """Select an SMS package; a size of 0 deactivates SMS."""
        return self._runner(tx).update(
            """UPDATE tenant_billing_config
               SET sms_package_size = ?, sms_package_price = ?, sms_package_active = ?, updated_at = ?
               WHERE tenant_id = ?""",
            (package_size, str(package_price), package_size > 0, _now_iso(), tenant_id)
        )

    def set_email_plan(
        self,
        tenant_id: str,
        plan_name: str,
        monthly_limit: int,
        overage_rate: Decimal,
        tx: Optional[Transaction] = None,
    ) -> int:
        return self._runner(tx).update(
            """UPDATE tenant_billing_config
               SET subscription_plan = ?, email_monthly_limit = ?, email_overage_rate = ?, updated_at = ?
               WHERE tenant_id = ?""",
            (plan_name, monthly_limit, str(overage_rate), _now_iso(), tenant_id)
        )

    def update_limits(
        self,
        tenant_id: str,
        resource_type: str,
        limit: Optional[int] = None,
        overage_rate: Optional[Decimal] = None,
        package_price: Optional[Decimal] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        """Override limit, rate and (for SMS) package price. ``None`` keeps the stored value."""
        assignments: List[str] = []
        params: List[Any] = []
        if resource_type == "email":
            if limit is not None:
                assignments.append("email_monthly_limit = ?")
                params.append(limit)
            if overage_rate is not None:
                assignments.append("email_overage_rate = ?")
                params.append(str(overage_rate))
        else:
            if limit is not None:
                assignments.append("sms_package_size = ?")
                params.append(limit)
                assignments.append("sms_package_active = ?")
                params.append(limit > 0)
            if overage_rate is not None:
                assignments.append("sms_overage_rate = ?")
                params.append(str(overage_rate))
            if package_price is not None:
                assignments.append("sms_package_price = ?")
                params.append(str(package_price))

        assignments.append("updated_at = ?")
        params.append(_now_iso())
        params.append(tenant_id)
        count = self._runner(tx).update(
            f"UPDATE tenant_billing_config SET {', '.join(assignments)} WHERE tenant_id = ?",
            tuple(params)
        )
        logger.info("tenant_limits_updated", tenant_id=tenant_id, resource_type=resource_type, limit=limit)
        return count


class MeteringStateRepository(_Repository):
    """Repository for per-tenant, per-resource counters."""

    def ensure(
        self,
        tenant_id: str,
        resource_type: str,
        period_start: date,
        tx: Optional[Transaction] = None,
    ) -> None:
        """Insert a zeroed counter unless one already exists."""
        self._runner(tx).update(
            """INSERT INTO metering_counters
               (tenant_id, resource_type, units_consumed, accrued_overage_charge, period_start, updated_at)
               VALUES (?, ?, 0, '0.00', ?, ?)
               ON CONFLICT (tenant_id, resource_type) DO NOTHING""",
            (tenant_id, resource_type, period_start.isoformat(), _now_iso())
        )

    def get(
        self, tenant_id: str, resource_type: str, tx: Optional[Transaction] = None
    ) -> Optional[CounterSnapshot]:
        """Read a counter; inside a transaction on PostgreSQL the row stays locked until commit."""
        runner = self._runner(tx)
        results = runner.execute(
            "SELECT * FROM metering_counters WHERE tenant_id = ? AND resource_type = ?" + runner.for_update,
            (tenant_id, resource_type)
        )
        return CounterSnapshot.from_row(results[0]) if results else None

    def save(self, snapshot: CounterSnapshot, tx: Optional[Transaction] = None) -> None:
        snapshot.updated_at = _now_iso()
        self._runner(tx).update(
            """UPDATE metering_counters
               SET units_consumed = ?, accrued_overage_charge = ?, period_start = ?, updated_at = ?
               WHERE tenant_id = ? AND resource_type = ?""",
            (
                snapshot.units_consumed,
                str(snapshot.accrued_overage_charge),
                snapshot.period_start.isoformat(),
                snapshot.updated_at,
                snapshot.tenant_id,
                snapshot.resource_type,
            )
        )

    def reset_accrued(
        self,
        tenant_id: str,
        resource_type: str,
        period_start: date,
        tx: Optional[Transaction] = None,
    ) -> int:
        """Zero the accrued charge if the counter is still in ``period_start``'s period."""
        return self._runner(tx).update(
            """UPDATE metering_counters
               SET accrued_overage_charge = '0.00', updated_at = ?
               WHERE tenant_id = ? AND resource_type = ? AND period_start = ?""",
            (_now_iso(), tenant_id, resource_type, period_start.isoformat())
        )

    def list_for_resource(self, resource_type: str, tx: Optional[Transaction] = None) -> List[CounterSnapshot]:
        results = self._runner(tx).execute(
            "SELECT * FROM metering_counters WHERE resource_type = ? ORDER BY tenant_id",
            (resource_type,)
        )
        return [CounterSnapshot.from_row(r) for r in results]


class UsageEventRepository(_Repository):
    """Repository for the append-only usage ledger."""

    def append(self, event: UsageEvent, tx: Optional[Transaction] = None) -> UsageEvent:
        self._runner(tx).update(
            """INSERT INTO usage_events
               (event_id, tenant_id, resource_type, recipient, event_type,
                is_overage, incremental_cost, subject, provider, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            event.to_db_tuple()
        )
        logger.debug("usage_event_appended", event_id=event.event_id, tenant_id=event.tenant_id)
        return event

    def list_for_tenant(
        self,
        tenant_id: str,
        resource_type: str,
        limit: int = 50,
        offset: int = 0,
        tx: Optional[Transaction] = None,
    ) -> List[UsageEvent]:
        """Newest first."""
        results = self._runner(tx).execute(
            """SELECT * FROM usage_events WHERE tenant_id = ? AND resource_type = ?
               ORDER BY timestamp DESC LIMIT ? OFFSET ?""",
            (tenant_id, resource_type, limit, offset)
        )
        return [UsageEvent.from_row(r) for r in results]

    def count(self, tenant_id: str, resource_type: str, tx: Optional[Transaction] = None) -> int:
        results = self._runner(tx).execute(
            "SELECT COUNT(*) AS cnt FROM usage_events WHERE tenant_id = ? AND resource_type = ?",
            (tenant_id, resource_type)
        )
        return results[0]["cnt"] if results else 0

    def count_in_range(
        self,
        tenant_id: str,
        resource_type: str,
        start: datetime,
        end: datetime,
        tx: Optional[Transaction] = None,
    ) -> int:
        """Events with ``start <= timestamp < end``."""
        results = self._runner(tx).execute(
            """SELECT COUNT(*) AS cnt FROM usage_events
               WHERE tenant_id = ? AND resource_type = ? AND timestamp >= ? AND timestamp < ?""",
            (tenant_id, resource_type, start.isoformat(), end.isoformat())
        )
        return results[0]["cnt"] if results else 0


class InvoiceRepository(_Repository):
    """Repository for overage invoices."""

    def create(self, invoice: OverageInvoice, tx: Optional[Transaction] = None) -> OverageInvoice:
        """Insert an invoice; raises DuplicateRowError if the period is already invoiced."""
        self._runner(tx).update(
            """INSERT INTO overage_invoices
               (invoice_id, invoice_number, tenant_id, resource_type, period_start,
                period_end, units_over_limit, overage_rate, subtotal, tax_rate,
                tax_amount, total, currency, status, due_date, remote_invoice_id,
                remote_payment_intent_id, hosted_invoice_url, paid_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            invoice.to_db_tuple()
        )
        return invoice

    def get(self, invoice_id: str, tx: Optional[Transaction] = None) -> Optional[OverageInvoice]:
        runner = self._runner(tx)
        results = runner.execute(
            "SELECT * FROM overage_invoices WHERE invoice_id = ?" + runner.for_update,
            (invoice_id,)
        )
        return OverageInvoice.from_row(results[0]) if results else None

    def get_by_remote_id(
        self, remote_invoice_id: str, tx: Optional[Transaction] = None
    ) -> Optional[OverageInvoice]:
        runner = self._runner(tx)
        results = runner.execute(
            "SELECT * FROM overage_invoices WHERE remote_invoice_id = ?" + runner.for_update,
            (remote_invoice_id,)
        )
        return OverageInvoice.from_row(results[0]) if results else None

    def find_for_period(
        self,
        tenant_id: str,
        resource_type: str,
        period_start: date,
        period_end: date,
        tx: Optional[Transaction] = None,
    ) -> Optional[OverageInvoice]:
        results = self._runner(tx).execute(
            """SELECT * FROM overage_invoices
               WHERE tenant_id = ? AND resource_type = ? AND period_start = ? AND period_end = ?""",
            (tenant_id, resource_type, period_start.isoformat(), period_end.isoformat())
        )
        return OverageInvoice.from_row(results[0]) if results else None

    def list_for_tenant(
        self,
        tenant_id: str,
        limit: int = 20,
        offset: int = 0,
        tx: Optional[Transaction] = None,
    ) -> List[OverageInvoice]:
        """Newest first."""
        results = self._runner(tx).execute(
            """SELECT * FROM overage_invoices WHERE tenant_id = ?
               ORDER BY period_start DESC, created_at DESC LIMIT ? OFFSET ?""",
            (tenant_id, limit, offset)
        )
        return [OverageInvoice.from_row(r) for r in results]

    def count_for_tenant(self, tenant_id: str, tx: Optional[Transaction] = None) -> int:
        results = self._runner(tx).execute(
            "SELECT COUNT(*) AS cnt FROM overage_invoices WHERE tenant_id = ?",
            (tenant_id,)
        )
        return results[0]["cnt"] if results else 0

    def list_all(
        self,
        status: Optional[InvoiceStatus] = None,
        limit: int = 100,
        offset: int = 0,
        tx: Optional[Transaction] = None,
    ) -> List[OverageInvoice]:
        if status is not None:
            results = self._runner(tx).execute(
                "SELECT * FROM overage_invoices WHERE status = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (status.value, limit, offset)
            )
        else:
            results = self._runner(tx).execute(
                "SELECT * FROM overage_invoices ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (limit, offset)
            )
        return [OverageInvoice.from_row(r) for r in results]

    def transition(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        paid_at: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        """
        Move a pending invoice to ``status``.

        Returns the number of rows changed: 1 if this call made the
        transition, 0 if the invoice was no longer pending.
        """
        count = self._runner(tx).update(
            """UPDATE overage_invoices
               SET status = ?, paid_at = COALESCE(?, paid_at),
                   remote_payment_intent_id = COALESCE(?, remote_payment_intent_id), updated_at = ?
               WHERE invoice_id = ? AND status = 'pending'""",
            (status.value, paid_at, payment_intent_id, _now_iso(), invoice_id)
        )
        if count:
            logger.info("invoice_status_updated", invoice_id=invoice_id, status=status.value)
        return count

    def set_remote(
        self,
        invoice_id: str,
        remote_invoice_id: str,
        hosted_invoice_url: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        return self._runner(tx).update(
            """UPDATE overage_invoices
               SET remote_invoice_id = ?, hosted_invoice_url = ?, updated_at = ?
               WHERE invoice_id = ?""",
            (remote_invoice_id, hosted_invoice_url, _now_iso(), invoice_id)
        )
