"""
Metering Service

The single entry point the API and CLI talk to. Wires the counter store,
ledger, invoice generator, payment bridge and reconciliation handler to one
database and one set of settings, and adds the plan/package management and
period-close operations built on top of them.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from ..config import Settings
from ..core.catalog import (
    EmailPlan,
    ResourceType,
    SmsPackage,
    get_email_plan,
    get_sms_package,
    list_email_plans,
    list_sms_packages,
)
from ..core.overage import ZERO_MONEY, UsageView, compute, to_money
from ..core.period import previous_period, utcnow
from ..errors import (
    InvoiceAlreadyExists,
    MeteringError,
    NoOverage,
    PackageNotFound,
    PlanNotFound,
    TenantAlreadyExists,
    TenantNotFound,
)
from ..persistence.database import Database, DuplicateRowError, get_database
from ..persistence.models import OverageInvoice, TenantBillingConfig
from ..persistence.repository import TenantConfigRepository
from .counter_store import Clock, SendResult, UsageCounterStore
from .invoices import InvoiceGenerator, InvoicePage
from .ledger import UsageHistoryPage, UsageLedger
from .payment_bridge import PaymentBridge
from .reconciliation import ReconciliationHandler, ReconciliationResult

logger = structlog.get_logger()


class MeteringService:
    """
    Usage metering and overage billing for all tenants.

    Args:
        db: Database to use (defaults to one built from ``settings``)
        settings: Runtime configuration (defaults to the environment)
        stripe_client: Stripe resource namespace; defaults to the SDK
        clock: Returns "now"
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        stripe_client: Any = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or Settings.from_env()
        self.db = db or get_database(self.settings.database_url)
        self.clock = clock

        self.tenants = TenantConfigRepository(self.db)
        self.counters = UsageCounterStore(self.db, self.settings, clock)
        self.ledger = UsageLedger(self.db)
        self.invoices = InvoiceGenerator(self.db, self.settings, clock)
        self.payments = PaymentBridge(self.db, self.settings, client=stripe_client, clock=clock)
        self.reconciliation = ReconciliationHandler(self.db, clock)

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def register_tenant(self, tenant_id: str, name: str, email: Optional[str] = None, **fields: Any) -> TenantBillingConfig:
        """Create a tenant's billing configuration. Unset fields use the service defaults."""
        config = TenantBillingConfig(tenant_id=tenant_id, name=name, email=email, **fields)
        try:
            return self.tenants.create(config)
        except DuplicateRowError:
            raise TenantAlreadyExists(tenant_id)

    def get_tenant(self, tenant_id: str) -> TenantBillingConfig:
        config = self.tenants.get(tenant_id)
        if config is None:
            raise TenantNotFound(tenant_id)
        return config

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def get_usage(self, tenant_id: str, resource_type: Any) -> UsageView:
        """Current-period usage; an inactive SMS resource reports ``active=False``."""
        snapshot, terms = self.counters.snapshot_with_terms(tenant_id, resource_type)
        return compute(
            snapshot,
            terms.limit,
            terms.overage_rate,
            active=terms.active,
            currency=terms.currency,
        )

    def record_send(
        self,
        tenant_id: str,
        resource_type: Any,
        recipient: str,
        event_type: str = "sent",
        subject: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> SendResult:
        return self.counters.record_send(
            tenant_id,
            resource_type,
            recipient,
            event_type=event_type,
            subject=subject,
            provider=provider,
        )

    def usage_history(
        self,
        tenant_id: str,
        resource_type: Any,
        limit: int = 50,
        offset: int = 0,
    ) -> UsageHistoryPage:
        resource = ResourceType.parse(resource_type)
        self.get_tenant(tenant_id)
        return self.ledger.history(tenant_id, resource.value, limit=max(1, min(limit, 500)), offset=max(0, offset))

    def all_tenants_usage(self, resource_type: Any) -> List[Dict[str, Any]]:
        """Usage for every configured tenant (admin overview)."""
        resource = ResourceType.parse(resource_type)
        overview = []
        for config in self.tenants.list_all():
            view = self.get_usage(config.tenant_id, resource)
            overview.append({"tenant_id": config.tenant_id, "name": config.name, **view.to_dict()})
        return overview

    # ------------------------------------------------------------------
    # Plans and packages
    # ------------------------------------------------------------------

    def list_sms_packages(self) -> List[SmsPackage]:
        return list_sms_packages()

    def list_email_plans(self) -> List[EmailPlan]:
        return list_email_plans()

    def select_sms_package(self, tenant_id: str, package_size: int) -> TenantBillingConfig:
        """Switch a tenant's SMS package; size 0 turns SMS off."""
        if package_size == 0:
            price = ZERO_MONEY
        else:
            package = get_sms_package(package_size)
            if package is None:
                raise PackageNotFound(package_size)
            price = package.monthly_price

        if not self.tenants.set_sms_package(tenant_id, package_size, price):
            raise TenantNotFound(tenant_id)
        logger.info("sms_package_selected", tenant_id=tenant_id, package_size=package_size)
        return self.get_tenant(tenant_id)

    def change_email_plan(self, tenant_id: str, plan_name: str) -> TenantBillingConfig:
        plan = get_email_plan(plan_name)
        if plan is None:
            raise PlanNotFound(plan_name)
        if not self.tenants.set_email_plan(tenant_id, plan.name, plan.monthly_limit, plan.overage_rate):
            raise TenantNotFound(tenant_id)
        logger.info("email_plan_changed", tenant_id=tenant_id, plan=plan.name)
        return self.get_tenant(tenant_id)

    def update_custom_limits(
        self,
        tenant_id: str,
        resource_type: Any,
        limit: Optional[int] = None,
        overage_rate: Optional[Any] = None,
        package_price: Optional[Any] = None,
    ) -> TenantBillingConfig:
        """Admin override of a tenant's limit (SMS: package size), rate and package price."""
        resource = ResourceType.parse(resource_type)
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        rate = to_money(overage_rate) if overage_rate is not None else None
        price = to_money(package_price) if package_price is not None else None
        for amount in (rate, price):
            if amount is not None and amount < Decimal("0"):
                raise ValueError("amounts must be >= 0")

        if not self.tenants.update_limits(
            tenant_id,
            resource.value,
            limit=limit,
            overage_rate=rate,
            package_price=price,
        ):
            raise TenantNotFound(tenant_id)
        return self.get_tenant(tenant_id)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def generate_invoice(
        self,
        tenant_id: str,
        resource_type: Any,
        period_start: date,
        period_end: date,
    ) -> OverageInvoice:
        return self.invoices.generate_invoice(tenant_id, resource_type, period_start, period_end)

    def list_invoices(self, tenant_id: str, page: int = 1, page_size: int = 20) -> InvoicePage:
        return self.invoices.list_invoices(tenant_id, page=page, page_size=page_size)

    def get_invoice(self, tenant_id: str, invoice_id: str) -> OverageInvoice:
        return self.invoices.get_invoice(tenant_id, invoice_id)

    def list_all_invoices(self, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[OverageInvoice]:
        return self.invoices.list_all_invoices(status=status, limit=limit, offset=offset)

    def mirror_invoice(self, invoice_id: str) -> str:
        return self.payments.mirror_invoice(invoice_id)

    def cancel_invoice(self, invoice_id: str) -> OverageInvoice:
        return self.reconciliation.cancel_invoice(invoice_id)

    def close_period(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Bill the previous calendar month for every tenant and resource.

        New invoices are mirrored to Stripe when it is configured. Failures
        are collected per tenant rather than raised, so one bad tenant does
        not stop the run.
        """
        period_start, period_end = previous_period(now or self.clock())
        results: Dict[str, Any] = {
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "generated": [],
            "skipped": [],
            "errors": [],
        }

        for config in self.tenants.list_all():
            for resource in ResourceType:
                entry = {"tenant_id": config.tenant_id, "resource_type": resource.value}
                try:
                    invoice = self.invoices.generate_invoice(config.tenant_id, resource, period_start, period_end)
                except (NoOverage, InvoiceAlreadyExists) as e:
                    results["skipped"].append({**entry, "reason": e.code})
                    continue
                except MeteringError as e:
                    results["errors"].append({**entry, "stage": "generate", **e.to_dict()})
                    continue

                generated = {**entry, "invoice_id": invoice.invoice_id, "total": str(invoice.total)}
                if self.payments.is_available:
                    try:
                        generated["remote_invoice_id"] = self.payments.mirror_invoice(invoice.invoice_id)
                    except MeteringError as e:
                        results["errors"].append({**entry, "stage": "mirror", **e.to_dict()})
                results["generated"].append(generated)

        logger.info(
            "billing_period_closed",
            period_start=results["period_start"],
            generated=len(results["generated"]),
            skipped=len(results["skipped"]),
            errors=len(results["errors"]),
        )
        return results

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def handle_payment_event(
        self,
        remote_invoice_id: str,
        status: Any,
        paid_at: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> ReconciliationResult:
        return self.reconciliation.handle_payment_event(
            remote_invoice_id,
            status,
            paid_at=paid_at,
            payment_intent_id=payment_intent_id,
        )

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify a Stripe webhook, then reconcile the invoice it refers to."""
        event = self.payments.verify_webhook(payload, signature)
        if event is None:
            return {"received": True, "handled": False}
        result = self.handle_payment_event(
            event.remote_invoice_id,
            event.status,
            paid_at=event.paid_at,
            payment_intent_id=event.payment_intent_id,
        )
        return {"received": True, "handled": True, "event_id": event.event_id, **result.to_dict()}
