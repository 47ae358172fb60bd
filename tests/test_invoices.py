"""
Tests for the Invoice Generator
"""

import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from conftest import TENANT_ID, set_counter
from meterline.errors import InvoiceAlreadyExists, InvoiceNotFound, NoOverage, TenantNotFound
from meterline.persistence.models import InvoiceStatus


def invoice_count(db):
    return db.execute("SELECT COUNT(*) AS cnt FROM overage_invoices")[0]["cnt"]


class TestGenerateInvoice:

    def test_reference_invoice(self, service, tenant, temp_db, march):
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))

        invoice = service.generate_invoice(TENANT_ID, "email", *march)

        assert invoice.units_over_limit == 120
        assert invoice.overage_rate == Decimal("0.10")
        assert invoice.subtotal == Decimal("12.00")
        assert invoice.tax_rate == Decimal("25.00")
        assert invoice.tax_amount == Decimal("3.00")
        assert invoice.total == Decimal("15.00")
        assert invoice.currency == "NOK"
        assert invoice.status is InvoiceStatus.PENDING
        assert invoice.invoice_number == "INV-202604-EMAIL-TENANT-A"
        assert invoice.due_date == date(2026, 5, 1)

    def test_invoice_is_persisted(self, service, tenant, temp_db, march):
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))

        created = service.generate_invoice(TENANT_ID, "email", *march)
        loaded = service.get_invoice(TENANT_ID, created.invoice_id)

        assert loaded.total == Decimal("15.00")
        assert loaded.period_start == date(2026, 3, 1)
        assert loaded.period_end == date(2026, 4, 1)

    def test_duplicate_period_conflicts(self, service, tenant, temp_db, march):
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))
        service.generate_invoice(TENANT_ID, "email", *march)

        with pytest.raises(InvoiceAlreadyExists):
            service.generate_invoice(TENANT_ID, "email", *march)

        assert invoice_count(temp_db) == 1

    def test_concurrent_generation_creates_one_invoice(self, service, tenant, temp_db, march):
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))
        outcomes = []

        def worker():
            try:
                service.generate_invoice(TENANT_ID, "email", *march)
                outcomes.append("created")
            except InvoiceAlreadyExists:
                outcomes.append("conflict")

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("created") == 1
        assert outcomes.count("conflict") == 4
        assert invoice_count(temp_db) == 1

    def test_within_limit_is_not_billed(self, service, tenant, march):
        service.record_send(TENANT_ID, "email", "a@example.com")

        with pytest.raises(NoOverage):
            service.generate_invoice(TENANT_ID, "email", *march)

    def test_exactly_at_limit_is_not_billed(self, service, tenant, temp_db, march):
        set_counter(temp_db, TENANT_ID, "email", 500, "0.00", date(2026, 3, 1))

        with pytest.raises(NoOverage):
            service.generate_invoice(TENANT_ID, "email", *march)

    def test_unknown_tenant(self, service, march):
        with pytest.raises(TenantNotFound):
            service.generate_invoice("nobody", "email", *march)

    def test_counts_ledger_after_rollover(self, service, tenant, clock, march):
        """Once the counter has moved on, the billed month is counted from the ledger."""
        service.update_custom_limits(TENANT_ID, "email", limit=2)
        for i in range(5):
            service.record_send(TENANT_ID, "email", f"user{i}@example.com")

        clock.now = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)
        service.record_send(TENANT_ID, "email", "april@example.com")

        invoice = service.generate_invoice(TENANT_ID, "email", *march)

        assert invoice.units_over_limit == 3
        assert invoice.subtotal == Decimal("0.30")
        assert invoice.tax_amount == Decimal("0.08")
        assert invoice.total == Decimal("0.38")

    def test_tenant_terms_override_defaults(self, service, temp_db, march):
        service.register_tenant(
            "tenant-se", "Svensk AB",
            currency="sek", tax_rate=Decimal("12.00"), email_monthly_limit=100,
            email_overage_rate=Decimal("0.25"),
        )
        set_counter(temp_db, "tenant-se", "email", 110, "2.50", date(2026, 3, 1))

        invoice = service.generate_invoice("tenant-se", "email", *march)

        assert invoice.currency == "SEK"
        assert invoice.subtotal == Decimal("2.50")
        assert invoice.tax_amount == Decimal("0.30")
        assert invoice.total == Decimal("2.80")


class TestListInvoices:

    def test_paginates_newest_first(self, service, tenant, temp_db):
        for month in (1, 2, 3):
            start = date(2026, month, 1)
            end = date(2026, month + 1, 1)
            set_counter(temp_db, TENANT_ID, "email", 510, "1.00", start)
            service.generate_invoice(TENANT_ID, "email", start, end)

        page = service.list_invoices(TENANT_ID, page=1, page_size=2)

        assert page.total == 3
        assert page.pages == 2
        assert [i.period_start.month for i in page.invoices] == [3, 2]
        assert len(service.list_invoices(TENANT_ID, page=2, page_size=2).invoices) == 1

    def test_other_tenants_invoice_is_hidden(self, service, tenant, temp_db, march):
        service.register_tenant("tenant-b", "Other AS")
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))
        invoice = service.generate_invoice(TENANT_ID, "email", *march)

        with pytest.raises(InvoiceNotFound):
            service.get_invoice("tenant-b", invoice.invoice_id)

    def test_admin_filter_by_status(self, service, tenant, temp_db, march):
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))
        invoice = service.generate_invoice(TENANT_ID, "email", *march)

        assert [i.invoice_id for i in service.list_all_invoices(status="pending")] == [invoice.invoice_id]
        assert service.list_all_invoices(status="paid") == []
