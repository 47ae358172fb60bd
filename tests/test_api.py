"""
Tests for FastAPI Endpoints

Integration tests for the metering API.
"""

from datetime import date

import pytest
from fastapi.testclient import TestClient

from conftest import TENANT_ID, set_counter, sign_payload, stripe_event
from meterline.api import server
from meterline.api.server import app


@pytest.fixture
def client(service):
    """Create test client bound to the test service."""
    server.configure(service)
    yield TestClient(app)
    server.app_state = None


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


@pytest.fixture
def tenant_headers(auth_headers, tenant):
    return {**auth_headers, "X-Tenant-ID": TENANT_ID}


class TestHealthEndpoint:

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "sqlite"
        assert data["stripe_configured"] is True


class TestAuth:

    def test_missing_api_key(self, client):
        response = client.get("/usage/email", headers={"X-Tenant-ID": TENANT_ID})

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = client.get("/usage/email", headers={"X-API-Key": "wrong-key", "X-Tenant-ID": TENANT_ID})

        assert response.status_code == 401

    def test_missing_tenant_header(self, client, auth_headers):
        response = client.get("/usage/email", headers=auth_headers)

        assert response.status_code == 422


class TestUsageEndpoints:

    def test_send_then_read_usage(self, client, tenant_headers):
        response = client.post(
            "/usage/email/send",
            json={"recipient": "a@example.com", "subject": "Welcome"},
            headers=tenant_headers,
        )
        assert response.status_code == 200
        assert response.json()["new_total"] == 1
        assert response.json()["incremental_cost"] == "0.00"

        usage = client.get("/usage/email", headers=tenant_headers).json()
        assert usage["used"] == 1
        assert usage["remaining"] == 499
        assert usage["overage_charge"] == "0.00"
        assert usage["period_start"] == "2026-03-01"

    def test_unknown_tenant(self, client, auth_headers):
        response = client.get("/usage/email", headers={**auth_headers, "X-Tenant-ID": "nobody"})

        assert response.status_code == 404
        assert response.json()["error"] == "tenant_not_found"

    def test_invalid_resource(self, client, tenant_headers):
        response = client.get("/usage/fax", headers=tenant_headers)

        assert response.status_code == 400

    def test_sms_without_package(self, client, tenant_headers):
        response = client.post("/usage/sms/send", json={"recipient": "+4712345678"}, headers=tenant_headers)

        assert response.status_code == 412
        assert response.json()["error"] == "resource_not_active"

    def test_sms_after_selecting_package(self, client, tenant_headers):
        selected = client.put("/sms/package", json={"package_size": 50}, headers=tenant_headers)
        assert selected.status_code == 200
        assert selected.json()["sms_package_active"] is True

        response = client.post("/usage/sms/send", json={"recipient": "+4712345678"}, headers=tenant_headers)
        assert response.status_code == 200
        assert response.json()["remaining"] == 49

    def test_unknown_package(self, client, tenant_headers):
        response = client.put("/sms/package", json={"package_size": 75}, headers=tenant_headers)

        assert response.status_code == 404

    def test_history(self, client, tenant_headers):
        for i in range(3):
            client.post("/usage/email/send", json={"recipient": f"u{i}@example.com"}, headers=tenant_headers)

        data = client.get("/usage/email/history?limit=2", headers=tenant_headers).json()

        assert data["total"] == 3
        assert len(data["events"]) == 2

    def test_catalogs(self, client, auth_headers):
        packages = client.get("/sms/packages", headers=auth_headers).json()["packages"]
        plans = client.get("/email/plans", headers=auth_headers).json()["plans"]

        assert packages[0] == {"package_size": 50, "display_name": "50 SMS", "monthly_price": "49.00", "price_per_sms": "0.98"}
        assert {p["name"] for p in plans} == {"basic", "professional", "enterprise"}


class TestInvoiceEndpoints:

    @pytest.fixture
    def overage(self, temp_db, tenant):
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))

    def generate(self, client, auth_headers):
        return client.post(
            "/admin/invoices/generate",
            json={
                "tenant_id": TENANT_ID,
                "resource_type": "email",
                "period_start": "2026-03-01",
                "period_end": "2026-04-01",
            },
            headers=auth_headers,
        )

    def test_generate_and_list(self, client, auth_headers, tenant_headers, overage):
        response = self.generate(client, auth_headers)
        assert response.status_code == 201
        invoice = response.json()
        assert invoice["total"] == "15.00"
        assert invoice["status"] == "pending"

        listing = client.get("/invoices", headers=tenant_headers).json()
        assert listing["total"] == 1
        assert listing["invoices"][0]["invoice_id"] == invoice["invoice_id"]

        single = client.get(f"/invoices/{invoice['invoice_id']}", headers=tenant_headers)
        assert single.status_code == 200

    def test_duplicate_generation_conflicts(self, client, auth_headers, overage):
        self.generate(client, auth_headers)

        response = self.generate(client, auth_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "invoice_already_exists"

    def test_no_overage(self, client, auth_headers, tenant):
        response = self.generate(client, auth_headers)

        assert response.status_code == 422
        assert response.json()["error"] == "no_overage"

    def test_mirror_invoice(self, client, auth_headers, tenant_headers, overage):
        invoice_id = self.generate(client, auth_headers).json()["invoice_id"]

        response = client.post(f"/invoices/{invoice_id}/remote", headers=tenant_headers)

        assert response.status_code == 200
        assert response.json()["remote_invoice_id"].startswith("in_")

    def test_cancel(self, client, auth_headers, overage):
        invoice_id = self.generate(client, auth_headers).json()["invoice_id"]

        first = client.post(f"/admin/invoices/{invoice_id}/cancel", headers=auth_headers)
        second = client.post(f"/admin/invoices/{invoice_id}/cancel", headers=auth_headers)

        assert first.json()["status"] == "cancelled"
        assert second.status_code == 412

    def test_admin_list_by_status(self, client, auth_headers, overage):
        self.generate(client, auth_headers)

        pending = client.get("/admin/invoices?status=pending", headers=auth_headers).json()
        paid = client.get("/admin/invoices?status=paid", headers=auth_headers).json()

        assert pending["count"] == 1
        assert paid["count"] == 0

    def test_close_period(self, client, auth_headers, overage):
        response = client.post(
            "/admin/billing/close-period",
            json={"as_of": "2026-04-01T03:00:00+00:00"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert len(response.json()["generated"]) == 1


class TestAdminTenantEndpoints:

    def test_register_and_override(self, client, auth_headers):
        created = client.post(
            "/admin/tenants",
            json={"tenant_id": "tenant-new", "name": "New AS", "currency": "EUR"},
            headers=auth_headers,
        )
        assert created.status_code == 201

        plan = client.put("/admin/tenants/tenant-new/plan", json={"plan": "enterprise"}, headers=auth_headers)
        assert plan.json()["email_monthly_limit"] == 10000

        limits = client.put(
            "/admin/tenants/tenant-new/limits/email",
            json={"limit": 12000, "overage_rate": "0.04"},
            headers=auth_headers,
        )
        assert limits.json()["email_monthly_limit"] == 12000
        assert limits.json()["email_overage_rate"] == "0.04"

        overview = client.get("/admin/usage/email", headers=auth_headers).json()
        assert overview["count"] == 1
        assert overview["tenants"][0]["limit"] == 12000
        assert overview["tenants"][0]["currency"] == "EUR"

    def test_register_existing_tenant_conflicts(self, client, auth_headers):
        body = {"tenant_id": "tenant-dup", "name": "Dup AS"}

        first = client.post("/admin/tenants", json=body, headers=auth_headers)
        second = client.post("/admin/tenants", json=body, headers=auth_headers)

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["error"] == "tenant_already_exists"

    def test_unknown_plan(self, client, auth_headers, tenant):
        response = client.put(f"/admin/tenants/{TENANT_ID}/plan", json={"plan": "gold"}, headers=auth_headers)

        assert response.status_code == 404


class TestStripeWebhook:

    def test_no_api_key_needed_but_signature_is(self, client):
        payload = stripe_event("invoice.payment_succeeded", "in_1")

        response = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": "t=1,v1=bad"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "webhook_signature_invalid"

    def test_unknown_invoice_acknowledged(self, client):
        payload = stripe_event("invoice.payment_succeeded", "in_unknown")

        response = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload)},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "invoice_not_found"

    def test_payment_marks_invoice_paid(self, client, service, auth_headers, tenant_headers, temp_db, tenant):
        set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))
        invoice = service.generate_invoice(TENANT_ID, "email", date(2026, 3, 1), date(2026, 4, 1))
        remote_id = service.mirror_invoice(invoice.invoice_id)
        payload = stripe_event("invoice.payment_succeeded", remote_id)

        for _ in range(2):
            response = client.post(
                "/webhooks/stripe",
                content=payload,
                headers={"Stripe-Signature": sign_payload(payload)},
            )
            assert response.status_code == 200

        assert response.json()["outcome"] == "already_final"
        stored = client.get(f"/invoices/{invoice.invoice_id}", headers=tenant_headers).json()
        assert stored["status"] == "paid"
        assert client.get("/usage/email", headers=tenant_headers).json()["overage_charge"] == "0.00"
