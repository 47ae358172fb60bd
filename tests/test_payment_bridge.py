"""
Tests for the Stripe Payment Bridge

Outbound calls go to a recording fake; inbound webhooks are verified by the
real Stripe SDK against locally signed payloads.
"""

import time
from datetime import date, datetime, timezone

import pytest

from conftest import TENANT_ID, WEBHOOK_SECRET, set_counter, sign_payload, stripe_event
from meterline.billing.payment_bridge import PaymentBridge
from meterline.billing.reconciliation import APPLIED
from meterline.errors import InvoiceNotPending, PaymentProviderError, WebhookSignatureError
from meterline.persistence.models import InvoiceStatus


@pytest.fixture
def invoice(service, tenant, temp_db, march):
    set_counter(temp_db, TENANT_ID, "email", 620, "12.00", date(2026, 3, 1))
    return service.generate_invoice(TENANT_ID, "email", *march)


class TestMirrorInvoice:

    def test_creates_finalizes_and_sends(self, service, invoice, fake_stripe):
        remote_id = service.mirror_invoice(invoice.invoice_id)

        assert [c[0] for c in fake_stripe.calls] == [
            "Customer.create",
            "Invoice.create",
            "InvoiceItem.create",
            "Invoice.finalize_invoice",
            "Invoice.send_invoice",
        ]
        _, _, item = fake_stripe.called("InvoiceItem.create")[0]
        assert item["amount"] == 1500
        assert item["currency"] == "nok"
        assert item["invoice"] == remote_id
        assert item["description"] == "120 email units over limit @ 0.10 NOK each"

        _, _, created = fake_stripe.called("Invoice.create")[0]
        assert created["collection_method"] == "send_invoice"
        assert created["metadata"]["invoice_id"] == invoice.invoice_id

    def test_remote_ids_are_stored(self, service, invoice):
        remote_id = service.mirror_invoice(invoice.invoice_id)

        stored = service.get_invoice(TENANT_ID, invoice.invoice_id)
        assert stored.remote_invoice_id == remote_id
        assert stored.hosted_invoice_url.endswith(remote_id)
        assert service.get_tenant(TENANT_ID).remote_customer_id.startswith("cus_")

    def test_idempotency_keys_derive_from_invoice_number(self, service, invoice, fake_stripe):
        service.mirror_invoice(invoice.invoice_id)

        keys = [kwargs["idempotency_key"] for name, _, kwargs in fake_stripe.calls if name != "Customer.create"]
        assert all(invoice.invoice_number in key for key in keys)
        assert len(set(keys)) == len(keys)

    def test_second_mirror_is_a_no_op(self, service, invoice, fake_stripe):
        first = service.mirror_invoice(invoice.invoice_id)
        calls = len(fake_stripe.calls)

        assert service.mirror_invoice(invoice.invoice_id) == first
        assert len(fake_stripe.calls) == calls

    def test_existing_customer_is_reused(self, service, invoice, fake_stripe, temp_db):
        service.tenants.set_remote_customer_id(TENANT_ID, "cus_existing")

        service.mirror_invoice(invoice.invoice_id)

        assert fake_stripe.called("Customer.create") == []
        assert fake_stripe.called("Invoice.create")[0][2]["customer"] == "cus_existing"

    def test_non_pending_invoice_rejected(self, service, invoice, fake_stripe):
        service.cancel_invoice(invoice.invoice_id)

        with pytest.raises(InvoiceNotPending):
            service.mirror_invoice(invoice.invoice_id)
        assert fake_stripe.calls == []

    def test_provider_failure_leaves_invoice_pending(self, service, invoice, fake_stripe):
        fake_stripe.fail_on.add("Invoice.create")

        with pytest.raises(PaymentProviderError) as exc_info:
            service.mirror_invoice(invoice.invoice_id)

        assert exc_info.value.retryable is True
        stored = service.get_invoice(TENANT_ID, invoice.invoice_id)
        assert stored.status is InvoiceStatus.PENDING
        assert stored.remote_invoice_id is None

    def test_retry_after_failure_succeeds(self, service, invoice, fake_stripe):
        fake_stripe.fail_on.add("Invoice.finalize_invoice")
        with pytest.raises(PaymentProviderError):
            service.mirror_invoice(invoice.invoice_id)

        fake_stripe.fail_on.clear()
        remote_id = service.mirror_invoice(invoice.invoice_id)

        assert service.get_invoice(TENANT_ID, invoice.invoice_id).remote_invoice_id == remote_id
        # Customer was persisted by the first attempt
        assert len(fake_stripe.called("Customer.create")) == 1
        assert len(fake_stripe.called("Invoice.create")) == 1

    def test_draft_id_is_stored_before_finalizing(self, service, invoice, fake_stripe):
        fake_stripe.fail_on.add("Invoice.send_invoice")
        with pytest.raises(PaymentProviderError):
            service.mirror_invoice(invoice.invoice_id)

        stored = service.get_invoice(TENANT_ID, invoice.invoice_id)
        draft_id = stored.remote_invoice_id
        assert draft_id.startswith("in_")
        assert stored.hosted_invoice_url is None

        # Stripe may settle the invoice at finalize, before the send ever succeeds
        result = service.handle_payment_event(draft_id, "paid")

        assert result.outcome == APPLIED
        assert service.get_invoice(TENANT_ID, invoice.invoice_id).status is InvoiceStatus.PAID

    def test_retry_resumes_unsent_draft(self, service, invoice, fake_stripe):
        fake_stripe.fail_on.add("Invoice.send_invoice")
        with pytest.raises(PaymentProviderError):
            service.mirror_invoice(invoice.invoice_id)
        draft_id = service.get_invoice(TENANT_ID, invoice.invoice_id).remote_invoice_id

        fake_stripe.fail_on.clear()
        remote_id = service.mirror_invoice(invoice.invoice_id)

        assert remote_id == draft_id
        assert len(fake_stripe.called("Invoice.create")) == 1
        assert [c[1][0] for c in fake_stripe.called("Invoice.send_invoice")] == [draft_id, draft_id]
        assert service.get_invoice(TENANT_ID, invoice.invoice_id).hosted_invoice_url.endswith(draft_id)


class TestVerifyWebhook:

    def test_payment_succeeded(self, service):
        paid_at = int(datetime(2026, 4, 3, 10, 0, tzinfo=timezone.utc).timestamp())
        payload = stripe_event("invoice.payment_succeeded", "in_123", paid_at=paid_at)

        event = service.payments.verify_webhook(payload.encode(), sign_payload(payload))

        assert event.remote_invoice_id == "in_123"
        assert event.status is InvoiceStatus.PAID
        assert event.paid_at == "2026-04-03T10:00:00+00:00"
        assert event.payment_intent_id == "pi_123"

    def test_payment_failed(self, service):
        payload = stripe_event("invoice.payment_failed", "in_123")

        event = service.payments.verify_webhook(payload.encode(), sign_payload(payload))

        assert event.status is InvoiceStatus.FAILED
        assert event.paid_at is None

    def test_unrelated_event_ignored(self, service):
        payload = stripe_event("customer.created", "in_123")

        assert service.payments.verify_webhook(payload.encode(), sign_payload(payload)) is None

    def test_wrong_secret_rejected(self, service):
        payload = stripe_event("invoice.payment_succeeded", "in_123")

        with pytest.raises(WebhookSignatureError):
            service.payments.verify_webhook(payload.encode(), sign_payload(payload, secret="whsec_other"))

    def test_tampered_payload_rejected(self, service):
        payload = stripe_event("invoice.payment_succeeded", "in_123")
        header = sign_payload(payload)
        tampered = payload.replace("in_123", "in_999")

        with pytest.raises(WebhookSignatureError):
            service.payments.verify_webhook(tampered.encode(), header)

    def test_stale_timestamp_rejected(self, service):
        payload = stripe_event("invoice.payment_succeeded", "in_123")

        with pytest.raises(WebhookSignatureError):
            service.payments.verify_webhook(payload.encode(), sign_payload(payload, timestamp=int(time.time()) - 3600))

    def test_missing_signature_rejected(self, service):
        payload = stripe_event("invoice.payment_succeeded", "in_123")

        with pytest.raises(WebhookSignatureError):
            service.payments.verify_webhook(payload.encode(), None)

    def test_unconfigured_secret_rejected(self, temp_db, settings, fake_stripe):
        settings.stripe_webhook_secret = None
        bridge = PaymentBridge(temp_db, settings, client=fake_stripe)
        payload = stripe_event("invoice.payment_succeeded", "in_123")

        with pytest.raises(WebhookSignatureError):
            bridge.verify_webhook(payload.encode(), sign_payload(payload, secret=WEBHOOK_SECRET))
