"""
Pytest Configuration and Fixtures
"""

import hashlib
import hmac
import json
import os
import sys
import tempfile
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(tempfile.gettempdir(), 'meterline-test.db')}"
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_API_KEY", None)

import stripe  # noqa: E402

from meterline.billing.service import MeteringService  # noqa: E402
from meterline.config import Settings  # noqa: E402
from meterline.persistence.database import Database  # noqa: E402
from meterline.persistence.models import CounterSnapshot  # noqa: E402
from meterline.persistence.repository import MeteringStateRepository  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
TENANT_ID = "tenant-a"


class FixedClock:
    """Settable stand-in for utcnow()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class _Resource:

    def __init__(self, fake: "FakeStripe", name: str):
        self._fake = fake
        self._name = name

    def _record(self, method: str, *args, **kwargs):
        self._fake.calls.append((f"{self._name}.{method}", args, kwargs))
        if f"{self._name}.{method}" in self._fake.fail_on:
            raise stripe.APIConnectionError("Network unreachable")


class _Customers(_Resource):

    def create(self, **kwargs):
        self._record("create", **kwargs)
        return {"id": f"cus_{len(self._fake.calls)}", "object": "customer"}


class _Invoices(_Resource):

    def create(self, **kwargs):
        self._record("create", **kwargs)
        return {"id": f"in_{len(self._fake.calls)}", "object": "invoice", "status": "draft"}

    def finalize_invoice(self, invoice_id, **kwargs):
        self._record("finalize_invoice", invoice_id, **kwargs)
        return {
            "id": invoice_id,
            "status": "open",
            "hosted_invoice_url": f"https://invoice.stripe.test/{invoice_id}",
        }

    def send_invoice(self, invoice_id, **kwargs):
        self._record("send_invoice", invoice_id, **kwargs)
        return {"id": invoice_id, "status": "open"}


class _InvoiceItems(_Resource):

    def create(self, **kwargs):
        self._record("create", **kwargs)
        return {"id": f"ii_{len(self._fake.calls)}", "object": "invoiceitem"}


class FakeStripe:
    """
    The slice of the stripe module the payment bridge calls.

    Every call is recorded in ``calls``; names in ``fail_on`` (for example
    ``"Invoice.create"``) raise a Stripe network error instead.
    """

    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self.Customer = _Customers(self, "Customer")
        self.Invoice = _Invoices(self, "Invoice")
        self.InvoiceItem = _InvoiceItems(self, "InvoiceItem")

    def called(self, name: str):
        return [c for c in self.calls if c[0] == name]


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, remote_invoice_id: str, paid_at: int = None, event_id: str = "evt_1") -> str:
    invoice = {"id": remote_invoice_id, "object": "invoice", "payment_intent": "pi_123"}
    if paid_at is not None:
        invoice["status_transitions"] = {"paid_at": paid_at}
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": invoice},
    })


def set_counter(db, tenant_id, resource_type, units, accrued, period_start):
    """Put a counter into a known state."""
    counters = MeteringStateRepository(db)
    counters.ensure(tenant_id, resource_type, period_start)
    counters.save(CounterSnapshot(
        tenant_id=tenant_id,
        resource_type=resource_type,
        units_consumed=units,
        accrued_overage_charge=Decimal(accrued),
        period_start=period_start,
    ))


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = Database(f"sqlite:///{db_path}")
    db.initialize()

    yield db

    db.close()
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def settings(temp_db):
    return Settings(
        database_url=temp_db.database_url,
        api_key="test-key-12345",
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def service(temp_db, settings, fake_stripe, clock):
    return MeteringService(db=temp_db, settings=settings, stripe_client=fake_stripe, clock=clock)


@pytest.fixture
def tenant(service):
    """Tenant on default terms: 500 emails, 0.10 NOK overage, 25% tax, no SMS package."""
    return service.register_tenant(TENANT_ID, "Acme AS", email="billing@acme.test")


@pytest.fixture
def march():
    return date(2026, 3, 1), date(2026, 4, 1)
