"""
Stripe Payment Bridge for Meterline

Mirrors local overage invoices into Stripe and turns Stripe webhooks into
typed payment events. The local invoice stays the source of truth; Stripe's
customer and invoice objects are referenced only by id.

Remote calls:
- carry idempotency keys derived from the invoice number, so a retried
  mirror never creates a second Stripe invoice
- use a bounded network timeout and a small number of SDK retries
- never change local invoice state when they fail
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
import structlog

from ..config import Settings
from ..core.overage import to_minor_units
from ..core.period import as_utc, utcnow
from ..errors import (
    InvoiceNotFound,
    InvoiceNotPending,
    PaymentProviderError,
    TenantNotFound,
    WebhookSignatureError,
)
from ..persistence.database import Database, get_database
from ..persistence.models import InvoiceStatus, OverageInvoice, TenantBillingConfig
from ..persistence.repository import InvoiceRepository, TenantConfigRepository
from .counter_store import Clock

logger = structlog.get_logger()

# Stripe event type -> local invoice status
EVENT_STATUSES = {
    "invoice.payment_succeeded": InvoiceStatus.PAID,
    "invoice.paid": InvoiceStatus.PAID,
    "invoice.payment_failed": InvoiceStatus.FAILED,
}


@dataclass
class PaymentEvent:
    """A verified Stripe notification about one invoice."""
    event_id: str
    event_type: str
    remote_invoice_id: str
    status: InvoiceStatus
    paid_at: Optional[str] = None
    payment_intent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "remote_invoice_id": self.remote_invoice_id,
            "status": self.status.value,
            "paid_at": self.paid_at,
            "payment_intent_id": self.payment_intent_id,
        }


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a StripeObject or plain dict."""
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _timestamp_iso(value: Any) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc).isoformat()


class PaymentBridge:
    """
    Stripe integration for overage invoices.

    Args:
        db: Database to use (defaults to the shared instance)
        settings: Stripe credentials, timeout and retry policy
        client: Object exposing the Stripe resource classes; defaults to the
            ``stripe`` module
        clock: Returns "now"
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings: Optional[Settings] = None,
        client: Any = None,
        clock: Clock = utcnow,
    ):
        self.db = db or get_database()
        self.settings = settings or Settings.from_env()
        self.clock = clock
        self.tenants = TenantConfigRepository(self.db)
        self.invoices = InvoiceRepository(self.db)

        if client is not None:
            self.client = client
            self._configured = True
        else:
            self.client = stripe
            self._configured = bool(self.settings.stripe_api_key)
            if self._configured:
                stripe.api_key = self.settings.stripe_api_key
                stripe.max_network_retries = self.settings.stripe_max_retries
                stripe.default_http_client = stripe.RequestsClient(
                    timeout=self.settings.stripe_timeout_seconds
                )
                logger.info("stripe_integration_initialized")
            else:
                logger.warning("stripe_not_configured", api_key_set=False)

    @property
    def is_available(self) -> bool:
        """Whether invoices can be mirrored remotely."""
        return self._configured

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _ensure_customer(self, config: TenantBillingConfig) -> str:
        if config.remote_customer_id:
            return config.remote_customer_id

        customer = self.client.Customer.create(
            name=config.name,
            email=config.email,
            metadata={"tenant_id": config.tenant_id, "source": "meterline"},
            idempotency_key=f"meterline-customer-{config.tenant_id}",
        )
        customer_id = _field(customer, "id")
        self.tenants.set_remote_customer_id(config.tenant_id, customer_id)
        config.remote_customer_id = customer_id
        logger.info("stripe_customer_created", customer_id=customer_id, tenant_id=config.tenant_id)
        return customer_id

    def _days_until_due(self, invoice: OverageInvoice) -> int:
        today = as_utc(self.clock()).date()
        return max(1, (invoice.due_date - today).days)

    def mirror_invoice(self, invoice_id: str) -> str:
        """
        Create, finalize and send the Stripe invoice for a pending local invoice.

        Returns the Stripe invoice id. The id is stored as soon as Stripe
        creates the draft, before finalizing, so a payment webhook for it can
        always be matched. An invoice that has a Stripe id but no hosted URL
        was not finished; mirroring it again finalizes and sends that same
        draft. Fully mirrored invoices return their id without contacting
        Stripe.

        Raises:
            InvoiceNotFound / TenantNotFound: unknown invoice or tenant
            InvoiceNotPending: the invoice is already settled or cancelled
            PaymentProviderError: Stripe rejected the request or timed out
        """
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        if invoice.status is not InvoiceStatus.PENDING:
            raise InvoiceNotPending(invoice_id, invoice.status.value)
        if invoice.remote_invoice_id and invoice.hosted_invoice_url:
            return invoice.remote_invoice_id

        config = self.tenants.get(invoice.tenant_id)
        if config is None:
            raise TenantNotFound(invoice.tenant_id)

        key = f"meterline-{invoice.invoice_number}"
        currency = invoice.currency.lower()
        description = (
            f"{invoice.units_over_limit} {invoice.resource_type} units over limit "
            f"@ {invoice.overage_rate} {invoice.currency} each"
        )
        remote_id = invoice.remote_invoice_id

        try:
            customer_id = self._ensure_customer(config)
            if remote_id is None:
                remote = self.client.Invoice.create(
                    customer=customer_id,
                    collection_method="send_invoice",
                    days_until_due=self._days_until_due(invoice),
                    currency=currency,
                    auto_advance=False,
                    metadata={
                        "tenant_id": invoice.tenant_id,
                        "invoice_id": invoice.invoice_id,
                        "invoice_number": invoice.invoice_number,
                    },
                    idempotency_key=f"{key}-invoice",
                )
                remote_id = _field(remote, "id")
                self.invoices.set_remote(invoice_id, remote_id)
            else:
                logger.info("stripe_invoice_mirror_resumed", invoice_id=invoice_id, remote_invoice_id=remote_id)

            self.client.InvoiceItem.create(
                customer=customer_id,
                invoice=remote_id,
                amount=to_minor_units(invoice.total),
                currency=currency,
                description=description,
                idempotency_key=f"{key}-item",
            )
            finalized = self.client.Invoice.finalize_invoice(remote_id, idempotency_key=f"{key}-finalize")
            self.client.Invoice.send_invoice(remote_id, idempotency_key=f"{key}-send")
        except stripe.StripeError as e:
            logger.error(
                "stripe_invoice_mirror_failed",
                invoice_id=invoice_id,
                remote_invoice_id=remote_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PaymentProviderError(f"Failed to mirror invoice: {e}", invoice_id=invoice_id) from e

        self.invoices.set_remote(invoice_id, remote_id, _field(finalized, "hosted_invoice_url"))
        logger.info(
            "stripe_invoice_mirrored",
            invoice_id=invoice_id,
            remote_invoice_id=remote_id,
            amount_minor=to_minor_units(invoice.total),
        )
        return remote_id

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentEvent]:
        """
        Verify a Stripe webhook and extract the payment event.

        Returns None for event types that do not settle an invoice.

        Raises:
            WebhookSignatureError: no secret configured, missing or invalid signature
        """
        secret = self.settings.stripe_webhook_secret
        if not secret:
            logger.warning("stripe_webhook_not_configured")
            raise WebhookSignatureError("Webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_signature_invalid")
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning("stripe_webhook_payload_invalid", error=str(e))
            raise WebhookSignatureError("Malformed webhook payload") from e

        event_type = _field(event, "type")
        event_id = _field(event, "id", "")
        logger.info("stripe_webhook_received", event_type=event_type, event_id=event_id)

        status = EVENT_STATUSES.get(event_type)
        if status is None:
            return None

        obj = _field(_field(event, "data", {}), "object", {})
        remote_invoice_id = _field(obj, "id")
        if not remote_invoice_id:
            logger.warning("stripe_webhook_missing_invoice", event_id=event_id)
            return None

        paid_at = None
        if status is InvoiceStatus.PAID:
            transitions = _field(obj, "status_transitions", {})
            paid_at = _timestamp_iso(_field(transitions, "paid_at")) or _timestamp_iso(_field(event, "created"))

        payment_intent = _field(obj, "payment_intent")
        if payment_intent is not None and not isinstance(payment_intent, str):
            # expanded PaymentIntent object
            payment_intent = _field(payment_intent, "id")

        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            remote_invoice_id=remote_invoice_id,
            status=status,
            paid_at=paid_at,
            payment_intent_id=payment_intent,
        )
