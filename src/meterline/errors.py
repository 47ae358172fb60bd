"""
Error Taxonomy for Meterline

Every failure the metering engine reports belongs to one family:

- NotFound            - tenant, invoice, package or plan does not exist (404)
- Conflict            - duplicate tenant, or duplicate invoice for a billing period (409)
- PreconditionFailed  - resource inactive, invoice not pending, nothing to bill
- Transient           - store contention or payment-provider trouble (retry)
- SecurityViolation   - webhook payload could not be verified

Callers retry only errors with ``retryable = True``.
"""

from typing import Any, Dict, Optional


class MeteringError(Exception):
    """Base class for all metering and billing errors."""
    status_code = 500
    retryable = False
    code = "metering_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.context,
        }


# ============================================================================
# Families
# ============================================================================

class NotFound(MeteringError):
    status_code = 404
    code = "not_found"


class Conflict(MeteringError):
    status_code = 409
    code = "conflict"


class PreconditionFailed(MeteringError):
    status_code = 412
    code = "precondition_failed"


class Transient(MeteringError):
    status_code = 503
    retryable = True
    code = "transient"


class SecurityViolation(MeteringError):
    status_code = 400
    code = "security_violation"


# ============================================================================
# Concrete errors
# ============================================================================

class TenantNotFound(NotFound):
    code = "tenant_not_found"

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} has no billing configuration", tenant_id=tenant_id)


class InvoiceNotFound(NotFound):
    code = "invoice_not_found"

    def __init__(self, invoice_ref: str):
        super().__init__(f"Invoice {invoice_ref} not found", invoice=invoice_ref)


class PackageNotFound(NotFound):
    code = "package_not_found"

    def __init__(self, package_size: int):
        super().__init__(f"No SMS package with size {package_size}", package_size=package_size)


class PlanNotFound(NotFound):
    code = "plan_not_found"

    def __init__(self, plan_name: str):
        super().__init__(f"No email plan named {plan_name}", plan=plan_name)


class TenantAlreadyExists(Conflict):
    code = "tenant_already_exists"

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} is already registered", tenant_id=tenant_id)


class InvoiceAlreadyExists(Conflict):
    code = "invoice_already_exists"

    def __init__(self, tenant_id: str, resource_type: str, period_start: Any, period_end: Any):
        super().__init__(
            "Invoice already exists for this period",
            tenant_id=tenant_id,
            resource_type=resource_type,
            period_start=str(period_start),
            period_end=str(period_end),
        )


class ResourceNotActive(PreconditionFailed):
    code = "resource_not_active"

    def __init__(self, tenant_id: str, resource_type: str):
        super().__init__(
            f"No active {resource_type} package for tenant {tenant_id}; select a package first",
            tenant_id=tenant_id,
            resource_type=resource_type,
        )


class InvoiceNotPending(PreconditionFailed):
    code = "invoice_not_pending"

    def __init__(self, invoice_id: str, status: str):
        super().__init__(
            f"Invoice {invoice_id} is {status}, expected pending",
            invoice_id=invoice_id,
            status=status,
        )


class NoOverage(PreconditionFailed):
    status_code = 422
    code = "no_overage"

    def __init__(self, tenant_id: str, resource_type: str):
        super().__init__(
            "No overage to bill",
            tenant_id=tenant_id,
            resource_type=resource_type,
        )


class StoreContention(Transient):
    code = "store_contention"


class PaymentProviderError(Transient):
    code = "payment_provider_error"

    def __init__(self, message: str, invoice_id: Optional[str] = None):
        super().__init__(message, invoice_id=invoice_id)


class WebhookSignatureError(SecurityViolation):
    code = "webhook_signature_invalid"
