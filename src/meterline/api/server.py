"""
Meterline - Production FastAPI Server

Usage metering and overage billing API.

Endpoints:
- GET  /usage/{resource}            - Current-period usage for the calling tenant
- POST /usage/{resource}/send       - Count one outbound email or SMS
- GET  /invoices                    - The calling tenant's overage invoices
- POST /webhooks/stripe             - Stripe payment notifications
- /admin/...                        - Invoice generation, period close, overrides

Tenant endpoints identify the tenant with the X-Tenant-ID header; every
endpoint except /health and the Stripe webhook requires X-API-Key.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from .. import __version__
from ..billing.service import MeteringService
from ..config import Settings
from ..core.catalog import ResourceType
from ..errors import MeteringError

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class SendRequest(BaseModel):
    """One outbound message to count."""
    recipient: str = Field(..., min_length=1, description="Email address or phone number")
    event_type: str = Field(default="sent", description="sent, bounced, failed, ...")
    subject: Optional[str] = Field(None, description="Subject or message preview")
    provider: Optional[str] = Field(None, description="Delivery provider")


class SmsPackageRequest(BaseModel):
    package_size: int = Field(..., ge=0, description="Package size; 0 deactivates SMS")


class EmailPlanRequest(BaseModel):
    plan: str = Field(..., description="basic, professional or enterprise")


class LimitsRequest(BaseModel):
    """Admin override; omitted fields keep their current value."""
    limit: Optional[int] = Field(None, ge=0, description="Email monthly limit or SMS package size")
    overage_rate: Optional[Decimal] = Field(None, ge=0)
    package_price: Optional[Decimal] = Field(None, ge=0, description="SMS only")


class GenerateInvoiceRequest(BaseModel):
    tenant_id: str
    resource_type: str
    period_start: date
    period_end: date


class ClosePeriodRequest(BaseModel):
    as_of: Optional[datetime] = Field(None, description="Close the month before this instant (default: now)")


class TenantRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    name: str
    email: Optional[str] = None
    currency: Optional[str] = None
    tax_rate: Optional[Decimal] = Field(None, ge=0)
    email_monthly_limit: Optional[int] = Field(None, ge=0)
    email_overage_rate: Optional[Decimal] = Field(None, ge=0)
    sms_overage_rate: Optional[Decimal] = Field(None, ge=0)


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    stripe_configured: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, service: MeteringService):
        self.service = service
        self.settings = service.settings
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


def configure(service: MeteringService) -> AppState:
    """Install the service the endpoints use (tests and embedding apps)."""
    global app_state
    app_state = AppState(service)
    return app_state


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("meterline_starting", version=__version__)
    if app_state is None:
        configure(MeteringService(settings=Settings.from_env()))
    yield
    logger.info("meterline_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Meterline",
        description="Usage metering and overage billing for email and SMS.",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=Settings.from_env().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(MeteringError)
    async def metering_error_handler(request: Request, exc: MeteringError):
        if exc.status_code >= 500:
            logger.warning("request_failed_transient", path=request.url.path, error=exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @application.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "invalid_request", "message": str(exc)})

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def current_tenant(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    """Tenant the request acts for."""
    if not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-ID must not be empty")
    return x_tenant_id.strip()


def parse_resource(resource: str) -> ResourceType:
    try:
        return ResourceType.parse(resource)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid resource type: {resource}")


# ============================================================================
# System
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        database="postgres" if state.service.db.is_postgres else "sqlite",
        stripe_configured=state.service.payments.is_available,
        uptime_seconds=uptime,
    )


# ============================================================================
# Usage
# ============================================================================

@app.get("/usage/{resource}", tags=["Usage"])
def get_usage(
    resource: str,
    tenant_id: str = Depends(current_tenant),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Current-period usage, limit and accrued overage."""
    view = state.service.get_usage(tenant_id, parse_resource(resource))
    return view.to_dict()


@app.post("/usage/{resource}/send", tags=["Usage"])
def record_send(
    resource: str,
    request: SendRequest,
    tenant_id: str = Depends(current_tenant),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """
    Count one outbound unit.

    Sends past the limit still succeed; they are flagged as overage and
    their cost accrues to the tenant's next invoice.
    """
    result = state.service.record_send(
        tenant_id,
        parse_resource(resource),
        request.recipient,
        event_type=request.event_type,
        subject=request.subject,
        provider=request.provider,
    )
    return result.to_dict()


@app.get("/usage/{resource}/history", tags=["Usage"])
def usage_history(
    resource: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(current_tenant),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    page = state.service.usage_history(tenant_id, parse_resource(resource), limit=limit, offset=offset)
    return page.to_dict()


# ============================================================================
# Invoices
# ============================================================================

@app.get("/invoices", tags=["Invoices"])
def list_invoices(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    tenant_id: str = Depends(current_tenant),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return state.service.list_invoices(tenant_id, page=page, page_size=page_size).to_dict()


@app.get("/invoices/{invoice_id}", tags=["Invoices"])
def get_invoice(
    invoice_id: str,
    tenant_id: str = Depends(current_tenant),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return state.service.get_invoice(tenant_id, invoice_id).to_dict()


@app.post("/invoices/{invoice_id}/remote", tags=["Invoices"])
def mirror_invoice(
    invoice_id: str,
    tenant_id: str = Depends(current_tenant),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Create (or return) the Stripe invoice for a pending invoice."""
    state.service.get_invoice(tenant_id, invoice_id)
    remote_id = state.service.mirror_invoice(invoice_id)
    return {**state.service.get_invoice(tenant_id, invoice_id).to_dict(), "remote_invoice_id": remote_id}


# ============================================================================
# Plans and Packages
# ============================================================================

@app.get("/sms/packages", tags=["Plans"])
def list_sms_packages(state: AppState = Depends(get_state), api_key: str = Depends(verify_api_key)):
    return {"packages": [p.to_dict() for p in state.service.list_sms_packages()]}


@app.put("/sms/package", tags=["Plans"])
def select_sms_package(
    request: SmsPackageRequest,
    tenant_id: str = Depends(current_tenant),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return state.service.select_sms_package(tenant_id, request.package_size).to_dict()


@app.get("/email/plans", tags=["Plans"])
def list_email_plans(state: AppState = Depends(get_state), api_key: str = Depends(verify_api_key)):
    return {"plans": [p.to_dict() for p in state.service.list_email_plans()]}


# ============================================================================
# Admin
# ============================================================================

@app.get("/admin/invoices", tags=["Admin"])
def admin_list_invoices(
    status: Optional[str] = Query(None, pattern="^(pending|paid|failed|cancelled)$"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    invoices = state.service.list_all_invoices(status=status, limit=limit, offset=offset)
    return {"invoices": [i.to_dict() for i in invoices], "count": len(invoices)}


@app.post("/admin/invoices/generate", status_code=201, tags=["Admin"])
def admin_generate_invoice(
    request: GenerateInvoiceRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    if request.period_end <= request.period_start:
        raise HTTPException(status_code=400, detail="period_end must be after period_start")
    invoice = state.service.generate_invoice(
        request.tenant_id,
        parse_resource(request.resource_type),
        request.period_start,
        request.period_end,
    )
    return invoice.to_dict()


@app.post("/admin/invoices/{invoice_id}/cancel", tags=["Admin"])
def admin_cancel_invoice(
    invoice_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return state.service.cancel_invoice(invoice_id).to_dict()


@app.post("/admin/billing/close-period", tags=["Admin"])
def admin_close_period(
    request: Optional[ClosePeriodRequest] = None,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Invoice last month's overage for every tenant."""
    as_of = request.as_of if request else None
    return state.service.close_period(as_of)


@app.get("/admin/usage/{resource}", tags=["Admin"])
def admin_all_usage(
    resource: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    tenants = state.service.all_tenants_usage(parse_resource(resource))
    return {"resource_type": resource.lower(), "tenants": tenants, "count": len(tenants)}


@app.post("/admin/tenants", status_code=201, tags=["Admin"])
def admin_register_tenant(
    request: TenantRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    fields = request.model_dump(exclude_none=True, exclude={"tenant_id", "name", "email"})
    config = state.service.register_tenant(request.tenant_id, request.name, request.email, **fields)
    return config.to_dict()


@app.put("/admin/tenants/{tenant_id}/plan", tags=["Admin"])
def admin_change_plan(
    tenant_id: str,
    request: EmailPlanRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    return state.service.change_email_plan(tenant_id, request.plan).to_dict()


@app.put("/admin/tenants/{tenant_id}/limits/{resource}", tags=["Admin"])
def admin_update_limits(
    tenant_id: str,
    resource: str,
    request: LimitsRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    config = state.service.update_custom_limits(
        tenant_id,
        parse_resource(resource),
        limit=request.limit,
        overage_rate=request.overage_rate,
        package_price=request.package_price,
    )
    return config.to_dict()


# ============================================================================
# Webhooks
# ============================================================================

@app.post("/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """
    Stripe payment notifications.

    Authenticated by the Stripe signature, not the API key. Duplicate and
    unknown events are acknowledged with 200 so Stripe stops retrying.
    """
    payload = await request.body()
    return await run_in_threadpool(state.service.handle_webhook, payload, stripe_signature)


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    settings = Settings.from_env()
    uvicorn.run(
        "meterline.api.server:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
